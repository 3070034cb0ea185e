"""Main entry point for the Clinx Relay application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from clinx_relay.api.v1 import (
    channels_router,
    groups_router,
    invites_router,
    messages_router,
    notifications_router,
    realtime_router,
    teams_router,
    users_router,
)
from clinx_relay.core.errors import ErrorKind, RelayError
from clinx_relay.core.security import TokenVerifier
from clinx_relay.core.settings import settings
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.registry import PresenceRegistry
from clinx_relay.services.invite_sweeper import InviteSweeper

logger = logging.getLogger(__name__)

# Every ErrorKind must have an entry; the handler never guesses a status.
ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CAPACITY: 403,
    ErrorKind.TRANSIENT_STORE: 503,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
}

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Real-time core for multi-tenant team chat",
    version=settings.app_version,
)

# Process-local presence state shared by the gateway and every service
app.state.registry = PresenceRegistry()
app.state.dispatcher = Dispatcher(app.state.registry)
app.state.verifier = TokenVerifier()
app.state.invite_sweeper = None

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(messages_router, prefix="/api/v1")
app.include_router(groups_router, prefix="/api/v1")
app.include_router(channels_router, prefix="/api/v1")
app.include_router(teams_router, prefix="/api/v1")
app.include_router(invites_router, prefix="/api/v1")
app.include_router(notifications_router, prefix="/api/v1")
app.include_router(users_router, prefix="/api/v1")
app.include_router(realtime_router, prefix="/api/v1")


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    status_code = ERROR_STATUS[exc.kind]
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if exc.kind is ErrorKind.AUTHENTICATION else None
    return JSONResponse(status_code=status_code, content=exc.to_payload(), headers=headers)


@app.on_event("startup")
async def on_startup() -> None:
    sweeper = InviteSweeper()
    await sweeper.start()
    app.state.invite_sweeper = sweeper


@app.on_event("shutdown")
async def on_shutdown() -> None:
    sweeper: InviteSweeper | None = getattr(app.state, "invite_sweeper", None)
    if sweeper:
        await sweeper.stop()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("clinx_relay.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
