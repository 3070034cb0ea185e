"""WebSocket endpoint for live events."""

from __future__ import annotations

from fastapi import APIRouter, WebSocket

from clinx_relay.realtime.gateway import RealtimeGateway

from ..dependencies import SessionDep

router = APIRouter(prefix="/realtime", tags=["realtime"])


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, db: SessionDep) -> None:
    state = websocket.app.state
    gateway = RealtimeGateway(db, state.registry, state.dispatcher, state.verifier)
    await gateway.serve(websocket)
