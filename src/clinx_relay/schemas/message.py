"""Message-related Pydantic schemas."""

from pydantic import BaseModel, Field


class MessageCreate(BaseModel):
    """Schema for sending a message into a conversation."""

    message_type: str = Field(default="text", description="text, image, pdf, voice or video")
    content: str | None = Field(default=None, max_length=10000)
    file_path: str | None = None
    duration: int | None = Field(default=None, ge=0, description="Length of audio/voice media in seconds")


class DirectMessageCreate(MessageCreate):
    """Schema for sending a direct message, creating the chat on first contact."""

    receiver_id: int
