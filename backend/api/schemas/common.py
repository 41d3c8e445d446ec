"""Common schemas used across the API."""

from pydantic import BaseModel, Field


class MessageResponse(BaseModel):
    """Simple message response."""

    message: str = Field(description="Human-readable outcome of the request")
