"""Shared API response schemas."""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"],
    )
