"""
Pydantic request/response models for the pagescore API.

The report itself is opaque and passed through untouched.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, StrictStr


class ScoreRequest(BaseModel):
    """Body of POST /api/lighthouse."""

    url: StrictStr = Field(description="Absolute http(s) URL to score")


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str = "healthy"
