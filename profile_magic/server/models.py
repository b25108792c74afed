"""Pydantic response models for the HTTP surface.

WHY: FastAPI turns these into the OpenAPI schema at /docs, and tests can
assert on a stable response shape for the health endpoints.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Python 3.9+ compatible (Optional from typing, no PEP 604 unions)
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ServiceInfo(BaseModel):
    """Banner returned by GET /."""

    service: str = Field(description="Service name.")
    version: str = Field(description="Service version string.")
    status: str = Field(description="Always 'running' while the process is up.")


class HealthResponse(BaseModel):
    """Liveness probe payload for GET /health."""

    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    service: str = Field(description="Service name.")
    timestamp: str = Field(description="Current server time (ISO-8601, UTC).")
    version: str = Field(description="Service version string.", json_schema_extra={"example": "0.1.0"})


class ErrorResponse(BaseModel):
    """Standard error body (matches FastAPI's HTTPException format)."""

    detail: str = Field(description="Human-readable error description.")
