"""
Pydantic models for producer-facing event payloads.

Payloads arrive already enriched by upstream collaborators (identity,
session, attribution); the agent only needs the name for classification and
dedup, and treats ``properties`` as opaque.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class EventPayload(BaseModel):
    """Enriched event as handed to ``TelemetryAgent.enqueue``."""

    name: str = Field(..., min_length=1, max_length=255)
    properties: Dict[str, Any] = Field(default_factory=dict)
    # Producer-supplied event time. Host retries resend the same value,
    # which keeps their content hash stable.
    timestamp: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Event name must not be blank")
        return v

    @field_validator("properties", mode="before")
    @classmethod
    def _default_properties(cls, v):
        return {} if v is None else v
