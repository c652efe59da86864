"""
Environment-based agent settings.

Every field can be set through a ``TELEMETRY_``-prefixed environment variable
(or a ``.env`` file). List fields take JSON, e.g.
``TELEMETRY_FALLBACK_ENDPOINTS='["https://b.example.com/v1/batch"]'``.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .delivery.priority import DEFAULT_CRITICAL_EVENTS, DEFAULT_HIGH_PRIORITY_EVENTS


class AgentSettings(BaseSettings):
    """Delivery pipeline configuration (times in ms unless suffixed ``_s``)."""

    endpoint: str = "https://ingest.example.com/v1/batch"
    fallback_endpoints: List[str] = Field(default_factory=list)
    workspace_id: Optional[str] = None
    agent_id: str = "default"

    # batching
    batch_size: int = Field(10, gt=0)
    flush_interval_ms: int = Field(5000, ge=0)
    high_priority_delay_ms: int = Field(1000, ge=0)

    # retry / rate limiting
    max_retries: int = Field(5, ge=0)
    base_retry_delay_ms: int = Field(1000, ge=0)
    max_retry_delay_ms: int = Field(30_000, ge=0)
    default_retry_after_s: float = Field(60.0, ge=0)
    request_timeout_s: float = Field(10.0, gt=0)
    beacon_timeout_s: float = Field(2.0, gt=0)

    # offline store
    max_offline_queue_size: int = Field(100, gt=0)
    offline_queue_path: Optional[str] = None
    restore_drain_delay_ms: int = Field(1000, ge=0)

    # classification / dedup
    critical_event_names: List[str] = Field(default_factory=lambda: list(DEFAULT_CRITICAL_EVENTS))
    high_priority_event_names: List[str] = Field(
        default_factory=lambda: list(DEFAULT_HIGH_PRIORITY_EVENTS)
    )
    dedup_history_size: int = Field(1000, gt=0)
    dedup_window_ms: int = Field(500, ge=0)
    sanitize_payloads: bool = True

    model_config = SettingsConfigDict(
        env_prefix="TELEMETRY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("endpoint")
    @classmethod
    def _require_endpoint(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("endpoint must not be empty")
        return v

    @field_validator("fallback_endpoints")
    @classmethod
    def _drop_blank_endpoints(cls, v: List[str]) -> List[str]:
        return [e.strip() for e in v if e and e.strip()]

    @property
    def flush_interval(self) -> float:
        return self.flush_interval_ms / 1000.0

    @property
    def high_priority_delay(self) -> float:
        return self.high_priority_delay_ms / 1000.0

    @property
    def restore_drain_delay(self) -> float:
        return self.restore_drain_delay_ms / 1000.0


@lru_cache()
def get_settings() -> AgentSettings:
    return AgentSettings()
