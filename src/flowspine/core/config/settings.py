"""
Engine settings for flowspine.

One validated settings object configures the scheduler, executor,
limiter and error tracker. It is built once with :func:`load_settings`
and handed to each component's constructor; nothing reads the
environment behind the caller's back.

All fields can be set via ``FLOWSPINE_*`` environment variables (e.g.
``FLOWSPINE_LEASE_SECONDS=120``) or a ``.env`` file.

Tags:
    flowspine, configuration, settings, pydantic, validation
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from flowspine.execution.retry import RetryPolicy


class EngineSettings(BaseSettings):
    """flowspine centralized configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FLOWSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # ── Scheduler / worker ───────────────────────────────────────
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    claim_batch_size: int = Field(default=10, ge=1, description="Due runs fetched per tick")
    max_workers: int = Field(default=4, ge=1)
    lease_seconds: int = Field(default=300, ge=1, description="Claim lease, renewed per checkpoint")
    worker_id: str | None = Field(default=None, description="Defaults to host:pid")

    # ── Execution ────────────────────────────────────────────────
    default_batch_size: int = Field(default=100, ge=1)
    max_resumptions: int = Field(default=10, ge=0)
    default_concurrency_limit: int = Field(
        default=1, ge=1, description="Limit for flows without a concurrency_limit"
    )

    # ── Retry ────────────────────────────────────────────────────
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_wait: str | float = Field(default="polynomially_longer")
    retry_jitter: float = Field(default=0.15, ge=0.0, le=1.0)
    retry_transient_errors: list[str] = Field(default_factory=list)
    retry_permanent_errors: list[str] = Field(default_factory=list)

    # ── Error tracking ───────────────────────────────────────────
    error_tracking_enabled: bool = Field(default=True)
    error_ttl_days: int = Field(default=7, ge=1)
    error_max_entries: int = Field(default=10_000, ge=1)

    # ── Retention ────────────────────────────────────────────────
    run_retention_days: int = Field(default=30, ge=1)

    # ── Database ─────────────────────────────────────────────────
    database_path: str | None = Field(
        default=None,
        description="SQLite file (or ':memory:'); unset selects the in-memory repository",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("retry_wait")
    @classmethod
    def _check_wait(cls, value: str | float) -> str | float:
        if isinstance(value, str) and value not in ("polynomially_longer", "exponentially_longer"):
            try:
                return float(value)
            except ValueError:
                raise ValueError(
                    "retry_wait must be 'polynomially_longer', 'exponentially_longer' or seconds"
                ) from None
        return value

    @field_validator("log_format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    # ── Derived ──────────────────────────────────────────────────

    def retry_policy(self) -> RetryPolicy:
        """The engine-wide retry policy flows merge their own over."""
        from flowspine.execution.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            transient_errors=tuple(self.retry_transient_errors),
            permanent_errors=tuple(self.retry_permanent_errors),
            wait=self.retry_wait,
            jitter=self.retry_jitter,
        )

    @property
    def error_ttl_seconds(self) -> int:
        return self.error_ttl_days * 86_400


def load_settings(**overrides: Any) -> EngineSettings:
    """Build a validated :class:`EngineSettings`.

    Keyword overrides win over environment variables and ``.env`` values.
    """
    return EngineSettings(**overrides)
