"""leasebus configuration."""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LeaseSettings(BaseSettings):
    """Lease engine settings, overridable from LEASEBUS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEASEBUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    ack_window: float = Field(
        default=30.0, gt=0, description="Lease length granted on first receipt (s)"
    )
    max_retries: int = Field(
        default=5,
        ge=1,
        description="Deliveries allowed before an unacked message is treated as poison",
    )
    monitor_interval: float = Field(
        default=1.0, gt=0, description="Deadline monitor sweep period (s)"
    )
    sweep_jitter: float = Field(
        default=0.2, ge=0, description="Random delay added to each sweep (s)"
    )
    delivery_buffer: int = Field(default=64, ge=1)
    error_buffer: int = Field(default=256, ge=1)
    shutdown_grace: float = Field(
        default=5.0, gt=0, description="Bound on teardown after cancellation (s)"
    )

    @model_validator(mode="after")
    def check_monitor_interval(self) -> "LeaseSettings":
        if self.monitor_interval >= self.ack_window:
            raise ValueError(
                f"monitor_interval ({self.monitor_interval}s) must be shorter "
                f"than ack_window ({self.ack_window}s)"
            )
        return self
