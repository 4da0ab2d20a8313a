"""Environment configuration for the audit kernel process."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KernelSettings(BaseSettings):
    """Process-level settings, read from AUDIT_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="AUDIT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = "audit_kernel"
    db_path: str = Field(default=":memory:")
    log_level: str = Field(default="info")
    json_logs: bool = Field(default=True)


def get_settings() -> KernelSettings:
    return KernelSettings()
