"""Centralised configuration via Pydantic Settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide configuration loaded from environment variables."""

    model_config = {"env_prefix": "WINDBAG_", "frozen": True}

    # Workers
    work_dir: str = "C:/etc/windbag"
    ssh_username: str = "root"

    # Dialing
    dial_connect_timeout: float = 10.0
    dial_retry_timeout: int = 600
    keepalive_interval: float = 5.0
    # Fresh hosts have no completion signal for the docker installer.
    provision_settle_seconds: float = 10.0

    # Phase timeouts (seconds)
    login_timeout: int = 300
    push_timeout: int = 900
    manifest_timeout: int = 900
    build_timeout: int = 3600

    # Retry
    # Format: "1,2,5,10" - the last value repeats until the phase times out.
    retry_backoff_seconds: str = "1,2,5,10"

    # PowerShell
    powershell_executor: str = "powershell.exe"
    read_chunk_size: int = 32768

    # Registry
    registry_insecure: bool = True
    registry_timeout: int = 30

    # Logging
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Return a fresh Settings; tests build their own instead."""
    return Settings()
