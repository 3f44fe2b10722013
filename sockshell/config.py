"""
Session configuration management
"""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Socket shell settings"""

    model_config = SettingsConfigDict(env_prefix="SOCKSHELL_", env_file=".env", extra="ignore")

    # Endpoint
    port: int = 2000  # fixed port for both client and server mode
    bind_address: str = "0.0.0.0"
    listen_backlog: int = 5

    # Command defaults
    default_read_size: int = 1024
    max_transfer_bytes: int = 64 * 1024 * 1024  # ceiling for r, rn and w byte counts
    fill_byte: str = "H"
    resolve_default_host: str = "localhost"

    # Blocking accept
    accept_poll_interval_ms: int = 200  # how often a blocked accept checks for interruption
    accept_retry_delay_sec: float = 0.1

    # Console
    prompt: str = "> "
    history_file: Optional[Path] = None

    # Paths
    project_root: Path = Path(__file__).parent.parent
    log_dir: Path = project_root / "logs"
    log_level: str = "WARNING"  # console
    file_log_level: str = "INFO"

    @property
    def fill(self) -> bytes:
        return self.fill_byte.encode("latin-1")[:1] or b"H"


settings = Settings()
