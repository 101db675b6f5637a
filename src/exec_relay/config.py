"""Application configuration using Pydantic Settings."""

import sys
import tempfile
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EXEC_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Server settings
    host: str = "127.0.0.1"
    port: int = 5680
    debug: bool = False
    log_level: str = "INFO"

    # Session retention
    history_per_workspace: int = Field(default=20, ge=1, le=1000)

    # Resource limits (defaults applied when a request omits them)
    default_timeout_seconds: float = Field(default=10.0, gt=0)
    max_timeout_seconds: float = Field(default=120.0, gt=0)
    default_memory_bytes: int = Field(default=256 * 1024 * 1024, ge=16 * 1024 * 1024)
    max_memory_bytes: int = Field(default=1024 * 1024 * 1024, ge=16 * 1024 * 1024)
    default_output_bytes: int = Field(default=1024 * 1024, ge=1024)
    max_output_bytes: int = Field(default=16 * 1024 * 1024, ge=1024)
    max_source_bytes: int = Field(default=512 * 1024, ge=1024)

    # Cancellation
    cancel_grace_seconds: float = Field(default=2.0, ge=0.0, le=60.0)

    # Sandbox
    isolation: Literal["auto", "bwrap", "unshare", "none"] = "auto"
    allow_network: bool = False
    scratch_root: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "exec-relay")

    # Persistence
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".exec-relay")
    archive_enabled: bool = True
    archive_keep_per_workspace: int = Field(default=200, ge=1)

    # Toolchains
    python_executable: str = Field(default_factory=lambda: sys.executable or "python3")
    node_executable: str = "node"
    tsx_executable: str = "tsx"
    bash_executable: str = "bash"
    cc_executable: str = "cc"

    @property
    def runs_dir(self) -> Path:
        """Directory for archived runs."""
        return self.data_dir / "runs"

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        if self.archive_enabled:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.runs_dir.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
