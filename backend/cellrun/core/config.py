"""
Centralized engine configuration.

Uses pydantic BaseSettings for automatic env-var loading and validation.
Every field can be overridden with a ``CELLRUN_``-prefixed environment
variable (or a ``.env`` file). Import the singleton ``settings`` instance
throughout the package.
"""

from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings — validated from environment variables."""

    # ── Timeouts (seconds) ────────────────────────────────
    EXECUTION_TIMEOUT: int = 60
    SQL_TIMEOUT: int = 30
    PIP_INSTALL_TIMEOUT: int = 300
    PROBE_TIMEOUT: int = 15

    # ── Workspaces ────────────────────────────────────────
    WORKSPACE_ROOT: str = ""
    WORKSPACE_PREFIX: str = "cellrun_exec_"
    CLEANUP_DELAY_SECONDS: float = 5.0
    MAX_WORKSPACES: int = 200

    # ── Output capture ────────────────────────────────────
    MAX_OUTPUT_SIZE: int = 1_000_000  # chars per stream
    CHART_DPI: int = 150

    # ── Interpreter discovery ─────────────────────────────
    PYTHON_SEARCH_PATHS: Annotated[List[str], NoDecode] = [
        "/opt/homebrew/bin/python3",
        "/usr/local/bin/python3",
        "/usr/bin/python3",
        "/Library/Frameworks/Python.framework/Versions/Current/bin/python3",
        "/Library/Frameworks/Python.framework/Versions/3.12/bin/python3",
        "/Library/Frameworks/Python.framework/Versions/3.11/bin/python3",
    ]
    CURATED_PATH: str = "/opt/homebrew/bin:/usr/local/bin:/usr/bin:/bin"

    # ── Logging ───────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None

    @field_validator("PYTHON_SEARCH_PATHS", mode="before")
    @classmethod
    def _parse_search_paths(cls, v):
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator(
        "EXECUTION_TIMEOUT", "SQL_TIMEOUT", "PIP_INSTALL_TIMEOUT", "PROBE_TIMEOUT",
        mode="after",
    )
    @classmethod
    def _positive_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"timeouts must be positive, got {v}")
        return v

    @field_validator("CLEANUP_DELAY_SECONDS", mode="after")
    @classmethod
    def _non_negative_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"CLEANUP_DELAY_SECONDS must be >= 0, got {v}")
        return v

    @field_validator("LOG_LEVEL", mode="after")
    @classmethod
    def _uppercase_level(cls, v: str) -> str:
        v = v.upper()
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v

    @model_validator(mode="after")
    def _resolve_paths(self):
        """Default the workspace root to the system temp dir and make paths absolute."""
        root = self.WORKSPACE_ROOT or tempfile.gettempdir()
        object.__setattr__(self, "WORKSPACE_ROOT", os.path.abspath(root))
        if self.LOG_DIR:
            object.__setattr__(self, "LOG_DIR", os.path.abspath(self.LOG_DIR))
        return self

    model_config = SettingsConfigDict(
        env_prefix="CELLRUN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
