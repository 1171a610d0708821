"""
Server Configuration: HTTP, WebSocket and housekeeping settings.

Values are read from the environment once, in ``ServerConfig.from_env()``,
and the resulting immutable object is handed to ``create_app``.
"""
import os
from pathlib import Path
from typing import Optional
from collections.abc import Mapping

from pydantic import BaseModel, Field, field_validator

BASE_DIR = Path(__file__).resolve().parent
STATIC_DIR = BASE_DIR / "static"


class ServerConfig(BaseModel):
    """Validated server configuration."""

    host: str = "0.0.0.0"
    port: int = Field(default=5941, ge=1, le=65535)
    static_dir: Path = STATIC_DIR
    heartbeat_interval: float = Field(default=30.0, gt=0)
    status_interval: float = Field(default=30 * 60, gt=0)
    max_body_size: int = Field(default=1024 * 1024, ge=1024)
    # per-message deflate, negotiated with the client when enabled
    ws_compress: bool = True
    ws_max_msg_size: int = Field(default=4 * 1024 * 1024, ge=1024)
    ws_close_timeout: float = Field(default=5.0, gt=0)
    log_level: str = "INFO"

    model_config = {"frozen": True}

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {v}")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Create ServerConfig by loading values from environment.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        names = {
            "host": "HOST",
            "port": "PORT",
            "static_dir": "STATIC_DIR",
            "heartbeat_interval": "HEARTBEAT_INTERVAL",
            "status_interval": "STATUS_INTERVAL",
            "max_body_size": "MAX_BODY_SIZE",
            "ws_compress": "WS_COMPRESS",
            "ws_max_msg_size": "WS_MAX_MSG_SIZE",
            "ws_close_timeout": "WS_CLOSE_TIMEOUT",
            "log_level": "LOG_LEVEL",
        }
        values = {
            field: env[var] for field, var in names.items() if env.get(var)
        }
        return cls(**values)
