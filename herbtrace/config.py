"""
Configuration Management

Environment-driven settings for the traceability service, its sync queue
and the HTTP surface.
"""

import os
import secrets
from pathlib import Path
from typing import Dict


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


class Config:
    """Application configuration."""

    # Environment
    ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")

    # Local persistence (batches, resources, sync queue, audit log)
    DATA_DIR = Path(os.environ.get("HERBTRACE_DATA_DIR", "./data"))

    # Sync queue
    SYNC_BASE_URL = os.environ.get("HERBTRACE_SYNC_BASE_URL", "http://localhost:3000")
    SYNC_MAX_ATTEMPTS = int(os.environ.get("HERBTRACE_SYNC_MAX_ATTEMPTS", "3"))
    SYNC_BASE_DELAY = _env_float("HERBTRACE_SYNC_BASE_DELAY", "2.0")
    SYNC_INTERVAL = _env_float("HERBTRACE_SYNC_INTERVAL", "30")
    SYNC_TIMEOUT = _env_float("HERBTRACE_SYNC_TIMEOUT", "10")

    # Workflow
    ALLOW_EARLY_REJECTION = (
        os.environ.get("HERBTRACE_ALLOW_EARLY_REJECTION", "false").lower() == "true"
    )

    # JWT Authentication
    JWT_SECRET_KEY = os.environ.get(
        "JWT_SECRET_KEY",
        secrets.token_urlsafe(32) if ENVIRONMENT == "development" else None,
    )
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

    # CORS
    ALLOWED_ORIGINS = os.environ.get(
        "ALLOWED_ORIGINS", "http://localhost:8000,http://127.0.0.1:8000"
    ).split(",")

    # Authentication users
    # Format: USERNAME:ROLE:HASHED_PASSWORD[,USERNAME:ROLE:HASHED_PASSWORD...]
    AUTH_USERS_ENV = os.environ.get("AUTH_USERS", "")

    # Server
    HOST = os.environ.get("HOST", "0.0.0.0")
    PORT = int(os.environ.get("PORT", "8000"))
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "info")

    @classmethod
    def validate(cls):
        """Validate configuration and raise errors for missing required values."""
        if cls.SYNC_MAX_ATTEMPTS < 1:
            raise ValueError("HERBTRACE_SYNC_MAX_ATTEMPTS must be at least 1")
        if cls.ENVIRONMENT == "production":
            if not cls.JWT_SECRET_KEY:
                raise ValueError(
                    "JWT_SECRET_KEY environment variable must be set in production. "
                    "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
                )
            if not cls.AUTH_USERS_ENV:
                raise ValueError(
                    "AUTH_USERS environment variable must be set in production. "
                    "Format: 'username:role:hashed_password'"
                )

    @classmethod
    def parse_users(cls, raw: str | None = None) -> Dict[str, dict]:
        """Parse AUTH_USERS into {username: {"role": ..., "password_hash": ...}}."""
        raw = cls.AUTH_USERS_ENV if raw is None else raw
        users = {}
        for user_entry in raw.split(","):
            parts = user_entry.split(":", 2)
            if len(parts) != 3:
                continue
            username, role, hashed_pwd = (p.strip() for p in parts)
            users[username] = {"role": role, "password_hash": hashed_pwd}
        return users


def get_config() -> Config:
    """Get validated configuration."""
    Config.validate()
    return Config
