"""
Configuration module for ProcessDesk.
Every setting can be overridden through a PROCESSDESK_* environment variable.
"""

import os
from typing import Any, Dict, List


def env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration class."""

    # Server Configuration
    DEFAULT_HOST = os.environ.get("PROCESSDESK_HOST", "0.0.0.0")
    DEFAULT_WS_PORT = int(os.environ.get("PROCESSDESK_WS_PORT", "3001"))
    DEFAULT_API_PORT = int(os.environ.get("PROCESSDESK_API_PORT", "3002"))

    # Transport liveness (websockets ping/pong), seconds
    PING_INTERVAL = float(os.environ.get("PROCESSDESK_PING_INTERVAL", "20"))
    PING_TIMEOUT = float(os.environ.get("PROCESSDESK_PING_TIMEOUT", "20"))

    # SQLite databases: domain records and the chat log are kept apart
    RECORDS_DB_FILE = os.environ.get("PROCESSDESK_DB", "database.sqlite")
    MESSAGES_DB_FILE = os.environ.get("PROCESSDESK_MSG_DB", "msgdatabase.sqlite")

    # Reject send-message frames whose senderId differs from the identified user
    BIND_SENDER_TO_IDENTITY = env_bool("PROCESSDESK_BIND_SENDER", True)

    # Comma separated list for the REST API CORS middleware
    CORS_ORIGINS: List[str] = [
        origin.strip()
        for origin in os.environ.get("PROCESSDESK_CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ]

    @classmethod
    def get_config(cls) -> Dict[str, Any]:
        """Get all configuration values as a dictionary."""
        return {
            "DEFAULT_HOST": cls.DEFAULT_HOST,
            "DEFAULT_WS_PORT": cls.DEFAULT_WS_PORT,
            "DEFAULT_API_PORT": cls.DEFAULT_API_PORT,
            "PING_INTERVAL": cls.PING_INTERVAL,
            "PING_TIMEOUT": cls.PING_TIMEOUT,
            "RECORDS_DB_FILE": cls.RECORDS_DB_FILE,
            "MESSAGES_DB_FILE": cls.MESSAGES_DB_FILE,
            "BIND_SENDER_TO_IDENTITY": cls.BIND_SENDER_TO_IDENTITY,
            "CORS_ORIGINS": list(cls.CORS_ORIGINS),
        }


# Create config instance
config = Config()
