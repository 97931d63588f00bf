"""
policysync configuration.

Pydantic-based settings loaded from POLICYSYNC_ environment variables or a
.env file.
"""

from policysync.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
