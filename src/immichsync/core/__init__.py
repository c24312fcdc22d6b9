"""Core module - Shared configuration."""

from immichsync.core.config import AgentConfig, ConfigurationError

__all__ = [
    "AgentConfig",
    "ConfigurationError",
]
