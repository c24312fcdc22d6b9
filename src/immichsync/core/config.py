"""Shared configuration classes for immichsync.

The agent configuration is built once at startup (from the config file and
CLI overrides) and handed to every component's constructor. Nothing reads
configuration from global state.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Server URL, API key or watch paths are missing or invalid."""


def normalize_paths(paths: Iterable[str | Path]) -> tuple[Path, ...]:
    """Expand and resolve watch roots, dropping duplicates but keeping order."""
    seen: dict[Path, None] = {}
    for raw in paths:
        if not str(raw).strip():
            continue
        seen.setdefault(Path(raw).expanduser().resolve(), None)
    return tuple(seen)


@dataclass(frozen=True)
class AgentConfig:
    """Configuration for connecting to an Immich server and watching folders.

    Attributes:
        server_url: Base URL of the server (e.g., "https://photos.example.com").
        api_key: API key sent in the x-api-key header.
        paths: Absolute watch roots.
        timeout: Request timeout in seconds.
    """

    server_url: str
    api_key: str
    paths: tuple[Path, ...] = field(default_factory=tuple)
    timeout: float = 30.0

    def __post_init__(self) -> None:
        """Normalize server URL and paths."""
        object.__setattr__(self, "server_url", (self.server_url or "").strip().rstrip("/"))
        object.__setattr__(self, "api_key", (self.api_key or "").strip())
        object.__setattr__(self, "paths", normalize_paths(self.paths))

    @property
    def api_url(self) -> str:
        """Get the API base URL (server URL with the /api prefix)."""
        if self.server_url.endswith("/api"):
            return self.server_url
        return f"{self.server_url}/api"

    def validate(self) -> AgentConfig:
        """Check that server URL, API key and paths are all present.

        Returns:
            The config itself, to allow chaining.

        Raises:
            ConfigurationError: If any of the three is missing.
        """
        missing = []
        if not self.server_url:
            missing.append("server")
        if not self.api_key:
            missing.append("key")
        if not self.paths:
            missing.append("paths")
        if missing:
            raise ConfigurationError(
                f"Server, paths, or key not configured (missing: {', '.join(missing)})"
            )
        if not self.server_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Server URL must start with http:// or https://: {self.server_url}"
            )
        return self

    def with_paths(self, paths: Iterable[str | Path]) -> AgentConfig:
        """Return a copy of this config with different watch roots."""
        return AgentConfig(
            server_url=self.server_url,
            api_key=self.api_key,
            paths=tuple(Path(p) for p in paths),
            timeout=self.timeout,
        )
