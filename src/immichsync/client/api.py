"""HTTP client for the Immich server API.

This module provides:
- ImmichClient: Stateless wrapper around the four endpoints the agent uses
  (ping, media types, bulk upload check, asset upload)
- ChecksumEntry, ReconciliationDecision, SupportedTypeSet: Request/response types
- DEFAULT_SUPPORTED_TYPES: Built-in media types used when the server cannot be asked
- The error taxonomy shared by the sync components

The client never retries. Retry policy belongs to the connectivity monitor
and the watch loop.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from immichsync.client.metadata import UploadMetadata
    from immichsync.core.config import AgentConfig

logger = logging.getLogger(__name__)

PING_PAYLOAD = {"res": "pong"}


class ImmichError(Exception):
    """Base exception for agent errors."""


class TransportError(ImmichError):
    """Network failure, timeout or transient (5xx / unexpected) response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServerRejection(ImmichError):
    """Well-formed response in which the server refuses the request."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class FileReadError(ImmichError):
    """Local file could not be opened or read."""


class MetadataExtractionError(ImmichError):
    """Embedded metadata is present but malformed."""


@dataclass(frozen=True)
class ChecksumEntry:
    """Content digest of a local file.

    Attributes:
        digest: Base64-encoded SHA-1 of the file bytes.
        local_id: Absolute local path, used as the reconciliation id.
    """

    digest: str
    local_id: Path

    def to_dict(self) -> dict[str, str]:
        """Convert to the bulk-upload-check request format."""
        return {"checksum": self.digest, "id": str(self.local_id)}


class ReconciliationAction(Enum):
    """Server verdict for a submitted checksum."""

    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(frozen=True)
class ReconciliationDecision:
    """One result of the bulk-upload-check query."""

    action: ReconciliationAction
    local_id: Path
    remote_asset_id: str | None = None
    already_trashed_remotely: bool = False
    reason: str = ""

    @property
    def accepted(self) -> bool:
        """Check if the server wants this file uploaded."""
        return self.action is ReconciliationAction.ACCEPT

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReconciliationDecision:
        """Create from API response dictionary.

        Any action other than "accept" is treated as a rejection.

        Raises:
            KeyError: If the id field is missing.
        """
        action = (
            ReconciliationAction.ACCEPT
            if data.get("action") == "accept"
            else ReconciliationAction.REJECT
        )
        return cls(
            action=action,
            local_id=Path(data["id"]),
            remote_asset_id=data.get("assetId"),
            already_trashed_remotely=bool(data.get("isTrashed", False)),
            reason=data.get("reason") or "",
        )


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


@dataclass(frozen=True)
class SupportedTypeSet:
    """Extensions the server accepts, split by media kind.

    Immutable for the process lifetime. Matching is case-insensitive and
    depends only on the file suffix.
    """

    image_extensions: frozenset[str]
    video_extensions: frozenset[str] = frozenset()
    sidecar_extensions: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SupportedTypeSet:
        """Create from a media-types response.

        Raises:
            KeyError: If the image list is missing.
            TypeError: If a list is not a list of strings.
        """

        def _extensions(key: str, required: bool = False) -> frozenset[str]:
            values = data[key] if required else data.get(key, [])
            if not isinstance(values, list):
                raise TypeError(f"Expected a list for {key!r}")
            return frozenset(_normalize_extension(str(v)) for v in values if v)

        return cls(
            image_extensions=_extensions("image", required=True),
            video_extensions=_extensions("video"),
            sidecar_extensions=_extensions("sidecar"),
        )

    def is_supported(self, path: str | Path) -> bool:
        """Check if a file is an image the agent uploads.

        Args:
            path: File name or path.

        Returns:
            True if the lowercased suffix is one of the image extensions.
        """
        return Path(path).suffix.lower() in self.image_extensions

    def __contains__(self, path: object) -> bool:
        return isinstance(path, (str, Path)) and self.is_supported(path)


# Canonical fallback used whenever the server cannot be asked for its media
# types. Mirrors what Immich advertises out of the box.
DEFAULT_SUPPORTED_TYPES = SupportedTypeSet(
    image_extensions=frozenset({
        ".3fr", ".ari", ".arw", ".cap", ".cin", ".cr2", ".cr3", ".crw",
        ".dcr", ".dng", ".erf", ".fff", ".iiq", ".k25", ".kdc", ".mrw",
        ".nef", ".nrw", ".orf", ".ori", ".pef", ".psd", ".raf", ".raw",
        ".rw2", ".rwl", ".sr2", ".srf", ".srw", ".x3f", ".avif", ".bmp",
        ".gif", ".heic", ".heif", ".hif", ".insp", ".jpe", ".jpeg", ".jpg",
        ".jxl", ".png", ".svg", ".tif", ".tiff", ".webp",
    }),
    video_extensions=frozenset({
        ".3gp", ".3gpp", ".avi", ".flv", ".insv", ".m2ts", ".m4v", ".mkv",
        ".mov", ".mp4", ".mpe", ".mpeg", ".mpg", ".mts", ".webm", ".wmv",
    }),
    sidecar_extensions=frozenset({".xmp"}),
)


class ImmichClient:
    """HTTP client for the Immich server API."""

    def __init__(
        self,
        config: AgentConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Agent configuration (server URL, API key, timeout).
            transport: Optional httpx transport, for tests.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.api_url,
            timeout=config.timeout,
            headers={
                "x-api-key": config.api_key,
                "Accept": "application/json",
            },
            transport=transport,
        )

    @property
    def server_url(self) -> str:
        """Get the server base URL."""
        return self._config.server_url

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> ImmichClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to TransportError."""
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Raise the appropriate exception for a non-2xx response.

        4xx responses carrying a JSON body are server rejections; everything
        else (5xx, HTML error pages from proxies) is a transport problem.
        """
        if response.is_success:
            return response

        if 400 <= response.status_code < 500:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                detail = body.get("message") or body.get("error") or "Request rejected"
                if isinstance(detail, list):
                    detail = "; ".join(str(d) for d in detail)
                raise ServerRejection(str(detail), response.status_code)

        raise TransportError(
            f"Unexpected status {response.status_code} from {response.request.url}",
            response.status_code,
        )

    # === Server operations ===

    def ping(self) -> bool:
        """Check if the server is reachable.

        Returns:
            True only if the body is exactly the expected pong payload.
        """
        logger.debug("Checking connectivity")
        try:
            response = self._client.get("/server/ping")
            ok = response.status_code == 200 and response.json() == PING_PAYLOAD
        except (httpx.HTTPError, ValueError):
            ok = False
        if ok:
            logger.debug("Connectivity exists")
        return ok

    def fetch_supported_types(self) -> SupportedTypeSet:
        """Get the extensions the server accepts.

        Returns:
            Server-advertised types, or DEFAULT_SUPPORTED_TYPES if the
            query fails in any way.
        """
        try:
            response = self._handle_response(self._request("GET", "/server/media-types"))
            types = SupportedTypeSet.from_dict(response.json())
        except (ImmichError, ValueError, KeyError, TypeError) as e:
            logger.warning("Could not fetch supported media types (%s), using defaults", e)
            return DEFAULT_SUPPORTED_TYPES
        logger.info(
            "Server supports %d image, %d video and %d sidecar extensions",
            len(types.image_extensions),
            len(types.video_extensions),
            len(types.sidecar_extensions),
        )
        return types

    # === Asset operations ===

    def reconcile(self, entries: list[ChecksumEntry]) -> list[ReconciliationDecision]:
        """Ask the server which local files it does not have yet.

        Args:
            entries: Checksums of local files, sent in one request.

        Returns:
            One decision per entry the server answered for. A garbled
            response yields an empty list.

        Raises:
            TransportError: If the request cannot complete.
            ServerRejection: If the server refuses the request.
        """
        if not entries:
            return []

        response = self._handle_response(
            self._request(
                "POST",
                "/assets/bulk-upload-check",
                json={"assets": [entry.to_dict() for entry in entries]},
            )
        )

        try:
            results = response.json()["results"]
            return [ReconciliationDecision.from_dict(r) for r in results]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Unreadable reconciliation response, treating as no accepted files: %s", e)
            return []

    def upload(self, path: str | Path, metadata: UploadMetadata) -> bytes:
        """Upload a single asset as a multipart request.

        Args:
            path: Local file to upload.
            metadata: Descriptive fields sent with the file.

        Returns:
            Raw response body.

        Raises:
            FileReadError: If the file cannot be opened.
            TransportError: If the request cannot complete.
            ServerRejection: If the server refuses the asset.
        """
        path = Path(path)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"

        try:
            f = open(path, "rb")
        except OSError as e:
            raise FileReadError(f"Cannot open {path}: {e}") from e

        with f:
            try:
                response = self._request(
                    "POST",
                    "/assets",
                    data=metadata.to_form(),
                    files={"assetData": (path.name, f, content_type)},
                )
            except OSError as e:
                # Read failure while streaming the file body
                raise FileReadError(f"Cannot read {path}: {e}") from e

        return self._handle_response(response).content
