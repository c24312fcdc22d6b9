"""Upload metadata extraction.

This module provides:
- UploadMetadata: Descriptive form fields sent along with an asset
- extract_metadata: Build UploadMetadata from EXIF tags and file stats

EXIF is read with Pillow. Formats Pillow cannot open (RAW, video, SVG)
simply have no embedded metadata: missing tags degrade to defaults and
never abort an upload.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from PIL import ExifTags, Image, UnidentifiedImageError

from immichsync.client.api import FileReadError, MetadataExtractionError

logger = logging.getLogger(__name__)

# deviceId used when a file carries no camera make/model
DEFAULT_DEVICE_ID = "immichsync"

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"


@dataclass(frozen=True)
class UploadMetadata:
    """Descriptive fields of an asset upload.

    Attributes:
        device_asset_id: Stable per-device id (file name without extension).
        device_id: Capturing device tag (camera make + model).
        file_created_at: Capture time.
        file_modified_at: Filesystem modification time.
    """

    device_asset_id: str
    device_id: str
    file_created_at: datetime
    file_modified_at: datetime

    def to_form(self) -> dict[str, str]:
        """Convert to multipart form fields (RFC3339 timestamps)."""
        return {
            "deviceAssetId": self.device_asset_id,
            "deviceId": self.device_id,
            "fileCreatedAt": self.file_created_at.isoformat(timespec="seconds"),
            "fileModifiedAt": self.file_modified_at.isoformat(timespec="seconds"),
        }


@dataclass(frozen=True)
class CaptureInfo:
    """Tags read from a file's embedded metadata. All fields optional."""

    make: str = ""
    model: str = ""
    captured_at: datetime | None = None


def _clean(value: object) -> str:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return str(value).replace("\x00", "").strip() if value is not None else ""


def _parse_offset(value: str) -> timezone | None:
    # OffsetTimeOriginal looks like "+02:00"
    value = value.strip()
    if len(value) != 6 or value[0] not in "+-" or value[3] != ":":
        return None
    try:
        hours, minutes = int(value[1:3]), int(value[4:6])
    except ValueError:
        return None
    sign = 1 if value[0] == "+" else -1
    return timezone(sign * timedelta(hours=hours, minutes=minutes))


def parse_exif_datetime(value: str, offset: str = "") -> datetime | None:
    """Parse an EXIF timestamp.

    Args:
        value: Timestamp in "YYYY:MM:DD HH:MM:SS" form.
        offset: Optional OffsetTime* tag value ("+HH:MM").

    Returns:
        Timezone-aware datetime (local time zone unless an offset is given),
        or None if the value is empty or malformed.
    """
    value = _clean(value)
    if not value:
        return None
    try:
        parsed = datetime.strptime(value[:19], EXIF_DATETIME_FORMAT)
    except ValueError:
        return None
    tz = _parse_offset(_clean(offset)) if offset else None
    if tz is not None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone()


def read_capture_info(path: Path) -> CaptureInfo:
    """Read camera make/model and capture time from a file's EXIF.

    Args:
        path: File to inspect.

    Returns:
        CaptureInfo, empty when the format has no readable EXIF.

    Raises:
        FileReadError: If the file cannot be opened.
        MetadataExtractionError: If the EXIF block is present but corrupt.
    """
    try:
        with Image.open(path) as image:
            try:
                exif = image.getexif()
                exif_ifd = exif.get_ifd(ExifTags.IFD.Exif)
            except (SyntaxError, ValueError, TypeError, KeyError) as e:
                raise MetadataExtractionError(f"Malformed EXIF in {path}: {e}") from e
    except (UnidentifiedImageError, Image.DecompressionBombError):
        logger.debug("No readable EXIF in %s", path)
        return CaptureInfo()
    except OSError as e:
        raise FileReadError(f"Cannot open {path}: {e}") from e

    captured_at = parse_exif_datetime(
        exif_ifd.get(ExifTags.Base.DateTimeOriginal, ""),
        exif_ifd.get(ExifTags.Base.OffsetTimeOriginal, ""),
    ) or parse_exif_datetime(
        exif.get(ExifTags.Base.DateTime, ""),
        exif_ifd.get(ExifTags.Base.OffsetTime, ""),
    )

    return CaptureInfo(
        make=_clean(exif.get(ExifTags.Base.Make)),
        model=_clean(exif.get(ExifTags.Base.Model)),
        captured_at=captured_at,
    )


def extract_metadata(path: str | Path) -> UploadMetadata:
    """Build upload metadata for a file.

    Args:
        path: File to describe.

    Returns:
        UploadMetadata with EXIF values where present, defaults otherwise.

    Raises:
        FileReadError: If the file cannot be stat'ed or opened.
        MetadataExtractionError: If the EXIF block is corrupt.
    """
    path = Path(path)
    try:
        stat = os.stat(path)
    except OSError as e:
        raise FileReadError(f"Cannot stat {path}: {e}") from e

    modified_at = datetime.fromtimestamp(stat.st_mtime).astimezone()
    info = read_capture_info(path)

    return UploadMetadata(
        device_asset_id=path.stem,
        device_id=(info.make + info.model) or DEFAULT_DEVICE_ID,
        file_created_at=info.captured_at or modified_at,
        file_modified_at=modified_at,
    )
