"""Tests for the Immich HTTP client."""

import json
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from immichsync.client.api import (
    DEFAULT_SUPPORTED_TYPES,
    ChecksumEntry,
    FileReadError,
    ImmichClient,
    ReconciliationAction,
    ReconciliationDecision,
    ServerRejection,
    SupportedTypeSet,
    TransportError,
)
from immichsync.client.metadata import UploadMetadata
from immichsync.core.config import AgentConfig


def make_config(server_url: str = "http://test", api_key: str = "key123") -> AgentConfig:
    """Create an AgentConfig for testing."""
    return AgentConfig(server_url=server_url, api_key=api_key)


def make_metadata(stem: str = "photo") -> UploadMetadata:
    """Create UploadMetadata for testing."""
    stamp = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    return UploadMetadata(
        device_asset_id=stem,
        device_id="CanonEOS R5",
        file_created_at=stamp,
        file_modified_at=stamp,
    )


class TestSupportedTypeSet:
    """Tests for SupportedTypeSet."""

    def test_from_dict(self) -> None:
        """Should normalize extensions from a media-types response."""
        types = SupportedTypeSet.from_dict(
            {"image": [".JPG", "png"], "video": [".mp4"], "sidecar": [".xmp"]}
        )

        assert types.image_extensions == frozenset({".jpg", ".png"})
        assert types.video_extensions == frozenset({".mp4"})
        assert types.sidecar_extensions == frozenset({".xmp"})

    def test_from_dict_requires_image(self) -> None:
        """Should reject a response without an image list."""
        with pytest.raises(KeyError):
            SupportedTypeSet.from_dict({"video": [".mp4"]})

    def test_from_dict_rejects_non_list(self) -> None:
        """Should reject a malformed image list."""
        with pytest.raises(TypeError):
            SupportedTypeSet.from_dict({"image": ".jpg"})

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("IMG_0001.jpg", True),
            ("IMG_0001.JPG", True),
            ("holiday.HeIc", True),
            ("scan.tiff", True),
            ("clip.mp4", False),
            ("photo.xmp", False),
            ("notes.txt", False),
            ("README", False),
        ],
    )
    def test_default_types_match_images_only(self, name: str, expected: bool) -> None:
        """Should match image suffixes case-insensitively."""
        assert DEFAULT_SUPPORTED_TYPES.is_supported(name) is expected

    def test_contains(self) -> None:
        """Should support the in operator for paths."""
        assert Path("/x/a.png") in DEFAULT_SUPPORTED_TYPES
        assert 42 not in DEFAULT_SUPPORTED_TYPES


class TestReconciliationDecision:
    """Tests for ReconciliationDecision."""

    def test_from_dict_accept(self) -> None:
        """Should parse an accept result."""
        decision = ReconciliationDecision.from_dict({"id": "/photos/a.jpg", "action": "accept"})

        assert decision.accepted
        assert decision.local_id == Path("/photos/a.jpg")
        assert decision.remote_asset_id is None
        assert decision.already_trashed_remotely is False

    def test_from_dict_reject(self) -> None:
        """Should parse a reject result with asset details."""
        decision = ReconciliationDecision.from_dict(
            {
                "id": "/photos/a.jpg",
                "action": "reject",
                "reason": "duplicate",
                "assetId": "asset-7",
                "isTrashed": True,
            }
        )

        assert decision.action is ReconciliationAction.REJECT
        assert decision.reason == "duplicate"
        assert decision.remote_asset_id == "asset-7"
        assert decision.already_trashed_remotely is True

    def test_unknown_action_is_reject(self) -> None:
        """Should treat anything but accept as a rejection."""
        decision = ReconciliationDecision.from_dict({"id": "/a.jpg", "action": "maybe"})

        assert not decision.accepted


class TestImmichClient:
    """Tests for ImmichClient."""

    def test_api_url(self) -> None:
        """Should append /api to the server URL once."""
        assert make_config("http://test/").api_url == "http://test/api"
        assert make_config("http://test/api").api_url == "http://test/api"

    def test_ping_success(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should report reachable on the exact pong payload."""
        httpx_mock.add_response(url="http://test/api/server/ping", json={"res": "pong"})

        with ImmichClient(make_config()) as client:
            assert client.ping() is True

        request = httpx_mock.get_request()
        assert request.headers["x-api-key"] == "key123"
        assert request.headers["accept"] == "application/json"

    def test_ping_wrong_payload(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should report unreachable when the body is not the pong payload."""
        httpx_mock.add_response(url="http://test/api/server/ping", json={"res": "ok"})

        with ImmichClient(make_config()) as client:
            assert client.ping() is False

    def test_ping_not_json(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should report unreachable for a non-JSON body."""
        httpx_mock.add_response(url="http://test/api/server/ping", text="<html>proxy</html>")

        with ImmichClient(make_config()) as client:
            assert client.ping() is False

    def test_ping_server_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should report unreachable on a 5xx."""
        httpx_mock.add_response(url="http://test/api/server/ping", status_code=503)

        with ImmichClient(make_config()) as client:
            assert client.ping() is False

    def test_ping_connection_refused(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should report unreachable when the connection fails."""
        httpx_mock.add_exception(
            httpx.ConnectError("Connection refused"), url="http://test/api/server/ping"
        )

        with ImmichClient(make_config()) as client:
            assert client.ping() is False

    def test_fetch_supported_types(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return the server's media types."""
        httpx_mock.add_response(
            url="http://test/api/server/media-types",
            json={"image": [".jpg", ".png"], "video": [".mp4"], "sidecar": [".xmp"]},
        )

        with ImmichClient(make_config()) as client:
            types = client.fetch_supported_types()

        assert types.is_supported("a.PNG")
        assert not types.is_supported("a.heic")

    def test_fetch_supported_types_falls_back_on_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should use the built-in types when the server fails."""
        httpx_mock.add_response(url="http://test/api/server/media-types", status_code=500)

        with ImmichClient(make_config()) as client:
            assert client.fetch_supported_types() == DEFAULT_SUPPORTED_TYPES

    def test_fetch_supported_types_falls_back_on_garbage(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should use the built-in types when the response is malformed."""
        httpx_mock.add_response(url="http://test/api/server/media-types", json=["jpg"])

        with ImmichClient(make_config()) as client:
            assert client.fetch_supported_types() == DEFAULT_SUPPORTED_TYPES

    def test_reconcile(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should send all checksums in one request and parse decisions."""
        httpx_mock.add_response(
            url="http://test/api/assets/bulk-upload-check",
            method="POST",
            json={
                "results": [
                    {"id": "/p/a.jpg", "action": "accept"},
                    {"id": "/p/b.jpg", "action": "reject", "reason": "duplicate"},
                ]
            },
        )
        entries = [
            ChecksumEntry(digest="aaa=", local_id=Path("/p/a.jpg")),
            ChecksumEntry(digest="bbb=", local_id=Path("/p/b.jpg")),
        ]

        with ImmichClient(make_config()) as client:
            decisions = client.reconcile(entries)

        body = json.loads(httpx_mock.get_request().content)
        assert body == {
            "assets": [
                {"checksum": "aaa=", "id": "/p/a.jpg"},
                {"checksum": "bbb=", "id": "/p/b.jpg"},
            ]
        }
        assert [d.accepted for d in decisions] == [True, False]
        assert decisions[1].reason == "duplicate"

    def test_reconcile_empty_sends_nothing(self) -> None:
        """Should not contact the server for an empty list."""
        with ImmichClient(make_config()) as client:
            assert client.reconcile([]) == []

    def test_reconcile_garbled_response(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should treat an unreadable response as no accepted files."""
        httpx_mock.add_response(
            url="http://test/api/assets/bulk-upload-check",
            method="POST",
            text="not json",
        )

        with ImmichClient(make_config()) as client:
            decisions = client.reconcile([ChecksumEntry("aaa=", Path("/p/a.jpg"))])

        assert decisions == []

    def test_reconcile_server_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise TransportError on a 5xx."""
        httpx_mock.add_response(
            url="http://test/api/assets/bulk-upload-check",
            method="POST",
            status_code=502,
        )

        with ImmichClient(make_config()) as client:
            with pytest.raises(TransportError) as exc_info:
                client.reconcile([ChecksumEntry("aaa=", Path("/p/a.jpg"))])

        assert exc_info.value.status_code == 502

    def test_reconcile_unauthorized(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise ServerRejection for a 4xx with a JSON body."""
        httpx_mock.add_response(
            url="http://test/api/assets/bulk-upload-check",
            method="POST",
            status_code=401,
            json={"message": "Invalid API key", "statusCode": 401},
        )

        with ImmichClient(make_config()) as client:
            with pytest.raises(ServerRejection, match="Invalid API key"):
                client.reconcile([ChecksumEntry("aaa=", Path("/p/a.jpg"))])

    def test_upload(self, tmp_path: Path) -> None:
        """Should send the file and metadata as one multipart request."""
        photo = tmp_path / "photo.jpg"
        photo.write_bytes(b"\xff\xd8 fake jpeg \xff\xd9")
        seen: dict[str, object] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["method"] = request.method
            seen["content_type"] = request.headers["content-type"]
            seen["key"] = request.headers["x-api-key"]
            seen["body"] = request.read()
            return httpx.Response(201, json={"id": "asset-1", "status": "created"})

        client = ImmichClient(make_config(), transport=httpx.MockTransport(handler))
        with client:
            body = client.upload(photo, make_metadata())

        assert json.loads(body) == {"id": "asset-1", "status": "created"}
        assert seen["url"] == "http://test/api/assets"
        assert seen["method"] == "POST"
        assert str(seen["content_type"]).startswith("multipart/form-data")
        assert seen["key"] == "key123"
        payload = seen["body"]
        assert isinstance(payload, bytes)
        assert b'name="assetData"; filename="photo.jpg"' in payload
        assert b"fake jpeg" in payload
        assert b'name="deviceAssetId"' in payload
        assert b"CanonEOS R5" in payload
        assert b"2024-05-06T07:08:09+00:00" in payload

    def test_upload_rejected(self, httpx_mock, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should raise ServerRejection when the server refuses the asset."""
        photo = tmp_path / "photo.jpg"
        photo.write_bytes(b"data")
        httpx_mock.add_response(
            url="http://test/api/assets",
            method="POST",
            status_code=400,
            json={"message": ["deviceAssetId should not be empty"], "error": "Bad Request"},
        )

        with ImmichClient(make_config()) as client:
            with pytest.raises(ServerRejection, match="deviceAssetId") as exc_info:
                client.upload(photo, make_metadata())

        assert exc_info.value.status_code == 400

    def test_upload_proxy_error_page(self, httpx_mock, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should treat a 4xx without a JSON body as a transport problem."""
        photo = tmp_path / "photo.jpg"
        photo.write_bytes(b"data")
        httpx_mock.add_response(
            url="http://test/api/assets",
            method="POST",
            status_code=413,
            text="<html>Request Entity Too Large</html>",
        )

        with ImmichClient(make_config()) as client:
            with pytest.raises(TransportError):
                client.upload(photo, make_metadata())

    def test_upload_connection_error(self, httpx_mock, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should raise TransportError when the connection drops."""
        photo = tmp_path / "photo.jpg"
        photo.write_bytes(b"data")
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"), url="http://test/api/assets")

        with ImmichClient(make_config()) as client:
            with pytest.raises(TransportError):
                client.upload(photo, make_metadata())

    def test_upload_missing_file(self, tmp_path: Path) -> None:
        """Should raise FileReadError without contacting the server."""
        with ImmichClient(make_config()) as client:
            with pytest.raises(FileReadError):
                client.upload(tmp_path / "gone.jpg", make_metadata())
