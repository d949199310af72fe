"""Tests for cardsync.storage.photos.LocalPhotoStore."""

from __future__ import annotations

import base64

import httpx
import pytest

from cardsync.storage.photos import (
    MAX_PHOTO_SIZE,
    LocalPhotoStore,
    decode_photo_data,
    detect_image_extension,
    is_photo_filename,
)

pytestmark = pytest.mark.unit

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 8
GIF = b"GIF89a" + b"\x00" * 8
WEBP = b"RIFF\x00\x00\x00\x00WEBPVP8 "


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


class TestHelpers:
    @pytest.mark.parametrize(
        ("data", "ext"),
        [(PNG, "png"), (JPEG, "jpg"), (GIF, "gif"), (WEBP, "webp"), (b"unknown", "jpg")],
    )
    def test_detect_image_extension(self, data, ext):
        assert detect_image_extension(data) == ext

    def test_decode_data_uri_uses_mime_type(self):
        assert decode_photo_data(f"data:image/gif;base64,{_b64(PNG)}") == (PNG, "gif")

    def test_decode_bare_base64_sniffs_type(self):
        encoded = _b64(PNG)
        assert decode_photo_data(f"{encoded[:10]}\n {encoded[10:]}") == (PNG, "png")

    def test_decode_url_is_left_for_download(self):
        assert decode_photo_data("https://example.com/a.png") is None

    def test_decode_invalid_base64(self):
        with pytest.raises(ValueError, match="Invalid base64"):
            decode_photo_data("not base64!")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("abc.png", True),
            ("data:image/png;base64,AAAA", False),
            ("https://example.com/a.png", False),
            (None, False),
            ("", False),
        ],
    )
    def test_is_photo_filename(self, value, expected):
        assert is_photo_filename(value) is expected


class TestLocalPhotoStore:
    async def test_saves_data_uri(self, tmp_path):
        store = LocalPhotoStore(tmp_path)

        filename = await store.save("user-1", "person-1", f"data:image/png;base64,{_b64(PNG)}")

        assert filename == "person-1.png"
        assert store.path_for("user-1", filename).read_bytes() == PNG

    async def test_replaces_previous_photo(self, tmp_path):
        store = LocalPhotoStore(tmp_path)
        await store.save("user-1", "person-1", _b64(PNG))

        filename = await store.save("user-1", "person-1", _b64(JPEG))

        assert filename == "person-1.jpg"
        assert sorted(p.name for p in (tmp_path / "user-1").iterdir()) == ["person-1.jpg"]

    async def test_oversized_photo_is_rejected(self, tmp_path):
        store = LocalPhotoStore(tmp_path)
        huge = _b64(PNG + b"\x00" * MAX_PHOTO_SIZE)

        assert await store.save("user-1", "person-1", huge) is None
        assert not (tmp_path / "user-1").exists()

    async def test_invalid_data_returns_none(self, tmp_path):
        assert await LocalPhotoStore(tmp_path).save("user-1", "person-1", "%%%") is None

    async def test_path_traversal_is_refused(self, tmp_path):
        store = LocalPhotoStore(tmp_path / "photos")

        assert await store.save("../escape", "person-1", _b64(PNG)) is None
        assert not (tmp_path / "escape").exists()

    async def test_downloads_urls(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == "https://cdn.example.com/ada"
            return httpx.Response(200, content=PNG, headers={"content-type": "image/webp"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            store = LocalPhotoStore(tmp_path, http_client=client)
            filename = await store.save("user-1", "person-1", "https://cdn.example.com/ada")

        assert filename == "person-1.webp"

    async def test_download_failure_returns_none(self, tmp_path):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        async with httpx.AsyncClient(transport=transport) as client:
            store = LocalPhotoStore(tmp_path, http_client=client)
            assert await store.save("user-1", "person-1", "https://cdn.example.com/x") is None

    async def test_declared_oversize_download(self, tmp_path):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200, content=PNG, headers={"content-length": str(MAX_PHOTO_SIZE + 1)}
            )
        )
        async with httpx.AsyncClient(transport=transport) as client:
            store = LocalPhotoStore(tmp_path, http_client=client)
            assert await store.save("user-1", "person-1", "https://cdn.example.com/x") is None

    async def test_delete_person_photos(self, tmp_path):
        store = LocalPhotoStore(tmp_path)
        await store.save("user-1", "person-1", _b64(PNG))
        await store.save("user-1", "person-2", _b64(PNG))

        await store.delete_person_photos("user-1", "person-1")
        await store.delete_person_photos("user-2", "person-1")

        assert [p.name for p in (tmp_path / "user-1").iterdir()] == ["person-2.png"]
