"""
Tests for the two-stage image upload.

Tests cover:
- Derivative size bounds
- Progress scale (0.8 split, 1.0 only at the end)
- Failure at either stage (UploadFailure, progress reset)
- Local blob store and Pillow codec
- POST /uploads/images
"""

import io

import pytest
from PIL import Image

from app.errors import Unauthenticated, UploadFailure
from app.uploads import (
    LocalBlobStore,
    PillowImageCodec,
    UploadCoordinator,
    derivative_size,
)
from conftest import ALICE, auth_headers


def png_bytes(width, height):
    output = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 30, 30)).save(output, format="PNG")
    return output.getvalue()


class FakeCodec:
    """Returns a payload whose size is the requested edge, for easy assertions."""

    def derive(self, data, max_edge, quality):
        return b"x" * max_edge


class FakeBlobStore:
    def __init__(self, fail_on=None, steps=4):
        self.fail_on = fail_on
        self.steps = steps
        self.stored = {}

    def put(self, path, data, content_type, on_progress):
        total = len(data)
        for i in range(self.steps + 1):
            on_progress(total * i // self.steps, total)
            if self.fail_on and self.fail_on in path and i == self.steps // 2:
                raise IOError("connection reset")
        self.stored[path] = data
        return path

    def url_for(self, ref):
        return f"https://blobs.example.com/{ref}"


class TestDerivativeSize:

    @pytest.mark.parametrize(
        "size, max_edge, expected",
        [
            ((100, 50), 200, (100, 50)),
            ((200, 200), 200, (200, 200)),
            ((4000, 3000), 1920, (1920, 1440)),
            ((3000, 4000), 1920, (1440, 1920)),
            ((1000, 1000), 200, (200, 200)),
            ((5000, 10), 200, (200, 1)),
        ],
    )
    def test_bounds(self, size, max_edge, expected):
        assert derivative_size(*size, max_edge) == expected


class TestUploadCoordinator:

    def test_success_returns_both_urls(self):
        store = FakeBlobStore()
        coordinator = UploadCoordinator(FakeCodec(), store)

        result = coordinator.upload(ALICE, b"raw image")

        assert result.image_url.endswith("_full.jpg")
        assert result.thumbnail_url.endswith("_thumb.jpg")
        assert "images/messages/alice/" in result.image_url
        full_path = next(p for p in store.stored if p.endswith("_full.jpg"))
        thumb_path = next(p for p in store.stored if p.endswith("_thumb.jpg"))
        assert len(store.stored[full_path]) == 1920
        assert len(store.stored[thumb_path]) == 200

    def test_progress_scale(self):
        progress = []
        coordinator = UploadCoordinator(FakeCodec(), FakeBlobStore())

        coordinator.upload(ALICE, b"raw image", progress.append)

        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert progress.count(1.0) == 1
        assert 0.8 in progress
        # Thumbnail transfer stays strictly below 1.0
        assert all(value < 1.0 for value in progress[:-1])
        full_stage = [value for value in progress if value <= 0.8]
        assert full_stage == pytest.approx([0.2, 0.4, 0.6, 0.8])

    def test_thumbnail_failure_aborts_and_resets(self):
        progress = []
        store = FakeBlobStore(fail_on="_thumb")
        coordinator = UploadCoordinator(FakeCodec(), store)

        with pytest.raises(UploadFailure):
            coordinator.upload(ALICE, b"raw image", progress.append)

        assert max(progress) == pytest.approx(0.9)
        assert 0.8 in progress
        assert 1.0 not in progress
        assert progress[-1] == 0.0

    def test_full_size_failure_aborts(self):
        progress = []
        coordinator = UploadCoordinator(FakeCodec(), FakeBlobStore(fail_on="_full"))

        with pytest.raises(UploadFailure):
            coordinator.upload(ALICE, b"raw image", progress.append)

        assert max(progress) < 0.8
        assert progress[-1] == 0.0

    def test_url_resolution_failure_aborts(self):
        class UnresolvableStore(FakeBlobStore):
            def url_for(self, ref):
                raise FileNotFoundError(ref)

        progress = []
        coordinator = UploadCoordinator(FakeCodec(), UnresolvableStore())

        with pytest.raises(UploadFailure):
            coordinator.upload(ALICE, b"raw image", progress.append)

        assert 1.0 not in progress
        assert progress[-1] == 0.0

    def test_requires_identity(self):
        coordinator = UploadCoordinator(FakeCodec(), FakeBlobStore())

        with pytest.raises(Unauthenticated):
            coordinator.upload(None, b"raw image")


class TestLocalBlobStore:

    def test_put_and_resolve(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "/blobs", chunk_size=4)
        transfers = []

        ref = store.put("images/a.jpg", b"0123456789", "image/jpeg", lambda sent, total: transfers.append(sent))

        assert (tmp_path / "images" / "a.jpg").read_bytes() == b"0123456789"
        assert transfers == [0, 4, 8, 10]
        assert store.url_for(ref) == "/blobs/images/a.jpg"

    def test_missing_blob_does_not_resolve(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "/blobs")

        with pytest.raises(FileNotFoundError):
            store.url_for("images/missing.jpg")

    def test_rejects_paths_outside_root(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "root"), "/blobs")

        with pytest.raises(ValueError):
            store.put("../escape.jpg", b"data", "image/jpeg", lambda sent, total: None)


class TestPillowImageCodec:

    def test_bounds_long_edge_and_reencodes_jpeg(self):
        derived = PillowImageCodec().derive(png_bytes(400, 100), 200, 70)

        image = Image.open(io.BytesIO(derived))
        assert image.format == "JPEG"
        assert image.size == (200, 50)

    def test_small_image_keeps_size(self):
        derived = PillowImageCodec().derive(png_bytes(120, 80), 200, 70)
        assert Image.open(io.BytesIO(derived)).size == (120, 80)

    def test_undecodable_input(self):
        with pytest.raises(UploadFailure):
            PillowImageCodec().derive(b"not an image", 200, 70)


class TestUploadRoute:

    def test_upload_image(self, client):
        response = client.post(
            "/uploads/images", content=png_bytes(300, 300), headers=auth_headers(ALICE)
        )

        assert response.status_code == 201
        data = response.json()
        assert data["image_url"].startswith("/blobs/images/messages/alice/")
        assert data["thumbnail_url"].endswith("_thumb.jpg")

        thumbnail = client.get(data["thumbnail_url"])
        assert thumbnail.status_code == 200
        assert Image.open(io.BytesIO(thumbnail.content)).size == (200, 200)

    def test_upload_then_send_mixed_message(self, client):
        urls = client.post(
            "/uploads/images", content=png_bytes(64, 64), headers=auth_headers(ALICE)
        ).json()

        response = client.post(
            "/messages",
            json={"text": "look", **urls},
            headers=auth_headers(ALICE),
        )

        assert response.status_code == 201
        assert response.json()["type"] == "mixed"

    def test_failed_upload_creates_no_message(self, client):
        response = client.post(
            "/uploads/images", content=b"not an image", headers=auth_headers(ALICE)
        )

        assert response.status_code == 502
        assert client.get("/messages").json() == []

    def test_upload_requires_identity(self, client):
        response = client.post("/uploads/images", content=png_bytes(10, 10))
        assert response.status_code == 401
