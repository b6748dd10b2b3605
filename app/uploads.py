"""
Two-stage image upload.

An image is re-encoded into a full-size derivative and a thumbnail, and
both are uploaded as separate blobs. Progress is reported on one 0.0-1.0
scale: the full-size transfer covers 0.0-0.8 and the thumbnail the rest.
1.0 is reported only once both URLs are resolved. Any failure aborts the
whole upload with UploadFailure and resets progress to 0.0; the message
itself is sent by the client afterwards, so a failed upload never leaves
a partial message behind.
"""

import io
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Protocol, Tuple

from PIL import Image, UnidentifiedImageError

from app.config import settings
from app.errors import Unauthenticated, UploadFailure
from app.identity import Identity
from app.metrics import record_upload_outcome
from app.utils import utc_now

logger = logging.getLogger(__name__)

FULL_SIZE_SHARE = 0.8

ProgressCallback = Callable[[float], None]
TransferCallback = Callable[[int, int], None]


def derivative_size(width: int, height: int, max_edge: int) -> Tuple[int, int]:
    """
    Size of a derivative whose long edge is at most `max_edge`, keeping the
    aspect ratio. Images already within bounds keep their size.
    """
    if width <= max_edge and height <= max_edge:
        return width, height
    if width > height:
        return max_edge, max(1, round(height * max_edge / width))
    return max(1, round(width * max_edge / height)), max_edge


class ImageCodec(Protocol):
    def derive(self, data: bytes, max_edge: int, quality: int) -> bytes:
        """Decode `data` and return a re-encoded, size-bounded JPEG."""
        ...


class BlobStore(Protocol):
    def put(self, path: str, data: bytes, content_type: str, on_progress: TransferCallback) -> str:
        """Store `data` under `path`, reporting (bytes_sent, total). Returns a reference."""
        ...

    def url_for(self, ref: str) -> str:
        ...


class PillowImageCodec:
    def derive(self, data: bytes, max_edge: int, quality: int) -> bytes:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise UploadFailure(f"could not decode image: {e}") from e

        size = derivative_size(image.width, image.height, max_edge)
        if size != image.size:
            image = image.resize(size)
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")

        output = io.BytesIO()
        image.save(output, format="JPEG", quality=quality)
        logger.debug(f"Derived {size[0]}x{size[1]} JPEG ({output.tell()} bytes, quality={quality})")
        return output.getvalue()


class LocalBlobStore:
    """
    Blob store on the local filesystem, served by the app under base_url.

    Blobs are written to a temporary file and moved into place, so a failed
    transfer never leaves a readable partial blob.
    """

    def __init__(self, root: str, base_url: str, chunk_size: int = 64 * 1024):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size

    def _target(self, ref: str) -> Path:
        target = (self.root / ref).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"blob path escapes store root: {ref}")
        return target

    def put(self, path: str, data: bytes, content_type: str, on_progress: TransferCallback) -> str:
        target = self._target(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        total = len(data)
        logger.info(f"Uploading blob {path} ({total} bytes, {content_type})")

        fd, tmp_name = tempfile.mkstemp(dir=target.parent, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as tmp:
                sent = 0
                on_progress(sent, total)
                while sent < total:
                    chunk = data[sent:sent + self.chunk_size]
                    tmp.write(chunk)
                    sent += len(chunk)
                    on_progress(sent, total)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return path

    def url_for(self, ref: str) -> str:
        if not self._target(ref).is_file():
            raise FileNotFoundError(f"blob not found: {ref}")
        return f"{self.base_url}/{ref}"


class _ProgressReporter:
    """Maps per-stage transfer progress onto one monotone 0.0-1.0 scale."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self._last = 0.0

    def _emit(self, value: float) -> None:
        if self._callback is not None:
            self._callback(value)

    def stage(self, start: float, end: float) -> TransferCallback:
        def on_transfer(sent: int, total: int) -> None:
            fraction = min(sent / total, 1.0) if total else 1.0
            # 1.0 is reserved for complete(), after the URLs resolve
            if end >= 1.0 and fraction >= 1.0:
                return
            value = min(start + (end - start) * fraction, end)
            if value >= 1.0 or value <= self._last:
                return
            self._last = value
            self._emit(value)

        return on_transfer

    def complete(self) -> None:
        self._last = 1.0
        self._emit(1.0)

    def reset(self) -> None:
        self._last = 0.0
        self._emit(0.0)


@dataclass
class UploadResult:
    image_url: str
    thumbnail_url: str


class UploadCoordinator:
    def __init__(
        self,
        codec: ImageCodec,
        blob_store: BlobStore,
        clock: Callable[[], datetime] = utc_now,
        full_size_max_edge: Optional[int] = None,
        full_size_quality: Optional[int] = None,
        thumbnail_max_edge: Optional[int] = None,
        thumbnail_quality: Optional[int] = None,
    ):
        self.codec = codec
        self.blob_store = blob_store
        self.clock = clock
        self.full_size_max_edge = full_size_max_edge or settings.FULL_SIZE_MAX_EDGE
        self.full_size_quality = full_size_quality or settings.FULL_SIZE_QUALITY
        self.thumbnail_max_edge = thumbnail_max_edge or settings.THUMBNAIL_MAX_EDGE
        self.thumbnail_quality = thumbnail_quality or settings.THUMBNAIL_QUALITY

    def upload(
        self,
        identity: Optional[Identity],
        data: bytes,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """
        Derive, upload and resolve both image derivatives.

        Raises:
            Unauthenticated: no identity attached
            UploadFailure: decoding, either transfer, or URL resolution failed
        """
        if identity is None:
            raise Unauthenticated("authentication required to upload images")

        progress = _ProgressReporter(on_progress)
        stamp = int(self.clock().timestamp() * 1000)
        base_path = f"images/messages/{identity.user_id}/{stamp}"
        logger.info(f"Starting image upload for {identity.user_id}: {len(data)} bytes")

        try:
            full_size = self.codec.derive(data, self.full_size_max_edge, self.full_size_quality)
            thumbnail = self.codec.derive(data, self.thumbnail_max_edge, self.thumbnail_quality)

            full_ref = self.blob_store.put(
                f"{base_path}_full.jpg", full_size, "image/jpeg", progress.stage(0.0, FULL_SIZE_SHARE)
            )
            thumb_ref = self.blob_store.put(
                f"{base_path}_thumb.jpg", thumbnail, "image/jpeg", progress.stage(FULL_SIZE_SHARE, 1.0)
            )

            result = UploadResult(
                image_url=self.blob_store.url_for(full_ref),
                thumbnail_url=self.blob_store.url_for(thumb_ref),
            )
        except UploadFailure as e:
            logger.error(f"Image upload failed for {identity.user_id}: {e}")
            progress.reset()
            record_upload_outcome("failure")
            raise
        except Exception as e:
            logger.error(f"Image upload failed for {identity.user_id}: {e}")
            progress.reset()
            record_upload_outcome("failure")
            raise UploadFailure(f"image upload failed: {e}") from e

        progress.complete()
        record_upload_outcome("success")
        logger.info(f"Image upload complete: {result.image_url}")
        return result
