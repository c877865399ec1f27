import io
import base64
import uuid
import threading
from collections import namedtuple

from cachelib import SimpleCache
from PIL import Image as PILImage, UnidentifiedImageError

import config_master as config
from schemas import FileEntry, FileStatus
from utils_logger import get_logger

log = get_logger(__name__)

EncodedImage = namedtuple('EncodedImage', ['mime_type', 'data'])
StoredUpload = namedtuple('StoredUpload', ['name', 'mime_type', 'content'])

# Pillow format name -> MIME type accepted by the vision API
_MIME_TYPES = {
    'JPEG': 'image/jpeg',
    'PNG': 'image/png',
    'WEBP': 'image/webp',
    'GIF': 'image/gif',
    'BMP': 'image/bmp',
    'TIFF': 'image/tiff',
}


class UploadStore:
    """
    Process-wide, in-memory store for uploaded image bytes. Nothing is written to disk.
    Entries expire with the session lifetime and the oldest are pruned past `threshold`.
    """

    def __init__(self, threshold: int = config.UPLOAD_CACHE_THRESHOLD,
                 timeout: int = config.SESSION_LIFETIME_SECONDS):
        self._cache = SimpleCache(threshold=threshold, default_timeout=timeout)
        self._ids = set()
        self._lock = threading.Lock()

    def put(self, name: str, mime_type: str, content: bytes) -> str:
        upload_id = str(uuid.uuid4())
        with self._lock:
            self._cache.set(upload_id, StoredUpload(name, mime_type, content))
            self._ids.add(upload_id)
        return upload_id

    def get(self, upload_id: str):
        with self._lock:
            return self._cache.get(upload_id)

    def discard(self, upload_id: str) -> bool:
        with self._lock:
            self._ids.discard(upload_id)
            return self._cache.delete(upload_id)

    def __contains__(self, upload_id) -> bool:
        with self._lock:
            return self._cache.has(upload_id)

    def __len__(self) -> int:
        with self._lock:
            self._ids = {upload_id for upload_id in self._ids if self._cache.has(upload_id)}
            return len(self._ids)


def format_size_mb(num_bytes: int) -> str:
    return f"{num_bytes / (1024 * 1024):.2f} MB"


def detect_mime_type(content: bytes):
    """Returns the image MIME type, or None when Pillow cannot decode the bytes."""
    try:
        with PILImage.open(io.BytesIO(content)) as img:
            img.verify()
            fmt = img.format
    except (UnidentifiedImageError, PILImage.DecompressionBombError, OSError, SyntaxError, ValueError) as e:
        log.info(f"Rejected upload, not a readable image: {e.__class__.__name__}")
        return None
    return _MIME_TYPES.get(fmt, 'image/jpeg')


def encode_image(content: bytes, mime_type: str = None) -> EncodedImage:
    """Base64 payload for the remote call. Raises ValueError on empty input."""
    if not content:
        raise ValueError("Cannot encode an empty image.")
    mime_type = mime_type or detect_mime_type(content) or 'image/jpeg'
    return EncodedImage(mime_type, base64.b64encode(content).decode('ascii'))


def to_data_url(encoded: EncodedImage) -> str:
    return f"data:{encoded.mime_type};base64,{encoded.data}"


def register_files(files, store: UploadStore) -> list:
    """
    Turns picked files into FileEntry records.
    `files` is an iterable of (filename, bytes). Readable images go into the store.
    """
    entries = []
    for filename, content in files:
        mime_type = detect_mime_type(content) if content else None
        if mime_type is None:
            entries.append(FileEntry(
                id=uuid.uuid4().hex[:9],
                name=filename,
                size=format_size_mb(len(content or b'')),
                status=FileStatus.ERROR,
                error_message="Unreadable image",
            ))
            continue
        upload_id = store.put(filename, mime_type, content)
        entries.append(FileEntry(
            id=uuid.uuid4().hex[:9],
            name=filename,
            size=format_size_mb(len(content)),
            status=FileStatus.READY,
            upload_id=upload_id,
        ))
    return entries
