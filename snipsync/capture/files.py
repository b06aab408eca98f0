from __future__ import annotations

import hashlib
import re
import time
from pathlib import Path
from typing import Optional

from ..core.errors import FileTooLarge
from ..sync.models import EntityKind, FilePayload

MAX_FILE_SIZE = 50 * 1024 * 1024

_FILE_TYPES = {
    "image": ("jpg", "jpeg", "png", "gif", "bmp", "svg", "webp", "ico"),
    "video": ("mp4", "avi", "mkv", "mov", "wmv", "flv", "webm"),
    "audio": ("mp3", "wav", "ogg", "flac", "aac", "m4a"),
    "document": ("pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "odt", "ods", "odp"),
    "text": ("txt", "md", "csv", "json", "xml", "yaml", "yml", "toml", "ini", "conf", "log"),
    "code": (
        "js", "ts", "jsx", "tsx", "py", "rs", "go", "java", "c", "cpp", "h", "hpp", "cs", "php", "rb", "swift", "kt",
        "html", "css", "scss", "sass", "less",
        "sh", "bash", "zsh", "fish", "ps1",
    ),
    "archive": ("zip", "rar", "7z", "tar", "gz", "bz2"),
    "executable": ("exe", "msi", "app", "dmg", "deb", "rpm"),
    "script": ("bat", "cmd"),
}
EXTENSION_TYPES = {ext: file_type for file_type, exts in _FILE_TYPES.items() for ext in exts}

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "ico": "image/x-icon",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
    "aac": "audio/aac",
    "m4a": "audio/mp4",
    "weba": "audio/webm",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "txt": "text/plain",
    "html": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "json": "application/json",
    "xml": "application/xml",
    "md": "text/markdown",
    "csv": "text/csv",
    "zip": "application/zip",
    "rar": "application/vnd.rar",
    "7z": "application/x-7z-compressed",
    "tar": "application/x-tar",
    "gz": "application/gzip",
}

_UNSAFE_CHARS = re.compile(r"[^\w .\-()]")


def _extension(filename: str) -> str:
    return Path(filename).suffix.lstrip(".").lower()


def detect_file_type(filename: str) -> str:
    return EXTENSION_TYPES.get(_extension(filename), "other")


def get_mime_type(filename: str) -> Optional[str]:
    return MIME_TYPES.get(_extension(filename))


def sanitize_filename(filename: str) -> str:
    cleaned = filename.replace("\0", "").replace("\\", "").replace("/", "").replace("..", "")
    return _UNSAFE_CHARS.sub("_", cleaned)


class FileStorage:
    """Blob directory for attached files. Only metadata is synced; blobs stay local."""

    def __init__(self, storage_dir: str, max_file_size: int = MAX_FILE_SIZE):
        self.storage_dir = Path(storage_dir)
        self.max_file_size = max_file_size
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def validate_size(self, size: int):
        if size > self.max_file_size:
            raise FileTooLarge(f"file_too_large: {size} > {self.max_file_size}")

    def save_file(self, filename: str, data: bytes) -> Path:
        self.validate_size(len(data))
        target = self.storage_dir / f"{int(time.time())}_{sanitize_filename(filename)}"
        target.write_bytes(data)
        return target

    def read_file(self, storage_path: str) -> bytes:
        p = Path(storage_path)
        if not p.exists():
            raise FileNotFoundError(f"file_not_found: {storage_path}")
        return p.read_bytes()

    def delete_file(self, storage_path: str):
        p = Path(storage_path)
        if p.exists():
            p.unlink()


def add_file(store, storage: FileStorage, filename: str, data: bytes) -> int:
    """Store the blob and record its metadata as a syncable file entry."""
    path = storage.save_file(filename, data)
    payload = FilePayload(
        filename=filename,
        file_type=detect_file_type(filename),
        mime_type=get_mime_type(filename),
        size=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
    )
    return store.insert(EntityKind.FILES, payload, extra={"storage_path": str(path)})
