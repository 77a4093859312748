"""MIME type guessing for fetched files."""

from pathlib import PurePosixPath

EXTENSION_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".csv": "text/csv",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

DEFAULT_MIME_TYPE = "application/octet-stream"


def guess_mime_type(filename: str) -> str:
    """Guess a MIME type from the file extension."""
    suffix = PurePosixPath(filename).suffix.lower()
    return EXTENSION_MIME_TYPES.get(suffix, DEFAULT_MIME_TYPE)
