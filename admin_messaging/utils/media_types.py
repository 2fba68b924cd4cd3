from typing import Dict

from admin_messaging.services.errors import InvalidInput, PayloadTooLarge, UnsupportedType

MAX_ATTACHMENT_BYTES = 50 * 1024 * 1024

# declared MIME type (parameters stripped) -> stored file extension
ALLOWED_MIME_TYPES: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/ogg": "ogg",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/webm": "webm",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "text/plain": "txt",
}

# what browsers' media recorders emit by default; poorly supported on mobile playback
LAST_RESORT_AUDIO_MIME = "audio/webm"

CATEGORY_FOLDERS = {
    "image": "messaging/images",
    "audio": "messaging/audio",
    "video": "messaging/videos",
    "file": "messaging/files",
}


def base_mime(mime_type: str) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def extension_for(mime_type: str) -> str:
    return ALLOWED_MIME_TYPES.get(base_mime(mime_type), "bin")


def validate_upload(size: int, mime_type: str, max_bytes: int = MAX_ATTACHMENT_BYTES) -> str:
    """Checks size and type; returns the normalized MIME type. The ceiling is inclusive."""
    if size <= 0:
        raise InvalidInput("File is empty")
    if size > max_bytes:
        raise PayloadTooLarge(f"File exceeds the {max_bytes // (1024 * 1024)}MB limit")
    mime = base_mime(mime_type)
    if mime not in ALLOWED_MIME_TYPES:
        raise UnsupportedType(f"File type not supported: {mime_type or 'unknown'}")
    return mime
