import asyncio
import logging
import uuid
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from admin_messaging.models.message import Attachment, category_for_mime
from admin_messaging.services.errors import UploadTransportError
from admin_messaging.services.storage_service import BlobStorage
from admin_messaging.services.transcoder import AudioTranscoder
from admin_messaging.utils.media_types import (
    CATEGORY_FOLDERS,
    LAST_RESORT_AUDIO_MIME,
    MAX_ATTACHMENT_BYTES,
    extension_for,
    validate_upload,
)

logger = logging.getLogger(__name__)


class IncomingFile(NamedTuple):
    data: bytes
    mime_type: str
    file_name: str


class AttachmentPipeline:

    def __init__(
        self,
        storage: BlobStorage,
        transcoder: Optional[AudioTranscoder] = None,
        max_bytes: int = MAX_ATTACHMENT_BYTES,
        upload_timeout: float = 60.0,
    ) -> None:
        self._storage = storage
        self._transcoder = transcoder
        self.max_bytes = max_bytes
        self.upload_timeout = upload_timeout

    def needs_transcode(self, mime_type: str) -> bool:
        return mime_type == LAST_RESORT_AUDIO_MIME

    async def process_attachment(self, data: bytes, declared_mime_type: str, original_file_name: str) -> Attachment:
        mime_type = validate_upload(len(data), declared_mime_type, self.max_bytes)
        extension = extension_for(mime_type)

        if self.needs_transcode(mime_type):
            if self._transcoder is None:
                logger.warning("No transcoder configured; storing %s as %s", original_file_name, mime_type)
            else:
                converted = await self._transcoder.to_broadly_playable(data, mime_type)
                logger.info(
                    "Converted %s from %s (%d bytes) to %s (%d bytes)",
                    original_file_name, mime_type, len(data), converted.mime_type, len(converted.data),
                )
                data, mime_type, extension = converted.data, converted.mime_type, converted.extension

        category = category_for_mime(mime_type)
        folder = CATEGORY_FOLDERS[category]
        stored_name = f"{uuid.uuid4().hex}.{extension}"

        try:
            stored = await asyncio.wait_for(
                self._storage.upload(data, folder, stored_name, mime_type),
                timeout=self.upload_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Upload of %s timed out after %.1fs", original_file_name, self.upload_timeout)
            raise UploadTransportError(f"Failed to upload {original_file_name}") from e

        attachment: Attachment = {
            "file_name": stored.public_id,
            "original_name": original_file_name,
            "file_url": stored.url,
            "file_size": len(data),
            "mime_type": mime_type,
        }
        for field in ("width", "height", "duration"):
            value = getattr(stored, field)
            if value:
                attachment[field] = value
        return attachment

    async def process_many(self, files: Sequence[IncomingFile]) -> List[Attachment]:
        # all-or-nothing: reject the batch before anything is uploaded
        for incoming in files:
            validate_upload(len(incoming.data), incoming.mime_type, self.max_bytes)
        attachments: List[Attachment] = []
        for incoming in files:
            attachments.append(
                await self.process_attachment(incoming.data, incoming.mime_type, incoming.file_name)
            )
        return attachments


def message_type_for(attachments: Sequence[Dict[str, Any]]) -> str:
    return category_for_mime(attachments[0]["mime_type"])
