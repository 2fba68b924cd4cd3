import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx
from pydantic import BaseModel

from admin_messaging.services.errors import UploadTransportError

logger = logging.getLogger(__name__)


class StoredObject(BaseModel):

    public_id: str
    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None


class BlobStorage(ABC):

    @abstractmethod
    async def upload(self, data: bytes, folder: str, file_name: str, mime_type: str) -> StoredObject:
        """Stores ``data`` under ``folder/file_name``; raises UploadTransportError on failure."""


class HttpBlobStorage(BlobStorage):

    def __init__(self, upload_url: str, api_key: Optional[str] = None, timeout: float = 60.0) -> None:
        self.upload_url = upload_url
        self.api_key = api_key
        self.timeout = timeout

    async def upload(self, data: bytes, folder: str, file_name: str, mime_type: str) -> StoredObject:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        files = {"file": (file_name, data, mime_type)}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.upload_url, files=files, data={"folder": folder}, headers=headers)
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPError as e:
            logger.error(f"HTTP error uploading {folder}/{file_name}: {e}")
            raise UploadTransportError(f"Failed to upload {file_name}") from e
        except ValueError as e:
            logger.error(f"Storage returned a non-JSON response for {folder}/{file_name}")
            raise UploadTransportError(f"Failed to upload {file_name}") from e

        payload = result.get("data", result) if isinstance(result, dict) else {}
        url = payload.get("fileUrl") or payload.get("secure_url") or payload.get("url")
        if not url:
            logger.error(f"Storage upload response missing URL: {result}")
            raise UploadTransportError(f"Failed to upload {file_name}")

        return StoredObject(
            public_id=payload.get("public_id") or f"{folder}/{file_name}",
            url=url,
            width=payload.get("width"),
            height=payload.get("height"),
            duration=payload.get("duration"),
        )


class InMemoryBlobStorage(BlobStorage):

    def __init__(self, base_url: str = "memory://blobs") -> None:
        self.base_url = base_url.rstrip("/")
        self.objects: Dict[str, bytes] = {}

    async def upload(self, data: bytes, folder: str, file_name: str, mime_type: str) -> StoredObject:
        public_id = f"{folder.strip('/')}/{file_name}"
        self.objects[public_id] = bytes(data)
        logger.debug(f"Stored {len(data)} bytes at {public_id}")
        return StoredObject(public_id=public_id, url=f"{self.base_url}/{public_id}")
