import asyncio
import logging
import time
from typing import Callable, NamedTuple, Optional, Protocol, Sequence, Tuple

from admin_messaging.client.errors import ClientError
from admin_messaging.client.formats import (
    AUDIO_FORMAT_CANDIDATES,
    FormatSelection,
    PlaybackCapabilityProfile,
    pick_supported_format,
)
from admin_messaging.utils.media_types import ALLOWED_MIME_TYPES, MAX_ATTACHMENT_BYTES, base_mime

logger = logging.getLogger(__name__)


class CaptureError(ClientError):

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class SelectionRejected(ClientError):

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class Recorder(Protocol):

    default_mime_type: str

    def is_type_supported(self, mime_type: str) -> bool:
        ...

    async def start(self, mime_type: Optional[str]) -> None:
        ...

    async def stop(self) -> bytes:
        ...


class CapturedAudio(NamedTuple):
    data: bytes
    mime_type: str
    extension: str
    file_name: str
    duration: float

    def as_upload(self) -> Tuple[str, bytes, str]:
        return (self.file_name, self.data, self.mime_type)


class VoiceCaptureAdapter:

    def __init__(
        self,
        recorder: Recorder,
        profile: PlaybackCapabilityProfile,
        candidates: Sequence[Tuple[str, str]] = AUDIO_FORMAT_CANDIDATES,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._recorder = recorder
        self._profile = profile
        self._candidates = candidates
        self._timeout = timeout if timeout is not None else profile.ready_timeout_seconds
        self._clock = clock
        self.selection: Optional[FormatSelection] = None
        self.recording = False
        self._started_at = 0.0

    def negotiate(self) -> FormatSelection:
        selection = pick_supported_format(self._candidates, self._recorder.is_type_supported)
        if selection is None:
            mime_type = self._recorder.default_mime_type
            selection = FormatSelection(mime_type, ALLOWED_MIME_TYPES.get(base_mime(mime_type), "webm"))
        if selection.is_last_resort and self._profile.is_mobile:
            logger.info("Recording in %s; the server will convert it for playback", selection.mime_type)
        return selection

    async def start(self) -> FormatSelection:
        if self.recording:
            raise CaptureError("Already recording", retryable=False)
        selection = self.negotiate()
        try:
            await asyncio.wait_for(self._recorder.start(selection.mime_type), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise CaptureError("Microphone did not start in time") from exc
        except Exception as exc:
            raise CaptureError(f"Could not start recording: {exc}") from exc
        self.selection = selection
        self.recording = True
        self._started_at = self._clock()
        return selection

    async def stop(self) -> CapturedAudio:
        if not self.recording or self.selection is None:
            raise CaptureError("Not recording", retryable=False)
        self.recording = False
        try:
            data = await asyncio.wait_for(self._recorder.stop(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise CaptureError("Recorder did not finish in time") from exc
        if not data:
            raise CaptureError("Recording is empty")
        duration = max(0.0, self._clock() - self._started_at)
        extension = self.selection.extension
        return CapturedAudio(
            data=data,
            mime_type=base_mime(self.selection.mime_type),
            extension=extension,
            file_name=f"voice-message-{int(time.time())}.{extension}",
            duration=duration,
        )


class FileSelectionAdapter:
    """Client-side fast fail; the server validates again regardless."""

    def __init__(self, max_bytes: int = MAX_ATTACHMENT_BYTES, max_files: int = 10) -> None:
        self.max_bytes = max_bytes
        self.max_files = max_files

    def validate(self, file_name: str, mime_type: str, size: int) -> str:
        if size <= 0:
            raise SelectionRejected("empty", f"{file_name} is empty")
        if size > self.max_bytes:
            raise SelectionRejected("too_large", f"{file_name} is larger than {self.max_bytes // (1024 * 1024)}MB")
        mime = base_mime(mime_type)
        if mime not in ALLOWED_MIME_TYPES:
            raise SelectionRejected("unsupported_type", f"{file_name}: file type not supported")
        return mime

    def validate_many(self, files: Sequence[Tuple[str, str, int]]) -> list:
        if not files:
            raise SelectionRejected("no_files", "Select at least one file")
        if len(files) > self.max_files:
            raise SelectionRejected("too_many", f"At most {self.max_files} files per message")
        return [self.validate(name, mime, size) for name, mime, size in files]
