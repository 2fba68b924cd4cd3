import asyncio
import logging
from typing import Optional, Protocol

from admin_messaging.client.formats import PlaybackCapabilityProfile

logger = logging.getLogger(__name__)

IDLE = "idle"
LOADING = "loading"
READY = "ready"
PLAYING = "playing"
PAUSED = "paused"
ERROR = "error"

BLOCKED_MESSAGE = "Playback was blocked by the device. Tap play to listen."
TIMEOUT_MESSAGE = "Audio took too long to load."
UNSUPPORTED_MESSAGE = "This audio format cannot be played on this device."


class PlaybackBlocked(Exception):
    """The platform refused to start playback without a user gesture."""


class AudioElement(Protocol):

    async def load(self, url: str) -> None:
        ...

    async def play(self) -> None:
        ...

    def pause(self) -> None:
        ...


class VoicePlaybackController:

    def __init__(self, element: AudioElement, profile: PlaybackCapabilityProfile) -> None:
        self._element = element
        self._profile = profile
        self.state = IDLE
        self.url: Optional[str] = None
        self.mime_type: Optional[str] = None
        self.error_message: Optional[str] = None
        self.can_retry = False

    def _error(self, message: str, can_retry: bool) -> None:
        self.state = ERROR
        self.error_message = message
        self.can_retry = can_retry

    async def prepare(self, url: str, mime_type: Optional[str] = None) -> None:
        self.url = url
        self.mime_type = mime_type
        self.state = IDLE
        self.error_message = None
        self.can_retry = False
        if mime_type and not self._profile.can_play(mime_type):
            self._error(UNSUPPORTED_MESSAGE, can_retry=False)
            return
        if self._profile.requires_preload:
            await self.load()

    async def load(self) -> bool:
        if self.url is None:
            raise RuntimeError("prepare() must be called before load()")
        self.state = LOADING
        self.error_message = None
        try:
            await asyncio.wait_for(self._element.load(self.url), timeout=self._profile.ready_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Audio %s not ready after %.1fs", self.url, self._profile.ready_timeout_seconds)
            self._error(TIMEOUT_MESSAGE, can_retry=True)
            return False
        except Exception as exc:
            logger.warning("Audio %s failed to load: %s", self.url, exc)
            self._error(f"Could not load audio: {exc}", can_retry=True)
            return False
        self.state = READY
        return True

    async def play(self) -> None:
        if self.state == ERROR and not self.can_retry:
            return
        if self.state in (IDLE, LOADING, ERROR):
            if not await self.load():
                return
        try:
            await self._element.play()
        except PlaybackBlocked:
            self._error(BLOCKED_MESSAGE, can_retry=True)
            return
        except Exception as exc:
            self._error(f"Could not play audio: {exc}", can_retry=True)
            return
        self.state = PLAYING

    def pause(self) -> None:
        if self.state == PLAYING:
            self._element.pause()
            self.state = PAUSED

    async def retry(self) -> None:
        if self.state != ERROR or not self.can_retry:
            return
        await self.play()

    def on_ended(self) -> None:
        if self.state in (PLAYING, PAUSED):
            self.state = READY
