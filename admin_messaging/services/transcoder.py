import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, NamedTuple

from admin_messaging.services.errors import TranscodeFailed

logger = logging.getLogger(__name__)


class TranscodedAudio(NamedTuple):
    data: bytes
    mime_type: str
    extension: str


class AudioTranscoder(ABC):

    @abstractmethod
    async def to_broadly_playable(self, data: bytes, source_mime_type: str) -> TranscodedAudio:
        pass


class FfmpegTranscoder(AudioTranscoder):
    """Re-encodes audio to AAC in a fragmented MP4 container by piping through ffmpeg."""

    def __init__(self, binary: str = "ffmpeg", timeout: float = 30.0, bitrate: str = "96k") -> None:
        self.binary = binary
        self.timeout = timeout
        self.bitrate = bitrate

    def command(self) -> List[str]:
        return [
            self.binary,
            "-hide_banner",
            "-loglevel", "error",
            "-i", "pipe:0",
            "-vn",
            "-c:a", "aac",
            "-b:a", self.bitrate,
            "-movflags", "frag_keyframe+empty_moov",
            "-f", "mp4",
            "pipe:1",
        ]

    async def to_broadly_playable(self, data: bytes, source_mime_type: str) -> TranscodedAudio:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("ffmpeg could not be started: %s", e)
            raise TranscodeFailed("Audio could not be converted") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(data), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            logger.warning("ffmpeg timed out after %.1fs converting %s", self.timeout, source_mime_type)
            raise TranscodeFailed("Audio conversion timed out") from e

        if proc.returncode != 0 or not stdout:
            logger.warning("ffmpeg failed (%s): %s", proc.returncode, stderr.decode("utf-8", "replace")[:500])
            raise TranscodeFailed("Audio could not be converted")
        return TranscodedAudio(stdout, "audio/mp4", "m4a")
