"""Audio format negotiation and the per-session playback profile."""
import re
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional, Sequence, Tuple

from admin_messaging.utils.media_types import LAST_RESORT_AUDIO_MIME, base_mime

# most broadly playable first; the recorder default comes last
AUDIO_FORMAT_CANDIDATES: Tuple[Tuple[str, str], ...] = (
    ("audio/mp4", "m4a"),
    ("audio/aac", "aac"),
    ("audio/mpeg", "mp3"),
    ("audio/wav", "wav"),
    ("audio/webm;codecs=opus", "webm"),
)


class FormatSelection(NamedTuple):
    mime_type: str
    extension: str

    @property
    def is_last_resort(self) -> bool:
        return base_mime(self.mime_type) == LAST_RESORT_AUDIO_MIME


def pick_supported_format(
    candidates: Sequence[Tuple[str, str]],
    is_supported: Callable[[str], bool],
) -> Optional[FormatSelection]:
    for mime_type, extension in candidates:
        if is_supported(mime_type):
            return FormatSelection(mime_type, extension)
    return None


_IOS = re.compile(r"iPhone|iPad|iPod", re.IGNORECASE)
_ANDROID = re.compile(r"Android", re.IGNORECASE)
_MOBILE = re.compile(r"Mobile|Opera Mini|IEMobile", re.IGNORECASE)

_COMMON_PLAYABLE = ("audio/mp4", "audio/aac", "audio/mpeg", "audio/mp3", "audio/wav")
_DESKTOP_EXTRA = ("audio/webm", "audio/ogg")


@dataclass(frozen=True)
class PlaybackCapabilityProfile:

    is_mobile: bool
    is_ios: bool
    playable_mime_types: Tuple[str, ...]
    requires_preload: bool
    ready_timeout_seconds: float = 10.0

    @classmethod
    def from_user_agent(cls, user_agent: str, ready_timeout_seconds: float = 10.0) -> "PlaybackCapabilityProfile":
        user_agent = user_agent or ""
        is_ios = bool(_IOS.search(user_agent))
        is_android = bool(_ANDROID.search(user_agent))
        is_mobile = is_ios or is_android or bool(_MOBILE.search(user_agent))
        playable = _COMMON_PLAYABLE if is_ios else _COMMON_PLAYABLE + _DESKTOP_EXTRA
        return cls(
            is_mobile=is_mobile,
            is_ios=is_ios,
            playable_mime_types=playable,
            # mobile browsers only fetch media after an explicit load
            requires_preload=is_mobile,
            ready_timeout_seconds=ready_timeout_seconds,
        )

    def can_play(self, mime_type: str) -> bool:
        return base_mime(mime_type) in self.playable_mime_types
