from admin_messaging.client.formats import (
    AUDIO_FORMAT_CANDIDATES,
    FormatSelection,
    PlaybackCapabilityProfile,
    pick_supported_format,
)

IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
ANDROID = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36"
)
DESKTOP = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


def test_first_supported_candidate_wins():
    supported = {"audio/mpeg", "audio/webm;codecs=opus"}
    selection = pick_supported_format(AUDIO_FORMAT_CANDIDATES, supported.__contains__)
    assert selection == FormatSelection("audio/mpeg", "mp3")
    assert selection.is_last_resort is False


def test_recorder_default_is_last_resort():
    selection = pick_supported_format(AUDIO_FORMAT_CANDIDATES, lambda mime: mime.startswith("audio/webm"))
    assert selection.extension == "webm"
    assert selection.is_last_resort is True


def test_nothing_supported():
    assert pick_supported_format(AUDIO_FORMAT_CANDIDATES, lambda mime: False) is None


def test_ios_profile_cannot_play_webm():
    profile = PlaybackCapabilityProfile.from_user_agent(IPHONE)
    assert profile.is_ios and profile.is_mobile
    assert profile.requires_preload is True
    assert profile.can_play("audio/mp4")
    assert not profile.can_play("audio/webm;codecs=opus")
    assert not profile.can_play("audio/ogg")


def test_android_and_desktop_profiles():
    android = PlaybackCapabilityProfile.from_user_agent(ANDROID)
    assert android.is_mobile and not android.is_ios
    assert android.requires_preload is True
    assert android.can_play("audio/webm")

    desktop = PlaybackCapabilityProfile.from_user_agent(DESKTOP, ready_timeout_seconds=3.0)
    assert not desktop.is_mobile
    assert desktop.requires_preload is False
    assert desktop.ready_timeout_seconds == 3.0
    assert desktop.can_play("audio/mpeg")


def test_missing_user_agent_is_treated_as_desktop():
    profile = PlaybackCapabilityProfile.from_user_agent("")
    assert not profile.is_mobile
    assert profile.can_play("audio/wav")
