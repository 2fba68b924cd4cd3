from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from admin_messaging.config import Settings
from admin_messaging.models.user import ROLE_ADMIN, ROLE_SUPER_ADMIN
from admin_messaging.repositories.memory import (
    InMemoryConversationRepository,
    InMemoryMessageRepository,
    InMemoryStore,
    InMemoryUserRepository,
)
from admin_messaging.services.attachment_service import AttachmentPipeline
from admin_messaging.services.errors import TranscodeFailed
from admin_messaging.services.messaging_service import MessagingService
from admin_messaging.services.storage_service import InMemoryBlobStorage
from admin_messaging.services.transcoder import AudioTranscoder, TranscodedAudio


class FakeClock:

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTranscoder(AudioTranscoder):

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.fail = False

    async def to_broadly_playable(self, data: bytes, source_mime_type: str) -> TranscodedAudio:
        self.calls.append(source_mime_type)
        if self.fail:
            raise TranscodeFailed("Audio could not be converted")
        return TranscodedAudio(b"m4a:" + data, "audio/mp4", "m4a")


class RecordingEmail:

    enabled = True

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def send_message_notification(self, to_email, recipient_name, sender_name, sender_role, preview, conversation_id):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append({"to": to_email, "preview": preview, "conversation_id": conversation_id})


class RecordingBus:

    enabled = True

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    async def publish_to_users(self, user_ids, event_type, payload) -> None:
        self.events.append({"users": list(user_ids), "type": event_type, "payload": payload})

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, storage_backend="memory")


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def users(memory_store) -> Dict[str, Dict[str, Any]]:
    return {
        "alice": memory_store.add_user({"email": "alice@example.com", "user_name": "alice", "role": ROLE_ADMIN}),
        "bob": memory_store.add_user({"email": "bob@example.com", "user_name": "bob", "role": ROLE_SUPER_ADMIN}),
        "carol": memory_store.add_user({"email": "carol@example.com", "user_name": "carol", "role": ROLE_ADMIN}),
        "dave": memory_store.add_user({"email": "dave@example.com", "user_name": "dave", "role": ROLE_SUPER_ADMIN}),
        "eve": memory_store.add_user({"email": "eve@example.com", "user_name": "eve", "role": "customer"}),
    }


@pytest.fixture
def conversation_repo(memory_store) -> InMemoryConversationRepository:
    return InMemoryConversationRepository(memory_store)


@pytest.fixture
def message_repo(memory_store) -> InMemoryMessageRepository:
    return InMemoryMessageRepository(memory_store)


@pytest.fixture
def user_repo(memory_store) -> InMemoryUserRepository:
    return InMemoryUserRepository(memory_store)


@pytest.fixture
def blob_storage() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def pipeline(blob_storage, transcoder) -> AttachmentPipeline:
    return AttachmentPipeline(blob_storage, transcoder, upload_timeout=1.0)


@pytest.fixture
def email() -> RecordingEmail:
    return RecordingEmail()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def service(conversation_repo, message_repo, user_repo, pipeline, email, bus, settings, clock) -> MessagingService:
    return MessagingService(
        conversation_repo,
        message_repo,
        user_repo,
        pipeline,
        email=email,
        bus=bus,
        settings=settings,
        clock=clock,
    )
