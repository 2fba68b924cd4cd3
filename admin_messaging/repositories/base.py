"""Record store interfaces.

The messaging service only talks to these; ``MongoConversationRepository`` and
friends back them with MongoDB, ``repositories.memory`` keeps everything in
process for tests and local development.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence


class DuplicateConversation(Exception):
    """Raised when inserting a direct conversation whose participant pair already has one."""

    def __init__(self, key: str) -> None:
        super().__init__(f"direct conversation already exists for {key}")
        self.key = key


class ConversationStore(ABC):

    @abstractmethod
    async def ensure_indexes(self) -> None:
        pass

    @abstractmethod
    async def get_by_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_direct(self, key: str) -> Optional[Dict[str, Any]]:
        """Returns the non-archived direct conversation carrying ``key``."""

    @abstractmethod
    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Inserts ``doc``; raises ``DuplicateConversation`` on a direct-key collision."""

    @abstractmethod
    async def list_for_participant(
        self,
        user_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def sum_unread(self, user_id: str) -> int:
        """Total of the user's counters over every non-archived conversation they take part in."""

    @abstractmethod
    async def apply_new_message(
        self,
        conversation_id: str,
        snapshot: Dict[str, Any],
        recipient_ids: Sequence[str],
        now: datetime,
    ) -> None:
        """Sets ``last_message`` and increments every recipient counter in one update."""

    @abstractmethod
    async def touch(self, conversation_id: str, now: datetime) -> None:
        pass

    @abstractmethod
    async def decrement_unread(self, conversation_id: str, user_id: str, amount: int) -> None:
        """Lowers one counter by ``amount`` without going below zero."""

    @abstractmethod
    async def archive(self, conversation_id: str, user_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def replace_participants(
        self,
        conversation_id: str,
        participants: List[Dict[str, Any]],
        unread_counters: Dict[str, int],
        now: datetime,
    ) -> None:
        pass


class MessageStore(ABC):

    @abstractmethod
    async def ensure_indexes(self) -> None:
        pass

    @abstractmethod
    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_by_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_page(self, conversation_id: str, skip: int, limit: int) -> List[Dict[str, Any]]:
        """Visible messages, newest first."""

    @abstractmethod
    async def count_visible(self, conversation_id: str) -> int:
        pass

    @abstractmethod
    async def mark_read(
        self,
        conversation_id: str,
        user_id: str,
        now: datetime,
        message_ids: Optional[Iterable[str]] = None,
    ) -> int:
        """Adds a read receipt for ``user_id``; returns how many messages from others were newly read.

        Messages still ``sending`` have not been counted yet and are skipped.
        """

    @abstractmethod
    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        pass

    @abstractmethod
    async def update_content(self, message_id: str, content: str, now: datetime) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def soft_delete(self, message_id: str, deleted_by: str, now: datetime) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def transition_status(
        self,
        message_id: str,
        from_statuses: Sequence[str],
        target: str,
        now: datetime,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Moves the status only if it is currently one of ``from_statuses``."""


class UserStore(ABC):

    @abstractmethod
    async def get_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_by_roles(self, roles: Sequence[str], exclude_id: Optional[str] = None) -> List[Dict[str, Any]]:
        pass
