import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from admin_messaging.client.errors import AuthError, NetworkError, PayloadTooLargeError

logger = logging.getLogger(__name__)

FAILURE_AUTH = "auth"
FAILURE_PAYLOAD_TOO_LARGE = "payload_too_large"
FAILURE_NETWORK = "network"
FAILURE_OTHER = "other"


def classify_failure(exc: BaseException) -> str:
    if isinstance(exc, AuthError):
        return FAILURE_AUTH
    if isinstance(exc, PayloadTooLargeError):
        return FAILURE_PAYLOAD_TOO_LARGE
    if isinstance(exc, NetworkError):
        return FAILURE_NETWORK
    return FAILURE_OTHER


class PollBackoffPolicy:
    """Pure state machine over poll outcomes. Delays are in seconds; ``None`` means stopped."""

    ATTENTIVE_INTERVAL = 30.0
    BACKGROUND_INTERVAL = 120.0
    AUTH_RETRY = 120.0
    PAYLOAD_TOO_LARGE_RETRY = 300.0
    OTHER_RETRY = 180.0
    NETWORK_BASE = 5.0
    NETWORK_CAP = 60.0
    MAX_AUTH_ERRORS = 3
    MAX_NETWORK_BACKOFFS = 5

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.auth_errors = 0
        self.network_errors = 0
        self.stopped = False
        self.stop_reason: Optional[str] = None

    def network_delay(self, failures: int) -> float:
        return min(self.NETWORK_BASE * (2 ** (failures - 1)), self.NETWORK_CAP)

    def on_success(self, attentive: bool) -> Optional[float]:
        if self.stopped:
            return None
        self.auth_errors = 0
        self.network_errors = 0
        return self.ATTENTIVE_INTERVAL if attentive else self.BACKGROUND_INTERVAL

    def on_failure(self, failure: str) -> Optional[float]:
        if self.stopped:
            return None

        if failure in (FAILURE_AUTH, FAILURE_PAYLOAD_TOO_LARGE):
            self.network_errors = 0
            self.auth_errors += 1
            if self.auth_errors >= self.MAX_AUTH_ERRORS:
                return self._stop(failure)
            return self.AUTH_RETRY if failure == FAILURE_AUTH else self.PAYLOAD_TOO_LARGE_RETRY

        if failure == FAILURE_NETWORK:
            self.network_errors += 1
            # five backoff waits (5, 10, 20, 40, 60); the failure that would need a sixth stops
            if self.network_errors > self.MAX_NETWORK_BACKOFFS:
                return self._stop(failure)
            return self.network_delay(self.network_errors)

        self.network_errors = 0
        return self.OTHER_RETRY

    def _stop(self, reason: str) -> None:
        self.stopped = True
        self.stop_reason = reason
        return None


class TimerHandle(Protocol):

    def cancel(self) -> None:
        ...


class Scheduler(Protocol):

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class AsyncioScheduler:

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


class PollerEvents:
    """Hooks for badge, sound and banner updates. Override what you need."""

    def on_unread_changed(self, total: int, previous: Optional[int]) -> None:
        pass

    def on_new_unread(self, delta: int) -> None:
        pass

    def on_stopped(self, reason: str) -> None:
        pass


class NotificationPoller:

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Dict[str, Any]]],
        events: Optional[PollerEvents] = None,
        scheduler: Optional[Scheduler] = None,
        policy: Optional[PollBackoffPolicy] = None,
        visible: bool = True,
        focused: bool = True,
    ) -> None:
        self._fetch = fetch
        self._events = events or PollerEvents()
        self._scheduler = scheduler or AsyncioScheduler()
        self.policy = policy or PollBackoffPolicy()
        self.visible = visible
        self.focused = focused
        self.total_unread: Optional[int] = None
        self.next_delay: Optional[float] = None
        self._timer: Optional[TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._polling = False
        self._refresh_requested = False
        self._logged_failures: Set[str] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stopped(self) -> bool:
        return self.policy.stopped

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    async def start(self) -> None:
        if self._running or self.policy.stopped:
            return
        self._running = True
        await self.poll_now()

    def stop(self) -> None:
        self._running = False
        self._cancel_timer()

    async def restart(self) -> None:
        """Clears a permanent stop, e.g. after the user signs in again."""
        self.stop()
        self.policy.reset()
        self._logged_failures.clear()
        await self.start()

    async def join(self) -> None:
        if self._task is not None:
            await self._task

    async def poll_now(self) -> None:
        if not self._running or self.policy.stopped:
            return
        if self._polling:
            self._refresh_requested = True
            return
        self._cancel_timer()
        self._polling = True
        try:
            try:
                data = await self._fetch()
            except Exception as exc:
                delay = self._handle_failure(exc)
            else:
                self._logged_failures.clear()
                delay = self.policy.on_success(self.visible and self.focused)
                self._report_unread(int(data.get("total_unread", 0)))
        finally:
            self._polling = False

        if self.policy.stopped:
            self._running = False
            logger.warning("Notification polling stopped after repeated %s errors", self.policy.stop_reason)
            self._notify("on_stopped", self.policy.stop_reason or "")
            return
        if self._refresh_requested:
            self._refresh_requested = False
            delay = 0.0
        self._schedule(delay)

    async def on_visibility_change(self, visible: bool, focused: bool) -> None:
        became_attentive = (visible and focused) and not (self.visible and self.focused)
        self.visible = visible
        self.focused = focused
        if became_attentive:
            await self.poll_now()

    async def on_new_message_signal(self) -> None:
        await self.poll_now()

    def _handle_failure(self, exc: BaseException) -> Optional[float]:
        failure = classify_failure(exc)
        if failure not in self._logged_failures:
            self._logged_failures.add(failure)
            logger.warning("Notification poll failed (%s): %s", failure, exc)
        return self.policy.on_failure(failure)

    def _report_unread(self, total: int) -> None:
        previous = self.total_unread
        self.total_unread = total
        if previous == total:
            return
        self._notify("on_unread_changed", total, previous)
        if previous is not None and total > previous:
            self._notify("on_new_unread", total - previous)

    def _notify(self, hook: str, *args: Any) -> None:
        # a broken hook must not cost the next timer
        try:
            getattr(self._events, hook)(*args)
        except Exception:
            logger.exception("Poller hook %s failed", hook)

    def _schedule(self, delay: Optional[float]) -> None:
        self._cancel_timer()
        self.next_delay = delay
        if delay is None or not self._running:
            return
        self._timer = self._scheduler.call_later(delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._task = asyncio.ensure_future(self.poll_now())
