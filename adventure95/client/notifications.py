"""
Which notifications actually reach the player, and the log of those that did.

NotificationPolicy is the gatekeeper: plain time-window de-duplication for
every type, plus once-per-session, throttled and capped types. It owns its
sweep task explicitly; call dispose() when the session ends.
"""
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 100
KEY_DATA_FIELDS = ("id", "gameId", "title")


@dataclass(frozen=True)
class NotificationRule:
    timeout: float  # seconds a notification blocks an identical one
    once_per_session: bool = False
    throttle_count: Optional[int] = None
    throttle_window: Optional[float] = None
    max_per_type: Optional[int] = None


DEFAULT_RULES: Dict[str, NotificationRule] = {
    "welcome": NotificationRule(timeout=10.0, once_per_session=True),
    "autoSave": NotificationRule(timeout=5.0, throttle_count=3, throttle_window=60.0),
    "manualSave": NotificationRule(timeout=2.0),
    "error": NotificationRule(timeout=3.0, max_per_type=3),
    "achievement": NotificationRule(timeout=3.0, once_per_session=True),
    "gameCompletion": NotificationRule(timeout=10.0, once_per_session=True),
    "default": NotificationRule(timeout=2.0),
}


@dataclass
class _Entry:
    timestamp: float
    timeout: float


@dataclass
class _ThrottleCounter:
    count: int
    start: float
    window: float


def notification_key(kind: str, key: str = "", data: Optional[dict] = None) -> str:
    """Stable, bounded key from the kind, the caller's key and the identifying payload fields."""
    relevant = {}
    if isinstance(data, dict):
        relevant = {name: data[name] for name in KEY_DATA_FIELDS if name in data}
    payload = json.dumps(relevant, sort_keys=True, separators=(",", ":"), default=str)
    return f"{kind}_{key}_{payload}"[:MAX_KEY_LENGTH]


class NotificationPolicy:
    def __init__(
        self,
        rules: Optional[Dict[str, NotificationRule]] = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rules = dict(DEFAULT_RULES if rules is None else rules)
        self.clock = clock
        self.sweep_interval = sweep_interval
        self.sleep = sleep
        self._registry: Dict[str, _Entry] = {}
        self._session_keys: Set[str] = set()
        self._throttles: Dict[str, _ThrottleCounter] = {}
        self._shown_per_type: Dict[str, int] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def rule_for(self, kind: str) -> NotificationRule:
        return self.rules.get(kind) or self.rules.get("default") or DEFAULT_RULES["default"]

    def should_show(self, kind: str, key: str = "", data: Optional[dict] = None) -> bool:
        rule = self.rule_for(kind)
        registry_key = notification_key(kind, key, data)
        now = self.clock()

        if rule.once_per_session and registry_key in self._session_keys:
            logger.debug(f"Skipping once-per-session notification: {registry_key}")
            return False

        if rule.throttle_count and rule.throttle_window:
            throttle_key = f"{kind}_{key}"
            counter = self._throttles.get(throttle_key)
            if counter is None or now - counter.start > counter.window:
                counter = _ThrottleCounter(count=0, start=now, window=rule.throttle_window)
                self._throttles[throttle_key] = counter
            counter.count += 1
            if counter.count % rule.throttle_count != 0:
                logger.debug(f"Throttling notification: {kind} ({counter.count}/{rule.throttle_count})")
                self._ensure_sweep()
                return False

        if rule.max_per_type and self._shown_per_type.get(kind, 0) >= rule.max_per_type:
            logger.debug(f"Maximum notifications of type {kind} reached ({rule.max_per_type})")
            return False

        entry = self._registry.get(registry_key)
        if entry and now - entry.timestamp < entry.timeout:
            logger.debug(f"Skipping duplicate notification: {registry_key}")
            return False

        self._registry[registry_key] = _Entry(timestamp=now, timeout=rule.timeout)
        self._shown_per_type[kind] = self._shown_per_type.get(kind, 0) + 1
        if rule.once_per_session:
            self._session_keys.add(registry_key)
        self._ensure_sweep()
        return True

    def sweep(self) -> bool:
        """Drops expired entries. Returns True while anything is left to expire."""
        now = self.clock()
        for key, entry in list(self._registry.items()):
            if now - entry.timestamp > entry.timeout:
                del self._registry[key]
        for key, counter in list(self._throttles.items()):
            if now - counter.start > counter.window:
                del self._throttles[key]
        return bool(self._registry or self._throttles)

    @property
    def sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def _ensure_sweep(self):
        if self.sweeping:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: entries still expire lazily through their timestamps
            return
        self._sweep_task = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self):
        while True:
            await self.sleep(self.sweep_interval)
            if not self.sweep():
                break

    def reset(self, session: bool = False):
        """Forgets tracked notifications; with session=True also once-per-session keys and type caps."""
        self._registry.clear()
        self._throttles.clear()
        if session:
            self._session_keys.clear()
            self._shown_per_type.clear()
        self._stop_sweep()

    def _stop_sweep(self):
        if self._sweep_task is not None and not self._sweep_task.done():
            self._sweep_task.cancel()
        self._sweep_task = None

    def dispose(self):
        self.reset(session=True)

# --- Notification log ---

class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    ACHIEVEMENT = "achievement"
    SYSTEM = "system"


DEFAULT_TITLES = {
    NotificationType.SUCCESS: "Success",
    NotificationType.ERROR: "Error",
    NotificationType.WARNING: "Warning",
    NotificationType.ACHIEVEMENT: "Achievement Unlocked",
    NotificationType.SYSTEM: "System Message",
    NotificationType.INFO: "Information",
}


@dataclass
class Notification:
    type: NotificationType
    title: str
    message: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    actions: List[dict] = field(default_factory=list)
    timeout: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


class NotificationLog:
    """Notifications that were shown, with the player's read-state."""

    def __init__(self, read_state: Optional[Dict[str, bool]] = None, limit: int = 100):
        self.read_state: Dict[str, bool] = dict(read_state or {})
        self.limit = limit
        self._items: List[Notification] = []

    def add(
        self,
        notification_type: NotificationType,
        message: str,
        title: Optional[str] = None,
        actions: Iterable[dict] = (),
        timeout: Optional[float] = None,
    ) -> Notification:
        notification_type = NotificationType(notification_type)
        notification = Notification(
            type=notification_type,
            title=title or DEFAULT_TITLES[notification_type],
            message=message,
            actions=list(actions),
            timeout=timeout,
        )
        self._items.insert(0, notification)
        del self._items[self.limit:]
        return notification

    @property
    def items(self) -> List[Notification]:
        return sorted(self._items, key=lambda item: item.timestamp, reverse=True)

    def mark_read(self, ids: Iterable[str]):
        for notification_id in ids:
            self.read_state[notification_id] = True

    def mark_all_read(self):
        self.mark_read(item.id for item in self._items)

    def unread_count(self) -> int:
        return sum(1 for item in self._items if not self.read_state.get(item.id))

    def filter(self, types: Optional[Iterable[str]] = None, unread_only: bool = False) -> List[Notification]:
        wanted = {NotificationType(value) for value in types} if types is not None else None
        return [
            item for item in self.items
            if (wanted is None or item.type in wanted) and not (unread_only and self.read_state.get(item.id))
        ]

    def dismiss(self, notification_id: str):
        self._items = [item for item in self._items if item.id != notification_id]

    def clear(self):
        self._items.clear()
