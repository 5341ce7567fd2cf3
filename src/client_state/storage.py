"""Shared key/value storage used as the cross-tab broadcast channel.

``SharedStorage`` plays the role of the origin's persisted store: every tab
attaches a ``StorageHandle`` and a write through one handle is announced to
the subscribers of all *other* handles, the same way a browser only fires
``storage`` events in the tabs that did not make the change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from client_state.errors import StorageQuotaExceededError, StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: str | None
    new_value: str | None

    @property
    def removed(self) -> bool:
        return self.new_value is None


StorageListener = Callable[[StorageEvent], None]


@runtime_checkable
class SyncStorage(Protocol):
    """Persisted key/value area plus change notifications from other tabs.

    ``set_item`` publishes a value and ``remove_item`` publishes a tombstone;
    ``subscribe`` receives both as ``StorageEvent`` objects.
    """

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...

    def subscribe(self, listener: StorageListener) -> Callable[[], None]: ...


class SharedStorage:
    """In-process origin storage shared by every attached tab."""

    def __init__(self, quota_bytes: int | None = DEFAULT_QUOTA_BYTES) -> None:
        self.quota_bytes = quota_bytes
        self.enabled = True
        self._items: dict[str, str] = {}
        self._handles: list[StorageHandle] = []

    def attach(self) -> StorageHandle:
        handle = StorageHandle(self)
        self._handles.append(handle)
        return handle

    def used_bytes(self) -> int:
        return sum(_item_size(k, v) for k, v in self._items.items())

    def __len__(self) -> int:
        return len(self._items)

    def _check_available(self) -> None:
        if not self.enabled:
            raise StorageUnavailableError("Shared storage is disabled")

    def _write(self, origin: StorageHandle, key: str, value: str) -> None:
        self._check_available()
        old = self._items.get(key)
        if self.quota_bytes is not None:
            used = self.used_bytes() - (_item_size(key, old) if old is not None else 0)
            used += _item_size(key, value)
            if used > self.quota_bytes:
                raise StorageQuotaExceededError(key, used, self.quota_bytes)
        self._items[key] = value
        if old != value:
            self._broadcast(origin, StorageEvent(key, old, value))

    def _delete(self, origin: StorageHandle, key: str) -> None:
        self._check_available()
        old = self._items.pop(key, None)
        if old is not None:
            self._broadcast(origin, StorageEvent(key, old, None))

    def _broadcast(self, origin: StorageHandle, event: StorageEvent) -> None:
        for handle in list(self._handles):
            if handle is not origin:
                handle._deliver(event)

    def _detach(self, handle: StorageHandle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)


class StorageHandle:
    """One tab's view of a ``SharedStorage``; implements ``SyncStorage``."""

    def __init__(self, shared: SharedStorage) -> None:
        self._shared: SharedStorage | None = shared
        self._listeners: list[StorageListener] = []

    @property
    def attached(self) -> bool:
        return self._shared is not None

    def get_item(self, key: str) -> str | None:
        return self._require()._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._require()._write(self, key, value)

    def remove_item(self, key: str) -> None:
        self._require()._delete(self, key)

    def keys(self) -> list[str]:
        return list(self._require()._items)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def detach(self) -> None:
        if self._shared is not None:
            self._shared._detach(self)
            self._shared = None
        self._listeners.clear()

    def _require(self) -> SharedStorage:
        if self._shared is None:
            raise StorageUnavailableError("Storage handle is detached")
        self._shared._check_available()
        return self._shared

    def _deliver(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Storage listener failed for key %s", event.key)


def _item_size(key: str, value: str) -> int:
    # Browser quotas count UTF-16 code units for key and value.
    return 2 * (len(key) + len(value))
