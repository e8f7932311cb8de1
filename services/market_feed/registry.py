from typing import Dict, FrozenSet, Iterable, List

from .models import SubscriptionKey, SubscriptionMode


class SubscriptionRegistry:
    """In-memory record of what the caller wants to be subscribed to.

    Used to replay subscriptions after a reconnect. Keys keep insertion
    order so replays are deterministic.
    """

    def __init__(self):
        self._keys: Dict[SubscriptionKey, None] = {}

    def add(self, keys: Iterable[SubscriptionKey]) -> List[SubscriptionKey]:
        added = []
        for key in keys:
            if key not in self._keys:
                self._keys[key] = None
                added.append(key)
        return added

    def remove(self, keys: Iterable[SubscriptionKey]) -> List[SubscriptionKey]:
        removed = []
        for key in keys:
            if key in self._keys:
                del self._keys[key]
                removed.append(key)
        return removed

    def snapshot(self) -> Dict[SubscriptionMode, List[SubscriptionKey]]:
        """Current keys grouped by mode; one subscribe request per mode."""
        by_mode: Dict[SubscriptionMode, List[SubscriptionKey]] = {}
        for key in self._keys:
            by_mode.setdefault(key.mode, []).append(key)
        return by_mode

    def keys(self) -> FrozenSet[SubscriptionKey]:
        return frozenset(self._keys)

    def clear(self) -> None:
        self._keys.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)
