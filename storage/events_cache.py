"""Single-slot, time-boxed cache of the last fetched event list."""
import json
import logging
import math
import time
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from discovery.models import CacheEntry, EventRecord, FilterState, Location
from storage.backends import StorageError

logger = logging.getLogger(__name__)

Filters = Union[FilterState, Mapping[str, Any], None]


def filter_fingerprint(filters: Filters) -> Dict[str, str]:
    """Normalize a FilterState or mapping to its wire-name fingerprint."""
    if not isinstance(filters, FilterState):
        filters = FilterState.from_mapping(filters)
    return filters.fingerprint()


class EventsCache:
    """
    Cache holding one event list together with the filters that produced it.

    The storage backend is any object exposing get_item, set_item and
    remove_item over strings. Passing storage=None models an environment
    without persistent storage: writes are ignored and reads miss. Reads
    never raise; corrupt or unreadable entries count as a miss.
    """

    CACHE_KEY = 'events_cache'
    TTL_SECONDS = 5 * 60

    def __init__(
        self,
        storage: Optional[Any],
        clock: Callable[[], float] = time.time,
        ttl_seconds: int = TTL_SECONDS,
        key: str = CACHE_KEY
    ):
        """
        Initialize the cache.

        Args:
            storage: Backend with get_item/set_item/remove_item, or None
            clock: Returns the current time in seconds since the epoch
            ttl_seconds: Age after which an entry is expired
            key: Storage key of the single cache slot
        """
        self.storage = storage
        self.clock = clock
        self.ttl_ms = int(ttl_seconds * 1000)
        self.key = key

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def set(
        self,
        events: List[EventRecord],
        filters: Filters = None,
        success: bool = True
    ) -> None:
        """
        Store events with their filters, replacing any previous entry.

        Args:
            events: Event records to cache
            filters: Filters used to produce the events
            success: Whether the fetch succeeded; failed fetches are not cached
        """
        if self.storage is None or not success:
            return

        if not isinstance(events, (list, tuple)) or not all(
            isinstance(event, EventRecord) for event in events
        ):
            logger.warning("Refusing to cache malformed event list")
            return

        payload = {
            'events': [asdict(event) for event in events],
            'timestamp': self._now_ms(),
            'filters': filter_fingerprint(filters),
            'success': success
        }

        try:
            self.storage.set_item(self.key, json.dumps(payload))
            logger.debug(f"Cached {len(events)} events")
        except (StorageError, TypeError, ValueError) as e:
            logger.warning(f"Failed to cache events: {e}")

    def entry(self) -> Optional[CacheEntry]:
        """
        Load and decode the stored entry.

        Returns:
            CacheEntry or None if absent, unreadable or corrupt
        """
        if self.storage is None:
            return None

        try:
            raw = self.storage.get_item(self.key)
        except StorageError as e:
            logger.warning(f"Failed to read cached events: {e}")
            return None

        if not raw:
            return None

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise TypeError(f"entry is a {type(data).__name__}, not an object")

            timestamp = data['timestamp']
            if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) \
                    or not math.isfinite(timestamp):
                raise ValueError(f"invalid timestamp: {timestamp!r}")

            filters = data.get('filters') or {}
            if not isinstance(filters, dict):
                raise TypeError(f"filters is a {type(filters).__name__}, not an object")

            if not isinstance(data['events'], list):
                raise TypeError("events is not a list")

            return CacheEntry(
                events=[self._item_to_event(item) for item in data['events']],
                filters=filters,
                timestamp=int(timestamp),
                success=data.get('success', True) is True
            )
        except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as e:
            logger.warning(f"Discarding corrupt cache entry: {e}")
            return None

    def get(self, filters: Filters = None) -> Optional[List[EventRecord]]:
        """
        Return cached events if fresh and produced by matching filters.

        Every supplied filter must equal the stored value exactly; filters
        not supplied are not required to match.

        Args:
            filters: Filters of the current request

        Returns:
            Cached events or None on a miss
        """
        entry = self.entry()
        if entry is None or not entry.success:
            return None

        if self._age_ms(entry) > self.ttl_ms:
            logger.debug("Cached events expired")
            return None

        requested = filter_fingerprint(filters)
        if any(entry.filters.get(key) != value for key, value in requested.items()):
            logger.debug("Cached events were produced by different filters")
            return None

        return entry.events

    def clear(self) -> None:
        """Remove the cached entry."""
        if self.storage is None:
            return
        try:
            self.storage.remove_item(self.key)
        except StorageError as e:
            logger.warning(f"Failed to clear cached events: {e}")

    def is_expired(self) -> bool:
        """True if there is no valid entry or it is older than the TTL."""
        entry = self.entry()
        if entry is None:
            return True
        return self._age_ms(entry) > self.ttl_ms

    def _age_ms(self, entry: CacheEntry) -> int:
        return self._now_ms() - entry.timestamp

    def _item_to_event(self, item: Dict[str, Any]) -> EventRecord:
        """
        Convert a stored item back to an EventRecord.

        Raises:
            KeyError, TypeError: If the item does not describe an event
        """
        location = item.get('location') or {}
        return EventRecord(
            id=item['id'],
            name=item['name'],
            description=item['description'],
            start_time=item['start_time'],
            end_time=item.get('end_time'),
            location=Location(**location) if location else Location(address=''),
            category=item['category'],
            dress_code=item.get('dress_code'),
            image_url=item.get('image_url')
        )
