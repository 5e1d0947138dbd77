"""Client for the remote events API."""
import logging
import math
import threading
import time
from datetime import datetime
from typing import Any, Callable, List, Optional

import requests

from discovery.models import EventRecord, Location

logger = logging.getLogger(__name__)


class EventsPayloadError(ValueError):
    """Raised when the events API returns a body that cannot be used."""


class FetchSupersededError(Exception):
    """Raised when a newer fetch started before this one finished."""


def _wrapped_list(key: str) -> Callable[[Any], Optional[list]]:
    def extract(data: Any) -> Optional[list]:
        if isinstance(data, dict) and isinstance(data.get(key), list):
            return data[key]
        return None
    extract.__name__ = f"extract_{key}"
    return extract


def _bare_list(data: Any) -> Optional[list]:
    return data if isinstance(data, list) else None


# Tried in order, first match wins
ENVELOPE_STRATEGIES: List[Callable[[Any], Optional[list]]] = [
    _bare_list,
    _wrapped_list('events'),
    _wrapped_list('results'),
    _wrapped_list('events_list'),
    _wrapped_list('data'),
]


def unwrap_envelope(data: Any) -> List[Any]:
    """
    Extract the list of raw event items from a response body.

    Args:
        data: Decoded JSON body

    Returns:
        List of raw items (empty if an object has no known wrapper key)

    Raises:
        EventsPayloadError: If the body is neither a list nor an object
    """
    if not isinstance(data, (list, dict)):
        raise EventsPayloadError(
            f"Expected a list or object, got {type(data).__name__}"
        )

    for strategy in ENVELOPE_STRATEGIES:
        items = strategy(data)
        if items is not None:
            return items

    logger.warning(
        f"No events found in response envelope with keys: {sorted(data.keys())}"
    )
    return []


def _first(item: dict, *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return None


def parse_coordinate(value: Any) -> Optional[float]:
    """Convert a latitude/longitude value to float, or None if invalid."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _text(value: Any) -> str:
    return '' if value is None else str(value)


TIME_FORMATS = [
    '%H:%M',         # 24-hour format
    '%H:%M:%S',      # 24-hour with seconds
    '%I:%M %p',      # 12-hour format with AM/PM
    '%I:%M%p',       # 12-hour format without space
    '%I:%M:%S %p',   # 12-hour with seconds and AM/PM
]


def _normalize_time(time_str: str) -> str:
    """Convert a clock time to 24-hour HH:MM:SS, or return it unchanged."""
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(time_str.strip(), fmt).strftime('%H:%M:%S')
        except ValueError:
            continue
    return time_str


def _combine_date_time(date_str: Any, time_str: Any) -> Optional[str]:
    """Join separate date and time fields into one ISO-8601 string."""
    date_str = _text(date_str).strip()
    time_str = _text(time_str).strip()
    if not date_str:
        return time_str or None
    if not time_str:
        return date_str
    if 'T' in time_str or '-' in time_str:
        # Already a full timestamp
        return time_str
    return f"{date_str}T{_normalize_time(time_str)}"


def parse_event(item: Any) -> Optional[EventRecord]:
    """
    Normalize a raw API item into an EventRecord.

    Args:
        item: Decoded JSON object for one event

    Returns:
        EventRecord or None if the item is not an object or has no id
    """
    if not isinstance(item, dict):
        logger.warning(f"Skipping non-object event item: {item!r}")
        return None

    event_id = item.get('id')
    if event_id is None or event_id == '':
        logger.warning(f"Skipping event without id: {_first(item, 'eventname', 'name')}")
        return None

    raw_location = item.get('location')
    if isinstance(raw_location, dict):
        location = Location(
            address=_text(raw_location.get('address')),
            latitude=parse_coordinate(raw_location.get('latitude')),
            longitude=parse_coordinate(raw_location.get('longitude'))
        )
    else:
        location = Location(
            address=_text(raw_location),
            latitude=parse_coordinate(item.get('latitude')),
            longitude=parse_coordinate(item.get('longitude'))
        )

    start_time = _combine_date_time(
        _first(item, 'startDate', 'start_date'),
        _first(item, 'startTime', 'start_time')
    )
    end_time = _combine_date_time(
        _first(item, 'endDate', 'end_date'),
        _first(item, 'endTime', 'end_time')
    )

    return EventRecord(
        id=event_id,
        name=_text(_first(item, 'eventname', 'name', 'title')),
        description=_text(item.get('description')),
        start_time=_text(start_time),
        end_time=end_time,
        location=location,
        category=_text(item.get('category')),
        dress_code=_first(item, 'dressCode', 'dress_code'),
        image_url=_first(item, 'image_url', 'imageUrl', 'image')
    )


class EventsFetcher:
    """Fetches and normalizes events from the events API."""

    MAX_RETRIES = 3
    BASE_DELAY = 1  # seconds

    def __init__(self, api_url: str, timeout: int = 15):
        """
        Initialize the fetcher.

        Args:
            api_url: Events endpoint URL
            timeout: HTTP request timeout in seconds (default: 15)
        """
        self.api_url = api_url
        self.timeout = timeout
        self._lock = threading.Lock()
        self._latest_request = 0

    def _start_request(self) -> int:
        with self._lock:
            self._latest_request += 1
            return self._latest_request

    def _ensure_current(self, request_id: int) -> None:
        with self._lock:
            superseded = request_id != self._latest_request
        if superseded:
            logger.info(f"Fetch {request_id} superseded by a newer request")
            raise FetchSupersededError(f"Fetch {request_id} was superseded")

    def cancel(self) -> None:
        """Invalidate any fetch currently in flight."""
        self._start_request()

    def fetch_events(self) -> List[EventRecord]:
        """
        Fetch all events from the API.

        Returns:
            List of EventRecord objects in API order

        Raises:
            requests.Timeout: If the last attempt timed out
            requests.RequestException: If all retry attempts fail
            EventsPayloadError: If the body is not a usable JSON payload
            FetchSupersededError: If a newer fetch started meanwhile
        """
        request_id = self._start_request()
        # Fetch, then drop the result if a newer request started meanwhile
        data = self._fetch_json(request_id)
        self._ensure_current(request_id)

        # Parse events, skipping unusable items
        events = []
        for item in unwrap_envelope(data):
            event = parse_event(item)
            if event:
                events.append(event)

        logger.info(f"Successfully fetched {len(events)} events")
        return events

    def _fetch_json(self, request_id: int) -> Any:
        """
        GET the events endpoint with retry logic and decode the body.

        Raises:
            requests.RequestException: If all retry attempts fail
            EventsPayloadError: If the body is not JSON
        """
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json'
        }

        for attempt in range(self.MAX_RETRIES):
            self._ensure_current(request_id)
            try:
                logger.info(
                    f"Fetching events from {self.api_url} "
                    f"(attempt {attempt + 1}/{self.MAX_RETRIES})"
                )
                response = requests.get(
                    self.api_url,
                    headers=headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                break

            except requests.RequestException as e:
                if attempt < self.MAX_RETRIES - 1:
                    # Calculate exponential backoff delay
                    delay = self.BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.MAX_RETRIES} retry attempts failed. Last error: {e}"
                    )
                    raise

        try:
            return response.json()
        except ValueError as e:
            raise EventsPayloadError(f"Events API returned invalid JSON: {e}") from e
