"""Location, category and date-range filtering for event lists."""
import logging
import re
from datetime import datetime, time, timezone
from typing import Any, List, Mapping, Optional, Sequence, Union

from discovery.models import EventRecord, FilterState

logger = logging.getLogger(__name__)

ALL_CATEGORIES = 'all'

END_OF_DAY = time(23, 59, 59, 999000)

FRACTION_RE = re.compile(r'(?<=:\d\d)\.(\d+)')

# Calendar formats accepted besides ISO-8601
DATE_FORMATS = [
    '%m/%d/%Y',      # US format
    '%m-%d-%Y',      # US format with dashes
    '%B %d, %Y',     # Full month name
    '%b %d, %Y',     # Abbreviated month name
    '%d/%m/%Y',      # European format
    '%Y/%m/%d',      # Alternative ISO format
]


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 date/datetime or a common calendar date.

    Timezone-aware values are converted to naive UTC so that date-only
    filter bounds and timestamped records compare on the same scale.

    Args:
        value: Date string (or datetime) to parse

    Returns:
        Naive datetime or None if parsing fails
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        # fromisoformat before 3.11 only takes 3 or 6 fractional digits
        text = FRACTION_RE.sub(
            lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1
        )
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class EventFilter:
    """Stable filter over event records; active predicates are AND-ed."""

    def apply(
        self,
        events: Sequence[EventRecord],
        filters: Union[FilterState, Mapping[str, Any], None] = None
    ) -> List[EventRecord]:
        """
        Return the events matching every active filter, in input order.

        Args:
            events: Event records to filter
            filters: FilterState, mapping of filter values, or None

        Returns:
            New list containing the matching records
        """
        if not isinstance(filters, FilterState):
            filters = FilterState.from_mapping(filters)

        location = (filters.location or '').strip().casefold()
        category = (filters.category or '').strip().casefold()
        if category == ALL_CATEGORIES:
            category = ''

        start_bound = parse_datetime(filters.start_date)
        if filters.start_date and start_bound is None:
            logger.debug(f"Ignoring unparseable start date: {filters.start_date}")

        end_bound = parse_datetime(filters.end_date)
        if end_bound is not None:
            end_bound = datetime.combine(end_bound.date(), END_OF_DAY)
        elif filters.end_date:
            logger.debug(f"Ignoring unparseable end date: {filters.end_date}")

        matched = [
            event for event in events
            if self._matches(event, location, category, start_bound, end_bound)
        ]
        logger.debug(f"Filtered {len(events)} events down to {len(matched)}")
        return matched

    def _matches(
        self,
        event: EventRecord,
        location: str,
        category: str,
        start_bound: Optional[datetime],
        end_bound: Optional[datetime]
    ) -> bool:
        if location and location not in self._address(event).casefold():
            return False

        if category and (event.category or '').casefold() != category:
            return False

        if start_bound is None and end_bound is None:
            return True

        starts_at = parse_datetime(event.start_time)
        if starts_at is None:
            return False
        if start_bound is not None and starts_at < start_bound:
            return False
        if end_bound is not None and starts_at > end_bound:
            return False
        return True

    @staticmethod
    def _address(event: EventRecord) -> str:
        location = event.location
        if location is None:
            return ''
        return location.address or ''
