"""Projection of event coordinates onto a percentage-based map canvas."""
import logging
from typing import List, Optional, Sequence

from discovery.models import BoundingBox, EventRecord, MarkerPosition

logger = logging.getLogger(__name__)


class MapProjector:
    """Lays out event markers inside the bounding box of their coordinates."""

    DEFAULT_PADDING = 0.15
    DEFAULT_INSET_MIN = 8.0
    DEFAULT_INSET_MAX = 92.0
    CENTER = 50.0

    def __init__(
        self,
        padding: float = DEFAULT_PADDING,
        inset_min: float = DEFAULT_INSET_MIN,
        inset_max: float = DEFAULT_INSET_MAX
    ):
        """
        Initialize the projector.

        Args:
            padding: Fraction of the raw range added beyond each edge
            inset_min: Lowest allowed marker percentage on either axis
            inset_max: Highest allowed marker percentage on either axis

        Raises:
            ValueError: If padding is negative or the inset range is invalid
        """
        if padding < 0:
            raise ValueError(f"padding must be non-negative, got {padding}")
        if not 0 <= inset_min < inset_max <= 100:
            raise ValueError(
                f"inset range must satisfy 0 <= min < max <= 100, "
                f"got [{inset_min}, {inset_max}]"
            )
        self.padding = padding
        self.inset_min = inset_min
        self.inset_max = inset_max

    def bounds(self, events: Sequence[EventRecord]) -> Optional[BoundingBox]:
        """
        Compute the bounding box of all events with valid coordinates.

        Returns:
            BoundingBox or None if no event can be placed
        """
        placeable = self._placeable(events)
        if not placeable:
            return None

        lats = [event.location.latitude for event in placeable]
        lngs = [event.location.longitude for event in placeable]
        return BoundingBox(
            min_lat=min(lats),
            max_lat=max(lats),
            min_lng=min(lngs),
            max_lng=max(lngs)
        )

    def project(self, events: Sequence[EventRecord]) -> List[MarkerPosition]:
        """
        Map each placeable event to canvas percentages.

        Longitude grows left to right; latitude grows bottom to top, so a
        higher latitude gives a smaller y. Events without valid coordinates
        are left out of both the bounds and the result.

        Args:
            events: Event records in display order

        Returns:
            Marker positions in input order
        """
        placeable = self._placeable(events)
        if not placeable:
            return []

        box = self.bounds(placeable)
        if box.is_degenerate:
            return [
                MarkerPosition(event_id=event.id, x=self.CENTER, y=self.CENTER)
                for event in placeable
            ]

        pad_lat = box.lat_range * self.padding
        pad_lng = box.lng_range * self.padding
        padded_lat_range = box.lat_range * (1 + self.padding * 2)
        padded_lng_range = box.lng_range * (1 + self.padding * 2)

        markers = []
        for event in placeable:
            x = (event.location.longitude - (box.min_lng - pad_lng)) / padded_lng_range * 100
            y = (box.max_lat + pad_lat - event.location.latitude) / padded_lat_range * 100
            markers.append(
                MarkerPosition(event_id=event.id, x=self._clamp(x), y=self._clamp(y))
            )
        return markers

    def _clamp(self, value: float) -> float:
        return max(self.inset_min, min(self.inset_max, value))

    def _placeable(self, events: Sequence[EventRecord]) -> List[EventRecord]:
        placeable = [
            event for event in events
            if event.location is not None and event.location.has_coordinates()
        ]
        skipped = len(events) - len(placeable)
        if skipped:
            logger.debug(f"Skipping {skipped} events without valid coordinates")
        return placeable
