"""Data models for event discovery."""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


@dataclass
class Location:
    """Event venue with optional coordinates."""
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def has_coordinates(self) -> bool:
        """Return True if the location can be placed on a map."""
        lat, lng = self.latitude, self.longitude
        if isinstance(lat, bool) or isinstance(lng, bool):
            return False
        if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
            return False
        # NaN fails both comparisons
        return -90 <= lat <= 90 and -180 <= lng <= 180

    def maps_url(self) -> Optional[str]:
        """Google Maps search link for the coordinates, if any."""
        if not self.has_coordinates():
            return None
        return (
            "https://www.google.com/maps/search/?api=1"
            f"&query={self.latitude},{self.longitude}"
        )


@dataclass
class EventRecord:
    """Event as returned by the events API."""
    id: Union[str, int]
    name: str
    description: str
    start_time: str
    end_time: Optional[str]
    location: Location
    category: str
    dress_code: Optional[str] = None
    image_url: Optional[str] = None


# Wire names used by the front end and the cache fingerprint
FILTER_KEYS: Tuple[Tuple[str, str], ...] = (
    ('location', 'location'),
    ('category', 'category'),
    ('start_date', 'startDate'),
    ('end_date', 'endDate'),
)


@dataclass
class FilterState:
    """Active dashboard filters. None means the field was not supplied."""
    location: Optional[str] = None
    category: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> 'FilterState':
        """
        Build a FilterState from query parameters or a fingerprint.

        Accepts either wire names (startDate) or attribute names (start_date).
        """
        if not values:
            return cls()
        kwargs = {}
        for attr, wire in FILTER_KEYS:
            value = values.get(wire, values.get(attr))
            if value is not None:
                kwargs[attr] = str(value)
        return cls(**kwargs)

    def complete(self) -> 'FilterState':
        """Copy with every unsupplied field set to the empty string."""
        return FilterState(**{
            attr: getattr(self, attr) if getattr(self, attr) is not None else ''
            for attr, _ in FILTER_KEYS
        })

    def fingerprint(self) -> Dict[str, str]:
        """Supplied fields keyed by wire name, used as the cache key."""
        return {
            wire: getattr(self, attr)
            for attr, wire in FILTER_KEYS
            if getattr(self, attr) is not None
        }


@dataclass
class CacheEntry:
    """Single cached fetch result."""
    events: List[EventRecord]
    filters: Dict[str, str]
    timestamp: int
    success: bool = True


@dataclass
class MarkerPosition:
    """Marker placement as percentages of the map canvas."""
    event_id: Union[str, int]
    x: float
    y: float


@dataclass
class BoundingBox:
    """Minimal lat/lng rectangle containing a set of events."""
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def lat_range(self) -> float:
        return self.max_lat - self.min_lat

    @property
    def lng_range(self) -> float:
        return self.max_lng - self.min_lng

    @property
    def center(self) -> Tuple[float, float]:
        return (
            (self.min_lat + self.max_lat) / 2,
            (self.min_lng + self.max_lng) / 2,
        )

    @property
    def is_degenerate(self) -> bool:
        return self.lat_range == 0 or self.lng_range == 0


@dataclass
class NewEvent:
    """Event submitted through the creation form."""
    name: str
    start_date: str
    start_time: str
    location: Optional[Location]
    image: Optional[str]
    description: str = ''
    end_date: str = ''
    end_time: str = ''
    dress_code: str = ''
