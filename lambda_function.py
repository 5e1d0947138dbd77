"""AWS Lambda handler for the event discovery API."""
import base64
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests

from discovery.event_filter import EventFilter
from discovery.map_projector import MapProjector
from discovery.models import BoundingBox, EventRecord, FilterState, Location, MarkerPosition, NewEvent
from fetcher.event_submitter import EventSubmissionError, EventSubmitter, EventValidationError
from fetcher.events_api import EventsFetcher, EventsPayloadError, FetchSupersededError, parse_coordinate
from storage.backends import DynamoDBStorage, FileStorage, InMemoryStorage
from storage.events_cache import EventsCache

# Reused across warm invocations when no persistent backend is configured
_MEMORY_STORAGE = InMemoryStorage()
_FETCHER: Optional[EventsFetcher] = None

_RESERVED_LOG_ATTRS = set(
    logging.LogRecord('', logging.INFO, '', 0, '', None, None).__dict__
) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including any extra fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS and not key.startswith('_'):
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def build_cache(ttl_seconds: int) -> EventsCache:
    """
    Create the events cache on the configured storage backend.

    CACHE_TABLE_NAME selects DynamoDB, CACHE_DIR selects file storage,
    otherwise the process-wide in-memory storage is used.
    """
    table_name = os.environ.get('CACHE_TABLE_NAME')
    cache_dir = os.environ.get('CACHE_DIR')

    if table_name:
        storage = DynamoDBStorage(table_name=table_name)
    elif cache_dir:
        storage = FileStorage(cache_dir)
    else:
        storage = _MEMORY_STORAGE

    return EventsCache(storage, ttl_seconds=ttl_seconds)


def get_fetcher(api_url: str, timeout_seconds: int) -> EventsFetcher:
    """
    Return the process-wide events fetcher, rebuilding it on config change.

    Sharing one fetcher lets a newer request supersede one still in flight.
    """
    global _FETCHER

    if (
        _FETCHER is None
        or _FETCHER.api_url != api_url
        or _FETCHER.timeout != timeout_seconds
    ):
        _FETCHER = EventsFetcher(api_url=api_url, timeout=timeout_seconds)
    return _FETCHER


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def _error_response(
    status_code: int,
    message: str,
    error: Exception,
    start_time: float,
    **extra: Any
) -> Dict[str, Any]:
    body = {
        'message': message,
        'error': str(error),
        'error_type': type(error).__name__,
        'duration_seconds': round(time.time() - start_time, 2)
    }
    body.update(extra)
    return _response(status_code, body)


def event_to_json(event: EventRecord) -> Dict[str, Any]:
    """Serialize an EventRecord using the front end's field names."""
    location = event.location or Location(address='')
    return {
        'id': event.id,
        'eventname': event.name,
        'description': event.description,
        'startTime': event.start_time,
        'endTime': event.end_time,
        'location': {
            'address': location.address,
            'latitude': location.latitude,
            'longitude': location.longitude
        },
        'dressCode': event.dress_code,
        'category': event.category,
        'image_url': event.image_url,
        'mapsUrl': location.maps_url()
    }


def _markers_to_json(markers: List[MarkerPosition]) -> List[Dict[str, Any]]:
    return [
        {'id': marker.event_id, 'x': round(marker.x, 4), 'y': round(marker.y, 4)}
        for marker in markers
    ]


def _bounds_to_json(box: Optional[BoundingBox]) -> Optional[Dict[str, Any]]:
    if box is None:
        return None
    center_lat, center_lng = box.center
    return {
        'minLat': box.min_lat,
        'maxLat': box.max_lat,
        'minLng': box.min_lng,
        'maxLng': box.max_lng,
        'center': {'lat': center_lat, 'lng': center_lng}
    }


def list_events(request: Dict[str, Any], start_time: float) -> Dict[str, Any]:
    """
    Handle GET: serve filtered events from cache or the events API.

    Args:
        request: API Gateway proxy event
        start_time: Invocation start, for duration reporting

    Returns:
        API Gateway proxy response
    """
    logger = logging.getLogger(__name__)
    
    # Read configuration from environment variables
    api_url = os.environ.get('EVENTS_API_URL', 'http://127.0.0.1:8000/api/events/')
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '15'))
    cache_ttl = int(os.environ.get('CACHE_TTL_SECONDS', '300'))
    padding = float(os.environ.get('MAP_PADDING', '0.15'))
    inset_min = float(os.environ.get('MAP_INSET_MIN', '8'))
    inset_max = float(os.environ.get('MAP_INSET_MAX', '92'))
    
    # Missing query keys become '' so an unfiltered request never matches
    # a cached filtered result
    params = request.get('queryStringParameters') or {}
    filters = FilterState.from_mapping(params).complete()
    refresh = str(params.get('refresh', '')).lower() in ('1', 'true', 'yes')
    
    # Try the cache first unless a refresh was requested
    cache = build_cache(cache_ttl)
    events = None if refresh else cache.get(filters)
    cached = events is not None
    
    if cached:
        logger.info(
            f"Serving {len(events)} cached events",
            extra={'filters': filters.fingerprint()}
        )
    else:
        fetcher = get_fetcher(api_url, timeout_seconds)
        try:
            logger.info("Fetching events from events API")
            raw_events = fetcher.fetch_events()
        except requests.Timeout as e:
            logger.error(
                f"Timed out fetching events: {str(e)}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            return _error_response(504, 'Timed out fetching events', e, start_time)
        except FetchSupersededError as e:
            return _error_response(409, 'Fetch superseded by a newer request', e, start_time)
        except (requests.RequestException, EventsPayloadError) as e:
            logger.error(
                f"Failed to fetch events after retries: {str(e)}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            return _error_response(502, 'Failed to fetch events', e, start_time)
        
        # Filter, then cache under the filters that produced the result
        events = EventFilter().apply(raw_events, filters)
        cache.set(events, filters)
        logger.info(
            f"Filtered {len(raw_events)} fetched events down to {len(events)}",
            extra={'filters': filters.fingerprint()}
        )
    
    # Lay out map markers for the result
    projector = MapProjector(padding=padding, inset_min=inset_min, inset_max=inset_max)

    return _response(200, {
        'events': [event_to_json(event) for event in events],
        'total': len(events),
        'markers': _markers_to_json(projector.project(events)),
        'bounds': _bounds_to_json(projector.bounds(events)),
        'cached': cached
    })


def _new_event_from_body(data: Dict[str, Any]) -> NewEvent:
    raw_location = data.get('location')
    location = None
    if isinstance(raw_location, dict):
        location = Location(
            address=str(raw_location.get('address') or ''),
            latitude=parse_coordinate(raw_location.get('latitude')),
            longitude=parse_coordinate(raw_location.get('longitude'))
        )

    return NewEvent(
        name=str(data.get('name') or ''),
        start_date=str(data.get('startDate') or ''),
        start_time=str(data.get('startTime') or ''),
        location=location,
        image=data.get('image') or None,
        description=str(data.get('description') or ''),
        end_date=str(data.get('endDate') or ''),
        end_time=str(data.get('endTime') or ''),
        dress_code=str(data.get('dressCode') or '')
    )


def create_event(request: Dict[str, Any], start_time: float) -> Dict[str, Any]:
    """
    Handle POST: validate and forward a new event to the backend.

    Args:
        request: API Gateway proxy event
        start_time: Invocation start, for duration reporting

    Returns:
        API Gateway proxy response
    """
    logger = logging.getLogger(__name__)
    
    # Read configuration from environment variables
    create_url = os.environ.get(
        'CREATE_EVENT_URL', 'http://127.0.0.1:8000/api/events/create/'
    )
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '15'))
    cache_ttl = int(os.environ.get('CACHE_TTL_SECONDS', '300'))
    
    # Decode the JSON body, base64 first when API Gateway encoded it
    body = request.get('body') or ''
    try:
        if request.get('isBase64Encoded'):
            body = base64.b64decode(body).decode('utf-8')
        data = json.loads(body)
    except ValueError as e:
        return _error_response(400, 'Request body must be JSON', e, start_time)

    if not isinstance(data, dict):
        return _error_response(
            400, 'Request body must be a JSON object',
            ValueError(f"Got {type(data).__name__}"), start_time
        )
    
    # Validate and forward to the backend
    submitter = EventSubmitter(create_url=create_url, timeout=timeout_seconds)
    try:
        result = submitter.submit(_new_event_from_body(data))
    except EventValidationError as e:
        return _error_response(
            400, 'Please fill in all required fields.', e, start_time,
            missing_fields=e.missing_fields
        )
    except EventSubmissionError as e:
        status_code = e.status_code if e.status_code and e.status_code >= 400 else 502
        return _error_response(status_code, str(e), e, start_time)
    except requests.RequestException as e:
        logger.error(
            f"Failed to submit event: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(502, 'Failed to create event', e, start_time)
    
    # New event makes any cached listing stale
    build_cache(cache_ttl).clear()

    return _response(201, {
        'message': 'Event created successfully!',
        'event': result
    })


def _request_method(request: Dict[str, Any]) -> str:
    method = request.get('httpMethod')
    if not method:
        method = request.get('requestContext', {}).get('http', {}).get('method')
    return (method or 'GET').upper()


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for the event discovery API.

    Args:
        event: API Gateway proxy event
        context: Lambda context object

    Returns:
        Response dict with statusCode, headers and JSON body
    """
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    
    # Initialize logging
    setup_logging(log_level)
    logger = logging.getLogger(__name__)
    
    # Log Lambda execution start
    start_time = time.time()
    method = _request_method(event)
    logger.info("Lambda execution started", extra={'method': method})
    
    try:
        if method == 'GET':
            response = list_events(event, start_time)
        elif method == 'POST':
            response = create_event(event, start_time)
        else:
            return _response(405, {'message': f"Method {method} not allowed"})
        
        # Log execution summary
        logger.info(
            "Lambda execution completed",
            extra={
                'status_code': response['statusCode'],
                'duration_seconds': round(time.time() - start_time, 2)
            }
        )
        return response
    
    except Exception as e:
        duration = time.time() - start_time
        
        # Log error
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        
        # Return error response
        return _error_response(500, 'Request failed', e, start_time)
