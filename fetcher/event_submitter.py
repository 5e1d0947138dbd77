"""Client for submitting new events to the backend."""
import base64
import logging
import mimetypes
from typing import Any, Dict, List, Optional

import requests

from discovery.models import NewEvent

logger = logging.getLogger(__name__)


class EventValidationError(ValueError):
    """Raised when a new event is missing required fields."""

    def __init__(self, missing_fields: List[str]):
        self.missing_fields = missing_fields
        super().__init__(
            f"Missing required fields: {', '.join(missing_fields)}"
        )


class EventSubmissionError(Exception):
    """Raised when the backend rejects a new event."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def encode_image(data: bytes, filename: str = '') -> str:
    """
    Encode raw image bytes as a data URL.

    Args:
        data: Image file contents
        filename: Original file name, used to guess the MIME type

    Returns:
        String of the form data:<mime>;base64,<payload>
    """
    mime_type, _ = mimetypes.guess_type(filename)
    if not mime_type or not mime_type.startswith('image/'):
        mime_type = 'application/octet-stream'
    encoded = base64.b64encode(data).decode('ascii')
    return f"data:{mime_type};base64,{encoded}"


class EventSubmitter:
    """Posts new events to the event creation endpoint."""

    def __init__(self, create_url: str, timeout: int = 15):
        """
        Initialize the submitter.

        Args:
            create_url: Event creation endpoint URL
            timeout: HTTP request timeout in seconds (default: 15)
        """
        self.create_url = create_url
        self.timeout = timeout

    def validate(self, new_event: NewEvent) -> None:
        """
        Check that all required fields are present.

        Raises:
            EventValidationError: If any required field is missing
        """
        missing = []
        if not (new_event.name or '').strip():
            missing.append('name')
        if not (new_event.start_date or '').strip():
            missing.append('start_date')
        if not (new_event.start_time or '').strip():
            missing.append('start_time')
        if new_event.location is None or not (new_event.location.address or '').strip():
            missing.append('location')
        if not new_event.image:
            missing.append('image')

        if missing:
            raise EventValidationError(missing)

    def build_payload(self, new_event: NewEvent) -> Dict[str, Any]:
        """Convert a NewEvent into the JSON body expected by the backend."""
        location = new_event.location
        return {
            'name': new_event.name.strip(),
            'dressCode': new_event.dress_code,
            'description': new_event.description,
            'startDate': new_event.start_date,
            'startTime': new_event.start_time,
            'endDate': new_event.end_date,
            'endTime': new_event.end_time,
            'location': {
                'address': location.address,
                'latitude': location.latitude,
                'longitude': location.longitude
            },
            'image': new_event.image
        }

    def submit(self, new_event: NewEvent) -> Dict[str, Any]:
        """
        Validate and submit a new event.

        Args:
            new_event: Event entered by the user

        Returns:
            Decoded JSON response from the backend (empty dict if none)

        Raises:
            EventValidationError: If required fields are missing
            EventSubmissionError: If the backend responds with an error status
            requests.RequestException: On network failures
        """
        self.validate(new_event)
        payload = self.build_payload(new_event)

        logger.info(f"Submitting event '{payload['name']}' to {self.create_url}")
        response = requests.post(
            self.create_url,
            json=payload,
            headers={'Content-Type': 'application/json'},
            timeout=self.timeout
        )

        if not response.ok:
            message = self._error_message(response)
            logger.warning(
                f"Event creation rejected with status {response.status_code}: {message}"
            )
            raise EventSubmissionError(message, status_code=response.status_code)

        logger.info(f"Event '{payload['name']}' created successfully")
        try:
            return response.json()
        except ValueError:
            return {}

    def _error_message(self, response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get('message'):
            return str(body['message'])
        return 'Failed to create event.'
