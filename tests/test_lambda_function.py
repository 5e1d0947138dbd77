"""Integration tests for Lambda handler."""
import base64
import json
import logging
import os
from unittest.mock import Mock, patch

import pytest
import responses
from requests.exceptions import ConnectionError, Timeout

import lambda_function
from discovery.models import EventRecord, Location
from fetcher.event_submitter import EventSubmissionError
from fetcher.events_api import EventsPayloadError, FetchSupersededError
from lambda_function import JsonFormatter, lambda_handler, setup_logging
from storage.backends import InMemoryStorage


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'EVENTS_API_URL': 'http://api.test/events/',
        'CREATE_EVENT_URL': 'http://api.test/events/create/',
        'LOG_LEVEL': 'INFO',
        'TIMEOUT_SECONDS': '15',
        'CACHE_TTL_SECONDS': '300'
    }
    with patch.dict(os.environ, env_vars):
        os.environ.pop('CACHE_TABLE_NAME', None)
        os.environ.pop('CACHE_DIR', None)
        yield env_vars


@pytest.fixture(autouse=True)
def fresh_memory_storage():
    """Give each test its own process-wide cache storage and fetcher."""
    with patch.object(lambda_function, '_MEMORY_STORAGE', InMemoryStorage()), \
            patch.object(lambda_function, '_FETCHER', None):
        yield


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def sample_events():
    return [
        EventRecord(
            id='1',
            name='Summer Concert',
            description='Live music in the park',
            start_time='2024-06-20',
            end_time=None,
            location=Location(address='Golden Gate Park, SF', latitude=37.7694, longitude=-122.4862),
            category='Music'
        ),
        EventRecord(
            id='2',
            name='Startup Mixer',
            description='Networking',
            start_time='2024-04-10',
            end_time=None,
            location=Location(address='Innovation Hub, Palo Alto', latitude=37.4419, longitude=-122.1430),
            category='Business'
        ),
    ]


def get_request(params=None):
    return {'httpMethod': 'GET', 'queryStringParameters': params}


def post_request(payload, encode=False):
    body = json.dumps(payload)
    if encode:
        body = base64.b64encode(body.encode('utf-8')).decode('ascii')
    return {'httpMethod': 'POST', 'body': body, 'isBase64Encoded': encode}


class TestListEvents:
    """Test cases for GET requests."""

    @patch('lambda_function.EventsFetcher')
    def test_filters_and_projects(self, mock_fetcher_class, mock_env, mock_context, sample_events):
        mock_fetcher_class.return_value.fetch_events.return_value = sample_events

        response = lambda_handler(get_request({'location': 'sf'}), mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['total'] == 1
        assert body['cached'] is False
        assert body['events'][0]['eventname'] == 'Summer Concert'
        assert body['events'][0]['location']['address'] == 'Golden Gate Park, SF'
        assert body['markers'] == [{'id': '1', 'x': 50, 'y': 50}]
        assert body['bounds']['center'] == {'lat': 37.7694, 'lng': -122.4862}
        mock_fetcher_class.assert_called_once_with(
            api_url='http://api.test/events/', timeout=15
        )

    @patch('lambda_function.EventsFetcher')
    def test_second_request_served_from_cache(self, mock_fetcher_class, mock_env, mock_context, sample_events):
        mock_fetcher_class.return_value.fetch_events.return_value = sample_events

        lambda_handler(get_request({'category': 'Music'}), mock_context)
        response = lambda_handler(get_request({'category': 'Music'}), mock_context)

        body = json.loads(response['body'])
        assert body['cached'] is True
        assert body['total'] == 1
        assert mock_fetcher_class.return_value.fetch_events.call_count == 1

    @patch('lambda_function.EventsFetcher')
    def test_changed_filters_refetch(self, mock_fetcher_class, mock_env, mock_context, sample_events):
        mock_fetcher_class.return_value.fetch_events.return_value = sample_events

        lambda_handler(get_request({'category': 'Music'}), mock_context)
        response = lambda_handler(get_request({'category': 'Business'}), mock_context)

        body = json.loads(response['body'])
        assert body['cached'] is False
        assert [event['id'] for event in body['events']] == ['2']
        assert mock_fetcher_class.return_value.fetch_events.call_count == 2

    @patch('lambda_function.EventsFetcher')
    def test_refresh_bypasses_cache(self, mock_fetcher_class, mock_env, mock_context, sample_events):
        mock_fetcher_class.return_value.fetch_events.return_value = sample_events

        lambda_handler(get_request(), mock_context)
        response = lambda_handler(get_request({'refresh': 'true'}), mock_context)

        assert json.loads(response['body'])['cached'] is False
        assert mock_fetcher_class.return_value.fetch_events.call_count == 2

    @patch('lambda_function.EventsFetcher')
    def test_file_cache_backend(self, mock_fetcher_class, mock_env, mock_context, sample_events, tmp_path):
        mock_fetcher_class.return_value.fetch_events.return_value = sample_events

        with patch.dict(os.environ, {'CACHE_DIR': str(tmp_path)}):
            lambda_handler(get_request(), mock_context)

        assert (tmp_path / 'events_cache.json').exists()

    @pytest.mark.parametrize('error, status_code', [
        (Timeout("timed out"), 504),
        (ConnectionError("refused"), 502),
        (EventsPayloadError("bad json"), 502),
        (FetchSupersededError("superseded"), 409),
        (RuntimeError("boom"), 500),
    ])
    @patch('lambda_function.EventsFetcher')
    def test_fetch_errors(self, mock_fetcher_class, error, status_code, mock_env, mock_context):
        mock_fetcher_class.return_value.fetch_events.side_effect = error

        response = lambda_handler(get_request(), mock_context)

        assert response['statusCode'] == status_code
        body = json.loads(response['body'])
        assert body['error'] == str(error)
        assert body['error_type'] == type(error).__name__
        assert 'duration_seconds' in body

    @patch('lambda_function.EventsFetcher')
    def test_failed_fetch_not_cached(self, mock_fetcher_class, mock_env, mock_context, sample_events):
        mock_fetcher_class.return_value.fetch_events.side_effect = [
            Timeout("timed out"), sample_events
        ]

        lambda_handler(get_request(), mock_context)
        response = lambda_handler(get_request(), mock_context)

        assert json.loads(response['body'])['cached'] is False

    @patch('lambda_function.EventsFetcher')
    def test_unfiltered_request_after_filtered_refetches(
        self, mock_fetcher_class, mock_env, mock_context, sample_events
    ):
        mock_fetcher_class.return_value.fetch_events.return_value = sample_events

        lambda_handler(get_request({'location': 'sf'}), mock_context)
        response = lambda_handler(get_request(), mock_context)

        body = json.loads(response['body'])
        assert body['cached'] is False
        assert body['total'] == 2
        assert mock_fetcher_class.return_value.fetch_events.call_count == 2

    @patch('lambda_function.EventsFetcher')
    def test_empty_query_values_share_unfiltered_cache(
        self, mock_fetcher_class, mock_env, mock_context, sample_events
    ):
        mock_fetcher_class.return_value.fetch_events.return_value = sample_events

        lambda_handler(get_request(), mock_context)
        response = lambda_handler(get_request({'location': '', 'category': ''}), mock_context)

        body = json.loads(response['body'])
        assert body['cached'] is True
        assert body['total'] == 2

    @responses.activate
    def test_fetcher_reused_across_invocations(self, mock_env, mock_context):
        responses.add(responses.GET, 'http://api.test/events/', json=[])

        lambda_handler(get_request({'refresh': '1'}), mock_context)
        fetcher = lambda_function._FETCHER
        lambda_handler(get_request({'refresh': '1'}), mock_context)

        assert fetcher is not None
        assert lambda_function._FETCHER is fetcher
        assert len(responses.calls) == 2

    @responses.activate
    def test_fetcher_rebuilt_when_config_changes(self, mock_env, mock_context):
        responses.add(responses.GET, 'http://api.test/events/', json=[])
        responses.add(responses.GET, 'http://other.test/events/', json=[])

        lambda_handler(get_request(), mock_context)
        first = lambda_function._FETCHER
        with patch.dict(os.environ, {'EVENTS_API_URL': 'http://other.test/events/'}):
            lambda_handler(get_request({'refresh': '1'}), mock_context)

        assert lambda_function._FETCHER is not first
        assert lambda_function._FETCHER.api_url == 'http://other.test/events/'

    @responses.activate
    def test_newer_request_supersedes_in_flight_fetch(self, mock_env, mock_context):
        def newer_request_arrives(request):
            lambda_function.get_fetcher('http://api.test/events/', 15).cancel()
            return 200, {}, json.dumps([])

        responses.add_callback(
            responses.GET, 'http://api.test/events/', callback=newer_request_arrives
        )

        response = lambda_handler(get_request(), mock_context)

        assert response['statusCode'] == 409
        body = json.loads(response['body'])
        assert body['error_type'] == 'FetchSupersededError'
        assert lambda_function._MEMORY_STORAGE.get_item('events_cache') is None


class TestCreateEvent:
    """Test cases for POST requests."""

    PAYLOAD = {
        'name': 'Summer Concert',
        'startDate': '2024-06-20',
        'startTime': '18:00',
        'location': {'address': 'Golden Gate Park, SF', 'latitude': 37.7694, 'longitude': -122.4862},
        'image': 'data:image/png;base64,YWJj'
    }

    @patch('lambda_function.EventSubmitter')
    def test_create_event(self, mock_submitter_class, mock_env, mock_context):
        mock_submitter_class.return_value.submit.return_value = {'id': 42}

        response = lambda_handler(post_request(self.PAYLOAD), mock_context)

        assert response['statusCode'] == 201
        assert json.loads(response['body'])['event'] == {'id': 42}
        new_event = mock_submitter_class.return_value.submit.call_args.args[0]
        assert new_event.name == 'Summer Concert'
        assert new_event.location.latitude == 37.7694

    @patch('lambda_function.EventSubmitter')
    def test_create_event_base64_body(self, mock_submitter_class, mock_env, mock_context):
        mock_submitter_class.return_value.submit.return_value = {}

        response = lambda_handler(post_request(self.PAYLOAD, encode=True), mock_context)

        assert response['statusCode'] == 201

    @patch('lambda_function.EventsFetcher')
    @patch('lambda_function.EventSubmitter')
    def test_create_event_clears_cache(
        self, mock_submitter_class, mock_fetcher_class, mock_env, mock_context, sample_events
    ):
        mock_fetcher_class.return_value.fetch_events.return_value = sample_events
        mock_submitter_class.return_value.submit.return_value = {}

        lambda_handler(get_request(), mock_context)
        lambda_handler(post_request(self.PAYLOAD), mock_context)
        response = lambda_handler(get_request(), mock_context)

        assert json.loads(response['body'])['cached'] is False

    def test_create_event_missing_fields(self, mock_env, mock_context):
        response = lambda_handler(post_request({'name': 'Only a name'}), mock_context)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['missing_fields'] == ['start_date', 'start_time', 'location', 'image']

    def test_create_event_invalid_json(self, mock_env, mock_context):
        response = lambda_handler(
            {'httpMethod': 'POST', 'body': '{broken'}, mock_context
        )

        assert response['statusCode'] == 400

    def test_create_event_non_object(self, mock_env, mock_context):
        response = lambda_handler(post_request(['a', 'list']), mock_context)

        assert response['statusCode'] == 400

    @patch('lambda_function.EventSubmitter')
    def test_create_event_backend_rejects(self, mock_submitter_class, mock_env, mock_context):
        mock_submitter_class.return_value.submit.side_effect = EventSubmissionError(
            'Image too large', status_code=413
        )

        response = lambda_handler(post_request(self.PAYLOAD), mock_context)

        assert response['statusCode'] == 413
        assert json.loads(response['body'])['message'] == 'Image too large'

    @patch('lambda_function.EventSubmitter')
    def test_create_event_network_error(self, mock_submitter_class, mock_env, mock_context):
        mock_submitter_class.return_value.submit.side_effect = ConnectionError('refused')

        response = lambda_handler(post_request(self.PAYLOAD), mock_context)

        assert response['statusCode'] == 502


def test_unsupported_method(mock_env, mock_context):
    response = lambda_handler({'httpMethod': 'DELETE'}, mock_context)

    assert response['statusCode'] == 405


def test_http_api_method(mock_env, mock_context):
    with patch('lambda_function.list_events', return_value={'statusCode': 200}) as mock_list:
        lambda_handler({'requestContext': {'http': {'method': 'get'}}}, mock_context)

    mock_list.assert_called_once()


class TestLogging:
    """Test cases for logging configuration."""

    def test_setup_logging_installs_json_formatter(self):
        setup_logging('DEBUG')

        root_logger = logging.getLogger()
        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, JsonFormatter)

    def test_setup_logging_invalid_level_defaults_to_info(self):
        setup_logging('NOPE')

        assert logging.getLogger().level == logging.INFO

    def test_json_formatter_includes_extra(self):
        record = logging.LogRecord('test', logging.INFO, __file__, 1, 'hello %s', ('world',), None)
        record.filters = {'location': 'sf'}

        data = json.loads(JsonFormatter().format(record))

        assert data['message'] == 'hello world'
        assert data['level'] == 'INFO'
        assert data['filters'] == {'location': 'sf'}
        assert 'args' not in data
