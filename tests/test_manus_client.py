"""
Tests for the Manus task API client
"""

import json

import httpx
import pytest

from agent_system.manus_client import ManusClient, ManusError, ManusRateLimitError


def make_client(handler, **kwargs):
    client = ManusClient(
        api_key='manus-key',
        webhook_url='https://app.example.com/api/slides/manus-webhook',
        base_url='https://manus.test/v1',
        transport=httpx.MockTransport(handler),
        **kwargs
    )
    client.backoff = 0
    return client


class TestTaskCreation:
    """Tests for creating tasks."""

    def test_create_slides_task(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={'id': 'task-123'})

        client = make_client(handler)
        assert client.create_slides_task('A deck about caching', 'p-1') == 'task-123'

        request = requests[0]
        assert request.method == 'POST'
        assert request.url.path == '/v1/responses'
        assert request.headers['API_KEY'] == 'manus-key'

        body = json.loads(request.content)
        extra = body['extra_body']
        assert extra['webhook_url'] == 'https://app.example.com/api/slides/manus-webhook'
        assert extra['metadata'] == {'presentation_id': 'p-1', 'feature': 'slides', 'task_type': 'generate_slides'}
        assert 'A deck about caching' in body['input'][0]['content'][0]['text']

    def test_create_topics_task_metadata(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={'id': 'topics-1'})

        make_client(handler).create_topics_task('A deck about caching', 'user-1')

        metadata = bodies[0]['extra_body']['metadata']
        assert metadata['task_type'] == 'generate_topics'
        assert metadata['user_id'] == 'user-1'
        assert 'presentation_id' not in metadata

    def test_missing_task_id(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ManusError, match='No task ID'):
            client.create_slides_task('A deck about caching', 'p-1')

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv('MANUS_API_KEY', raising=False)
        with pytest.raises(ValueError):
            ManusClient(api_key=None)


class TestRetries:
    """Tests for rate limits, transport errors and API errors."""

    def test_rate_limit_is_retried(self):
        responses = iter([httpx.Response(429), httpx.Response(429), httpx.Response(200, json={'status': 'running'})])
        client = make_client(lambda request: next(responses))

        assert client.get_task_status('task-1') == {'status': 'running'}

    def test_rate_limit_exhausted(self):
        client = make_client(lambda request: httpx.Response(429), max_retries=2)
        with pytest.raises(ManusRateLimitError):
            client.get_task_status('task-1')

    def test_transport_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={'status': 'completed'})

        assert make_client(handler).get_task_status('task-1') == {'status': 'completed'}
        assert len(calls) == 2

    def test_server_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text='boom')

        with pytest.raises(ManusError, match='500'):
            make_client(handler).get_task_status('task-1')
        assert len(calls) == 1

    def test_cancel_task(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(204)

        make_client(handler).cancel_task('task-1')
        assert paths == ['/v1/responses/task-1/cancel']
