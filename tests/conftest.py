"""
Shared fixtures for the slides service tests
"""

import json
from unittest.mock import Mock

import pytest

from agent_system.tools.base_tool import BaseTool
from app import create_app
from app.database import MockStore
from app.protocol import SlidesTaskProtocol, compute_signature

WEBHOOK_SECRET = 'test-webhook-secret'
USER_ID = 'test-user-id'

TEN_TOPICS = [
    "Introduction", "History", "Architecture", "Data Model", "Workflow",
    "Security", "Performance", "Operations", "Roadmap", "Conclusion"
]


class ScriptedLLM(BaseTool):
    """LLM tool that replays canned responses in order."""

    TOOL_NAME = "llm"

    def __init__(self, responses):
        super().__init__()
        self.responses = list(responses)
        self.prompts = []

    async def execute(self, input):
        self.prompts.append(input['prompt'])
        if not self.responses:
            return self.create_error_result("No scripted response left")
        return self.create_success_result({
            'text': self.responses.pop(0),
            'model': 'test-model',
            'tokens_used': {'input': 1, 'output': 1, 'total': 2}
        })


@pytest.fixture
def app():
    """Create Flask test application backed by the mock store."""
    app = create_app({
        'TESTING': True,
        'DEV_MODE': True,
        'MOCK_DB_FILE': None,
        'MANUS_API_KEY': None,
        'MANUS_ENABLE_POLLING': False,
        'MANUS_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'SOCKET_REQUIRE_AUTH': True
    })
    yield app
    app.socket_relay.teardown()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def auth_headers():
    """Create authorization headers for the default dev user."""
    return {'Authorization': 'Bearer test-token'}


@pytest.fixture
def relay():
    """Relay double recording every emit."""
    return Mock()


@pytest.fixture
def store():
    return MockStore()


@pytest.fixture
def protocol(store, relay):
    return SlidesTaskProtocol(store=store, relay=relay, fetcher=Mock(side_effect=AssertionError("no fetch expected")))


@pytest.fixture
def slides_task(store):
    """A running slides task and its generating presentation."""
    presentation = store.create_presentation({
        'user_id': USER_ID,
        'title': 'Deck',
        'prompt': 'A deck about distributed systems',
        'status': 'generating'
    })
    store.create_manus_task({
        'task_id': 'task-slides',
        'user_id': USER_ID,
        'presentation_id': presentation['id'],
        'task_type': 'generate_slides',
        'status': 'running'
    })
    store.update_presentation(presentation['id'], {'task_id': 'task-slides'})
    return presentation


@pytest.fixture
def signed_post(client):
    """POST a JSON body to the webhook with a valid signature."""
    def _post(payload, secret=WEBHOOK_SECRET, signature=None):
        body = json.dumps(payload).encode('utf-8')
        headers = {'Content-Type': 'application/json'}
        if signature is None and secret:
            signature = compute_signature(body, secret)
        if signature:
            headers['x-manus-signature'] = signature
        return client.post('/api/slides/manus-webhook', data=body, headers=headers)
    return _post
