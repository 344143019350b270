"""
Tests for the Manus polling fallback
"""

from unittest.mock import Mock

import pytest

from agent_system.manus_client import ManusError
from app.polling import TaskPoller

from tests.conftest import USER_ID

RUNNING = {
    'status': 'running',
    'progress': 20,
    'thinking_steps': [{'id': 's1', 'status': 'running', 'description': 'Researching the topic'}],
    'tool_calls': [{'id': 't1', 'name': 'web_search', 'status': 'running', 'arguments': {'q': 'caching'}}],
}

COMPLETED = {
    'status': 'completed',
    'slides': [{'title': 'Intro', 'content': 'Hello'}, {'title': 'End', 'content': 'Bye'}],
}


@pytest.fixture
def manus():
    return Mock()


def make_poller(protocol, manus, **kwargs):
    options = {'interval': 0.01, 'max_polls': 10, 'max_backoff': 0.01}
    options.update(kwargs)
    return TaskPoller(protocol, manus, **options)


def run_to_end(poller, task_id='task-slides', presentation_id=None):
    assert poller.start(task_id, USER_ID, presentation_id)
    poller.join(task_id, timeout=5)


class TestPolling:
    """Tests for the per-task polling loop."""

    def test_completion_finalizes_through_protocol(self, protocol, store, relay, manus, slides_task):
        manus.get_task_status.side_effect = [dict(RUNNING), dict(RUNNING), dict(COMPLETED)]
        poller = make_poller(protocol, manus)

        run_to_end(poller, presentation_id=slides_task['id'])

        assert store.get_presentation(slides_task['id'])['status'] == 'ready'
        assert store.get_manus_task('task-slides')['status'] == 'completed'
        relay.emit_generation_completed.assert_called_once_with(USER_ID, slides_task['id'], 2)
        assert poller.active_count() == 0

    def test_repeated_progress_is_deduplicated(self, protocol, relay, manus, slides_task):
        manus.get_task_status.side_effect = [dict(RUNNING), dict(RUNNING), dict(COMPLETED)]
        run_to_end(make_poller(protocol, manus), presentation_id=slides_task['id'])

        assert relay.emit_thinking_step_update.call_count == 1
        step = relay.emit_thinking_step_update.call_args.args[1]
        assert step['title'] == 'Researching the topic'

        relay.emit_tool_action_started.assert_called_once()
        action = relay.emit_tool_action_started.call_args.args[1]
        assert action['type'] == 'search'
        assert action['input'] == '{"q": "caching"}'
        assert action['status'] == 'running'

    def test_webhook_first_then_poll_is_a_no_op(self, protocol, relay, manus, slides_task):
        body, code = protocol.handle_event({
            'task_id': 'task-slides', 'event_type': 'task_stopped', 'stop_reason': 'finish',
            'slides': COMPLETED['slides']
        })
        assert code == 200

        manus.get_task_status.side_effect = [dict(COMPLETED)]
        run_to_end(make_poller(protocol, manus), presentation_id=slides_task['id'])

        relay.emit_generation_completed.assert_called_once()

    def test_string_progress_is_coerced(self, protocol, store, relay, manus, slides_task):
        manus.get_task_status.side_effect = [
            {'status': 'running', 'progress': '55'},
            {'status': 'running', 'progress': 'soon'},
            dict(COMPLETED),
        ]
        run_to_end(make_poller(protocol, manus), presentation_id=slides_task['id'])

        values = [c.args[2] for c in relay.emit_generation_progress.call_args_list]
        assert values == [55, 100]
        assert store.get_presentation(slides_task['id'])['status'] == 'ready'

    def test_failed_task(self, protocol, store, manus, slides_task):
        manus.get_task_status.side_effect = [{'status': 'failed', 'error': 'Sandbox crashed'}]
        run_to_end(make_poller(protocol, manus), presentation_id=slides_task['id'])

        task = store.get_manus_task('task-slides')
        assert task['status'] == 'failed'
        assert task['error'] == 'Sandbox crashed'
        assert store.get_presentation(slides_task['id'])['status'] == 'error'

    def test_max_polls_reports_timeout(self, protocol, relay, manus, slides_task):
        manus.get_task_status.return_value = {'status': 'running'}
        run_to_end(make_poller(protocol, manus, max_polls=3), presentation_id=slides_task['id'])

        assert manus.get_task_status.call_count == 3
        relay.emit_generation_error.assert_called_once_with(USER_ID, slides_task['id'], 'Task timeout')

    def test_api_errors_back_off_then_give_up(self, protocol, relay, manus, slides_task):
        manus.get_task_status.side_effect = ManusError("503")
        run_to_end(make_poller(protocol, manus, max_polls=2), presentation_id=slides_task['id'])

        assert manus.get_task_status.call_count == 2
        relay.emit_generation_error.assert_called_once_with(USER_ID, slides_task['id'], 'Polling failed')

    def test_transient_error_recovers(self, protocol, store, manus, slides_task):
        manus.get_task_status.side_effect = [ManusError("timeout"), dict(COMPLETED)]
        run_to_end(make_poller(protocol, manus), presentation_id=slides_task['id'])
        assert store.get_presentation(slides_task['id'])['status'] == 'ready'


class TestPollerRegistry:
    """Tests for starting and stopping pollers."""

    def test_duplicate_start_and_stop(self, protocol, manus, slides_task):
        manus.get_task_status.return_value = {'status': 'running'}
        poller = make_poller(protocol, manus, interval=10)

        assert poller.start('task-slides', USER_ID, slides_task['id'])
        assert poller.start('task-slides', USER_ID, slides_task['id']) is False
        assert poller.active_count() == 1

        assert poller.stop('task-slides')
        assert poller.stop('task-slides') is False
        assert poller.active_count() == 0

    def test_stop_all(self, protocol, manus):
        manus.get_task_status.return_value = {'status': 'running'}
        poller = make_poller(protocol, manus, interval=10)
        poller.start('a', USER_ID)
        poller.start('b', USER_ID)

        poller.stop_all()
        assert poller.active_count() == 0
