"""
Manus Task Polling - Fallback when webhooks are unavailable
"""

import logging
import threading
from typing import Dict, Any, Optional

from agent_system.config import get_polling_config
from agent_system.manus_client import ManusClient, ManusError
from app.protocol import (
    SlidesTaskProtocol, poll_result_to_event, split_new, tool_call_to_action, duration_ms, coerce_progress
)

logger = logging.getLogger(__name__)

RUNNING_STATUSES = ('running', 'pending', 'queued')


class TaskPoller:
    """Polls Manus for task status, one daemon thread per task.

    Progress is relayed to the task owner; terminal states are handed to
    the protocol exactly like a webhook delivery.
    """

    def __init__(
        self,
        protocol: SlidesTaskProtocol,
        manus_client: ManusClient,
        interval: float = None,
        max_polls: int = None,
        max_backoff: float = None
    ):
        config = get_polling_config()
        self.protocol = protocol
        self.relay = protocol.relay
        self.manus_client = manus_client
        self.interval = interval if interval is not None else config['interval_seconds']
        self.max_polls = max_polls or config['max_polls']
        self.max_backoff = max_backoff if max_backoff is not None else config['max_backoff_seconds']
        self._pollers: Dict[str, threading.Event] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def start(self, task_id: str, user_id: str, presentation_id: Optional[str] = None) -> bool:
        """Begin polling a task. Returns False if it is already being polled."""
        with self._lock:
            if task_id in self._pollers:
                return False
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(task_id, user_id, presentation_id, stop_event),
                name=f"poller-{task_id}",
                daemon=True
            )
            self._pollers[task_id] = stop_event
            self._threads[task_id] = thread

        logger.info(f"Starting polling for task {task_id}")
        thread.start()
        return True

    def stop(self, task_id: str) -> bool:
        with self._lock:
            stop_event = self._pollers.pop(task_id, None)
            self._threads.pop(task_id, None)
        if stop_event is None:
            return False
        stop_event.set()
        logger.info(f"Stopped polling for task {task_id}")
        return True

    def stop_all(self) -> None:
        with self._lock:
            task_ids = list(self._pollers)
        for task_id in task_ids:
            self.stop(task_id)

    def active_count(self) -> int:
        with self._lock:
            return len(self._pollers)

    def join(self, task_id: str, timeout: float = None) -> None:
        """Wait for a poller thread to exit."""
        with self._lock:
            thread = self._threads.get(task_id)
        if thread is not None:
            thread.join(timeout)

    def _run(self, task_id: str, user_id: str, presentation_id: Optional[str], stop_event: threading.Event) -> None:
        seen_steps = set()
        seen_tools = set()
        poll_count = 0
        delay = 0.0
        target_id = presentation_id or task_id

        try:
            while not stop_event.wait(delay):
                poll_count += 1
                try:
                    data = self.manus_client.get_task_status(task_id)
                except ManusError as e:
                    logger.warning(f"Polling error for {task_id}: {e}")
                    if poll_count >= self.max_polls:
                        self.relay.emit_generation_error(user_id, target_id, 'Polling failed')
                        break
                    delay = min(self.interval * 2, self.max_backoff)
                    continue

                delay = self.interval
                status = data.get('status')
                logger.debug(f"Poll {poll_count} for {task_id}: status={status}")

                if status in RUNNING_STATUSES:
                    self._emit_progress(user_id, target_id, data, seen_steps, seen_tools)
                else:
                    event = poll_result_to_event(task_id, data)
                    if event is not None:
                        body, code = self.protocol.handle_event(event)
                        logger.info(f"Task {task_id} finished via polling: {code} {body.get('message') or body.get('error')}")
                        break
                    logger.warning(f"Unknown task status from polling: {status}")

                if poll_count >= self.max_polls:
                    logger.warning(f"Max polls reached for task {task_id}")
                    self.relay.emit_generation_error(user_id, target_id, 'Task timeout')
                    break
        except Exception as e:
            logger.exception(f"Poller for task {task_id} crashed: {e}")
            self.relay.emit_generation_error(user_id, target_id, 'Polling failed')
        finally:
            with self._lock:
                if self._pollers.get(task_id) is stop_event:
                    del self._pollers[task_id]
                    self._threads.pop(task_id, None)

    def _emit_progress(self, user_id: str, target_id: str, data: Dict[str, Any], seen_steps: set, seen_tools: set) -> None:
        for step in split_new(data.get('thinking_steps'), seen_steps):
            self.relay.emit_thinking_step_update(user_id, {
                'id': step.get('id'),
                'title': step.get('description') or step.get('title') or 'Processing...',
                'status': step.get('status'),
                'description': step.get('description'),
                'actions': step.get('actions') or [],
                'startedAt': step.get('started_at'),
                'completedAt': step.get('completed_at')
            })

        for tool in split_new(data.get('tool_calls'), seen_tools):
            action = tool_call_to_action(tool)
            message_id = f"tool-{tool.get('id')}"
            status = tool.get('status')
            if status in ('running', 'pending'):
                self.relay.emit_tool_action_started(user_id, {**action, 'status': 'running'}, message_id)
            elif status == 'completed':
                self.relay.emit_tool_action_completed(user_id, {
                    **action,
                    'status': 'completed',
                    'result': tool.get('result') or tool.get('output'),
                    'duration': duration_ms(tool.get('created_at'), tool.get('completed_at'))
                }, message_id)
            elif status == 'failed':
                self.relay.emit_tool_action_failed(user_id, {
                    **action,
                    'status': 'failed',
                    'error': tool.get('error') or 'Tool execution failed'
                }, message_id)

        progress = coerce_progress(data.get('progress'))
        if progress is not None:
            self.relay.emit_generation_progress(user_id, target_id, progress)
