"""
Slides Task Protocol - Manus task lifecycle, webhook events and status

Webhook deliveries and poll results both end up in ``handle_event``. Terminal
events only take effect through a conditional transition of the
``manus_tasks`` row (running -> completed/failed), so whichever channel loses
the race performs no writes and emits nothing.
"""

import hmac
import json
import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple, List, Callable

from agent_system.manus_client import ManusClient, TASK_TYPE_SLIDES, TASK_TYPE_TOPICS
from agent_system.slides_parser import SlidesParseError, parse_slides, normalize_topics, fetch_json
from app.database import StoreError, TASK_RUNNING, TASK_COMPLETED, TASK_FAILED
from app.socket_relay import SocketRelay

logger = logging.getLogger(__name__)

ProtocolResponse = Tuple[Dict[str, Any], int]

STATUS_GENERATING = 'generating'
STATUS_PLANNING = 'planning'
STATUS_TOPICS_GENERATED = 'topics_generated'
STATUS_READY = 'ready'
STATUS_COMPLETED_LEGACY = 'completed'
STATUS_ERROR = 'error'

SUCCESS_STATUSES = (STATUS_READY, STATUS_COMPLETED_LEGACY)

# Allowed presentation status moves; 'completed' is only ever read.
PRESENTATION_TRANSITIONS = {
    STATUS_GENERATING: {STATUS_PLANNING, STATUS_TOPICS_GENERATED, STATUS_READY, STATUS_ERROR},
    STATUS_PLANNING: {STATUS_GENERATING, STATUS_TOPICS_GENERATED, STATUS_ERROR},
    STATUS_TOPICS_GENERATED: {STATUS_GENERATING, STATUS_READY, STATUS_ERROR},
    STATUS_READY: set(),
    STATUS_COMPLETED_LEGACY: set(),
    STATUS_ERROR: set(),
}

STATUS_DEFAULTS = {
    STATUS_GENERATING: (30, "Generating slides..."),
    STATUS_PLANNING: (10, "Planning presentation..."),
    STATUS_TOPICS_GENERATED: (50, "Topics generated"),
    STATUS_READY: (100, "Completed"),
    STATUS_COMPLETED_LEGACY: (100, "Completed"),
    STATUS_ERROR: (0, "Error occurred"),
}

TOOL_TYPES = ('search', 'browse', 'python', 'bash', 'file')

MIN_PROMPT_LENGTH = 10
MAX_PROMPT_LENGTH = 1000

ALREADY_FINALIZED: ProtocolResponse = ({'success': True, 'message': 'Task already finalized'}, 200)
ACKNOWLEDGED: ProtocolResponse = ({'success': True, 'message': 'Event acknowledged'}, 200)


class InvalidTransitionError(Exception):
    """Raised for a presentation status move the lifecycle does not allow."""
    pass


def check_transition(current: str, new: str) -> None:
    if new == STATUS_COMPLETED_LEGACY:
        raise InvalidTransitionError("'completed' is a legacy status and is never written")
    allowed = PRESENTATION_TRANSITIONS.get(current)
    if allowed is None or new not in allowed:
        raise InvalidTransitionError(f"Cannot move presentation from {current} to {new}")


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> Optional[str]:
    """Return an error message, or None when the request may proceed."""
    if not secret:
        return None
    if not signature:
        return "Missing signature"
    expected = compute_signature(body, secret)
    if not hmac.compare_digest(signature.encode('utf-8'), expected.encode('ascii')):
        return "Invalid signature"
    return None


def coerce_progress(value: Any) -> Optional[float]:
    """Progress clamped to 0..100, or None when the value is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (int, float)):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
    if value != value:  # NaN
        return None
    return min(100, max(0, value))


def validate_prompt(prompt: Any) -> Optional[str]:
    if not isinstance(prompt, str) or not prompt.strip():
        return "Prompt is required"
    length = len(prompt.strip())
    if length < MIN_PROMPT_LENGTH:
        return f"Prompt must be at least {MIN_PROMPT_LENGTH} characters"
    if length > MAX_PROMPT_LENGTH:
        return f"Prompt must be at most {MAX_PROMPT_LENGTH} characters"
    return None


def build_workflow_status(presentation: Dict[str, Any], task: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Status payload for a presentation, falling back to per-status defaults."""
    status = presentation.get('status')
    progress, current_step = STATUS_DEFAULTS.get(status, (0, "Initializing..."))

    webhook_data = (task or {}).get('webhook_data') or {}
    if status == STATUS_GENERATING:
        reported = coerce_progress(webhook_data.get('progress'))
        if reported is not None:
            progress = reported
        if webhook_data.get('current_step'):
            current_step = webhook_data['current_step']

    return {
        'presentationId': presentation['id'],
        'status': status,
        'progress': progress,
        'currentStep': current_step,
        'taskId': presentation.get('task_id') or (task or {}).get('task_id'),
        'createdAt': presentation.get('created_at'),
        'updatedAt': presentation.get('updated_at')
    }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SlidesTaskProtocol:
    """Drives presentations and Manus tasks through their lifecycle."""

    def __init__(
        self,
        store,
        relay: SocketRelay,
        manus_client: Optional[ManusClient] = None,
        fetcher: Callable[[str], Any] = fetch_json
    ):
        self.store = store
        self.relay = relay
        self.manus_client = manus_client
        self.fetcher = fetcher

    # ------------------------------------------------------------------
    # Task creation
    # ------------------------------------------------------------------

    def _require_client(self) -> ManusClient:
        if self.manus_client is None:
            raise RuntimeError("Manus client is not configured")
        return self.manus_client

    def start_slides_generation(
        self,
        user_id: str,
        prompt: str,
        title: str = None,
        format: str = '16:9',
        theme: str = 'default'
    ) -> Dict[str, Any]:
        """Create a presentation and its Manus slides task.

        Raises the underlying error after marking the presentation ``error``
        when the task cannot be created.
        """
        presentation = self.store.create_presentation({
            'user_id': user_id,
            'title': title or prompt[:100],
            'prompt': prompt,
            'format': format,
            'theme': theme,
            'status': STATUS_GENERATING
        })
        presentation_id = presentation['id']

        try:
            task_id = self._require_client().create_slides_task(prompt, presentation_id)
            self.store.create_manus_task({
                'task_id': task_id,
                'user_id': user_id,
                'presentation_id': presentation_id,
                'task_type': TASK_TYPE_SLIDES,
                'status': TASK_RUNNING,
                'metadata': {'prompt': prompt}
            })
            self.store.update_presentation(presentation_id, {'task_id': task_id})
        except Exception as e:
            logger.error(f"Failed to start slides task for presentation {presentation_id}: {e}")
            self.store.update_presentation(presentation_id, {'status': STATUS_ERROR})
            self.relay.emit_generation_error(user_id, presentation_id, "Failed to start generation")
            raise

        self.relay.emit_generation_status(user_id, presentation_id, 'thinking', "AI is analyzing your request...")
        self.relay.emit_thinking_step_update(user_id, {
            'id': 'step-init',
            'title': 'Initializing presentation generation',
            'status': 'running',
            'description': 'Task created, waiting for the first update...',
            'actions': [],
            'startedAt': _now()
        })
        logger.info(f"Slides task {task_id} started for presentation {presentation_id}")
        return {'presentation_id': presentation_id, 'task_id': task_id, 'status': STATUS_GENERATING}

    def start_topics_generation(self, user_id: str, prompt: str, presentation_id: str = None) -> Dict[str, Any]:
        """Create a topics task, optionally moving a presentation into planning."""
        if presentation_id:
            presentation = self.store.get_presentation(presentation_id)
            if not presentation or presentation['user_id'] != user_id:
                raise LookupError("Presentation not found")
            check_transition(presentation['status'], STATUS_PLANNING)

        task_id = self._require_client().create_topics_task(prompt, user_id, presentation_id)
        self.store.create_manus_task({
            'task_id': task_id,
            'user_id': user_id,
            'presentation_id': presentation_id,
            'task_type': TASK_TYPE_TOPICS,
            'status': TASK_RUNNING,
            'metadata': {'prompt': prompt}
        })
        if presentation_id:
            self.store.update_presentation(presentation_id, {'status': STATUS_PLANNING, 'task_id': task_id})

        self.relay.emit_generation_status(user_id, presentation_id, 'thinking', "AI is analyzing your topic...")
        logger.info(f"Topics task {task_id} started for user {user_id}")
        return {'task_id': task_id, 'presentation_id': presentation_id, 'status': TASK_RUNNING}

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def handle_event(self, payload: Dict[str, Any]) -> ProtocolResponse:
        """Apply one webhook-shaped event and return the HTTP response."""
        task_id = payload.get('task_id')
        if not task_id:
            return {'success': False, 'error': 'Missing task_id'}, 400

        task = self.store.get_manus_task(task_id)
        if not task:
            return {'success': False, 'error': 'Task not found'}, 404

        task_type = task.get('task_type') or (TASK_TYPE_SLIDES if task.get('presentation_id') else None)
        event_type = payload.get('event_type')

        if task_type == TASK_TYPE_TOPICS:
            handlers = {
                'task_started': self._topics_started,
                'task_updated': self._topics_updated,
                'task_stopped': self._topics_stopped,
            }
            context = {'user_id': task['user_id'], 'presentation_id': task.get('presentation_id')}
        elif task_type == TASK_TYPE_SLIDES:
            presentation = self.store.get_presentation(task.get('presentation_id')) if task.get('presentation_id') else None
            if not presentation:
                return {'success': False, 'error': 'Presentation not found'}, 404
            handlers = {
                'task_started': self._slides_started,
                'task_updated': self._slides_updated,
                'task_stopped': self._slides_stopped,
            }
            context = {'user_id': presentation['user_id'], 'presentation_id': presentation['id']}
        else:
            return {'success': False, 'error': 'Unknown task type'}, 400

        handler = handlers.get(event_type)
        if handler is None:
            logger.debug(f"Acknowledged unhandled event {event_type} for task {task_id}")
            return ACKNOWLEDGED

        if task.get('status') != TASK_RUNNING:
            logger.info(f"Ignoring {event_type} for finalized task {task_id}")
            return ALREADY_FINALIZED

        if 'progress' in payload:
            payload = {**payload, 'progress': coerce_progress(payload['progress'])}

        logger.info(f"Processing {event_type} for {task_type} task {task_id}")
        return handler(task, payload, **context)

    # ------------------------------------------------------------------
    # Shared progress emission
    # ------------------------------------------------------------------

    def _emit_thinking_action(self, user_id: str, action: Dict[str, Any]) -> None:
        self.relay.emit_thinking_action_add(user_id, action.get('step_id'), {
            'id': action.get('id'),
            'type': action.get('type'),
            'text': action.get('text'),
            'timestamp': action.get('timestamp')
        })

        action_type = str(action.get('type') or '').lower()
        if action_type not in TOOL_TYPES:
            return

        tool_action = {
            'id': action.get('id'),
            'type': action_type,
            'input': action.get('text') or action.get('input') or '',
            'timestamp': action.get('timestamp') or _now()
        }
        message_id = f"tool-{action.get('id')}"
        if action.get('error'):
            tool_action.update(status='failed', error=action['error'])
            self.relay.emit_tool_action_failed(user_id, tool_action, message_id)
        elif action.get('result') or action.get('output'):
            tool_action.update(status='completed', result=action.get('result') or action.get('output'),
                               duration=action.get('duration'))
            self.relay.emit_tool_action_completed(user_id, tool_action, message_id)
        else:
            tool_action['status'] = 'running'
            self.relay.emit_tool_action_started(user_id, tool_action, message_id)

    def _emit_updates(self, user_id: str, payload: Dict[str, Any]) -> None:
        for step in payload.get('thinking_steps') or []:
            self.relay.emit_thinking_step_update(user_id, step)
        if isinstance(payload.get('thinking_action'), dict):
            self._emit_thinking_action(user_id, payload['thinking_action'])

    # ------------------------------------------------------------------
    # Slides task events
    # ------------------------------------------------------------------

    def _slides_started(self, task, payload, user_id, presentation_id) -> ProtocolResponse:
        self.store.update_manus_task(task['task_id'], {'webhook_data': payload})
        self.relay.emit_generation_status(user_id, presentation_id, 'thinking', "AI is analyzing your request...")
        self.relay.emit_thinking_step_update(user_id, {
            'id': 'step-init',
            'title': 'Initializing presentation generation',
            'status': 'running',
            'description': 'AI is starting to process your request...',
            'actions': [],
            'startedAt': _now()
        })
        return {'success': True, 'message': 'Task started event processed'}, 200

    def _slides_updated(self, task, payload, user_id, presentation_id) -> ProtocolResponse:
        self.store.update_manus_task(task['task_id'], {'webhook_data': payload})
        self._emit_updates(user_id, payload)

        preview = payload.get('slide_preview')
        if isinstance(preview, dict):
            self.relay.emit_slide_preview_update(user_id, presentation_id, {
                'order_index': preview.get('order_index'),
                'title': preview.get('title'),
                'content': preview.get('content'),
                'layout': preview.get('layout')
            })

        if payload.get('progress') is not None:
            self.relay.emit_generation_progress(user_id, presentation_id, payload['progress'], payload.get('current_step'))

        return {'success': True, 'message': 'Task updated event processed'}, 200

    def _slides_stopped(self, task, payload, user_id, presentation_id) -> ProtocolResponse:
        task_id = task['task_id']

        if payload.get('stop_reason') != 'finish':
            reason = payload.get('error') or payload.get('stop_reason') or 'Unknown error'
            if not self.store.fail_slides_task(presentation_id, task_id, reason, payload):
                return ALREADY_FINALIZED
            logger.warning(f"Slides task {task_id} stopped: {reason}")
            self.relay.emit_generation_status(user_id, presentation_id, 'error', "Generation failed")
            self.relay.emit_generation_error(user_id, presentation_id, reason)
            self.relay.emit_presentation_error(user_id, presentation_id, reason)
            return {'success': True, 'message': 'Task failure recorded'}, 200

        try:
            slides = parse_slides(payload, self.fetcher)
        except SlidesParseError as e:
            message = f"Failed to parse slides: {e}"
            if not self.store.fail_slides_task(presentation_id, task_id, message, payload):
                return ALREADY_FINALIZED
            logger.error(f"Slides task {task_id}: {message}")
            self.relay.emit_generation_error(user_id, presentation_id, str(e), 'parsing')
            self.relay.emit_presentation_error(user_id, presentation_id, message)
            return {'success': False, 'error': message}, 500

        try:
            slides_count = self.store.finalize_slides(presentation_id, slides, task_id, payload)
        except StoreError as e:
            logger.error(f"Slides task {task_id}: failed to save slides: {e}")
            if self.store.fail_slides_task(presentation_id, task_id, "Failed to save slides to database", payload):
                self.relay.emit_generation_error(user_id, presentation_id, "Failed to save slides", 'saving')
            return {'success': False, 'error': 'Failed to save slides'}, 500

        if slides_count is None:
            return ALREADY_FINALIZED

        logger.info(f"Slides task {task_id} finished with {slides_count} slides")
        self.notify_ready(user_id, presentation_id, slides_count)
        return {
            'success': True,
            'message': 'Webhook processed successfully',
            'data': {'slides_count': slides_count}
        }, 200

    def notify_ready(self, user_id: str, presentation_id: str, slides_count: int) -> None:
        self.relay.emit_generation_status(user_id, presentation_id, 'completed', "Presentation ready!")
        self.relay.emit_generation_progress(user_id, presentation_id, 100, "Completed")
        self.relay.emit_generation_completed(user_id, presentation_id, slides_count)
        self.relay.emit_presentation_ready(user_id, presentation_id)

    # ------------------------------------------------------------------
    # Topics task events
    # ------------------------------------------------------------------

    def _topics_started(self, task, payload, user_id, presentation_id) -> ProtocolResponse:
        self.store.update_manus_task(task['task_id'], {'webhook_data': payload})
        self.relay.emit_generation_status(user_id, presentation_id, 'thinking', "AI is analyzing your topic...")
        self.relay.emit_thinking_step_update(user_id, {
            'id': 'step-init',
            'title': 'Topic analysis started',
            'status': 'running',
            'description': 'AI is starting to analyze your topic...',
            'actions': [],
            'startedAt': _now()
        })
        return {'success': True, 'message': 'Topics task started event processed'}, 200

    def _topics_updated(self, task, payload, user_id, presentation_id) -> ProtocolResponse:
        self.store.update_manus_task(task['task_id'], {'webhook_data': payload})
        self._emit_updates(user_id, payload)
        if payload.get('progress') is not None:
            self.relay.emit_generation_status(user_id, presentation_id, 'thinking',
                                              payload.get('current_step') or "Analyzing topic...")
        return {'success': True, 'message': 'Topics task updated event processed'}, 200

    def _topics_stopped(self, task, payload, user_id, presentation_id) -> ProtocolResponse:
        task_id = task['task_id']

        if payload.get('stop_reason') != 'finish':
            reason = payload.get('error') or payload.get('stop_reason') or 'Unknown error'
            if not self.store.transition_manus_task(task_id, TASK_FAILED, {'webhook_data': payload, 'error': reason}):
                return ALREADY_FINALIZED
            self.move_presentation(presentation_id, STATUS_ERROR)
            logger.warning(f"Topics task {task_id} stopped: {reason}")
            self.relay.emit_generation_status(user_id, presentation_id, 'error', "Topics generation failed")
            self.relay.emit_generation_error(user_id, presentation_id, reason)
            return {'success': True, 'message': 'Topics task failure recorded'}, 200

        output = payload.get('output')
        if output is None and isinstance(payload.get('result'), dict):
            output = payload['result'].get('output') or payload['result']
        topics = normalize_topics(output)

        if not self.store.transition_manus_task(task_id, TASK_COMPLETED, {
            'webhook_data': payload,
            'output': {'topics': topics}
        }):
            return ALREADY_FINALIZED

        self.move_presentation(presentation_id, STATUS_TOPICS_GENERATED, {'topics': topics})
        self.relay.emit_topics_generated(user_id, topics, f"topics-{task_id}")
        return {
            'success': True,
            'message': 'Topics generated successfully',
            'data': {'topics_count': len(topics)}
        }, 200

    def move_presentation(self, presentation_id: Optional[str], status: str, updates: Dict[str, Any] = None) -> bool:
        """Apply a checked status move; False when it is not allowed."""
        if not presentation_id:
            return False
        presentation = self.store.get_presentation(presentation_id)
        if not presentation:
            logger.warning(f"Presentation {presentation_id} vanished before moving to {status}")
            return False
        try:
            check_transition(presentation['status'], status)
        except InvalidTransitionError as e:
            logger.warning(f"Presentation {presentation_id}: {e}")
            return False
        self.store.update_presentation(presentation_id, {**(updates or {}), 'status': status})
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_workflow_status(self, presentation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Status for the owner's presentation, or None if it is not theirs."""
        presentation = self.store.get_presentation(presentation_id)
        if not presentation or presentation.get('user_id') != user_id:
            return None
        task = self.store.get_latest_task_for_presentation(presentation_id)
        return build_workflow_status(presentation, task)


def poll_result_to_event(task_id: str, status_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Translate a terminal Manus status response into a ``task_stopped`` event."""
    status = status_data.get('status')
    if status == 'completed':
        return {**status_data, 'task_id': task_id, 'event_type': 'task_stopped', 'stop_reason': 'finish'}
    if status in ('failed', 'cancelled', 'error'):
        return {
            **status_data,
            'task_id': task_id,
            'event_type': 'task_stopped',
            'stop_reason': 'user_stopped' if status == 'cancelled' else 'error',
            'error': status_data.get('error') or 'Task execution failed'
        }
    return None


def dedupe_key(item: Dict[str, Any]) -> str:
    return f"{item.get('id')}-{item.get('status')}"


TOOL_NAME_KEYWORDS = (
    ('search', ('search', 'google')),
    ('browse', ('browse', 'web', 'http')),
    ('python', ('python', 'code')),
    ('bash', ('bash', 'shell', 'terminal')),
    ('file', ('file', 'read', 'write')),
)


def map_tool_type(tool_name: str) -> str:
    name = (tool_name or '').lower()
    for tool_type, keywords in TOOL_NAME_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return tool_type
    return name


def duration_ms(started_at: Optional[str], completed_at: Optional[str]) -> Optional[int]:
    if not started_at or not completed_at:
        return None
    try:
        start = datetime.fromisoformat(started_at.replace('Z', '+00:00'))
        end = datetime.fromisoformat(completed_at.replace('Z', '+00:00'))
    except ValueError:
        return None
    return int((end - start).total_seconds() * 1000)


def tool_call_to_action(tool: Dict[str, Any]) -> Dict[str, Any]:
    """Map a polled tool call onto the tool action shape sent to clients."""
    return {
        'id': tool.get('id'),
        'type': map_tool_type(tool.get('name')),
        'status': tool.get('status'),
        'input': json.dumps(tool.get('arguments') or tool.get('args') or {}),
        'timestamp': tool.get('created_at') or _now()
    }


def split_new(items: List[Dict[str, Any]], seen: set) -> List[Dict[str, Any]]:
    """Items whose (id, status) pair has not been seen yet; marks them seen."""
    fresh = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        key = dedupe_key(item)
        if key not in seen:
            seen.add(key)
            fresh.append(item)
    return fresh
