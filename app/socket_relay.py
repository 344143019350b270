"""
Socket.IO Relay - Per-user real-time events
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from flask import Flask, request
from flask_socketio import SocketIO, join_room, disconnect

logger = logging.getLogger(__name__)

SOCKET_PATH = 'api/socket'

GENERATION_STATUS = 'generation:status'
GENERATION_PROGRESS = 'generation:progress'
GENERATION_COMPLETED = 'generation:completed'
GENERATION_ERROR = 'generation:error'
THINKING_STEP_UPDATE = 'thinking:step:update'
THINKING_ACTION_ADD = 'thinking:action:add'
THINKING_MESSAGE = 'thinking:message'
SLIDE_PREVIEW_UPDATE = 'slide:preview:update'
SLIDE_UPDATED = 'slide:updated'
TOPICS_GENERATED = 'topics:generated'
TOOL_ACTION_STARTED = 'tool:action:started'
TOOL_ACTION_COMPLETED = 'tool:action:completed'
TOOL_ACTION_FAILED = 'tool:action:failed'
PRESENTATION_READY = 'presentation:ready'
PRESENTATION_ERROR = 'presentation:error'


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class SocketRelay:
    """Owns the Socket.IO server and routes events to ``user:<id>`` rooms.

    With ``require_auth`` the handshake must carry a valid access token
    (``auth={'token': ...}``) and ``authenticate`` may only join the room of
    the verified subject. Without it the claimed ``userId`` is trusted.
    """

    def __init__(self, auth=None, require_auth: bool = True):
        self.auth = auth
        self.require_auth = require_auth
        self.socketio: Optional[SocketIO] = None
        self._connections: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def init_app(self, app: Flask, cors_origin: str = None, async_mode: str = 'threading') -> SocketIO:
        """Create the server once; later calls return the existing instance."""
        if self.socketio is not None:
            logger.info("Socket.IO server already initialized")
            return self.socketio

        self.socketio = SocketIO(
            app,
            path=SOCKET_PATH,
            cors_allowed_origins=cors_origin or 'http://localhost:3000',
            cors_credentials=True,
            async_mode=async_mode
        )
        self.socketio.on_event('connect', self._on_connect)
        self.socketio.on_event('authenticate', self._on_authenticate)
        self.socketio.on_event('disconnect', self._on_disconnect)
        logger.info("Socket.IO server initialized")
        return self.socketio

    def teardown(self) -> None:
        with self._lock:
            self._connections.clear()
        self.socketio = None
        logger.info("Socket.IO server torn down")

    # ------------------------------------------------------------------
    # Connection handlers
    # ------------------------------------------------------------------

    def _on_connect(self, auth=None):
        sid = request.sid
        token = auth.get('token') if isinstance(auth, dict) else None
        claims = self.auth.verify_token(token) if (token and self.auth) else None

        if self.require_auth and not claims:
            logger.warning(f"Rejected socket connection without valid token: {sid}")
            return False

        with self._lock:
            self._connections[sid] = {
                'verified_user_id': claims.get('sub') if claims else None,
                'user_id': None,
                'connected_at': _timestamp()
            }
        logger.info(f"Client connected: {sid}")

    def _on_authenticate(self, data=None):
        sid = request.sid
        user_id = data.get('userId') if isinstance(data, dict) else None
        if not user_id:
            disconnect()
            return

        with self._lock:
            connection = self._connections.get(sid)
            if connection is None:
                return
            if self.require_auth and connection['verified_user_id'] != user_id:
                logger.warning(f"Socket {sid} claimed user {user_id} without a matching token")
                return
            connection['user_id'] = user_id

        join_room(user_room(user_id))
        logger.info(f"User {user_id} authenticated and joined room")

    def _on_disconnect(self, reason=None):
        sid = request.sid
        with self._lock:
            self._connections.pop(sid, None)
        logger.info(f"Client disconnected: {sid}")

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def get_connection(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            connection = self._connections.get(sid)
            return dict(connection) if connection else None

    # ------------------------------------------------------------------
    # Emit helpers
    # ------------------------------------------------------------------

    def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        if self.socketio is None:
            logger.warning(f"Socket.IO server not initialized, dropping {event}")
            return
        if not user_id:
            logger.warning(f"No user for {event}, dropping")
            return
        self.socketio.emit(event, {**data, 'timestamp': _timestamp()}, to=user_room(user_id))
        logger.debug(f"Emitted {event} to user {user_id}")

    def emit_generation_status(self, user_id: str, presentation_id: Optional[str], status: str,
                               message: str = None) -> None:
        self.emit_to_user(user_id, GENERATION_STATUS, {
            'presentationId': presentation_id,
            'status': status,
            'message': message
        })

    def emit_generation_progress(self, user_id: str, presentation_id: Optional[str], progress: float,
                                 current_step: str = None) -> None:
        self.emit_to_user(user_id, GENERATION_PROGRESS, {
            'presentationId': presentation_id,
            'progress': min(100, max(0, progress)),
            'currentStep': current_step
        })

    def emit_generation_completed(self, user_id: str, presentation_id: str, slides_count: int) -> None:
        self.emit_to_user(user_id, GENERATION_COMPLETED, {
            'presentationId': presentation_id,
            'slidesCount': slides_count
        })

    def emit_generation_error(self, user_id: str, presentation_id: Optional[str], error: str,
                              step: str = None) -> None:
        self.emit_to_user(user_id, GENERATION_ERROR, {
            'presentationId': presentation_id,
            'error': error,
            'step': step
        })

    def emit_thinking_step_update(self, user_id: str, step: Dict[str, Any]) -> None:
        self.emit_to_user(user_id, THINKING_STEP_UPDATE, {'step': step})

    def emit_thinking_action_add(self, user_id: str, step_id: Optional[str], action: Dict[str, Any]) -> None:
        self.emit_to_user(user_id, THINKING_ACTION_ADD, {'stepId': step_id, 'action': action})

    def emit_thinking_message(self, user_id: str, content: str, message_id: str) -> None:
        self.emit_to_user(user_id, THINKING_MESSAGE, {'content': content, 'messageId': message_id})

    def emit_slide_preview_update(self, user_id: str, presentation_id: str, slide: Dict[str, Any]) -> None:
        self.emit_to_user(user_id, SLIDE_PREVIEW_UPDATE, {'presentationId': presentation_id, 'slide': slide})

    def emit_topics_generated(self, user_id: str, topics: List[str], message_id: str) -> None:
        self.emit_to_user(user_id, TOPICS_GENERATED, {'topics': topics, 'messageId': message_id})
        logger.info(f"Emitted topics:generated to user:{user_id} with {len(topics)} topics")

    def emit_tool_action_started(self, user_id: str, tool_action: Dict[str, Any], message_id: str) -> None:
        self.emit_to_user(user_id, TOOL_ACTION_STARTED, {'toolAction': tool_action, 'messageId': message_id})

    def emit_tool_action_completed(self, user_id: str, tool_action: Dict[str, Any], message_id: str) -> None:
        self.emit_to_user(user_id, TOOL_ACTION_COMPLETED, {'toolAction': tool_action, 'messageId': message_id})

    def emit_tool_action_failed(self, user_id: str, tool_action: Dict[str, Any], message_id: str) -> None:
        self.emit_to_user(user_id, TOOL_ACTION_FAILED, {'toolAction': tool_action, 'messageId': message_id})
        logger.error(f"Emitted tool:action:failed to user:{user_id} - {tool_action.get('type')}: {tool_action.get('error')}")

    def emit_presentation_ready(self, user_id: str, presentation_id: str) -> None:
        self.emit_to_user(user_id, PRESENTATION_READY, {'presentation_id': presentation_id})

    def emit_presentation_error(self, user_id: str, presentation_id: str, error: str) -> None:
        self.emit_to_user(user_id, PRESENTATION_ERROR, {'presentation_id': presentation_id, 'error': error})

    def emit_slide_updated(self, user_id: str, presentation_id: str, slide_id: str) -> None:
        self.emit_to_user(user_id, SLIDE_UPDATED, {'presentation_id': presentation_id, 'slide_id': slide_id})
