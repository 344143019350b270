"""
Durable Store - Presentations, Manus tasks, slides and conversations
"""

import os
import json
import uuid
import logging
import threading
from copy import deepcopy
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from supabase import create_client, Client

logger = logging.getLogger(__name__)

TASK_RUNNING = 'running'
TASK_COMPLETED = 'completed'
TASK_FAILED = 'failed'


class StoreError(Exception):
    """Raised when a write to the store fails."""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseStore:
    """Supabase-backed store using the service role client."""

    def __init__(self, url: str, service_role_key: str, client: Client = None):
        self.client: Client = client or create_client(url, service_role_key)
        logger.info("Supabase store initialized")

    def _write(self, action: str, query) -> List[Dict[str, Any]]:
        try:
            response = query.execute()
        except Exception as e:
            logger.error(f"Error {action}: {e}")
            raise StoreError(f"Failed {action}") from e
        return response.data or []

    def _read_one(self, action: str, query) -> Optional[Dict[str, Any]]:
        try:
            response = query.limit(1).execute()
        except Exception as e:
            logger.error(f"Error {action}: {e}")
            return None
        return response.data[0] if response.data else None

    # ------------------------------------------------------------------
    # Presentations
    # ------------------------------------------------------------------

    def create_presentation(self, data: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._write('creating presentation', self.client.table('presentations').insert(data))
        if not rows:
            raise StoreError("Failed creating presentation")
        return rows[0]

    def get_presentation(self, presentation_id: str) -> Optional[Dict[str, Any]]:
        return self._read_one(
            'fetching presentation',
            self.client.table('presentations').select('*').eq('id', presentation_id)
        )

    def update_presentation(self, presentation_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        updates = {**updates, 'updated_at': _now()}
        rows = self._write(
            'updating presentation',
            self.client.table('presentations').update(updates).eq('id', presentation_id)
        )
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Manus tasks
    # ------------------------------------------------------------------

    def create_manus_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._write('creating manus task', self.client.table('manus_tasks').insert(data))
        if not rows:
            raise StoreError("Failed creating manus task")
        return rows[0]

    def get_manus_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self._read_one(
            'fetching manus task',
            self.client.table('manus_tasks').select('*').eq('task_id', task_id)
        )

    def get_latest_task_for_presentation(self, presentation_id: str) -> Optional[Dict[str, Any]]:
        return self._read_one(
            'fetching presentation task',
            self.client.table('manus_tasks').select('*')
            .eq('presentation_id', presentation_id)
            .order('created_at', desc=True)
        )

    def update_manus_task(self, task_id: str, updates: Dict[str, Any]) -> None:
        """Non-terminal update (webhook payload, progress)."""
        self._write(
            'updating manus task',
            self.client.table('manus_tasks').update(updates).eq('task_id', task_id)
        )

    def transition_manus_task(self, task_id: str, status: str, updates: Dict[str, Any] = None) -> bool:
        """Move a running task to a terminal status.

        Conditional on ``status = 'running'``; returns False when another
        writer already finalized the task.
        """
        values = {**(updates or {}), 'status': status, 'completed_at': _now()}
        rows = self._write(
            'transitioning manus task',
            self.client.table('manus_tasks').update(values)
            .eq('task_id', task_id).eq('status', TASK_RUNNING)
        )
        return bool(rows)

    def finalize_slides(
        self,
        presentation_id: str,
        slides: List[Dict[str, Any]],
        task_id: Optional[str] = None,
        webhook_data: Optional[Dict[str, Any]] = None
    ) -> Optional[int]:
        """Replace slides, mark the presentation ready and complete the task in one transaction.

        Returns the slide count, or None if the task was already finalized.
        """
        rows = self._write('finalizing slides', self.client.rpc('finalize_slides_task', {
            'p_task_id': task_id,
            'p_presentation_id': presentation_id,
            'p_slides': slides,
            'p_webhook_data': webhook_data
        }))
        # rpc returns the scalar itself, not a row list
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows

    def fail_slides_task(
        self,
        presentation_id: Optional[str],
        task_id: str,
        error: str,
        webhook_data: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Mark the task failed and its presentation as error in one transaction."""
        result = self._write('failing slides task', self.client.rpc('fail_slides_task', {
            'p_task_id': task_id,
            'p_presentation_id': presentation_id,
            'p_error': error,
            'p_webhook_data': webhook_data
        }))
        if isinstance(result, list):
            return bool(result and result[0])
        return bool(result)

    def get_slides(self, presentation_id: str) -> List[Dict[str, Any]]:
        try:
            response = (self.client.table('slides').select('*')
                        .eq('presentation_id', presentation_id).order('order_index').execute())
        except Exception as e:
            logger.error(f"Error fetching slides: {e}")
            return []
        return response.data or []

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            response = (self.client.table('conversations').select('*, messages(*)')
                        .eq('user_id', user_id).order('updated_at', desc=True).execute())
        except Exception as e:
            logger.error(f"Error listing conversations: {e}")
            raise StoreError("Failed listing conversations") from e

        conversations = response.data or []
        for conversation in conversations:
            conversation['messages'] = sorted(
                conversation.get('messages') or [],
                key=lambda m: (m.get('position', 0), m.get('timestamp') or '')
            )
        return conversations

    def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
        for conversation in self.list_conversations(user_id):
            if conversation['id'] == conversation_id:
                return conversation
        return None

    def insert_conversation(self, user_id: str, conversation: Dict[str, Any]) -> None:
        """Insert a conversation and its messages in one transaction."""
        row = {k: v for k, v in conversation.items() if k != 'messages'}
        self._write('inserting conversation', self.client.rpc('insert_conversation_with_messages', {
            'p_user_id': user_id,
            'p_conversation': row,
            'p_messages': conversation.get('messages') or []
        }))

    def update_conversation(self, conversation_id: str, updates: Dict[str, Any]) -> None:
        updates = {**updates, 'updated_at': _now()}
        self._write(
            'updating conversation',
            self.client.table('conversations').update(updates).eq('id', conversation_id)
        )

    def delete_conversation(self, conversation_id: str) -> None:
        self._write('deleting conversation', self.client.table('conversations').delete().eq('id', conversation_id))

    def insert_messages(self, conversation_id: str, messages: List[Dict[str, Any]], start: int = 0) -> None:
        rows = [
            {**message, 'conversation_id': conversation_id, 'position': start + offset}
            for offset, message in enumerate(messages)
        ]
        self._write('inserting messages', self.client.table('messages').insert(rows))


class MockStore:
    """In-memory store for development with optional file persistence.

    Every mutation runs under one lock, so the conditional task transition
    and the slide finalizer are atomic as in Postgres.
    """

    def __init__(self, db_file: Optional[str] = None):
        self.db_file = db_file
        self._lock = threading.Lock()
        self.presentations: Dict[str, Dict[str, Any]] = {}
        self.manus_tasks: Dict[str, Dict[str, Any]] = {}
        self.slides: List[Dict[str, Any]] = []
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self._load()
        logger.info("Mock store initialized (DEV MODE)")

    def _load(self) -> None:
        if not self.db_file or not os.path.exists(self.db_file):
            return
        try:
            with open(self.db_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load mock DB: {e}")
            return
        self.presentations = data.get('presentations', {})
        self.manus_tasks = data.get('manus_tasks', {})
        self.slides = data.get('slides', [])
        self.conversations = data.get('conversations', {})
        logger.info(f"Loaded mock DB from {self.db_file}")

    def _save(self) -> None:
        if not self.db_file:
            return
        data = {
            'presentations': self.presentations,
            'manus_tasks': self.manus_tasks,
            'slides': self.slides,
            'conversations': self.conversations
        }
        try:
            os.makedirs(os.path.dirname(self.db_file) or '.', exist_ok=True)
            with open(self.db_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, default=str)
        except OSError as e:
            logger.error(f"Failed to save mock DB: {e}")

    # Presentations

    def create_presentation(self, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = {'id': str(uuid.uuid4()), 'created_at': _now(), 'updated_at': _now(), **data}
            self.presentations[row['id']] = row
            self._save()
            return deepcopy(row)

    def get_presentation(self, presentation_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.presentations.get(presentation_id)
            return deepcopy(row) if row else None

    def update_presentation(self, presentation_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.presentations.get(presentation_id)
            if not row:
                return None
            row.update(updates, updated_at=_now())
            self._save()
            return deepcopy(row)

    # Manus tasks

    def create_manus_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            if data['task_id'] in self.manus_tasks:
                raise StoreError(f"Duplicate task_id: {data['task_id']}")
            row = {'id': str(uuid.uuid4()), 'metadata': {}, 'created_at': _now(), **data}
            self.manus_tasks[row['task_id']] = row
            self._save()
            return deepcopy(row)

    def get_manus_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.manus_tasks.get(task_id)
            return deepcopy(row) if row else None

    def get_latest_task_for_presentation(self, presentation_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            tasks = [t for t in self.manus_tasks.values() if t.get('presentation_id') == presentation_id]
            if not tasks:
                return None
            return deepcopy(max(tasks, key=lambda t: t.get('created_at') or ''))

    def update_manus_task(self, task_id: str, updates: Dict[str, Any]) -> None:
        with self._lock:
            row = self.manus_tasks.get(task_id)
            if row is None:
                raise StoreError(f"Task not found: {task_id}")
            row.update(updates)
            self._save()

    def _transition(self, task_id: str, status: str, updates: Dict[str, Any]) -> bool:
        row = self.manus_tasks.get(task_id)
        if not row or row.get('status') != TASK_RUNNING:
            return False
        row.update(updates, status=status, completed_at=_now())
        return True

    def transition_manus_task(self, task_id: str, status: str, updates: Dict[str, Any] = None) -> bool:
        with self._lock:
            changed = self._transition(task_id, status, updates or {})
            if changed:
                self._save()
            return changed

    def finalize_slides(
        self,
        presentation_id: str,
        slides: List[Dict[str, Any]],
        task_id: Optional[str] = None,
        webhook_data: Optional[Dict[str, Any]] = None
    ) -> Optional[int]:
        with self._lock:
            presentation = self.presentations.get(presentation_id)
            if presentation is None:
                raise StoreError(f"Presentation not found: {presentation_id}")
            if task_id is not None:
                updates = {'webhook_data': webhook_data} if webhook_data is not None else {}
                if not self._transition(task_id, TASK_COMPLETED, updates):
                    return None
            self.slides = [s for s in self.slides if s['presentation_id'] != presentation_id]
            for slide in slides:
                self.slides.append({'id': str(uuid.uuid4()), 'presentation_id': presentation_id, **slide})
            presentation.update(status='ready', slides_count=len(slides), updated_at=_now())
            self._save()
            return len(slides)

    def fail_slides_task(
        self,
        presentation_id: Optional[str],
        task_id: str,
        error: str,
        webhook_data: Optional[Dict[str, Any]] = None
    ) -> bool:
        with self._lock:
            updates = {'error': error}
            if webhook_data is not None:
                updates['webhook_data'] = webhook_data
            if not self._transition(task_id, TASK_FAILED, updates):
                return False
            presentation = self.presentations.get(presentation_id) if presentation_id else None
            if presentation is not None:
                presentation.update(status='error', updated_at=_now())
            self._save()
            return True

    def get_slides(self, presentation_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            slides = [deepcopy(s) for s in self.slides if s['presentation_id'] == presentation_id]
        return sorted(slides, key=lambda s: s['order_index'])

    # Conversations

    def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [deepcopy(c) for c in self.conversations.values() if c['user_id'] == user_id]
        return sorted(rows, key=lambda c: c.get('updated_at') or '', reverse=True)

    def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conversations.get(conversation_id)
            if not row or row['user_id'] != user_id:
                return None
            return deepcopy(row)

    def insert_conversation(self, user_id: str, conversation: Dict[str, Any]) -> None:
        with self._lock:
            if conversation['id'] in self.conversations:
                raise StoreError(f"Duplicate conversation id: {conversation['id']}")
            row = deepcopy(conversation)
            row.setdefault('messages', [])
            row['user_id'] = user_id
            self.conversations[row['id']] = row
            self._save()

    def update_conversation(self, conversation_id: str, updates: Dict[str, Any]) -> None:
        with self._lock:
            row = self.conversations.get(conversation_id)
            if row is None:
                raise StoreError(f"Conversation not found: {conversation_id}")
            row.update(deepcopy(updates), updated_at=_now())
            self._save()

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            if self.conversations.pop(conversation_id, None) is None:
                raise StoreError(f"Conversation not found: {conversation_id}")
            self._save()

    def insert_messages(self, conversation_id: str, messages: List[Dict[str, Any]], start: int = 0) -> None:
        with self._lock:
            row = self.conversations.get(conversation_id)
            if row is None:
                raise StoreError(f"Conversation not found: {conversation_id}")
            row['messages'][start:start] = deepcopy(messages)
            row['updated_at'] = _now()
            self._save()
