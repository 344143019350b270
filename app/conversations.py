"""
Conversation Sync - Optimistic local state mirrored to the store
"""

import json
import uuid
import logging
import threading
from copy import deepcopy
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Callable, Union

from app.database import StoreError

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
DEFAULT_TITLE = "New conversation"
MESSAGE_ROLES = ('user', 'assistant', 'system')


class SyncError(Exception):
    """Raised when a remote write fails and the local change was rolled back."""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConversationSync:
    """One user's conversations, kept in memory and mirrored to the store.

    Every mutation is applied locally first, then written remotely. If the
    write fails the previous snapshot is restored and SyncError is raised.
    """

    def __init__(self, store, user_id: str):
        self.store = store
        self.user_id = user_id
        self.conversations: List[Dict[str, Any]] = []
        self._lock = threading.RLock()

    def load(self) -> List[Dict[str, Any]]:
        try:
            conversations = self.store.list_conversations(self.user_id)
        except StoreError as e:
            raise SyncError(f"Failed to load conversations: {e}") from e
        with self._lock:
            self.conversations = conversations
            return deepcopy(self.conversations)

    def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            conversation = self._find(conversation_id)
            return deepcopy(conversation) if conversation else None

    def _find(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        for conversation in self.conversations:
            if conversation['id'] == conversation_id:
                return conversation
        return None

    def _require(self, conversation_id: str) -> Dict[str, Any]:
        conversation = self._find(conversation_id)
        if conversation is None:
            raise KeyError(f"Conversation not found: {conversation_id}")
        return conversation

    def _mutate(self, action: str, apply_local: Callable[[], Any], write_remote: Callable[[], None]) -> Any:
        with self._lock:
            snapshot = deepcopy(self.conversations)
            result = apply_local()
            try:
                write_remote()
            except StoreError as e:
                self.conversations = snapshot
                logger.error(f"Failed to {action}, local change rolled back: {e}")
                raise SyncError(f"Failed to {action}") from e
            return deepcopy(result)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_conversation(self, title: str = None, messages: List[Dict[str, Any]] = None) -> Dict[str, Any]:
        now = _now()
        conversation = {
            'id': str(uuid.uuid4()),
            'title': title or DEFAULT_TITLE,
            'is_pinned': False,
            'created_at': now,
            'updated_at': now,
            'messages': list(messages or [])
        }

        def apply_local():
            self.conversations.insert(0, conversation)
            return conversation

        return self._mutate('create conversation', apply_local,
                            lambda: self.store.insert_conversation(self.user_id, deepcopy(conversation)))

    def rename(self, conversation_id: str, title: str) -> Dict[str, Any]:
        title = (title or '').strip()
        if not title:
            raise ValueError("Title cannot be empty")

        def apply_local():
            conversation = self._require(conversation_id)
            conversation.update(title=title, updated_at=_now())
            return conversation

        return self._mutate('rename conversation', apply_local,
                            lambda: self.store.update_conversation(conversation_id, {'title': title}))

    def toggle_pin(self, conversation_id: str) -> bool:
        pinned = {}

        def apply_local():
            conversation = self._require(conversation_id)
            conversation['is_pinned'] = not conversation.get('is_pinned', False)
            pinned['value'] = conversation['is_pinned']
            return conversation

        self._mutate('pin conversation', apply_local,
                     lambda: self.store.update_conversation(conversation_id, {'is_pinned': pinned['value']}))
        return pinned['value']

    def delete_conversation(self, conversation_id: str) -> None:
        def apply_local():
            conversation = self._require(conversation_id)
            self.conversations.remove(conversation)

        self._mutate('delete conversation', apply_local,
                     lambda: self.store.delete_conversation(conversation_id))

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachments: List[Dict[str, Any]] = None,
        generation_type: str = None
    ) -> Dict[str, Any]:
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Invalid message role: {role}")

        message = {
            'id': str(uuid.uuid4()),
            'role': role,
            'content': content,
            'timestamp': _now(),
            'attachments': list(attachments or []),
            'generation_type': generation_type
        }
        position = {}

        def apply_local():
            conversation = self._require(conversation_id)
            position['index'] = len(conversation['messages'])
            conversation['messages'].append(message)
            conversation['updated_at'] = message['timestamp']
            return message

        return self._mutate(
            'add message', apply_local,
            lambda: self.store.insert_messages(conversation_id, [deepcopy(message)], start=position['index'])
        )

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_conversation(self, conversation_id: str) -> str:
        """Serialize a conversation to the portable JSON format."""
        with self._lock:
            conversation = deepcopy(self._require(conversation_id))

        exported = {
            'version': EXPORT_VERSION,
            'exported_at': _now(),
            'conversation': {
                'title': conversation['title'],
                'is_pinned': conversation.get('is_pinned', False),
                'created_at': conversation.get('created_at'),
                'messages': [
                    {
                        'role': m['role'],
                        'content': m['content'],
                        'timestamp': m.get('timestamp'),
                        'attachments': m.get('attachments') or [],
                        'generation_type': m.get('generation_type')
                    }
                    for m in conversation.get('messages') or []
                ]
            }
        }
        return json.dumps(exported, ensure_ascii=False)

    def import_conversation(self, data: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        """Create a new conversation from an export, keeping message order and content."""
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError as e:
                raise ValueError(f"Invalid export file: {e}") from e

        if not isinstance(data, dict) or data.get('version') != EXPORT_VERSION:
            raise ValueError("Unsupported export version")
        source = data.get('conversation')
        if not isinstance(source, dict) or not isinstance(source.get('messages'), list):
            raise ValueError("Export does not contain a conversation")

        messages = []
        for index, m in enumerate(source['messages']):
            if not isinstance(m, dict) or m.get('role') not in MESSAGE_ROLES or not isinstance(m.get('content'), str):
                raise ValueError(f"Invalid message at position {index}")
            messages.append({
                'id': str(uuid.uuid4()),
                'role': m['role'],
                'content': m['content'],
                'timestamp': m.get('timestamp') or _now(),
                'attachments': list(m.get('attachments') or []),
                'generation_type': m.get('generation_type')
            })

        conversation = self.create_conversation(title=source.get('title') or DEFAULT_TITLE, messages=messages)
        logger.info(f"Imported conversation {conversation['id']} with {len(messages)} messages")
        return conversation
