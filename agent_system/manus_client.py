"""
Manus Task API Client
"""

import os
import time
import logging
from typing import Dict, Any, Optional

import httpx

from agent_system.config import get_manus_config

logger = logging.getLogger(__name__)

TASK_TYPE_TOPICS = "generate_topics"
TASK_TYPE_SLIDES = "generate_slides"

SLIDES_INSTRUCTIONS = (
    "You are a professional presentation designer. Create a complete slide deck "
    "for the user's request. Return a JSON attachment of the form "
    '{"slides": [{"title": "...", "content": "...", "layout": "title_slide|content|two_column|image|quote", '
    '"speaker_notes": "..."}]}.'
)

TOPICS_INSTRUCTIONS = (
    "You are a professional presentation expert. Analyze the user's topic and "
    "return ONLY a JSON array of exactly 10 concise slide topics (max 60 characters each), "
    "starting with an introduction and ending with a conclusion."
)


class ManusError(Exception):
    """Base exception for Manus API errors."""
    pass


class ManusRateLimitError(ManusError):
    """Rate limit exceeded."""
    pass


class ManusClient:
    """Client for the Manus long-running task API."""

    def __init__(
        self,
        api_key: str = None,
        webhook_url: str = None,
        base_url: str = None,
        agent_profile: str = None,
        timeout: float = None,
        max_retries: int = None,
        transport: httpx.BaseTransport = None
    ):
        config = get_manus_config()
        self.api_key = api_key or os.getenv('MANUS_API_KEY')
        self.webhook_url = webhook_url or os.getenv('MANUS_WEBHOOK_URL')
        self.base_url = base_url or os.getenv('MANUS_API_BASE_URL') or config.get('base_url', 'https://api.manus.ai/v1')
        self.agent_profile = agent_profile or os.getenv('MANUS_AGENT_PROFILE') or config.get('agent_profile', 'quality')
        self.max_retries = max_retries if max_retries is not None else config.get('max_retries', 3)
        self.backoff = 1.0

        if not self.api_key:
            raise ValueError("MANUS_API_KEY is required")

        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout or config.get('timeout_seconds', 30.0),
            headers={
                'API_KEY': self.api_key,
                'Content-Type': 'application/json'
            },
            transport=transport
        )
        logger.info("Manus client initialized")

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        for attempt in range(self.max_retries):
            try:
                response = self.client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                if attempt < self.max_retries - 1:
                    logger.warning(f"Manus request {method} {path} failed ({e}), retrying...")
                    time.sleep(self.backoff * (2 ** attempt))
                    continue
                raise ManusError(f"Manus request failed: {e}") from e

            if response.status_code == 429:
                if attempt < self.max_retries - 1:
                    sleep_time = self.backoff * (2 ** attempt)
                    logger.warning(f"Manus rate limited (429). Retrying in {sleep_time}s...")
                    time.sleep(sleep_time)
                    continue
                raise ManusRateLimitError("Rate limit exceeded")

            if response.is_error:
                logger.error(f"Manus API error {response.status_code}: {response.text}")
                raise ManusError(f"Manus API returned {response.status_code}: {response.text}")

            return response.json() if response.content else {}

        raise ManusError("Manus request failed after retries")

    def _create_task(self, instructions: str, prompt: str, metadata: Dict[str, Any]) -> str:
        payload = {
            'input': [{
                'role': 'user',
                'content': [{
                    'type': 'input_text',
                    'text': f"{instructions}\n\n---\n\nUser Request: {prompt}"
                }]
            }],
            'extra_body': {
                'task_mode': 'agent',
                'agent_profile': self.agent_profile,
                'webhook_url': self.webhook_url,
                'metadata': metadata
            }
        }
        data = self._request('POST', '/responses', json=payload)

        task_id = data.get('id')
        if not task_id:
            logger.error(f"No task ID in Manus response: {data}")
            raise ManusError("No task ID returned from Manus API")

        logger.info(f"Manus task created: {task_id} ({metadata.get('task_type')})")
        return task_id

    def create_slides_task(self, prompt: str, presentation_id: str) -> str:
        """Start a slide-deck generation task for a presentation."""
        return self._create_task(SLIDES_INSTRUCTIONS, prompt, {
            'presentation_id': presentation_id,
            'feature': 'slides',
            'task_type': TASK_TYPE_SLIDES
        })

    def create_topics_task(self, prompt: str, user_id: str, presentation_id: Optional[str] = None) -> str:
        """Start a topics generation task for a user."""
        metadata = {
            'user_id': user_id,
            'feature': 'slides_topics',
            'task_type': TASK_TYPE_TOPICS
        }
        if presentation_id:
            metadata['presentation_id'] = presentation_id
        return self._create_task(TOPICS_INSTRUCTIONS, prompt, metadata)

    def get_task_status(self, task_id: str) -> Dict[str, Any]:
        return self._request('GET', f'/responses/{task_id}')

    def cancel_task(self, task_id: str) -> None:
        self._request('POST', f'/responses/{task_id}/cancel')
        logger.info(f"Manus task cancelled: {task_id}")

    def close(self) -> None:
        self.client.close()
