"""
Content Writer Agent - Slide content generation
"""

import json
import logging
from typing import Dict, Any, List

from agent_system.agents.base_agent import BaseAgent
from agent_system.models import AgentResult, AgentExecutionContext
from agent_system.slides_parser import (
    SlidesParseError, parse_json_object, parse_slide, validate_slides,
    VALID_LAYOUTS, MAX_CONTENT_LENGTH, MAX_TITLE_LENGTH
)
from agent_system.tools.llm_tool import LLMTool

logger = logging.getLogger(__name__)


class ContentWriterAgent(BaseAgent):
    """Writes one slide per topic.

    Expects ``topics`` in the input, either as a list of strings or as the
    data of an upstream topics step (``{'topics': [...]}``).
    """

    AGENT_NAME = "content_writer"
    DESCRIPTION = "Write slide content for a list of topics"

    def __init__(self, llm_tool: LLMTool = None, **kwargs):
        super().__init__(**kwargs)
        self.register_tool(llm_tool or LLMTool())

    def _get_topics(self, input: Dict[str, Any]) -> List[str]:
        topics = input.get('topics')
        if isinstance(topics, dict):
            topics = topics.get('topics')
        if not isinstance(topics, list) or not topics:
            raise ValueError("Input must contain a non-empty list of topics")
        return [str(topic) for topic in topics]

    async def execute(self, input: Dict[str, Any], context: AgentExecutionContext) -> AgentResult:
        self.validate_input(input, required=['prompt', 'topics'])
        topics = self._get_topics(input)

        self.emit_progress('slides_started', {
            'presentation_id': context.presentation_id,
            'slide_count': len(topics)
        })

        response = await self.use_tool('llm', {
            'prompt': self.render_prompt(
                'content_writer.md',
                prompt=input['prompt'],
                topics=json.dumps(topics, indent=2),
                layouts=', '.join(VALID_LAYOUTS),
                max_content=MAX_CONTENT_LENGTH,
                max_title=MAX_TITLE_LENGTH
            ),
            'system_prompt': "You are the CONTENT_WRITER Agent. Return JSON only.",
            'model': self.config.get('model'),
            'temperature': self.config.get('temperature', 0.7),
            'max_tokens': self.config.get('max_tokens', 8192)
        })

        try:
            raw = parse_json_object(response['text']).get('slides')
            if not isinstance(raw, list):
                raise SlidesParseError("Model output has no slides list")
            slides = [parse_slide(slide, index) for index, slide in enumerate(raw)]
            validate_slides(slides)
        except SlidesParseError as e:
            logger.error(f"[Agent: {self.name}] Invalid slides from model: {e}")
            return self.create_error_result(f"Failed to parse slides: {e}", {'model': response.get('model')})

        self.emit_progress('slides_generated', {
            'presentation_id': context.presentation_id,
            'slide_count': len(slides)
        })

        return self.create_success_result(
            {'slides': slides},
            {'model': response.get('model'), 'tokens_used': response.get('tokens_used')}
        )
