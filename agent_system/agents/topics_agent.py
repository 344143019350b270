"""
Topics Agent - Presentation outline generation
"""

import logging
from typing import Dict, Any

from agent_system.agents.base_agent import BaseAgent
from agent_system.models import AgentResult, AgentExecutionContext
from agent_system.slides_parser import normalize_topics, TOPICS_COUNT, FALLBACK_TOPICS
from agent_system.tools.llm_tool import LLMTool

logger = logging.getLogger(__name__)


class TopicsAgent(BaseAgent):
    """Turns a free-form request into a fixed-size slide outline."""

    AGENT_NAME = "topics"
    DESCRIPTION = "Generate the slide topics for a presentation"

    def __init__(self, llm_tool: LLMTool = None, **kwargs):
        super().__init__(**kwargs)
        self.register_tool(llm_tool or LLMTool())

    async def execute(self, input: Dict[str, Any], context: AgentExecutionContext) -> AgentResult:
        self.validate_input(input, required=['prompt'])
        prompt = input['prompt']

        self.emit_progress('topics_started', {
            'presentation_id': context.presentation_id,
            'message': 'Generating topics...'
        })

        response = await self.use_tool('llm', {
            'prompt': self.render_prompt('topics.md', prompt=prompt, topics_count=TOPICS_COUNT),
            'system_prompt': "You are the TOPICS Agent. Return JSON only.",
            'model': self.config.get('model'),
            'temperature': self.config.get('temperature', 0.5),
            'max_tokens': self.config.get('max_tokens', 2048)
        })

        topics = normalize_topics(response['text'])
        used_fallback = topics == FALLBACK_TOPICS

        self.emit_progress('topics_generated', {
            'presentation_id': context.presentation_id,
            'topics': topics
        })

        return self.create_success_result(
            {'topics': topics},
            {'model': response.get('model'), 'tokens_used': response.get('tokens_used'), 'fallback': used_fallback}
        )
