"""
LLM Tool - Chat completions through OpenRouter
"""

import os
import logging
from typing import Dict, Any

from langchain_openai import ChatOpenAI
from langchain_core.messages import SystemMessage, HumanMessage

from agent_system.models import ToolResult
from agent_system.tools.base_tool import BaseTool

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3-sonnet"


class LLMTool(BaseTool):
    """Generate text with a chat model.

    Input keys: ``prompt`` (required), ``system_prompt``, ``model``,
    ``temperature``, ``max_tokens``.
    """

    TOOL_NAME = "llm"
    DESCRIPTION = "Generate text with a chat model"
    VERSION = "1.0.0"

    def __init__(self, api_key: str = None, base_url: str = OPENROUTER_BASE_URL, history_limit: int = 100):
        super().__init__(history_limit=history_limit)
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY")
        self.base_url = base_url

    def _get_llm(self, model: str, temperature: float, max_tokens: int) -> ChatOpenAI:
        return ChatOpenAI(
            model=model,
            api_key=self.api_key,
            base_url=self.base_url,
            temperature=temperature,
            max_tokens=max_tokens
        )

    async def execute(self, input: Dict[str, Any]) -> ToolResult:
        self.validate_input(input, required=['prompt'])

        model = input.get('model') or DEFAULT_MODEL
        temperature = input.get('temperature', 0.7)
        max_tokens = input.get('max_tokens', 4096)

        messages = []
        if input.get('system_prompt'):
            messages.append(SystemMessage(content=input['system_prompt']))
        messages.append(HumanMessage(content=input['prompt']))

        logger.debug(f"LLM request to {model} ({len(input['prompt'])} chars)")
        llm = self._get_llm(model, temperature, max_tokens)
        response = await llm.ainvoke(messages)

        content = response.content
        if not isinstance(content, str) or not content.strip():
            return self.create_error_result("Empty response from model", {'model': model})

        usage = getattr(response, 'usage_metadata', None) or {}
        return self.create_success_result(
            {
                'text': content,
                'model': model,
                'tokens_used': {
                    'input': usage.get('input_tokens', 0),
                    'output': usage.get('output_tokens', 0),
                    'total': usage.get('total_tokens', 0)
                }
            }
        )
