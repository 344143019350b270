"""
Base Agent Class
"""

import time
import logging
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Callable, Optional

from agent_system.config import get_agent_config
from agent_system.models import AgentResult, AgentExecutionContext
from agent_system.tools.base_tool import BaseTool, ToolExecutionError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str, Dict[str, Any]], None]


class BaseAgent(ABC):
    """Abstract base class for all agents."""

    AGENT_NAME: str = "base"
    DESCRIPTION: str = ""
    VERSION: str = "1.0.0"

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if 'execute_with_tracking' in cls.__dict__:
            raise TypeError(f"{cls.__name__} must not override execute_with_tracking")

    def __init__(self, progress_callback: Optional[ProgressCallback] = None, history_limit: int = 100):
        self.config = get_agent_config(self.AGENT_NAME)
        self.progress_callback = progress_callback
        self.tools: Dict[str, BaseTool] = {}
        self._history = deque(maxlen=history_limit)
        self.prompts_dir = Path(__file__).parent.parent / 'prompts'
        logger.debug(f"Initialized {self.AGENT_NAME} agent v{self.VERSION}")

    @property
    def name(self) -> str:
        return self.AGENT_NAME

    @property
    def description(self) -> str:
        return self.DESCRIPTION

    @property
    def version(self) -> str:
        return self.VERSION

    @abstractmethod
    async def execute(self, input: Dict[str, Any], context: AgentExecutionContext) -> AgentResult:
        """Run the agent's task. Expected failures are returned, not raised."""

    async def execute_with_tracking(
        self,
        input: Dict[str, Any],
        context: Optional[AgentExecutionContext] = None
    ) -> AgentResult:
        """Execute the agent with timing, history tracking and error capture."""
        context = context or AgentExecutionContext()
        start_time = time.monotonic()
        logger.info(f"[Agent: {self.name}] Starting execution")

        try:
            result = await self.execute(input, context)
        except Exception as e:
            execution_time = time.monotonic() - start_time
            logger.error(f"[Agent: {self.name}] Execution failed after {execution_time:.3f}s: {e}")
            result = AgentResult(success=False, error=str(e) or type(e).__name__)
            result.metadata.update(self._tracking_metadata(execution_time))
            self._record(input, context, result, execution_time)
            return result

        execution_time = time.monotonic() - start_time
        result.metadata = {**result.metadata, **self._tracking_metadata(execution_time)}
        self._record(input, context, result, execution_time)

        logger.info(f"[Agent: {self.name}] Execution finished in {execution_time:.3f}s (success={result.success})")
        return result

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def register_tool(self, tool: BaseTool) -> None:
        self.tools[tool.name] = tool
        logger.debug(f"[Agent: {self.name}] Tool registered: {tool.name}")

    def unregister_tool(self, tool_name: str) -> None:
        self.tools.pop(tool_name, None)
        logger.debug(f"[Agent: {self.name}] Tool unregistered: {tool_name}")

    def get_available_tools(self) -> List[str]:
        return list(self.tools)

    def has_tool(self, tool_name: str) -> bool:
        return tool_name in self.tools

    async def use_tool(self, tool_name: str, input: Dict[str, Any]) -> Any:
        """Run a registered tool and return its data, raising on failure."""
        tool = self.tools.get(tool_name)
        if not tool:
            raise ToolExecutionError(f"Tool not found: {tool_name}")

        result = await tool.execute_with_tracking(input)
        if not result.success:
            raise ToolExecutionError(f"Tool execution failed: {result.error}")

        logger.debug(f"[Agent: {self.name}] Tool completed: {tool_name}")
        return result.data

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def validate_input(self, input: Any, required: List[str] = ()) -> None:
        if not isinstance(input, dict):
            raise ValueError("Input must be an object")
        for key in required:
            if key not in input:
                raise ValueError(f"Missing required field: {key}")

    def create_success_result(self, data: Any, metadata: Dict[str, Any] = None) -> AgentResult:
        return AgentResult(success=True, data=data, metadata=metadata or {})

    def create_error_result(self, error: str, metadata: Dict[str, Any] = None) -> AgentResult:
        return AgentResult(success=False, error=error, metadata=metadata or {})

    def render_prompt(self, filename: str, **params: Any) -> str:
        """Load a prompt template and substitute ``{key}`` placeholders."""
        path = self.prompts_dir / filename
        try:
            with open(path, 'r', encoding='utf-8') as f:
                prompt = f.read()
        except OSError as e:
            logger.error(f"Failed to load prompt template {filename}: {e}")
            raise

        # Plain replacement, templates contain literal JSON braces.
        for key, value in params.items():
            prompt = prompt.replace(f"{{{key}}}", str(value))
        return prompt

    def emit_progress(self, event: str, data: Dict[str, Any]) -> None:
        """Forward a progress event to the callback, if any."""
        logger.debug(f"[Agent: {self.name}] Progress event: {event}")
        if self.progress_callback:
            try:
                self.progress_callback(self.name, event, data)
            except Exception as e:
                logger.error(f"Failed to emit progress event {event}: {e}")

    def _tracking_metadata(self, execution_time: float) -> Dict[str, Any]:
        return {
            'execution_time': execution_time,
            'agent_name': self.name,
            'agent_version': self.version
        }

    def _record(self, input, context, result, execution_time) -> None:
        self._history.append({
            'input': input,
            'context': context,
            'result': result,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'execution_time': execution_time
        })
