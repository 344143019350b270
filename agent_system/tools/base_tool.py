"""
Base Tool Class
"""

import time
import logging
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Dict, Any, List

from agent_system.models import ToolResult

logger = logging.getLogger(__name__)


class ToolExecutionError(Exception):
    """Raised when an agent uses a tool that reports failure."""
    pass


class BaseTool(ABC):
    """Abstract base class for all agent tools."""

    TOOL_NAME: str = "base"
    DESCRIPTION: str = ""
    VERSION: str = "1.0.0"

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if 'execute_with_tracking' in cls.__dict__:
            raise TypeError(f"{cls.__name__} must not override execute_with_tracking")

    def __init__(self, history_limit: int = 100):
        self._history = deque(maxlen=history_limit)

    @property
    def name(self) -> str:
        return self.TOOL_NAME

    @property
    def description(self) -> str:
        return self.DESCRIPTION

    @property
    def version(self) -> str:
        return self.VERSION

    @abstractmethod
    async def execute(self, input: Dict[str, Any]) -> ToolResult:
        """Run the tool. Expected failures are returned, not raised."""

    async def execute_with_tracking(self, input: Dict[str, Any]) -> ToolResult:
        """Execute the tool with timing, history tracking and error capture."""
        start_time = time.monotonic()
        logger.debug(f"[Tool: {self.name}] Executing with input keys: {list(input or {})}")

        try:
            result = await self.execute(input)
        except Exception as e:
            execution_time = time.monotonic() - start_time
            logger.error(f"[Tool: {self.name}] Execution failed after {execution_time:.3f}s: {e}")
            result = ToolResult(success=False, error=str(e) or type(e).__name__)
            result.metadata.update(self._tracking_metadata(execution_time))
            self._record(input, result, execution_time)
            return result

        execution_time = time.monotonic() - start_time
        result.metadata = {**result.metadata, **self._tracking_metadata(execution_time)}
        self._record(input, result, execution_time)

        logger.info(f"[Tool: {self.name}] Executed in {execution_time:.3f}s (success={result.success})")
        return result

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

    def create_success_result(self, data: Any, metadata: Dict[str, Any] = None) -> ToolResult:
        return ToolResult(success=True, data=data, metadata=metadata or {})

    def create_error_result(self, error: str, metadata: Dict[str, Any] = None) -> ToolResult:
        return ToolResult(success=False, error=error, metadata=metadata or {})

    def _tracking_metadata(self, execution_time: float) -> Dict[str, Any]:
        return {
            'execution_time': execution_time,
            'tool_name': self.name,
            'tool_version': self.version
        }

    def _record(self, input: Dict[str, Any], result: ToolResult, execution_time: float) -> None:
        self._history.append({
            'input': input,
            'output': result,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'execution_time': execution_time
        })
