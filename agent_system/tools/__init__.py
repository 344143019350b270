"""
Tools Module
"""

from agent_system.tools.base_tool import BaseTool, ToolExecutionError
from agent_system.tools.llm_tool import LLMTool

__all__ = ['BaseTool', 'ToolExecutionError', 'LLMTool']
