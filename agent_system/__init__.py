"""
Agent System Package - Slide generation agents and workflow orchestration
"""

from agent_system.orchestrator import AgentOrchestrator, WorkflowError, WorkflowConfigurationError
from agent_system.models import (
    AgentResult, ToolResult, AgentExecutionContext, StepStatus,
    WorkflowStep, WorkflowPlan, WorkflowResult
)
from agent_system.manus_client import ManusClient, ManusError, ManusRateLimitError
from agent_system.config import get_config, load_config, get_agent_config, get_orchestration_config

__all__ = [
    'AgentOrchestrator',
    'WorkflowError',
    'WorkflowConfigurationError',
    'AgentResult',
    'ToolResult',
    'AgentExecutionContext',
    'StepStatus',
    'WorkflowStep',
    'WorkflowPlan',
    'WorkflowResult',
    'ManusClient',
    'ManusError',
    'ManusRateLimitError',
    'get_config',
    'load_config',
    'get_agent_config',
    'get_orchestration_config'
]
