"""
Workflow and Result Models
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AgentResult:
    """Uniform result returned by every agent and tool."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.success and not self.error:
            self.error = 'Unknown error'

    def to_dict(self) -> Dict[str, Any]:
        result = {'success': self.success, 'metadata': dict(self.metadata)}
        if self.success:
            result['data'] = self.data
        else:
            result['error'] = self.error
        return result


# Tools return the same shape as agents.
ToolResult = AgentResult


@dataclass
class AgentExecutionContext:
    user_id: Optional[str] = None
    presentation_id: Optional[str] = None
    workflow_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkflowStep:
    name: str
    agent_name: str
    input: Dict[str, Any] = field(default_factory=dict)
    context: AgentExecutionContext = field(default_factory=AgentExecutionContext)
    dependencies: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: StepStatus = StepStatus.PENDING


@dataclass
class WorkflowPlan:
    name: str
    steps: List[WorkflowStep]
    description: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class StepExecutionContext:
    step_id: str
    agent_name: str
    start_time: float = 0.0
    status: StepStatus = StepStatus.PENDING
    result: Optional[AgentResult] = None
    error: Optional[str] = None


@dataclass
class WorkflowResult:
    plan: WorkflowPlan
    step_results: Dict[str, AgentResult]
    success: bool
    execution_time: float
    step_statuses: Dict[str, StepStatus] = field(default_factory=dict)
    errors: Optional[List[str]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def data(self, step_name: str) -> Any:
        """Data produced by a successful step, or None."""
        result = self.step_results.get(step_name)
        if result and result.success:
            return result.data
        return None
