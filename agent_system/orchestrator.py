"""
Agent Orchestrator Module

Runs a WorkflowPlan (a DAG of named steps) against registered agents.
Steps start as soon as every dependency has succeeded, with at most
``max_parallel_steps`` agents in flight at once.
"""

import time
import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Callable

from agent_system.config import get_orchestration_config
from agent_system.agents.base_agent import BaseAgent
from agent_system.models import (
    AgentResult, StepExecutionContext, StepStatus,
    WorkflowPlan, WorkflowResult, WorkflowStep
)

logger = logging.getLogger(__name__)

BLOCKED_ERROR = "Workflow blocked: All remaining steps have failed dependencies"

EventCallback = Callable[[str, str, Dict[str, Any]], None]


class WorkflowError(Exception):
    """Custom exception for workflow errors."""
    pass


class WorkflowConfigurationError(WorkflowError):
    """Raised when a plan is rejected before execution."""
    pass


class AgentOrchestrator:
    """Coordinates registered agents to execute workflow plans."""

    def __init__(
        self,
        name: str,
        description: str = "",
        max_parallel_steps: Optional[int] = None,
        timeout: Optional[float] = None,
        history_limit: Optional[int] = None,
        enable_logging: Optional[bool] = None,
        event_callback: Optional[EventCallback] = None
    ):
        config = get_orchestration_config()
        self.name = name
        self.description = description
        self.max_parallel_steps = max(1, max_parallel_steps or config['max_parallel_steps'])
        self.timeout = timeout if timeout is not None else config['timeout_seconds']
        self.enable_logging = config['enable_logging'] if enable_logging is None else enable_logging
        self.event_callback = event_callback

        limit = history_limit or config['history_limit']
        self.agents: Dict[str, BaseAgent] = {}
        self._history = deque(maxlen=limit)
        self._logs = deque(maxlen=limit * 10)

        self._log(logging.INFO, f"Orchestrator initialized: {name}")

    # ------------------------------------------------------------------
    # Agent management
    # ------------------------------------------------------------------

    def register_agent(self, name: str, agent: BaseAgent) -> None:
        self.agents[name] = agent
        self._log(logging.DEBUG, f"Agent registered: {name}")

    def unregister_agent(self, name: str) -> None:
        self.agents.pop(name, None)
        self._log(logging.DEBUG, f"Agent unregistered: {name}")

    def get_registered_agents(self) -> List[str]:
        return list(self.agents)

    def has_agent(self, name: str) -> bool:
        return name in self.agents

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_plan(self, plan: WorkflowPlan) -> Dict[str, str]:
        """Reject malformed plans; return the step name -> id lookup table."""
        if not plan.steps:
            raise WorkflowConfigurationError("Workflow plan must have at least one step")

        name_to_id: Dict[str, str] = {}
        seen_ids = set()
        for step in plan.steps:
            if step.name in name_to_id:
                raise WorkflowConfigurationError(f"Duplicate step name in workflow: {step.name}")
            if step.id in seen_ids:
                raise WorkflowConfigurationError(f"Duplicate step id in workflow: {step.id}")
            name_to_id[step.name] = step.id
            seen_ids.add(step.id)

        self._check_circular_dependencies(plan.steps)

        for step in plan.steps:
            if step.agent_name not in self.agents:
                raise WorkflowConfigurationError(
                    f"Agent not found for step {step.name}: {step.agent_name}"
                )

        for step in plan.steps:
            for dep in step.dependencies:
                if dep not in name_to_id:
                    raise WorkflowConfigurationError(
                        f"Invalid dependency in step {step.name}: {dep} does not exist"
                    )

        return name_to_id

    def _check_circular_dependencies(self, steps: List[WorkflowStep]) -> None:
        by_name = {step.name: step for step in steps}
        visited = set()
        stack = set()

        def has_cycle(name: str) -> bool:
            if name in stack:
                return True
            if name in visited:
                return False
            visited.add(name)
            stack.add(name)
            step = by_name.get(name)
            if step:
                for dep in step.dependencies:
                    if has_cycle(dep):
                        return True
            stack.discard(name)
            return False

        for step in steps:
            if has_cycle(step.name):
                raise WorkflowConfigurationError(
                    f"Circular dependency detected in workflow involving step: {step.name}"
                )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_workflow(self, plan: WorkflowPlan) -> WorkflowResult:
        """Execute every step of a plan and return the aggregated result."""
        start_time = time.monotonic()
        self._log(logging.INFO, f"Starting workflow: {plan.name}", plan_id=plan.id, step_count=len(plan.steps))

        try:
            name_to_id = self.validate_plan(plan)
        except WorkflowConfigurationError as e:
            self._log(logging.ERROR, f"Workflow execution failed: {plan.name}", error=str(e))
            return WorkflowResult(
                plan=plan,
                step_results={},
                success=False,
                execution_time=time.monotonic() - start_time,
                errors=[str(e)],
                metadata={'orchestrator_name': self.name}
            )

        contexts = {
            step.id: StepExecutionContext(step_id=step.id, agent_name=step.agent_name)
            for step in plan.steps
        }
        results: Dict[str, AgentResult] = {}
        errors: List[str] = []

        try:
            await asyncio.wait_for(
                self._execute_steps(plan.steps, name_to_id, contexts, results, errors),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            message = f"Workflow timed out after {self.timeout}s"
            errors.append(message)
            for step in plan.steps:
                if step.id not in results:
                    self._fail_step(step, contexts, results, f"Step {step.name} did not finish: {message}")

        execution_time = time.monotonic() - start_time
        success = not errors
        self._log(
            logging.INFO if success else logging.ERROR,
            f"Workflow {'completed' if success else 'failed'}: {plan.name}",
            plan_id=plan.id,
            execution_time=execution_time,
            error_count=len(errors)
        )

        result = WorkflowResult(
            plan=plan,
            step_results={step.name: results[step.id] for step in plan.steps},
            step_statuses={step.name: contexts[step.id].status for step in plan.steps},
            success=success,
            execution_time=execution_time,
            errors=errors or None,
            metadata={
                'orchestrator_name': self.name,
                'completed_steps': sum(1 for r in results.values() if r.success),
                'total_steps': len(plan.steps)
            }
        )
        self._history.append({
            'plan': plan,
            'result': result,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'execution_time': execution_time
        })
        return result

    async def _execute_steps(
        self,
        steps: List[WorkflowStep],
        name_to_id: Dict[str, str],
        contexts: Dict[str, StepExecutionContext],
        results: Dict[str, AgentResult],
        errors: List[str]
    ) -> None:
        pending = list(steps)
        running: Dict[asyncio.Task, WorkflowStep] = {}
        data_results: Dict[str, Any] = {}

        try:
            while pending or running:
                for step in [s for s in pending if self._dependencies_satisfied(s, name_to_id, results)]:
                    if len(running) >= self.max_parallel_steps:
                        break
                    pending.remove(step)
                    task = asyncio.create_task(
                        self._execute_step(step, contexts, results, data_results, errors)
                    )
                    running[task] = step

                if not running:
                    # Nothing in flight and nothing startable: every pending step waits on a failure.
                    errors.append(BLOCKED_ERROR)
                    for step in pending:
                        failed = [d for d in step.dependencies if name_to_id[d] in results
                                  and not results[name_to_id[d]].success]
                        reason = ', '.join(failed) or 'upstream step'
                        self._fail_step(step, contexts, results, f"Step {step.name} blocked by failed dependency: {reason}")
                    pending.clear()
                    break

                done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

    def _dependencies_satisfied(
        self,
        step: WorkflowStep,
        name_to_id: Dict[str, str],
        results: Dict[str, AgentResult]
    ) -> bool:
        for dep in step.dependencies:
            result = results.get(name_to_id[dep])
            if result is None or not result.success:
                return False
        return True

    def _resolve_dependencies(self, step: WorkflowStep, data_results: Dict[str, Any]) -> Dict[str, Any]:
        """Inject each dependency's data into the step input under the dependency's name."""
        step_input = dict(step.input)
        for dep in step.dependencies:
            if dep in data_results:
                step_input[dep] = data_results[dep]
        return step_input

    async def _execute_step(
        self,
        step: WorkflowStep,
        contexts: Dict[str, StepExecutionContext],
        results: Dict[str, AgentResult],
        data_results: Dict[str, Any],
        errors: List[str]
    ) -> None:
        context = contexts[step.id]
        context.status = step.status = StepStatus.RUNNING
        context.start_time = time.monotonic()
        self._log(logging.DEBUG, f"Executing step: {step.name}", step_id=step.id, agent_name=step.agent_name)
        self._emit(step.name, 'step_started', {'step_id': step.id, 'agent_name': step.agent_name})

        try:
            agent = self.agents.get(step.agent_name)
            if not agent:
                raise WorkflowError(f"Agent not found: {step.agent_name}")
            step_input = self._resolve_dependencies(step, data_results)
            result = await agent.execute_with_tracking(step_input, step.context)
        except asyncio.CancelledError:
            self._fail_step(step, contexts, results, f"Step {step.name} cancelled")
            raise
        except Exception as e:
            message = f"Step {step.name} error: {e}"
            errors.append(message)
            self._fail_step(step, contexts, results, message)
            self._emit(step.name, 'step_failed', {'step_id': step.id, 'error': message})
            return

        results[step.id] = result
        context.result = result
        if result.success:
            if result.data is not None:
                data_results[step.name] = result.data
            context.status = step.status = StepStatus.COMPLETED
            self._log(logging.DEBUG, f"Step completed: {step.name}",
                      step_id=step.id, execution_time=result.metadata.get('execution_time'))
            self._emit(step.name, 'step_completed', {'step_id': step.id, 'data': result.data})
        else:
            message = f"Step {step.name} failed: {result.error}"
            errors.append(message)
            context.status = step.status = StepStatus.FAILED
            context.error = message
            self._log(logging.ERROR, message, step_id=step.id)
            self._emit(step.name, 'step_failed', {'step_id': step.id, 'error': result.error})

    def _fail_step(
        self,
        step: WorkflowStep,
        contexts: Dict[str, StepExecutionContext],
        results: Dict[str, AgentResult],
        message: str
    ) -> None:
        result = AgentResult(success=False, error=message)
        results[step.id] = result
        context = contexts[step.id]
        context.status = step.status = StepStatus.FAILED
        context.result = result
        context.error = message
        self._log(logging.ERROR, message, step_id=step.id)

    # ------------------------------------------------------------------
    # Events, history and logs
    # ------------------------------------------------------------------

    def _emit(self, step_name: str, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.event_callback:
            return
        try:
            self.event_callback(step_name, event_type, payload)
        except Exception as e:
            logger.error(f"Failed to deliver {event_type} for step {step_name}: {e}")

    def _log(self, level: int, message: str, **data) -> None:
        if not self.enable_logging:
            return
        self._logs.append({
            'level': logging.getLevelName(level).lower(),
            'orchestrator': self.name,
            'message': message,
            'data': data,
            'timestamp': datetime.now(timezone.utc).isoformat()
        })
        logger.log(level, f"[Orchestrator: {self.name}] {message}")

    def get_history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def get_logs(self) -> List[Dict[str, Any]]:
        return list(self._logs)

    def clear_history(self) -> None:
        self._history.clear()
        self._logs.clear()
        self._log(logging.DEBUG, "History and logs cleared")
