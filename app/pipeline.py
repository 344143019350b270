"""
Presentation Pipeline - topics -> slides through the agent orchestrator
"""

import asyncio
import logging
from typing import Dict, Any, Optional

from agent_system.agents import TopicsAgent, ContentWriterAgent
from agent_system.models import AgentExecutionContext, WorkflowPlan, WorkflowResult, WorkflowStep
from agent_system.orchestrator import AgentOrchestrator
from agent_system.tools.base_tool import BaseTool
from app.database import StoreError
from app.protocol import SlidesTaskProtocol, STATUS_PLANNING, STATUS_TOPICS_GENERATED, STATUS_ERROR

logger = logging.getLogger(__name__)

TOPICS_STEP = 'topics'
SLIDES_STEP = 'slides'


class PresentationPipeline:
    """Generates a whole presentation with local agents instead of a Manus task."""

    def __init__(self, protocol: SlidesTaskProtocol, llm_tool: Optional[BaseTool] = None, max_parallel_steps: int = None):
        self.protocol = protocol
        self.store = protocol.store
        self.relay = protocol.relay
        self.llm_tool = llm_tool
        self.max_parallel_steps = max_parallel_steps

    def create_presentation(self, user_id: str, prompt: str, title: str = None,
                            format: str = '16:9', theme: str = 'default') -> Dict[str, Any]:
        presentation = self.store.create_presentation({
            'user_id': user_id,
            'title': title or prompt[:100],
            'prompt': prompt,
            'format': format,
            'theme': theme,
            'status': STATUS_PLANNING
        })
        self.relay.emit_generation_status(user_id, presentation['id'], 'thinking', "Planning presentation...")
        return presentation

    def build_plan(self, prompt: str, user_id: str, presentation_id: str) -> WorkflowPlan:
        context = AgentExecutionContext(user_id=user_id, presentation_id=presentation_id)
        return WorkflowPlan(
            name=f"presentation-{presentation_id}",
            description="Generate topics, then write one slide per topic",
            steps=[
                WorkflowStep(name=TOPICS_STEP, agent_name=TopicsAgent.AGENT_NAME,
                             input={'prompt': prompt}, context=context),
                WorkflowStep(name=SLIDES_STEP, agent_name=ContentWriterAgent.AGENT_NAME,
                             input={'prompt': prompt}, context=context, dependencies=[TOPICS_STEP]),
            ]
        )

    def _build_orchestrator(self, user_id: str, presentation_id: str) -> AgentOrchestrator:
        def on_step_event(step_name: str, event_type: str, payload: Dict[str, Any]) -> None:
            self._on_step_event(user_id, presentation_id, step_name, event_type, payload)

        def on_agent_progress(agent_name: str, event: str, data: Dict[str, Any]) -> None:
            self.relay.emit_thinking_step_update(user_id, {
                'id': f"{agent_name}-{event}",
                'title': data.get('message') or event.replace('_', ' ').capitalize(),
                'status': 'completed' if event.endswith('generated') else 'running',
                'actions': []
            })

        orchestrator = AgentOrchestrator(
            name=f"pipeline-{presentation_id}",
            max_parallel_steps=self.max_parallel_steps,
            event_callback=on_step_event
        )
        orchestrator.register_agent(
            TopicsAgent.AGENT_NAME,
            TopicsAgent(llm_tool=self.llm_tool, progress_callback=on_agent_progress)
        )
        orchestrator.register_agent(
            ContentWriterAgent.AGENT_NAME,
            ContentWriterAgent(llm_tool=self.llm_tool, progress_callback=on_agent_progress)
        )
        return orchestrator

    def _on_step_event(self, user_id: str, presentation_id: str, step_name: str,
                       event_type: str, payload: Dict[str, Any]) -> None:
        if step_name == TOPICS_STEP and event_type == 'step_completed':
            topics = (payload.get('data') or {}).get('topics') or []
            self.protocol.move_presentation(presentation_id, STATUS_TOPICS_GENERATED, {'topics': topics})
            self.relay.emit_topics_generated(user_id, topics, f"topics-{presentation_id}")
            self.relay.emit_generation_progress(user_id, presentation_id, 50, "Topics generated")
        elif step_name == SLIDES_STEP and event_type == 'step_started':
            self.relay.emit_generation_status(user_id, presentation_id, 'generating', "Writing slides...")

    def run(self, presentation_id: str, user_id: str, prompt: str) -> WorkflowResult:
        """Execute the plan and record the outcome on the presentation."""
        orchestrator = self._build_orchestrator(user_id, presentation_id)
        plan = self.build_plan(prompt, user_id, presentation_id)
        result = asyncio.run(orchestrator.execute_workflow(plan))

        if result.success:
            slides = (result.data(SLIDES_STEP) or {}).get('slides') or []
            try:
                slides_count = self.store.finalize_slides(presentation_id, slides)
            except StoreError as e:
                logger.error(f"Pipeline {presentation_id}: failed to save slides: {e}")
                self._fail(user_id, presentation_id, "Failed to save slides", 'saving')
                return result
            logger.info(f"Pipeline {presentation_id} finished with {slides_count} slides")
            self.protocol.notify_ready(user_id, presentation_id, slides_count)
            return result

        failed_step = next(
            (name for name, r in result.step_results.items() if not r.success), None
        )
        error = '; '.join(result.errors or []) or 'Pipeline failed'
        logger.error(f"Pipeline {presentation_id} failed: {error}")
        self._fail(user_id, presentation_id, error, failed_step)
        return result

    def _fail(self, user_id: str, presentation_id: str, error: str, step: Optional[str]) -> None:
        self.protocol.move_presentation(presentation_id, STATUS_ERROR)
        self.relay.emit_generation_error(user_id, presentation_id, error, step)
        self.relay.emit_presentation_error(user_id, presentation_id, error)
