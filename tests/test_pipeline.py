"""
Tests for the local topics -> slides pipeline
"""

import json

import pytest

from app.pipeline import PresentationPipeline, TOPICS_STEP, SLIDES_STEP

from tests.conftest import ScriptedLLM, TEN_TOPICS, USER_ID

PROMPT = 'A deck about distributed caching'


def slides_response(topics):
    slides = [{'title': topic, 'content': f"About {topic}"} for topic in topics]
    slides[0]['layout'] = 'title_slide'
    return "```json\n" + json.dumps({'slides': slides}) + "\n```"


@pytest.fixture
def pipeline_for(protocol):
    def _build(responses):
        llm = ScriptedLLM(responses)
        return PresentationPipeline(protocol, llm_tool=llm, max_parallel_steps=2), llm
    return _build


class TestPipeline:
    """Tests for PresentationPipeline.run."""

    def test_plan_shape(self, pipeline_for):
        pipeline, _ = pipeline_for([])
        plan = pipeline.build_plan(PROMPT, USER_ID, 'p-1')

        assert [s.name for s in plan.steps] == [TOPICS_STEP, SLIDES_STEP]
        assert plan.steps[1].dependencies == [TOPICS_STEP]
        assert plan.steps[0].context.presentation_id == 'p-1'

    def test_full_run(self, pipeline_for, store, relay):
        pipeline, llm = pipeline_for([json.dumps(TEN_TOPICS), slides_response(TEN_TOPICS)])
        presentation = pipeline.create_presentation(USER_ID, PROMPT)
        assert presentation['status'] == 'planning'

        result = pipeline.run(presentation['id'], USER_ID, PROMPT)

        assert result.success
        stored = store.get_presentation(presentation['id'])
        assert stored['status'] == 'ready'
        assert stored['topics'] == TEN_TOPICS
        assert stored['slides_count'] == 10
        assert [s['title'] for s in store.get_slides(presentation['id'])] == TEN_TOPICS

        # The slides prompt carries the topics produced upstream
        assert TEN_TOPICS[3] in llm.prompts[1]

        relay.emit_topics_generated.assert_called_once_with(USER_ID, TEN_TOPICS, f"topics-{presentation['id']}")
        relay.emit_presentation_ready.assert_called_once_with(USER_ID, presentation['id'])
        relay.emit_generation_completed.assert_called_once_with(USER_ID, presentation['id'], 10)

    def test_bad_slides_output_fails_presentation(self, pipeline_for, store, relay):
        pipeline, _ = pipeline_for([json.dumps(TEN_TOPICS), "I cannot help with that"])
        presentation = pipeline.create_presentation(USER_ID, PROMPT)

        result = pipeline.run(presentation['id'], USER_ID, PROMPT)

        assert result.success is False
        assert store.get_presentation(presentation['id'])['status'] == 'error'
        assert store.get_slides(presentation['id']) == []

        args = relay.emit_generation_error.call_args.args
        assert args[:2] == (USER_ID, presentation['id'])
        assert 'Failed to parse slides' in args[2]
        assert args[3] == SLIDES_STEP
        relay.emit_presentation_ready.assert_not_called()

    def test_llm_failure_blocks_slides(self, pipeline_for, store, relay):
        pipeline, llm = pipeline_for([])
        presentation = pipeline.create_presentation(USER_ID, PROMPT)

        result = pipeline.run(presentation['id'], USER_ID, PROMPT)

        assert result.success is False
        assert len(llm.prompts) == 1
        assert result.step_results[SLIDES_STEP].success is False
        assert relay.emit_generation_error.call_args.args[3] == TOPICS_STEP
        assert store.get_presentation(presentation['id'])['status'] == 'error'

    def test_agent_progress_is_relayed(self, pipeline_for, relay):
        pipeline, _ = pipeline_for([json.dumps(TEN_TOPICS), slides_response(TEN_TOPICS)])
        presentation = pipeline.create_presentation(USER_ID, PROMPT)
        pipeline.run(presentation['id'], USER_ID, PROMPT)

        step_ids = [c.args[1]['id'] for c in relay.emit_thinking_step_update.call_args_list]
        assert step_ids == [
            'topics-topics_started', 'topics-topics_generated',
            'content_writer-slides_started', 'content_writer-slides_generated',
        ]
