"""
Tests for BaseTool, BaseAgent and the slide generation agents
"""

import json
import asyncio

import pytest

from agent_system.agents import BaseAgent, TopicsAgent, ContentWriterAgent
from agent_system.models import AgentResult, AgentExecutionContext
from agent_system.slides_parser import FALLBACK_TOPICS
from agent_system.tools.base_tool import BaseTool, ToolExecutionError

from tests.conftest import ScriptedLLM, TEN_TOPICS


class UpperTool(BaseTool):
    TOOL_NAME = "upper"
    DESCRIPTION = "Upper-cases text"

    async def execute(self, input):
        self.validate_input(input, required=['text'])
        return self.create_success_result(input['text'].upper())


class FailingTool(BaseTool):
    TOOL_NAME = "failing"

    async def execute(self, input):
        return self.create_error_result("tool broke")


class ShoutAgent(BaseAgent):
    AGENT_NAME = "shout"

    async def execute(self, input, context):
        text = await self.use_tool('upper', {'text': input['text']})
        return self.create_success_result({'text': text})


class TestBaseTool:
    """Tests for tool tracking."""

    def test_success_is_tracked(self):
        tool = UpperTool()
        result = asyncio.run(tool.execute_with_tracking({'text': 'hi'}))

        assert result.success
        assert result.data == 'HI'
        assert result.metadata['tool_name'] == 'upper'
        assert result.metadata['tool_version'] == '1.0.0'
        assert result.metadata['execution_time'] >= 0
        assert len(tool.get_history()) == 1

    def test_exception_becomes_failed_result(self):
        tool = UpperTool()
        result = asyncio.run(tool.execute_with_tracking({}))

        assert result.success is False
        assert 'Missing required field: text' in result.error
        assert 'execution_time' in result.metadata
        assert tool.get_history()[0]['output'] is result

    def test_history_is_bounded(self):
        tool = UpperTool()
        tool._history = type(tool._history)(maxlen=2)
        for text in ('a', 'b', 'c'):
            asyncio.run(tool.execute_with_tracking({'text': text}))

        history = tool.get_history()
        assert [h['output'].data for h in history] == ['B', 'C']
        tool.clear_history()
        assert tool.get_history() == []

    def test_tracking_cannot_be_overridden(self):
        with pytest.raises(TypeError):
            class Sneaky(BaseTool):
                async def execute(self, input):
                    return self.create_success_result(None)

                async def execute_with_tracking(self, input):
                    return None


class TestBaseAgent:
    """Tests for agent tracking and tool use."""

    def test_use_tool_returns_data(self):
        agent = ShoutAgent()
        agent.register_tool(UpperTool())
        result = asyncio.run(agent.execute_with_tracking({'text': 'slides'}))

        assert result.success
        assert result.data == {'text': 'SLIDES'}
        assert result.metadata['agent_name'] == 'shout'

    def test_missing_tool_fails_the_agent(self):
        agent = ShoutAgent()
        result = asyncio.run(agent.execute_with_tracking({'text': 'slides'}))

        assert result.success is False
        assert 'Tool not found: upper' in result.error
        assert len(agent.get_history()) == 1

    def test_failing_tool_raises_inside_agent(self):
        agent = ShoutAgent()
        agent.register_tool(FailingTool())

        with pytest.raises(ToolExecutionError, match='Tool execution failed: tool broke'):
            asyncio.run(agent.use_tool('failing', {}))

    def test_tool_registry(self):
        agent = ShoutAgent()
        agent.register_tool(UpperTool())
        assert agent.has_tool('upper')
        assert agent.get_available_tools() == ['upper']
        agent.unregister_tool('upper')
        assert not agent.has_tool('upper')

    def test_progress_callback_errors_are_contained(self):
        calls = []

        def callback(agent_name, event, data):
            calls.append((agent_name, event))
            raise RuntimeError("socket gone")

        agent = ShoutAgent(progress_callback=callback)
        agent.emit_progress('working', {})
        assert calls == [('shout', 'working')]

    def test_render_prompt_substitutes_placeholders(self):
        agent = ShoutAgent()
        prompt = agent.render_prompt('topics.md', prompt='Kubernetes basics', topics_count=10)

        assert 'Kubernetes basics' in prompt
        assert 'exactly 10 entries' in prompt
        assert '{prompt}' not in prompt

    def test_failed_result_gets_default_error(self):
        assert AgentResult(success=False).error == 'Unknown error'
        assert AgentResult(success=True, data=1).to_dict() == {'success': True, 'metadata': {}, 'data': 1}


class TestTopicsAgent:
    """Tests for topics generation."""

    def test_generates_ten_topics(self):
        llm = ScriptedLLM([json.dumps(TEN_TOPICS)])
        events = []
        agent = TopicsAgent(llm_tool=llm, progress_callback=lambda name, event, data: events.append(event))

        result = asyncio.run(agent.execute_with_tracking(
            {'prompt': 'Explain distributed systems'},
            AgentExecutionContext(presentation_id='p-1')
        ))

        assert result.success
        assert result.data == {'topics': TEN_TOPICS}
        assert result.metadata['fallback'] is False
        assert events == ['topics_started', 'topics_generated']
        assert 'Explain distributed systems' in llm.prompts[0]

    def test_wrong_count_uses_fallback(self):
        agent = TopicsAgent(llm_tool=ScriptedLLM([json.dumps(["Only", "Three", "Topics"])]))
        result = asyncio.run(agent.execute_with_tracking({'prompt': 'Explain distributed systems'}))

        assert result.success
        assert result.data['topics'] == FALLBACK_TOPICS
        assert result.metadata['fallback'] is True

    def test_missing_prompt_fails(self):
        agent = TopicsAgent(llm_tool=ScriptedLLM([]))
        result = asyncio.run(agent.execute_with_tracking({}))
        assert result.success is False
        assert 'prompt' in result.error


class TestContentWriterAgent:
    """Tests for slide writing."""

    def test_writes_slides_from_fenced_json(self):
        response = "Here you go:\n```json\n" + json.dumps({'slides': [
            {'title': 'Intro', 'content': 'Welcome', 'layout': 'title_slide'},
            {'title': 'Body', 'content': 'Details', 'layout': 'spiral'},
        ]}) + "\n```"
        agent = ContentWriterAgent(llm_tool=ScriptedLLM([response]))

        result = asyncio.run(agent.execute_with_tracking({
            'prompt': 'Explain distributed systems',
            'topics': {'topics': ['Intro', 'Body']}
        }))

        assert result.success
        slides = result.data['slides']
        assert [s['order_index'] for s in slides] == [0, 1]
        assert slides[0]['layout'] == 'title_slide'
        assert slides[1]['layout'] == 'content'

    def test_unparseable_output_is_an_error_result(self):
        agent = ContentWriterAgent(llm_tool=ScriptedLLM(["no json here"]))
        result = asyncio.run(agent.execute_with_tracking({
            'prompt': 'Explain distributed systems',
            'topics': ['Intro']
        }))

        assert result.success is False
        assert result.error.startswith('Failed to parse slides:')

    def test_empty_topics_fail(self):
        agent = ContentWriterAgent(llm_tool=ScriptedLLM([]))
        result = asyncio.run(agent.execute_with_tracking({'prompt': 'x' * 20, 'topics': []}))
        assert result.success is False
        assert 'non-empty list of topics' in result.error
