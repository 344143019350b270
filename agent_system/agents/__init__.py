"""
Agent Module Exports
"""

from agent_system.agents.base_agent import BaseAgent
from agent_system.agents.topics_agent import TopicsAgent
from agent_system.agents.content_writer_agent import ContentWriterAgent

__all__ = [
    'BaseAgent',
    'TopicsAgent',
    'ContentWriterAgent'
]
