"""
Tests for configuration loading
"""

from pathlib import Path

from agent_system.config import load_config

CONFIG_DIR = Path(__file__).resolve().parent.parent / 'config'

AGENT_KEYS = {'model', 'temperature', 'max_tokens'}


class TestConfig:
    """Tests for the shipped YAML configuration."""

    def test_agent_settings_are_all_consumed(self):
        config = load_config(str(CONFIG_DIR))

        assert set(config['agents']) == {'topics', 'content_writer'}
        for name, settings in config['agents'].items():
            assert set(settings) == AGENT_KEYS, name

    def test_missing_directory_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path))

        assert config['agents']['topics']['max_tokens'] == 2048
        assert config['polling']['max_polls'] == 300
        assert config['manus']['agent_profile'] == 'quality'

    def teardown_method(self):
        load_config(str(CONFIG_DIR))
