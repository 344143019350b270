"""
Configuration Management
"""

import logging
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

logger = logging.getLogger(__name__)

_config_cache: Optional[Dict[str, Any]] = None

DEFAULT_ORCHESTRATION = {
    'max_parallel_steps': 3,
    'timeout_seconds': 600,
    'history_limit': 100,
    'enable_logging': True
}

DEFAULT_POLLING = {
    'interval_seconds': 2.0,
    'max_polls': 300,
    'max_backoff_seconds': 10.0
}


def load_config(config_dir: str = "config") -> Dict[str, Any]:
    """Load all configuration files."""
    global _config_cache

    config = {
        'agents': {
            'topics': {'model': 'anthropic/claude-3-haiku', 'temperature': 0.5, 'max_tokens': 2048},
            'content_writer': {'model': 'anthropic/claude-3-sonnet', 'temperature': 0.7, 'max_tokens': 8192},
        },
        'orchestration': dict(DEFAULT_ORCHESTRATION),
        'polling': dict(DEFAULT_POLLING),
        'manus': {
            'base_url': 'https://api.manus.ai/v1',
            'agent_profile': 'quality',
            'timeout_seconds': 30.0,
            'max_retries': 3
        }
    }

    config_path = Path(config_dir)
    for filename in ['agents.yaml', 'manus.yaml']:
        filepath = config_path / filename
        if not filepath.exists():
            continue
        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                file_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not load config file {filepath}: {e}")
            continue
        if file_config:
            for section, values in file_config.items():
                if isinstance(values, dict) and isinstance(config.get(section), dict):
                    config[section].update(values)
                else:
                    config[section] = values

    _config_cache = config
    return config


def get_config() -> Dict[str, Any]:
    """Get the current configuration."""
    global _config_cache
    if _config_cache is None:
        load_config()
    return _config_cache or {}


def get_agent_config(agent_name: str) -> Dict[str, Any]:
    """Get configuration for a specific agent."""
    config = get_config()
    return config.get('agents', {}).get(agent_name, {})


def get_orchestration_config() -> Dict[str, Any]:
    """Get orchestration configuration."""
    config = get_config()
    return {**DEFAULT_ORCHESTRATION, **config.get('orchestration', {})}


def get_polling_config() -> Dict[str, Any]:
    """Get polling fallback configuration."""
    config = get_config()
    return {**DEFAULT_POLLING, **config.get('polling', {})}


def get_manus_config() -> Dict[str, Any]:
    """Get Manus task API configuration."""
    return get_config().get('manus', {})
