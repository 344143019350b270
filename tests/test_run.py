"""
Tests for the run.py entry commands
"""

import os
from unittest.mock import patch

import run


class TestRunCommands:
    """Tests for the dev and prod commands overriding .env values."""

    def test_dev_command_forces_dev_mode(self, monkeypatch):
        monkeypatch.setenv('DEV_MODE', 'false')
        monkeypatch.setenv('FLASK_DEBUG', 'false')

        with patch.object(run, 'main') as main:
            run.run_development()

        main.assert_called_once()
        assert os.environ['DEV_MODE'] == 'true'
        assert os.environ['FLASK_DEBUG'] == 'true'

    def test_prod_command_disables_dev_mode(self, monkeypatch):
        monkeypatch.setenv('DEV_MODE', 'true')
        monkeypatch.setenv('FLASK_DEBUG', 'true')

        with patch.object(run, 'main') as main:
            run.run_production()

        main.assert_called_once()
        assert os.environ['DEV_MODE'] == 'false'
        assert os.environ['FLASK_DEBUG'] == 'false'
