#!/usr/bin/env python3
"""
Payperwork Slides Agent Service - Entry Point

Initializes logging, validates configuration and serves the Flask
application together with its Socket.IO relay.

Usage:
    Development:
        python run.py dev

    Production:
        python run.py prod

Environment Variables:
    DEV_MODE: true|false, use mock auth and an in-memory store (default: false)
    FLASK_DEBUG: true|false (default: false)
    FLASK_HOST: Host to bind to (default: 0.0.0.0)
    FLASK_PORT: Port to bind to (default: 5000)
    LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
"""

import os
import sys
import json
import logging
import signal
import atexit
from pathlib import Path
from datetime import datetime, timezone

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent.absolute()

load_dotenv(PROJECT_ROOT / '.env')

_application = None


# =============================================================================
# Logging Configuration
# =============================================================================

class JSONFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread': record.threadName
        }
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging() -> logging.Logger:
    """
    Configure application logging.

    Console output plus a daily text log and a daily JSON-lines log in
    storage/logs/.

    Returns:
        Configured logger instance
    """
    log_dir = PROJECT_ROOT / 'storage' / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)

    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)-24s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    day = datetime.now().strftime('%Y%m%d')
    log_filename = log_dir / f"slides_{day}.log"
    file_handler = logging.FileHandler(log_filename, encoding='utf-8')
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    json_file_handler = logging.FileHandler(log_dir / f"slides_{day}.jsonl", encoding='utf-8')
    json_file_handler.setLevel(log_level)
    json_file_handler.setFormatter(JSONFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(json_file_handler)

    # Reduce noise from third-party libraries
    for name in ('urllib3', 'httpx', 'httpcore', 'werkzeug', 'engineio', 'socketio'):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger('slides')
    logger.info(f"Logging initialized at level {log_level_str}")
    logger.info(f"Log files: {log_filename}")

    return logger


# =============================================================================
# Configuration Validation
# =============================================================================

def validate_configuration() -> dict:
    """
    Validate required configuration and environment variables.

    Returns:
        Dictionary with validated configuration

    Raises:
        SystemExit: If critical configuration is missing
    """
    logger = logging.getLogger('slides.config')

    config = {
        'dev_mode': os.getenv('DEV_MODE', 'false').lower() == 'true',
        'flask': {
            'debug': os.getenv('FLASK_DEBUG', 'false').lower() == 'true',
            'host': os.getenv('FLASK_HOST', '0.0.0.0'),
            'port': int(os.getenv('FLASK_PORT', 5000)),
            'secret_key': os.getenv('FLASK_SECRET_KEY')
        },
        'supabase': {
            'url': os.getenv('SUPABASE_URL'),
            'anon_key': os.getenv('SUPABASE_ANON_KEY'),
            'service_role_key': os.getenv('SUPABASE_SERVICE_ROLE_KEY')
        },
        'manus': {
            'api_key': os.getenv('MANUS_API_KEY'),
            'webhook_url': os.getenv('MANUS_WEBHOOK_URL'),
            'webhook_secret': os.getenv('MANUS_WEBHOOK_SECRET')
        },
        'openrouter': {
            'api_key': os.getenv('OPENROUTER_API_KEY')
        }
    }

    errors = []
    warnings = []

    if not config['flask']['secret_key']:
        if config['dev_mode']:
            warnings.append("Using default FLASK_SECRET_KEY (development only)")
        else:
            errors.append("FLASK_SECRET_KEY is required outside DEV_MODE")

    if not config['dev_mode']:
        for key, name in (('url', 'SUPABASE_URL'), ('anon_key', 'SUPABASE_ANON_KEY'),
                          ('service_role_key', 'SUPABASE_SERVICE_ROLE_KEY')):
            if not config['supabase'][key]:
                errors.append(f"{name} is required")

    if not config['manus']['api_key']:
        warnings.append("MANUS_API_KEY is not set, Manus generation is disabled")
    elif not config['manus']['webhook_url']:
        warnings.append("MANUS_WEBHOOK_URL is not set, relying on polling only")
    if config['manus']['api_key'] and not config['manus']['webhook_secret']:
        warnings.append("MANUS_WEBHOOK_SECRET is not set, webhook signatures are not checked")

    if not config['openrouter']['api_key']:
        warnings.append("OPENROUTER_API_KEY is not set, the local pipeline will fail")

    for warning in warnings:
        logger.warning(warning)

    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        logger.error("Please check your .env file or environment variables")
        sys.exit(1)

    logger.info("Configuration validated successfully")
    logger.info(f"Dev mode: {config['dev_mode']}")
    logger.info(f"Debug mode: {config['flask']['debug']}")

    return config


# =============================================================================
# Application Factory
# =============================================================================

def create_application():
    """
    Create and configure the Flask application.

    Returns:
        Configured Flask application instance
    """
    global _application
    logger = logging.getLogger('slides.app')

    try:
        from app import create_app
        _application = create_app()
        logger.info("Flask application created successfully")
        return _application
    except Exception as e:
        logger.exception(f"Failed to create application: {e}")
        sys.exit(1)


# =============================================================================
# Signal Handlers and Cleanup
# =============================================================================

def setup_signal_handlers(logger: logging.Logger):
    """Setup graceful shutdown signal handlers."""
    def handle_shutdown(signum, frame):
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name} signal, initiating graceful shutdown...")
        cleanup()
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    logger.debug("Signal handlers registered")


def cleanup():
    """Stop pollers, close clients and flush logs."""
    logger = logging.getLogger('slides.cleanup')
    logger.info("Performing cleanup tasks...")

    app = _application
    if app is not None:
        if getattr(app, 'task_poller', None):
            app.task_poller.stop_all()
        if getattr(app, 'manus_client', None):
            app.manus_client.close()
        if getattr(app, 'socket_relay', None):
            app.socket_relay.teardown()

    for handler in logging.root.handlers:
        handler.flush()

    logger.info("Cleanup completed successfully")


# =============================================================================
# Startup Checks
# =============================================================================

def perform_startup_checks(config: dict) -> bool:
    """
    Perform startup health checks.

    Returns:
        True if all checks pass, False otherwise
    """
    import httpx

    logger = logging.getLogger('slides.startup')
    checks_passed = True

    logger.info("Performing startup health checks...")

    if not config['dev_mode']:
        try:
            response = httpx.get(
                f"{config['supabase']['url']}/rest/v1/",
                headers={'apikey': config['supabase']['anon_key']},
                timeout=10.0
            )
            if response.status_code < 500:
                logger.info("Supabase reachable")
            else:
                logger.error(f"Supabase returned status {response.status_code}")
                checks_passed = False
        except httpx.HTTPError as e:
            logger.error(f"Supabase connection failed: {e}")
            checks_passed = False

    if config['openrouter']['api_key']:
        try:
            response = httpx.get(
                "https://openrouter.ai/api/v1/models",
                headers={"Authorization": f"Bearer {config['openrouter']['api_key']}"},
                timeout=10.0
            )
            if response.status_code == 200:
                logger.info("OpenRouter API key valid")
            else:
                logger.warning(f"OpenRouter API returned status {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Could not verify OpenRouter API key: {e}")

    try:
        storage_dir = PROJECT_ROOT / 'storage'
        storage_dir.mkdir(exist_ok=True)
        test_file = storage_dir / '.write_test'
        test_file.touch()
        test_file.unlink()
        logger.info("Storage directory writable")
    except OSError as e:
        logger.error(f"Storage directory not writable: {e}")
        checks_passed = False

    if checks_passed:
        logger.info("All startup checks passed")
    else:
        logger.error("Some startup checks failed")

    return checks_passed


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Initialize logging and configuration, then serve HTTP and Socket.IO."""
    logger = setup_logging()

    logger.info("=" * 60)
    logger.info("Payperwork Slides Agent Service Starting")
    logger.info("=" * 60)
    logger.info(f"Python version: {sys.version}")
    logger.info(f"Project root: {PROJECT_ROOT}")

    config = validate_configuration()
    setup_signal_handlers(logger)
    atexit.register(cleanup)

    if not perform_startup_checks(config):
        if config['dev_mode']:
            logger.warning("Startup checks failed, continuing in development mode")
        else:
            logger.error("Startup checks failed, exiting")
            sys.exit(1)

    app = create_application()

    host = config['flask']['host']
    port = config['flask']['port']
    debug = config['flask']['debug']

    logger.info("-" * 60)
    logger.info(f"Starting server on http://{host}:{port} (socket path /api/socket)")
    logger.info("-" * 60)

    try:
        app.socketio.run(
            app,
            host=host,
            port=port,
            debug=debug,
            use_reloader=debug,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use")
        else:
            logger.exception(f"Failed to start server: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    finally:
        logger.info("Application shutdown complete")


def run_development():
    # overrides any .env value
    os.environ['DEV_MODE'] = 'true'
    os.environ['FLASK_DEBUG'] = 'true'
    os.environ.setdefault('LOG_LEVEL', 'DEBUG')
    main()


def run_production():
    os.environ['DEV_MODE'] = 'false'
    os.environ['FLASK_DEBUG'] = 'false'
    os.environ.setdefault('LOG_LEVEL', 'INFO')
    main()


# =============================================================================
# CLI Interface
# =============================================================================

def cli():
    """
    Command-line interface for the application.

    Commands:
        run         Start the server (default)
        dev         Start in development mode
        prod        Start in production mode
        check       Run configuration checks only
        version     Show version information
    """
    import argparse

    parser = argparse.ArgumentParser(description='Payperwork Slides Agent Service')
    parser.add_argument(
        'command',
        nargs='?',
        default='run',
        choices=['run', 'dev', 'prod', 'check', 'version'],
        help='Command to execute (default: run)'
    )
    parser.add_argument('--host', default=None, help='Host to bind to')
    parser.add_argument('--port', type=int, default=None, help='Port to bind to')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')

    args = parser.parse_args()

    if args.host:
        os.environ['FLASK_HOST'] = args.host
    if args.port:
        os.environ['FLASK_PORT'] = str(args.port)
    if args.debug:
        os.environ['FLASK_DEBUG'] = 'true'

    if args.command == 'run':
        main()
    elif args.command == 'dev':
        run_development()
    elif args.command == 'prod':
        run_production()
    elif args.command == 'check':
        setup_logging()
        config = validate_configuration()
        perform_startup_checks(config)
    elif args.command == 'version':
        print("Payperwork Slides Agent Service v1.0.0")
        print(f"Python {sys.version}")


if __name__ == '__main__':
    cli()
