"""
Flask Application Factory
"""

import os
import logging
from typing import Dict, Any

from flask import Flask
from flask_cors import CORS

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).lower() == 'true'


def create_app(config: Dict[str, Any] = None) -> Flask:
    """
    Application factory for creating Flask app.

    Args:
        config: Values overriding the environment-derived configuration

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    # Load configuration
    app.config.update(
        SECRET_KEY=os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production'),
        SUPABASE_URL=os.getenv('SUPABASE_URL'),
        SUPABASE_ANON_KEY=os.getenv('SUPABASE_ANON_KEY'),
        SUPABASE_SERVICE_ROLE_KEY=os.getenv('SUPABASE_SERVICE_ROLE_KEY'),
        OPENROUTER_API_KEY=os.getenv('OPENROUTER_API_KEY'),
        MANUS_API_KEY=os.getenv('MANUS_API_KEY'),
        MANUS_WEBHOOK_URL=os.getenv('MANUS_WEBHOOK_URL'),
        MANUS_WEBHOOK_SECRET=os.getenv('MANUS_WEBHOOK_SECRET'),
        MANUS_ENABLE_POLLING=_env_flag('MANUS_ENABLE_POLLING', 'true'),
        APP_URL=os.getenv('APP_URL', 'http://localhost:3000'),
        SOCKET_REQUIRE_AUTH=_env_flag('SOCKET_REQUIRE_AUTH', 'true'),
        MAX_CONTENT_LENGTH=16 * 1024 * 1024,  # 16MB max request size
        DEV_MODE=_env_flag('DEV_MODE'),
        MOCK_DB_FILE='storage/mock_db.json'
    )
    if config:
        app.config.update(config)

    # Enable CORS
    CORS(app, resources={
        r"/api/*": {
            "origins": os.getenv('ALLOWED_ORIGINS', '*').split(','),
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "x-manus-signature"]
        }
    })

    # Register blueprints
    from app.routes import main_bp, api_bp
    app.register_blueprint(main_bp)
    app.register_blueprint(api_bp, url_prefix='/api')

    # Initialize services
    with app.app_context():
        _initialize_services(app)

    logger.info("Flask application initialized successfully")

    return app


def _initialize_services(app: Flask) -> None:
    """Initialize application services."""
    from app.auth import SupabaseAuth, MockSupabaseAuth
    from app.database import SupabaseStore, MockStore
    from app.socket_relay import SocketRelay
    from app.protocol import SlidesTaskProtocol
    from app.polling import TaskPoller
    from app.pipeline import PresentationPipeline
    from agent_system.manus_client import ManusClient
    from agent_system.tools.llm_tool import LLMTool

    # Auth and store
    if app.config.get('DEV_MODE'):
        logger.warning("Initializing mock auth and store for DEV_MODE")
        app.supabase_auth = MockSupabaseAuth()
        app.store = MockStore(db_file=app.config.get('MOCK_DB_FILE'))
    else:
        app.supabase_auth = SupabaseAuth(
            url=app.config['SUPABASE_URL'],
            anon_key=app.config['SUPABASE_ANON_KEY']
        )
        app.store = SupabaseStore(
            url=app.config['SUPABASE_URL'],
            service_role_key=app.config['SUPABASE_SERVICE_ROLE_KEY']
        )

    # Socket relay
    app.socket_relay = SocketRelay(
        auth=app.supabase_auth,
        require_auth=app.config.get('SOCKET_REQUIRE_AUTH', True)
    )
    app.socketio = app.socket_relay.init_app(app, cors_origin=app.config.get('APP_URL'))

    # Manus client
    if app.config.get('MANUS_API_KEY'):
        app.manus_client = ManusClient(
            api_key=app.config['MANUS_API_KEY'],
            webhook_url=app.config.get('MANUS_WEBHOOK_URL')
        )
    else:
        logger.warning("MANUS_API_KEY not set, Manus task creation disabled")
        app.manus_client = None

    # Task protocol, polling fallback and local pipeline
    app.slides_protocol = SlidesTaskProtocol(
        store=app.store,
        relay=app.socket_relay,
        manus_client=app.manus_client
    )
    app.task_poller = TaskPoller(app.slides_protocol, app.manus_client) if app.manus_client else None
    app.presentation_pipeline = PresentationPipeline(
        app.slides_protocol,
        llm_tool=LLMTool(api_key=app.config.get('OPENROUTER_API_KEY'))
    )
