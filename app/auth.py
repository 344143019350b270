"""
Supabase Authentication Middleware and Helpers
"""

import logging
from functools import wraps
from typing import Optional, Dict, Any, Callable

from flask import request, jsonify, g, current_app
from supabase import create_client, Client

logger = logging.getLogger(__name__)


class SupabaseAuth:
    """Supabase authentication handler."""

    def __init__(self, url: str, anon_key: str, client: Client = None):
        self.url = url
        self.anon_key = anon_key
        self.client: Client = client or create_client(url, anon_key)
        logger.info("Supabase auth client initialized")

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify a JWT token and return the decoded payload."""
        if not token:
            return None
        try:
            user = self.client.auth.get_user(token)
        except Exception as e:
            logger.error(f"Token verification error: {e}")
            return None

        if user and user.user:
            return {
                'sub': user.user.id,
                'email': user.user.email,
                'role': user.user.role or 'authenticated'
            }
        return None


class MockSupabaseAuth:
    """Mock Supabase authentication handler for development."""

    def __init__(self):
        logger.info("Mock Supabase auth client initialized (DEV MODE)")
        self.users: Dict[str, Dict[str, Any]] = {
            'test-user-id': {
                'id': 'test-user-id',
                'email': 'dev@example.com',
                'role': 'authenticated'
            }
        }

    def add_user(self, user_id: str, email: str) -> str:
        """Register a dev user and return a bearer token for it."""
        self.users[user_id] = {'id': user_id, 'email': email, 'role': 'authenticated'}
        return f"local-{user_id}"

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Mock token verification."""
        if not token:
            return None

        if token == 'test-token':
            user = self.users['test-user-id']
        elif token.startswith('local-'):
            user = self.users.get(token[len('local-'):])
        else:
            user = None

        if not user:
            logger.warning("Token verification failed")
            return None

        return {
            'sub': user['id'],
            'email': user['email'],
            'role': user.get('role', 'authenticated')
        }


def require_auth(f: Callable) -> Callable:
    """Decorator to require authentication for a route."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get('Authorization')

        if not auth_header:
            return jsonify({
                'error': 'Missing Authorization header',
                'code': 'AUTH_MISSING'
            }), 401

        parts = auth_header.split()
        if len(parts) != 2 or parts[0].lower() != 'bearer':
            return jsonify({
                'error': 'Invalid Authorization header format',
                'code': 'AUTH_INVALID_FORMAT'
            }), 401

        payload = current_app.supabase_auth.verify_token(parts[1])

        if not payload:
            return jsonify({
                'error': 'Invalid or expired token',
                'code': 'AUTH_INVALID_TOKEN'
            }), 401

        g.user_id = payload.get('sub')
        g.user_email = payload.get('email')
        g.user_role = payload.get('role', 'authenticated')

        return f(*args, **kwargs)

    return decorated_function
