# services/copylink/intel/auth.py
"""Authentication for the copy-link service.

Validates app session JWTs (HS256, signed with APP_SESSION_SECRET by the
session gateway). User records live in the identity service, so the user is
resolved from the claims alone:

{
    "iat": 1234567890,
    "exp": 1234567890,
    "sub": "user-id",
    "email": "user@example.com",
    "name": "Display Name",
    "roles": ["subscriber"]
}
"""

import jwt
from typing import Optional, Dict, Any
from functools import wraps
from aiohttp import web


class CopyLinkAuth:
    """Handles JWT validation and user resolution."""

    SESSION_COOKIE = 'ms_session'

    def __init__(self, config: Dict[str, Any], logger=None):
        self.app_session_secret = config.get('APP_SESSION_SECRET', '')
        self.logger = logger

    def decode_app_session(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode and validate a session JWT. None if missing, expired or forged."""
        if not token or not self.app_session_secret:
            return None

        try:
            return jwt.decode(token, self.app_session_secret, algorithms=['HS256'])
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError as e:
            if self.logger:
                self.logger.debug(f"rejected session token: {e}")
            return None

    def user_from_claims(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        user_id = str(payload.get('sub') or '').strip()
        if not user_id:
            return None

        roles = payload.get('roles') or []
        return {
            'id': user_id,
            'email': payload.get('email'),
            'display_name': payload.get('name'),
            'roles': roles,
            'is_admin': 'administrator' in roles or 'admin' in roles,
        }

    def extract_token(self, request: web.Request) -> Optional[str]:
        """
        Extract the session token from the request.

        Checks:
        1. Authorization header (Bearer token)
        2. ms_session cookie
        """
        auth_header = request.headers.get('Authorization', '')
        if auth_header.startswith('Bearer '):
            return auth_header[7:]

        return request.cookies.get(self.SESSION_COOKIE)

    async def get_request_user(self, request: web.Request) -> Optional[Dict[str, Any]]:
        payload = self.decode_app_session(self.extract_token(request))
        if not payload:
            return None
        return self.user_from_claims(payload)


def require_auth(handler):
    """
    Decorator to require authentication on a route handler.

    Adds request['user'] with the authenticated user.
    Returns 401 if not authenticated.
    """
    @wraps(handler)
    async def wrapper(self, request: web.Request) -> web.Response:
        user = await self.auth.get_request_user(request)
        if not user:
            return self._error_response('Authentication required', 401, request, kind='unauthenticated')

        request['user'] = user
        return await handler(self, request)

    return wrapper
