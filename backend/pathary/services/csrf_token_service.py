"""CSRF tokens bound to the server-side session."""

from __future__ import annotations

import hmac
import logging
import secrets
from typing import Optional

from pathary.core.session import SessionWrapper

logger = logging.getLogger(__name__)

SESSION_CSRF_TOKEN_KEY = "csrf_token"


class CsrfTokenService:
    """One token per session, sent back by the browser in a request header"""

    @staticmethod
    def generate_token(session: SessionWrapper) -> str:
        """Existing token for the session, or a new one"""
        token = session.find(SESSION_CSRF_TOKEN_KEY)
        if token:
            return token
        return CsrfTokenService.regenerate_token(session)

    @staticmethod
    def regenerate_token(session: SessionWrapper) -> str:
        token = secrets.token_hex(32)
        session.set(SESSION_CSRF_TOKEN_KEY, token)
        return token

    @staticmethod
    def validate_token(session: SessionWrapper, token: Optional[str]) -> bool:
        expected = session.find(SESSION_CSRF_TOKEN_KEY)
        if not expected or not token:
            return False
        return hmac.compare_digest(expected, token)


csrf_token_service = CsrfTokenService()
