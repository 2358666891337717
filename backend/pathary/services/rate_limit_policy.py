"""Named rate-limit policies and their enforcement"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from pathary.config import settings
from pathary.core.exceptions import RateLimitExceededError
from pathary.core.request_context import RequestContext
from pathary.services.audit_service import SecurityEventType, security_audit_service
from pathary.services.rate_limiter import RateLimiter, rate_limiter

logger = logging.getLogger(__name__)

SCOPE_USER = "user"
SCOPE_IP = "ip"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_attempts: int
    window_seconds: int
    scope: str = SCOPE_IP

    def key_for(self, user_id: Optional[int], ip_address: Optional[str]) -> str:
        """``<name>_user_<id>`` for per-user policies, ``<name>_ip_<addr>`` otherwise.

        A per-user policy falls back to the client IP when nobody is logged in.
        """
        if self.scope == SCOPE_USER and user_id is not None:
            return f"{self.name}_user_{user_id}"
        return f"{self.name}_ip_{ip_address or 'unknown'}"

    def limit_type(self, user_id: Optional[int]) -> str:
        return SCOPE_USER if self.scope == SCOPE_USER and user_id is not None else SCOPE_IP

    def exceeded_message(self, retry_after: int) -> str:
        minutes = max(1, math.ceil(self.window_seconds / 60))
        return (
            f"Rate limit exceeded. You can make {self.max_attempts} requests per "
            f"{minutes} minute{'' if minutes == 1 else 's'}. "
            f"Please try again in {retry_after} seconds."
        )


def _build_policies() -> Dict[str, RateLimitPolicy]:
    return {
        "password_change": RateLimitPolicy(
            "password_change",
            settings.RATE_LIMIT_PASSWORD_CHANGE_MAX,
            settings.RATE_LIMIT_PASSWORD_CHANGE_WINDOW,
            SCOPE_USER,
        ),
        "user_create": RateLimitPolicy(
            "user_create",
            settings.RATE_LIMIT_USER_CREATE_MAX,
            settings.RATE_LIMIT_USER_CREATE_WINDOW,
            SCOPE_USER,
        ),
        "login": RateLimitPolicy(
            "login",
            settings.RATE_LIMIT_LOGIN_MAX,
            settings.RATE_LIMIT_LOGIN_WINDOW,
            SCOPE_IP,
        ),
        "default": RateLimitPolicy(
            "default",
            settings.RATE_LIMIT_DEFAULT_MAX,
            settings.RATE_LIMIT_DEFAULT_WINDOW,
            SCOPE_IP,
        ),
    }


POLICIES = _build_policies()


def get_policy(name: str) -> RateLimitPolicy:
    return POLICIES.get(name, POLICIES["default"])


def enforce_rate_limit(
    db: Session,
    policy: RateLimitPolicy,
    ctx: RequestContext,
    user_id: Optional[int] = None,
    limiter: Optional[RateLimiter] = None,
) -> None:
    """
    Count one attempt against ``policy``

    Args:
        db: Database session, used to audit the rejection
        policy: Policy to apply
        ctx: Current request
        user_id: Logged in user, if any
        limiter: Rate limiter backend (defaults to the configured one)

    Raises:
        RateLimitExceededError: If the attempt is over the limit
    """
    limiter = limiter or rate_limiter
    key = policy.key_for(user_id, ctx.ip_address)

    if limiter.is_allowed(key, policy.max_attempts, policy.window_seconds):
        return

    retry_after = limiter.get_time_until_reset(key, policy.window_seconds)
    logger.warning(f"Rate limit exceeded for {key} on {ctx.path}; retry in {retry_after}s")

    if user_id is not None and user_id > 0:
        security_audit_service.log(
            db,
            user_id,
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            ctx.ip_address,
            ctx.user_agent,
            {"path": ctx.path, "limit_key": key, "limit_type": policy.limit_type(user_id)},
        )

    raise RateLimitExceededError(policy.exceeded_message(retry_after), retry_after=retry_after)
