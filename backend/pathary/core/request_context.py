"""Request metadata in, cookie/header side effects out.

Services read what they need from a ``RequestContext`` and describe cookies to
set in a ``ResponseEffects`` they return; only the HTTP layer touches real
requests and responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from pathary.core.session import SessionWrapper

# Column widths for the request metadata that gets persisted
IP_ADDRESS_MAX_LENGTH = 45
USER_AGENT_MAX_LENGTH = 512

# Any instant in the past deletes a cookie.
_EXPIRED = datetime(1970, 1, 1, 0, 0, 1)


def clip(value: Optional[str], max_length: int) -> Optional[str]:
    """Cut ``value`` down to ``max_length`` characters so it fits its column."""
    if value is None:
        return None
    return value[:max_length]


@dataclass(frozen=True)
class RequestContext:
    ip_address: Optional[str]
    user_agent: Optional[str]
    is_https: bool
    session: SessionWrapper
    path: str = "/"
    cookies: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)

    def cookie(self, name: str) -> Optional[str]:
        value = self.cookies.get(name)
        return value or None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value or None
        return None


@dataclass(frozen=True)
class CookieInstruction:
    name: str
    value: str
    expires: Optional[datetime]
    secure: bool
    path: str = "/"
    httponly: bool = True
    samesite: str = "lax"

    @property
    def is_deletion(self) -> bool:
        return self.value == "" and self.expires is not None and self.expires <= _EXPIRED


@dataclass
class ResponseEffects:
    cookies: List[CookieInstruction] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)

    def set_cookie(self, name: str, value: str, expires: Optional[datetime], secure: bool) -> None:
        self.cookies.append(CookieInstruction(name=name, value=value, expires=expires, secure=secure))

    def clear_cookie(self, name: str, secure: bool) -> None:
        self.cookies.append(CookieInstruction(name=name, value="", expires=_EXPIRED, secure=secure))

    def cookie(self, name: str) -> Optional[CookieInstruction]:
        """Last instruction for ``name``"""
        for instruction in reversed(self.cookies):
            if instruction.name == name:
                return instruction
        return None

    def merge(self, other: "ResponseEffects") -> None:
        self.cookies.extend(other.cookies)
        self.headers.update(other.headers)
