import os
import tempfile

# Settings are read at import time; pin them before anything imports pathary.
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_INIT_MODE"] = "off"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["LOG_FILE"] = os.path.join(tempfile.gettempdir(), "pathary-tests.log")

from datetime import datetime, timedelta
from typing import Dict, Optional

import pyotp
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pathary.core import clock
from pathary.core.database import Base, build_engine
from pathary.core.request_context import RequestContext
from pathary.core.security import get_password_hash
from pathary.core.session import SessionWrapper, session_store
from pathary.models.audit import SecurityAuditEvent
from pathary.models.user import User
from pathary.services.rate_limiter import rate_limiter

FIREFOX_UA = "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_shared_state():
    rate_limiter.clear_all()
    session_store.clear()
    yield
    rate_limiter.clear_all()
    session_store.clear()


class FrozenClock:
    """Replacement for ``clock.utcnow`` that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def frozen_clock(monkeypatch):
    frozen = FrozenClock(datetime(2026, 3, 1, 12, 0, 0))
    monkeypatch.setattr(clock, "utcnow", frozen)
    return frozen


def create_user(
    db,
    email: str = "a@example.com",
    password: str = "Secret123!",
    name: Optional[str] = None,
    totp_secret: Optional[str] = None,
    **fields,
) -> User:
    user = User(
        email=email,
        name=name or email.split("@")[0],
        password_hash=get_password_hash(password),
        totp_uri=pyotp.TOTP(totp_secret).provisioning_uri(name=email, issuer_name="Pathary") if totp_secret else None,
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_context(
    cookies: Optional[Dict[str, str]] = None,
    headers: Optional[Dict[str, str]] = None,
    ip_address: str = "203.0.113.7",
    user_agent: Optional[str] = FIREFOX_UA,
    is_https: bool = False,
    session_id: Optional[str] = None,
    path: str = "/login",
) -> RequestContext:
    return RequestContext(
        ip_address=ip_address,
        user_agent=user_agent,
        is_https=is_https,
        session=SessionWrapper(session_store, session_id),
        path=path,
        cookies=cookies or {},
        headers=headers or {},
    )


def audit_events(db, event_type: Optional[str] = None):
    query = db.query(SecurityAuditEvent).order_by(SecurityAuditEvent.id)
    if event_type is not None:
        query = query.filter(SecurityAuditEvent.event_type == event_type)
    return query.all()


def current_totp_code(secret: str) -> int:
    return int(pyotp.TOTP(secret).now())


def wrong_totp_code(secret: str) -> int:
    """A code outside the accepted window"""
    totp = pyotp.TOTP(secret)
    now = datetime.now()
    accepted = {int(totp.at(now, offset)) for offset in (-1, 0, 1)}
    candidate = (int(totp.now()) + 500000) % 1000000
    while candidate in accepted:
        candidate = (candidate + 1) % 1000000
    return candidate
