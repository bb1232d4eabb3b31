"""Test data builders and constants."""

from datetime import datetime, timedelta, timezone

import jwt

from services.copylink.intel.models import CopiedTrade, Trade, COPY_EXECUTED

T0 = datetime(2026, 3, 2, 14, 30, 0, tzinfo=timezone.utc)
SESSION_SECRET = "test-session-secret-0123456789abcdef"

USER = {'id': 'u1', 'email': 'trader@example.com', 'roles': ['subscriber'], 'is_admin': False}
OTHER = {'id': 'u2', 'email': 'other@example.com', 'roles': ['subscriber'], 'is_admin': False}
ADMIN = {'id': 'u1', 'email': 'trader@example.com', 'roles': ['administrator'], 'is_admin': True}


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def session_token(user_id: str = 'u1', roles=None, email: str = 'trader@example.com', ttl: int = 3600) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {
            'sub': user_id,
            'email': email,
            'roles': roles or ['subscriber'],
            'iat': now,
            'exp': now + timedelta(seconds=ttl),
        },
        SESSION_SECRET,
        algorithm='HS256',
    )


def add_trade(db, source_trade_id: str, pnl=None, exit_price=None, owner_id: str = 'u1', source=None) -> Trade:
    trade = Trade(
        id=Trade.new_id(),
        owner_id=owner_id,
        source=source,
        source_trade_id=source_trade_id,
        symbol='ES',
        pnl=pnl,
        exit_price=exit_price,
        status='closed' if pnl is not None else 'open',
    )
    return db.create_trade(trade)


def add_copy(
    db,
    source_trade_id: str,
    target_trade_id: str,
    copy_params_id: str = 'cp1',
    owner_id: str = 'u1',
    copy_status: str = COPY_EXECUTED,
) -> CopiedTrade:
    copied = CopiedTrade(
        id=CopiedTrade.new_id(),
        copy_params_id=copy_params_id,
        owner_id=owner_id,
        source_trade_id=source_trade_id,
        target_trade_id=target_trade_id,
        copy_status=copy_status,
    )
    return db.create_copied_trade(copied)
