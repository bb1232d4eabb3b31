# services/copylink/intel/models.py
"""Data models for the trade-copy link service."""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import json
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse a stored timestamp; naive values are treated as UTC."""
    dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _known(cls, d: dict) -> dict:
    known_fields = {f for f in cls.__dataclass_fields__}
    return {k: v for k, v in d.items() if k in known_fields}


# Copy / reconciliation lifecycle values
COPY_PENDING = 'pending'
COPY_EXECUTED = 'executed'
COPY_FAILED = 'failed'
COPY_STATUSES = (COPY_PENDING, COPY_EXECUTED, COPY_FAILED)

RECON_PENDING = 'pending'
RECON_MATCHED = 'matched'
RECON_MISMATCH = 'mismatch'
RECON_MISSING = 'missing'
RECON_VERDICTS = (RECON_MATCHED, RECON_MISMATCH, RECON_MISSING)

APP_ACTIVE = 'active'
APP_REVOKED = 'revoked'

# Broker connection modes; statement imports need no live link
MODE_API_PULL = 'API_PULL'
MODE_WEBHOOK_PUSH = 'WEBHOOK_PUSH'
MODE_STATEMENT_INGEST = 'STATEMENT_INGEST'
CONNECTION_MODES = (MODE_API_PULL, MODE_WEBHOOK_PUSH, MODE_STATEMENT_INGEST)

CONNECTION_PENDING = 'pending'
CONNECTION_CONNECTED = 'connected'
CONNECTION_REVOKED = 'revoked'


@dataclass
class LinkToken:
    """Single-use, time-boxed credential that bootstraps a trust link.

    used_at is written at most once; the token is consumable only while
    used_at is null and now <= expires_at. Used tokens are kept for audit.
    """
    id: str
    token: str
    owner_id: str
    target_app: str
    issued_at: str
    expires_at: str
    owner_identity: Optional[str] = None  # account email
    used_at: Optional[str] = None

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now > parse_iso(self.expires_at)

    def seconds_remaining(self, now: datetime) -> int:
        return max(0, int((parse_iso(self.expires_at) - now).total_seconds()))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> 'LinkToken':
        return cls(**_known(cls, d))


@dataclass
class ConnectedApp:
    """An established trust relationship with a remote trading system."""
    id: str
    owner_id: str
    app_name: str
    signing_secret_enc: str  # Fernet token, never the raw secret
    owner_identity: Optional[str] = None
    source_url: Optional[str] = None
    status: str = APP_ACTIVE  # active/revoked
    total_events_received: int = 0
    last_event_at: Optional[str] = None
    revoked_at: Optional[str] = None
    created_at: str = field(default_factory=lambda: iso(utc_now()))

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> 'ConnectedApp':
        return cls(**_known(cls, d))

    def to_api_dict(self) -> dict:
        """API view. The signing secret never leaves the registry."""
        d = self.to_dict()
        d.pop('signing_secret_enc')
        return d


@dataclass
class Trade:
    """A journal trade, keyed for provenance by (source, source_trade_id)."""
    id: str
    owner_id: str
    source_trade_id: str
    source: Optional[str] = None
    symbol: Optional[str] = None
    side: Optional[str] = None
    entry_time: Optional[str] = None
    exit_time: Optional[str] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    quantity: Optional[float] = None
    pnl: Optional[float] = None
    status: str = 'open'  # open/closed
    created_at: str = field(default_factory=lambda: iso(utc_now()))
    updated_at: str = field(default_factory=lambda: iso(utc_now()))

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> 'Trade':
        return cls(**_known(cls, d))


@dataclass
class CopiedTrade:
    """Assertion that a source trade was mirrored onto a target system.

    reconciliation_status moves forward from pending to a verdict; only an
    explicit requeue moves it back.
    """
    id: str
    copy_params_id: str
    owner_id: str
    source_trade_id: str
    target_trade_id: Optional[str] = None
    copy_status: str = COPY_PENDING
    reconciliation_status: str = RECON_PENDING
    reconciled_at: Optional[str] = None

    source_exit_price: Optional[float] = None
    copied_exit_price: Optional[float] = None
    source_pnl: Optional[float] = None
    copied_pnl: Optional[float] = None
    pnl_difference: Optional[float] = None  # copied_pnl - source_pnl

    created_at: str = field(default_factory=lambda: iso(utc_now()))
    updated_at: str = field(default_factory=lambda: iso(utc_now()))

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> 'CopiedTrade':
        return cls(**_known(cls, d))


@dataclass
class CopyParameters:
    """A copy configuration. pnl_tolerance overrides the service default."""
    id: str
    owner_id: str
    name: str = ''
    enabled: int = 1
    pnl_tolerance: Optional[float] = None
    created_at: str = field(default_factory=lambda: iso(utc_now()))

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> 'CopyParameters':
        return cls(**_known(cls, d))


@dataclass
class BrokerConnection:
    """A user's connection to a broker or copy platform."""
    id: str
    owner_id: str
    provider: str
    mode: str = MODE_API_PULL
    display_name: Optional[str] = None
    account_number: Optional[str] = None
    status: str = CONNECTION_PENDING  # pending/connected/error/revoked
    last_sync_at: Optional[str] = None
    created_at: str = field(default_factory=lambda: iso(utc_now()))

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> 'BrokerConnection':
        return cls(**_known(cls, d))


@dataclass
class SyncEvent:
    """Immutable audit/dedupe entry for inbound events and sync attempts."""
    id: str
    event_id: str
    owner_id: str
    event_type: str
    source: Optional[str] = None
    connection_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = 'pending'  # pending/processed/failed/ignored
    error_message: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: str = field(default_factory=lambda: iso(utc_now()))

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> dict:
        d = asdict(self)
        d['payload'] = json.dumps(d['payload'] or {}, default=str)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> 'SyncEvent':
        d = dict(d)
        if isinstance(d.get('payload'), str):
            d['payload'] = json.loads(d['payload']) if d['payload'] else {}
        return cls(**_known(cls, d))
