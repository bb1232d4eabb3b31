# services/copylink/intel/ingestion.py
"""Event ingestion from linked copy platforms.

Request contract:
  headers  X-Timestamp   ISO-8601 or unix seconds
           X-Signature   hex HMAC-SHA256(secret, timestamp + raw body)
  body     {"sourceApp": str, "journalUserId": str, "events": [...]}

Each event is {"eventId"?, "eventType", "payload"}. Supported types:
  TRADE_UPSERT  create/update a journal trade keyed by source + sourceTradeId
  TRADE_COPIED  record a copied trade awaiting reconciliation
Anything else is logged as ignored.
"""

import hashlib
import hmac
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from .copy_params import CopyParamsStore
from .db import CopyLinkDB
from .errors import Forbidden, InvalidState, ValidationError
from .models import (
    CopiedTrade, SyncEvent, Trade, COPY_EXECUTED, COPY_STATUSES, iso, parse_iso, utc_now,
)
from .trust_registry import TrustRegistry

DEFAULT_MAX_SKEW_SEC = 300


def sign(secret: str, timestamp: str, raw_body: bytes) -> str:
    """Signature a linked platform attaches to each delivery."""
    message = timestamp.encode() + raw_body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _parse_timestamp(value: str) -> datetime:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except ValueError:
        return parse_iso(value)


class EventIngestor:

    def __init__(
        self,
        db: CopyLinkDB,
        registry: TrustRegistry,
        logger,
        max_skew_sec: int = DEFAULT_MAX_SKEW_SEC,
        clock: Callable[[], datetime] = utc_now,
        copy_params: Optional[CopyParamsStore] = None,
    ):
        self.db = db
        self.registry = registry
        self.logger = logger
        self.copy_params = copy_params or CopyParamsStore(db, logger)
        self.max_skew_sec = max_skew_sec
        self._clock = clock
        self._handlers = {
            'TRADE_UPSERT': self._apply_trade_upsert,
            'TRADE_COPIED': self._apply_trade_copied,
        }

    def ingest(self, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        timestamp = headers.get('X-Timestamp')
        signature = headers.get('X-Signature')
        if not timestamp or not signature:
            raise ValidationError('Missing required headers: X-Timestamp, X-Signature')

        try:
            body = json.loads(raw_body or b'{}')
        except json.JSONDecodeError:
            raise ValidationError('Body is not valid JSON')
        if not isinstance(body, dict):
            raise ValidationError('Body must be a JSON object')

        source_app = body.get('sourceApp')
        owner_id = body.get('journalUserId')
        events = body.get('events')
        if not source_app or not owner_id or not isinstance(events, list):
            raise ValidationError('Missing required fields: sourceApp, journalUserId, events')

        try:
            sent_at = _parse_timestamp(timestamp)
        except ValueError:
            raise ValidationError('X-Timestamp is not a valid timestamp')
        if abs((self._clock() - sent_at).total_seconds()) > self.max_skew_sec:
            raise InvalidState(f'Request timestamp outside {self.max_skew_sec}s window')

        app = self.registry.get_active(str(owner_id), source_app)
        if app is None:
            raise Forbidden('No active connection found for this user and app')

        expected = sign(self.registry.signing_secret(app), timestamp, raw_body)
        if not hmac.compare_digest(expected, signature):
            self.logger.warn(f"bad signature from {source_app} for user {owner_id}", emoji="🚫")
            raise Forbidden('Invalid signature')

        results = {'processed': 0, 'duplicates': 0, 'failed': 0, 'errors': []}
        for event in events:
            self._ingest_one(app.owner_id, source_app, event, results)

        self.registry.record_events(app.id, len(events))
        self.logger.info(
            f"ingested {len(events)} events from {source_app}",
            emoji="📨", processed=results['processed'],
            duplicates=results['duplicates'], failed=results['failed'],
        )
        return {'status': 'success', **results}

    def _ingest_one(self, owner_id: str, source_app: str, event: Any, results: Dict[str, Any]):
        """Apply one event. Any failure is recorded against this event only."""
        if not isinstance(event, dict):
            self._fail(results, f"{owner_id}_{uuid.uuid4().hex}", 'event must be a JSON object', logged=False)
            return
        event_id = str(event.get('eventId') or f"{owner_id}_{uuid.uuid4().hex}")
        event_type = str(event.get('eventType') or 'UNKNOWN')
        payload = event.get('payload')
        if payload is None:
            payload = {}

        try:
            logged = self.db.append_sync_event(SyncEvent(
                id=SyncEvent.new_id(),
                event_id=event_id,
                owner_id=owner_id,
                event_type=event_type,
                source=source_app,
                payload=payload if isinstance(payload, dict) else {'value': payload},
            ))
        except sqlite3.Error as e:
            self._fail(results, event_id, f"event log unavailable: {e}", logged=False)
            return
        if not logged:
            results['duplicates'] += 1
            return

        handler = self._handlers.get(event_type)
        try:
            if handler is None:
                status = 'ignored'
            else:
                if not isinstance(payload, dict):
                    raise ValueError(f"{event_type} payload must be a JSON object")
                handler(owner_id, payload)
                status = 'processed'
        except Exception as e:
            self._fail(results, event_id, str(e) or type(e).__name__, logged=True)
            return

        self._finish(event_id, status)
        results['processed'] += 1

    def _fail(self, results: Dict[str, Any], event_id: str, error: str, logged: bool):
        results['failed'] += 1
        results['errors'].append({'eventId': event_id, 'error': error})
        self.logger.warn(f"event {event_id} failed: {error}")
        if logged:
            self._finish(event_id, 'failed', error)

    def _finish(self, event_id: str, status: str, error: Optional[str] = None):
        try:
            self.db.finish_sync_event(event_id, status, iso(utc_now()), error)
        except sqlite3.Error as e:
            self.logger.error(f"could not close event log entry {event_id}: {e}")

    def _apply_trade_upsert(self, owner_id: str, payload: Dict[str, Any]):
        source_trade_id = payload['sourceTradeId']
        trade = Trade(
            id=Trade.new_id(),
            owner_id=owner_id,
            source=payload.get('source'),
            source_trade_id=str(source_trade_id),
            symbol=payload.get('symbol'),
            side=payload.get('side'),
            entry_time=payload.get('entryTime'),
            exit_time=payload.get('exitTime'),
            entry_price=_float(payload.get('entryPrice')),
            exit_price=_float(payload.get('exitPrice')),
            quantity=_float(payload.get('quantity')),
            pnl=_float(payload.get('pnl')),
            status=payload.get('status') or ('closed' if payload.get('exitTime') else 'open'),
        )
        self.db.upsert_trade(trade)

    def _apply_trade_copied(self, owner_id: str, payload: Dict[str, Any]):
        copy_status = payload.get('copyStatus', COPY_EXECUTED)
        if copy_status not in COPY_STATUSES:
            raise ValueError(f"unknown copyStatus '{copy_status}'")
        source_trade_id = str(payload['sourceTradeId'])
        target_trade_id = payload.get('targetTradeId')

        params = self.copy_params.for_copied_trade(payload.get('copyParamsId'), owner_id)
        self.db.create_copied_trade(CopiedTrade(
            id=CopiedTrade.new_id(),
            copy_params_id=params.id,
            owner_id=owner_id,
            source_trade_id=source_trade_id,
            target_trade_id=None if target_trade_id is None else str(target_trade_id),
            copy_status=copy_status,
        ))


def _float(value):
    return None if value is None else float(value)
