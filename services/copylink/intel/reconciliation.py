# services/copylink/intel/reconciliation.py
"""Reconciliation of copied trades against live journal trades.

For each executed copy still pending a verdict:
  source trade (by source_trade_id)  missing -> 'missing'
  target trade (by target_trade_id)  missing -> 'missing'
  otherwise pnl_difference = target.pnl - source.pnl, rounded to cents,
  'matched' when |difference| <= tolerance (boundary inclusive), else 'mismatch'.

Records are independent: a failed lookup becomes 'missing' and the batch
carries on. Only the initial pending-record query is fatal. Once a record
has a verdict it is never selected again unless requeued explicitly.
"""

import math
import sqlite3
import threading
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, Optional

from .db import CopyLinkDB
from .errors import Forbidden, TransientLookupFailure, ValidationError
from .models import (
    CopiedTrade, Trade, RECON_MATCHED, RECON_MISMATCH, RECON_MISSING,
    RECON_VERDICTS, iso, utc_now,
)

DEFAULT_TOLERANCE = 5.0
REQUEUE_DEFAULT = (RECON_MISMATCH, RECON_MISSING)

# Per-record outcome that leaves the record pending
DEFERRED = 'deferred'


def classify(pnl_difference: float, tolerance: float) -> str:
    return RECON_MATCHED if abs(pnl_difference) <= tolerance else RECON_MISMATCH


def check_tolerance(value: Any) -> float:
    """Coerce a tolerance; it must be a finite, non-negative number."""
    if isinstance(value, bool):
        raise ValidationError('tolerance must be a number')
    try:
        tolerance = float(value)
    except (TypeError, ValueError):
        raise ValidationError('tolerance must be a number')
    if not math.isfinite(tolerance) or tolerance < 0:
        raise ValidationError('tolerance must be a finite, non-negative number')
    return tolerance


@dataclass
class ReconcileResult:
    reconciled: int = 0
    matched: int = 0
    mismatch: int = 0
    missing: int = 0
    deferred: int = 0
    cancelled: bool = False

    def count(self, outcome: str):
        if outcome == DEFERRED:
            self.deferred += 1
            return
        self.reconciled += 1
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict:
        return {'status': 'success', **asdict(self)}


class ReconciliationEngine:

    def __init__(self, db: CopyLinkDB, logger, default_tolerance: float = DEFAULT_TOLERANCE):
        self.db = db
        self.logger = logger
        self.default_tolerance = check_tolerance(default_tolerance)

    # ------------------------------------------------------------------
    # Authorization and tolerance
    # ------------------------------------------------------------------

    def authorize(self, copy_params_id: Optional[str], user: Dict[str, Any]) -> str:
        """Return the owner whose records the caller may reconcile.

        Administrators reconcile their own account's copies. Otherwise the
        caller must own the copy configuration.
        """
        if not copy_params_id:
            raise ValidationError('Missing copyParamsId')
        if not isinstance(copy_params_id, str):
            raise ValidationError('copyParamsId must be a string')

        owner_id = str(user.get('id'))
        if user.get('is_admin'):
            return owner_id

        params = self.db.get_copy_params(copy_params_id)
        if params is None or params.owner_id != owner_id:
            raise Forbidden('Not allowed to reconcile this copy configuration')
        return owner_id

    def resolve_tolerance(self, copy_params_id: str, explicit: Optional[float] = None) -> float:
        if explicit is not None:
            return check_tolerance(explicit)
        try:
            params = self.db.get_copy_params(copy_params_id)
        except sqlite3.Error as e:
            self.logger.warn(f"copy params lookup failed, using default tolerance: {e}")
            return self.default_tolerance
        if params is None or params.pnl_tolerance is None:
            return self.default_tolerance
        try:
            return check_tolerance(params.pnl_tolerance)
        except ValidationError:
            self.logger.warn(
                f"copy params {copy_params_id} has unusable tolerance {params.pnl_tolerance!r}, using default"
            )
            return self.default_tolerance

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def reconcile(
        self,
        copy_params_id: str,
        owner_id: str,
        tolerance: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ReconcileResult:
        """Reconcile every pending executed copy of one configuration.

        ``cancel`` is checked between records; work already persisted stays.
        """
        tolerance = self.resolve_tolerance(copy_params_id, tolerance)

        # Fatal on failure: nothing to reconcile without the selection
        pending = self.db.list_pending_copied_trades(copy_params_id, owner_id)

        result = ReconcileResult()
        for copied in pending:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                self.logger.warn(
                    f"reconcile {copy_params_id} cancelled after {result.reconciled} records",
                    emoji="🛑",
                )
                break
            result.count(self.reconcile_one(copied, tolerance))

        if pending:
            self.logger.info(
                f"reconciled {copy_params_id}",
                emoji="🧮", owner=owner_id, tolerance=tolerance,
                matched=result.matched, mismatch=result.mismatch,
                missing=result.missing, deferred=result.deferred,
            )
        return result

    def reconcile_one(self, copied: CopiedTrade, tolerance: float) -> str:
        """Classify and persist one record. Returns the verdict or DEFERRED."""
        now = iso(utc_now())

        try:
            source = self._lookup(copied.owner_id, copied.source_trade_id)
            target = self._lookup(copied.owner_id, copied.target_trade_id)
        except TransientLookupFailure as e:
            self.logger.warn(f"copied trade {copied.id}: {e}; marking missing")
            source = target = None

        if source is None or target is None:
            self._persist(copied.id, {
                'reconciliation_status': RECON_MISSING,
                'reconciled_at': now,
            })
            return RECON_MISSING

        if source.pnl is None or target.pnl is None:
            # A leg is still open; try again next pass
            self.logger.debug(f"copied trade {copied.id} deferred: pnl not final")
            return DEFERRED

        pnl_difference = round(target.pnl - source.pnl, 2)
        verdict = classify(pnl_difference, tolerance)
        self._persist(copied.id, {
            'reconciliation_status': verdict,
            'reconciled_at': now,
            'source_exit_price': source.exit_price,
            'copied_exit_price': target.exit_price,
            'source_pnl': source.pnl,
            'copied_pnl': target.pnl,
            'pnl_difference': pnl_difference,
        })
        return verdict

    def _lookup(self, owner_id: str, provenance_id: Optional[str]) -> Optional[Trade]:
        if not provenance_id:
            return None
        try:
            return self.db.find_trade(owner_id, provenance_id)
        except sqlite3.Error as e:
            raise TransientLookupFailure(f"trade lookup {provenance_id} failed: {e}")

    def _persist(self, copied_id: str, updates: Dict[str, Any]):
        try:
            self.db.update_copied_trade(copied_id, updates)
        except sqlite3.Error as e:
            # Record stays pending and is picked up by the next pass
            self.logger.error(f"could not persist verdict for {copied_id}: {e}")

    # ------------------------------------------------------------------
    # Requeue
    # ------------------------------------------------------------------

    def requeue(
        self,
        copy_params_id: str,
        owner_id: str,
        statuses: Iterable[str] = REQUEUE_DEFAULT,
        copied_ids: Optional[Iterable[str]] = None,
    ) -> int:
        """Explicitly move verdicts back to pending for another pass."""
        statuses = list(statuses)
        unknown = [s for s in statuses if s not in RECON_VERDICTS]
        if unknown:
            raise ValidationError(f"Cannot requeue from status: {', '.join(unknown)}")

        count = self.db.requeue_copied_trades(copy_params_id, owner_id, statuses, copied_ids)
        self.logger.info(f"requeued {count} copied trades for {copy_params_id}", emoji="🔁")
        return count
