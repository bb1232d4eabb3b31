# services/copylink/intel/db.py
"""SQLite persistence for the copy-link service.

Each call opens its own connection, so the manager is safe to share across
threads. Writes that must be exactly-once (token consumption, trade upsert,
counter bumps) run inside ``BEGIN IMMEDIATE`` so SQLite's writer lock
serializes them.
"""

import sqlite3
import os
from pathlib import Path
from typing import List, Optional, Dict, Any, Iterable, Tuple

from .models import (
    LinkToken, ConnectedApp, Trade, CopiedTrade, CopyParameters,
    BrokerConnection, SyncEvent, iso, utc_now, parse_iso,
    APP_ACTIVE, APP_REVOKED, COPY_EXECUTED, RECON_PENDING,
)


class CopyLinkDB:
    """SQLite database manager for link tokens, trust entries and copied trades."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            base = Path(__file__).resolve().parents[1]
            db_path = str(base / "data" / "copylink.db")

        self.db_path = db_path
        self._ensure_dir()
        self._init_schema()

    def _ensure_dir(self):
        """Ensure the database directory exists."""
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute("SELECT version FROM schema_version").fetchone()
            return row[0] if row else 0
        except sqlite3.OperationalError:
            return 0

    def _set_schema_version(self, conn: sqlite3.Connection, version: int):
        conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER)")
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    def _init_schema(self):
        """Initialize the database schema."""
        conn = self._get_conn()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            if self._get_schema_version(conn) < 1:
                self._create_v1(conn)
                self._set_schema_version(conn, self.SCHEMA_VERSION)
            conn.commit()
        finally:
            conn.close()

    def _create_v1(self, conn: sqlite3.Connection):
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS link_tokens (
                id TEXT PRIMARY KEY,
                token TEXT NOT NULL UNIQUE,
                owner_id TEXT NOT NULL,
                owner_identity TEXT,
                target_app TEXT NOT NULL,
                issued_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                used_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_link_tokens_owner ON link_tokens(owner_id);

            CREATE TABLE IF NOT EXISTS connected_apps (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                owner_identity TEXT,
                app_name TEXT NOT NULL,
                source_url TEXT,
                signing_secret_enc TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                total_events_received INTEGER NOT NULL DEFAULT 0,
                last_event_at TEXT,
                revoked_at TEXT,
                created_at TEXT NOT NULL
            );

            -- One active trust entry per (owner, app)
            CREATE UNIQUE INDEX IF NOT EXISTS uq_connected_apps_active
                ON connected_apps(owner_id, app_name) WHERE status = 'active';

            CREATE TABLE IF NOT EXISTS trades (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                source TEXT,
                source_trade_id TEXT NOT NULL,
                symbol TEXT,
                side TEXT,
                entry_time TEXT,
                exit_time TEXT,
                entry_price REAL,
                exit_price REAL,
                quantity REAL,
                pnl REAL,
                status TEXT DEFAULT 'open',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_trades_provenance ON trades(owner_id, source_trade_id);

            CREATE TABLE IF NOT EXISTS copy_parameters (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT,
                enabled INTEGER DEFAULT 1,
                pnl_tolerance REAL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS copied_trades (
                id TEXT PRIMARY KEY,
                copy_params_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                source_trade_id TEXT NOT NULL,
                target_trade_id TEXT,
                copy_status TEXT NOT NULL DEFAULT 'pending',
                reconciliation_status TEXT NOT NULL DEFAULT 'pending',
                reconciled_at TEXT,
                source_exit_price REAL,
                copied_exit_price REAL,
                source_pnl REAL,
                copied_pnl REAL,
                pnl_difference REAL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_copied_pending
                ON copied_trades(copy_params_id, owner_id, copy_status, reconciliation_status);

            CREATE TABLE IF NOT EXISTS broker_connections (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                mode TEXT,
                display_name TEXT,
                account_number TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                last_sync_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sync_event_log (
                id TEXT PRIMARY KEY,
                event_id TEXT NOT NULL UNIQUE,
                owner_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                source TEXT,
                connection_id TEXT,
                payload TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                error_message TEXT,
                processed_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sync_events_owner ON sync_event_log(owner_id, created_at);
        """)

    def _insert(self, conn: sqlite3.Connection, table: str, data: Dict[str, Any]):
        columns = ', '.join(data.keys())
        placeholders = ', '.join('?' * len(data))
        conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            list(data.values())
        )

    # ==================== Link Tokens ====================

    def create_link_token(self, token: LinkToken) -> LinkToken:
        conn = self._get_conn()
        try:
            self._insert(conn, 'link_tokens', token.to_dict())
            conn.commit()
            return token
        finally:
            conn.close()

    def get_link_token(self, token: str) -> Optional[LinkToken]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM link_tokens WHERE token = ?", (token,)
            ).fetchone()
            return LinkToken.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_link_tokens(self, owner_id: str) -> List[LinkToken]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM link_tokens WHERE owner_id = ? ORDER BY issued_at DESC",
                (owner_id,)
            ).fetchall()
            return [LinkToken.from_dict(dict(r)) for r in rows]
        finally:
            conn.close()

    def consume_link_token(self, token: str, used_at: str, app: ConnectedApp) -> bool:
        """Mark the token used and register the trust entry, exactly once.

        Returns False when another caller consumed the token first; nothing
        is written in that case. Any earlier active entry for the same
        (owner, app) is revoked in the same transaction.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                "UPDATE link_tokens SET used_at = ? WHERE token = ? AND used_at IS NULL",
                (used_at, token)
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return False

            conn.execute(
                """UPDATE connected_apps SET status = ?, revoked_at = ?
                   WHERE owner_id = ? AND app_name = ? AND status = ?""",
                (APP_REVOKED, used_at, app.owner_id, app.app_name, APP_ACTIVE)
            )
            self._insert(conn, 'connected_apps', app.to_dict())
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def purge_unused_tokens(self, expired_before: str) -> int:
        """Delete never-used tokens that expired before the cutoff."""
        cutoff = parse_iso(expired_before)
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT id, expires_at FROM link_tokens WHERE used_at IS NULL"
            ).fetchall()
            stale = [r['id'] for r in rows if parse_iso(r['expires_at']) < cutoff]
            for token_id in stale:
                conn.execute(
                    "DELETE FROM link_tokens WHERE id = ? AND used_at IS NULL", (token_id,)
                )
            conn.commit()
            return len(stale)
        finally:
            conn.close()

    # ==================== Connected Apps ====================

    def get_connected_app(self, app_id: str) -> Optional[ConnectedApp]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM connected_apps WHERE id = ?", (app_id,)
            ).fetchone()
            return ConnectedApp.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_active_app(self, owner_id: str, app_name: str) -> Optional[ConnectedApp]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM connected_apps WHERE owner_id = ? AND app_name = ? AND status = ?",
                (owner_id, app_name, APP_ACTIVE)
            ).fetchone()
            return ConnectedApp.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_connected_apps(self, owner_id: str, status: Optional[str] = None) -> List[ConnectedApp]:
        conn = self._get_conn()
        try:
            query = "SELECT * FROM connected_apps WHERE owner_id = ?"
            params: list = [owner_id]
            if status:
                query += " AND status = ?"
                params.append(status)
            query += " ORDER BY created_at DESC"
            rows = conn.execute(query, params).fetchall()
            return [ConnectedApp.from_dict(dict(r)) for r in rows]
        finally:
            conn.close()

    def revoke_connected_app(self, app_id: str, revoked_at: str) -> bool:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "UPDATE connected_apps SET status = ?, revoked_at = ? WHERE id = ? AND status = ?",
                (APP_REVOKED, revoked_at, app_id, APP_ACTIVE)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def increment_events_received(self, app_id: str, count: int, at: str) -> bool:
        """Atomic add; concurrent deliveries never lose increments."""
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """UPDATE connected_apps
                   SET total_events_received = total_events_received + ?, last_event_at = ?
                   WHERE id = ?""",
                (count, at, app_id)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # ==================== Trades ====================

    def create_trade(self, trade: Trade) -> Trade:
        conn = self._get_conn()
        try:
            self._insert(conn, 'trades', trade.to_dict())
            conn.commit()
            return trade
        finally:
            conn.close()

    def find_trade(self, owner_id: str, source_trade_id: str) -> Optional[Trade]:
        """Provenance lookup: first trade of the owner carrying this source id."""
        conn = self._get_conn()
        try:
            row = conn.execute(
                """SELECT * FROM trades WHERE owner_id = ? AND source_trade_id = ?
                   ORDER BY created_at LIMIT 1""",
                (owner_id, source_trade_id)
            ).fetchone()
            return Trade.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def upsert_trade(self, trade: Trade) -> Tuple[Trade, bool]:
        """Insert or update by (owner_id, source, source_trade_id).

        Returns (trade, created).
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """SELECT id FROM trades
                   WHERE owner_id = ? AND source_trade_id = ? AND source IS ?""",
                (trade.owner_id, trade.source_trade_id, trade.source)
            ).fetchone()

            if row is None:
                self._insert(conn, 'trades', trade.to_dict())
                conn.commit()
                return trade, True

            trade.id = row['id']
            trade.updated_at = iso(utc_now())
            data = trade.to_dict()
            for immutable in ('id', 'owner_id', 'source', 'source_trade_id', 'created_at'):
                data.pop(immutable)
            set_clause = ', '.join(f"{k} = ?" for k in data.keys())
            conn.execute(
                f"UPDATE trades SET {set_clause} WHERE id = ?",
                list(data.values()) + [trade.id]
            )
            conn.commit()
            return trade, False
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ==================== Copy Parameters ====================

    def create_copy_params(self, params: CopyParameters) -> CopyParameters:
        conn = self._get_conn()
        try:
            self._insert(conn, 'copy_parameters', params.to_dict())
            conn.commit()
            return params
        finally:
            conn.close()

    def get_copy_params(self, params_id: str) -> Optional[CopyParameters]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM copy_parameters WHERE id = ?", (params_id,)
            ).fetchone()
            return CopyParameters.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def ensure_copy_params(self, params: CopyParameters) -> CopyParameters:
        """Insert unless the id already exists. Returns the stored row."""
        conn = self._get_conn()
        try:
            data = params.to_dict()
            conn.execute(
                f"INSERT OR IGNORE INTO copy_parameters ({', '.join(data)}) "
                f"VALUES ({', '.join('?' * len(data))})",
                list(data.values())
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM copy_parameters WHERE id = ?", (params.id,)
            ).fetchone()
            return CopyParameters.from_dict(dict(row))
        finally:
            conn.close()

    def list_copy_params(self, owner_id: str) -> List[CopyParameters]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM copy_parameters WHERE owner_id = ? ORDER BY created_at",
                (owner_id,)
            ).fetchall()
            return [CopyParameters.from_dict(dict(r)) for r in rows]
        finally:
            conn.close()

    COPY_PARAMS_MUTABLE = {'name', 'enabled', 'pnl_tolerance'}

    def update_copy_params(self, params_id: str, updates: Dict[str, Any]) -> bool:
        updates = {k: v for k, v in updates.items() if k in self.COPY_PARAMS_MUTABLE}
        if not updates:
            return False

        conn = self._get_conn()
        try:
            set_clause = ', '.join(f"{k} = ?" for k in updates.keys())
            cursor = conn.execute(
                f"UPDATE copy_parameters SET {set_clause} WHERE id = ?",
                list(updates.values()) + [params_id]
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # ==================== Copied Trades ====================

    COPIED_TRADE_MUTABLE = {
        'copy_status', 'target_trade_id', 'reconciliation_status', 'reconciled_at',
        'source_exit_price', 'copied_exit_price', 'source_pnl', 'copied_pnl',
        'pnl_difference',
    }

    def create_copied_trade(self, copied: CopiedTrade) -> CopiedTrade:
        conn = self._get_conn()
        try:
            self._insert(conn, 'copied_trades', copied.to_dict())
            conn.commit()
            return copied
        finally:
            conn.close()

    def get_copied_trade(self, copied_id: str) -> Optional[CopiedTrade]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM copied_trades WHERE id = ?", (copied_id,)
            ).fetchone()
            return CopiedTrade.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_copied_trades(
        self,
        copy_params_id: str,
        owner_id: str,
        reconciliation_status: Optional[str] = None
    ) -> List[CopiedTrade]:
        conn = self._get_conn()
        try:
            query = "SELECT * FROM copied_trades WHERE copy_params_id = ? AND owner_id = ?"
            params: list = [copy_params_id, owner_id]
            if reconciliation_status:
                query += " AND reconciliation_status = ?"
                params.append(reconciliation_status)
            query += " ORDER BY created_at"
            rows = conn.execute(query, params).fetchall()
            return [CopiedTrade.from_dict(dict(r)) for r in rows]
        finally:
            conn.close()

    def list_pending_copied_trades(self, copy_params_id: str, owner_id: str) -> List[CopiedTrade]:
        """Executed copies still awaiting a reconciliation verdict."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT * FROM copied_trades
                   WHERE copy_params_id = ? AND owner_id = ?
                     AND copy_status = ? AND reconciliation_status = ?
                   ORDER BY created_at""",
                (copy_params_id, owner_id, COPY_EXECUTED, RECON_PENDING)
            ).fetchall()
            return [CopiedTrade.from_dict(dict(r)) for r in rows]
        finally:
            conn.close()

    def list_pending_batches(self) -> List[Tuple[str, str]]:
        """Distinct (copy_params_id, owner_id) pairs with pending executed copies."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT DISTINCT copy_params_id, owner_id FROM copied_trades
                   WHERE copy_status = ? AND reconciliation_status = ?""",
                (COPY_EXECUTED, RECON_PENDING)
            ).fetchall()
            return [(r['copy_params_id'], r['owner_id']) for r in rows]
        finally:
            conn.close()

    def update_copied_trade(self, copied_id: str, updates: Dict[str, Any]) -> bool:
        """Write the given fields in a single statement."""
        updates = {k: v for k, v in updates.items() if k in self.COPIED_TRADE_MUTABLE}
        if not updates:
            return False

        conn = self._get_conn()
        try:
            updates['updated_at'] = iso(utc_now())
            set_clause = ', '.join(f"{k} = ?" for k in updates.keys())
            cursor = conn.execute(
                f"UPDATE copied_trades SET {set_clause} WHERE id = ?",
                list(updates.values()) + [copied_id]
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def requeue_copied_trades(
        self,
        copy_params_id: str,
        owner_id: str,
        statuses: Iterable[str],
        copied_ids: Optional[Iterable[str]] = None
    ) -> int:
        """Move verdicts back to pending and clear the reconciled fields."""
        statuses = list(statuses)
        if not statuses:
            return 0

        query = f"""UPDATE copied_trades
                    SET reconciliation_status = ?, reconciled_at = NULL,
                        source_exit_price = NULL, copied_exit_price = NULL,
                        source_pnl = NULL, copied_pnl = NULL, pnl_difference = NULL,
                        updated_at = ?
                    WHERE copy_params_id = ? AND owner_id = ?
                      AND reconciliation_status IN ({', '.join('?' * len(statuses))})"""
        params: list = [RECON_PENDING, iso(utc_now()), copy_params_id, owner_id] + statuses

        if copied_ids is not None:
            copied_ids = list(copied_ids)
            if not copied_ids:
                return 0
            query += f" AND id IN ({', '.join('?' * len(copied_ids))})"
            params += copied_ids

        conn = self._get_conn()
        try:
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # ==================== Broker Connections ====================

    def create_connection(self, connection: BrokerConnection) -> BrokerConnection:
        conn = self._get_conn()
        try:
            self._insert(conn, 'broker_connections', connection.to_dict())
            conn.commit()
            return connection
        finally:
            conn.close()

    def get_connection(self, connection_id: str) -> Optional[BrokerConnection]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM broker_connections WHERE id = ?", (connection_id,)
            ).fetchone()
            return BrokerConnection.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def mark_connection_synced(self, connection_id: str, owner_id: str, at: str) -> bool:
        """Stamp a sync unless the connection was revoked in the meantime."""
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """UPDATE broker_connections SET status = 'connected', last_sync_at = ?
                   WHERE id = ? AND owner_id = ? AND status != 'revoked'""",
                (at, connection_id, owner_id)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def list_connections(self, owner_id: str) -> List[BrokerConnection]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM broker_connections WHERE owner_id = ? ORDER BY created_at DESC",
                (owner_id,)
            ).fetchall()
            return [BrokerConnection.from_dict(dict(r)) for r in rows]
        finally:
            conn.close()

    def revoke_connection(self, connection_id: str) -> bool:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "UPDATE broker_connections SET status = 'revoked' WHERE id = ? AND status != 'revoked'",
                (connection_id,)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # ==================== Sync Event Log ====================

    def append_sync_event(self, event: SyncEvent) -> bool:
        """Insert an event log entry. False if the event_id was already recorded."""
        conn = self._get_conn()
        try:
            self._insert(conn, 'sync_event_log', event.to_dict())
            conn.commit()
            return True
        except sqlite3.IntegrityError:
            return False
        finally:
            conn.close()

    def finish_sync_event(
        self,
        event_id: str,
        status: str,
        processed_at: str,
        error_message: Optional[str] = None
    ) -> bool:
        """Close out a pending entry; finished entries are never rewritten."""
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """UPDATE sync_event_log SET status = ?, processed_at = ?, error_message = ?
                   WHERE event_id = ? AND status = 'pending'""",
                (status, processed_at, error_message, event_id)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def get_sync_event(self, event_id: str) -> Optional[SyncEvent]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM sync_event_log WHERE event_id = ?", (event_id,)
            ).fetchone()
            return SyncEvent.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_sync_events(
        self,
        owner_id: str,
        source: Optional[str] = None,
        limit: int = 50
    ) -> List[SyncEvent]:
        conn = self._get_conn()
        try:
            query = "SELECT * FROM sync_event_log WHERE owner_id = ?"
            params: list = [owner_id]
            if source:
                query += " AND source = ?"
                params.append(source)
            query += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)
            rows = conn.execute(query, params).fetchall()
            return [SyncEvent.from_dict(dict(r)) for r in rows]
        finally:
            conn.close()
