# services/copylink/intel/manual_sync.py
"""User-triggered sync of a broker connection.

A liveness/audit signal only: it stamps the connection and appends an event
log entry. It does not reconcile anything.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .db import CopyLinkDB
from .errors import Forbidden, InvalidState, NotFound, Unauthenticated, ValidationError
from .models import SyncEvent, iso, utc_now


class ManualSync:

    def __init__(self, db: CopyLinkDB, logger, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.logger = logger
        self._clock = clock

    def sync(self, connection_id: Optional[str], user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not user or not user.get('id'):
            raise Unauthenticated('Authentication required')
        if not connection_id:
            raise ValidationError('Missing connectionId')
        if not isinstance(connection_id, str):
            raise ValidationError('connectionId must be a string')

        owner_id = str(user['id'])
        connection = self.db.get_connection(connection_id)
        if connection is None:
            raise NotFound('Connection not found')
        if connection.owner_id != owner_id:
            raise Forbidden('Connection belongs to another user')

        now = self._clock()
        # Conditional on status != 'revoked', so a concurrent revoke wins
        if not self.db.mark_connection_synced(connection_id, owner_id, iso(now)):
            raise InvalidState('Connection has been revoked')

        event_id = f"manual_sync_{connection_id}_{int(now.timestamp() * 1000)}"
        self.db.append_sync_event(SyncEvent(
            id=SyncEvent.new_id(),
            event_id=event_id,
            owner_id=owner_id,
            connection_id=connection_id,
            event_type='manual.import',
            source=connection.provider,
            payload={'manual': True},
            status='processed',
            processed_at=iso(now),
        ))

        self.logger.info(f"manual sync for connection {connection_id}", emoji="🔄", provider=connection.provider)
        return {
            'status': 'success',
            'message': 'Manual sync triggered',
            'connectionId': connection_id,
        }
