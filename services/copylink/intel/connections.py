# services/copylink/intel/connections.py
"""Broker connections: the targets of the manual sync trigger."""

from typing import Any, Dict, List, Optional

from .db import CopyLinkDB
from .errors import Forbidden, NotFound, ValidationError
from .models import (
    BrokerConnection, CONNECTION_MODES, CONNECTION_CONNECTED, CONNECTION_PENDING,
    MODE_API_PULL, MODE_STATEMENT_INGEST,
)


def _optional_str(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be a string')
    return value.strip() or None


class ConnectionRegistry:

    def __init__(self, db: CopyLinkDB, logger):
        self.db = db
        self.logger = logger

    def create(
        self,
        user: Dict[str, Any],
        provider: Any,
        mode: Any = None,
        display_name: Any = None,
        account_number: Any = None,
    ) -> BrokerConnection:
        provider = _optional_str(provider, 'provider')
        if not provider:
            raise ValidationError('Missing provider')
        mode = mode or MODE_API_PULL
        if mode not in CONNECTION_MODES:
            raise ValidationError(f"mode must be one of {', '.join(CONNECTION_MODES)}")

        account_number = _optional_str(account_number, 'accountNumber')
        connection = BrokerConnection(
            id=BrokerConnection.new_id(),
            owner_id=str(user['id']),
            provider=provider,
            mode=mode,
            display_name=_optional_str(display_name, 'displayName') or f"{provider} - {account_number or 'account'}",
            account_number=account_number,
            # Statement imports have nothing to connect to
            status=CONNECTION_CONNECTED if mode == MODE_STATEMENT_INGEST else CONNECTION_PENDING,
        )
        self.db.create_connection(connection)
        self.logger.info(f"created {provider} connection {connection.id}", emoji="🔌", mode=mode)
        return connection

    def list_for_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.db.list_connections(owner_id)]

    def revoke(self, connection_id: str, user: Dict[str, Any]) -> BrokerConnection:
        """Revoke a connection. Owner only; revoking twice is harmless."""
        connection = self.db.get_connection(connection_id)
        if connection is None:
            raise NotFound('Connection not found')
        if connection.owner_id != str(user.get('id')):
            raise Forbidden('Connection belongs to another user')

        if self.db.revoke_connection(connection_id):
            self.logger.info(f"revoked connection {connection_id}", emoji="🔒")
        return self.db.get_connection(connection_id)
