# services/copylink/intel/trust_registry.py
"""Trust Registry: durable connected-app records and their signing secrets.

This is the only place signing secrets are generated. A secret is written
once, sealed with SecretBox, and never reissued on an existing record; a
relink creates a new record and revokes the old one.
"""

import secrets
from typing import Any, Dict, List, Optional, Tuple

from .db import CopyLinkDB
from .errors import Forbidden, NotFound
from .models import ConnectedApp, APP_ACTIVE, iso, utc_now
from .secret_box import SecretBox

SECRET_BYTES = 32  # 64 hex chars


class TrustRegistry:

    def __init__(self, db: CopyLinkDB, secret_box: SecretBox, logger):
        self.db = db
        self.box = secret_box
        self.logger = logger

    def prepare(
        self,
        owner_id: str,
        app_name: str,
        owner_identity: Optional[str] = None,
        source_url: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> Tuple[str, ConnectedApp]:
        """Mint a secret and the (unsaved) record that will hold it.

        The caller persists the record inside its own transaction.
        """
        secret = secrets.token_hex(SECRET_BYTES)
        app = ConnectedApp(
            id=ConnectedApp.new_id(),
            owner_id=owner_id,
            owner_identity=owner_identity,
            app_name=app_name,
            source_url=source_url,
            signing_secret_enc=self.box.seal(secret),
            status=APP_ACTIVE,
            total_events_received=0,
            created_at=created_at or iso(utc_now()),
        )
        return secret, app

    def get_active(self, owner_id: str, app_name: str) -> Optional[ConnectedApp]:
        return self.db.find_active_app(owner_id, app_name)

    def list_for_owner(self, owner_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return [app.to_api_dict() for app in self.db.list_connected_apps(owner_id, status)]

    def signing_secret(self, app: ConnectedApp) -> str:
        return self.box.open(app.signing_secret_enc)

    def record_events(self, app_id: str, count: int) -> None:
        self.db.increment_events_received(app_id, count, iso(utc_now()))

    def revoke(self, app_id: str, user: Dict[str, Any]) -> ConnectedApp:
        """Revoke a trust entry. Owner or admin only."""
        app = self.db.get_connected_app(app_id)
        if app is None:
            raise NotFound('Connected app not found')
        if app.owner_id != str(user.get('id')) and not user.get('is_admin'):
            raise Forbidden('Not your connected app')

        if self.db.revoke_connected_app(app_id, iso(utc_now())):
            self.logger.info(f"revoked {app.app_name} for user {app.owner_id}", emoji="🔒")
        return self.db.get_connected_app(app_id)
