# services/copylink/intel/link_tokens.py
"""Link Token Store: issues and consumes single-use handshake tokens.

Flow:
  1. A signed-in journal user asks for a link token (issue).
  2. The user pastes it into the remote copy platform.
  3. The remote platform exchanges it, once, for a shared signing secret
     (consume). The secret is what authenticates every later event.
"""

import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .db import CopyLinkDB
from .errors import AlreadyUsed, Expired, NotFound, Unauthenticated, ValidationError
from .models import LinkToken, iso, utc_now
from .trust_registry import TrustRegistry

DEFAULT_TARGET_APP = 'iCopyTrade'
FALLBACK_APP_NAME = 'HybridCopy'
DEFAULT_TTL_SEC = 15 * 60
DEFAULT_RETENTION_DAYS = 7


class LinkTokenStore:
    """Issues short-lived link tokens and exchanges them for trust entries."""

    def __init__(
        self,
        db: CopyLinkDB,
        registry: TrustRegistry,
        logger,
        ttl_sec: int = DEFAULT_TTL_SEC,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.registry = registry
        self.logger = logger
        self.ttl = timedelta(seconds=ttl_sec)
        self._clock = clock

    def issue(self, user: Optional[Dict[str, Any]], target_app: Optional[str] = None) -> Dict[str, Any]:
        """Create a token for the user. Returns the raw token and its expiry."""
        if not user or not user.get('id'):
            raise Unauthenticated('Authentication required')

        now = self._clock()
        token = LinkToken(
            id=LinkToken.new_id(),
            token=secrets.token_urlsafe(32),
            owner_id=str(user['id']),
            owner_identity=user.get('email'),
            target_app=target_app or DEFAULT_TARGET_APP,
            issued_at=iso(now),
            expires_at=iso(now + self.ttl),
        )
        self.db.create_link_token(token)
        self.logger.info(
            f"issued link token {token.token[:6]}… for user {token.owner_id}",
            emoji="🔗", target_app=token.target_app,
        )

        return {
            'status': 'success',
            'linkToken': token.token,
            'expiresAt': token.expires_at,
            'expiresInSeconds': token.seconds_remaining(now),
        }

    def consume(
        self,
        token: Optional[str],
        source_system: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> Dict[str, str]:
        """Exchange a token for the owner id and a fresh shared secret.

        Exactly one caller can win per token; a concurrent loser gets
        AlreadyUsed. The response carries nothing beyond what the remote
        system needs to sign future events.
        """
        if not token:
            raise ValidationError('Missing linkToken')
        if not isinstance(token, str):
            raise ValidationError('linkToken must be a string')
        for field, value in (('sourceSystem', source_system), ('sourceUrl', source_url)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f'{field} must be a string')

        record = self.db.get_link_token(token)
        if record is None:
            raise NotFound('Invalid token')
        if record.is_used():
            raise AlreadyUsed('Token already used')

        now = self._clock()
        if record.is_expired(now):
            raise Expired('Token expired')

        app_name = source_system or record.target_app or FALLBACK_APP_NAME
        secret, app = self.registry.prepare(
            owner_id=record.owner_id,
            owner_identity=record.owner_identity,
            app_name=app_name,
            source_url=source_url,
            created_at=iso(now),
        )

        if not self.db.consume_link_token(token, iso(now), app):
            self.logger.warn(f"lost consume race for token {token[:6]}…", emoji="🏁")
            raise AlreadyUsed('Token already used')

        self.logger.ok(
            f"linked {app_name} for user {record.owner_id}",
            emoji="🤝", connected_app=app.id,
        )
        return {
            'journalUserId': record.owner_id,
            'sharedSigningSecret': secret,
        }

    def pending_for(self, owner_id: str) -> int:
        """Number of the owner's tokens that could still be consumed."""
        now = self._clock()
        return sum(
            1 for t in self.db.list_link_tokens(owner_id)
            if not t.is_used() and not t.is_expired(now)
        )

    def purge_expired(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Hygiene pass: drop never-used tokens long past expiry.

        Used tokens are audit records and stay. Failures are logged and
        reported as zero purged.
        """
        cutoff = self._clock() - timedelta(days=retention_days)
        try:
            purged = self.db.purge_unused_tokens(iso(cutoff))
        except Exception as e:
            self.logger.warn(f"token purge failed: {e}")
            return 0
        if purged:
            self.logger.info(f"purged {purged} stale link tokens", emoji="🧹")
        return purged
