# services/copylink/intel/copy_params.py
"""Copy configurations owned by journal users.

A configuration groups copied trades for reconciliation and carries the
optional per-configuration pnl tolerance. Users manage them through the API;
a TRADE_COPIED event for an unknown id registers it for the sending owner.
"""

from typing import Any, Dict, List, Optional

from .db import CopyLinkDB
from .errors import Forbidden, NotFound, ValidationError
from .models import CopyParameters
from .reconciliation import check_tolerance


def _name(value: Any) -> str:
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError('name must be a string')
    return value.strip()


class CopyParamsStore:

    def __init__(self, db: CopyLinkDB, logger):
        self.db = db
        self.logger = logger

    def create(
        self,
        user: Dict[str, Any],
        name: Optional[str] = None,
        pnl_tolerance: Optional[float] = None,
        enabled: bool = True,
    ) -> CopyParameters:
        params = CopyParameters(
            id=CopyParameters.new_id(),
            owner_id=str(user['id']),
            name=_name(name),
            enabled=1 if enabled else 0,
            pnl_tolerance=None if pnl_tolerance is None else check_tolerance(pnl_tolerance),
        )
        self.db.create_copy_params(params)
        self.logger.info(f"created copy params {params.id}", emoji="🧾", owner=params.owner_id)
        return params

    def list_for_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.db.list_copy_params(owner_id)]

    def update(self, params_id: str, user: Dict[str, Any], changes: Dict[str, Any]) -> CopyParameters:
        """Apply name / enabled / pnlTolerance changes. Owner only."""
        params = self.db.get_copy_params(params_id)
        if params is None:
            raise NotFound('Copy parameters not found')
        if params.owner_id != str(user.get('id')):
            raise Forbidden('Not your copy parameters')

        updates: Dict[str, Any] = {}
        if 'name' in changes:
            updates['name'] = _name(changes['name'])
        if 'enabled' in changes:
            if not isinstance(changes['enabled'], bool):
                raise ValidationError('enabled must be a boolean')
            updates['enabled'] = 1 if changes['enabled'] else 0
        if 'pnlTolerance' in changes:
            tolerance = changes['pnlTolerance']
            # null clears the override
            updates['pnl_tolerance'] = None if tolerance is None else check_tolerance(tolerance)
        if not updates:
            raise ValidationError('Nothing to update')

        self.db.update_copy_params(params_id, updates)
        return self.db.get_copy_params(params_id)

    def for_copied_trade(self, params_id: Any, owner_id: str) -> CopyParameters:
        """Resolve the configuration a copied trade belongs to, registering it if new.

        Raises ValueError when the id is unusable or owned by someone else,
        which fails only the offending event.
        """
        if not isinstance(params_id, str) or not params_id:
            raise ValueError('copyParamsId must be a non-empty string')

        params = self.db.ensure_copy_params(CopyParameters(id=params_id, owner_id=owner_id))
        if params.owner_id != owner_id:
            raise ValueError(f"copy params {params_id} belong to another user")
        return params
