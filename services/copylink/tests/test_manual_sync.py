"""Manual sync trigger for broker connections."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from services.copylink.intel.errors import (
    Forbidden, InvalidState, NotFound, Unauthenticated, ValidationError,
)
from services.copylink.intel.models import BrokerConnection

from .support import OTHER, USER


@pytest.fixture
def connection(db):
    return db.create_connection(BrokerConnection(id='conn-1', owner_id='u1', provider='tradovate'))


class TestManualSync:
    def test_success(self, syncer, connection, clock, db):
        result = syncer.sync('conn-1', USER)

        assert result == {'status': 'success', 'message': 'Manual sync triggered', 'connectionId': 'conn-1'}
        refreshed = db.get_connection('conn-1')
        assert refreshed.last_sync_at == clock.now.isoformat()
        assert refreshed.status == 'connected'

    def test_appends_event_log_entry(self, syncer, connection, clock, db):
        syncer.sync('conn-1', USER)

        [event] = db.list_sync_events('u1')
        assert event.event_id == f"manual_sync_conn-1_{int(clock.now.timestamp() * 1000)}"
        assert event.event_type == 'manual.import'
        assert event.source == 'tradovate'
        assert event.connection_id == 'conn-1'
        assert event.payload == {'manual': True}
        assert event.status == 'processed'

    def test_each_trigger_is_logged(self, syncer, connection, clock, db):
        syncer.sync('conn-1', USER)
        clock.advance(seconds=1)
        syncer.sync('conn-1', USER)
        assert len(db.list_sync_events('u1')) == 2

    def test_requires_user(self, syncer, connection):
        with pytest.raises(Unauthenticated):
            syncer.sync('conn-1', None)

    def test_requires_connection_id(self, syncer):
        with pytest.raises(ValidationError):
            syncer.sync(None, USER)

    def test_unknown_connection(self, syncer):
        with pytest.raises(NotFound):
            syncer.sync('conn-404', USER)

    def test_other_users_connection(self, syncer, connection, db):
        with pytest.raises(Forbidden):
            syncer.sync('conn-1', OTHER)
        assert db.get_connection('conn-1').last_sync_at is None
        assert db.list_sync_events('u2') == []

    def test_revoked_connection(self, syncer, connection, db):
        db.revoke_connection('conn-1')
        with pytest.raises(InvalidState):
            syncer.sync('conn-1', USER)
        assert db.list_sync_events('u1') == []

    def test_revoke_is_never_undone_by_sync(self, syncer, connection, db):
        def attempt(i):
            if i == 0:
                return db.revoke_connection('conn-1')
            try:
                return syncer.sync('conn-1', USER)
            except InvalidState as e:
                return e

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(attempt, range(4)))

        assert db.get_connection('conn-1').status == 'revoked'
