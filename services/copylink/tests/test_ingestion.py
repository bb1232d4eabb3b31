"""Signed event ingestion from a linked platform."""

import json

import pytest

from services.copylink.intel.errors import Forbidden, InvalidState, ValidationError
from services.copylink.intel.ingestion import EventIngestor, sign
from services.copylink.intel.models import COPY_EXECUTED, COPY_FAILED, RECON_PENDING, CopyParameters

from .support import USER


@pytest.fixture
def linked(store):
    return store.consume(store.issue(USER)['linkToken'], source_system='HybridCopy')['sharedSigningSecret']


@pytest.fixture
def ingestor(db, registry, logger, clock):
    return EventIngestor(db, registry, logger, clock=clock)


def delivery(secret, clock, events, source_app='HybridCopy', user_id='u1', timestamp=None):
    raw = json.dumps({'sourceApp': source_app, 'journalUserId': user_id, 'events': events}).encode()
    ts = timestamp or str(int(clock.now.timestamp()))
    return {'X-Timestamp': ts, 'X-Signature': sign(secret, ts, raw)}, raw


def upsert(event_id, source_trade_id, pnl=None, **extra):
    payload = {'sourceTradeId': source_trade_id, 'source': 'tradovate', 'symbol': 'ES', 'pnl': pnl}
    payload.update(extra)
    return {'eventId': event_id, 'eventType': 'TRADE_UPSERT', 'payload': payload}


class TestAcceptance:
    def test_trade_upsert_creates_then_updates(self, linked, ingestor, clock, db):
        headers, raw = delivery(linked, clock, [upsert('e1', 'S1')])
        assert ingestor.ingest(headers, raw)['processed'] == 1
        assert db.find_trade('u1', 'S1').pnl is None

        headers, raw = delivery(linked, clock, [upsert('e2', 'S1', pnl=125.5, exitTime='2026-03-02T15:00:00Z')])
        ingestor.ingest(headers, raw)

        trade = db.find_trade('u1', 'S1')
        assert trade.pnl == 125.5
        assert trade.status == 'closed'
        assert trade.source == 'tradovate'

    def test_trade_copied_creates_pending_record(self, linked, ingestor, clock, db):
        event = {
            'eventId': 'c1',
            'eventType': 'TRADE_COPIED',
            'payload': {'copyParamsId': 'cp1', 'sourceTradeId': 'S1', 'targetTradeId': 'T1'},
        }
        headers, raw = delivery(linked, clock, [event])
        ingestor.ingest(headers, raw)

        [copied] = db.list_copied_trades('cp1', 'u1')
        assert copied.copy_status == COPY_EXECUTED
        assert copied.reconciliation_status == RECON_PENDING
        assert copied.target_trade_id == 'T1'

    def test_copied_then_reconciled(self, linked, ingestor, clock, db, engine):
        events = [
            upsert('e1', 'S1', pnl=100.0),
            upsert('e2', 'T1', pnl=103.0),
            {'eventId': 'c1', 'eventType': 'TRADE_COPIED',
             'payload': {'copyParamsId': 'cp1', 'sourceTradeId': 'S1', 'targetTradeId': 'T1'}},
        ]
        headers, raw = delivery(linked, clock, events)
        ingestor.ingest(headers, raw)

        assert engine.reconcile('cp1', 'u1').matched == 1

    def test_unknown_event_type_is_ignored(self, linked, ingestor, clock, db):
        headers, raw = delivery(linked, clock, [{'eventId': 'x1', 'eventType': 'ACCOUNT_SNAPSHOT', 'payload': {}}])
        result = ingestor.ingest(headers, raw)
        assert result['processed'] == 1
        assert db.get_sync_event('x1').status == 'ignored'

    def test_iso_timestamp_accepted(self, linked, ingestor, clock):
        headers, raw = delivery(linked, clock, [], timestamp=clock.now.isoformat())
        assert ingestor.ingest(headers, raw)['status'] == 'success'


class TestDedupe:
    def test_replayed_event_is_counted_as_duplicate(self, linked, ingestor, clock, db):
        headers, raw = delivery(linked, clock, [upsert('e1', 'S1', pnl=10.0)])
        ingestor.ingest(headers, raw)
        result = ingestor.ingest(headers, raw)

        assert result['processed'] == 0
        assert result['duplicates'] == 1
        assert len(db.list_sync_events('u1')) == 1

    def test_duplicate_copied_event_creates_one_record(self, linked, ingestor, clock, db):
        event = {'eventId': 'c1', 'eventType': 'TRADE_COPIED',
                 'payload': {'copyParamsId': 'cp1', 'sourceTradeId': 'S1'}}
        headers, raw = delivery(linked, clock, [event, event])
        result = ingestor.ingest(headers, raw)

        assert result['duplicates'] == 1
        assert len(db.list_copied_trades('cp1', 'u1')) == 1


class TestFailures:
    def test_bad_event_does_not_stop_batch(self, linked, ingestor, clock, db):
        events = [
            {'eventId': 'bad', 'eventType': 'TRADE_UPSERT', 'payload': {'symbol': 'ES'}},
            {'eventId': 'odd', 'eventType': 'TRADE_COPIED',
             'payload': {'copyParamsId': 'cp1', 'sourceTradeId': 'S1', 'copyStatus': 'teleported'}},
            upsert('good', 'S2', pnl=5.0),
        ]
        headers, raw = delivery(linked, clock, events)
        result = ingestor.ingest(headers, raw)

        assert result['processed'] == 1
        assert result['failed'] == 2
        assert {e['eventId'] for e in result['errors']} == {'bad', 'odd'}
        assert db.get_sync_event('bad').status == 'failed'
        assert db.get_sync_event('bad').error_message
        assert db.find_trade('u1', 'S2') is not None

    def test_failed_copy_status_is_recorded(self, linked, ingestor, clock, db):
        event = {'eventId': 'c1', 'eventType': 'TRADE_COPIED',
                 'payload': {'copyParamsId': 'cp1', 'sourceTradeId': 'S1', 'copyStatus': COPY_FAILED}}
        headers, raw = delivery(linked, clock, [event])
        ingestor.ingest(headers, raw)
        assert db.list_copied_trades('cp1', 'u1')[0].copy_status == COPY_FAILED

    def test_non_object_payload_fails_only_that_event(self, linked, ingestor, clock, db):
        events = [
            {'eventId': 'str', 'eventType': 'TRADE_UPSERT', 'payload': 'S1'},
            {'eventId': 'list', 'eventType': 'TRADE_COPIED', 'payload': ['cp1', 'S1']},
            upsert('good', 'S2', pnl=5.0),
        ]
        headers, raw = delivery(linked, clock, events)
        result = ingestor.ingest(headers, raw)

        assert result['processed'] == 1
        assert result['failed'] == 2
        assert db.get_sync_event('str').status == 'failed'
        assert 'JSON object' in db.get_sync_event('list').error_message
        assert db.find_trade('u1', 'S2').pnl == 5.0

    def test_non_object_event_and_numeric_id(self, linked, ingestor, clock, db):
        events = [
            'not-an-event',
            {'eventId': 42, 'eventType': 'TRADE_UPSERT', 'payload': {'sourceTradeId': 'S3', 'pnl': 1.0}},
        ]
        headers, raw = delivery(linked, clock, events)
        result = ingestor.ingest(headers, raw)

        assert result['processed'] == 1
        assert result['failed'] == 1
        assert db.get_sync_event('42').status == 'processed'
        assert db.find_trade('u1', 'S3') is not None


class TestCopyParamsRegistration:
    def test_trade_copied_registers_params_for_owner(self, linked, ingestor, clock, db):
        event = {'eventId': 'c1', 'eventType': 'TRADE_COPIED',
                 'payload': {'copyParamsId': 'cp-new', 'sourceTradeId': 'S1'}}
        headers, raw = delivery(linked, clock, [event])
        ingestor.ingest(headers, raw)

        params = db.get_copy_params('cp-new')
        assert params.owner_id == 'u1'
        assert params.pnl_tolerance is None

    def test_existing_params_are_kept(self, linked, ingestor, clock, db):
        db.create_copy_params(CopyParameters(id='cp1', owner_id='u1', name='ES mirror', pnl_tolerance=2.0))
        event = {'eventId': 'c1', 'eventType': 'TRADE_COPIED',
                 'payload': {'copyParamsId': 'cp1', 'sourceTradeId': 'S1'}}
        headers, raw = delivery(linked, clock, [event])
        ingestor.ingest(headers, raw)

        params = db.get_copy_params('cp1')
        assert params.name == 'ES mirror'
        assert params.pnl_tolerance == 2.0

    def test_params_of_another_user_fail_the_event(self, linked, ingestor, clock, db):
        db.create_copy_params(CopyParameters(id='cp-theirs', owner_id='u2'))
        events = [
            {'eventId': 'c1', 'eventType': 'TRADE_COPIED',
             'payload': {'copyParamsId': 'cp-theirs', 'sourceTradeId': 'S1'}},
            {'eventId': 'c2', 'eventType': 'TRADE_COPIED',
             'payload': {'sourceTradeId': 'S1'}},
        ]
        headers, raw = delivery(linked, clock, events)
        result = ingestor.ingest(headers, raw)

        assert result['failed'] == 2
        assert db.list_copied_trades('cp-theirs', 'u1') == []
        assert db.list_copied_trades('cp-theirs', 'u2') == []


class TestRejection:
    def test_missing_headers(self, linked, ingestor, clock):
        _, raw = delivery(linked, clock, [])
        with pytest.raises(ValidationError):
            ingestor.ingest({}, raw)

    def test_invalid_json(self, ingestor, clock):
        with pytest.raises(ValidationError):
            ingestor.ingest({'X-Timestamp': '1', 'X-Signature': 'abc'}, b'{not json')

    def test_missing_fields(self, linked, ingestor, clock):
        raw = json.dumps({'sourceApp': 'HybridCopy'}).encode()
        ts = str(int(clock.now.timestamp()))
        with pytest.raises(ValidationError):
            ingestor.ingest({'X-Timestamp': ts, 'X-Signature': sign(linked, ts, raw)}, raw)

    def test_bad_signature(self, linked, ingestor, clock, db):
        headers, raw = delivery('0' * 64, clock, [upsert('e1', 'S1')])
        with pytest.raises(Forbidden):
            ingestor.ingest(headers, raw)
        assert db.get_sync_event('e1') is None

    def test_tampered_body(self, linked, ingestor, clock):
        headers, raw = delivery(linked, clock, [upsert('e1', 'S1', pnl=1.0)])
        with pytest.raises(Forbidden):
            ingestor.ingest(headers, raw.replace(b'1.0', b'9.0'))

    def test_stale_timestamp(self, linked, ingestor, clock):
        headers, raw = delivery(linked, clock, [])
        clock.advance(seconds=301)
        with pytest.raises(InvalidState):
            ingestor.ingest(headers, raw)

    def test_unlinked_app(self, linked, ingestor, clock):
        headers, raw = delivery(linked, clock, [], source_app='SomethingElse')
        with pytest.raises(Forbidden):
            ingestor.ingest(headers, raw)

    def test_revoked_app(self, linked, ingestor, clock, registry):
        registry.revoke(registry.get_active('u1', 'HybridCopy').id, USER)
        headers, raw = delivery(linked, clock, [])
        with pytest.raises(Forbidden):
            ingestor.ingest(headers, raw)


class TestCounters:
    def test_counter_tracks_delivered_events(self, linked, ingestor, clock, registry):
        headers, raw = delivery(linked, clock, [upsert('e1', 'S1'), upsert('e2', 'S2')])
        ingestor.ingest(headers, raw)
        ingestor.ingest(headers, raw)

        app = registry.get_active('u1', 'HybridCopy')
        assert app.total_events_received == 4
        assert app.last_event_at is not None
