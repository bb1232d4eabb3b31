"""Bootstrap plumbing: Truth-driven config, heartbeat, scoped logging."""

import json
import threading
from pathlib import Path

import pytest

from shared.heartbeat import start_heartbeat
from shared.logutil import LogUtil
from services.copylink.main import CopyLinkSetup

COMPONENT_PATH = Path(__file__).resolve().parents[3] / 'truth' / 'components' / 'copylink.json'


class FakeTruthRedis:
    def __init__(self, truth):
        self.raw = json.dumps(truth) if truth is not None else None
        self.closed = False

    async def get(self, key):
        return self.raw

    async def aclose(self):
        self.closed = True


class FakeBeatRedis:
    def __init__(self):
        self.writes = []
        self.written = threading.Event()

    def setex(self, key, ttl, value):
        self.writes.append((key, ttl, json.loads(value)))
        self.written.set()


def truth_with(env_overrides=None):
    with open(COMPONENT_PATH) as f:
        component = json.load(f)
    component['env'].update(env_overrides or {})
    return {'version': 'test', 'components': {'copylink': component}}


class TestCopyLinkSetup:
    @pytest.mark.asyncio
    async def test_builds_config_from_truth(self, monkeypatch):
        monkeypatch.delenv('COPYLINK_PORT', raising=False)
        truth = truth_with({'APP_SESSION_SECRET': 's', 'COPYLINK_SECRET_KEY': 'k'})
        setup = CopyLinkSetup('copylink', LogUtil('test'), redis=FakeTruthRedis(truth))

        config = await setup.load()

        assert config['COPYLINK_PORT'] == 3010
        assert config['RECONCILE_TOLERANCE'] == 5.0
        assert config['heartbeat'] == {'interval_sec': 5, 'ttl_sec': 15}
        assert 'http://localhost:5173' in config['cors']['allowed_origins']

    @pytest.mark.asyncio
    async def test_shell_overrides_truth(self, monkeypatch):
        monkeypatch.setenv('RECONCILE_TOLERANCE', '2.5')
        truth = truth_with({'APP_SESSION_SECRET': 's', 'COPYLINK_SECRET_KEY': 'k'})
        config = await CopyLinkSetup('copylink', redis=FakeTruthRedis(truth)).load()
        assert config['RECONCILE_TOLERANCE'] == 2.5

    @pytest.mark.asyncio
    async def test_secrets_required(self, monkeypatch):
        monkeypatch.delenv('COPYLINK_SECRET_KEY', raising=False)
        monkeypatch.delenv('APP_SESSION_SECRET', raising=False)
        with pytest.raises(RuntimeError, match='COPYLINK_SECRET_KEY'):
            await CopyLinkSetup('copylink', redis=FakeTruthRedis(truth_with())).load()

    @pytest.mark.asyncio
    async def test_bad_number(self, monkeypatch):
        monkeypatch.setenv('COPYLINK_PORT', 'eighty')
        truth = truth_with({'APP_SESSION_SECRET': 's', 'COPYLINK_SECRET_KEY': 'k'})
        with pytest.raises(RuntimeError, match='COPYLINK_PORT'):
            await CopyLinkSetup('copylink', redis=FakeTruthRedis(truth)).load()

    @pytest.mark.parametrize('value', ['nan', 'inf', '-1'])
    @pytest.mark.asyncio
    async def test_unusable_tolerance_stops_startup(self, monkeypatch, value):
        monkeypatch.setenv('RECONCILE_TOLERANCE', value)
        truth = truth_with({'APP_SESSION_SECRET': 's', 'COPYLINK_SECRET_KEY': 'k'})
        with pytest.raises(RuntimeError, match='RECONCILE_TOLERANCE'):
            await CopyLinkSetup('copylink', redis=FakeTruthRedis(truth)).load()

    @pytest.mark.asyncio
    async def test_only_cors_block_passes_through(self):
        truth = truth_with({'APP_SESSION_SECRET': 's', 'COPYLINK_SECRET_KEY': 'k'})
        truth['components']['copylink']['link'] = {'ttl_sec': 60}
        config = await CopyLinkSetup('copylink', redis=FakeTruthRedis(truth)).load()
        assert 'cors' in config
        assert 'link' not in config

    @pytest.mark.asyncio
    async def test_missing_truth(self):
        with pytest.raises(RuntimeError, match='not found'):
            await CopyLinkSetup('copylink', redis=FakeTruthRedis(None)).load()

    @pytest.mark.asyncio
    async def test_missing_component(self):
        with pytest.raises(RuntimeError, match='component missing'):
            await CopyLinkSetup('copylink', redis=FakeTruthRedis({'components': {}})).load()


class TestHeartbeat:
    def test_writes_payload_with_ttl(self):
        client = FakeBeatRedis()
        stop = start_heartbeat(
            'copylink',
            {'heartbeat': {'interval_sec': 60, 'ttl_sec': 15}},
            LogUtil('test'),
            payload_fn=lambda: {'mode': 'api'},
            client=client,
        )
        try:
            assert client.written.wait(timeout=5)
        finally:
            stop.set()

        key, ttl, payload = client.writes[0]
        assert key == 'copylink:heartbeat'
        assert ttl == 15
        assert payload['mode'] == 'api'
        assert payload['service'] == 'copylink'


class TestLogUtil:
    def test_child_shares_level_and_scope(self, capsys, monkeypatch):
        monkeypatch.setenv('LOG_LEVEL', 'INFO')
        root = LogUtil('copylink')
        child = root.child('reconcile')

        child.debug('hidden')
        root.configure_from_config({'LOG_LEVEL': 'DEBUG'})
        child.debug('shown', batch='cp1')

        out = capsys.readouterr().out
        assert 'hidden' not in out
        assert '[copylink:reconcile][DEBUG]' in out
        assert 'batch=cp1' in out
