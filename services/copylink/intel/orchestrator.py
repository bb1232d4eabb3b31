# services/copylink/intel/orchestrator.py
"""API server and background loop for the trade-copy link service."""

import asyncio
import json
import threading
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional

from aiohttp import web

from .auth import CopyLinkAuth, require_auth
from .connections import ConnectionRegistry
from .copy_params import CopyParamsStore
from .db import CopyLinkDB
from .errors import CopyLinkError, ValidationError
from .ingestion import EventIngestor, DEFAULT_MAX_SKEW_SEC
from .link_tokens import LinkTokenStore, DEFAULT_TTL_SEC, DEFAULT_RETENTION_DAYS
from .manual_sync import ManualSync
from .models import iso, utc_now
from .reconciliation import ReconciliationEngine, DEFAULT_TOLERANCE, REQUEUE_DEFAULT, check_tolerance
from .secret_box import SecretBox
from .trust_registry import TrustRegistry

# Endpoints called by remote platforms rather than the journal UI
PUBLIC_PATHS = ('/api/link/exchange', '/api/events/ingest')


class CopyLinkOrchestrator:
    """REST API server for the trade-copy link."""

    def __init__(self, config: Dict[str, Any], logger, db: Optional[CopyLinkDB] = None):
        self.config = config
        self.logger = logger
        self.port = int(config.get('COPYLINK_PORT', 3010))
        self.reconcile_interval = float(config.get('RECONCILE_INTERVAL_SEC', 300))
        self.token_retention_days = int(config.get('TOKEN_RETENTION_DAYS', DEFAULT_RETENTION_DAYS))

        self.db = db or CopyLinkDB(config.get('COPYLINK_DB_PATH') or None)
        self.auth = CopyLinkAuth(config, logger.child('auth'))
        self.registry = TrustRegistry(
            self.db, SecretBox(config.get('COPYLINK_SECRET_KEY', '')), logger.child('trust')
        )
        self.tokens = LinkTokenStore(
            self.db, self.registry, logger.child('link'),
            ttl_sec=int(config.get('LINK_TOKEN_TTL_SEC', DEFAULT_TTL_SEC)),
        )
        self.copy_params = CopyParamsStore(self.db, logger.child('params'))
        self.connections = ConnectionRegistry(self.db, logger.child('connections'))
        self.ingestor = EventIngestor(
            self.db, self.registry, logger.child('ingest'),
            max_skew_sec=int(config.get('INGEST_MAX_SKEW_SEC', DEFAULT_MAX_SKEW_SEC)),
            copy_params=self.copy_params,
        )
        self.reconciler = ReconciliationEngine(
            self.db, logger.child('reconcile'),
            default_tolerance=config.get('RECONCILE_TOLERANCE', DEFAULT_TOLERANCE),
        )
        self.manual_sync = ManualSync(self.db, logger.child('sync'))

        # One batch per copy configuration at a time; different ones run in parallel.
        # Entries live only while some task holds or awaits the lock.
        self._batch_locks: Dict[str, asyncio.Lock] = {}
        self._batch_users: Dict[str, int] = {}
        self._cancel = threading.Event()

        self.allowed_origins = config.get('cors', {}).get('allowed_origins') or [
            'http://localhost:5173',
            'http://127.0.0.1:5173',
        ]

    # ==================== Responses ====================

    def _get_cors_origin(self, request: Optional[web.Request]) -> str:
        origin = request.headers.get('Origin', '') if request is not None else ''
        if origin in self.allowed_origins:
            return origin
        return self.allowed_origins[0]

    def _json_response(self, data: Any, status: int = 200, request: web.Request = None) -> web.Response:
        return web.Response(
            text=json.dumps(data, default=str),
            status=status,
            content_type='application/json',
        )

    def _error_response(
        self,
        message: str,
        status: int = 400,
        request: web.Request = None,
        kind: str = 'error'
    ) -> web.Response:
        return self._json_response({'success': False, 'error': message, 'kind': kind}, status, request)

    def _domain_error(self, e: CopyLinkError, request: web.Request) -> web.Response:
        return self._json_response(e.to_dict(), e.status, request)

    async def _read_json(self, request: web.Request) -> Dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise ValidationError('Request body is not valid JSON')
        if not isinstance(body, dict):
            raise ValidationError('Request body must be a JSON object')
        return body

    # ==================== Link Handshake ====================

    @require_auth
    async def generate_link(self, request: web.Request) -> web.Response:
        """POST /api/link/generate - Issue a link token for the signed-in user."""
        try:
            body = await self._read_json(request)
            result = self.tokens.issue(request['user'], body.get('targetApp'))
            return self._json_response(result, request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"generate_link error: {e}")
            return self._error_response(str(e), 500, request)

    async def exchange_link(self, request: web.Request) -> web.Response:
        """POST /api/link/exchange - Remote platform trades a token for a secret."""
        try:
            body = await self._read_json(request)
            result = await asyncio.to_thread(
                self.tokens.consume,
                body.get('linkToken'),
                body.get('sourceSystem'),
                body.get('sourceUrl'),
            )
            return self._json_response(result, request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"exchange_link error: {e}")
            return self._error_response(str(e), 500, request)

    @require_auth
    async def link_diagnostics(self, request: web.Request) -> web.Response:
        """GET /api/link/diagnostics - State of the user's linking setup."""
        try:
            user = request['user']
            apps = self.registry.list_for_owner(user['id'])
            events = self.db.list_sync_events(user['id'], limit=10)
            return self._json_response({
                'success': True,
                'user': {'id': user['id'], 'email': user.get('email')},
                'linking': {
                    'active_link_tokens': self.tokens.pending_for(user['id']),
                    'connected_apps': len([a for a in apps if a['status'] == 'active']),
                    'apps': apps,
                },
                'recent_events': [
                    {k: e.to_dict()[k] for k in ('event_id', 'event_type', 'source', 'status', 'created_at')}
                    for e in events
                ],
            }, request=request)
        except Exception as e:
            self.logger.error(f"link_diagnostics error: {e}")
            return self._error_response(str(e), 500, request)

    # ==================== Trust Registry ====================

    @require_auth
    async def list_connected_apps(self, request: web.Request) -> web.Response:
        """GET /api/connected-apps - Trust entries of the signed-in user."""
        try:
            apps = self.registry.list_for_owner(request['user']['id'], request.query.get('status'))
            return self._json_response({'success': True, 'apps': apps}, request=request)
        except Exception as e:
            self.logger.error(f"list_connected_apps error: {e}")
            return self._error_response(str(e), 500, request)

    @require_auth
    async def revoke_connected_app(self, request: web.Request) -> web.Response:
        """DELETE /api/connected-apps/:id - Revoke a trust entry."""
        try:
            app = self.registry.revoke(request.match_info['id'], request['user'])
            return self._json_response({'success': True, 'data': app.to_api_dict()}, request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"revoke_connected_app error: {e}")
            return self._error_response(str(e), 500, request)

    # ==================== Ingestion ====================

    async def ingest_events(self, request: web.Request) -> web.Response:
        """POST /api/events/ingest - Signed event delivery from a linked app."""
        try:
            raw = await request.read()
            result = await asyncio.to_thread(self.ingestor.ingest, request.headers, raw)
            return self._json_response(result, request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"ingest_events error: {e}")
            return self._error_response(str(e), 500, request)

    # ==================== Reconciliation ====================

    @asynccontextmanager
    async def _batch_lock(self, copy_params_id: str):
        lock = self._batch_locks.get(copy_params_id)
        if lock is None:
            lock = self._batch_locks[copy_params_id] = asyncio.Lock()
        self._batch_users[copy_params_id] = self._batch_users.get(copy_params_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._batch_users[copy_params_id] -= 1
            if not self._batch_users[copy_params_id]:
                del self._batch_users[copy_params_id]
                del self._batch_locks[copy_params_id]

    async def run_batch(
        self,
        copy_params_id: str,
        owner_id: str,
        tolerance: Optional[float] = None
    ):
        async with self._batch_lock(copy_params_id):
            return await asyncio.to_thread(
                self.reconciler.reconcile, copy_params_id, owner_id, tolerance, self._cancel
            )

    @require_auth
    async def reconcile(self, request: web.Request) -> web.Response:
        """POST /api/copy/reconcile - Reconcile pending copies of one configuration."""
        try:
            body = await self._read_json(request)
            copy_params_id = body.get('copyParamsId')
            owner_id = self.reconciler.authorize(copy_params_id, request['user'])

            tolerance = body.get('tolerance')
            if tolerance is not None:
                tolerance = check_tolerance(tolerance)

            result = await self.run_batch(copy_params_id, owner_id, tolerance)
            return self._json_response(result.to_dict(), request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"reconcile error: {e}")
            return self._error_response(str(e), 500, request)

    @require_auth
    async def requeue(self, request: web.Request) -> web.Response:
        """POST /api/copy/requeue - Send reconciled copies back to pending."""
        try:
            body = await self._read_json(request)
            copy_params_id = body.get('copyParamsId')
            owner_id = self.reconciler.authorize(copy_params_id, request['user'])

            statuses = body.get('statuses') or list(REQUEUE_DEFAULT)
            if not isinstance(statuses, list):
                raise ValidationError('statuses must be a list')

            async with self._batch_lock(copy_params_id):
                count = self.reconciler.requeue(
                    copy_params_id, owner_id, statuses, body.get('copiedTradeIds')
                )
            return self._json_response({'status': 'success', 'requeued': count}, request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"requeue error: {e}")
            return self._error_response(str(e), 500, request)

    async def reconcile_pending(self) -> int:
        """One pass of the background driver: every pending batch, then token GC."""
        batches = await asyncio.to_thread(self.db.list_pending_batches)
        results = await asyncio.gather(
            *(self.run_batch(params_id, owner_id) for params_id, owner_id in batches),
            return_exceptions=True,
        )
        for (params_id, _), result in zip(batches, results):
            if isinstance(result, Exception):
                self.logger.error(f"background reconcile {params_id} failed: {result}")

        await asyncio.to_thread(self.tokens.purge_expired, self.token_retention_days)
        return len(batches)

    async def reconcile_loop(self):
        while True:
            await asyncio.sleep(self.reconcile_interval)
            try:
                count = await self.reconcile_pending()
                if count:
                    self.logger.debug(f"background pass covered {count} batches")
            except Exception as e:
                self.logger.error(f"background reconcile pass failed: {e}")

    # ==================== Copy Parameters ====================

    @require_auth
    async def list_copy_params(self, request: web.Request) -> web.Response:
        """GET /api/copy/params - Copy configurations of the signed-in user."""
        try:
            params = self.copy_params.list_for_owner(request['user']['id'])
            return self._json_response({'success': True, 'params': params}, request=request)
        except Exception as e:
            self.logger.error(f"list_copy_params error: {e}")
            return self._error_response(str(e), 500, request)

    @require_auth
    async def create_copy_params(self, request: web.Request) -> web.Response:
        """POST /api/copy/params - Create a copy configuration."""
        try:
            body = await self._read_json(request)
            enabled = body.get('enabled', True)
            if not isinstance(enabled, bool):
                raise ValidationError('enabled must be a boolean')
            params = self.copy_params.create(
                request['user'], body.get('name'), body.get('pnlTolerance'), enabled
            )
            return self._json_response({'success': True, 'data': params.to_dict()}, 201, request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"create_copy_params error: {e}")
            return self._error_response(str(e), 500, request)

    @require_auth
    async def update_copy_params(self, request: web.Request) -> web.Response:
        """PATCH /api/copy/params/:id - Rename, toggle or retune a configuration."""
        try:
            body = await self._read_json(request)
            params = self.copy_params.update(request.match_info['id'], request['user'], body)
            return self._json_response({'success': True, 'data': params.to_dict()}, request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"update_copy_params error: {e}")
            return self._error_response(str(e), 500, request)

    # ==================== Broker Connections ====================

    @require_auth
    async def list_connections(self, request: web.Request) -> web.Response:
        """GET /api/connections - Broker connections of the signed-in user."""
        try:
            connections = self.connections.list_for_owner(request['user']['id'])
            return self._json_response({'success': True, 'connections': connections}, request=request)
        except Exception as e:
            self.logger.error(f"list_connections error: {e}")
            return self._error_response(str(e), 500, request)

    @require_auth
    async def create_connection(self, request: web.Request) -> web.Response:
        """POST /api/connections - Register a broker connection."""
        try:
            body = await self._read_json(request)
            connection = self.connections.create(
                request['user'],
                body.get('provider'),
                mode=body.get('mode'),
                display_name=body.get('displayName'),
                account_number=body.get('accountNumber'),
            )
            return self._json_response({'success': True, 'data': connection.to_dict()}, 201, request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"create_connection error: {e}")
            return self._error_response(str(e), 500, request)

    @require_auth
    async def revoke_connection(self, request: web.Request) -> web.Response:
        """DELETE /api/connections/:id - Revoke a broker connection."""
        try:
            connection = self.connections.revoke(request.match_info['id'], request['user'])
            return self._json_response({'success': True, 'data': connection.to_dict()}, request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"revoke_connection error: {e}")
            return self._error_response(str(e), 500, request)

    # ==================== Manual Sync ====================

    @require_auth
    async def manual_sync_connection(self, request: web.Request) -> web.Response:
        """POST /api/sync/manual - Stamp a broker connection as synced."""
        try:
            body = await self._read_json(request)
            result = await asyncio.to_thread(
                self.manual_sync.sync, body.get('connectionId'), request['user']
            )
            return self._json_response(result, request=request)
        except CopyLinkError as e:
            return self._domain_error(e, request)
        except Exception as e:
            self.logger.error(f"manual_sync error: {e}")
            return self._error_response(str(e), 500, request)

    # ==================== Health & App Setup ====================

    async def health_check(self, request: web.Request) -> web.Response:
        """GET /health - Health check endpoint."""
        return self._json_response({
            'success': True,
            'service': 'copylink',
            'status': 'healthy',
            'ts': iso(utc_now())
        })

    async def handle_options(self, request: web.Request) -> web.Response:
        return web.Response(status=204)

    @web.middleware
    async def cors_middleware(self, request: web.Request, handler):
        """Add CORS headers; remote-platform endpoints accept any origin."""
        if request.method == 'OPTIONS':
            response = await self.handle_options(request)
        else:
            response = await handler(request)

        if request.path in PUBLIC_PATHS:
            response.headers['Access-Control-Allow-Origin'] = '*'
            response.headers['Access-Control-Allow-Methods'] = 'POST, OPTIONS'
            response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization, X-Timestamp, X-Signature'
        else:
            response.headers['Access-Control-Allow-Origin'] = self._get_cors_origin(request)
            response.headers['Access-Control-Allow-Credentials'] = 'true'
            response.headers['Access-Control-Allow-Methods'] = 'GET, POST, PATCH, DELETE, OPTIONS'
            response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
        return response

    def create_app(self) -> web.Application:
        """Create the aiohttp application with routes."""
        app = web.Application(middlewares=[self.cors_middleware])

        app.router.add_route('OPTIONS', '/{tail:.*}', self.handle_options)
        app.router.add_get('/health', self.health_check)

        # Link handshake
        app.router.add_post('/api/link/generate', self.generate_link)
        app.router.add_post('/api/link/exchange', self.exchange_link)
        app.router.add_get('/api/link/diagnostics', self.link_diagnostics)

        # Trust registry
        app.router.add_get('/api/connected-apps', self.list_connected_apps)
        app.router.add_delete('/api/connected-apps/{id}', self.revoke_connected_app)

        # Signed events from linked platforms
        app.router.add_post('/api/events/ingest', self.ingest_events)

        # Reconciliation
        app.router.add_post('/api/copy/reconcile', self.reconcile)
        app.router.add_post('/api/copy/requeue', self.requeue)

        # Copy configurations
        app.router.add_get('/api/copy/params', self.list_copy_params)
        app.router.add_post('/api/copy/params', self.create_copy_params)
        app.router.add_patch('/api/copy/params/{id}', self.update_copy_params)

        # Broker connections
        app.router.add_get('/api/connections', self.list_connections)
        app.router.add_post('/api/connections', self.create_connection)
        app.router.add_delete('/api/connections/{id}', self.revoke_connection)

        # Manual sync
        app.router.add_post('/api/sync/manual', self.manual_sync_connection)

        return app

    async def start(self) -> web.AppRunner:
        """Start the API server and return the runner for cleanup."""
        app = self.create_app()
        runner = web.AppRunner(app)
        await runner.setup()

        site = web.TCPSite(runner, '0.0.0.0', self.port)
        await site.start()

        self.logger.ok(f"copy-link API running on port {self.port}", emoji="🔗")
        return runner

    def stop_batches(self):
        """Ask running reconcile batches to stop at the next record."""
        self._cancel.set()


async def run(config: Dict[str, Any], logger) -> None:
    """Entry point for orchestrator."""
    orchestrator = CopyLinkOrchestrator(config, logger)
    runner = await orchestrator.start()
    loop_task = asyncio.create_task(orchestrator.reconcile_loop(), name="copylink-reconcile")

    try:
        # Run forever until cancelled
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        logger.info("Orchestrator cancelled", emoji="🛑")
    finally:
        orchestrator.stop_batches()
        loop_task.cancel()
        logger.info("Shutting down API server", emoji="🛑")
        await runner.cleanup()
