"""
IR Playbook RPC Layer

REST API through which a chat front-end (or any client) submits commands
and reads audit and incident state.
"""

import asyncio
import hmac
import json
import logging
from datetime import datetime
from typing import Any, Optional

from aiohttp import web

from ..audit import AuditQuery, parse_query_time
from ..authorization import Actor
from ..core.config import Config
from ..core.engine import CommandRequest, EngineState, PlaybookEngine
from ..core.exceptions import PlaybookError, ValidationError

logger = logging.getLogger(__name__)

PUBLIC_PATHS = ("/health", "/ready")

STATUS_BY_CODE = {
    "VALIDATION_ERROR": 400,
    "AUTHORIZATION_DENIED": 403,
    "INCIDENT_NOT_FOUND": 404,
    "INCIDENT_STATE_ERROR": 409,
    "TARGET_UNREACHABLE": 502,
    "EXECUTION_FAILED": 502,
    "SPAWN_FAILED": 502,
    "PARSE_ERROR": 502,
    "EXECUTION_TIMEOUT": 504,
    "CONFIGURATION_ERROR": 500,
}


def status_for(error: PlaybookError) -> int:
    """HTTP status for a classified error."""
    return STATUS_BY_CODE.get(error.code, 500)


def _parse_int(value: Optional[str], name: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", field=name, value=value)
    if number < 1:
        raise ValidationError(f"{name} must be positive", field=name, value=value)
    return number


def _actor_from(data: Any) -> Actor:
    if not isinstance(data, dict):
        raise ValidationError("Request body must be an object")
    actor = data.get("actor")
    if not isinstance(actor, dict) or not actor.get("id"):
        raise ValidationError("Actor id is required", field="actor")
    return Actor(id=str(actor["id"]), name=str(actor.get("name") or ""))


class RPCServer:
    """
    RPC Server for IR Playbook.

    Provides REST API with:
    - Optional shared-token authentication
    - Error classification to HTTP status
    - Request logging
    """

    def __init__(self, engine: PlaybookEngine, config: Config):
        """Initialize RPC Server."""
        self.engine = engine
        self.config = config
        self._runner: Optional[web.AppRunner] = None
        self.app = web.Application(middlewares=[
            self._error_middleware,
            self._auth_middleware,
            self._audit_middleware,
        ])
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Setup API routes."""
        # Health
        self.app.router.add_get("/health", self._health)
        self.app.router.add_get("/ready", self._ready)

        # Commands
        self.app.router.add_post("/api/v1/commands", self._execute_command)

        # Targets
        self.app.router.add_get("/api/v1/targets", self._list_targets)

        # Audit
        self.app.router.add_get("/api/v1/audit", self._query_audit)
        self.app.router.add_get("/api/v1/audit/summary", self._audit_summary)

        # Incidents
        self.app.router.add_get("/api/v1/incidents", self._list_incidents)
        self.app.router.add_get("/api/v1/incidents/{id}", self._get_incident)
        self.app.router.add_post("/api/v1/incidents/{id}/notes", self._add_note)
        self.app.router.add_post("/api/v1/incidents/{id}/close", self._close_incident)

        # Info
        self.app.router.add_get("/api/v1/info", self._get_info)

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.Response:
        """Error handling middleware."""
        try:
            return await handler(request)
        except PlaybookError as e:
            status = status_for(e)
            logger.warning(f"{request.method} {request.path} failed: {e.code} {e.message}")
            return web.json_response(e.to_dict(), status=status)
        except web.HTTPException:
            raise
        except ValueError as e:
            return web.json_response(
                {"error": "VALIDATION_ERROR", "message": f"Malformed request body: {e}", "details": {}},
                status=400,
            )
        except Exception as e:
            logger.exception(f"Unexpected error: {e}")
            return web.json_response(
                {"error": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
                status=500,
            )

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.Response:
        """Shared API token check."""
        token = self.config.rpc.api_token
        if not token or request.path in PUBLIC_PATHS:
            return await handler(request)

        presented = request.headers.get("X-API-Token", "")
        if not hmac.compare_digest(presented.encode(), token.encode()):
            logger.warning(f"Rejected unauthenticated request: {request.method} {request.path}")
            return web.json_response(
                {"error": "AUTH_REQUIRED", "message": "Valid X-API-Token header required", "details": {}},
                status=401,
            )

        return await handler(request)

    @web.middleware
    async def _audit_middleware(self, request: web.Request, handler) -> web.Response:
        """Request logging middleware."""
        start_time = datetime.utcnow()

        response = await handler(request)

        duration_ms = (datetime.utcnow() - start_time).total_seconds() * 1000

        logger.info(
            f"API Request: {request.method} {request.path} "
            f"status={response.status} duration={duration_ms:.2f}ms"
        )

        return response

    # Health endpoints

    async def _health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({"status": "healthy"})

    async def _ready(self, request: web.Request) -> web.Response:
        """Readiness check endpoint."""
        ready = self.engine.state == EngineState.READY
        status = 200 if ready else 503
        return web.json_response(
            {"ready": ready, "state": self.engine.state.value},
            status=status,
        )

    # Command endpoint

    async def _execute_command(self, request: web.Request) -> web.Response:
        """Run one command through the pipeline."""
        data = await request.json()
        command = CommandRequest.from_dict(data)

        result = await self.engine.execute(command)

        status = 200 if result.ok else status_for(result.error)
        return web.json_response(result.to_dict(), status=status, dumps=_dumps)

    # Target endpoints

    async def _list_targets(self, request: web.Request) -> web.Response:
        """List configured targets."""
        return web.json_response({
            "targets": [t.to_dict() for t in self.engine.targets.list_targets()],
            "management_addresses": self.engine.management_addresses(),
        })

    # Audit endpoints

    async def _query_audit(self, request: web.Request) -> web.Response:
        """Query the audit ledger."""
        params = request.query
        filters = AuditQuery(
            action=params.get("action"),
            actor_id=params.get("actor"),
            target=params.get("target"),
            outcome=params.get("outcome"),
            incident_id=params.get("incident_id"),
            since=parse_query_time(params.get("since"), "since"),
            until=parse_query_time(params.get("until"), "until"),
            limit=_parse_int(params.get("limit"), "limit", default=100),
        )

        entries = self.engine.ledger.query(filters)
        return web.json_response({"entries": entries, "count": len(entries)}, dumps=_dumps)

    async def _audit_summary(self, request: web.Request) -> web.Response:
        """Summarize the audit ledger over a trailing window."""
        days = _parse_int(request.query.get("days"), "days", default=7)
        return web.json_response(self.engine.ledger.summarize(days))

    # Incident endpoints

    async def _list_incidents(self, request: web.Request) -> web.Response:
        """List incidents."""
        incidents = self.engine.incidents.list(
            status=request.query.get("status"),
            target=request.query.get("target"),
            incident_type=request.query.get("type"),
        )
        return web.json_response(
            {"incidents": [i.to_dict() for i in incidents]},
            dumps=_dumps,
        )

    async def _get_incident(self, request: web.Request) -> web.Response:
        """Get incident details."""
        incident = self.engine.incidents.get(request.match_info["id"])
        return web.json_response(incident.to_dict(), dumps=_dumps)

    async def _add_note(self, request: web.Request) -> web.Response:
        """Add a note to an incident."""
        data = await request.json()
        actor = _actor_from(data)
        text = data.get("text") or ""
        if not isinstance(text, str):
            raise ValidationError("text must be a string", field="text")
        incident = self.engine.add_incident_note(
            request.match_info["id"],
            text,
            actor,
        )
        return web.json_response(incident.to_dict(), dumps=_dumps)

    async def _close_incident(self, request: web.Request) -> web.Response:
        """Close an incident."""
        data = await request.json()
        actor = _actor_from(data)
        resolution = data.get("resolution") or "Resolved"
        if not isinstance(resolution, str):
            raise ValidationError("resolution must be a string", field="resolution")
        incident = self.engine.close_incident(request.match_info["id"], resolution, actor)
        return web.json_response(incident.to_dict(), dumps=_dumps)

    # Info endpoint

    async def _get_info(self, request: web.Request) -> web.Response:
        """Get service info."""
        from .. import __version__

        return web.json_response({
            "name": "IR Playbook",
            "version": __version__,
            **self.engine.get_status(),
        })

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the server."""
        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(runner, host, port)
        await site.start()

        self._runner = runner
        logger.info(f"RPC Server started on {host}:{port}")
        return runner

    async def stop(self) -> None:
        """Stop the server and cleanup resources."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("RPC Server stopped")

    async def serve_forever(self) -> None:
        """Serve forever."""
        while True:
            await asyncio.sleep(3600)


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)


async def create_server(engine: PlaybookEngine, host: str, port: int) -> RPCServer:
    """Create and start RPC server."""
    server = RPCServer(engine, engine.config)
    await server.start(host, port)
    return server
