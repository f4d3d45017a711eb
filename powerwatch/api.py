"""
HTTP API (aiohttp, JSON only) over a LivenessTracker.

POST   /api/heartbeat        ingest one heartbeat
GET    /api/status           all events (newest first) and all client records
GET    /heartbeat-status     liveness report, ?timeout=<minutes>
DELETE /heartbeat-cleanup    drop clients silent for ?hours=<h>
GET    /health               service health
"""
import json
import logging
from typing import Any

from aiohttp import web

from powerwatch.errors import StorageError, ValidationError
from powerwatch.tracker import LivenessTracker

logger = logging.getLogger("powerwatch.api")

CLIENT_ID_HEADER = "client-id"


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.Response(
        text=json.dumps(data, indent=2, ensure_ascii=False),
        status=status,
        content_type="application/json",
    )


def _int_query(request: web.Request, name: str, default: int) -> int:
    """Missing, unparseable or non-positive values fall back to the default."""
    try:
        value = int(request.query.get(name, default))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


class HeartbeatAPI:
    def __init__(self, tracker: LivenessTracker) -> None:
        self._tracker = tracker

    async def post_heartbeat(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = {}
        if payload is None:
            payload = {}
        try:
            result = await self._tracker.submit_heartbeat(
                payload,
                fallback_client_id=request.headers.get(CLIENT_ID_HEADER),
                ip=request.remote,
                user_agent=request.headers.get("User-Agent"),
            )
        except ValidationError as e:
            return json_response(e.to_dict(), status=400)
        except StorageError as e:
            return json_response(e.to_dict(), status=503)
        if result["persisted"]:
            result["message"] = "Heartbeat processed successfully"
        else:
            result["message"] = "Heartbeat processed, not persisted"
        return json_response(result)

    async def get_status(self, request: web.Request) -> web.Response:
        return json_response(await self._tracker.get_status())

    async def get_heartbeat_status(self, request: web.Request) -> web.Response:
        timeout = _int_query(request, "timeout", 5)
        return json_response(await self._tracker.get_liveness_report(timeout))

    async def delete_cleanup(self, request: web.Request) -> web.Response:
        hours = _int_query(request, "hours", 24)
        try:
            result = await self._tracker.cleanup(hours)
        except StorageError as e:
            logger.error("Cleanup failed: %s", e)
            return json_response(e.to_dict(), status=500)
        result["message"] = f"Removed {result['removedCount']} clients older than {hours} hours"
        return json_response(result)

    async def get_health(self, request: web.Request) -> web.Response:
        return json_response(await self._tracker.get_health())


def create_app(tracker: LivenessTracker) -> web.Application:
    """The tracker must already be loaded; its lifecycle belongs to the caller."""
    api = HeartbeatAPI(tracker)
    app = web.Application()
    app.router.add_post("/api/heartbeat", api.post_heartbeat)
    app.router.add_get("/api/status", api.get_status)
    app.router.add_get("/heartbeat-status", api.get_heartbeat_status)
    app.router.add_delete("/heartbeat-cleanup", api.delete_cleanup)
    app.router.add_get("/health", api.get_health)
    return app
