"""
HTTP request-handling layer for the tracker stores.

A thin aiohttp application: each handler translates one request into one
store call and maps the StoreResult onto a response.

Identity comes from the X-User-ID, X-User-Email and X-User-Role headers,
set by the authentication proxy in front of this service.

Invariants:
    - Failed writes return 500 with {"success": false, "error": reason}
    - Version conflicts return 409 with the stored entity
    - Absent documents read as empty lists, never as errors
    - Users read only their own notifications unless their role is Admin

How to change safely:
    - Keep handlers free of storage logic; add behaviour to the stores
    - Keep response shapes stable; the web client depends on them
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from aiohttp import WSMsgType, web

from ..blob.result import StoreResult
from ..collection import ConflictError, EntityNotFoundError, version_of
from ..config import HttpConfig
from ..logs import retention_sweep
from ..services import Services
from ..snapshot import new_snapshot

logger = logging.getLogger(__name__)

ADMIN_ROLE = "Admin"


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str | None
    role: str | None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def owns(self, key: str) -> bool:
        return key in (self.user_id, self.email)


def _json_error(status: type[web.HTTPException], message: str) -> web.HTTPException:
    return status(text=json.dumps({"success": False, "error": message}), content_type="application/json")


def extract_identity(request: web.Request) -> Identity:
    """Caller identity from request headers.

    Raises:
        web.HTTPUnauthorized: If X-User-ID is missing
    """
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        raise _json_error(web.HTTPUnauthorized, "X-User-ID header is required")
    return Identity(
        user_id=user_id,
        email=request.headers.get("X-User-Email"),
        role=request.headers.get("X-User-Role"),
    )


def require_admin(identity: Identity) -> None:
    if not identity.is_admin:
        raise _json_error(web.HTTPForbidden, "Admin role required")


async def read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError:
        raise _json_error(web.HTTPBadRequest, "Invalid JSON body")


def result_response(result: StoreResult, payload: dict[str, Any] | None = None) -> web.Response:
    """Map a write result onto a response."""
    if not result.ok:
        return web.json_response(
            {"success": False, "error": result.reason or "storage failure"}, status=500
        )
    return web.json_response({"success": True, **(payload or {})})


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise _json_error(web.HTTPBadRequest, f"Invalid date: {value}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def record_activity(services: Services, identity: Identity, kind: str, **metadata: Any) -> None:
    """Append an activity record; failures are logged by the log store."""
    await services.activity.append(
        [
            {
                "type": kind,
                "userId": identity.user_id,
                "userEmail": identity.email,
                "timestamp": _now_iso(),
                "metadata": metadata,
            }
        ]
    )


def create_http_app(services: Services, config: HttpConfig | None = None) -> web.Application:
    """Create the aiohttp application.

    Args:
        services: Composed stores
        config: HTTP configuration (CORS origins)
    """
    config = config or HttpConfig()
    app = web.Application()

    def route(handler: Callable) -> Callable:
        return lambda r: handler(r, services)

    app.router.add_get("/api/health", route(handle_health))

    app.router.add_post("/api/notifications/mark-all-read", route(handle_mark_all_read))
    app.router.add_get("/api/notifications/{user_id}", route(handle_list_notifications))
    app.router.add_post("/api/notifications", route(handle_create_notification))
    app.router.add_patch("/api/notifications/{notification_id}/read", route(handle_mark_read))
    app.router.add_delete("/api/notifications", route(handle_clear_notifications))

    app.router.add_get("/api/initiatives", route(handle_list_initiatives))
    app.router.add_post("/api/initiatives", route(handle_upsert_initiative))
    app.router.add_post("/api/initiatives/bulk", route(handle_bulk_sync))
    app.router.add_put("/api/initiatives/full", route(handle_push_full))
    app.router.add_put("/api/initiatives/{id}", route(handle_update_initiative))
    app.router.add_delete("/api/initiatives/{id}", route(handle_delete_initiative))
    app.router.add_post("/api/initiatives/{id}/restore", route(handle_restore_initiative))

    app.router.add_get("/api/changelog", route(handle_get_changelog))
    app.router.add_post("/api/changelog", route(handle_append_changelog))

    app.router.add_get("/api/logs/{category}", route(handle_query_logs))
    app.router.add_post("/api/logs/{category}", route(handle_append_logs))
    app.router.add_post("/api/logs-cleanup", route(handle_logs_cleanup))

    app.router.add_get("/api/snapshots", route(handle_list_snapshots))
    app.router.add_post("/api/snapshots", route(handle_create_snapshot))
    app.router.add_get("/api/snapshots/{id}", route(handle_get_snapshot))

    app.router.add_get("/api/backups", route(handle_list_backups))
    app.router.add_post("/api/backups", route(handle_create_backup))
    app.router.add_get("/api/backups/{id}", route(handle_get_backup))
    app.router.add_get("/api/backups/{id}/verify", route(handle_verify_backup))
    app.router.add_post("/api/backups/{id}/restore", route(handle_restore_backup))

    app.router.add_get("/api/support/tickets", route(handle_list_tickets))
    app.router.add_post("/api/support/tickets", route(handle_create_ticket))
    app.router.add_patch("/api/support/tickets/{id}", route(handle_update_ticket))
    app.router.add_post("/api/support/tickets/{id}/comments", route(handle_add_comment))
    app.router.add_get("/api/support/feedback", route(handle_list_feedback))
    app.router.add_post("/api/support/feedback", route(handle_create_feedback))

    app.router.add_get("/api/reports", route(handle_list_reports))
    app.router.add_post("/api/reports", route(handle_save_report))
    app.router.add_get("/api/reports/{period}/{type}", route(handle_get_report))
    app.router.add_delete("/api/reports/{period}/{type}", route(handle_delete_report))

    app.router.add_get("/api/events", route(handle_events))

    def add_cors_headers(request: web.Request, headers: Any) -> None:
        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
        headers["Access-Control-Allow-Headers"] = "Content-Type, X-User-ID, X-User-Email, X-User-Role"

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                add_cors_headers(request, e.headers)
                raise
        if not response.prepared:
            add_cors_headers(request, response.headers)
        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(
                "HTTP handler error",
                extra={"method": request.method, "path": request.path, "error": str(e)},
                exc_info=True,
            )
            return web.json_response({"success": False, "error": str(e)}, status=500)

    app.middlewares.insert(0, error_middleware)

    return app


# Health


async def handle_health(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/health."""
    healthy = services.blob.is_connected
    return web.json_response(
        {"healthy": healthy, "backend": type(services.blob.backend).__name__},
        status=200 if healthy else 503,
    )


# Notifications


async def handle_list_notifications(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/notifications/{user_id}."""
    identity = extract_identity(request)
    user_id = request.match_info["user_id"]
    if not identity.owns(user_id) and not identity.is_admin:
        raise _json_error(web.HTTPForbidden, "Cannot access other users notifications")

    notifications = await services.notifications.list(user_id)
    return web.json_response({"notifications": notifications})


async def handle_create_notification(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/notifications with {notification, targetUserId}."""
    extract_identity(request)
    body = await read_json(request)
    notification = body.get("notification")
    target = body.get("targetUserId")
    if not isinstance(notification, dict) or not target:
        raise _json_error(web.HTTPBadRequest, "notification and targetUserId are required")

    result = await services.notifications.add(target, notification)
    return result_response(result, {"notification": result.value})


async def handle_mark_read(request: web.Request, services: Services) -> web.Response:
    """Handle PATCH /api/notifications/{notification_id}/read."""
    identity = extract_identity(request)
    result = await services.notifications.mark_read(
        identity.user_id, request.match_info["notification_id"]
    )
    if result.ok and not result.value:
        raise _json_error(web.HTTPNotFound, "Notification not found")
    return result_response(result)


async def handle_mark_all_read(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/notifications/mark-all-read."""
    identity = extract_identity(request)
    result = await services.notifications.mark_all_read(identity.user_id)
    return result_response(result, {"updated": result.value})


async def handle_clear_notifications(request: web.Request, services: Services) -> web.Response:
    """Handle DELETE /api/notifications."""
    identity = extract_identity(request)
    return result_response(await services.notifications.clear(identity.user_id))


# Initiatives


async def handle_list_initiatives(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/initiatives[?includeDeleted=true]."""
    extract_identity(request)
    if request.query.get("includeDeleted", "false").lower() == "true":
        initiatives = await services.initiatives.load_all()
    else:
        initiatives = await services.initiatives.list_active()
    return web.json_response({"initiatives": initiatives})


async def handle_upsert_initiative(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/initiatives - last-write-wins upsert."""
    identity = extract_identity(request)
    body = await read_json(request)
    if not isinstance(body, dict) or not body.get("id"):
        raise _json_error(web.HTTPBadRequest, "initiative with id is required")

    entity = {"version": 0, **body}
    result = await services.initiatives.upsert(entity)
    if result.ok:
        await record_activity(services, identity, "initiative_upserted", initiativeId=body["id"])
    return result_response(result, {"initiative": result.value})


async def handle_update_initiative(request: web.Request, services: Services) -> web.Response:
    """Handle PUT /api/initiatives/{id} - version-checked update.

    The body carries the version the client last saw. On conflict the
    change is re-applied once to the freshly stored entity.
    """
    identity = extract_identity(request)
    entity_id = request.match_info["id"]
    body = await read_json(request)
    if not isinstance(body, dict) or "version" not in body:
        raise _json_error(web.HTTPBadRequest, "version is required")

    try:
        expected_version = version_of(body)
    except (TypeError, ValueError):
        raise _json_error(web.HTTPBadRequest, "version must be an integer")

    changes = {k: v for k, v in body.items() if k not in ("id", "version")}
    try:
        result = await services.initiatives.update_with_retry(
            entity_id,
            lambda current: {**current, **changes},
            expected_version=expected_version,
        )
    except EntityNotFoundError:
        raise _json_error(web.HTTPNotFound, f"Initiative {entity_id} not found")
    except ConflictError as e:
        return web.json_response(
            {
                "success": False,
                "error": "version conflict",
                "submittedVersion": e.submitted,
                "storedVersion": e.stored,
                "current": e.current,
            },
            status=409,
        )

    if result.ok:
        await record_activity(
            services, identity, "initiative_updated", initiativeId=entity_id, fields=sorted(changes)
        )
    return result_response(result, {"initiative": result.value})


async def handle_delete_initiative(request: web.Request, services: Services) -> web.Response:
    """Handle DELETE /api/initiatives/{id}[?hard=true]."""
    identity = extract_identity(request)
    entity_id = request.match_info["id"]

    if request.query.get("hard", "false").lower() == "true":
        require_admin(identity)
        result = await services.initiatives.delete(entity_id)
        found = bool(result.value)
    else:
        result = await services.initiatives.soft_delete(entity_id, actor=identity.email or identity.user_id)
        found = result.value is not None

    if result.ok and not found:
        raise _json_error(web.HTTPNotFound, f"Initiative {entity_id} not found")
    if result.ok:
        await record_activity(services, identity, "initiative_deleted", initiativeId=entity_id)
    return result_response(result)


async def handle_restore_initiative(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/initiatives/{id}/restore."""
    extract_identity(request)
    entity_id = request.match_info["id"]
    result = await services.initiatives.restore(entity_id)
    if result.ok and result.value is None:
        raise _json_error(web.HTTPNotFound, f"Initiative {entity_id} not found")
    return result_response(result, {"initiative": result.value})


async def handle_bulk_sync(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/initiatives/bulk with {initiatives: [...]}."""
    identity = extract_identity(request)
    body = await read_json(request)
    batch = body.get("initiatives") if isinstance(body, dict) else None
    if not isinstance(batch, list):
        raise _json_error(web.HTTPBadRequest, "initiatives list is required")

    result = await services.initiatives.bulk_sync(batch)
    if result.ok:
        await record_activity(services, identity, "initiatives_synced", **result.value.to_dict())
    return result_response(result, {"report": result.value.to_dict()})


async def handle_push_full(request: web.Request, services: Services) -> web.Response:
    """Handle PUT /api/initiatives/full - replace the whole collection."""
    identity = extract_identity(request)
    require_admin(identity)
    body = await read_json(request)
    entities = body.get("initiatives") if isinstance(body, dict) else None
    if not isinstance(entities, list):
        raise _json_error(web.HTTPBadRequest, "initiatives list is required")

    result = await services.initiatives.push_full(entities)
    return result_response(result, {"count": len(result.value or [])})


# Changelog


async def handle_get_changelog(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/changelog[?initiativeId=...]."""
    extract_identity(request)
    changes = await services.changelog.get(request.query.get("initiativeId"))
    return web.json_response({"changes": changes})


async def handle_append_changelog(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/changelog with {changes: [...]}."""
    identity = extract_identity(request)
    body = await read_json(request)
    changes = body.get("changes") if isinstance(body, dict) else None
    if not isinstance(changes, list):
        raise _json_error(web.HTTPBadRequest, "changes list is required")

    stamped = [
        {"timestamp": _now_iso(), "changedBy": identity.email or identity.user_id, **change}
        for change in changes
    ]
    return result_response(await services.changelog.append(stamped))


# Logs


def _log_store(request: web.Request, services: Services):
    category = request.match_info["category"]
    if category == "errors":
        return services.errors, "severity"
    if category == "activity":
        return services.activity, "type"
    raise _json_error(web.HTTPNotFound, f"Unknown log category: {category}")


async def handle_query_logs(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/logs/{category}?start&end&severity|type&userId."""
    require_admin(extract_identity(request))
    store, kind_field = _log_store(request, services)
    records = await store.query_range(
        start=parse_datetime(request.query.get("start")),
        end=parse_datetime(request.query.get("end")),
        **{kind_field: request.query.get(kind_field), "userId": request.query.get("userId")},
    )
    return web.json_response({"logs": records, "count": len(records)})


async def handle_append_logs(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/logs/{category} with one record or {logs: [...]}."""
    identity = extract_identity(request)
    store, _ = _log_store(request, services)
    body = await read_json(request)
    records = body.get("logs") if isinstance(body, dict) and "logs" in body else [body]
    if not all(isinstance(r, dict) for r in records):
        raise _json_error(web.HTTPBadRequest, "log records must be objects")

    stamped = [{"userId": identity.user_id, **record} for record in records]
    result = await store.append(stamped)
    return result_response(result, {"written": result.value})


async def handle_logs_cleanup(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/logs-cleanup[?retentionDays=N]."""
    require_admin(extract_identity(request))
    try:
        days = int(request.query.get("retentionDays", services.retention.log_retention_days))
    except ValueError:
        raise _json_error(web.HTTPBadRequest, "retentionDays must be an integer")
    if days < 0:
        raise _json_error(web.HTTPBadRequest, "retentionDays must not be negative")
    deleted = await retention_sweep(services.blob, days)
    return web.json_response({"success": True, "deleted": deleted, "retentionDays": days})


# Snapshots


async def handle_list_snapshots(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/snapshots."""
    extract_identity(request)
    snapshots = await services.snapshots.list()
    return web.json_response({"snapshots": [s.to_dict() for s in snapshots]})


async def handle_create_snapshot(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/snapshots[?name=...] - snapshot the current initiatives."""
    identity = extract_identity(request)
    initiatives = await services.initiatives.read_all()
    if not initiatives.ok:
        return result_response(initiatives)

    snapshot = new_snapshot(initiatives.value, name=request.query.get("name"))
    snapshot["createdBy"] = identity.email or identity.user_id
    result = await services.snapshots.create(snapshot)
    return result_response(result, {"id": snapshot["id"], "timestamp": snapshot["timestamp"]})


async def handle_get_snapshot(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/snapshots/{id}."""
    extract_identity(request)
    snapshot = await services.snapshots.load(request.match_info["id"])
    if snapshot is None:
        raise _json_error(web.HTTPNotFound, "Snapshot not found")
    return web.json_response(snapshot)


# Backups


async def handle_list_backups(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/backups."""
    require_admin(extract_identity(request))
    return web.json_response({"backups": await services.backups.list_backups()})


async def handle_create_backup(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/backups[?label=...]."""
    identity = extract_identity(request)
    require_admin(identity)
    manifest = await services.backups.create_backup(
        label=request.query.get("label"), reporter=identity.email or identity.user_id
    )
    status = 500 if manifest["status"] == "failed" else 200
    return web.json_response(manifest, status=status)


async def handle_get_backup(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/backups/{id}."""
    require_admin(extract_identity(request))
    manifest = await services.backups.get_backup(request.match_info["id"])
    if manifest is None:
        raise _json_error(web.HTTPNotFound, "Backup not found")
    return web.json_response(manifest)


async def handle_verify_backup(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/backups/{id}/verify."""
    require_admin(extract_identity(request))
    return web.json_response(await services.backups.verify_backup(request.match_info["id"]))


async def handle_restore_backup(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/backups/{id}/restore with optional {files: [...]}."""
    require_admin(extract_identity(request))
    files = None
    if request.can_read_body:
        body = await read_json(request)
        files = body.get("files") if isinstance(body, dict) else None
    outcome = await services.backups.restore_backup(request.match_info["id"], files=files)
    return web.json_response(outcome, status=200 if outcome["success"] else 500)


# Support


async def handle_list_tickets(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/support/tickets[?status=...]."""
    extract_identity(request)
    tickets = await services.support.get_tickets(request.query.get("status"))
    return web.json_response({"tickets": tickets})


async def handle_create_ticket(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/support/tickets."""
    identity = extract_identity(request)
    body = await read_json(request)
    if not isinstance(body, dict):
        raise _json_error(web.HTTPBadRequest, "ticket must be an object")
    ticket = {"createdBy": identity.email or identity.user_id, **body}
    result = await services.support.create_ticket(ticket)
    return result_response(result, {"ticket": result.value})


async def handle_update_ticket(request: web.Request, services: Services) -> web.Response:
    """Handle PATCH /api/support/tickets/{id}."""
    extract_identity(request)
    body = await read_json(request)
    if not isinstance(body, dict):
        raise _json_error(web.HTTPBadRequest, "updates must be an object")
    result = await services.support.update_ticket(request.match_info["id"], body)
    if result.ok and result.value is None:
        raise _json_error(web.HTTPNotFound, "Ticket not found")
    return result_response(result, {"ticket": result.value})


async def handle_add_comment(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/support/tickets/{id}/comments."""
    identity = extract_identity(request)
    body = await read_json(request)
    if not isinstance(body, dict):
        raise _json_error(web.HTTPBadRequest, "comment must be an object")
    comment = {"authorId": identity.user_id, "authorEmail": identity.email, **body}
    result = await services.support.add_comment(request.match_info["id"], comment)
    if result.ok and result.value is None:
        raise _json_error(web.HTTPNotFound, "Ticket not found")
    return result_response(result, {"ticket": result.value})


async def handle_list_feedback(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/support/feedback."""
    require_admin(extract_identity(request))
    return web.json_response({"feedback": await services.support.get_feedback()})


async def handle_create_feedback(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/support/feedback."""
    identity = extract_identity(request)
    body = await read_json(request)
    if not isinstance(body, dict):
        raise _json_error(web.HTTPBadRequest, "feedback must be an object")
    feedback = {"submittedBy": identity.email or identity.user_id, **body}
    result = await services.support.create_feedback(feedback)
    return result_response(result, {"feedback": result.value})


# Reports


async def handle_list_reports(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/reports[?period=...]."""
    extract_identity(request)
    return web.json_response({"reports": await services.reports.list(request.query.get("period"))})


async def handle_save_report(request: web.Request, services: Services) -> web.Response:
    """Handle POST /api/reports."""
    identity = extract_identity(request)
    body = await read_json(request)
    if not isinstance(body, dict) or not body.get("period"):
        raise _json_error(web.HTTPBadRequest, "report with period is required")
    report = {"generatedBy": identity.email or identity.user_id, **body}
    result = await services.reports.save(report)
    return result_response(result, {"report": result.value})


async def handle_get_report(request: web.Request, services: Services) -> web.Response:
    """Handle GET /api/reports/{period}/{type}[?teamLeadId=...]."""
    extract_identity(request)
    report = await services.reports.get(
        request.match_info["period"],
        request.match_info["type"],
        request.query.get("teamLeadId"),
    )
    if report is None:
        raise _json_error(web.HTTPNotFound, "Report not found")
    return web.json_response(report)


async def handle_delete_report(request: web.Request, services: Services) -> web.Response:
    """Handle DELETE /api/reports/{period}/{type}[?teamLeadId=...]."""
    require_admin(extract_identity(request))
    result = await services.reports.delete(
        request.match_info["period"],
        request.match_info["type"],
        request.query.get("teamLeadId"),
    )
    if result.ok and not result.value:
        raise _json_error(web.HTTPNotFound, "Report not found")
    return result_response(result)


# Real-time events


async def handle_events(request: web.Request, services: Services) -> web.WebSocketResponse:
    """Handle GET /api/events - websocket stream of store events.

    Each connection receives events addressed to its user (or every event
    for Admin connections).
    """
    identity = extract_identity(request)
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    async with services.broadcaster.subscribe() as events:

        async def forward() -> None:
            while True:
                event = await events.get()
                target = event.payload.get("userId")
                if target is None or identity.is_admin or identity.owns(target):
                    await ws.send_json(event.to_dict())

        sender = asyncio.create_task(forward())
        try:
            async for message in ws:
                if message.type == WSMsgType.ERROR:
                    logger.warning(
                        "Websocket closed with error",
                        extra={"user_id": identity.user_id, "error": str(ws.exception())},
                    )
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

    return ws


async def run_http_server(services: Services, config: HttpConfig) -> web.AppRunner:
    """Start serving; the caller owns the returned runner and must clean it up."""
    app = create_http_app(services, config)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    logger.info("HTTP server listening", extra={"host": config.host, "port": config.port})
    return runner
