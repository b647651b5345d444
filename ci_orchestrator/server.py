"""Webhook listener and run API."""

import asyncio
import logging
from collections.abc import Mapping

from aiohttp import web

from ci_orchestrator.errors import (
    InvalidEvent,
    NoMatchingPipeline,
    NotFound,
    OrchestratorError,
    StorageError,
    Unauthorized,
)
from ci_orchestrator.intake import EventIntake, verify_signature
from ci_orchestrator.registry import RunFilter, RunRegistry

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"

INTAKE_KEY = web.AppKey("intake", EventIntake)
REGISTRY_KEY = web.AppKey("registry", RunRegistry)

ERROR_STATUS: Mapping[type[OrchestratorError], int] = {
    Unauthorized: 401,
    NoMatchingPipeline: 404,
    NotFound: 404,
    InvalidEvent: 400,
    StorageError: 503,
}


def error_response(error: OrchestratorError) -> web.Response:
    status = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(error, cls)), 500
    )
    return web.json_response({"error": error.code, "message": str(error)}, status=status)


def invalid_request(message: str) -> web.Response:
    return web.json_response({"error": "invalid_request", "message": message}, status=400)


async def handle_webhook(request: web.Request) -> web.Response:
    body = await request.read()
    try:
        response = await request.app[INTAKE_KEY].ingest(
            body, request.headers.get(SIGNATURE_HEADER)
        )
    except OrchestratorError as e:
        log.warning("Rejected webhook delivery: %s (%s)", e.code, e)
        return error_response(e)
    return web.json_response(response.model_dump(mode="json", by_alias=True), status=202)


async def handle_get_run(request: web.Request) -> web.Response:
    try:
        number = int(request.match_info["number"])
    except ValueError:
        return invalid_request("Run id must be an integer")
    try:
        run = await asyncio.to_thread(request.app[REGISTRY_KEY].get, number)
    except OrchestratorError as e:
        return error_response(e)
    return web.json_response(run.model_dump(mode="json"))


async def handle_list_runs(request: web.Request) -> web.Response:
    try:
        limit = int(request.query.get("limit", "20"))
    except ValueError:
        return invalid_request("limit must be an integer")
    run_filter = RunFilter(pipeline=request.query.get("pipeline"), limit=max(limit, 1))
    try:
        runs = await asyncio.to_thread(request.app[REGISTRY_KEY].list, run_filter)
    except OrchestratorError as e:
        return error_response(e)
    return web.json_response([run.model_dump(mode="json") for run in runs])


async def handle_cancel_run(request: web.Request) -> web.Response:
    """Cancel a run; the request is signed like a webhook delivery.

    Answers 202 when cancellation was requested and 409 when the run had
    already finished.
    """
    intake = request.app[INTAKE_KEY]
    registry = request.app[REGISTRY_KEY]
    try:
        number = int(request.match_info["number"])
    except ValueError:
        return invalid_request("Run id must be an integer")

    body = await request.read()
    try:
        verify_signature(intake.secret, body, request.headers.get(SIGNATURE_HEADER))
        await asyncio.to_thread(registry.get, number)
        cancelled = intake.scheduler.cancel(number)
        run = await asyncio.to_thread(registry.get, number)
    except OrchestratorError as e:
        log.warning("Rejected cancellation of run #%d: %s (%s)", number, e.code, e)
        return error_response(e)

    return web.json_response(
        {"cancelled": cancelled, "run": run.model_dump(mode="json")},
        status=202 if cancelled else 409,
    )


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


def create_app(intake: EventIntake, registry: RunRegistry) -> web.Application:
    """Build the aiohttp application."""
    app = web.Application()
    app[INTAKE_KEY] = intake
    app[REGISTRY_KEY] = registry
    app.router.add_post("/webhook", handle_webhook)
    app.router.add_get("/runs", handle_list_runs)
    app.router.add_get("/runs/{number}", handle_get_run)
    app.router.add_post("/runs/{number}/cancel", handle_cancel_run)
    app.router.add_get("/health", handle_health)
    return app
