"""HTTP handlers for batch submission, job polling and report retrieval."""

import asyncio
import json
import logging
import math
from collections.abc import Mapping, Sequence
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from probe_engine.admission.quota import identity_key
from probe_engine.dispatch.scheduler import DispatchScheduler
from probe_engine.errors import AdmissionError, QuotaExceeded
from probe_engine.models.probe import RunRequest
from probe_engine.web.middleware import API_KEY_HEADER

log = logging.getLogger(__name__)

SCHEDULER_KEY = web.AppKey("scheduler", DispatchScheduler)


def error_response(
    status: int, message: str, errors: Sequence[Mapping[str, Any]] = ()
) -> web.Response:
    return web.json_response(
        {"message": message, "errors": list(errors)}, status=status
    )


def field_errors(exc: ValidationError) -> Sequence[Mapping[str, str]]:
    """Flatten pydantic errors to ``{field, message}`` pairs."""
    return [
        {
            "field": ".".join(str(part) for part in error["loc"]) or "body",
            "message": error["msg"],
        }
        for error in exc.errors()
    ]


def request_identity(request: web.Request) -> str:
    return identity_key(request.headers.get(API_KEY_HEADER), request.remote)


async def run_tests(request: web.Request) -> web.Response:
    """Admit a batch and answer 202 with the job id."""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return error_response(
            400,
            "Invalid request",
            [{"field": "body", "message": "Request body must be JSON"}],
        )

    try:
        run = RunRequest.model_validate(payload)
    except ValidationError as exc:
        return error_response(400, "Invalid request", field_errors(exc))

    scheduler = request.app[SCHEDULER_KEY]
    try:
        job_id = await scheduler.submit(
            run.tests,
            timeout_ms=run.timeout_ms,
            concurrency=run.concurrency,
            identity=request_identity(request),
        )
    except QuotaExceeded as exc:
        return web.json_response(
            {
                "message": exc.message,
                "remaining": exc.remaining,
                "resetMs": exc.reset_ms,
            },
            status=exc.status,
            headers={
                "X-RateLimit-Remaining": str(exc.remaining),
                "X-RateLimit-Reset": str(math.ceil(exc.reset_ms / 1000)),
            },
        )
    except AdmissionError as exc:
        return error_response(exc.status, exc.message, exc.errors())

    return web.json_response({"jobId": job_id, "message": "Job accepted"}, status=202)


async def get_job(request: web.Request) -> web.Response:
    job = request.app[SCHEDULER_KEY].get_job(request.match_info["job_id"])
    if job is None:
        return web.json_response({"message": "Job not found"}, status=404)
    return web.json_response(job.to_json_dict())


async def get_report(request: web.Request) -> web.Response:
    scheduler = request.app[SCHEDULER_KEY]
    report = await asyncio.to_thread(
        scheduler.get_report, request.match_info["report_id"]
    )
    if report is None:
        return web.json_response({"message": "Report not found"}, status=404)
    return web.json_response(report.to_json_dict())
