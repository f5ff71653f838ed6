"""Application factory wiring the scheduler, stores and HTTP routes."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack

from aiohttp import web

from probe_engine.admission.allowlist import Allowlist
from probe_engine.admission.quota import QuotaLimiter
from probe_engine.admission.ssrf import HostLookup, SsrfGuard, resolve_host
from probe_engine.config import Settings
from probe_engine.dispatch.prober import HttpProber, Prober
from probe_engine.dispatch.scheduler import DispatchScheduler
from probe_engine.housekeeping import Housekeeper
from probe_engine.jobs.store import JobStore
from probe_engine.reports.store import ReportStore
from probe_engine.web import handlers
from probe_engine.web.middleware import api_key_middleware, error_middleware

log = logging.getLogger(__name__)

SETTINGS_KEY = web.AppKey("settings", Settings)


def build_scheduler(
    settings: Settings,
    prober: Prober,
    lookup: HostLookup = resolve_host,
) -> DispatchScheduler:
    """Create a scheduler and its stores from settings."""
    allowlist = (
        Allowlist.from_env_value(settings.allowlist_domains)
        if settings.allowlist_enabled
        else None
    )
    if allowlist is None:
        log.warning("Allowlist stage disabled; only SSRF checks gate targets")
    elif not allowlist.patterns:
        log.warning("Allowlist is empty; every target will be refused")

    return DispatchScheduler(
        prober=prober,
        job_store=JobStore(),
        report_store=ReportStore(directory=settings.reports_dir),
        ssrf_guard=SsrfGuard(
            allow_unresolved=settings.ssrf_allow_unresolved, lookup=lookup
        ),
        quota=QuotaLimiter(
            window_ms=settings.quota_window_ms, max_requests=settings.quota_max
        ),
        allowlist=allowlist,
    )


def create_app(
    settings: Settings,
    *,
    prober: Prober | None = None,
    lookup: HostLookup = resolve_host,
) -> web.Application:
    """Build the aiohttp application.

    Args:
        settings: Service configuration
        prober: Prober to use instead of a session-backed ``HttpProber``
        lookup: DNS lookup used by the SSRF guard

    """
    app = web.Application(
        middlewares=[error_middleware, api_key_middleware(settings.admin_api_key)]
    )
    app[SETTINGS_KEY] = settings

    async def scheduler_context(app: web.Application) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            active = prober
            if active is None:
                active = await stack.enter_async_context(HttpProber.from_defaults())
            scheduler = build_scheduler(settings, active, lookup)
            app[handlers.SCHEDULER_KEY] = scheduler
            yield
            await scheduler.aclose()

    async def housekeeping_context(app: web.Application) -> AsyncIterator[None]:
        scheduler = app[handlers.SCHEDULER_KEY]
        housekeeper = Housekeeper(
            report_store=scheduler.report_store,
            job_store=scheduler.job_store,
            report_ttl=settings.report_ttl_seconds,
            job_ttl=settings.job_ttl_seconds,
            interval=settings.cleanup_interval_seconds,
        )
        task = asyncio.create_task(housekeeper.run_forever(), name="housekeeping")
        yield
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    app.cleanup_ctx.append(scheduler_context)
    app.cleanup_ctx.append(housekeeping_context)

    app.router.add_post("/run-tests", handlers.run_tests)
    app.router.add_get("/jobs/{job_id}", handlers.get_job)
    app.router.add_get("/reports/{report_id}", handlers.get_report)
    return app
