# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Demand Refresh CLI: operational commands.

Commands:
    process-batch   Claim and process one batch of refresh jobs.
    reconcile       Rebuild the subscription registry from the presence snapshot.
    sweep           Delete stale subscriptions and purge old terminal jobs.
    reclaim         Return stuck ``processing`` jobs to ``pending``.
    enqueue-stale   Enqueue refresh jobs for demanded data that is stale.
    alerts          Run the queue health checks.
    worker          Run every loop above on its own interval until interrupted.

Every one-shot command prints its result as one JSON document on stdout. An
invocation-level failure is logged as a JSON line and exits with code 1;
``alerts`` exits with code 2 when any check is in alert.

Environment:
    DATABASE_URL    Async SQLAlchemy URL (required).
    REDIS_URL       Redis URL for the presence channel.
    JOB_HANDLERS    Registered handlers to enable for ``process-batch``/``worker``.
    (see ``demand_refresh.config.settings`` for the full list)
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import signal
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

import typer

from demand_refresh.dependencies.core.bootstrap import bootstrap
from demand_refresh.dependencies.refresh import RefreshServices, build_services
from demand_refresh.domain.exceptions.base import ConfigurationError, DomainError
from demand_refresh.infrastructure.logging.logger import configure_root_logging, get_json_logger
from demand_refresh.infrastructure.scheduling.periodic import PeriodicTask

configure_root_logging()
log = get_json_logger(__name__)

app = typer.Typer(add_completion=False, no_args_is_help=True)

EXIT_ERROR = 1
EXIT_ALERT = 2


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, default=str, sort_keys=True))


def _run(command: str, fn: Callable[[RefreshServices], Awaitable[Any]]) -> Any:
    """Run ``fn`` inside a bootstrapped process; map failures to exit code 1."""

    async def _main() -> Any:
        async with bootstrap() as state:
            return await fn(build_services(state))

    try:
        return asyncio.run(_main())
    except DomainError as exc:
        log.error(
            f"{command}.failed",
            extra={"extra": {"code": exc.code, "error": str(exc), "details": exc.details}},
        )
        raise typer.Exit(code=EXIT_ERROR) from exc
    except Exception as exc:
        log.exception(f"{command}.failed", extra={"extra": {"error": type(exc).__name__}})
        raise typer.Exit(code=EXIT_ERROR) from exc


@app.command("process-batch")
def process_batch() -> None:
    """Claim up to QUEUE_BATCH_SIZE jobs and resolve each one."""

    async def _fn(services: RefreshServices) -> Any:
        return (await services.process_batch().execute()).to_dict()

    _emit(_run("process_batch", _fn))


@app.command("reconcile")
def reconcile() -> None:
    """Make the registry equal to the current presence snapshot."""

    async def _fn(services: RefreshServices) -> Any:
        return dataclasses.asdict(await services.reconcile().execute())

    _emit(_run("reconcile", _fn))


@app.command("sweep")
def sweep() -> None:
    """Delete subscriptions older than STALENESS_THRESHOLD_S."""

    async def _fn(services: RefreshServices) -> Any:
        return dataclasses.asdict(await services.sweep().execute())

    _emit(_run("sweep", _fn))


@app.command("reclaim")
def reclaim() -> None:
    """Reset jobs whose processing lease expired."""

    async def _fn(services: RefreshServices) -> Any:
        return {"reclaimed": await services.reclaim().execute()}

    _emit(_run("reclaim", _fn))


@app.command("enqueue-stale")
def enqueue_stale(
    symbol: str | None = typer.Option(  # noqa: B008
        None, help="Only enqueue for this symbol (requires --data-type)."
    ),
    data_type: list[str] = typer.Option(  # noqa: B008
        [], "--data-type", help="Data type to enqueue for --symbol (repeatable)."
    ),
) -> None:
    """Enqueue refreshes for stale demanded data, or for one symbol on request."""
    if symbol and not data_type:
        raise typer.BadParameter("--symbol requires at least one --data-type")

    async def _fn(services: RefreshServices) -> Any:
        use_case = services.enqueue_stale()
        if symbol:
            return dataclasses.asdict(await use_case.enqueue_for(symbol, data_type))
        return dataclasses.asdict(await use_case.execute())

    _emit(_run("enqueue_stale", _fn))


@app.command("alerts")
def alerts() -> None:
    """Run every health check; exit 2 when any of them is in alert."""

    async def _fn(services: RefreshServices) -> Any:
        return (await services.monitor().check_all()).to_dict()

    payload = _run("alerts", _fn)
    _emit(payload)
    if payload["status"] == "alert":
        raise typer.Exit(code=EXIT_ALERT)


def build_worker_tasks(services: RefreshServices) -> list[PeriodicTask]:
    """One periodic task per loop, each on its configured interval."""
    settings = services.settings
    processor = services.process_batch()
    if not services.handlers:
        raise ConfigurationError(
            "no job handlers configured (install a handler package or set HANDLER_BASE_URL)"
        )
    reconciler = services.reconcile()
    sweeper = services.sweep()
    reclaimer = services.reclaim()
    enqueuer = services.enqueue_stale()
    return [
        PeriodicTask("reconcile", reconciler.execute, settings.reconcile_interval_s),
        PeriodicTask("sweep", sweeper.execute, settings.sweep_interval_s),
        PeriodicTask("reclaim", reclaimer.execute, settings.reclaim_interval_s),
        PeriodicTask("enqueue", enqueuer.execute, settings.enqueue_interval_s),
        PeriodicTask("process", processor.execute, settings.process_interval_s),
    ]


@app.command("worker")
def worker() -> None:
    """Run reconcile, sweep, reclaim, enqueue and process loops until SIGINT/SIGTERM."""

    async def _fn(services: RefreshServices) -> Any:
        tasks = build_worker_tasks(services)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)

        for task in tasks:
            task.start()
        log.info("worker.started", extra={"extra": {"tasks": [t.name for t in tasks]}})
        try:
            await stop.wait()
        finally:
            await asyncio.gather(*(t.stop() for t in tasks))
        return {t.name: {"runs": t.runs, "failures": t.failures} for t in tasks}

    _emit(_run("worker", _fn))


if __name__ == "__main__":
    app()
