# cli.py
from __future__ import annotations

import asyncio
import sys

import click
from pydantic import ValidationError

from buildgate.configs import BuildConfigStore
from buildgate.interfaces import Executor
from buildgate.jobs import ExecutorLoadError, build_jobs, cancel_build, load_executor
from buildgate.log import configure_logging
from buildgate.reaper import TimeoutReaper
from buildgate.redisq import RedisJobQueue, RedisKeyValueStore, connect
from buildgate.reporter import BuildStatusReporter
from buildgate.settings import Settings
from buildgate.ui.console import Console, get_console, set_console
from buildgate.worker import Worker


def load_settings() -> Settings:
    """
    Read settings from the environment.

    Raises:
        SystemExit: If any variable fails validation
    """
    console = get_console()
    try:
        return Settings.from_env()
    except ValidationError as e:
        console.print_error(
            "Invalid configuration",
            "Environment settings failed validation.",
            details=[f"{str(err['loc'][0]).upper()}: {err['msg']}" for err in e.errors()],
            suggestion="Fix the variables above and retry.",
        )
        sys.exit(2)


def _fail(ctx, e: Exception) -> None:
    # Console prints the traceback itself when --debug is set
    get_console().print_exception(e)
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and debug logging)",
)
@click.pass_context
def cli(ctx, debug):
    """buildgate: admission control for queued CI builds."""
    console = Console(debug=debug)
    set_console(console)
    configure_logging("DEBUG" if debug else None)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


async def _run_worker(settings: Settings, executor: Executor, slots: int) -> None:
    client = connect(settings.redis_url)
    try:
        keys = settings.keys
        store = RedisKeyValueStore(client)
        queue = RedisJobQueue(client, keys)
        configs = BuildConfigStore(store, keys)
        reporter = BuildStatusReporter(configs)
        jobs = build_jobs(settings, store, queue, reporter, executor)
        reaper = TimeoutReaper(store, configs, reporter, keys)
        await Worker(queue, jobs, reaper, settings.queue_name, settings.poll_interval, slots).run()
    finally:
        await client.aclose()


@cli.command()
@click.option("--executor", "executor_spec", required=True, help="Executor used to start builds, as module:attribute")
@click.option("--slots", default=1, type=int, show_default=True, help="Messages processed concurrently")
@click.pass_context
def worker(ctx, executor_spec, slots):
    """Run a worker that admits and starts queued builds."""
    console = get_console()
    settings = load_settings()

    try:
        executor = load_executor(executor_spec)
    except ExecutorLoadError as e:
        console.print_error(
            "Executor not found",
            str(e),
            suggestion="Pass an importable executor:\n  buildgate worker --executor mypkg.executors:DockerExecutor",
        )
        sys.exit(1)

    console.print_worker_started(
        queue=settings.queue_name,
        redis_url=settings.redis_url,
        poll_interval=settings.poll_interval,
        slots=slots,
    )
    try:
        asyncio.run(_run_worker(settings, executor, slots))
    except KeyboardInterrupt:
        console.print_info("\nWorker stopped by user")
    except Exception as e:
        _fail(ctx, e)


async def _sweep(settings: Settings) -> list[str]:
    client = connect(settings.redis_url)
    try:
        keys = settings.keys
        store = RedisKeyValueStore(client)
        configs = BuildConfigStore(store, keys)
        return await TimeoutReaper(store, configs, BuildStatusReporter(configs), keys).sweep()
    finally:
        await client.aclose()


@cli.command()
@click.pass_context
def sweep(ctx):
    """Fail every build that has overrun its timeout, once."""
    settings = load_settings()
    try:
        reaped = asyncio.run(_sweep(settings))
    except Exception as e:
        _fail(ctx, e)
    get_console().print_sweep(reaped)


async def _inspect(settings: Settings, job_id: str) -> tuple:
    client = connect(settings.redis_url)
    try:
        keys = settings.keys
        store = RedisKeyValueStore(client)
        running = await store.get(keys.running(job_id))
        ttl = await store.ttl(keys.running(job_id))
        last_running = await store.get(keys.last_running(job_id))
        waiting = sorted(int(b) for b in await store.lrange(keys.waiting(job_id), 0, -1) if b.isdigit())
        return running, ttl, last_running, waiting
    finally:
        await client.aclose()


@cli.command()
@click.argument("job_id")
@click.pass_context
def inspect(ctx, job_id):
    """Show the running lock and waiting queue of a job."""
    settings = load_settings()
    try:
        running, ttl, last_running, waiting = asyncio.run(_inspect(settings, job_id))
    except Exception as e:
        _fail(ctx, e)
    get_console().print_gate(job_id, running, ttl, last_running, waiting)


async def _cancel(settings: Settings, job_id: str, build_id: int) -> bool:
    client = connect(settings.redis_url)
    try:
        store = RedisKeyValueStore(client)
        queue = RedisJobQueue(client, settings.keys)
        return await cancel_build(settings, store, queue, job_id, build_id)
    finally:
        await client.aclose()


@cli.command()
@click.argument("job_id")
@click.argument("build_id", type=int)
@click.pass_context
def cancel(ctx, job_id, build_id):
    """Cancel a queued or running build."""
    console = get_console()
    settings = load_settings()
    try:
        found = asyncio.run(_cancel(settings, job_id, build_id))
    except Exception as e:
        _fail(ctx, e)
    if not found:
        console.print_error(
            "Build not found",
            f"No build config for build {build_id}; it has already finished or been stopped.",
        )
        sys.exit(1)
    console.print_info(f"Cancel requested for build {build_id} of job {job_id}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind")
@click.option("--port", default=8000, type=int, show_default=True, help="Port to bind")
@click.pass_context
def serve(ctx, host, port):
    """Serve the operator API."""
    import uvicorn
    from buildgate.api import create_app

    settings = load_settings()
    client = connect(settings.redis_url)
    app = create_app(RedisKeyValueStore(client), RedisJobQueue(client, settings.keys), settings)
    try:
        uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    except Exception as e:
        _fail(ctx, e)


if __name__ == "__main__":
    cli()
