"""
hanziflow CLI commands

Command-line interface for submitting enrichment jobs, running workers and
checking health.
"""

import asyncio
import json
import logging
import signal
import time
from dataclasses import dataclass

import click

from hanziflow.config import HanziflowConfig, setup_logging
from hanziflow.db.connection import Database
from hanziflow.db.repository import CardRepository, DictionaryRepository
from hanziflow.enrichment import (
    CARD_ENRICHMENT_QUEUE,
    DECK_ENRICHMENT_QUEUE,
    DECK_IMPORT_QUEUE,
    BatchConfig,
    BatchProcessor,
    EnrichmentHandlers,
    EnrichmentPipeline,
    load_cedict,
    submit_card_enrichment,
    submit_deck_import
)
from hanziflow.jobs import (
    HealthMonitor,
    JobPriority,
    JobStore,
    RateLimiterRegistry,
    Worker,
    WorkerConfig,
    serve_health
)
from hanziflow.providers import build_services
from hanziflow.storage import MediaStore

logger = logging.getLogger(__name__)

QUEUES = (CARD_ENRICHMENT_QUEUE, DECK_ENRICHMENT_QUEUE, DECK_IMPORT_QUEUE)


@dataclass
class Runtime:
    config: HanziflowConfig
    db: Database
    store: JobStore
    cards: CardRepository


def _runtime(ctx) -> Runtime:
    config = ctx.obj['config']
    db = Database(config)
    return Runtime(config, db, JobStore.from_config(db, config), CardRepository(db))


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True), help='Path to configuration file')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Logging level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """hanziflow command-line interface"""
    config = HanziflowConfig.from_file(config_path) if config_path else HanziflowConfig()
    setup_logging(config, log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.pass_context
def init(ctx):
    """Create the database tables"""
    db = Database(ctx.obj['config'])
    db.create_tables()
    click.echo('Database tables created')
    for name, value in db.get_stats().items():
        click.echo(f'  {name}: {value}')


@cli.command('load-dictionary')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--replace', is_flag=True, help='Remove existing entries first')
@click.pass_context
def load_dictionary(ctx, path, replace):
    """Import a CC-CEDICT file"""
    db = Database(ctx.obj['config'])
    count = load_cedict(path, DictionaryRepository(db), replace=replace)
    click.echo(f'Loaded {count} dictionary entries')


@cli.command()
@click.argument('key')
@click.option('--force', is_flag=True, help='Redo every stage even if already enriched')
@click.option('--priority', type=int, default=int(JobPriority.USER_INITIATED), show_default=True,
              help='Job priority; higher runs first')
@click.pass_context
def enqueue(ctx, key, force, priority):
    """Enqueue enrichment of the card for KEY, creating it if needed"""
    runtime = _runtime(ctx)
    entity = runtime.cards.get_or_create(key)
    job_id = submit_card_enrichment(runtime.store, entity.id, force=force, priority=priority)
    click.echo(job_id)


@cli.command('import')
@click.argument('keys', nargs=-1, required=True)
@click.pass_context
def import_keys(ctx, keys):
    """Enqueue a deck import of KEYS"""
    runtime = _runtime(ctx)
    click.echo(submit_deck_import(runtime.store, list(keys)))


@cli.command()
@click.argument('job_id')
@click.pass_context
def status(ctx, job_id):
    """Print a job's status"""
    job_status = _runtime(ctx).store.get_status(job_id)
    if job_status is None:
        click.echo(f'Job not found: {job_id}', err=True)
        raise click.Abort()
    _echo_json(job_status)


@cli.command()
@click.pass_context
def stats(ctx):
    """Print job counts per queue"""
    _echo_json(_runtime(ctx).store.get_queue_stats())


@cli.command()
@click.argument('job_id')
@click.pass_context
def retry(ctx, job_id):
    """Requeue a failed job"""
    if _runtime(ctx).store.retry_failed(job_id):
        click.echo(f'Job {job_id} requeued')
    else:
        click.echo(f'Job {job_id} is not a failed job, or an equivalent job is already outstanding', err=True)
        raise click.Abort()


@cli.command()
@click.option('--serve', is_flag=True, help='Serve GET /health instead of printing once')
@click.option('--port', type=int, help='Port for --serve (default: monitoring.health_port)')
@click.pass_context
def health(ctx, serve, port):
    """Print or serve the health report"""
    runtime = _runtime(ctx)
    monitor = HealthMonitor.from_config(runtime.store, runtime.config)
    if not serve:
        report = monitor.health_report()
        _echo_json(report)
        if report['status'] != 'ok':
            ctx.exit(1)
        return

    server = serve_health(monitor, port=port or int(runtime.config.get('monitoring.health_port', 8080)))
    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()


def build_workers(runtime: Runtime, queues) -> list:
    """Wire pipeline, batch processor and handlers into one worker per queue"""
    config = runtime.config
    pipeline = EnrichmentPipeline(
        runtime.cards,
        build_services(config, runtime.db),
        media_store=MediaStore.from_config(config),
        limiters=RateLimiterRegistry.from_config(config, runtime.db)
    )
    handlers = EnrichmentHandlers(
        runtime.store,
        runtime.cards,
        pipeline,
        BatchProcessor(pipeline, BatchConfig.from_config(config))
    )
    return [
        Worker(runtime.store, queue, handlers.for_queue(queue), WorkerConfig.from_config(config, queue))
        for queue in queues
    ]


async def _run_workers(runtime: Runtime, queues, health_port) -> None:
    workers = build_workers(runtime, queues)
    monitor = HealthMonitor.from_config(runtime.store, runtime.config)
    for worker in workers:
        monitor.register(worker)
    monitor.start_heartbeat()
    server = serve_health(monitor, port=health_port) if health_port else None

    loop = asyncio.get_running_loop()

    def shutdown():
        logger.info('Shutdown requested')
        for worker in workers:
            loop.create_task(worker.stop())

    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown)
    except (NotImplementedError, RuntimeError):
        # Signal handling not available (e.g., Windows)
        pass

    try:
        await asyncio.gather(*(worker.run() for worker in workers))
    finally:
        await monitor.stop_heartbeat()
        if server:
            server.shutdown()


@cli.command()
@click.option('--queue', 'queues', multiple=True, type=click.Choice(QUEUES),
              help='Queue to consume; repeatable (default: all)')
@click.option('--health-port', type=int, help='Also serve GET /health on this port')
@click.pass_context
def worker(ctx, queues, health_port):
    """Run workers until interrupted"""
    runtime = _runtime(ctx)
    queues = queues or QUEUES
    click.echo(f"Starting workers for: {', '.join(queues)}")
    asyncio.run(_run_workers(runtime, queues, health_port))


if __name__ == '__main__':
    cli()
