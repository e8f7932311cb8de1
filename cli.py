# Simple CLI for Smart Feed
import asyncio
import json
import signal
from typing import Optional

import click

from core.config.settings import Settings
from core.logging import configure_logging, get_market_data_logger_safe, get_monitoring_logger_safe
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from services.market_feed.codec import WireCodec
from services.market_feed.exceptions import FeedError
from services.market_feed.service import MarketFeedService


def _build_metrics(settings: Settings) -> Optional[PrometheusMetricsCollector]:
    """Collector serving /metrics when monitoring is enabled, else None."""
    if not settings.monitoring.metrics_enabled:
        return None
    metrics = PrometheusMetricsCollector(settings=settings)
    port = metrics.serve(settings.monitoring.metrics_port, settings.monitoring.metrics_addr)
    get_monitoring_logger_safe("cli").info("Serving Prometheus metrics", port=port)
    return metrics


async def _stream(settings: Settings):
    logger = get_market_data_logger_safe("cli")

    async def log_sink(row):
        logger.info("tick", row={k: str(v) for k, v in row.items()})

    metrics = _build_metrics(settings)
    service = MarketFeedService(settings, sink=log_sink, prometheus_metrics=metrics)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await service.start()
        waiters = [
            asyncio.create_task(stop_requested.wait()),
            asyncio.create_task(service.wait_until_stopped()),
        ]
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await service.stop()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        if metrics is not None:
            metrics.shutdown()


@click.group()
def cli():
    """Smart Feed CLI"""
    pass


@cli.command()
def stream():
    """Stream the configured watchlist and log every tick"""
    settings = Settings()
    configure_logging(settings)
    click.echo("Starting Smart Feed stream...")
    try:
        asyncio.run(_stream(settings))
    except FeedError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.argument("frame_hex")
def decode(frame_hex):
    """Decode one binary feed frame given as hex"""
    try:
        frame = bytes.fromhex(frame_hex)
    except ValueError:
        raise click.BadParameter("frame must be hex encoded", param_hint="FRAME_HEX")
    try:
        tick = WireCodec().decode_binary(frame)
    except FeedError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(tick.model_dump(mode="json", exclude={"received_at"}), indent=2))


if __name__ == "__main__":
    cli()
