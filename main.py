"""
Main entry point for the ballchasing replay ingester with scheduling support.
"""

import asyncio
import logging
import os
import sys
import signal
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

# Add project root to PYTHONPATH so imports work when running this script directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.checkpoint import HostCheckpointStore, SqliteCheckpointStore
from core.config import DEFAULT_CONFIG_PATH, ConfigurationError, ConnectorConfig, load_config
from core.coordinator import SweepCoordinator
from core.infra.db import Database
from core.infra.scheduler import SweepScheduler
from core.interfaces import CheckpointStore, Sink
from core.models import SweepStatus
from plugins.ballchasing import BallchasingSource
from sinks.database_sink import DatabaseSink
from sinks.jsonl_sink import JsonLinesSink


logger = logging.getLogger(__name__)


def build_sink_and_store(config: ConnectorConfig) -> Tuple[Sink, CheckpointStore]:
    """Wire the emission sink and the checkpoint store described by the config."""
    if config.checkpoint.backend == "host":
        if config.sink.type != "jsonl":
            raise ConfigurationError("checkpoint.backend 'host' requires sink.type 'jsonl'")
        sink = JsonLinesSink(binding=config.sink.binding)
        initial = ""
        if config.checkpoint.state_file and Path(config.checkpoint.state_file).exists():
            initial = Path(config.checkpoint.state_file).read_text(encoding="utf-8")
        return sink, HostCheckpointStore(sink, initial)

    checkpoint_db = Database(config.checkpoint.path)
    if config.sink.type == "jsonl":
        sink = JsonLinesSink(path=config.sink.path, binding=config.sink.binding)
    elif config.sink.path == config.checkpoint.path:
        sink = DatabaseSink(db=checkpoint_db)
    else:
        sink = DatabaseSink(config.sink.path)
    return sink, SqliteCheckpointStore(checkpoint_db)


async def main() -> int:
    """Main entry point with scheduler support."""
    load_dotenv()

    # Setup logging; stdout is reserved for the host protocol
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )

    config_file = os.getenv("CONNECTOR_CONFIG", DEFAULT_CONFIG_PATH)
    try:
        config = load_config(config_file)
        sink, store = build_sink_and_store(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    source = BallchasingSource.from_config(config)
    coordinator = SweepCoordinator(
        source,
        sink,
        store,
        creator_id=config.resource.creator_id,
        root_group_id=config.resource.root_group_id,
        fan_out=config.sweep.fan_out,
    )
    scheduler = SweepScheduler(coordinator.run, timezone=config.schedule.timezone)

    # Setup graceful shutdown
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    # Register signal handlers
    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    scheduler_mode = os.getenv("SCHEDULER_MODE", "enabled")
    exit_code = 0
    try:
        if scheduler_mode == "disabled":
            logger.info("Running a single sweep (scheduler disabled)...")
            sweep = scheduler.trigger()
            stopper = asyncio.create_task(stop_event.wait())
            await asyncio.wait([sweep, stopper], return_when=asyncio.FIRST_COMPLETED)
            stopper.cancel()
            if sweep.done() and not sweep.cancelled():
                exit_code = 1 if sweep.result().status is SweepStatus.ABORTED else 0
            else:
                exit_code = 1
        else:
            schedule = config.schedule
            logger.info("Starting scheduled sweeps...")
            await scheduler.start(
                seconds=schedule.seconds,
                minutes=schedule.minutes,
                hours=schedule.hours,
                cron_expression=schedule.cron,
            )
            # Wait for shutdown signal
            await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await scheduler.stop(grace=config.schedule.stop_grace_seconds)
        await source.close()
        await sink.close()
        await store.close()
        logger.info("Shutdown complete")

    return exit_code


def run_ingester() -> None:
    """Entry point that can be called from other scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run_ingester()
