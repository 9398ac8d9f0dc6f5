"""
Monitorly Probe - Main Daemon.

Runs one collection task per enabled collector and a send loop, and
restarts them when the configuration changes on disk or on the server.
"""

import asyncio
import os
import signal
from typing import Optional

from .batching import BatchAggregator, BatchScheduler
from .collectors import Collector, Sample, SystemInfoCollector, build_collectors
from .config import ConfigError, ProbeConfig
from .file_sender import FileSender
from .sender import APISender, Sender, request_restart
from .settings import settings
from .utils.logger import ProbeLogger
from .version import check_for_updates


def create_sender(
    config: ProbeConfig,
    logger: ProbeLogger,
    restart_queue: Optional[asyncio.Queue] = None,
    config_path: Optional[str] = None,
) -> Sender:
    """Sender for the configured target."""
    if config.sender.target == "log_file":
        return FileSender(config.log_file.path, logger)
    return APISender(config, logger, restart_queue=restart_queue, config_path=config_path)


async def enqueue_samples(
    queue: asyncio.Queue,
    samples: list[Sample],
    stop_event: asyncio.Event,
    timeout: float,
) -> bool:
    """
    Put samples on the queue, waiting at most ``timeout`` seconds.

    Returns False when the samples were dropped because the queue stayed
    full or the probe is stopping.
    """
    put_task = asyncio.ensure_future(queue.put(samples))
    stop_wait = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({put_task, stop_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_wait.cancel()

    if put_task.done():
        return True
    put_task.cancel()
    return False


async def collect_once(
    collector: Collector,
    queue: asyncio.Queue,
    stop_event: asyncio.Event,
    logger: ProbeLogger,
    put_timeout: float,
) -> None:
    """Take one reading and forward it; errors are logged and skipped."""
    try:
        samples = await collector.collect()
    except Exception as e:
        # A failing collector must not take the probe down
        logger.error(f"Error collecting {collector.name} metrics: {e}")
        return

    if not samples:
        return

    for s in samples:
        logger.debug(
            f"Collected {collector.name} metric: category={s.category} name={s.name} "
            f"metadata={s.metadata} value={s.value}"
        )

    if not await enqueue_samples(queue, samples, stop_event, put_timeout):
        logger.warning(f"Metrics queue full, dropped {len(samples)} {collector.name} samples")


async def run_collector(
    collector: Collector,
    interval: float,
    queue: asyncio.Queue,
    stop_event: asyncio.Event,
    logger: ProbeLogger,
) -> None:
    """Collect every ``interval`` seconds until stopped."""
    logger.info(f"Starting {collector.name} collector (interval {interval}s)")

    while not stop_event.is_set():
        await collect_once(collector, queue, stop_event, logger, put_timeout=interval)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


class ProbeAgent:
    """
    One run of the probe.

    Owns the collectors, the inbound queue and the sender for a single
    configuration. A restart creates a new agent.
    """

    def __init__(
        self,
        config: ProbeConfig,
        logger: ProbeLogger,
        stop_event: asyncio.Event,
        restart_queue: Optional[asyncio.Queue] = None,
        config_path: Optional[str] = None,
        sender: Optional[Sender] = None,
        collectors: Optional[list[tuple[Collector, float]]] = None,
        info_collector: Optional[Collector] = None,
        queue_size: int = settings.queue_size,
    ):
        """Initialize the agent."""
        self.config = config
        self.logger = logger
        self.stop_event = stop_event
        self.sender = sender or create_sender(config, logger, restart_queue, config_path)
        self.collectors = collectors if collectors is not None else build_collectors(config)
        self.info_collector = info_collector or SystemInfoCollector(logger)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.aggregator = BatchAggregator(self.sender, logger)

    async def run(self):
        """Run until the stop event is set, then flush and close the sender."""
        self.logger.info(
            f"Starting probe for {self.config.get_machine_name()} "
            f"({len(self.collectors)} collectors, sending to {self.config.sender.target} "
            f"every {self.config.sender.send_interval}s)"
        )

        await collect_once(
            self.info_collector, self.queue, self.stop_event, self.logger,
            put_timeout=self.config.sender.send_interval,
        )

        scheduler = BatchScheduler(
            self.aggregator,
            self.queue,
            self.config.sender.send_interval,
            self.stop_event,
            self.logger,
        )
        tasks = [
            asyncio.create_task(run_collector(c, interval, self.queue, self.stop_event, self.logger))
            for c, interval in self.collectors
        ]
        try:
            await scheduler.run()
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await self.sender.close()
            self.logger.info("Probe stopped")

        if self.aggregator.fatal_error is not None:
            self.logger.fatal(f"Fatal error sending metrics: {self.aggregator.fatal_error}")


async def watch_config_file(
    path: str,
    restart_queue: asyncio.Queue,
    stop_event: asyncio.Event,
    logger: ProbeLogger,
    poll_interval: float = settings.config_poll_interval,
) -> None:
    """Request a restart whenever the config file's mtime changes."""
    last = _mtime(path)

    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass
        else:
            break

        current = _mtime(path)
        if current is not None and current != last:
            last = current
            logger.info(f"Config file changed: {path}")
            request_restart(restart_queue, logger)


def _mtime(path: str) -> Optional[float]:
    try:
        return os.stat(path).st_mtime
    except OSError:
        return None


def install_signal_handlers(stop_event: asyncio.Event, logger: ProbeLogger) -> None:
    """SIGINT and SIGTERM stop the probe."""
    loop = asyncio.get_running_loop()

    def handle(sig: signal.Signals):
        logger.info(f"Received {sig.name}, shutting down")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            logger.debug(f"Cannot install handler for {sig.name}")


async def report_updates(logger: ProbeLogger) -> None:
    """Log whether a newer release exists."""
    try:
        info = await check_for_updates()
    except Exception as e:
        logger.warning(f"Failed to check for updates: {e}")
        return

    if info.update_available:
        logger.info(
            f"A new version is available: {info.latest_version} (current {info.current_version}) "
            f"{info.release_url}"
        )
    else:
        logger.info(f"Probe is up to date ({info.current_version})")


async def run_probe(
    config_path: str,
    config: ProbeConfig,
    logger: ProbeLogger,
    stop_event: Optional[asyncio.Event] = None,
    check_updates: bool = False,
    shutdown_timeout: float = settings.shutdown_timeout,
    agent_factory=ProbeAgent,
) -> None:
    """
    Run the probe until stopped, restarting on configuration changes.

    A configuration that fails to load on restart is reported and the
    previous one is kept.
    """
    stop_event = stop_event or asyncio.Event()
    restart_queue: asyncio.Queue = asyncio.Queue(maxsize=1)
    install_signal_handlers(stop_event, logger)

    if check_updates:
        await report_updates(logger)

    watcher = asyncio.create_task(watch_config_file(config_path, restart_queue, stop_event, logger))

    try:
        while not stop_event.is_set():
            run_stop = asyncio.Event()
            agent = agent_factory(config, logger, run_stop, restart_queue=restart_queue, config_path=config_path)
            agent_task = asyncio.create_task(agent.run())
            restart_wait = asyncio.ensure_future(restart_queue.get())
            stop_wait = asyncio.ensure_future(stop_event.wait())

            done, _ = await asyncio.wait(
                {agent_task, restart_wait, stop_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for waiter in (restart_wait, stop_wait):
                if waiter not in done:
                    waiter.cancel()

            run_stop.set()
            await _await_shutdown(agent_task, shutdown_timeout, logger)

            if stop_event.is_set():
                break
            if restart_wait not in done:
                # The agent ended on its own; nothing left to run
                break

            logger.info("Restarting probe with updated configuration")
            try:
                config = ProbeConfig.from_yaml(config_path)
            except ConfigError as e:
                logger.error(f"Failed to reload configuration, keeping the current one: {e}")
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass

    logger.info("Shutdown complete")


async def _await_shutdown(agent_task: asyncio.Task, timeout: float, logger: ProbeLogger) -> None:
    done, _ = await asyncio.wait({agent_task}, timeout=timeout)
    if agent_task in done:
        # Re-raise anything the agent died with, including SystemExit from fatal
        agent_task.result()
        return

    logger.warning(f"Probe did not stop within {timeout}s, abandoning remaining work")
    agent_task.cancel()
    try:
        await agent_task
    except asyncio.CancelledError:
        pass
