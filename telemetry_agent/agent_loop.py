"""Main asyncio loop for the telemetry agent.

Three tasks share one ``DurableQueue``:

* producer  -- reads the acquisition source and enqueues samples;
* flusher   -- runs flush cycles at the interval chosen by backoff,
               woken early by a forced-flush request;
* governor  -- enforces the footprint bound on its own timer, so the
               queue stays bounded even while every flush fails.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

import structlog

from telemetry_agent.backoff import BackoffController
from telemetry_agent.config import AgentSettings
from telemetry_agent.flush import FlushEngine
from telemetry_agent.queue import DurableQueue, QueueEncodeError, QueueError
from telemetry_agent.retention import FootprintBound, RetentionGovernor
from telemetry_agent.schemas import Sample
from telemetry_agent.sink.base import RemoteSink
from telemetry_agent.source.base import SampleSource

logger = structlog.get_logger(__name__)


def create_source(settings: AgentSettings) -> SampleSource:
    """Factory: return the acquisition source for the current config."""
    from telemetry_agent.source.simulation import SimulationSource

    return SimulationSource(device_id=settings.device_id, scenario=settings.sim_scenario)


def create_sink(settings: AgentSettings) -> RemoteSink:
    """Factory: in-process sink for dry runs, HTTP otherwise."""
    if settings.dry_run:
        from telemetry_agent.sink.memory import InMemorySink

        return InMemorySink()

    from telemetry_agent.sink.http import HTTPSink

    return HTTPSink(settings)


def create_governor(settings: AgentSettings, queue: DurableQueue) -> RetentionGovernor:
    return RetentionGovernor(queue, FootprintBound.from_settings(settings))


def create_flush_engine(
    settings: AgentSettings,
    queue: DurableQueue,
    sink: RemoteSink,
    governor: Optional[RetentionGovernor] = None,
) -> FlushEngine:
    backoff = BackoffController(
        base_interval=settings.flush_interval_seconds,
        minimum=settings.backoff_min_seconds,
        maximum=settings.backoff_max_seconds,
        multiplier=settings.backoff_multiplier,
    )
    return FlushEngine(
        queue,
        sink,
        backoff,
        batch_size=settings.batch_size,
        timeout=settings.sink_timeout_seconds,
        governor=governor,
    )


async def run_agent(
    settings: AgentSettings,
    *,
    once: bool = False,
    source: Optional[SampleSource] = None,
    sink: Optional[RemoteSink] = None,
) -> None:
    """Run the telemetry agent.

    Parameters
    ----------
    settings:
        Fully-resolved agent configuration.
    once:
        If ``True``, acquire one sample, run one flush cycle, then exit.
    source, sink:
        Override the configured collaborators (used by tests).
    """
    shutdown_event = asyncio.Event()
    flush_now = asyncio.Event()

    # --- signal handling ---------------------------------------------------
    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    def _request_flush() -> None:
        logger.info("flush_requested")
        flush_now.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)
        loop.add_signal_handler(signal.SIGUSR1, _request_flush)
    # On Windows, SIGINT is handled by the default KeyboardInterrupt.

    queue = DurableQueue(settings.queue_path)
    source = source or create_source(settings)
    sink = sink or create_sink(settings)
    governor = create_governor(settings, queue)
    engine = create_flush_engine(settings, queue, sink, governor)

    try:
        await sink.start()
        if once:
            await _run_once(source, queue, engine, governor)
            return

        tasks = [
            asyncio.create_task(
                _producer_loop(source, queue, settings, shutdown_event),
                name="producer",
            ),
            asyncio.create_task(
                _flush_loop(engine, queue, shutdown_event, flush_now),
                name="flusher",
            ),
            asyncio.create_task(
                _governor_loop(governor, settings, shutdown_event),
                name="governor",
            ),
        ]
        await shutdown_event.wait()
        # An in-flight network call is abandoned; an in-flight durability
        # write finishes in its worker thread before queue.close() returns.
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGUSR1):
                loop.remove_signal_handler(sig)
        await source.disconnect()
        await sink.close()
        queue.close()


async def _run_once(
    source: SampleSource,
    queue: DurableQueue,
    engine: FlushEngine,
    governor: RetentionGovernor,
) -> None:
    try:
        await source.connect()
        sample = await source.read()
    except Exception:
        logger.exception("sample_read_failed")
        return
    await _enqueue(queue, sample)
    report = await engine.run_cycle()
    logger.info("single_cycle_complete", outcome=report.outcome, applied=report.applied)
    await asyncio.to_thread(governor.enforce)
    await _publish_status(engine, queue)


async def _producer_loop(
    source: SampleSource,
    queue: DurableQueue,
    settings: AgentSettings,
    shutdown_event: asyncio.Event,
) -> None:
    """Acquire-enqueue-sleep loop with auto-reconnect.

    A sample whose write failed is kept and retried first on the next
    tick; it is never reported as accepted.
    """
    carry: Optional[Sample] = None

    while not shutdown_event.is_set():
        # --- connect (or reconnect) ----------------------------------------
        if not source.is_connected():
            try:
                await source.connect()
                logger.info("source_connected", device_id=settings.device_id)
            except Exception:
                logger.exception("source_connect_failed")
                await _interruptible_sleep(
                    settings.sample_interval_seconds, shutdown_event
                )
                continue

        # --- acquire -------------------------------------------------------
        if carry is None:
            try:
                carry = await source.read()
            except Exception:
                logger.exception("sample_read_failed")
                await _interruptible_sleep(
                    settings.sample_interval_seconds, shutdown_event
                )
                continue

        # --- persist -------------------------------------------------------
        if await _enqueue(queue, carry):
            carry = None

        await _interruptible_sleep(settings.sample_interval_seconds, shutdown_event)


async def _enqueue(queue: DurableQueue, sample: Sample) -> bool:
    """Persist *sample*; ``False`` means it should be offered again.

    A sample whose payload has no JSON form is dropped: no retry can
    store it, and holding it would stall acquisition.
    """
    try:
        await asyncio.to_thread(queue.enqueue, sample)
    except QueueEncodeError as exc:
        logger.error("sample_unencodable", sample_id=sample.sample_id, error=str(exc))
        return True
    except QueueError as exc:
        logger.error("sample_not_persisted", sample_id=sample.sample_id, error=str(exc))
        return False
    return True


async def _flush_loop(
    engine: FlushEngine,
    queue: DurableQueue,
    shutdown_event: asyncio.Event,
    flush_now: asyncio.Event,
) -> None:
    """Flush-publish-wait loop; the wait is the current backoff interval."""
    while not shutdown_event.is_set():
        flush_now.clear()
        await engine.run_cycle()
        await _publish_status(engine, queue)
        await _wait_for_trigger(
            engine.backoff.next_interval(), shutdown_event, flush_now
        )


async def _governor_loop(
    governor: RetentionGovernor,
    settings: AgentSettings,
    shutdown_event: asyncio.Event,
) -> None:
    while not shutdown_event.is_set():
        await _interruptible_sleep(settings.governor_interval_seconds, shutdown_event)
        if shutdown_event.is_set():
            return
        try:
            await asyncio.to_thread(governor.enforce)
        except QueueError as exc:
            logger.error("retention_failed", error=str(exc))


async def _publish_status(engine: FlushEngine, queue: DurableQueue) -> None:
    status = engine.status()
    status["updated_at"] = datetime.now(timezone.utc).isoformat()
    try:
        await asyncio.to_thread(queue.write_status, status)
    except QueueError as exc:
        logger.warning("status_publish_failed", error=str(exc))


async def _interruptible_sleep(
    seconds: float, event: asyncio.Event
) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def _wait_for_trigger(
    seconds: float, shutdown_event: asyncio.Event, flush_now: asyncio.Event
) -> None:
    """Sleep for *seconds*, waking early on shutdown or a forced flush."""
    waiters = [
        asyncio.create_task(shutdown_event.wait()),
        asyncio.create_task(flush_now.wait()),
    ]
    try:
        await asyncio.wait(waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
