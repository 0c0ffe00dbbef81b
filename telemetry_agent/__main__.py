"""CLI entry point: ``python -m telemetry_agent [run|status|flush]``.

``run``     start the agent (``--once`` for a single cycle, ``--dry-run``
            to deliver to an in-process sink).
``status``  print queue depth by state, durable counters and the last
            backoff/flush status published by a running agent.
``flush``   run one flush cycle and a retention pass immediately.  To
            nudge a running agent instead, send it ``SIGUSR1``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog


def _configure_logging(level: str, fmt: str) -> None:
    """Set up structlog with console or JSON rendering."""
    import logging

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="telemetry_agent",
        description="Store-and-forward telemetry agent",
    )
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run the agent (default)")
    run.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Deliver to an in-process sink; never contact the network",
    )
    run.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Acquire one sample and run one flush cycle, then exit",
    )

    sub.add_parser("status", help="Show queue depth and backoff state")
    sub.add_parser("flush", help="Run one flush cycle immediately")
    return parser


def collect_status(queue_path: str) -> dict:
    """Gather the operator status report from the queue file."""
    from telemetry_agent.queue import DurableQueue

    queue = DurableQueue(queue_path)
    try:
        return {
            "queue_path": queue_path,
            "depth": queue.counts(),
            "footprint_bytes": queue.footprint_bytes(),
            "counters": queue.counters(),
            "agent": queue.read_status(),
        }
    finally:
        queue.close()


async def flush_once(settings) -> dict:
    """Run one flush cycle plus a retention pass against the configured sink."""
    from telemetry_agent.agent_loop import (
        create_flush_engine,
        create_governor,
        create_sink,
    )
    from telemetry_agent.queue import DurableQueue

    queue = DurableQueue(settings.queue_path)
    sink = create_sink(settings)
    governor = create_governor(settings, queue)
    engine = create_flush_engine(settings, queue, sink, governor)
    try:
        await sink.start()
        report = await engine.run_cycle()
        evicted = await asyncio.to_thread(governor.enforce)
    finally:
        await sink.close()
        queue.close()
    return {
        "outcome": report.outcome,
        "batch_size": report.batch_size,
        "applied": report.applied,
        "dead_lettered": report.dead_lettered,
        "error": report.error,
        "evicted": evicted.total,
    }


def main(argv: list | None = None) -> None:
    args = _build_parser().parse_args(argv)
    command = args.command or "run"

    # Load settings from env / .env file first, then override with CLI flags.
    from telemetry_agent.config import AgentSettings

    settings = AgentSettings()
    if getattr(args, "dry_run", None) is True:
        settings.dry_run = True

    _configure_logging(settings.log_level, settings.log_format)
    logger = structlog.get_logger("telemetry_agent")

    if command == "status":
        print(json.dumps(collect_status(settings.queue_path), indent=2, default=str))
        return

    if command == "flush":
        result = asyncio.run(flush_once(settings))
        print(json.dumps(result, indent=2))
        return

    logger.info(
        "agent_starting",
        version=__import__("telemetry_agent").__version__,
        device_id=settings.device_id,
        queue_path=settings.queue_path,
        sink=settings.sink_base_url,
        dry_run=settings.dry_run,
        once=getattr(args, "once", False),
    )

    from telemetry_agent.agent_loop import run_agent

    try:
        asyncio.run(run_agent(settings, once=getattr(args, "once", False)))
    except KeyboardInterrupt:
        logger.info("agent_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
