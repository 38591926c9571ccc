"""
Ballotbox — Settlement loop.

Drives a voting service's deadlines on a timer:
1. Executes every due schedule entry (close + settle)
2. Retries failed settlements, reissues or flags stuck randomness requests
3. Re-verifies the audit chain and reports stalled ledgers at CRITICAL

Ledgers are held in memory by the service, so the process that opens them
runs this loop with its own service instance.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from typing import Any

import structlog

from ballotbox.audit.trail import AuditTrail
from ballotbox.config import BallotSettings, settings
from ballotbox.voting.service import VotingService

logger = logging.getLogger(__name__)


def configure_logging(config: BallotSettings = settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(level=config.log_level, format="%(message)s", stream=sys.stdout)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_service(config: BallotSettings = settings, **overrides: Any) -> VotingService:
    """Initialize the audit trail and a voting service recording into it."""
    trail = AuditTrail(config.database_url)
    trail.initialize()
    overrides.setdefault("recorder", trail)
    return VotingService.from_settings(config, **overrides)


def run_once(service: VotingService, now: datetime | None = None) -> dict[str, Any]:
    """
    One settlement pass: execute due schedule entries, then handle stale draws.

    Returns:
        Summary with the settled outcomes, the stale-request actions and the
        scheduler's next wake time.
    """
    log = structlog.get_logger()
    now = now or service.clock.now()

    settled = service.run_due(now)
    for outcome in settled:
        log.info(
            "ballotbox.orchestrator.ledger_settled",
            ledger_id=str(outcome.ledger_id),
            status=outcome.status.value,
            winner=outcome.winner,
        )

    stale = service.check_stale_requests(now)
    for outcome in stale:
        log.warning(
            "ballotbox.orchestrator.randomness_stale",
            ledger_id=str(outcome.ledger_id),
            status=outcome.status.value,
        )

    next_wake = service.scheduler.next_wake_time
    return {
        "settled": settled,
        "stale": stale,
        "next_wake": next_wake,
    }


async def main(
    service: VotingService | None = None,
    config: BallotSettings = settings,
    max_ticks: int | None = None,
) -> None:
    """
    Main settlement loop.

    Ledgers live in memory, so the loop settles whatever the hosting process
    opened on ``service``; that process also owns the randomness source that
    answers weighted draws. Without a service one is built from ``config``.

    Usage:
        service = build_service()
        ... open ledgers, connect a randomness source ...
        asyncio.run(main(service))

    Args:
        service: The voting service whose ledgers are settled.
        config: Settings supplying logging and the poll interval.
        max_ticks: Stop after this many passes; run forever when None.
    """
    configure_logging(config)
    log = structlog.get_logger()

    log.info(
        "ballotbox.orchestrator.starting",
        database_url=config.database_url,
        poll_seconds=config.scheduler_poll_seconds,
    )
    if service is None:
        service = build_service(config)
    trail = service.recorder
    log.info(
        "ballotbox.orchestrator.running",
        message="Settlement loop started",
        ledgers=len(service.list_all_ledgers()),
    )

    ticks = 0
    try:
        while max_ticks is None or ticks < max_ticks:
            summary = run_once(service)
            ticks += 1

            stalled = service.stalled_ledgers()
            if stalled:
                log.critical(
                    "ballotbox.orchestrator.randomness_stalled",
                    ledger_ids=[str(ledger.id) for ledger in stalled],
                )

            entries = None
            if trail is not None:
                is_valid, entries, msg = trail.verify_chain()
                if not is_valid:
                    log.critical(
                        "ballotbox.orchestrator.audit_integrity_failure",
                        message=msg,
                        entries=entries,
                    )

            log.debug(
                "ballotbox.orchestrator.heartbeat",
                open_ledgers=len(service.list_open_ledgers()),
                settled=len(summary["settled"]),
                audit_entries=entries,
            )

            if max_ticks is None or ticks < max_ticks:
                await asyncio.sleep(config.scheduler_poll_seconds)

    except KeyboardInterrupt:
        log.info("ballotbox.orchestrator.shutdown")
    except Exception as e:
        log.exception("ballotbox.orchestrator.fatal_error", error=str(e))
        sys.exit(1)
