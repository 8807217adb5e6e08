from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from helpdesk.metrics import MetricsRegistry, metrics_registry

from .service import TicketService

logger = logging.getLogger(__name__)


class SLASweeper:
    """Background task re-evaluating SLA status of open tickets.

    Breaches are time-driven, so an untouched ticket only turns at-risk or
    breached because a sweep noticed. Each ticket is handled as one atomic
    unit by :meth:`TicketService.refresh_sla`; stopping the sweeper lets the
    unit in flight finish and abandons the rest of the cycle.
    """

    def __init__(
        self,
        service: TicketService,
        *,
        interval_seconds: float = 60.0,
        registry: MetricsRegistry | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        self._service = service
        self._interval = interval_seconds
        self._metrics = registry or metrics_registry
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="sla-sweeper")
        logger.info("SLA sweeper started (interval %.1fs)", self._interval)

    async def stop(self, *, timeout: float = 10.0) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("SLA sweeper did not stop within %.1fs, cancelling", timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
        logger.info("SLA sweeper stopped")

    async def run_once(self, *, now: datetime | None = None) -> int:
        """Sweep every open ticket once and return how many changed."""

        changed = 0
        with self._metrics.time_distribution("sla_sweep_duration_seconds"):
            ticket_ids = await self._service.list_open_ticket_ids()
            for index, ticket_id in enumerate(ticket_ids):
                if self._stopping.is_set():
                    logger.info("SLA sweep abandoned with %d ticket(s) left", len(ticket_ids) - index)
                    break
                try:
                    updated = await self._service.refresh_sla(ticket_id, now=now)
                except Exception:
                    logger.exception("SLA re-evaluation failed for ticket %s", ticket_id)
                    self._metrics.counter("sla_sweep_failures_total").inc()
                    continue
                if updated is not None:
                    changed += 1
        if changed:
            logger.info("SLA sweep updated %d ticket(s)", changed)
        return changed

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("SLA sweep cycle failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
