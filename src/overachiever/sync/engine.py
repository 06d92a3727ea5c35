"""Process-level scan engine.

Owns the ScanQueue and spawns one task per admitted ticket. Tasks outlive
the connection that requested them; a manual ticket is cancelled only when
its last subscriber detaches.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from overachiever.sync import history_store
from overachiever.sync.errors import ScanCancelled, ScanFailed
from overachiever.sync.models import ScanReason, ScanResult, ScanTicket, TicketState, utcnow
from overachiever.sync.scan_queue import Admission, AdmissionOutcome, ScanQueue

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from overachiever.sync.orchestrator import SyncOrchestrator

logger = structlog.get_logger()

REJECT_NOT_CONFIGURED = "provider_not_configured"

CANCELLABLE_STATES = frozenset(
    {TicketState.ADMITTED, TicketState.FETCHING_GAMES, TicketState.FETCHING_ACHIEVEMENTS}
)


class SyncEngine:
    def __init__(
        self,
        queue: ScanQueue,
        orchestrator: SyncOrchestrator,
        *,
        enabled: bool = True,
        max_concurrent_scans: int = 8,
        persistence_retry_attempts: int = 3,
        persistence_retry_delay: float = 5.0,
        sessions: Callable[[], AsyncSession] | None = None,
    ) -> None:
        self.queue = queue
        self.orchestrator = orchestrator
        self.enabled = enabled
        self.persistence_retry_attempts = max(1, persistence_retry_attempts)
        self.persistence_retry_delay = persistence_retry_delay
        self.sessions = sessions or orchestrator.sessions
        self._slots = asyncio.Semaphore(max(1, max_concurrent_scans))
        self._tasks: set[asyncio.Task[None]] = set()
        self.completed = 0
        self.failed = 0
        self.cancelled = 0

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_scan(
        self,
        user_id: int,
        reason: ScanReason = ScanReason.MANUAL,
        subscriber: str | None = None,
        force: bool = False,
    ) -> Admission:
        """Submit a scan request; start a task if a new ticket was admitted."""
        if not self.enabled:
            logger.info("scan_rejected", user_id=user_id, reason=REJECT_NOT_CONFIGURED)
            return Admission(AdmissionOutcome.REJECTED, reason=REJECT_NOT_CONFIGURED)

        admission = self.queue.submit(user_id, reason, subscriber=subscriber, force=force)
        if admission.outcome == AdmissionOutcome.ADMITTED and admission.ticket is not None:
            task = asyncio.create_task(self._run(admission.ticket), name=f"scan-{admission.ticket.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return admission

    def cancel(self, user_id: int) -> ScanTicket:
        """Request cooperative cancellation of the user's active ticket.

        Raises:
            LookupError: If the user has no active ticket.
            ValueError: If the ticket is past the fetch stages.
        """
        ticket = self.queue.active(user_id)
        if ticket is None:
            msg = "No active scan"
            raise LookupError(msg)
        if ticket.state not in CANCELLABLE_STATES:
            msg = f"Scan can no longer be cancelled (state: {ticket.state.value})"
            raise ValueError(msg)
        ticket.request_cancel()
        logger.info("scan_cancel_requested", ticket_id=ticket.id, user_id=user_id)
        return ticket

    def detach(self, subscriber: str) -> list[ScanTicket]:
        """Detach a closed connection. Manual tickets left unwatched are cancelled."""
        cancelled = []
        for ticket in self.queue.detach(subscriber):
            if ticket.reason == ScanReason.MANUAL and ticket.state in CANCELLABLE_STATES:
                ticket.request_cancel()
                cancelled.append(ticket)
                logger.info("scan_orphaned", ticket_id=ticket.id, user_id=ticket.user_id)
        return cancelled

    # ------------------------------------------------------------------
    # Ticket tasks
    # ------------------------------------------------------------------

    async def _run(self, ticket: ScanTicket) -> None:
        try:
            while True:
                async with self._slots:
                    retry = await self._attempt(ticket)
                if not retry:
                    return
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(ticket.cancelled.wait(), timeout=self.persistence_retry_delay)
        except asyncio.CancelledError:
            if not ticket.is_terminal:
                await self._abandon(ticket)
            raise

    async def _abandon(self, ticket: ScanTicket) -> None:
        """Fail a ticket whose task is being cancelled, still telling subscribers."""
        stage = ticket.state.value
        message = "server shutting down"
        result = self._terminal_result(ticket, TicketState.FAILED, "shutdown", stage, message)
        # Cancelled mid-stage, so no transition applies
        ticket.state = TicketState.FAILED
        self.failed += 1
        logger.warning("scan_abandoned", ticket_id=ticket.id, user_id=ticket.user_id, stage=stage)
        try:
            await self.orchestrator.emit(
                ticket,
                "error",
                {"kind": "shutdown", "stage": stage, "message": message, "retrying": False},
            )
            await self._record_run(ticket, result)
        finally:
            self.queue.fail(ticket, result)

    async def _attempt(self, ticket: ScanTicket) -> bool:
        """Run the ticket once. Returns True if it should be retried."""
        ticket.attempts += 1
        try:
            if ticket.cancel_requested:
                raise ScanCancelled(ticket.id)
            result = await self.orchestrator.run(ticket)
        except ScanCancelled:
            await self._finish(ticket, TicketState.CANCELLED, ScanCancelled.kind, "scan cancelled")
            return False
        except ScanFailed as e:
            if e.retryable and ticket.attempts < self.persistence_retry_attempts:
                ticket.advance(TicketState.ADMITTED)
                logger.warning(
                    "scan_retry_scheduled",
                    ticket_id=ticket.id,
                    user_id=ticket.user_id,
                    attempt=ticket.attempts,
                    delay=self.persistence_retry_delay,
                    error=str(e.cause),
                )
                await self.orchestrator.emit(
                    ticket,
                    "error",
                    {
                        "kind": e.cause_kind,
                        "stage": e.stage,
                        "message": str(e.cause),
                        "retrying": True,
                        "attempt": ticket.attempts,
                    },
                )
                return True
            await self._finish(ticket, TicketState.FAILED, e.cause_kind, str(e.cause), stage=e.stage)
            return False
        except Exception as e:
            logger.exception("scan_crashed", ticket_id=ticket.id, user_id=ticket.user_id)
            await self._finish(ticket, TicketState.FAILED, "internal_error", str(e))
            return False

        self.completed += 1
        self.queue.complete(ticket, result)
        return False

    def _terminal_result(
        self,
        ticket: ScanTicket,
        state: TicketState,
        kind: str,
        stage: str,
        message: str,
    ) -> ScanResult:
        return ScanResult(
            ticket_id=ticket.id,
            user_id=ticket.user_id,
            status=state.value,
            started_at=ticket.enqueued_at,
            finished_at=utcnow(),
            games_total=ticket.games_total,
            error_kind=kind,
            error_stage=stage,
            error_message=message,
        )

    async def _finish(
        self,
        ticket: ScanTicket,
        state: TicketState,
        kind: str,
        message: str,
        stage: str | None = None,
    ) -> None:
        stage = stage or ticket.state.value
        result = self._terminal_result(ticket, state, kind, stage, message)
        ticket.advance(state)
        if state == TicketState.CANCELLED:
            self.cancelled += 1
        else:
            self.failed += 1
        logger.warning(
            "scan_cancelled" if state == TicketState.CANCELLED else "scan_failed",
            ticket_id=ticket.id,
            user_id=ticket.user_id,
            kind=kind,
            stage=stage,
            error=message,
        )
        await self._record_run(ticket, result)
        await self.orchestrator.emit(
            ticket,
            "error",
            {"kind": kind, "stage": stage, "message": message, "retrying": False},
        )
        self.queue.fail(ticket, result)

    async def _record_run(self, ticket: ScanTicket, result: ScanResult) -> None:
        try:
            async with self.sessions() as db:
                await history_store.record_run(db, ticket, result)
                await db.commit()
        except SQLAlchemyError:
            logger.exception("scan_run_log_failed", ticket_id=ticket.id, user_id=ticket.user_id)

    # ------------------------------------------------------------------
    # Introspection / lifecycle
    # ------------------------------------------------------------------

    def status(self, user_id: int) -> dict[str, Any] | None:
        ticket = self.queue.active(user_id)
        return ticket.status() if ticket is not None else None

    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "active_tickets": len(self.queue),
            "running_tasks": len(self._tasks),
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "rate_limiter": self.orchestrator.limiter.stats(),
        }

    async def shutdown(self) -> None:
        """Cancel every running ticket task and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("sync_engine_stopped", cancelled_tasks=len(tasks))
