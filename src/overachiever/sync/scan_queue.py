"""Per-user admission control for scans.

At most one non-terminal ticket exists per user. A request for a user who
already has one is coalesced onto it; scheduler-triggered requests inside
the cooldown window are rejected. All methods are synchronous, so each call
is atomic on the event loop.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from overachiever.sync.models import ScanReason, ScanResult, ScanTicket, TicketState, utcnow

logger = structlog.get_logger()

REJECT_COOLDOWN = "cooldown"

# Mode upgrades are only honoured before achievement fetching starts
_UPGRADABLE_STATES = frozenset({TicketState.ADMITTED, TicketState.FETCHING_GAMES})


class AdmissionOutcome(str, Enum):
    ADMITTED = "admitted"
    COALESCED = "coalesced"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Admission:
    outcome: AdmissionOutcome
    ticket: ScanTicket | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "ticket_id": self.ticket.id if self.ticket else None,
            "reason": self.reason,
        }


class ScanQueue:
    """Owns every live ScanTicket, keyed by user."""

    def __init__(
        self,
        min_interval_seconds: float = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.min_interval = timedelta(seconds=min_interval_seconds)
        self._clock = clock
        self._tickets: dict[int, ScanTicket] = {}
        self._last_completed: dict[int, datetime] = {}

    def __len__(self) -> int:
        return len(self._tickets)

    def submit(
        self,
        user_id: int,
        reason: ScanReason,
        subscriber: str | None = None,
        force: bool = False,
    ) -> Admission:
        """Admit, coalesce or reject a scan request for ``user_id``."""
        existing = self._tickets.get(user_id)
        if existing is not None:
            if subscriber is not None:
                existing.subscribers.add(subscriber)
            if force and not existing.force and existing.state in _UPGRADABLE_STATES:
                existing.force = True
            logger.info(
                "scan_coalesced",
                ticket_id=existing.id,
                user_id=user_id,
                reason=reason.value,
                subscribers=len(existing.subscribers),
            )
            return Admission(AdmissionOutcome.COALESCED, existing)

        if reason == ScanReason.SCHEDULED and self.in_cooldown(user_id):
            logger.info("scan_rejected", user_id=user_id, reason=REJECT_COOLDOWN)
            return Admission(AdmissionOutcome.REJECTED, reason=REJECT_COOLDOWN)

        ticket = ScanTicket(
            user_id=user_id,
            reason=reason,
            force=force,
            subscribers={subscriber} if subscriber is not None else set(),
        )
        self._tickets[user_id] = ticket
        logger.info("scan_admitted", ticket_id=ticket.id, user_id=user_id, reason=reason.value, force=force)
        return Admission(AdmissionOutcome.ADMITTED, ticket)

    def in_cooldown(self, user_id: int) -> bool:
        last = self._last_completed.get(user_id)
        return last is not None and self._clock() - last < self.min_interval

    def active(self, user_id: int) -> ScanTicket | None:
        return self._tickets.get(user_id)

    def tickets(self) -> list[ScanTicket]:
        return list(self._tickets.values())

    def _remove(self, ticket: ScanTicket) -> None:
        if self._tickets.get(ticket.user_id) is ticket:
            del self._tickets[ticket.user_id]

    def complete(self, ticket: ScanTicket, result: ScanResult) -> None:
        """Remove a finished ticket, start the user's cooldown, resolve waiters."""
        self._remove(ticket)
        self._last_completed[ticket.user_id] = result.finished_at
        ticket.resolve(result)

    def fail(self, ticket: ScanTicket, result: ScanResult) -> None:
        """Remove a failed or cancelled ticket. The cooldown is not started."""
        self._remove(ticket)
        ticket.resolve(result)

    def detach(self, subscriber: str) -> list[ScanTicket]:
        """Drop ``subscriber`` everywhere; return tickets it left without subscribers."""
        orphaned: list[ScanTicket] = []
        for ticket in self._tickets.values():
            if subscriber in ticket.subscribers:
                ticket.subscribers.discard(subscriber)
                if not ticket.subscribers:
                    orphaned.append(ticket)
        return orphaned
