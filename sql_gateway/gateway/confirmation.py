"""
Confirmation gate for irreversible writes.

Lifecycle of one write statement:

    VALIDATED ──► EXECUTED                          (not flagged)
    VALIDATED ──► PREVIEW_OFFERED ──► CONFIRMED ──► EXECUTED
    VALIDATED ──► REJECTED                          (no reliable preview)

A flagged statement is parked as a pending ticket keyed by
(tenant, actor, sub-partition, normalised rewritten SQL).  A resubmission with
``confirm=true`` that re-validates to the same key claims the ticket exactly
once while it is still live.  Anything else is treated as a first submission.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from sql_gateway.core.context import TenantContext
from sql_gateway.core.logging import get_logger
from sql_gateway.core.utils import fingerprint

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300  # 5 minutes


class GateState(str, Enum):
    VALIDATED = "validated"
    PREVIEW_OFFERED = "preview_offered"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"
    REJECTED = "rejected"


_TRANSITIONS: dict[GateState, set[GateState]] = {
    GateState.VALIDATED: {GateState.EXECUTED, GateState.PREVIEW_OFFERED, GateState.REJECTED},
    GateState.PREVIEW_OFFERED: {GateState.CONFIRMED},
    GateState.CONFIRMED: {GateState.EXECUTED},
    GateState.EXECUTED: set(),
    GateState.REJECTED: set(),
}


class InvalidGateTransition(RuntimeError):
    """Raised on a state change the confirmation lifecycle does not allow."""


@dataclass
class GateTicket:
    """One statement's position in the confirmation lifecycle."""
    key: str
    sql: str
    state: GateState = GateState.VALIDATED
    affected_rows: int | None = None
    created_at: float = field(default_factory=time.time)

    def advance(self, target: GateState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidGateTransition(f"{self.state.value} -> {target.value} is not allowed")
        logger.debug("Gate %s: %s -> %s", self.key[:12], self.state.value, target.value)
        self.state = target


def confirmation_key(context: TenantContext, sql: str) -> str:
    return fingerprint(context.tenant_id, context.actor_id, context.sub_partition_id, sql)


class ConfirmationGate:
    """Thread-safe store of pending confirmations.

    Parameters
    ----------
    ttl : float
        Seconds a preview stays confirmable.
    """

    def __init__(self, ttl: float = DEFAULT_TTL_SECONDS):
        self._pending: dict[str, GateTicket] = {}
        self._lock = threading.Lock()
        self._ttl = ttl

    def open(self, context: TenantContext, sql: str) -> GateTicket:
        """Start a ticket for a freshly validated statement."""
        return GateTicket(key=confirmation_key(context, sql), sql=sql)

    def offer(self, ticket: GateTicket, affected_rows: int) -> GateTicket:
        """Park *ticket* as PREVIEW_OFFERED until confirmed or expired."""
        ticket.advance(GateState.PREVIEW_OFFERED)
        ticket.affected_rows = affected_rows
        ticket.created_at = time.time()
        with self._lock:
            self._purge_expired()
            self._pending[ticket.key] = ticket
        logger.info("Confirmation pending key=%s affected_rows=%d", ticket.key[:12], affected_rows)
        return ticket

    def claim(self, context: TenantContext, sql: str) -> GateTicket | None:
        """Consume the live pending ticket for this caller and statement, if any."""
        key = confirmation_key(context, sql)
        with self._lock:
            ticket = self._pending.pop(key, None)
        if ticket is None:
            return None
        if self._expired(ticket):
            logger.info("Confirmation expired key=%s", key[:12])
            return None
        ticket.advance(GateState.CONFIRMED)
        return ticket

    def pending_count(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._pending)

    # ── Internals ───────────────────────────────────────

    def _expired(self, ticket: GateTicket) -> bool:
        return (time.time() - ticket.created_at) > self._ttl

    def _purge_expired(self) -> None:
        expired = [k for k, t in self._pending.items() if self._expired(t)]
        for k in expired:
            del self._pending[k]
