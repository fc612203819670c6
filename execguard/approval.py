"""
Approval Channels
=================

The contract between the ExecutionGuard and whatever obtains human sign-off
for RED commands, plus three implementations:

- FutureApprovalChannel: in-process, one asyncio.Future per request, resolved
  by a messaging front-end calling resolve()
- DatabaseApprovalChannel: requests persisted in the pending_approvals table
  and answered out-of-process (e.g. `execguard approve <id>`)
- AutoApproveChannel: approves everything, for unattended setups

Every wait is bounded: an unanswered request resolves to TIMEOUT.
notify_blocked() and log_command() are best-effort; a failing notifier is
logged and never propagates.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update

from execguard.db import Database, PendingApprovalModel
from execguard.errors import UnknownApprovalError


logger = logging.getLogger(__name__)

Notifier = Callable[[str], Awaitable[None]]

# Recently finished ids remembered so late answers return False instead of
# raising UnknownApprovalError.
FINISHED_ID_HISTORY = 1024


class ApprovalOutcome(str, Enum):
    """Terminal state of an approval request."""
    APPROVED = "approved"
    DENIED = "denied"
    TIMEOUT = "timeout"


@dataclass
class ApprovalRequest:
    """A pending request for human approval."""
    id: str
    command: str
    reason: str
    timeout_seconds: float
    status: str = "pending"
    requested_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    responded_at: Optional[str] = None
    responder: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "command": self.command,
            "reason": self.reason,
            "timeout_seconds": self.timeout_seconds,
            "status": self.status,
            "requested_at": self.requested_at,
            "responded_at": self.responded_at,
            "responder": self.responder,
        }

    @classmethod
    def from_model(cls, model: PendingApprovalModel) -> "ApprovalRequest":
        """Create from a database row."""
        return cls(
            id=model.id,
            command=model.command,
            reason=model.reason,
            timeout_seconds=model.timeout_seconds,
            status=model.status,
            requested_at=model.requested_at.isoformat() if model.requested_at else "",
            responded_at=model.responded_at.isoformat() if model.responded_at else None,
            responder=model.responder,
        )


def new_approval_id() -> str:
    """Opaque token correlating a request with its answer."""
    return f"APR-{uuid.uuid4().hex[:12].upper()}"


def format_approval_message(request: ApprovalRequest) -> str:
    return (
        f"APPROVAL REQUIRED [{request.id}]\n"
        f"Command: {request.command}\n"
        f"Reason: {request.reason}\n"
        f"Timeout: {request.timeout_seconds}s"
    )


class ApprovalChannel(ABC):
    """What the ExecutionGuard needs from its environment."""

    @abstractmethod
    async def request_approval(self, command: str, reason: str, timeout_seconds: float) -> str:
        """Register a pending request and return its id without waiting."""

    @abstractmethod
    async def wait_for_approval(self, approval_id: str, timeout_seconds: float) -> ApprovalOutcome:
        """Block until the request is resolved or the timeout elapses."""

    @abstractmethod
    async def notify_blocked(self, command: str, reason: str) -> None:
        """Best-effort notice that a command was blacklisted."""

    @abstractmethod
    async def log_command(self, command: str, tier: str, excerpt: Optional[str] = None) -> None:
        """Best-effort log of a command passing through the guard."""


class _NotifyingChannel(ApprovalChannel):
    """Shared best-effort notification plumbing."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier

    async def _notify(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(message)
        except Exception as e:
            logger.warning("Approval channel notification failed: %s", e)

    async def notify_blocked(self, command: str, reason: str) -> None:
        logger.warning("Blocked command: %s (%s)", command, reason)
        await self._notify(f"BLOCKED: {command}\nReason: {reason}")

    async def log_command(self, command: str, tier: str, excerpt: Optional[str] = None) -> None:
        message = f"[{tier}] {command}"
        if excerpt:
            message += f"\n{excerpt}"
        logger.info("%s", message)
        await self._notify(message)


# =============================================================================
# In-process futures
# =============================================================================

class FutureApprovalChannel(_NotifyingChannel):
    """
    Approval requests correlated by id with asyncio futures.

    A front-end (chat bot, web hook, test) receives the request text through
    the notifier and later calls resolve(approval_id, approved).
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        finished_history: int = FINISHED_ID_HISTORY,
    ):
        super().__init__(notifier)
        self._requests: dict[str, ApprovalRequest] = {}
        self._futures: dict[str, asyncio.Future] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._finished_history = finished_history

    async def request_approval(self, command: str, reason: str, timeout_seconds: float) -> str:
        request = ApprovalRequest(
            id=new_approval_id(),
            command=command,
            reason=reason,
            timeout_seconds=timeout_seconds,
        )
        self._requests[request.id] = request
        self._futures[request.id] = asyncio.get_running_loop().create_future()
        await self._notify(format_approval_message(request))
        return request.id

    async def wait_for_approval(self, approval_id: str, timeout_seconds: float) -> ApprovalOutcome:
        future = self._futures.get(approval_id)
        if future is None:
            raise UnknownApprovalError(approval_id)

        request = self._requests[approval_id]
        try:
            outcome = await asyncio.wait_for(asyncio.shield(future), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            outcome = ApprovalOutcome.TIMEOUT
            request.status = outcome.value
        finally:
            # Resolved requests are discarded
            self._futures.pop(approval_id, None)
            self._requests.pop(approval_id, None)
            self._mark_finished(approval_id)
        return outcome

    def _mark_finished(self, approval_id: str) -> None:
        self._finished[approval_id] = None
        while len(self._finished) > self._finished_history:
            self._finished.popitem(last=False)

    def resolve(self, approval_id: str, approved: bool, responder: str = "human") -> bool:
        """
        Answer a pending request.

        Returns:
            False if the request already resolved or timed out
        """
        if approval_id in self._finished:
            return False
        future = self._futures.get(approval_id)
        if future is None:
            raise UnknownApprovalError(approval_id)
        if future.done():
            return False

        outcome = ApprovalOutcome.APPROVED if approved else ApprovalOutcome.DENIED
        request = self._requests[approval_id]
        request.status = outcome.value
        request.responder = responder
        request.responded_at = datetime.now(timezone.utc).isoformat()
        future.set_result(outcome)
        return True

    def get_pending(self) -> list[ApprovalRequest]:
        """Requests still waiting for an answer."""
        return [
            self._requests[approval_id]
            for approval_id, future in self._futures.items()
            if not future.done()
        ]


# =============================================================================
# Database-backed queue
# =============================================================================

class DatabaseApprovalChannel(_NotifyingChannel):
    """
    Approval requests stored in the pending_approvals table.

    wait_for_approval() polls the row until another process writes a
    decision via respond(), or marks it 'timeout' once the deadline passes.
    """

    def __init__(
        self,
        database: Database,
        poll_interval: float = 1.0,
        notifier: Optional[Notifier] = None,
    ):
        super().__init__(notifier)
        self._session_maker = database.session_maker
        self.poll_interval = poll_interval

    async def request_approval(self, command: str, reason: str, timeout_seconds: float) -> str:
        approval_id = new_approval_id()
        async with self._session_maker() as session:
            session.add(PendingApprovalModel(
                id=approval_id,
                command=command,
                reason=reason,
                timeout_seconds=timeout_seconds,
                status="pending",
            ))
            await session.commit()

        request = ApprovalRequest(approval_id, command, reason, timeout_seconds)
        logger.info("Approval requested: %s (%s)", approval_id, command)
        await self._notify(
            format_approval_message(request)
            + f"\nRespond with: execguard approve {approval_id} | execguard deny {approval_id}"
        )
        return approval_id

    async def wait_for_approval(self, approval_id: str, timeout_seconds: float) -> ApprovalOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            request = await self.get_request(approval_id)
            if request is None:
                raise UnknownApprovalError(approval_id)
            if request.status != "pending":
                return ApprovalOutcome(request.status)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

        # Only expire if nobody answered in the meantime
        if await self._set_status(approval_id, ApprovalOutcome.TIMEOUT, responder=None):
            return ApprovalOutcome.TIMEOUT
        request = await self.get_request(approval_id)
        return ApprovalOutcome(request.status)

    async def respond(self, approval_id: str, approved: bool, responder: str = "human") -> bool:
        """
        Record a decision for a pending request.

        Returns:
            False if the request was no longer pending
        """
        if await self.get_request(approval_id) is None:
            raise UnknownApprovalError(approval_id)
        outcome = ApprovalOutcome.APPROVED if approved else ApprovalOutcome.DENIED
        return await self._set_status(approval_id, outcome, responder=responder)

    async def get_request(self, approval_id: str) -> Optional[ApprovalRequest]:
        async with self._session_maker() as session:
            model = await session.get(PendingApprovalModel, approval_id)
            return ApprovalRequest.from_model(model) if model else None

    async def get_pending(self) -> list[ApprovalRequest]:
        """Requests still waiting for an answer, oldest first."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(PendingApprovalModel)
                .where(PendingApprovalModel.status == "pending")
                .order_by(PendingApprovalModel.requested_at)
            )
            return [ApprovalRequest.from_model(m) for m in result.scalars().all()]

    async def _set_status(self, approval_id: str, outcome: ApprovalOutcome, responder: Optional[str]) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                update(PendingApprovalModel)
                .where(PendingApprovalModel.id == approval_id)
                .where(PendingApprovalModel.status == "pending")
                .values(
                    status=outcome.value,
                    responder=responder,
                    responded_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
            return result.rowcount > 0


# =============================================================================
# Auto-approve
# =============================================================================

class AutoApproveChannel(_NotifyingChannel):
    """Approves every request immediately."""

    async def request_approval(self, command: str, reason: str, timeout_seconds: float) -> str:
        approval_id = new_approval_id()
        logger.warning("Auto-approving RED command: %s", command)
        await self._notify(f"AUTO-APPROVED [{approval_id}]: {command}")
        return approval_id

    async def wait_for_approval(self, approval_id: str, timeout_seconds: float) -> ApprovalOutcome:
        return ApprovalOutcome.APPROVED
