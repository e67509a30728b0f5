"""
gateway/correlator.py — Request Correlator

Maps each outstanding request id to exactly one resolution slot
(an asyncio.Future plus its deadline timer). Every slot settles once:
by a matching response, a remote error, its deadline, or cancel_all().
Whichever path arrives first wins; the others find the entry gone and
do nothing.

All methods must be called on the event loop that owns the correlator.
The receive loop (resolve) and the send path (register) both run there,
so the pending map needs no lock.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from webot.exceptions import ConnectionClosed, RemoteError, TimeoutExceeded
from webot.gateway.protocol import ErrorShape
from webot.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass
class PendingRequest:
    id: str
    future: asyncio.Future
    timeout: float
    created_at: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def deadline(self) -> float:
        return self.created_at + self.timeout


class RequestCorrelator:
    """Single owner of the pending-request set."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self._default_timeout = default_timeout
        self._pending: dict[str, PendingRequest] = {}

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def register(self, request_id: str, timeout: Optional[float] = None) -> asyncio.Future:
        """
        Create a pending slot for request_id and start its deadline timer.

        Raises ValueError if request_id is already outstanding.
        """
        if request_id in self._pending:
            raise ValueError(f"Request id already outstanding: {request_id}")

        loop = asyncio.get_running_loop()
        timeout = self._default_timeout if timeout is None else timeout
        pending = PendingRequest(id=request_id, future=loop.create_future(), timeout=timeout)
        pending.timer = loop.call_later(timeout, self._expire, request_id)
        self._pending[request_id] = pending
        log.debug("correlator.registered", request_id=request_id, timeout=timeout)
        return pending.future

    def resolve(
        self,
        request_id: str,
        ok: bool,
        payload: Any = None,
        error: Optional[ErrorShape] = None,
    ) -> bool:
        """
        Settle the slot for request_id. Returns False when no slot exists
        (late or duplicate response), which is not an error.
        """
        pending = self._take(request_id)
        if pending is None:
            log.debug("correlator.unmatched_response", request_id=request_id)
            return False

        if ok:
            self._settle(pending, result=payload)
        else:
            err = error or ErrorShape(code=0, message="Request failed")
            self._settle(pending, exc=RemoteError(err.code, err.message))
        return True

    def cancel_all(self, reason: Optional[str] = None) -> int:
        """
        Fail every outstanding slot with ConnectionClosed and clear the map.
        Idempotent; returns the number of slots cancelled.
        """
        pendings = list(self._pending.values())
        self._pending.clear()
        for pending in pendings:
            if pending.timer is not None:
                pending.timer.cancel()
            self._settle(pending, exc=ConnectionClosed(reason))
        if pendings:
            log.info("correlator.cancelled_all", count=len(pendings), reason=reason)
        return len(pendings)

    def discard(self, request_id: str) -> Optional[asyncio.Future]:
        """Remove a slot without settling it; the caller owns the future."""
        pending = self._take(request_id)
        return pending.future if pending else None

    # ─────────────────────────────────────────────────────────────────────────

    def _take(self, request_id: str) -> Optional[PendingRequest]:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        log.warning("correlator.timeout", request_id=request_id, timeout=pending.timeout)
        self._settle(pending, exc=TimeoutExceeded(request_id, pending.timeout))

    @staticmethod
    def _settle(
        pending: PendingRequest,
        result: Any = None,
        exc: Optional[BaseException] = None,
    ) -> None:
        fut = pending.future
        if fut.done():
            return
        if exc is not None:
            fut.set_exception(exc)
        else:
            fut.set_result(result)
