"""
Correlation of responses with the requests waiting for them.

The read loop calls resolve()/dispatch_notification(); caller threads call
register()/cancel(). A single lock guards the id -> PendingRequest map and is
never held while a caller waits or while a notification sink runs. An entry
is delivered to before the lock is released, so once it is gone from the map
its waiter is guaranteed to have an outcome.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional, Union

from .errors import (
    DuplicateIdError,
    MCPError,
    MCPTimeoutError,
    RequestCancelledError,
    TransportClosedError,
    UnmatchedResponseError,
)
from .types import Notification, RequestId, Response

logger = logging.getLogger('mcplink')

NotificationSink = Callable[[Notification], None]


def normalize_id(id_value: Any) -> Any:
    """
    Normalize a JSON-RPC ID for consistent dictionary key usage.

    Whole-number floats collapse to int so that 1 and 1.0 match; strings are
    left alone so that "1" and 1 stay distinct.
    """
    if isinstance(id_value, float) and id_value.is_integer():
        return int(id_value)
    return id_value


class PendingRequest:
    """
    One-shot slot for a single in-flight request.

    The first call to deliver() wins; the waiting caller is woken exactly once
    and later deliveries are ignored.
    """

    def __init__(self, request_id: RequestId, timeout: Optional[float] = None) -> None:
        self.request_id = request_id
        self.deadline = None if timeout is None else time.monotonic() + timeout
        self._event = threading.Event()
        self._outcome: Union[Response, BaseException, None] = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None if there is no deadline."""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def deliver(self, outcome: Union[Response, BaseException]) -> bool:
        if self._event.is_set():
            return False
        self._outcome = outcome
        self._event.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> Response:
        """
        Block until the request resolves.

        Args:
            timeout: Seconds to wait. Defaults to the time left before the
                    request's own deadline (forever if it has none).

        Returns:
            The server's Response, whether it carries a result or an error.

        Raises:
            MCPTimeoutError: If nothing was delivered in time. The entry stays
                             registered; the caller is expected to cancel it.
            MCPError: Whatever was delivered instead of a response
                      (cancellation, transport failure).
        """
        if timeout is None:
            timeout = self.remaining()
        if not self._event.wait(timeout):
            raise MCPTimeoutError(
                f"Timeout waiting for response to request {self.request_id}",
                request_id=self.request_id,
            )
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome


class CorrelationTable:
    """Maps outstanding request ids to the slots their callers wait on."""

    def __init__(self, notification_sink: Optional[NotificationSink] = None) -> None:
        self.notification_sink = notification_sink
        self._pending: dict[Any, PendingRequest] = {}
        self._lock = threading.Lock()
        self._closed_with: Optional[MCPError] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, request_id: Any) -> bool:
        with self._lock:
            return normalize_id(request_id) in self._pending

    def pending_ids(self) -> list[Any]:
        with self._lock:
            return list(self._pending)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed_with is not None

    def register(self, request_id: RequestId, timeout: Optional[float] = None) -> PendingRequest:
        """
        Create the pending slot for a request about to be sent.

        Raises:
            DuplicateIdError: If a request with this id is still pending.
            TransportError: If the table was drained because the connection died.
        """
        key = normalize_id(request_id)
        with self._lock:
            if self._closed_with is not None:
                raise self._closed_with
            if key in self._pending:
                raise DuplicateIdError(request_id)
            pending = PendingRequest(request_id, timeout)
            self._pending[key] = pending
        return pending

    def resolve(self, response: Response) -> None:
        """
        Hand a response to the request waiting for it.

        Raises:
            UnmatchedResponseError: If no request with this id is pending. The
                                    response is dropped; pending requests are
                                    not affected.
        """
        with self._lock:
            pending = self._pending.pop(normalize_id(response.id), None)
            if pending is not None:
                pending.deliver(response)
        if pending is None:
            raise UnmatchedResponseError(response.id)

    def dispatch_notification(self, notification: Notification) -> None:
        sink = self.notification_sink
        if sink is None:
            return
        try:
            sink(notification)
        except Exception as e:
            logger.error("Exception in notification handler for %s: %s", notification.method, e)

    def cancel(self, request_id: RequestId, reason: Optional[BaseException] = None) -> bool:
        """
        Abandon a pending request and wake its caller.

        Args:
            request_id: The request to cancel.
            reason: Exception delivered to the waiter. Defaults to
                    RequestCancelledError.

        Returns:
            True if the request was pending, False if it had already resolved.
        """
        with self._lock:
            pending = self._pending.pop(normalize_id(request_id), None)
            if pending is None:
                return False
            pending.deliver(reason or RequestCancelledError(f"Request {request_id} was cancelled"))
        return True

    def drain_all(self, error: Optional[MCPError] = None) -> int:
        """
        Fail every pending request with a terminal error and refuse new ones.

        Returns:
            The number of requests that were failed.
        """
        if error is None:
            error = TransportClosedError("Connection closed")
        with self._lock:
            if self._closed_with is None:
                self._closed_with = error
            pending = list(self._pending.values())
            self._pending.clear()
            for entry in pending:
                entry.deliver(error)
        if pending:
            logger.debug("Drained %d pending request(s): %s", len(pending), error)
        return len(pending)
