"""Single-slot waits for user responses.

A caller that needs an answer before continuing (rather than pausing the
workflow) registers a wait keyed by message id, pushes the question through
the event broadcaster and awaits the answer. Waits expire after a timeout,
are rejected when their workflow is cancelled, and a periodic sweep removes
any slot that has lived past the stale age.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar_agentflow.core.messages import new_message_id
from litestar_agentflow.exceptions import ElicitationCancelledError, ElicitationTimeoutError

if TYPE_CHECKING:
    from litestar_agentflow.core.protocols import EventBroadcaster

__all__ = ["ElicitationWaitRegistry", "PendingResponse"]

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0
STALE_AGE = 600.0


@dataclass
class PendingResponse:
    """A registered wait slot.

    Attributes:
        message_id: Key of the slot.
        workflow_id: Workflow the question belongs to.
        future: Resolved with the answer or failed with the rejection reason.
        created_at: Monotonic registration time.
    """

    message_id: str
    workflow_id: str
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)


class ElicitationWaitRegistry:
    """Registry of pending user-response waits.

    Attributes:
        broadcaster: Event broadcaster used to deliver questions, if any.
        default_timeout: Timeout in seconds applied when a call gives none.
        stale_age: Age in seconds after which :meth:`sweep_stale` drops a slot.
    """

    def __init__(
        self,
        broadcaster: EventBroadcaster | None = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        stale_age: float = STALE_AGE,
    ) -> None:
        """Initialize the registry.

        Args:
            broadcaster: Event broadcaster used to deliver questions.
            default_timeout: Default wait in seconds.
            stale_age: Sweep threshold in seconds.
        """
        self.broadcaster = broadcaster
        self.default_timeout = default_timeout
        self.stale_age = stale_age
        self._pending: dict[str, PendingResponse] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, message_id: str) -> bool:
        return message_id in self._pending

    async def send_and_wait(
        self,
        workflow_id: str,
        event_type: str,
        data: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        """Send a question and wait for its answer.

        Args:
            workflow_id: Workflow the question belongs to.
            event_type: Event name delivered to the client.
            data: Question payload; a ``messageId`` is added.
            timeout: Seconds to wait; defaults to ``default_timeout``.

        Returns:
            Whatever the client passed to :meth:`handle_user_response`.

        Raises:
            ElicitationTimeoutError: If no answer arrives in time.
            ElicitationCancelledError: If the wait is cancelled first, or a newer
                wait registers the same ``messageId``.
        """
        message_id = data.get("messageId") or new_message_id()
        wait_for = self.default_timeout if timeout is None else timeout
        previous = self._pending.pop(message_id, None)
        if previous is not None:
            logger.warning("Replacing pending wait for message %s", message_id)
            self._reject(previous, "Superseded by a newer wait for the same message")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        pending = PendingResponse(message_id=message_id, workflow_id=workflow_id, future=future)
        self._pending[message_id] = pending

        if self.broadcaster is not None:
            payload = {**data, "messageId": message_id, "workflowId": workflow_id, "requiresResponse": True}
            try:
                await self.broadcaster.trigger(f"workflow-{workflow_id}", event_type, payload)
            except Exception:
                logger.exception("Failed to deliver %s for workflow %s", event_type, workflow_id)

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=wait_for)
        except TimeoutError as exc:
            if not future.done():
                future.cancel()
            raise ElicitationTimeoutError(message_id, wait_for) from exc
        finally:
            if self._pending.get(message_id) is pending:
                del self._pending[message_id]

    def handle_user_response(self, message_id: str, response: Any) -> bool:
        """Resolve a pending wait with the user's answer.

        Returns:
            True if a pending wait was resolved, False if none was registered.
        """
        pending = self._pending.pop(message_id, None)
        if pending is None or pending.future.done():
            logger.warning("No pending response for message %s", message_id)
            return False
        pending.future.set_result(response)
        return True

    def cancel_pending_response(self, message_id: str, reason: str = "Response cancelled") -> bool:
        """Reject one pending wait.

        Returns:
            True if a wait was rejected.
        """
        pending = self._pending.pop(message_id, None)
        if pending is None:
            return False
        self._reject(pending, reason)
        return True

    def cancel_workflow_responses(self, workflow_id: str, reason: str = "Workflow cancelled") -> int:
        """Reject every pending wait registered under a workflow.

        Returns:
            Number of waits rejected.
        """
        message_ids = [key for key, pending in self._pending.items() if pending.workflow_id == workflow_id]
        for message_id in message_ids:
            self._reject(self._pending.pop(message_id), reason)
        if message_ids:
            logger.info("Cancelled %d pending responses for workflow %s", len(message_ids), workflow_id)
        return len(message_ids)

    def sweep_stale(self, max_age: float | None = None) -> int:
        """Drop slots older than the stale age.

        Returns:
            Number of slots removed.
        """
        cutoff = time.monotonic() - (self.stale_age if max_age is None else max_age)
        stale = [key for key, pending in self._pending.items() if pending.created_at < cutoff]
        for message_id in stale:
            self._reject(self._pending.pop(message_id), "Response wait expired")
        if stale:
            logger.warning("Swept %d stale response waits", len(stale))
        return len(stale)

    @staticmethod
    def _reject(pending: PendingResponse, reason: str) -> None:
        if not pending.future.done():
            pending.future.set_exception(ElicitationCancelledError(reason))
