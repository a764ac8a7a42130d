"""Cooperative cancellation signals shared between callers and running executions."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .persistence.models import utcnow

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot signal observed by a single execution."""

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        self.canceled_by: Optional[str] = None
        self.requested_at = None
        self._event = asyncio.Event()

    @property
    def is_canceled(self) -> bool:
        return self._event.is_set()

    def cancel(self, canceled_by: Optional[str] = None) -> bool:
        """Set the signal. Returns ``False`` when it was already set."""
        if self._event.is_set():
            return False
        self.canceled_by = canceled_by
        self.requested_at = utcnow()
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class CancellationController:
    """Registry of tokens for executions that are still running."""

    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}

    def token(self, execution_id: str) -> CancellationToken:
        if execution_id not in self._tokens:
            self._tokens[execution_id] = CancellationToken(execution_id)
        return self._tokens[execution_id]

    def cancel(self, execution_id: str, canceled_by: Optional[str] = None) -> bool:
        """Signal ``execution_id``; ``False`` if it is not running or already signalled."""
        token = self._tokens.get(execution_id)
        if token is None:
            return False
        signalled = token.cancel(canceled_by)
        if signalled:
            logger.info(f"Cancellation requested for execution {execution_id}")
        return signalled

    def discard(self, execution_id: str) -> None:
        self._tokens.pop(execution_id, None)

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._tokens


__all__ = ["CancellationToken", "CancellationController"]
