from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from decostudio.db.models import Generation
from decostudio.errors import ProviderTimeout
from decostudio.services.provider import ProviderError
from decostudio.services.reconciler import StatusReconciler
from decostudio.utils.logging import get_logger


logger = get_logger('poller')


class StatusPoller:
    """Bounded client-side wait for a generation to reach a terminal state.

    Attempts never overlap: each reconcile completes before the delay starts.
    Running out of attempts raises ProviderTimeout and leaves the generation
    and the ledger untouched; a later callback or status check still
    finalizes it.
    """

    def __init__(
        self,
        reconciler: StatusReconciler,
        max_attempts: int = 40,
        interval_seconds: float = 3.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.reconciler = reconciler
        self.max_attempts = max(1, max_attempts)
        self.interval_seconds = interval_seconds
        self._sleep = sleep

    async def _wait(self, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await self._sleep(self.interval_seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def wait_for_terminal(
        self,
        generation_id: str,
        user_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Generation:
        generation: Optional[Generation] = None
        for attempt in range(1, self.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info('poll_cancelled', generation_id=generation_id, attempt=attempt)
                return generation or await self.reconciler.get(generation_id, user_id)

            try:
                generation = await self.reconciler.reconcile(generation_id, user_id=user_id)
            except ProviderError as exc:
                logger.warning(
                    'poll_attempt_failed',
                    generation_id=generation_id,
                    attempt=attempt,
                    status_code=exc.status_code,
                    error=str(exc),
                )
            else:
                if generation.is_terminal:
                    return generation

            if attempt < self.max_attempts:
                await self._wait(cancel_event)

        logger.info('poll_timeout', generation_id=generation_id, attempts=self.max_attempts)
        raise ProviderTimeout(generation_id, self.max_attempts)
