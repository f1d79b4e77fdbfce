from __future__ import annotations

import asyncio
import weakref
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from decostudio.config import Settings, get_settings
from decostudio.db.models import (
    GENERATION_COMPLETED,
    GENERATION_FAILED,
    GENERATION_PENDING,
    NON_TERMINAL_STATUSES,
    TX_REFUND,
    Generation,
)
from decostudio.errors import GenerationNotFound, ValidationError
from decostudio.services.credits import CreditLedger
from decostudio.services.provider import (
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_SUCCEEDED,
    ImageJobProvider,
    JobResult,
)
from decostudio.services.storage import BlobStore, BlobStoreError
from decostudio.utils.logging import get_logger
from decostudio.utils.time import seconds_ago, utcnow


logger = get_logger('reconciler')


class StatusReconciler:
    """Single owner of terminal transitions and failure refunds.

    Both the poll path and the provider callback land in ``reconcile``. Every
    terminal write is conditional on the row still being non-terminal, and the
    refund is written in the same transaction as a winning failure transition,
    so concurrent or repeated calls refund at most once.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        provider: ImageJobProvider,
        blob_store: BlobStore,
        settings: Settings | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.provider = provider
        self.blob_store = blob_store
        self.settings = settings or get_settings()
        # One in-process finalizer per generation, so concurrent observers upload the output once.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def get(self, generation_id: str, user_id: Optional[str] = None) -> Generation:
        async with self.sessionmaker() as session:
            generation = await session.get(Generation, generation_id)
        if not generation:
            raise GenerationNotFound(generation_id)
        if user_id and generation.user_id != user_id:
            logger.warning(
                'generation_access_denied',
                generation_id=generation_id,
                requested_by=user_id,
                owned_by=generation.user_id,
            )
            raise GenerationNotFound(generation_id)
        return generation

    async def reconcile(
        self,
        generation_id: str,
        observed: Optional[JobResult] = None,
        user_id: Optional[str] = None,
    ) -> Generation:
        generation = await self.get(generation_id, user_id)
        if generation.is_terminal:
            return generation

        if observed is None:
            if not generation.provider_job_id:
                return generation
            # Provider errors propagate; retrying is the poll loop's job.
            observed = await self.provider.poll_status(generation.provider_job_id)

        if observed.state in (JOB_PENDING, JOB_PROCESSING):
            return generation

        async with self._finalize_lock(generation_id):
            # Another observer may have finalized the row while this one polled or waited.
            generation = await self.get(generation_id)
            if generation.is_terminal:
                return generation
            return await self._apply_terminal(generation, observed)

    async def _apply_terminal(self, generation: Generation, observed: JobResult) -> Generation:
        if observed.state == JOB_SUCCEEDED:
            if not observed.output_url:
                return await self._fail(generation, 'Provider returned no image')
            return await self._complete(generation, observed.output_url)
        if observed.state == JOB_FAILED:
            return await self._fail(generation, observed.reason or 'Generation failed')

        logger.warning('provider_state_unknown', generation_id=generation.id, state=observed.state)
        return generation

    def _finalize_lock(self, generation_id: str) -> asyncio.Lock:
        lock = self._locks.get(generation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[generation_id] = lock
        return lock

    async def reconcile_callback(self, payload: Dict[str, Any], generation_id: Optional[str] = None) -> Generation:
        job_id, observed = self.provider.parse_callback(payload)
        if not job_id:
            raise ValidationError('Callback carries no job id')
        if generation_id:
            # The query id only selects the row; the job it carries must be the one submitted for it.
            generation = await self.get(generation_id)
            if generation.provider_job_id and generation.provider_job_id != job_id:
                logger.warning(
                    'provider_callback_job_mismatch',
                    generation_id=generation_id,
                    job_id=job_id,
                    expected_job_id=generation.provider_job_id,
                )
                raise ValidationError(
                    'Callback job does not match the generation',
                    {'generationId': generation_id, 'jobId': job_id},
                )
        else:
            generation_id = await self._find_by_job_id(job_id)
        logger.info(
            'provider_callback_received',
            generation_id=generation_id,
            job_id=job_id,
            state=observed.state,
        )
        return await self.reconcile(generation_id, observed)

    async def sweep_stale_pending(self, older_than_seconds: Optional[float] = None) -> List[str]:
        """Fail and refund generations stranded in ``pending`` without a job."""
        threshold = self.settings.pending_stale_seconds if older_than_seconds is None else older_than_seconds
        cutoff = seconds_ago(threshold)
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(Generation.id)
                .where(Generation.status == GENERATION_PENDING)
                .where(Generation.provider_job_id.is_(None))
                .where(Generation.created_at <= cutoff)
            )
            ids = [row[0] for row in result.all()]

        failed: List[str] = []
        for generation_id in ids:
            generation = await self.get(generation_id)
            updated = await self._fail(generation, 'Submission was not confirmed')
            if updated.status == GENERATION_FAILED:
                failed.append(generation_id)
        if failed:
            logger.warning('stale_pending_swept', count=len(failed), generation_ids=failed)
        return failed

    async def watch_stale_pending(self, interval: float = 60) -> None:
        while True:
            try:
                await self.sweep_stale_pending()
            except Exception as exc:
                logger.warning('stale_sweep_failed', error=str(exc))
            await asyncio.sleep(interval)

    async def _find_by_job_id(self, job_id: str) -> str:
        async with self.sessionmaker() as session:
            result = await session.execute(select(Generation.id).where(Generation.provider_job_id == job_id))
            generation_id = result.scalar_one_or_none()
        if not generation_id:
            raise GenerationNotFound(job_id)
        return generation_id

    async def _complete(self, generation: Generation, provider_url: str) -> Generation:
        # Deterministic key: a losing concurrent upload rewrites the same object.
        key = f'outputs/{generation.user_id}/{generation.id}.jpg'
        try:
            output_url = await self.blob_store.put_from_url(provider_url, key)
        except BlobStoreError as exc:
            logger.warning('output_upload_failed', generation_id=generation.id, error=str(exc))
            output_url = provider_url

        async with self.sessionmaker() as session:
            result = await session.execute(
                update(Generation)
                .where(Generation.id == generation.id, Generation.status.in_(NON_TERMINAL_STATUSES))
                .values(status=GENERATION_COMPLETED, output_image_url=output_url, updated_at=utcnow())
                .returning(Generation.id)
                .execution_options(synchronize_session=False)
            )
            won = result.scalar_one_or_none() is not None
            await session.commit()
            current = await session.get(Generation, generation.id, populate_existing=True)

        if won:
            logger.info('generation_completed', generation_id=generation.id, output_url=output_url)
        else:
            logger.info('generation_transition_lost', generation_id=generation.id, target=GENERATION_COMPLETED)
        if current is None:
            raise GenerationNotFound(generation.id)
        return current

    async def _fail(self, generation: Generation, reason: str) -> Generation:
        async with self.sessionmaker() as session:
            result = await session.execute(
                update(Generation)
                .where(Generation.id == generation.id, Generation.status.in_(NON_TERMINAL_STATUSES))
                .values(status=GENERATION_FAILED, fail_reason=reason[:255], updated_at=utcnow())
                .returning(Generation.user_id, Generation.cost_credits)
                .execution_options(synchronize_session=False)
            )
            row = result.one_or_none()
            balance = None
            if row is not None and row.cost_credits > 0:
                ledger = CreditLedger(session)
                balance = await ledger.add(
                    row.user_id,
                    row.cost_credits,
                    TX_REFUND,
                    f'Refund: generation #{generation.id[:8]} failed',
                    generation_id=generation.id,
                    idempotency_key=f'refund:{generation.id}',
                )
            await session.commit()
            current = await session.get(Generation, generation.id, populate_existing=True)

        if row is not None:
            logger.info(
                'generation_failed_refunded',
                generation_id=generation.id,
                user_id=row.user_id,
                reason=reason,
                balance=balance,
            )
        else:
            logger.info('generation_transition_lost', generation_id=generation.id, target=GENERATION_FAILED)
        if current is None:
            raise GenerationNotFound(generation.id)
        return current
