from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from decostudio import catalog
from decostudio.config import Settings, get_settings
from decostudio.db.models import (
    GENERATION_COMPLETED,
    GENERATION_PENDING,
    GENERATION_PROCESSING,
    TX_REFUND,
    Generation,
    new_id,
)
from decostudio.errors import (
    GenerationNotFound,
    ProviderSubmissionFailure,
    ValidationError,
)
from decostudio.services.credits import CreditLedger
from decostudio.services.provider import ImageJobProvider, ProviderError
from decostudio.services.storage import BlobStore, BlobStoreError, CONTENT_TYPE_EXTENSIONS, extension_for
from decostudio.utils.logging import get_logger
from decostudio.utils.time import utcnow


logger = get_logger('generation')


@dataclass
class ImageUpload:
    data: bytes
    content_type: str = 'image/jpeg'
    filename: Optional[str] = None


class GenerationOrchestrator:
    """Creates generations: charge, store the input, submit the job.

    ``create`` only waits for submission. Completion is observed later by the
    StatusReconciler through polling or the provider callback.
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

    def _validate_image(self, image: ImageUpload) -> None:
        if not image.data:
            raise ValidationError('Image is required')
        if image.content_type not in CONTENT_TYPE_EXTENSIONS:
            raise ValidationError(
                f'Unsupported image type: {image.content_type}',
                {'allowed': sorted(CONTENT_TYPE_EXTENSIONS)},
            )
        if len(image.data) > self.settings.max_upload_bytes:
            raise ValidationError(
                'Image is too large',
                {'maxBytes': self.settings.max_upload_bytes, 'size': len(image.data)},
            )

    async def create(
        self,
        user_id: str,
        style_slug: str,
        room_type: str,
        transform_mode: Optional[str],
        image: ImageUpload,
    ) -> Generation:
        style = catalog.get_style(style_slug)
        room = catalog.get_room(room_type)
        mode = catalog.get_transform_mode(transform_mode)
        self._validate_image(image)

        generation_id = new_id()
        cost = self.settings.generation_cost_credits

        # The credit is taken and committed before any network call.
        async with self.sessionmaker() as session:
            ledger = CreditLedger(session)
            balance = await ledger.deduct(
                user_id,
                cost,
                f'Generation #{generation_id[:8]}',
                generation_id=generation_id,
                idempotency_key=f'usage:{generation_id}',
            )
            await session.commit()

        logger.info(
            'generation_charged',
            generation_id=generation_id,
            user_id=user_id,
            style=style.slug,
            room=room.slug,
            mode=mode.key,
            balance=balance,
        )

        prompt = catalog.build_prompt(style, room, mode)
        try:
            input_url = await self.blob_store.put(
                image.data,
                image.content_type,
                key=f'inputs/{user_id}/{generation_id}{extension_for(image.content_type)}',
            )
            await self._insert_pending(generation_id, user_id, style.slug, room.slug, mode.key, prompt, cost, input_url)
            job_id = await self.provider.submit(
                prompt,
                input_url,
                catalog.build_params(mode),
                generation_id=generation_id,
            )
        except Exception as exc:
            finalized = await self._compensate(user_id, generation_id, cost, exc)
            if finalized is not None and finalized.status == GENERATION_COMPLETED:
                return finalized
            if finalized is not None or isinstance(exc, (ProviderError, BlobStoreError)):
                raise ProviderSubmissionFailure(
                    'Image generation could not be started. Your credit was refunded.',
                    {'generationId': generation_id},
                ) from exc
            raise

        return await self._mark_processing(generation_id, job_id)

    async def _insert_pending(
        self,
        generation_id: str,
        user_id: str,
        style_slug: str,
        room_type: str,
        transform_mode: str,
        prompt: str,
        cost: int,
        input_url: str,
    ) -> None:
        now = utcnow()
        async with self.sessionmaker() as session:
            session.add(
                Generation(
                    id=generation_id,
                    user_id=user_id,
                    style_slug=style_slug,
                    room_type=room_type,
                    transform_mode=transform_mode,
                    prompt=prompt,
                    cost_credits=cost,
                    input_image_url=input_url,
                    status=GENERATION_PENDING,
                    hd_unlocked=False,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

    async def _mark_processing(self, generation_id: str, job_id: str) -> Generation:
        async with self.sessionmaker() as session:
            result = await session.execute(
                update(Generation)
                .where(Generation.id == generation_id, Generation.status == GENERATION_PENDING)
                .values(status=GENERATION_PROCESSING, provider_job_id=job_id, updated_at=utcnow())
                .returning(Generation.id)
                .execution_options(synchronize_session=False)
            )
            moved = result.scalar_one_or_none() is not None
            await session.commit()
            generation = await session.get(Generation, generation_id, populate_existing=True)

        if not moved:
            # A callback finalized the job before the submission was recorded.
            logger.info('generation_finalized_before_processing', generation_id=generation_id, job_id=job_id)
        else:
            logger.info('generation_submitted', generation_id=generation_id, job_id=job_id)
        if generation is None:
            raise GenerationNotFound(generation_id)
        return generation

    async def _compensate(self, user_id: str, generation_id: str, cost: int, exc: Exception) -> Optional[Generation]:
        """Refund a submission that did not go through.

        Returns the row instead when the reconciler already moved it to a
        terminal state while the submission was in flight. That transition
        owns the refund, so nothing is written here.
        """
        async with self.sessionmaker() as session:
            result = await session.execute(
                delete(Generation)
                .where(Generation.id == generation_id, Generation.status == GENERATION_PENDING)
                .returning(Generation.id)
                .execution_options(synchronize_session=False)
            )
            removed = result.scalar_one_or_none() is not None
            finalized = None
            if not removed:
                # No row at all means the failure came before the pending insert.
                finalized = await session.get(Generation, generation_id, populate_existing=True)
            if finalized is None:
                ledger = CreditLedger(session)
                balance = await ledger.add(
                    user_id,
                    cost,
                    TX_REFUND,
                    f'Refund: generation #{generation_id[:8]} could not be submitted',
                    generation_id=generation_id,
                    idempotency_key=f'refund:{generation_id}',
                )
            await session.commit()

        if finalized is not None:
            logger.warning(
                'generation_submission_failed_after_finalize',
                generation_id=generation_id,
                user_id=user_id,
                status=finalized.status,
                error=str(exc),
            )
            return finalized
        logger.warning(
            'generation_submission_compensated',
            generation_id=generation_id,
            user_id=user_id,
            balance=balance,
            error=str(exc),
        )
        return None

    async def get(self, generation_id: str, user_id: Optional[str] = None) -> Generation:
        async with self.sessionmaker() as session:
            generation = await session.get(Generation, generation_id)
        if not generation or (user_id and generation.user_id != user_id):
            raise GenerationNotFound(generation_id)
        return generation

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Generation]:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(Generation)
                .where(Generation.user_id == user_id)
                .order_by(Generation.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def cancel(self, user_id: str, generation_id: str) -> Generation:
        # The provider has no reliable cancel; the request is accepted and recorded only.
        generation = await self.get(generation_id, user_id)
        logger.info('generation_cancel_requested', generation_id=generation_id, status=generation.status)
        return generation
