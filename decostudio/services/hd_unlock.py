from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from decostudio.config import Settings, get_settings
from decostudio.db.models import GENERATION_COMPLETED, Generation
from decostudio.errors import (
    ForbiddenError,
    GenerationNotFound,
    GenerationNotReady,
    PaymentError,
)
from decostudio.services.credits import CreditLedger
from decostudio.services.stripe_gateway import GatewayError, PaymentGateway
from decostudio.utils.logging import get_logger
from decostudio.utils.time import utcnow


logger = get_logger('hd_unlock')

HD_UNLOCK_INTENT = 'hd_unlock'


@dataclass
class UnlockCheckout:
    checkout_url: str
    session_id: str
    already_unlocked: bool


@dataclass
class UnlockResult:
    generation: Generation
    newly_unlocked: bool
    credits_remaining: Optional[int] = None


async def mark_hd_unlocked(session: AsyncSession, generation_id: str, payment_session_id: Optional[str]) -> bool:
    """Conditional unlock write; True only for the call that flipped the flag."""
    result = await session.execute(
        update(Generation)
        .where(Generation.id == generation_id, Generation.hd_unlocked.is_(False))
        .values(hd_unlocked=True, payment_session_id=payment_session_id, updated_at=utcnow())
        .returning(Generation.id)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none() is not None


class HdUnlockService:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        settings: Settings | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.gateway = gateway
        self.settings = settings or get_settings()

    async def _load_owned(self, session: AsyncSession, user_id: str, generation_id: str) -> Generation:
        generation = await session.get(Generation, generation_id, populate_existing=True)
        if not generation:
            raise GenerationNotFound(generation_id)
        if generation.user_id != user_id:
            logger.warning(
                'hd_unlock_forbidden',
                generation_id=generation_id,
                requested_by=user_id,
                owned_by=generation.user_id,
            )
            raise ForbiddenError('You do not own this image')
        return generation

    async def request_unlock(
        self,
        user_id: str,
        generation_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> UnlockCheckout:
        async with self.sessionmaker() as session:
            generation = await self._load_owned(session, user_id, generation_id)

        if generation.hd_unlocked:
            return UnlockCheckout('', generation.payment_session_id or '', True)
        if generation.status != GENERATION_COMPLETED:
            raise GenerationNotReady('Only completed generations can be unlocked', {'status': generation.status})

        try:
            checkout = await self.gateway.create_checkout_session(
                user_id,
                self.settings.stripe_price_hd_unlock,
                {'type': HD_UNLOCK_INTENT, 'generationId': generation_id, 'userId': user_id},
                success_url,
                cancel_url,
                customer_email=customer_email,
            )
        except GatewayError as exc:
            raise PaymentError('Could not create the payment session', {'reason': str(exc)}) from exc

        logger.info('hd_unlock_checkout_created', generation_id=generation_id, session_id=checkout.session_id)
        return UnlockCheckout(checkout.url, checkout.session_id, False)

    async def apply_paid_unlock(self, payment_session_id: str, generation_id: str) -> UnlockResult:
        async with self.sessionmaker() as session:
            unlocked = await mark_hd_unlocked(session, generation_id, payment_session_id)
            await session.commit()
            generation = await session.get(Generation, generation_id, populate_existing=True)
        if generation is None:
            raise GenerationNotFound(generation_id)
        if unlocked:
            logger.info('hd_unlocked', generation_id=generation_id, session_id=payment_session_id)
        else:
            logger.info('hd_unlock_already_applied', generation_id=generation_id, session_id=payment_session_id)
        return UnlockResult(generation, unlocked)

    async def confirm(self, payment_session_id: str, generation_id: Optional[str] = None) -> UnlockResult:
        try:
            checkout = await self.gateway.retrieve_session(payment_session_id)
        except GatewayError as exc:
            raise PaymentError('Invalid payment session', {'reason': str(exc)}) from exc

        if checkout.payment_status != 'paid':
            raise PaymentError('Payment not completed', {'paymentStatus': checkout.payment_status})
        if checkout.metadata.get('type') != HD_UNLOCK_INTENT:
            raise PaymentError('Payment session is not an HD unlock')
        session_generation = checkout.metadata.get('generationId') or ''
        if generation_id and session_generation != generation_id:
            raise PaymentError('Payment session does not match this generation')
        if not session_generation:
            raise PaymentError('Payment session carries no generation')

        return await self.apply_paid_unlock(payment_session_id, session_generation)

    async def unlock_with_credit(self, user_id: str, generation_id: str) -> UnlockResult:
        cost = self.settings.hd_unlock_cost_credits
        async with self.sessionmaker() as session:
            generation = await self._load_owned(session, user_id, generation_id)
            if generation.hd_unlocked:
                return UnlockResult(generation, False)
            if generation.status != GENERATION_COMPLETED:
                raise GenerationNotReady('Only completed generations can be unlocked', {'status': generation.status})

            ledger = CreditLedger(session)
            if not await mark_hd_unlocked(session, generation_id, None):
                await session.rollback()
                generation = await session.get(Generation, generation_id, populate_existing=True)
                return UnlockResult(generation, False)
            try:
                balance = await ledger.deduct(
                    user_id,
                    cost,
                    f'HD unlock #{generation_id[:8]}',
                    generation_id=generation_id,
                    idempotency_key=f'hd:{generation_id}',
                )
            except Exception:
                await session.rollback()
                raise
            await session.commit()
            generation = await session.get(Generation, generation_id, populate_existing=True)

        logger.info('hd_unlocked_with_credit', generation_id=generation_id, user_id=user_id, balance=balance)
        return UnlockResult(generation, True, balance)
