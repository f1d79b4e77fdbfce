from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from decostudio.db.models import TX_PURCHASE
from decostudio.errors import GenerationNotFound, PaymentError, PaymentVerificationFailure, ValidationError
from decostudio.services.credits import CreditLedger
from decostudio.services.hd_unlock import HD_UNLOCK_INTENT, HdUnlockService
from decostudio.services.payments import CREDITS_PURCHASE_INTENT, get_pack
from decostudio.services.stripe_gateway import GatewayVerificationError, PaymentEvent, PaymentGateway
from decostudio.utils.logging import get_logger


logger = get_logger('payment_webhooks')

CHECKOUT_COMPLETED = 'checkout.session.completed'
PAID_STATUSES = {'paid', 'no_payment_required'}


@dataclass
class WebhookOutcome:
    processed: bool
    event_type: str
    action: Optional[str] = None
    duplicate: bool = False


class PaymentWebhookProcessor:
    """Applies verified payment events exactly once.

    Replays and concurrent deliveries of the same checkout session are
    absorbed by the ``purchase:{session}`` idempotency key and by the
    conditional HD unlock write.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        hd_unlock: HdUnlockService,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.gateway = gateway
        self.hd_unlock = hd_unlock

    async def handle(self, raw_payload: bytes, signature: str) -> WebhookOutcome:
        try:
            event = self.gateway.verify_webhook(raw_payload, signature)
        except GatewayVerificationError as exc:
            logger.warning('payment_webhook_rejected', error=str(exc))
            raise PaymentVerificationFailure('Webhook signature verification failed') from exc

        if event.type != CHECKOUT_COMPLETED:
            logger.info('payment_webhook_ignored', event_id=event.event_id, event_type=event.type)
            return WebhookOutcome(False, event.type)
        if event.payment_status not in PAID_STATUSES:
            logger.info(
                'payment_webhook_unpaid',
                event_id=event.event_id,
                session_id=event.session_id,
                payment_status=event.payment_status,
            )
            return WebhookOutcome(False, event.type)

        intent = event.metadata.get('type')
        if intent == CREDITS_PURCHASE_INTENT:
            return await self._apply_purchase(event)
        if intent == HD_UNLOCK_INTENT:
            generation_id = event.metadata.get('generationId')
            if not generation_id:
                raise PaymentError('HD unlock event carries no generation', {'sessionId': event.session_id})
            try:
                result = await self.hd_unlock.apply_paid_unlock(event.session_id, generation_id)
            except GenerationNotFound:
                # Nothing to unlock; acknowledged without processing.
                logger.error(
                    'hd_unlock_generation_missing',
                    event_id=event.event_id,
                    session_id=event.session_id,
                    generation_id=generation_id,
                )
                return WebhookOutcome(False, event.type, HD_UNLOCK_INTENT)
            return WebhookOutcome(True, event.type, HD_UNLOCK_INTENT, duplicate=not result.newly_unlocked)

        logger.info('payment_webhook_unknown_intent', event_id=event.event_id, intent=intent)
        return WebhookOutcome(False, event.type)

    async def _apply_purchase(self, event: PaymentEvent) -> WebhookOutcome:
        user_id = event.metadata.get('userId')
        if not user_id or not event.session_id:
            raise PaymentError('Purchase event is missing user or session', {'sessionId': event.session_id})
        try:
            credits = get_pack(event.metadata.get('packId', '')).credits
        except ValidationError:
            try:
                credits = int(event.metadata.get('credits', '0'))
            except ValueError:
                credits = 0
        if credits <= 0:
            raise PaymentError('Purchase event has no credit amount', {'sessionId': event.session_id})

        async with self.sessionmaker() as session:
            ledger = CreditLedger(session)
            if await ledger.has_session_transaction(event.session_id):
                logger.info('payment_webhook_duplicate', session_id=event.session_id, user_id=user_id)
                return WebhookOutcome(True, event.type, CREDITS_PURCHASE_INTENT, duplicate=True)
            try:
                balance = await ledger.add(
                    user_id,
                    credits,
                    TX_PURCHASE,
                    f'Purchased {credits} credits',
                    payment_session_id=event.session_id,
                    idempotency_key=f'purchase:{event.session_id}',
                )
                await session.commit()
            except IntegrityError:
                # A concurrent delivery of the same session committed first.
                await session.rollback()
                logger.info('payment_webhook_duplicate', session_id=event.session_id, user_id=user_id)
                return WebhookOutcome(True, event.type, CREDITS_PURCHASE_INTENT, duplicate=True)

        logger.info(
            'credits_purchased',
            session_id=event.session_id,
            user_id=user_id,
            credits=credits,
            balance=balance,
        )
        return WebhookOutcome(True, event.type, CREDITS_PURCHASE_INTENT)
