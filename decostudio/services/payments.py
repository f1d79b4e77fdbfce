from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from decostudio.config import Settings, get_settings
from decostudio.errors import PaymentError, ValidationError
from decostudio.services.stripe_gateway import CheckoutSession, GatewayError, PaymentGateway
from decostudio.utils.logging import get_logger


logger = get_logger('payments')

CREDITS_PURCHASE_INTENT = 'credits_purchase'


@dataclass(frozen=True)
class CreditPack:
    id: str
    credits: int
    price_cents: int
    label: str


CREDIT_PACKS: List[CreditPack] = [
    CreditPack('pack_10', 10, 990, '10 credits'),
    CreditPack('pack_25', 25, 1990, '25 credits'),
    CreditPack('pack_50', 50, 3490, '50 credits'),
    CreditPack('pack_100', 100, 5990, '100 credits'),
]

_PACKS_BY_ID = {pack.id: pack for pack in CREDIT_PACKS}


def get_pack(pack_id: str) -> CreditPack:
    pack = _PACKS_BY_ID.get(pack_id)
    if not pack:
        raise ValidationError(f'Unknown credit pack: {pack_id}', {'packId': pack_id, 'allowed': list(_PACKS_BY_ID)})
    return pack


class PaymentsService:
    def __init__(self, gateway: PaymentGateway, settings: Settings | None = None) -> None:
        self.gateway = gateway
        self.settings = settings or get_settings()

    def list_packs(self) -> List[CreditPack]:
        return list(CREDIT_PACKS)

    async def create_credits_checkout(
        self,
        user_id: str,
        pack_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        pack = get_pack(pack_id)
        price_ref = self.settings.credit_pack_prices().get(pack.id, '')
        metadata = {
            'type': CREDITS_PURCHASE_INTENT,
            'userId': user_id,
            'packId': pack.id,
            'credits': str(pack.credits),
        }
        try:
            checkout = await self.gateway.create_checkout_session(
                user_id,
                price_ref,
                metadata,
                success_url,
                cancel_url,
                customer_email=customer_email,
            )
        except GatewayError as exc:
            raise PaymentError('Could not create the payment session', {'reason': str(exc)}) from exc

        logger.info('credits_checkout_created', user_id=user_id, pack_id=pack.id, session_id=checkout.session_id)
        return checkout
