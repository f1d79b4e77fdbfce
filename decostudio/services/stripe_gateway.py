from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import stripe

from decostudio.utils.logging import get_logger


logger = get_logger('stripe')


class GatewayError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayVerificationError(GatewayError):
    pass


@dataclass
class CheckoutSession:
    session_id: str
    url: str = ''
    payment_status: str = 'unpaid'
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class PaymentEvent:
    event_id: str
    type: str
    session_id: str = ''
    payment_status: str = ''
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(Protocol):
    async def create_checkout_session(
        self,
        user_id: str,
        price_ref: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        ...

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        ...

    def verify_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        ...


def _as_dict(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if hasattr(value, 'to_dict'):
        value = value.to_dict()
    return {str(k): str(v) for k, v in dict(value).items()}


class StripeGateway:
    """Stripe Checkout behind the PaymentGateway contract.

    The SDK is synchronous; calls run in a worker thread.
    """

    def __init__(self, secret_key: str, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        self.webhook_secret = webhook_secret.strip()
        self.tolerance_seconds = tolerance_seconds
        self._client = stripe.StripeClient(secret_key) if secret_key else None

    def _require_client(self) -> stripe.StripeClient:
        if self._client is None:
            raise GatewayError('Stripe is not configured', 503)
        return self._client

    async def create_checkout_session(
        self,
        user_id: str,
        price_ref: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        client = self._require_client()
        if not price_ref:
            raise GatewayError('price is not configured', 400)
        params: Dict[str, Any] = {
            'mode': 'payment',
            'line_items': [{'price': price_ref, 'quantity': 1}],
            'success_url': success_url,
            'cancel_url': cancel_url,
            'client_reference_id': user_id,
            'metadata': metadata,
        }
        if customer_email:
            params['customer_email'] = customer_email
        try:
            session = await asyncio.to_thread(client.checkout.sessions.create, params=params)
        except stripe.StripeError as exc:
            logger.error('stripe_checkout_create_failed', error=str(exc), user_id=user_id)
            raise GatewayError(f'checkout session creation failed: {exc}', exc.http_status) from exc
        return CheckoutSession(
            session_id=session.id,
            url=session.url or '',
            payment_status=session.payment_status or 'unpaid',
            metadata=_as_dict(session.metadata),
        )

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        client = self._require_client()
        try:
            session = await asyncio.to_thread(client.checkout.sessions.retrieve, session_id)
        except stripe.StripeError as exc:
            raise GatewayError(f'checkout session lookup failed: {exc}', exc.http_status) from exc
        return CheckoutSession(
            session_id=session.id,
            url=session.url or '',
            payment_status=session.payment_status or 'unpaid',
            metadata=_as_dict(session.metadata),
        )

    def verify_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        if not self.webhook_secret:
            raise GatewayVerificationError('webhook secret not configured')
        if not signature:
            raise GatewayVerificationError('missing signature header')
        try:
            body = payload.decode('utf-8')
        except UnicodeDecodeError as exc:
            raise GatewayVerificationError('payload is not valid UTF-8') from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance_seconds)
        except stripe.SignatureVerificationError as exc:
            raise GatewayVerificationError(f'invalid signature: {exc}') from exc
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise GatewayVerificationError('invalid payload') from exc
        if not isinstance(event, dict):
            raise GatewayVerificationError('invalid payload')

        data = event.get('data')
        obj = data.get('object') if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            obj = {}
        return PaymentEvent(
            event_id=str(event.get('id') or ''),
            type=str(event.get('type') or ''),
            session_id=str(obj.get('id') or ''),
            payment_status=str(obj.get('payment_status') or ''),
            metadata=_as_dict(obj.get('metadata')),
        )
