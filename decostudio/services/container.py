from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from decostudio.config import Settings
from decostudio.db.session import create_engine, create_sessionmaker
from decostudio.services.generation import GenerationOrchestrator
from decostudio.services.hd_unlock import HdUnlockService
from decostudio.services.kie_client import KieClient
from decostudio.services.payment_webhooks import PaymentWebhookProcessor
from decostudio.services.payments import PaymentsService
from decostudio.services.poller import StatusPoller
from decostudio.services.provider import ImageJobProvider
from decostudio.services.reconciler import StatusReconciler
from decostudio.services.storage import BlobStore, LocalBlobStore
from decostudio.services.stripe_gateway import PaymentGateway, StripeGateway


@dataclass
class Services:
    settings: Settings
    sessionmaker: async_sessionmaker[AsyncSession]
    provider: ImageJobProvider
    blob_store: BlobStore
    gateway: PaymentGateway
    orchestrator: GenerationOrchestrator
    reconciler: StatusReconciler
    poller: StatusPoller
    payments: PaymentsService
    hd_unlock: HdUnlockService
    payment_webhooks: PaymentWebhookProcessor

    async def close(self) -> None:
        for resource in (self.provider, self.blob_store):
            close = getattr(resource, 'close', None)
            if close is not None:
                await close()


def build_services(
    settings: Settings,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
    provider: Optional[ImageJobProvider] = None,
    blob_store: Optional[BlobStore] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Services:
    """Wire every service from explicit collaborators.

    Anything not passed in is built from ``settings``.
    """
    if sessionmaker is None:
        sessionmaker = create_sessionmaker(create_engine(settings.database_url))
    if provider is None:
        provider = KieClient(
            api_key=settings.kie_api_key,
            model_id=settings.kie_model_id,
            base_url=settings.kie_base_url,
            callback_url=settings.kie_callback_url,
            timeout=settings.kie_timeout_seconds,
        )
    if blob_store is None:
        blob_store = LocalBlobStore(settings.blob_storage_path, settings.public_blob_base_url)
    if gateway is None:
        gateway = StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)

    reconciler = StatusReconciler(sessionmaker, provider, blob_store, settings)
    hd_unlock = HdUnlockService(sessionmaker, gateway, settings)
    return Services(
        settings=settings,
        sessionmaker=sessionmaker,
        provider=provider,
        blob_store=blob_store,
        gateway=gateway,
        orchestrator=GenerationOrchestrator(sessionmaker, provider, blob_store, settings),
        reconciler=reconciler,
        poller=StatusPoller(
            reconciler,
            max_attempts=settings.poll_max_attempts,
            interval_seconds=settings.poll_interval_seconds,
        ),
        payments=PaymentsService(gateway, settings),
        hd_unlock=hd_unlock,
        payment_webhooks=PaymentWebhookProcessor(sessionmaker, gateway, hd_unlock),
    )
