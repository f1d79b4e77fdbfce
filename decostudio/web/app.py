from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.exc import IntegrityError

from decostudio import catalog
from decostudio.config import Settings, get_settings
from decostudio.db.models import (
    GENERATION_COMPLETED,
    GENERATION_FAILED,
    CreditTransaction,
    Generation,
    UserAccount,
)
from decostudio.errors import DomainError, UnauthorizedError, ValidationError
from decostudio.services.container import Services, build_services
from decostudio.services.credits import CreditLedger
from decostudio.services.generation import ImageUpload
from decostudio.services.kie_client import KieClient
from decostudio.services.provider import ProviderError
from decostudio.utils.logging import get_logger


logger = get_logger('web')


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _generation_payload(generation: Generation) -> Dict[str, Any]:
    return {
        'id': generation.id,
        'status': generation.status,
        'style': generation.style_slug,
        'room': generation.room_type,
        'mode': generation.transform_mode,
        'inputImageUrl': generation.input_image_url,
        'outputImageUrl': generation.output_image_url,
        'failReason': generation.fail_reason,
        'hdUnlocked': generation.hd_unlocked,
        'costCredits': generation.cost_credits,
        'createdAt': _iso(generation.created_at),
        'updatedAt': _iso(generation.updated_at),
    }


def _status_payload(generation: Generation) -> Dict[str, Any]:
    return {
        'generationId': generation.id,
        'status': generation.status,
        'outputImageUrl': generation.output_image_url,
        'isComplete': generation.status == GENERATION_COMPLETED,
        'isFailed': generation.status == GENERATION_FAILED,
        'generation': _generation_payload(generation),
    }


def _transaction_payload(tx: CreditTransaction) -> Dict[str, Any]:
    return {
        'id': tx.id,
        'amount': tx.amount,
        'type': tx.type,
        'description': tx.description,
        'generationId': tx.generation_id,
        'paymentSessionId': tx.payment_session_id,
        'createdAt': _iso(tx.created_at),
    }


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError as exc:
        raise ValidationError('Request body must be JSON') from exc
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _required_str(data: Dict[str, Any], key: str) -> str:
    value = str(data.get(key) or '').strip()
    if not value:
        raise ValidationError(f'{key} is required', {'field': key})
    return value


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    if services is not None:
        settings = services.settings
    settings = settings or get_settings()
    app = FastAPI(title='Deco Studio')
    app.state.services = services
    app.state.owns_services = services is None
    app.state.sweep_task = None

    @app.on_event('startup')
    async def startup() -> None:
        if app.state.services is None:
            app.state.services = build_services(settings)
        if app.state.owns_services and settings.pending_sweep_interval_seconds > 0:
            app.state.sweep_task = asyncio.create_task(
                app.state.services.reconciler.watch_stale_pending(settings.pending_sweep_interval_seconds)
            )

    @app.on_event('shutdown')
    async def shutdown() -> None:
        task = app.state.sweep_task
        if task:
            task.cancel()
        if app.state.owns_services and app.state.services is not None:
            await app.state.services.close()

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        return JSONResponse({'error': exc.to_dict()}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception('unhandled_error', path=request.url.path, error=str(exc))
        return JSONResponse(
            {'error': {'code': 'INTERNAL_ERROR', 'message': 'Internal server error', 'details': {}}},
            status_code=500,
        )

    def _services() -> Services:
        if app.state.services is None:
            raise RuntimeError('services are not initialised')
        return app.state.services

    async def current_user(request: Request) -> UserAccount:
        user_id = (request.headers.get('x-user-id') or '').strip()
        if not user_id:
            raise UnauthorizedError()
        if len(user_id) > 64:
            raise ValidationError('User id is too long')
        email = (request.headers.get('x-user-email') or '').strip() or None

        async with _services().sessionmaker() as session:
            ledger = CreditLedger(session)
            try:
                account = await ledger.ensure_account(user_id, email, signup_bonus=settings.signup_bonus_credits)
                await session.commit()
            except IntegrityError:
                # Another request created the account first.
                await session.rollback()
                account = await ledger.get_account(user_id)
                if account is None:
                    raise
        return account

    @app.get('/health')
    async def health():
        return {'ok': True}

    @app.get('/api/catalog')
    async def api_catalog():
        return {
            'styles': [{'slug': s.slug, 'name': s.name} for s in catalog.STYLES],
            'rooms': [{'slug': r.slug, 'name': r.name} for r in catalog.ROOM_TYPES],
            'modes': [m.key for m in catalog.TRANSFORM_MODES],
            'defaultMode': catalog.DEFAULT_TRANSFORM_MODE,
        }

    @app.post('/api/generate', status_code=202)
    async def api_generate(
        request: Request,
        style: str = Form(''),
        room: str = Form(''),
        mode: str = Form(''),
        image: Optional[UploadFile] = File(None),
    ):
        user = await current_user(request)
        if image is None:
            raise ValidationError('Image is required')
        data = await image.read()
        generation = await _services().orchestrator.create(
            user.id,
            style.strip(),
            room.strip(),
            mode.strip() or None,
            ImageUpload(data=data, content_type=image.content_type or '', filename=image.filename),
        )
        return {'generationId': generation.id, 'status': generation.status}

    @app.get('/api/generations')
    async def api_generations(request: Request, limit: int = 50):
        user = await current_user(request)
        limit = max(1, min(limit, settings.generation_list_max_limit))
        generations = await _services().orchestrator.list_for_user(user.id, limit)
        return {'generations': [_generation_payload(g) for g in generations]}

    async def _status_for(user_id: str, generation_id: str) -> Dict[str, Any]:
        reconciler = _services().reconciler
        try:
            generation = await reconciler.reconcile(generation_id, user_id=user_id)
        except ProviderError as exc:
            # The client keeps polling; report what is stored.
            logger.warning('status_check_provider_error', generation_id=generation_id, error=str(exc))
            generation = await reconciler.get(generation_id, user_id)
        return _status_payload(generation)

    @app.get('/api/generations/{generation_id}/status')
    async def api_generation_status(request: Request, generation_id: str):
        user = await current_user(request)
        return await _status_for(user.id, generation_id)

    @app.get('/api/status')
    async def api_status(request: Request, id: str = ''):
        user = await current_user(request)
        if not id.strip():
            raise ValidationError('id is required', {'field': 'id'})
        return await _status_for(user.id, id.strip())

    @app.post('/api/generations/{generation_id}/cancel', status_code=202)
    async def api_generation_cancel(request: Request, generation_id: str):
        user = await current_user(request)
        await _services().orchestrator.cancel(user.id, generation_id)
        return {'accepted': True}

    @app.get('/api/credits')
    async def api_credits(request: Request):
        user = await current_user(request)
        async with _services().sessionmaker() as session:
            credits = await CreditLedger(session).get_balance(user.id)
        return {'credits': credits}

    @app.get('/api/credits/history')
    async def api_credits_history(request: Request, limit: Optional[int] = None):
        user = await current_user(request)
        if limit is None:
            limit = settings.credit_history_default_limit
        limit = min(limit, settings.credit_history_max_limit)
        async with _services().sessionmaker() as session:
            history = await CreditLedger(session).get_history(user.id, limit)
        return {'transactions': [_transaction_payload(tx) for tx in history]}

    @app.get('/api/payments/packs')
    async def api_payment_packs():
        packs = _services().payments.list_packs()
        return {
            'packs': [
                {'id': p.id, 'credits': p.credits, 'priceCents': p.price_cents, 'label': p.label}
                for p in packs
            ]
        }

    @app.post('/api/payments/checkout')
    async def api_payments_checkout(request: Request):
        user = await current_user(request)
        data = await _read_json(request)
        base = settings.public_site_url.rstrip('/')
        checkout = await _services().payments.create_credits_checkout(
            user.id,
            _required_str(data, 'packId'),
            f'{base}/credits/success?session_id={{CHECKOUT_SESSION_ID}}',
            f'{base}/credits',
            customer_email=user.email,
        )
        return {'sessionId': checkout.session_id, 'url': checkout.url}

    @app.post('/api/hd-unlock/checkout')
    async def api_hd_unlock_checkout(request: Request):
        user = await current_user(request)
        data = await _read_json(request)
        generation_id = _required_str(data, 'generationId')
        base = settings.public_site_url.rstrip('/')
        result = await _services().hd_unlock.request_unlock(
            user.id,
            generation_id,
            f'{base}/hd/success?session_id={{CHECKOUT_SESSION_ID}}&generation_id={generation_id}',
            f'{base}/generations/{generation_id}',
            customer_email=user.email,
        )
        return {
            'sessionId': result.session_id,
            'url': result.checkout_url,
            'alreadyUnlocked': result.already_unlocked,
        }

    @app.post('/api/hd-unlock/confirm')
    async def api_hd_unlock_confirm(request: Request):
        await current_user(request)
        data = await _read_json(request)
        session_id = _required_str(data, 'sessionId')
        generation_id = str(data.get('generationId') or '').strip() or None
        # The verified payment session decides which generation is unlocked.
        result = await _services().hd_unlock.confirm(session_id, generation_id)
        return {
            'success': True,
            'hdUnlocked': result.generation.hd_unlocked,
            'newlyUnlocked': result.newly_unlocked,
            'generationId': result.generation.id,
            'outputImageUrl': result.generation.output_image_url,
        }

    @app.post('/api/hd-unlock/with-credit')
    async def api_hd_unlock_with_credit(request: Request):
        user = await current_user(request)
        data = await _read_json(request)
        result = await _services().hd_unlock.unlock_with_credit(user.id, _required_str(data, 'generationId'))
        return {
            'success': True,
            'hdUnlocked': result.generation.hd_unlocked,
            'newlyUnlocked': result.newly_unlocked,
            'creditsRemaining': result.credits_remaining,
        }

    @app.post('/api/webhooks/provider')
    async def api_provider_webhook(request: Request, generation_id: str = ''):
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({'ok': False, 'error': 'invalid_payload'}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({'ok': False, 'error': 'invalid_payload'}, status_code=400)

        task_id = KieClient.extract_task_id(payload)
        if not task_id:
            return JSONResponse({'ok': False, 'error': 'task_id_missing'}, status_code=400)

        timestamp = (request.headers.get('x-webhook-timestamp') or '').strip()
        signature = (request.headers.get('x-webhook-signature') or '').strip()
        require_signature = bool(settings.kie_webhook_require_signature)
        webhook_hmac_key = settings.kie_webhook_hmac_key.strip()

        if require_signature and not webhook_hmac_key:
            return JSONResponse({'ok': False, 'error': 'webhook_hmac_key_not_configured'}, status_code=503)

        if require_signature or (timestamp and signature and webhook_hmac_key):
            if not timestamp or not signature:
                return JSONResponse({'ok': False, 'error': 'missing_signature_headers'}, status_code=401)
            try:
                timestamp_int = int(timestamp)
            except (TypeError, ValueError):
                return JSONResponse({'ok': False, 'error': 'invalid_timestamp'}, status_code=401)

            max_skew = max(1, int(settings.kie_webhook_max_skew_seconds))
            if abs(int(time.time()) - timestamp_int) > max_skew:
                return JSONResponse({'ok': False, 'error': 'timestamp_out_of_range'}, status_code=401)

            is_valid = KieClient.verify_webhook_signature(
                task_id=task_id,
                timestamp_seconds=timestamp,
                received_signature=signature,
                webhook_hmac_key=webhook_hmac_key,
            )
            if not is_valid:
                logger.warning('provider_webhook_bad_signature', task_id=task_id)
                return JSONResponse({'ok': False, 'error': 'invalid_signature'}, status_code=401)

        generation = await _services().reconciler.reconcile_callback(payload, generation_id.strip() or None)
        return {'ok': True, 'taskId': task_id, 'generationId': generation.id, 'status': generation.status}

    @app.post('/api/webhooks/payment')
    async def api_payment_webhook(request: Request):
        raw = await request.body()
        signature = request.headers.get('stripe-signature') or ''
        outcome = await _services().payment_webhooks.handle(raw, signature)
        return {
            'received': True,
            'processed': outcome.processed,
            'duplicate': outcome.duplicate,
            'eventType': outcome.event_type,
        }

    @app.get('/blobs/{key:path}')
    async def blob_file(key: str):
        root = Path(settings.blob_storage_path).resolve()
        path = (root / key).resolve()
        if root not in path.parents or not path.is_file():
            return JSONResponse({'error': {'code': 'NOT_FOUND', 'message': 'Not found', 'details': {}}}, status_code=404)
        return FileResponse(path)

    return app
