import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from decostudio.db.models import (
    GENERATION_COMPLETED,
    GENERATION_FAILED,
    GENERATION_PENDING,
    GENERATION_PROCESSING,
    Generation,
)
from decostudio.errors import GenerationNotFound, ValidationError
from decostudio.services.credits import CreditLedger
from decostudio.services.generation import ImageUpload
from decostudio.services.provider import JOB_FAILED, JOB_PROCESSING, JOB_SUCCEEDED, JobResult, ProviderError
from decostudio.utils.time import utcnow


IMAGE = ImageUpload(data=b'\xff\xd8fake', content_type='image/jpeg')
PROVIDER_URL = 'https://provider.test/result.jpg'


@pytest_asyncio.fixture
async def generation(services, make_user):
    await make_user('u1', credits=1)
    return await services.orchestrator.create('u1', 'moderne', 'salon', None, IMAGE)


async def test_processing_result_is_a_no_op(services, provider, generation):
    provider.set_results(generation.provider_job_id, JobResult(JOB_PROCESSING))

    updated = await services.reconciler.reconcile(generation.id)

    assert updated.status == GENERATION_PROCESSING
    assert updated.output_image_url is None


async def test_success_uploads_output_and_completes(services, provider, blob_store, generation, balance_of):
    provider.set_results(generation.provider_job_id, JobResult(JOB_SUCCEEDED, output_url=PROVIDER_URL))

    updated = await services.reconciler.reconcile(generation.id)

    assert updated.status == GENERATION_COMPLETED
    assert updated.output_image_url == f'https://blobs.test/outputs/u1/{generation.id}.jpg'
    assert blob_store.download_calls == 1
    assert await balance_of('u1') == 0


async def test_output_upload_failure_falls_back_to_provider_url(services, provider, blob_store, generation):
    blob_store.fail_download = True
    provider.set_results(generation.provider_job_id, JobResult(JOB_SUCCEEDED, output_url=PROVIDER_URL))

    updated = await services.reconciler.reconcile(generation.id)

    assert updated.status == GENERATION_COMPLETED
    assert updated.output_image_url == PROVIDER_URL


async def test_success_without_url_is_a_failure(services, generation, balance_of):
    updated = await services.reconciler.reconcile(generation.id, JobResult(JOB_SUCCEEDED))

    assert updated.status == GENERATION_FAILED
    assert await balance_of('u1') == 1


async def test_terminal_idempotence(services, provider, blob_store, generation, sessionmaker):
    provider.set_results(generation.provider_job_id, JobResult(JOB_FAILED, reason='nsfw'))
    first = await services.reconciler.reconcile(generation.id)
    polls = provider.poll_calls

    second = await services.reconciler.reconcile(generation.id)
    third = await services.reconciler.reconcile(generation.id, JobResult(JOB_SUCCEEDED, output_url=PROVIDER_URL))

    assert first.status == second.status == third.status == GENERATION_FAILED
    assert second.updated_at == first.updated_at
    assert provider.poll_calls == polls
    assert blob_store.download_calls == 0
    async with sessionmaker() as session:
        assert await CreditLedger(session).count_refunds(generation.id) == 1


async def test_exactly_once_refund_under_concurrent_reconcile(services, generation, sessionmaker, balance_of):
    failed = JobResult(JOB_FAILED, reason='timeout')

    results = await asyncio.gather(
        *(services.reconciler.reconcile(generation.id, failed) for _ in range(4))
    )

    assert {r.status for r in results} == {GENERATION_FAILED}
    assert await balance_of('u1') == 1
    async with sessionmaker() as session:
        ledger = CreditLedger(session)
        assert await ledger.count_refunds(generation.id) == 1
        assert await ledger.ledger_sum('u1') == 1


async def test_scenario_d_callback_during_poll(services, provider, blob_store, generation):
    succeeded = JobResult(JOB_SUCCEEDED, output_url=PROVIDER_URL)
    provider.set_results(generation.provider_job_id, succeeded)
    seen = {}

    async def callback_arrives(job_id, result):
        seen['callback'] = await services.reconciler.reconcile_callback(
            {'taskId': job_id, 'state': JOB_SUCCEEDED, 'url': PROVIDER_URL}
        )

    provider.before_poll_returns = callback_arrives
    polled = await services.reconciler.reconcile(generation.id)

    assert seen['callback'].status == polled.status == GENERATION_COMPLETED
    assert seen['callback'].output_image_url == polled.output_image_url
    assert blob_store.download_calls == 1


async def test_scenario_d_concurrent_observers_agree(services, generation, blob_store):
    succeeded = JobResult(JOB_SUCCEEDED, output_url=PROVIDER_URL)

    webhook, poll = await asyncio.gather(
        services.reconciler.reconcile(generation.id, succeeded),
        services.reconciler.reconcile(generation.id, succeeded),
    )

    assert webhook.status == poll.status == GENERATION_COMPLETED
    assert webhook.output_image_url == poll.output_image_url
    assert blob_store.download_calls == 1
    assert list(blob_store.objects) == [f'inputs/u1/{generation.id}.jpg', f'outputs/u1/{generation.id}.jpg']


async def test_failure_after_success_is_ignored(services, generation, balance_of):
    await services.reconciler.reconcile(generation.id, JobResult(JOB_SUCCEEDED, output_url=PROVIDER_URL))

    late = await services.reconciler.reconcile(generation.id, JobResult(JOB_FAILED, reason='late'))

    assert late.status == GENERATION_COMPLETED
    assert await balance_of('u1') == 0


async def test_provider_error_propagates_without_changes(services, provider, generation):
    provider.poll_errors.append(ProviderError('down', 503))

    with pytest.raises(ProviderError):
        await services.reconciler.reconcile(generation.id)

    assert (await services.reconciler.get(generation.id)).status == GENERATION_PROCESSING


async def test_callback_matched_by_job_id_or_generation_id(services, generation):
    payload = {'taskId': generation.provider_job_id, 'state': JOB_PROCESSING}
    assert (await services.reconciler.reconcile_callback(payload)).id == generation.id
    assert (await services.reconciler.reconcile_callback(payload, generation.id)).id == generation.id

    with pytest.raises(ValidationError):
        await services.reconciler.reconcile_callback({'state': JOB_PROCESSING})
    with pytest.raises(ValidationError):
        await services.reconciler.reconcile_callback({'state': JOB_FAILED}, generation.id)
    with pytest.raises(GenerationNotFound):
        await services.reconciler.reconcile_callback({'taskId': 'job-unknown', 'state': JOB_PROCESSING})
    assert (await services.reconciler.get(generation.id)).status == GENERATION_PROCESSING


async def test_callback_for_another_job_cannot_finalize_generation(services, make_user, generation, balance_of):
    await make_user('u2', credits=1)
    other = await services.orchestrator.create('u2', 'moderne', 'salon', None, IMAGE)
    assert other.provider_job_id != generation.provider_job_id

    with pytest.raises(ValidationError):
        await services.reconciler.reconcile_callback(
            {'taskId': generation.provider_job_id, 'state': JOB_FAILED, 'reason': 'nsfw'}, other.id
        )
    with pytest.raises(ValidationError):
        await services.reconciler.reconcile_callback(
            {'taskId': generation.provider_job_id, 'state': JOB_SUCCEEDED, 'url': PROVIDER_URL}, other.id
        )

    current = await services.reconciler.get(other.id)
    assert current.status == GENERATION_PROCESSING
    assert current.output_image_url is None
    assert await balance_of('u2') == 0
    assert (await services.reconciler.get(generation.id)).status == GENERATION_PROCESSING


async def test_foreign_owner_sees_not_found(services, generation):
    with pytest.raises(GenerationNotFound):
        await services.reconciler.reconcile(generation.id, user_id='someone-else')


async def test_sweep_fails_and_refunds_stale_pending(services, generation, sessionmaker, balance_of):
    async with sessionmaker() as session:
        await session.execute(
            update(Generation)
            .where(Generation.id == generation.id)
            .values(status=GENERATION_PENDING, provider_job_id=None, created_at=utcnow() - timedelta(hours=1))
        )
        await session.commit()

    swept = await services.reconciler.sweep_stale_pending(older_than_seconds=600)
    again = await services.reconciler.sweep_stale_pending(older_than_seconds=600)

    assert swept == [generation.id]
    assert again == []
    assert (await services.reconciler.get(generation.id)).status == GENERATION_FAILED
    assert await balance_of('u1') == 1


async def test_sweep_leaves_recent_and_submitted_rows(services, generation):
    assert await services.reconciler.sweep_stale_pending(older_than_seconds=600) == []
    assert await services.reconciler.sweep_stale_pending(older_than_seconds=0) == []
    assert (await services.reconciler.get(generation.id)).status == GENERATION_PROCESSING
