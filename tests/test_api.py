import time

from decostudio.services.kie_client import KieClient
from decostudio.services.provider import JOB_FAILED, JOB_SUCCEEDED, JobResult, ProviderError

from fakes import VALID_SIGNATURE, checkout_event, transient_error


HEADERS = {'X-User-Id': 'web-user', 'X-User-Email': 'web@example.com'}
JPEG = ('room.jpg', b'\xff\xd8\xff\xe0fake', 'image/jpeg')


async def _generate(client, **fields):
    data = {'style': 'moderne', 'room': 'salon', 'mode': 'full_redesign'}
    data.update(fields)
    return await client.post('/api/generate', data=data, files={'image': JPEG}, headers=HEADERS)


async def test_health(client):
    resp = await client.get('/health')
    assert resp.status_code == 200
    assert resp.json() == {'ok': True}


async def test_identity_is_required(client):
    resp = await client.get('/api/credits')

    assert resp.status_code == 401
    assert resp.json()['error']['code'] == 'UNAUTHORIZED'


async def test_first_request_grants_signup_bonus(client):
    first = await client.get('/api/credits', headers=HEADERS)
    second = await client.get('/api/credits', headers=HEADERS)
    history = await client.get('/api/credits/history', headers=HEADERS)

    assert first.json() == {'credits': 3}
    assert second.json() == {'credits': 3}
    assert [tx['type'] for tx in history.json()['transactions']] == ['bonus']


async def test_generate_then_poll_to_completion(client, provider):
    resp = await _generate(client)
    assert resp.status_code == 202
    body = resp.json()
    assert body['status'] == 'processing'
    generation_id = body['generationId']

    provider.set_results('job-1', JobResult(JOB_SUCCEEDED, output_url='https://provider.test/out.jpg'))
    status = await client.get(f'/api/generations/{generation_id}/status', headers=HEADERS)

    assert status.status_code == 200
    payload = status.json()
    assert payload['status'] == 'completed'
    assert payload['isComplete'] is True
    assert payload['outputImageUrl'] == f'https://blobs.test/outputs/web-user/{generation_id}.jpg'

    alias = await client.get('/api/status', params={'id': generation_id}, headers=HEADERS)
    assert alias.json()['outputImageUrl'] == payload['outputImageUrl']

    listing = await client.get('/api/generations', headers=HEADERS)
    assert [g['id'] for g in listing.json()['generations']] == [generation_id]
    assert (await client.get('/api/credits', headers=HEADERS)).json() == {'credits': 2}


async def test_generate_validation_errors(client):
    unknown_style = await _generate(client, style='baroque')
    assert unknown_style.status_code == 404
    assert unknown_style.json()['error']['code'] == 'STYLE_NOT_FOUND'

    missing_image = await client.post('/api/generate', data={'style': 'moderne', 'room': 'salon'}, headers=HEADERS)
    assert missing_image.status_code == 400
    assert missing_image.json()['error']['code'] == 'VALIDATION_ERROR'

    assert (await client.get('/api/credits', headers=HEADERS)).json() == {'credits': 3}


async def test_insufficient_credits(client):
    for _ in range(3):
        assert (await _generate(client)).status_code == 202

    resp = await _generate(client)

    assert resp.status_code == 402
    assert resp.json()['error'] == {
        'code': 'INSUFFICIENT_CREDITS',
        'message': 'Insufficient credits: 0 available, 1 required',
        'details': {'current': 0, 'required': 1},
    }


async def test_submission_failure_returns_502_and_refunds(client, provider):
    provider.submit_error = ProviderError('down', 503)
    resp = await _generate(client)

    assert resp.status_code == 502
    assert resp.json()['error']['code'] == 'PROVIDER_SUBMISSION_FAILED'
    assert (await client.get('/api/credits', headers=HEADERS)).json() == {'credits': 3}
    assert (await client.get('/api/generations', headers=HEADERS)).json() == {'generations': []}


async def test_status_of_foreign_generation_is_not_found(client):
    generation_id = (await _generate(client)).json()['generationId']

    resp = await client.get(f'/api/generations/{generation_id}/status', headers={'X-User-Id': 'intruder'})

    assert resp.status_code == 404


async def test_status_survives_provider_outage(client, provider):
    generation_id = (await _generate(client)).json()['generationId']
    provider.poll_errors.append(transient_error())

    resp = await client.get(f'/api/generations/{generation_id}/status', headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()['status'] == 'processing'


async def test_cancel_is_accepted(client):
    generation_id = (await _generate(client)).json()['generationId']

    resp = await client.post(f'/api/generations/{generation_id}/cancel', headers=HEADERS)

    assert resp.status_code == 202
    assert resp.json() == {'accepted': True}


async def test_provider_webhook_finalizes_and_refunds(client):
    generation_id = (await _generate(client)).json()['generationId']
    payload = {'taskId': 'job-1', 'state': JOB_FAILED, 'reason': 'nsfw'}

    first = await client.post('/api/webhooks/provider', json=payload)
    replay = await client.post('/api/webhooks/provider', json=payload)

    assert first.status_code == replay.status_code == 200
    assert first.json()['status'] == 'failed'
    assert first.json()['generationId'] == generation_id
    credits = await client.get('/api/credits', headers=HEADERS)
    assert credits.json() == {'credits': 3}


async def test_provider_webhook_by_generation_query(client):
    generation_id = (await _generate(client)).json()['generationId']

    resp = await client.post(
        '/api/webhooks/provider',
        params={'generation_id': generation_id},
        json={'taskId': 'job-1', 'state': JOB_SUCCEEDED, 'url': 'https://provider.test/o.jpg'},
    )

    assert resp.json()['status'] == 'completed'


async def test_provider_webhook_signature_checks(settings, services, client):
    settings.kie_webhook_hmac_key = 'hook-key'
    settings.kie_webhook_require_signature = True
    await _generate(client)
    payload = {'taskId': 'job-1', 'state': JOB_FAILED}
    now = str(int(time.time()))
    good = KieClient.compute_webhook_signature('job-1', now, 'hook-key')

    missing = await client.post('/api/webhooks/provider', json=payload)
    forged = await client.post(
        '/api/webhooks/provider',
        json=payload,
        headers={'X-Webhook-Timestamp': now, 'X-Webhook-Signature': 'forged'},
    )
    stale_ts = str(int(time.time()) - 3600)
    stale = await client.post(
        '/api/webhooks/provider',
        json=payload,
        headers={
            'X-Webhook-Timestamp': stale_ts,
            'X-Webhook-Signature': KieClient.compute_webhook_signature('job-1', stale_ts, 'hook-key'),
        },
    )
    accepted = await client.post(
        '/api/webhooks/provider',
        json=payload,
        headers={'X-Webhook-Timestamp': now, 'X-Webhook-Signature': good},
    )

    assert [r.status_code for r in (missing, forged, stale)] == [401, 401, 401]
    assert accepted.status_code == 200
    assert accepted.json()['status'] == 'failed'


async def test_signed_callback_cannot_target_another_users_generation(settings, client):
    settings.kie_webhook_hmac_key = 'secret'
    settings.kie_webhook_require_signature = True
    await _generate(client)
    other = await client.post(
        '/api/generate',
        data={'style': 'moderne', 'room': 'salon'},
        files={'image': JPEG},
        headers={'X-User-Id': 'bob'},
    )
    other_id = other.json()['generationId']
    now = str(int(time.time()))

    resp = await client.post(
        '/api/webhooks/provider',
        params={'generation_id': other_id},
        json={'taskId': 'job-1', 'state': JOB_FAILED, 'reason': 'nsfw'},
        headers={
            'X-Webhook-Timestamp': now,
            'X-Webhook-Signature': KieClient.compute_webhook_signature('job-1', now, 'secret'),
        },
    )

    assert resp.status_code == 400
    assert resp.json()['error']['code'] == 'VALIDATION_ERROR'
    status = await client.get(f'/api/generations/{other_id}/status', headers={'X-User-Id': 'bob'})
    assert status.json()['status'] == 'processing'
    assert (await client.get('/api/credits', headers={'X-User-Id': 'bob'})).json() == {'credits': 2}


async def test_provider_webhook_rejects_bad_payload(client):
    assert (await client.post('/api/webhooks/provider', content=b'not json')).status_code == 400
    assert (await client.post('/api/webhooks/provider', json={'state': 'failed'})).status_code == 400


async def test_credit_checkout_and_payment_webhook(client, gateway):
    await client.get('/api/credits', headers=HEADERS)
    checkout = await client.post('/api/payments/checkout', json={'packId': 'pack_10'}, headers=HEADERS)
    assert checkout.status_code == 200
    session_id = checkout.json()['sessionId']
    assert gateway.created[0]['metadata']['userId'] == 'web-user'

    body = checkout_event(session_id, gateway.sessions[session_id].metadata)
    rejected = await client.post('/api/webhooks/payment', content=body, headers={'stripe-signature': 'forged'})
    first = await client.post('/api/webhooks/payment', content=body, headers={'stripe-signature': VALID_SIGNATURE})
    replay = await client.post('/api/webhooks/payment', content=body, headers={'stripe-signature': VALID_SIGNATURE})

    assert rejected.status_code == 400
    assert rejected.json()['error']['code'] == 'PAYMENT_VERIFICATION_FAILED'
    assert first.json()['duplicate'] is False
    assert replay.json()['duplicate'] is True
    assert (await client.get('/api/credits', headers=HEADERS)).json() == {'credits': 13}


async def test_unknown_pack_is_rejected(client):
    resp = await client.post('/api/payments/checkout', json={'packId': 'pack_3'}, headers=HEADERS)
    assert resp.status_code == 400


async def test_hd_unlock_flows(client, gateway):
    generation_id = (await _generate(client)).json()['generationId']

    not_ready = await client.post('/api/hd-unlock/checkout', json={'generationId': generation_id}, headers=HEADERS)
    assert not_ready.status_code == 409

    await client.post('/api/webhooks/provider', json={'taskId': 'job-1', 'state': JOB_SUCCEEDED, 'url': 'https://p.test/o.jpg'})
    checkout = await client.post('/api/hd-unlock/checkout', json={'generationId': generation_id}, headers=HEADERS)
    assert checkout.status_code == 200
    session_id = checkout.json()['sessionId']
    assert checkout.json()['alreadyUnlocked'] is False

    forbidden = await client.post(
        '/api/hd-unlock/checkout', json={'generationId': generation_id}, headers={'X-User-Id': 'intruder'}
    )
    assert forbidden.status_code == 403

    gateway.mark_paid(session_id)
    confirmed = await client.post(
        '/api/hd-unlock/confirm', json={'sessionId': session_id, 'generationId': generation_id}, headers=HEADERS
    )
    assert confirmed.json()['hdUnlocked'] is True
    assert confirmed.json()['newlyUnlocked'] is True

    with_credit = await client.post('/api/hd-unlock/with-credit', json={'generationId': generation_id}, headers=HEADERS)
    assert with_credit.json()['newlyUnlocked'] is False
    assert (await client.get('/api/credits', headers=HEADERS)).json() == {'credits': 2}


async def test_hd_unlock_with_credit_route(client):
    generation_id = (await _generate(client)).json()['generationId']
    await client.post('/api/webhooks/provider', json={'taskId': 'job-1', 'state': JOB_SUCCEEDED, 'url': 'https://p.test/o.jpg'})

    resp = await client.post('/api/hd-unlock/with-credit', json={'generationId': generation_id}, headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()['creditsRemaining'] == 1
    assert (await client.get('/api/credits', headers=HEADERS)).json() == {'credits': 1}


async def test_json_body_is_required(client):
    resp = await client.post('/api/hd-unlock/with-credit', content=b'[]', headers=HEADERS)
    assert resp.status_code == 400


async def test_generation_listing_uses_its_own_cap(settings, client):
    settings.generation_list_max_limit = 1
    settings.credit_history_max_limit = 5
    for _ in range(2):
        await _generate(client)

    listing = await client.get('/api/generations', params={'limit': 5}, headers=HEADERS)
    history = await client.get('/api/credits/history', params={'limit': 5}, headers=HEADERS)

    assert len(listing.json()['generations']) == 1
    assert len(history.json()['transactions']) == 3
