from __future__ import annotations

import base64
import hmac
import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from decostudio.services.provider import (
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_SUCCEEDED,
    JobResult,
    ProviderError,
)
from decostudio.utils.logging import get_logger


logger = get_logger('kie')

SUCCESS_STATUSES = {'success', 'succeeded', 'completed', 'done', 'task_completed', 'task_success'}
FAIL_STATUSES = {'fail', 'failed', 'error', 'task_failed', 'task_fail', 'task_error'}
RUNNING_STATUSES = {'generating', 'running', 'processing'}


class KieError(ProviderError):
    pass


class KieClient:
    """Kie.ai jobs API as an ImageJobProvider."""

    def __init__(
        self,
        api_key: str,
        model_id: str,
        base_url: str = 'https://api.kie.ai/api/v1',
        callback_url: str = '',
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.model_id = model_id
        self.callback_url = callback_url.strip()
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

    def _callback_for(self, generation_id: Optional[str]) -> str:
        if not self.callback_url or not generation_id:
            return self.callback_url
        parts = urlsplit(self.callback_url)
        query = dict(parse_qsl(parts.query))
        query['generation_id'] = generation_id
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    async def submit(
        self,
        prompt: str,
        source_image_url: str,
        params: Dict[str, Any],
        generation_id: Optional[str] = None,
    ) -> str:
        if not prompt or not source_image_url:
            raise KieError('prompt and source image are required', 400)
        body: Dict[str, Any] = {
            'model': self.model_id,
            'input': {
                'prompt': prompt,
                'image_urls': [source_image_url],
                **params,
            },
        }
        callback = self._callback_for(generation_id)
        if callback:
            body['callBackUrl'] = callback
        try:
            resp = await self._client.post(f'{self.base_url}/jobs/createTask', headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            raise KieError(f'Kie createTask transport error: {exc}') from exc
        if resp.status_code >= 400:
            raise KieError(f'Kie createTask error {resp.status_code}: {resp.text}', resp.status_code)
        data = resp.json()
        code = data.get('code')
        if code not in (None, 200, '200'):
            raise KieError(f'Kie createTask rejected: {data.get("msg") or code}', int(code) if str(code).isdigit() else None)
        task_id = self.extract_task_id(data)
        if not task_id:
            raise KieError('Kie createTask returned no taskId')
        logger.info('kie_task_created', task_id=task_id, generation_id=generation_id)
        return task_id

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        try:
            resp = await self._client.get(
                f'{self.base_url}/jobs/recordInfo',
                headers=self._headers(),
                params={'taskId': task_id},
            )
        except httpx.HTTPError as exc:
            raise KieError(f'Kie recordInfo transport error: {exc}') from exc
        if resp.status_code >= 400:
            raise KieError(f'Kie recordInfo error {resp.status_code}: {resp.text}', resp.status_code)
        return resp.json()

    async def poll_status(self, job_id: str) -> JobResult:
        record = await self.get_task(job_id)
        return self.to_result(record)

    def parse_callback(self, payload: Dict[str, Any]) -> Tuple[str, JobResult]:
        task_id = self.extract_task_id(payload)
        return task_id, self.to_result(payload)

    def to_result(self, record: Dict[str, Any]) -> JobResult:
        status = self.get_status(record).lower()
        if status in SUCCESS_STATUSES:
            urls = self.parse_result_urls(record)
            if not urls:
                return JobResult(JOB_FAILED, reason='Provider returned no image', raw=record)
            return JobResult(JOB_SUCCEEDED, output_url=urls[0], raw=record)
        if status in FAIL_STATUSES:
            fail_code, fail_msg = self.get_fail_info(record)
            reason = fail_msg or fail_code or 'Generation failed'
            return JobResult(JOB_FAILED, reason=str(reason), raw=record)
        if status in RUNNING_STATUSES:
            return JobResult(JOB_PROCESSING, raw=record)
        return JobResult(JOB_PENDING, raw=record)

    @staticmethod
    def extract_task_id(record: Dict[str, Any]) -> str:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        for candidate in (record.get('taskId'), record.get('task_id'), data.get('taskId'), data.get('task_id')):
            value = str(candidate or '').strip()
            if value:
                return value
        return ''

    @staticmethod
    def compute_webhook_signature(task_id: str, timestamp_seconds: str, webhook_hmac_key: str) -> str:
        message = f'{task_id}.{timestamp_seconds}'
        digest = hmac.new(
            webhook_hmac_key.encode('utf-8'),
            message.encode('utf-8'),
            'sha256',
        ).digest()
        return base64.b64encode(digest).decode('utf-8')

    @classmethod
    def verify_webhook_signature(
        cls,
        *,
        task_id: str,
        timestamp_seconds: str,
        received_signature: str,
        webhook_hmac_key: str,
    ) -> bool:
        expected = cls.compute_webhook_signature(task_id, timestamp_seconds, webhook_hmac_key)
        return hmac.compare_digest(expected, (received_signature or '').strip())

    def parse_result_urls(self, record: Dict[str, Any]) -> List[str]:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        urls: List[str] = []

        def extend_from(value: Any) -> None:
            if isinstance(value, str):
                if value.strip():
                    urls.append(value.strip())
            elif isinstance(value, list):
                for item in value:
                    if isinstance(item, str) and item.strip():
                        urls.append(item.strip())

        extend_from(data.get('resultUrls'))
        extend_from(record.get('resultUrls'))

        result_json = data.get('resultJson') or {}
        parsed: Dict[str, Any] = {}
        if isinstance(result_json, str) and result_json:
            try:
                parsed = json.loads(result_json)
            except ValueError as exc:
                logger.warning('kie_result_json_invalid', error=str(exc))
        elif isinstance(result_json, dict):
            parsed = result_json
        if isinstance(parsed, dict):
            extend_from(parsed.get('resultUrls'))
            extend_from(parsed.get('urls'))

        return list(dict.fromkeys(urls))

    @staticmethod
    def get_status(record: Dict[str, Any]) -> str:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        callback_type = str(data.get('callbackType') or record.get('callbackType') or '').strip().lower()
        if callback_type in SUCCESS_STATUSES:
            return 'success'
        if callback_type in FAIL_STATUSES:
            return 'fail'
        # recordInfo reports `state` (waiting/queuing/generating/success/fail).
        return str(data.get('state') or data.get('status') or record.get('state') or record.get('status') or '')

    @staticmethod
    def get_fail_info(record: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        fail_code = data.get('failCode')
        fail_msg = data.get('failMsg') or data.get('error') or record.get('msg')
        if not fail_code:
            code = record.get('code')
            if code not in (None, '', 200, '200'):
                fail_code = str(code)
        return fail_code, fail_msg
