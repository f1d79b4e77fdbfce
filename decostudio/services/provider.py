from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple


JOB_PENDING = 'pending'
JOB_PROCESSING = 'processing'
JOB_SUCCEEDED = 'succeeded'
JOB_FAILED = 'failed'


class ProviderError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


@dataclass(frozen=True)
class JobResult:
    state: str
    output_url: Optional[str] = None
    reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in (JOB_SUCCEEDED, JOB_FAILED)


class ImageJobProvider(Protocol):
    async def submit(
        self,
        prompt: str,
        source_image_url: str,
        params: Dict[str, Any],
        generation_id: Optional[str] = None,
    ) -> str:
        ...

    async def poll_status(self, job_id: str) -> JobResult:
        ...

    def parse_callback(self, payload: Dict[str, Any]) -> Tuple[str, JobResult]:
        ...
