from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from storescorer.domain.records import AuditRecord
from storescorer.domain.status import AuditStatus


# Lets a pipeline report stage changes (e.g. analyzing) back to the lifecycle.
ProgressCallback = Callable[[AuditStatus], Awaitable[None]]


@dataclass(frozen=True)
class PipelineResult:
    overall_score: float | None
    synthesis: dict[str, Any]
    token_usage: int | None = None
    warning_message: str | None = None


class AuditPipeline(Protocol):
    async def run(self, audit: AuditRecord, progress: ProgressCallback) -> PipelineResult:
        ...
