from __future__ import annotations

from storescorer.domain.records import AuditRecord
from storescorer.domain.status import AuditStatus
from storescorer.providers.pipeline.base import PipelineResult, ProgressCallback


class FakeAuditPipeline:
    def __init__(self, score: float = 72.0) -> None:
        # Deterministic report keeps local runs and tests stable without crawling.
        self._score = score

    async def run(self, audit: AuditRecord, progress: ProgressCallback) -> PipelineResult:
        await progress(AuditStatus.ANALYZING)
        return PipelineResult(
            overall_score=self._score,
            synthesis={
                "domain": audit.domain,
                "summary": f"Placeholder report for {audit.domain}.",
                "fixes": [],
            },
            token_usage=0,
        )
