from __future__ import annotations

import importlib

from storescorer.core.config import get_settings
from storescorer.core.errors import PipelineConfigError
from storescorer.providers.pipeline.base import AuditPipeline
from storescorer.providers.pipeline.fake import FakeAuditPipeline


def get_audit_pipeline() -> AuditPipeline:
    settings = get_settings()
    target = (settings.audit_pipeline or "fake").strip()

    if target.lower() == "fake":
        return FakeAuditPipeline()
    # "package.module:factory" names a callable returning a pipeline instance.
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise PipelineConfigError(f"AUDIT_PIPELINE must be 'fake' or 'module:attr', got {target!r}")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise PipelineConfigError(f"Unable to load audit pipeline {target!r}") from exc
    return factory()
