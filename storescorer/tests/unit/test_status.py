from __future__ import annotations

import pytest

from storescorer.domain.status import (
    AuditStatus,
    JobStatus,
    PaymentStatus,
    is_forward_transition,
    is_terminal,
)


def test_status_values_parse_case_insensitively() -> None:
    assert AuditStatus("PAYMENT_COMPLETE") is AuditStatus.PAYMENT_COMPLETE
    assert JobStatus("Processing") is JobStatus.PROCESSING
    assert PaymentStatus(" completed ") is PaymentStatus.COMPLETED
    assert str(AuditStatus.CRAWLING) == "crawling"


def test_unknown_status_is_rejected() -> None:
    with pytest.raises(ValueError):
        AuditStatus("archived")


@pytest.mark.parametrize(
    ("current", "new"),
    [
        (AuditStatus.PENDING, AuditStatus.PAYMENT_PENDING),
        (AuditStatus.PAYMENT_PENDING, AuditStatus.PAYMENT_COMPLETE),
        (AuditStatus.PAYMENT_PENDING, AuditStatus.CRAWLING),
        (AuditStatus.CRAWLING, AuditStatus.ANALYZING),
        (AuditStatus.ANALYZING, AuditStatus.COMPLETED),
        (AuditStatus.PAYMENT_COMPLETE, AuditStatus.FAILED),
    ],
)
def test_forward_transitions_allowed(current: AuditStatus, new: AuditStatus) -> None:
    assert is_forward_transition(current, new)


@pytest.mark.parametrize(
    ("current", "new"),
    [
        (AuditStatus.ANALYZING, AuditStatus.CRAWLING),
        (AuditStatus.PAYMENT_COMPLETE, AuditStatus.PAYMENT_COMPLETE),
        (AuditStatus.COMPLETED, AuditStatus.FAILED),
        (AuditStatus.FAILED, AuditStatus.PAYMENT_COMPLETE),
        (AuditStatus.COMPLETED, AuditStatus.ANALYZING),
    ],
)
def test_backward_repeated_and_terminal_moves_rejected(current: AuditStatus, new: AuditStatus) -> None:
    assert not is_forward_transition(current, new)


def test_terminal_states() -> None:
    assert is_terminal("COMPLETED")
    assert is_terminal(AuditStatus.FAILED)
    assert not is_terminal(AuditStatus.ANALYZING)
