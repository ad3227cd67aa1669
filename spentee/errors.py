"""Exception types and the warning category used across Spentee."""

from __future__ import annotations

from typing import Optional


class SpenteeError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(SpenteeError, ValueError):
    """A record is malformed or missing a required field."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class RecordNotFound(SpenteeError, KeyError):
    """The record does not exist or is not visible to the caller."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} '{record_id}' not found")
        self.kind = kind
        self.record_id = record_id

    def __str__(self) -> str:
        return self.args[0]


class EMIStateError(SpenteeError):
    """A pay/unpay transition was rejected by the EMI state machine."""

    reason = "EMI state change rejected"

    def __init__(self, plan_id: Optional[str], detail: Optional[str] = None):
        message = self.reason if not detail else f"{self.reason}: {detail}"
        super().__init__(message)
        self.plan_id = plan_id


class AlreadyPaidThisMonth(EMIStateError):
    reason = "EMI already marked as paid for this month"


class NoPaymentThisMonth(EMIStateError):
    reason = "No payment found for this month to unmark"


class PlanClosed(EMIStateError):
    reason = "EMI plan is closed"


class ConcurrentModification(SpenteeError):
    """An optimistic-concurrency update lost the race against another writer."""

    def __init__(self, plan_id: str, expected_version: int):
        super().__init__(
            f"EMI plan '{plan_id}' changed while updating (expected version {expected_version})"
        )
        self.plan_id = plan_id
        self.expected_version = expected_version


class InvariantViolation(SpenteeError):
    """Describes ledger data that breaks a model invariant.

    Aggregation reports these instead of raising them so that dashboards
    still render a best-effort figure.
    """


class LedgerWarning(UserWarning):
    """Emitted for every record excluded from, or flagged during, a computation."""
