"""
Status Transition Guard
=======================
Decides whether a document may move from its current status to a requested
one. Evaluated before any write.

    invoice   Unpaid   -> Paid                 apply
    quote     Pending  -> Accepted | Rejected  apply
    any       X        -> X                    no-op (already applied)
    any       value outside the kind's enum    reject, unknown target
    otherwise                                  reject, not permitted
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from pipeline.errors import InvalidStatusError, TransitionConflictError
from schemas.documents import (
    DocumentKind,
    DocumentStatus,
    InvoiceStatus,
    QuoteStatus,
    parse_status,
)


class TransitionOutcome(str, Enum):
    APPLY = "apply"
    NOOP_ALREADY_APPLIED = "noop_already_applied"
    REJECT = "reject"


class RejectReason(str, Enum):
    UNKNOWN_TARGET = "unknown_target"
    NOT_PERMITTED = "not_permitted"


ALLOWED_TRANSITIONS: dict[DocumentKind, set[tuple[DocumentStatus, DocumentStatus]]] = {
    DocumentKind.INVOICE: {
        (InvoiceStatus.UNPAID, InvoiceStatus.PAID),
    },
    DocumentKind.QUOTE: {
        (QuoteStatus.PENDING, QuoteStatus.ACCEPTED),
        (QuoteStatus.PENDING, QuoteStatus.REJECTED),
    },
}


class TransitionDecision(BaseModel):
    kind: DocumentKind
    outcome: TransitionOutcome
    current: Optional[str] = None
    target: Optional[str] = None
    reason: Optional[RejectReason] = None
    message: str = ""

    @property
    def should_apply(self) -> bool:
        return self.outcome == TransitionOutcome.APPLY

    @property
    def is_noop(self) -> bool:
        return self.outcome == TransitionOutcome.NOOP_ALREADY_APPLIED

    @property
    def is_rejected(self) -> bool:
        return self.outcome == TransitionOutcome.REJECT

    def raise_for_reject(self) -> None:
        """Raise the matching error for a rejected decision"""
        if not self.is_rejected:
            return
        details = {"kind": self.kind.value, "current": self.current, "requested": self.target}
        if self.reason == RejectReason.UNKNOWN_TARGET:
            raise InvalidStatusError(self.message, details=details)
        raise TransitionConflictError(self.message, details=details)


def _label(value) -> Optional[str]:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


def evaluate_transition(kind: DocumentKind, current, requested) -> TransitionDecision:
    """
    Guard a status change.

    Args:
        kind: Document kind whose enum applies
        current: Status currently stored
        requested: Target status; raw labels are mapped through parse_status

    Returns:
        TransitionDecision with outcome apply, no-op or reject
    """
    kind = DocumentKind(kind)
    target = parse_status(kind, requested)
    if target is None:
        return TransitionDecision(
            kind=kind,
            outcome=TransitionOutcome.REJECT,
            current=_label(current),
            target=_label(requested),
            reason=RejectReason.UNKNOWN_TARGET,
            message=f"Invalid status value {_label(requested)!r} for {kind.value}",
        )

    source = parse_status(kind, current)
    if source == target:
        return TransitionDecision(
            kind=kind,
            outcome=TransitionOutcome.NOOP_ALREADY_APPLIED,
            current=source.value,
            target=target.value,
        )

    if source is not None and (source, target) in ALLOWED_TRANSITIONS[kind]:
        return TransitionDecision(
            kind=kind,
            outcome=TransitionOutcome.APPLY,
            current=source.value,
            target=target.value,
        )

    return TransitionDecision(
        kind=kind,
        outcome=TransitionOutcome.REJECT,
        current=_label(current),
        target=target.value,
        reason=RejectReason.NOT_PERMITTED,
        message=f"Cannot change {kind.value} status from {_label(current)!r} to {target.value!r}",
    )
