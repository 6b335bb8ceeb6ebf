"""Loan file status graph and the per-role transition matrix.

Pure data and pure functions; nothing here touches the record store.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from loanflow.schemas.identity import Role
from loanflow.schemas.loan import LoanStatus
from loanflow.services.errors import InvalidTransition

S = LoanStatus

TERMINAL_STATUSES: frozenset[LoanStatus] = frozenset({S.CLOSED})

# Outcome states: only the credit team may move out of them, and only to close
# the file (or reject an approval that fell through before disbursal).
FINAL_OUTCOME_STATUSES: frozenset[LoanStatus] = frozenset(
    {S.APPROVED, S.REJECTED, S.DISBURSED, S.WITHDRAWN}
)

_EMPTY: frozenset[LoanStatus] = frozenset()

TRANSITION_MATRIX: Mapping[Role, Mapping[LoanStatus, frozenset[LoanStatus]]] = MappingProxyType(
    {
        Role.CLIENT: MappingProxyType(
            {
                S.DRAFT: frozenset({S.UNDER_KAM_REVIEW, S.WITHDRAWN}),
                S.UNDER_KAM_REVIEW: frozenset({S.WITHDRAWN}),
                S.QUERY_WITH_CLIENT: frozenset({S.UNDER_KAM_REVIEW, S.WITHDRAWN}),
                S.PENDING_CREDIT_REVIEW: frozenset({S.WITHDRAWN}),
                S.IN_NEGOTIATION: frozenset({S.WITHDRAWN}),
            }
        ),
        Role.KAM: MappingProxyType(
            {
                S.UNDER_KAM_REVIEW: frozenset({S.QUERY_WITH_CLIENT, S.PENDING_CREDIT_REVIEW}),
                S.QUERY_WITH_CLIENT: frozenset({S.UNDER_KAM_REVIEW}),
                S.CREDIT_QUERY_WITH_KAM: frozenset({S.PENDING_CREDIT_REVIEW}),
            }
        ),
        Role.CREDIT_TEAM: MappingProxyType(
            {
                S.PENDING_CREDIT_REVIEW: frozenset(
                    {S.CREDIT_QUERY_WITH_KAM, S.IN_NEGOTIATION, S.REJECTED}
                ),
                S.CREDIT_QUERY_WITH_KAM: frozenset({S.PENDING_CREDIT_REVIEW, S.REJECTED}),
                S.IN_NEGOTIATION: frozenset({S.SENT_TO_NBFC, S.REJECTED}),
                S.SENT_TO_NBFC: frozenset({S.APPROVED, S.REJECTED, S.IN_NEGOTIATION}),
                S.APPROVED: frozenset({S.DISBURSED, S.REJECTED}),
                S.REJECTED: frozenset({S.CLOSED}),
                S.DISBURSED: frozenset({S.CLOSED}),
                S.WITHDRAWN: frozenset({S.CLOSED}),
            }
        ),
        Role.NBFC: MappingProxyType({}),
    }
)

STATUS_DISPLAY_NAMES: Mapping[LoanStatus, str] = MappingProxyType(
    {
        S.DRAFT: "Draft",
        S.UNDER_KAM_REVIEW: "Under KAM Review",
        S.QUERY_WITH_CLIENT: "Query with Client",
        S.PENDING_CREDIT_REVIEW: "Pending Credit Review",
        S.CREDIT_QUERY_WITH_KAM: "Credit Query with KAM",
        S.IN_NEGOTIATION: "In Negotiation",
        S.SENT_TO_NBFC: "Sent to NBFC",
        S.APPROVED: "Approved",
        S.REJECTED: "Rejected",
        S.DISBURSED: "Disbursed",
        S.WITHDRAWN: "Withdrawn",
        S.CLOSED: "Closed",
    }
)

# Who acts next once a file lands in a status.
NEXT_ACTOR_ROLE: Mapping[LoanStatus, Role] = MappingProxyType(
    {
        S.DRAFT: Role.CLIENT,
        S.UNDER_KAM_REVIEW: Role.KAM,
        S.QUERY_WITH_CLIENT: Role.CLIENT,
        S.PENDING_CREDIT_REVIEW: Role.CREDIT_TEAM,
        S.CREDIT_QUERY_WITH_KAM: Role.KAM,
        S.IN_NEGOTIATION: Role.CREDIT_TEAM,
        S.SENT_TO_NBFC: Role.NBFC,
        S.APPROVED: Role.CREDIT_TEAM,
        S.REJECTED: Role.CLIENT,
        S.DISBURSED: Role.CLIENT,
        S.WITHDRAWN: Role.KAM,
        S.CLOSED: Role.CREDIT_TEAM,
    }
)


def _coerce_status(value: LoanStatus | str) -> LoanStatus | None:
    try:
        return LoanStatus(value)
    except ValueError:
        return None


def get_allowed_next_statuses(current: LoanStatus | str, role: Role | str | None) -> frozenset[LoanStatus]:
    status = _coerce_status(current)
    parsed_role = Role.parse(role)
    if status is None or parsed_role is None:
        return _EMPTY
    return TRANSITION_MATRIX[parsed_role].get(status, _EMPTY)


def is_valid_transition(
    current: LoanStatus | str,
    target: LoanStatus | str,
    role: Role | str | None,
) -> bool:
    target_status = _coerce_status(target)
    if target_status is None:
        return False
    return target_status in get_allowed_next_statuses(current, role)


def _ordered(statuses: frozenset[LoanStatus]) -> list[LoanStatus]:
    order = list(LoanStatus)
    return sorted(statuses, key=order.index)


def validate_transition(
    current: LoanStatus | str,
    target: LoanStatus | str,
    role: Role | str | None,
) -> None:
    if is_valid_transition(current, target, role):
        return
    allowed = _ordered(get_allowed_next_statuses(current, role))
    parsed_role = Role.parse(role)
    role_label = parsed_role.value if parsed_role else str(role)
    current_label = display_name(current)
    target_label = display_name(target)
    if allowed:
        alternatives = ", ".join(STATUS_DISPLAY_NAMES[status] for status in allowed)
        hint = f"Allowed next statuses: {alternatives}"
    else:
        hint = "No transitions are available from this status"
    raise InvalidTransition(
        message=(
            f"Invalid status transition from {current_label} to {target_label} "
            f"for role {role_label}. {hint}"
        ),
        details={
            "from": _value(current),
            "to": _value(target),
            "role": role_label,
            "allowed": [status.value for status in allowed],
        },
    )


def is_terminal(status: LoanStatus | str) -> bool:
    return _coerce_status(status) in TERMINAL_STATUSES


def display_name(status: LoanStatus | str) -> str:
    parsed = _coerce_status(status)
    if parsed is None:
        return str(status)
    return STATUS_DISPLAY_NAMES[parsed]


def target_role_for_status(status: LoanStatus | str) -> Role:
    parsed = _coerce_status(status)
    if parsed is None:
        return Role.CREDIT_TEAM
    return NEXT_ACTOR_ROLE[parsed]


def _value(status: LoanStatus | str) -> str:
    parsed = _coerce_status(status)
    return parsed.value if parsed is not None else str(status)
