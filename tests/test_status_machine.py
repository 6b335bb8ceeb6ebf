import pytest

from loanflow.schemas.identity import Role
from loanflow.schemas.loan import LoanStatus
from loanflow.services import status_machine
from loanflow.services.errors import InvalidTransition


@pytest.mark.parametrize(
    ("current", "target", "role"),
    [
        (LoanStatus.DRAFT, LoanStatus.UNDER_KAM_REVIEW, Role.CLIENT),
        (LoanStatus.UNDER_KAM_REVIEW, LoanStatus.PENDING_CREDIT_REVIEW, Role.KAM),
        (LoanStatus.UNDER_KAM_REVIEW, LoanStatus.QUERY_WITH_CLIENT, Role.KAM),
        (LoanStatus.CREDIT_QUERY_WITH_KAM, LoanStatus.PENDING_CREDIT_REVIEW, Role.KAM),
        (LoanStatus.PENDING_CREDIT_REVIEW, LoanStatus.IN_NEGOTIATION, Role.CREDIT_TEAM),
        (LoanStatus.SENT_TO_NBFC, LoanStatus.APPROVED, Role.CREDIT_TEAM),
        (LoanStatus.APPROVED, LoanStatus.DISBURSED, Role.CREDIT_TEAM),
        (LoanStatus.DISBURSED, LoanStatus.CLOSED, Role.CREDIT_TEAM),
    ],
)
def test_allowed_moves(current, target, role):
    assert status_machine.is_valid_transition(current, target, role)
    status_machine.validate_transition(current, target, role)


def test_client_cannot_approve():
    assert not status_machine.is_valid_transition(LoanStatus.SENT_TO_NBFC, LoanStatus.APPROVED, Role.CLIENT)


def test_nbfc_has_no_status_moves():
    for status in LoanStatus:
        assert status_machine.get_allowed_next_statuses(status, Role.NBFC) == frozenset()


def test_closed_is_terminal_for_everyone():
    assert status_machine.is_terminal(LoanStatus.CLOSED)
    for role in Role:
        assert status_machine.get_allowed_next_statuses(LoanStatus.CLOSED, role) == frozenset()


def test_final_outcomes_only_leave_via_credit_team():
    for status in status_machine.FINAL_OUTCOME_STATUSES:
        for role in (Role.CLIENT, Role.KAM, Role.NBFC):
            assert status_machine.get_allowed_next_statuses(status, role) == frozenset()
        assert status_machine.get_allowed_next_statuses(status, Role.CREDIT_TEAM)


def test_string_inputs_are_normalised():
    assert status_machine.is_valid_transition("Draft", "under kam review", "client")


def test_unknown_role_or_status_is_rejected():
    assert status_machine.get_allowed_next_statuses("draft", "admin") == frozenset()
    assert not status_machine.is_valid_transition("bogus", "draft", Role.CLIENT)


def test_validate_transition_lists_alternatives():
    with pytest.raises(InvalidTransition) as exc_info:
        status_machine.validate_transition(LoanStatus.DRAFT, LoanStatus.APPROVED, Role.CLIENT)
    error = exc_info.value
    assert error.status_code == 400
    assert error.code == "invalid_transition"
    assert "from Draft to Approved for role client" in error.message
    assert "Under KAM Review" in error.message
    assert error.details["allowed"] == ["under_kam_review", "withdrawn"]


def test_validate_transition_without_alternatives():
    with pytest.raises(InvalidTransition) as exc_info:
        status_machine.validate_transition(LoanStatus.CLOSED, LoanStatus.DRAFT, Role.CREDIT_TEAM)
    assert "No transitions are available" in exc_info.value.message
    assert exc_info.value.details["allowed"] == []


def test_target_role_for_status():
    assert status_machine.target_role_for_status(LoanStatus.UNDER_KAM_REVIEW) == Role.KAM
    assert status_machine.target_role_for_status(LoanStatus.SENT_TO_NBFC) == Role.NBFC
    assert status_machine.target_role_for_status("query_with_client") == Role.CLIENT
