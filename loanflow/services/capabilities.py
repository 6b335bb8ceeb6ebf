"""Per-role capability objects.

One capability is selected from the caller's role at the request boundary and
passed down, so the service layer asks the capability instead of branching on
role strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from loanflow.schemas.identity import Identity, Role
from loanflow.schemas.loan import LoanStatus
from loanflow.schemas.query import QueryNode
from loanflow.services import status_machine


@dataclass(frozen=True)
class Capability:
    identity: Identity

    role: ClassVar[Role]

    def allowed_next_statuses(self, current: LoanStatus | str) -> frozenset[LoanStatus]:
        return status_machine.get_allowed_next_statuses(current, self.role)

    def can_transition(self, current: LoanStatus | str, target: LoanStatus | str) -> bool:
        return status_machine.is_valid_transition(current, target, self.role)

    def validate_transition(self, current: LoanStatus | str, target: LoanStatus | str) -> None:
        status_machine.validate_transition(current, target, self.role)

    def can_resolve(self, root: QueryNode) -> bool:
        """Only the root's author resolves it; an authorless root is open to anyone."""
        if not root.author_id:
            return True
        return root.author_id == self.identity.email

    def can_reopen(self, root: QueryNode) -> bool:
        return self.can_resolve(root)

    def can_edit(self, node: QueryNode) -> bool:
        return bool(node.author_id) and node.author_id == self.identity.email

    def can_view_thread(self, root: QueryNode) -> bool:
        return True


class ClientCapability(Capability):
    role = Role.CLIENT

    def can_view_thread(self, root: QueryNode) -> bool:
        if root.target_role == Role.CLIENT.value:
            return True
        return root.author_id == self.identity.email


class KamCapability(Capability):
    role = Role.KAM


class CreditCapability(Capability):
    role = Role.CREDIT_TEAM


class NbfcCapability(Capability):
    role = Role.NBFC

    def can_view_thread(self, root: QueryNode) -> bool:
        if root.target_role == Role.NBFC.value:
            return True
        return root.author_id == self.identity.email


_CAPABILITIES: dict[Role, type[Capability]] = {
    Role.CLIENT: ClientCapability,
    Role.KAM: KamCapability,
    Role.CREDIT_TEAM: CreditCapability,
    Role.NBFC: NbfcCapability,
}


def capability_for(identity: Identity) -> Capability:
    return _CAPABILITIES[identity.role](identity)
