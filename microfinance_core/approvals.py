"""
Approval Gateway Module

Authorization check consulted by the lifecycles before privileged
transitions (approve, reject, disburse, default, close). The core only
calls out to a gateway; who holds which role is decided by the
surrounding system.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Set, Union
import logging

from .audit import AuditEventType, AuditTrail
from .exceptions import Unauthorized


class Permission(Enum):
    """Privileged lifecycle actions"""
    APPROVE_LOAN = "approve_loan"
    REJECT_LOAN = "reject_loan"
    DISBURSE_LOAN = "disburse_loan"
    DEFAULT_LOAN = "default_loan"
    APPROVE_SAVINGS = "approve_savings"
    CLOSE_SAVINGS = "close_savings"
    REVERSE_ENTRY = "reverse_entry"


@dataclass(frozen=True)
class Actor:
    """Staff member issuing a command"""
    id: str
    role: str = "loan_officer"

    def __str__(self) -> str:
        return self.id


class ApprovalGateway(ABC):
    """Capability check for privileged transitions"""

    @abstractmethod
    def can(self, actor: Actor, permission: Permission) -> bool:
        """Whether actor may perform the action"""

    def authorize(self, actor: Actor, permission: Permission) -> None:
        """
        Raise Unauthorized unless actor may perform the action

        Raises:
            Unauthorized: If the check fails
        """
        if not self.can(actor, permission):
            raise Unauthorized(actor.id, permission.value)


class RoleBasedApprovalGateway(ApprovalGateway):
    """
    Grants every privileged action to a fixed set of roles

    Defaults to manager, director and admin. Individual permissions can be
    narrowed with role_overrides, e.g. {Permission.DEFAULT_LOAN: {"director"}}.
    """

    def __init__(self, approval_roles: Iterable[str] = ("manager", "director", "admin"),
                 role_overrides: Optional[Dict[Permission, Set[str]]] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.approval_roles = {role.strip().lower() for role in approval_roles}
        self.role_overrides = {
            permission: {role.lower() for role in roles}
            for permission, roles in (role_overrides or {}).items()
        }
        self.audit_trail = audit_trail
        self.logger = logging.getLogger("microfinance.approvals")

    def roles_for(self, permission: Permission) -> Set[str]:
        return self.role_overrides.get(permission, self.approval_roles)

    def can(self, actor: Actor, permission: Permission) -> bool:
        return actor.role.lower() in self.roles_for(permission)

    def authorize(self, actor: Actor, permission: Permission) -> None:
        if self.can(actor, permission):
            return

        self.logger.warning(
            f"Denied {permission.value} to {actor.id} with role {actor.role}"
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.AUTHORIZATION_DENIED,
                entity_type="actor",
                entity_id=actor.id,
                metadata={"role": actor.role, "permission": permission.value},
                user_id=actor.id
            )
        raise Unauthorized(actor.id, permission.value)


class AllowAllApprovalGateway(ApprovalGateway):
    """Gateway for embedding callers that authorize upstream"""

    def can(self, actor: Actor, permission: Permission) -> bool:
        return True


def actor_id(actor: Union[Actor, str, None]) -> Optional[str]:
    """ID of an Actor, or the value itself for plain staff IDs"""
    if actor is None:
        return None
    return actor.id if isinstance(actor, Actor) else str(actor)
