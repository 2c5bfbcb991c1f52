"""
Authorization Guard Module

Decides whether an actor may record a decision on a step. Pure predicate over
the step's eligible actor, the actor's roles (from an injected resolver) and
any active delegations; it never mutates workflow state.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set
import threading

from .models import EligibleActor, RoleActor, UserActor


class RoleResolver(Protocol):
    """Looks up the roles an actor currently holds"""

    def roles_for(self, actor_id: str) -> Set[str]:
        ...


class StaticRoleResolver:
    """Role resolver backed by an in-process user -> roles mapping"""

    def __init__(self, memberships: Optional[Dict[str, Iterable[str]]] = None):
        self._memberships: Dict[str, Set[str]] = {
            user: set(roles) for user, roles in (memberships or {}).items()
        }
        self._lock = threading.RLock()

    def assign(self, actor_id: str, role: str) -> None:
        with self._lock:
            self._memberships.setdefault(actor_id, set()).add(role)

    def revoke(self, actor_id: str, role: str) -> None:
        with self._lock:
            self._memberships.get(actor_id, set()).discard(role)

    def roles_for(self, actor_id: str) -> Set[str]:
        with self._lock:
            return set(self._memberships.get(actor_id, set()))

    def members_of(self, role: str) -> List[str]:
        with self._lock:
            return sorted(user for user, roles in self._memberships.items() if role in roles)


@dataclass(frozen=True)
class Delegation:
    """Temporary transfer of a user's approval authority to another user"""
    delegator: str
    delegate: str
    valid_from: datetime
    valid_until: Optional[datetime] = None

    def is_active(self, at: datetime) -> bool:
        if at < self.valid_from:
            return False
        return self.valid_until is None or at < self.valid_until


class DelegationRegistry:
    """Active and scheduled delegations"""

    def __init__(self):
        self._delegations: List[Delegation] = []
        self._lock = threading.RLock()

    def add(self, delegation: Delegation) -> None:
        if delegation.delegator == delegation.delegate:
            raise ValueError("A user cannot delegate to themselves")
        with self._lock:
            self._delegations.append(delegation)

    def revoke(self, delegator: str, delegate: str) -> int:
        """Remove all delegations between the pair; returns how many were removed"""
        with self._lock:
            before = len(self._delegations)
            self._delegations = [
                d for d in self._delegations
                if not (d.delegator == delegator and d.delegate == delegate)
            ]
            return before - len(self._delegations)

    def delegators_for(self, delegate: str, at: datetime) -> Set[str]:
        """Users whose authority the delegate currently holds"""
        with self._lock:
            return {
                d.delegator for d in self._delegations
                if d.delegate == delegate and d.is_active(at)
            }


class AuthorizationGuard:
    """
    Eligibility predicate for step decisions.

    - User step: the actor is the assigned user, or an active delegate of them.
    - Role step: the actor holds the role, holds an administrative override
      role, or is an active delegate of someone holding the role.
    """

    def __init__(self, role_resolver: Optional[RoleResolver] = None,
                 admin_roles: Iterable[str] = ("ADMIN",),
                 delegations: Optional[DelegationRegistry] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.role_resolver = role_resolver or StaticRoleResolver()
        self.admin_roles = set(admin_roles)
        self.delegations = delegations or DelegationRegistry()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def is_admin(self, actor_id: str) -> bool:
        return bool(self.role_resolver.roles_for(actor_id) & self.admin_roles)

    def is_eligible(self, actor_id: str, eligible_actor: EligibleActor) -> bool:
        if not actor_id:
            return False

        delegators = self.delegations.delegators_for(actor_id, self._clock())

        if isinstance(eligible_actor, UserActor):
            return actor_id == eligible_actor.user_id or eligible_actor.user_id in delegators

        if isinstance(eligible_actor, RoleActor):
            roles = self.role_resolver.roles_for(actor_id)
            if eligible_actor.role in roles or roles & self.admin_roles:
                return True
            return any(
                eligible_actor.role in self.role_resolver.roles_for(delegator)
                for delegator in delegators
            )

        return False
