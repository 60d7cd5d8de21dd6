"""
Role based access control for repository scoped permissions.

Each repository role maps to a fixed set of (action, subject) abilities.
Users without a role on a repository have no abilities there.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple, Union

from ..errors import AuthorizationError
from ..models import RepoRole


class PermissionAction(str, Enum):
    """Actions that can be granted on a subject."""

    READ = "read"
    WRITE = "write"
    MANAGE = "manage"
    ADMIN = "admin"


class PermissionSubject(str, Enum):
    """Resources permissions apply to."""

    REPO = "repo"
    TEST_CASE = "test_case"
    TEST_RUN = "test_run"
    CONFIG = "config"
    ROLE = "role"
    AUDIT = "audit"


Rule = Tuple[PermissionAction, PermissionSubject]

_CONTENT_SUBJECTS = (
    PermissionSubject.REPO,
    PermissionSubject.TEST_CASE,
    PermissionSubject.TEST_RUN,
    PermissionSubject.CONFIG,
)


def _rules(
    action: PermissionAction, subjects: Iterable[PermissionSubject]
) -> FrozenSet[Rule]:
    return frozenset((action, subject) for subject in subjects)


ROLE_ABILITIES: Dict[RepoRole, FrozenSet[Rule]] = {
    RepoRole.ADMIN: (
        _rules(PermissionAction.READ, PermissionSubject)
        | _rules(PermissionAction.WRITE, _CONTENT_SUBJECTS)
        | _rules(PermissionAction.MANAGE, _CONTENT_SUBJECTS)
        | _rules(
            PermissionAction.ADMIN, (PermissionSubject.ROLE, PermissionSubject.CONFIG)
        )
    ),
    RepoRole.MEMBER: (
        _rules(PermissionAction.READ, _CONTENT_SUBJECTS)
        | _rules(PermissionAction.WRITE, _CONTENT_SUBJECTS)
    ),
    RepoRole.READ_ONLY: _rules(PermissionAction.READ, _CONTENT_SUBJECTS),
}


@dataclass(frozen=True)
class Ability:
    """Set of abilities a user holds on one repository."""

    role: Optional[RepoRole] = None
    rules: FrozenSet[Rule] = field(default_factory=frozenset)

    def can(
        self,
        action: Union[PermissionAction, str],
        subject: Union[PermissionSubject, str],
    ) -> bool:
        """Check whether the action is allowed on the subject."""
        try:
            rule = (PermissionAction(action), PermissionSubject(subject))
        except ValueError:
            return False
        return rule in self.rules

    def cannot(
        self,
        action: Union[PermissionAction, str],
        subject: Union[PermissionSubject, str],
    ) -> bool:
        return not self.can(action, subject)


def create_ability_for_role(role: Optional[Union[RepoRole, str]]) -> Ability:
    """Build the ability set for a role; None yields no abilities."""
    if role is None:
        return Ability()
    resolved = RepoRole(role)
    return Ability(role=resolved, rules=ROLE_ABILITIES[resolved])


def require_permission(
    ability: Ability,
    action: Union[PermissionAction, str],
    subject: Union[PermissionSubject, str],
) -> None:
    """
    Require an ability or raise.

    Raises:
        AuthorizationError: If the ability is missing
    """
    if not ability.can(action, subject):
        action_value = getattr(action, "value", action)
        subject_value = getattr(subject, "value", subject)
        raise AuthorizationError(f"Forbidden: cannot {action_value} {subject_value}")
