"""Per-role character budgets for context bundles."""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .enums import AgentRole
from .errors import UnknownRoleError


@dataclass(frozen=True)
class RoleBudget:
    role: str
    display_name: str
    hard_limit: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "role": self.role,
            "display_name": self.display_name,
            "hard_limit": self.hard_limit,
        }


ROLE_BUDGETS: Dict[str, RoleBudget] = {
    budget.role: budget
    for budget in (
        RoleBudget(AgentRole.PROJECT_MANAGER.value, "Project Manager", 30_000),
        RoleBudget(AgentRole.IMPLEMENTATION_AGENT.value, "Implementation Agent", 40_000),
        RoleBudget(AgentRole.QA_AGENT.value, "QA Agent", 20_000),
        RoleBudget(AgentRole.PROCESS_REVIEW.value, "Process Review", 15_000),
    )
}


def valid_roles() -> List[str]:
    return list(ROLE_BUDGETS)


def list_role_budgets() -> List[RoleBudget]:
    return list(ROLE_BUDGETS.values())


def get_role_budget(role: str) -> Optional[RoleBudget]:
    """Budget for ``role``, or None when the role is unknown."""
    return ROLE_BUDGETS.get(role)


def require_role_budget(role: str) -> RoleBudget:
    budget = get_role_budget(role)
    if budget is None:
        raise UnknownRoleError(role, valid_roles())
    return budget


def exceeds_budget(role: str, total_characters: int) -> bool:
    return total_characters > require_role_budget(role).hard_limit


def calculate_overage(role: str, total_characters: int) -> int:
    """Characters over the role's hard limit; 0 at or below it."""
    return max(0, total_characters - require_role_budget(role).hard_limit)
