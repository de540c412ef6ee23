"""
Canonical enums for context bundles.

Roles are transmitted as their string values; unknown strings are rejected at
the budget lookup rather than at parse time so the error names the valid set.
"""

from enum import Enum


class AgentRole(str, Enum):
    """Agent roles that receive context bundles."""

    PROJECT_MANAGER = "project-manager"
    IMPLEMENTATION_AGENT = "implementation-agent"
    QA_AGENT = "qa-agent"
    PROCESS_REVIEW = "process-review"


class BundleState(str, Enum):
    """States a bundle request passes through while being stored."""

    BUILDING = "BUILDING"
    CHECKSUMMED = "CHECKSUMMED"
    REUSED = "REUSED"
    VERSIONED_NEW = "VERSIONED_NEW"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"


class AgentRunType(str, Enum):
    """Agent types recorded on agent runs."""

    IMPLEMENTATION = "implementation"
    QA = "qa"
    PROJECT_MANAGER = "project-manager"
    PROCESS_REVIEW = "process-review"


# Agent run type -> bundle role
RUN_TYPE_ROLES = {
    AgentRunType.IMPLEMENTATION.value: AgentRole.IMPLEMENTATION_AGENT.value,
    AgentRunType.QA.value: AgentRole.QA_AGENT.value,
    AgentRunType.PROJECT_MANAGER.value: AgentRole.PROJECT_MANAGER.value,
    AgentRunType.PROCESS_REVIEW.value: AgentRole.PROCESS_REVIEW.value,
}
