"""
Agent Context Desk

Versioned, checksummed context bundles for agents working a ticket backlog.
"""

import importlib.metadata

__version__ = importlib.metadata.version("agent-context-desk")

from .bundles.budgets import ROLE_BUDGETS, RoleBudget, get_role_budget
from .bundles.checksum import canonical_json, content_checksum
from .bundles.enums import AgentRole

__all__ = [
    "AgentRole",
    "ROLE_BUDGETS",
    "RoleBudget",
    "canonical_json",
    "content_checksum",
    "get_role_budget",
]
