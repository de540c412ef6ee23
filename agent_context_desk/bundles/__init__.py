"""
Context bundles.

A context bundle is the exact snapshot of ticket, run, artifact and manifest
data handed to one agent role before it acts on a ticket:

- checksum: canonical JSON, content/bundle checksums, section metrics
- budgets: per-role character limits
- distill: artifact summaries through a pluggable summarizer
- builder: payload assembly from collaborator sources
- scoring: deterministic artifact relevance ranking
- selection: ranking, pins and standalone distillation over stored artifacts
- services: idempotent, versioned, transactional storage with receipts and
  continuity checks that rebuild a bundle from its receipt
- routes: the /context-bundles HTTP surface
"""

from .budgets import ROLE_BUDGETS, RoleBudget, get_role_budget
from .enums import AgentRole
from .errors import BundleError

__all__ = [
    "AgentRole",
    "BundleError",
    "ROLE_BUDGETS",
    "RoleBudget",
    "get_role_budget",
]
