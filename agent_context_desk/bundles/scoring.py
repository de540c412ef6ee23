"""
Deterministic artifact relevance ranking.

Every artifact of a ticket gets a score from five components: a pin boost,
query keyword overlap, agent type match with the role, file paths matching the
query, and recency. The same candidates, query, role and clock always produce
the same ranking, so a selection can be explained and reproduced.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Sequence

from .primitives import isoformat, utc_now

DEFAULT_MAX_ARTIFACTS = 10

_PATH = re.compile(
    r"(?:^|\s)(?:\./|\.\./)?[\w\-./]+\."
    r"(?:ts|tsx|js|jsx|mdc|md|json|sql|py|go|rs|java|rb|php|yml|yaml)(?:\s|$)",
    re.IGNORECASE | re.ASCII,
)


@dataclass(frozen=True)
class ScoringWeights:
    pinned_boost: int = 100
    keyword_match_weight: int = 10
    keyword_cap: int = 50
    tag_match_weight: int = 15
    path_match_weight: int = 20
    recency_decay_days: int = 30
    recency_max: int = 20


DEFAULT_WEIGHTS = ScoringWeights()


@dataclass
class ArtifactCandidate:
    artifact_id: str
    title: str = ""
    agent_type: str = ""
    created_at: Optional[datetime] = None
    body_md: Optional[str] = None
    pinned: bool = False


@dataclass
class ScoredArtifact:
    artifact_id: str
    title: str
    agent_type: str
    created_at: Optional[datetime]
    score: float
    reasons: List[str] = field(default_factory=list)
    pinned: bool = False
    selected: bool = False
    exclusion_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "artifact_id": self.artifact_id,
            "title": self.title,
            "agent_type": self.agent_type,
            "created_at": isoformat(self.created_at) or "",
            "score": self.score,
            "reasons": list(self.reasons),
            "pinned": self.pinned,
            "selected": self.selected,
        }
        if self.exclusion_reason:
            result["exclusion_reason"] = self.exclusion_reason
        return result


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like JavaScript's ``Math.round``: halves go towards +infinity."""
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _searchable_text(candidate: ArtifactCandidate) -> str:
    parts = [candidate.title or "", (candidate.title or "").lower(), candidate.body_md or ""]
    return " ".join(part for part in parts if part).lower()


def count_keyword_matches(text: str, query: str) -> int:
    """Whole-word occurrences in ``text`` of every query word longer than two characters."""
    total = 0
    for word in query.lower().split():
        if len(word) > 2:
            total += len(re.findall(rf"\b{re.escape(word)}\b", text, re.IGNORECASE | re.ASCII))
    return total


def score_artifact(
    candidate: ArtifactCandidate,
    query: str = "",
    role: str = "",
    now: Optional[datetime] = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> ScoredArtifact:
    """Score one candidate. ``reasons`` lists each component that contributed."""
    now = _aware(now) or utc_now()
    reasons: List[str] = []
    score = 0.0

    if candidate.pinned:
        score += weights.pinned_boost
        reasons.append(f"Pinned (+{weights.pinned_boost})")

    text = _searchable_text(candidate)
    query_lower = (query or "").lower()
    role_lower = (role or "").lower()

    if query_lower and text:
        matches = count_keyword_matches(text, query_lower)
        if matches:
            keyword_score = min(matches * weights.keyword_match_weight, weights.keyword_cap)
            score += keyword_score
            reasons.append(f"Keyword overlap: {matches} matches (+{keyword_score:.1f})")

    agent_type = candidate.agent_type or "unknown"
    if role_lower:
        type_lower = agent_type.lower()
        if type_lower in role_lower or role_lower in type_lower:
            score += weights.tag_match_weight
            reasons.append(f"Agent type match: {agent_type} (+{weights.tag_match_weight})")

    if query_lower and text:
        paths = _PATH.findall(text)
        if paths and any(query_lower in path.lower() for path in paths):
            score += weights.path_match_weight
            reasons.append(f"Path match: found {len(paths)} path(s) (+{weights.path_match_weight})")

    created_at = _aware(candidate.created_at)
    if created_at is not None:
        days = (now - created_at).total_seconds() / 86400
        if 0 <= days <= weights.recency_decay_days:
            recency = max(
                0.0,
                (weights.recency_decay_days - days) / weights.recency_decay_days * weights.recency_max,
            )
            score += recency
            if recency > 0:
                reasons.append(f"Recency: {int(round_half_up(days))} days ago (+{recency:.1f})")

    if not reasons:
        reasons.append("Base score")

    return ScoredArtifact(
        artifact_id=candidate.artifact_id,
        title=candidate.title or "Untitled",
        agent_type=agent_type,
        created_at=created_at,
        score=round_half_up(max(0.0, score), 2),
        reasons=reasons,
        pinned=candidate.pinned,
    )


def _compare(a: ScoredArtifact, b: ScoredArtifact) -> float:
    # Scores within 0.01 tie; newer artifacts then go first
    if abs(a.score - b.score) > 0.01:
        return b.score - a.score
    if a.created_at is None or b.created_at is None:
        return 0
    return (b.created_at - a.created_at).total_seconds()


def select_artifacts(
    candidates: Sequence[ArtifactCandidate],
    query: str = "",
    role: str = "",
    max_artifacts: int = DEFAULT_MAX_ARTIFACTS,
    now: Optional[datetime] = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> List[ScoredArtifact]:
    """Score and rank every candidate and mark the selected ones.

    Pinned artifacts are always selected; the top unpinned artifacts fill
    whatever is left of ``max_artifacts``.
    """
    now = _aware(now) or utc_now()
    scored = sorted(
        (score_artifact(c, query=query, role=role, now=now, weights=weights) for c in candidates),
        key=cmp_to_key(_compare),
    )

    pinned = [a for a in scored if a.pinned]
    unpinned = [a for a in scored if not a.pinned]
    remaining = max(0, max_artifacts - len(pinned))
    selected_ids = {a.artifact_id for a in pinned + unpinned[:remaining]}

    for artifact in scored:
        artifact.selected = artifact.artifact_id in selected_ids
        if artifact.selected:
            continue
        if artifact.score < 1:
            artifact.exclusion_reason = "Low score (< 1.0)"
        else:
            artifact.exclusion_reason = f"Budget pressure: Top {max_artifacts} selected"
    return scored
