"""
Tests for artifact relevance scoring.

Every test pins the clock so recency is reproducible.
"""

from datetime import datetime, timedelta, timezone

import pytest

from agent_context_desk.bundles.scoring import (
    ArtifactCandidate,
    ScoringWeights,
    count_keyword_matches,
    round_half_up,
    score_artifact,
    select_artifacts,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
OLD = NOW - timedelta(days=90)


def candidate(artifact_id="a", **overrides) -> ArtifactCandidate:
    defaults = {"title": "Notes", "agent_type": "implementation", "created_at": OLD}
    defaults.update(overrides)
    return ArtifactCandidate(artifact_id=artifact_id, **defaults)


class TestRoundHalfUp:
    @pytest.mark.parametrize(
        "value,digits,expected",
        [(2.5, 0, 3), (-2.5, 0, -2), (0.125, 2, 0.13), (18.0, 2, 18.0)],
    )
    def test_halves_round_towards_positive_infinity(self, value, digits, expected):
        assert round_half_up(value, digits) == expected


class TestKeywordMatches:
    def test_whole_words_only(self):
        assert count_keyword_matches("login logins relogin login", "login") == 2

    def test_short_words_ignored(self):
        assert count_keyword_matches("to do a login", "to do login") == 1

    def test_case_insensitive(self):
        assert count_keyword_matches("LOGIN Login", "login") == 2


class TestScoreArtifact:
    def test_base_score(self):
        scored = score_artifact(candidate(), now=NOW)

        assert scored.score == 0
        assert scored.reasons == ["Base score"]

    def test_pinned_boost(self):
        scored = score_artifact(candidate(pinned=True), now=NOW)

        assert scored.score == 100
        assert scored.reasons == ["Pinned (+100)"]
        assert scored.pinned is True

    def test_keyword_overlap(self):
        scored = score_artifact(
            candidate(title="Login design", body_md="login form"), query="login", now=NOW
        )

        # Title counts twice: as written and lower-cased
        assert scored.score == 30
        assert scored.reasons == ["Keyword overlap: 3 matches (+30.0)"]

    def test_keyword_overlap_is_capped(self):
        scored = score_artifact(candidate(body_md="login " * 9), query="login", now=NOW)

        assert scored.score == 50
        assert scored.reasons == ["Keyword overlap: 9 matches (+50.0)"]

    def test_agent_type_match(self):
        scored = score_artifact(candidate(agent_type="qa"), role="qa-agent", now=NOW)

        assert scored.score == 15
        assert scored.reasons == ["Agent type match: qa (+15)"]

    def test_missing_agent_type_never_matches(self):
        scored = score_artifact(candidate(agent_type=""), role="qa-agent", now=NOW)

        assert scored.agent_type == "unknown"
        assert scored.reasons == ["Base score"]

    def test_path_match(self):
        scored = score_artifact(
            candidate(body_md="See src/app.py for details"), query="app.py", now=NOW
        )

        assert scored.score == 30
        assert scored.reasons == [
            "Keyword overlap: 1 matches (+10.0)",
            "Path match: found 1 path(s) (+20)",
        ]

    def test_recency(self):
        scored = score_artifact(candidate(created_at=NOW - timedelta(days=3)), now=NOW)

        assert scored.score == 18.0
        assert scored.reasons == ["Recency: 3 days ago (+18.0)"]

    def test_naive_created_at_is_utc(self):
        naive = (NOW - timedelta(days=3)).replace(tzinfo=None)

        assert score_artifact(candidate(created_at=naive), now=NOW).score == 18.0

    @pytest.mark.parametrize("created_at", [NOW - timedelta(days=31), NOW + timedelta(days=1), None])
    def test_no_recency_outside_window(self, created_at):
        scored = score_artifact(candidate(created_at=created_at), now=NOW)

        assert scored.score == 0

    def test_custom_weights(self):
        weights = ScoringWeights(pinned_boost=7)

        assert score_artifact(candidate(pinned=True), now=NOW, weights=weights).score == 7

    def test_to_dict(self):
        data = score_artifact(candidate(created_at=None), now=NOW).to_dict()

        assert data["created_at"] == ""
        assert data["selected"] is False
        assert "exclusion_reason" not in data


class TestSelectArtifacts:
    def test_ranks_by_score_then_newest(self):
        ranked = select_artifacts(
            [
                candidate("older", created_at=OLD - timedelta(days=1)),
                candidate("match", body_md="login"),
                candidate("newer", created_at=OLD),
            ],
            query="login",
            now=NOW,
        )

        assert [a.artifact_id for a in ranked] == ["match", "newer", "older"]

    def test_pins_always_selected(self):
        ranked = select_artifacts(
            [
                candidate("best", body_md="login login"),
                candidate("good", body_md="login"),
                candidate("pinned", pinned=True),
            ],
            query="login",
            max_artifacts=1,
            now=NOW,
        )

        by_id = {a.artifact_id: a for a in ranked}
        assert ranked[0].artifact_id == "pinned"
        assert by_id["pinned"].selected is True
        assert by_id["best"].selected is False
        assert by_id["best"].exclusion_reason == "Budget pressure: Top 1 selected"

    def test_remaining_slots_go_to_top_unpinned(self):
        ranked = select_artifacts(
            [
                candidate("best", body_md="login login"),
                candidate("good", body_md="login"),
                candidate("pinned", pinned=True),
            ],
            query="login",
            max_artifacts=2,
            now=NOW,
        )

        selected = [a.artifact_id for a in ranked if a.selected]
        assert selected == ["pinned", "best"]

    def test_low_score_exclusion(self):
        ranked = select_artifacts(
            [candidate("match", body_md="login"), candidate("zero")],
            query="login",
            max_artifacts=1,
            now=NOW,
        )

        assert ranked[1].artifact_id == "zero"
        assert ranked[1].exclusion_reason == "Low score (< 1.0)"

    def test_empty(self):
        assert select_artifacts([], now=NOW) == []
