"""Test configuration and fixtures."""

import os

# Set environment before importing application code
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "console")

from datetime import datetime, timezone
from typing import List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agent_context_desk.bundles.distill import DistilledContent, Summarizer
from agent_context_desk.db.base import Base, register_models
from agent_context_desk.db.models import (
    AgentArtifactModel,
    AgentInstructionModel,
    AgentRunEventModel,
    AgentRunModel,
    IntegrationManifestModel,
    RedDocumentModel,
    TicketModel,
)


class RecordingSummarizer(Summarizer):
    """Deterministic summarizer that remembers which artifacts it saw."""

    def __init__(self):
        self.calls: List[str] = []

    async def summarize(self, artifact_id: str, title: str, body: str) -> DistilledContent:
        self.calls.append(artifact_id)
        return DistilledContent(
            summary=f"Summary of {title}",
            hard_facts=[f"{artifact_id} has {len(body)} characters"],
            keywords=[artifact_id, "login"],
        )


def make_engine():
    """In-memory SQLite engine shared across threads, with every table created."""
    register_models()
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


def seed_ticket_context(db: Session) -> None:
    """Insert a ticket with artifacts, REDs, a manifest, instructions and agent runs.

    Ticket ``t1`` in ``o/r`` carries everything; ticket ``t2`` has no RED and
    no artifacts of its own besides ``a-other``.
    """
    created = datetime(2026, 1, 26, 12, 0, 0, tzinfo=timezone.utc)
    db.add_all(
        [
            TicketModel(
                pk="t1",
                id="T-1",
                display_id="AC-1",
                repo_full_name="o/r",
                title="Add login",
                body_md="Users need to log in.",
                created_at=created,
            ),
            TicketModel(
                pk="t2",
                id="T-2",
                repo_full_name="o/r",
                title="Add logout",
                created_at=created,
            ),
        ]
    )
    db.flush()
    db.add_all(
        [
            AgentArtifactModel(
                artifact_id="a1",
                ticket_pk="t1",
                repo_full_name="o/r",
                agent_type="implementation",
                title="Design notes",
                body_md="The login form posts to /api/login and stores a session cookie.",
            ),
            AgentArtifactModel(
                artifact_id="a2",
                ticket_pk="t1",
                repo_full_name="o/r",
                agent_type="qa",
                title="QA report",
                body_md="All login checks pass on Chrome and Firefox.",
            ),
            AgentArtifactModel(
                artifact_id="a-empty",
                ticket_pk="t1",
                repo_full_name="o/r",
                title="Empty report",
                body_md="   ",
            ),
            AgentArtifactModel(
                artifact_id="a-other",
                ticket_pk="t2",
                repo_full_name="o/r",
                title="Logout notes",
                body_md="Logout clears the session cookie.",
            ),
            RedDocumentModel(
                red_id="red-1",
                repo_full_name="o/r",
                ticket_pk="t1",
                version=1,
                validation_status="valid",
                red_json={
                    "title": "Login",
                    "description": "Let users sign in with a password.",
                    "acceptance_criteria": ["Users can log in", 42],
                    "out_of_scope": ["SSO"],
                    "definition_of_done": ["Tests pass"],
                },
            ),
            RedDocumentModel(
                red_id="red-2",
                repo_full_name="o/r",
                ticket_pk="t1",
                version=2,
                validation_status="invalid",
                red_json={"title": "Draft"},
            ),
            IntegrationManifestModel(
                manifest_id="man-1",
                repo_full_name="o/r",
                schema_version="v0",
                version=1,
                manifest_json={"project_manifest": {"goal": "Ship login", "stack": ["fastapi"]}},
            ),
            AgentInstructionModel(
                repo_full_name="o/r",
                topic_id="testing",
                filename="b-testing.md",
                title="Testing",
                content_md="Run the suite.",
                agent_types=["qa"],
            ),
            AgentInstructionModel(
                repo_full_name="o/r",
                topic_id="style",
                filename="a-style.md",
                title="Style",
                content_md="Use black.",
                agent_types=["all"],
            ),
            AgentInstructionModel(
                repo_full_name="o/r",
                topic_id="impl",
                filename="c-impl.md",
                title="Implementation",
                content_md="Small commits.",
                agent_types=["implementation"],
            ),
            AgentRunModel(
                run_id="run-1",
                agent_type="implementation",
                repo_full_name="o/r",
                ticket_pk="t1",
                ticket_number=1,
                status="completed",
                current_stage="done",
                progress={"percent": 100},
                provider="openai",
                model="gpt-4o-mini",
                input_json={"goal": "login"},
                output_json={"files": ["app.py"]},
                summary="Implemented login",
                pr_url="https://github.com/o/r/pull/7",
                created_at=created,
            ),
            AgentRunModel(
                run_id="run-qa",
                agent_type="qa",
                repo_full_name="o/r",
                ticket_pk="t1",
                status="running",
                created_at=created,
            ),
            AgentRunModel(
                run_id="run-orphan",
                agent_type="implementation",
                repo_full_name="o/r",
                ticket_pk=None,
                created_at=created,
            ),
            AgentRunModel(
                run_id="run-triage",
                agent_type="triage",
                repo_full_name="o/r",
                ticket_pk="t1",
                created_at=created,
            ),
        ]
    )
    db.flush()
    db.add_all(
        [
            AgentRunEventModel(run_id="run-1", type="started", payload={"n": 1}, created_at=created),
            AgentRunEventModel(run_id="run-1", type="finished", payload={"n": 2}, created_at=created),
        ]
    )
    db.commit()


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    engine = make_engine()
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = session_local()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def seeded_db(db_session):
    """A fresh database holding the ``o/r`` ticket context."""
    seed_ticket_context(db_session)
    return db_session


@pytest.fixture
def summarizer() -> RecordingSummarizer:
    return RecordingSummarizer()
