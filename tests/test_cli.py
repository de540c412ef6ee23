"""Tests for the agent-context-desk command line interface."""

import asyncio
import json

import pytest
from rich.console import Console
from sqlalchemy.orm import sessionmaker
from typer.testing import CliRunner

import agent_context_desk.cli as cli_module
from agent_context_desk.bundles.checksum import content_checksum
from agent_context_desk.bundles.schemas import BuildBundleRequest
from agent_context_desk.bundles.services import ContextBundleService

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch):
    monkeypatch.setattr(cli_module, "configure_logging", lambda **kwargs: None)
    # Wide enough that tables never wrap ids
    monkeypatch.setattr(cli_module, "console", Console(width=200))


@pytest.fixture
def cli_db(seeded_db, monkeypatch):
    """Point CLI commands at the seeded in-memory database."""
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=seeded_db.get_bind())
    monkeypatch.setattr(cli_module, "get_session_local", lambda: session_local)
    return seeded_db


class TestBudgetsCommand:
    def test_lists_roles(self):
        result = runner.invoke(cli_module.app, ["budgets"])

        assert result.exit_code == 0
        assert "qa-agent" in result.output
        assert "20,000" in result.output


class TestChecksumCommand:
    def test_prints_content_checksum(self, tmp_path):
        payload = {"meta": {"role": "qa-agent"}, "ticket": {"title": "Login"}}
        path = tmp_path / "bundle.json"
        path.write_text(json.dumps(payload), encoding="utf-8")

        result = runner.invoke(cli_module.app, ["checksum", str(path)])

        assert result.exit_code == 0
        assert content_checksum(payload) in result.output
        assert "ticket" in result.output

    def test_reports_overage_for_role(self, tmp_path):
        path = tmp_path / "bundle.json"
        path.write_text(json.dumps({"notes": "x" * 21_000}), encoding="utf-8")

        result = runner.invoke(cli_module.app, ["checksum", str(path), "--role", "qa-agent"])

        assert result.exit_code == 0
        assert "overage" in result.output

    def test_unknown_role(self, tmp_path):
        path = tmp_path / "bundle.json"
        path.write_text("{}", encoding="utf-8")

        result = runner.invoke(cli_module.app, ["checksum", str(path), "--role", "janitor"])
        assert result.exit_code == 1

    def test_rejects_non_object(self, tmp_path):
        path = tmp_path / "bundle.json"
        path.write_text("[1, 2]", encoding="utf-8")

        result = runner.invoke(cli_module.app, ["checksum", str(path)])
        assert result.exit_code == 1
        assert "must be an object" in result.output


class TestStoredBundleCommands:
    async def test_receipt_and_versions(self, cli_db, summarizer):
        service = ContextBundleService(cli_db, summarizer=summarizer)
        stored = await service.generate(
            BuildBundleRequest(
                ticket_pk="t1",
                role="qa-agent",
                git_ref={"head_sha": "abc123"},
            )
        )
        bundle_id = stored.bundle.bundle_id

        receipt = runner.invoke(cli_module.app, ["receipt", bundle_id])
        assert receipt.exit_code == 0
        assert "Section Metrics" in receipt.output

        versions = runner.invoke(cli_module.app, ["versions", "o/r", "t1", "--role", "qa-agent"])
        assert versions.exit_code == 0
        assert "qa-agent" in versions.output

    def test_missing_receipt(self, cli_db):
        result = runner.invoke(cli_module.app, ["receipt", "01HZZZZZZZZZZZZZZZZZZZZZZZ"])

        assert result.exit_code == 1
        assert "Receipt not found" in result.output

    def test_no_versions(self, cli_db):
        result = runner.invoke(cli_module.app, ["versions", "o/r", "t2"])

        assert result.exit_code == 0
        assert "No bundles stored" in result.output


def store_bundle(db, summarizer, **overrides):
    defaults = {"ticket_pk": "t1", "role": "qa-agent", "git_ref": {"head_sha": "abc123"}}
    defaults.update(overrides)
    service = ContextBundleService(db, summarizer=summarizer)
    return asyncio.run(service.generate(BuildBundleRequest(**defaults)))


class TestVerifyCommand:
    def test_unchanged_bundle_passes(self, cli_db, summarizer):
        stored = store_bundle(cli_db, summarizer)

        result = runner.invoke(cli_module.app, ["verify", stored.bundle.bundle_id])

        assert result.exit_code == 0
        assert "Continuity check passed" in result.output
        assert stored.receipt.content_checksum in result.output

    def test_by_receipt_id(self, cli_db, summarizer):
        stored = store_bundle(cli_db, summarizer)

        result = runner.invoke(
            cli_module.app, ["verify", "--receipt-id", stored.receipt.receipt_id]
        )

        assert result.exit_code == 0

    def test_edited_payload_fails(self, cli_db, summarizer):
        stored = store_bundle(cli_db, summarizer)
        bundle = stored.bundle
        bundle.bundle_json = {**bundle.bundle_json, "notes": "edited"}
        cli_db.commit()

        result = runner.invoke(cli_module.app, ["verify", bundle.bundle_id])

        assert result.exit_code == 1
        assert "Content checksum mismatch" in result.output
        assert "Continuity check failed" in result.output

    def test_needs_an_id(self, cli_db):
        result = runner.invoke(cli_module.app, ["verify"])

        assert result.exit_code == 1
        assert "bundle_id or receipt_id is required" in result.output


class TestAuditCommand:
    def test_entity_history(self, cli_db, summarizer):
        stored = store_bundle(cli_db, summarizer, created_by="user:octocat")

        result = runner.invoke(
            cli_module.app,
            ["audit", "--entity-kind", "ContextBundle", "--entity-id", stored.bundle.bundle_id],
        )

        assert result.exit_code == 0
        assert "human:octocat" in result.output
        assert "created" in result.output

    def test_by_actor_and_trace(self, cli_db, summarizer):
        store_bundle(cli_db, summarizer, created_by="user:octocat", trace_id="trace-1")

        by_actor = runner.invoke(cli_module.app, ["audit", "--actor", "user:octocat"])
        by_trace = runner.invoke(cli_module.app, ["audit", "--trace-id", "trace-1"])

        assert by_actor.exit_code == 0
        assert "ContextBundle" in by_actor.output
        assert by_trace.exit_code == 0
        assert "ContextBundle" in by_trace.output

    def test_no_entries(self, cli_db):
        result = runner.invoke(cli_module.app, ["audit", "--trace-id", "nothing"])

        assert result.exit_code == 0
        assert "No audit entries found" in result.output

    def test_needs_a_filter(self, cli_db):
        result = runner.invoke(cli_module.app, ["audit"])

        assert result.exit_code == 1
