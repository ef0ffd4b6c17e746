from __future__ import annotations

from functools import partial

import pytest
from typer.testing import CliRunner

from Enliterator_KG import cli
from Enliterator_KG.application import build_application, load_collaborators

from tests.fakes import FakeEmbeddingProvider

COLLABORATORS = ["--collaborators", "tests.fakes:collaborators"]

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_application(monkeypatch):
    monkeypatch.setattr(cli, "build_application", partial(build_application, provider=FakeEmbeddingProvider()))
    monkeypatch.setattr(cli, "configure_logging", lambda **_: None)


def test_ingest_creates_items_and_submits_embeddings(tmp_path):
    note = tmp_path / "note.txt"
    note.write_text("Coffee shops host Ideas", encoding="utf-8")

    result = runner.invoke(cli.app, [*COLLABORATORS, "ingest", str(note)])

    assert result.exit_code == 0, result.output
    assert "✓ 1 items created, 0 already known" in result.output
    assert "embeddings_in_progress" in result.output


def test_ingest_without_text_files_fails(tmp_path):
    (tmp_path / "scan.pdf").write_bytes(b"%PDF")

    result = runner.invoke(cli.app, [*COLLABORATORS, "ingest", str(tmp_path)])

    assert result.exit_code == 1
    assert "✗ No text files found" in result.output


def test_status_of_unknown_batch_fails():
    result = runner.invoke(cli.app, [*COLLABORATORS, "status", "batch-missing"])

    assert result.exit_code == 1
    assert "✗" in result.output


def test_retry_rejects_stages_without_items():
    result = runner.invoke(cli.app, [*COLLABORATORS, "retry", "batch-missing", "scoring"])

    assert result.exit_code == 1


def test_worker_once_reports_the_drain():
    result = runner.invoke(cli.app, [*COLLABORATORS, "worker", "--once"])

    assert result.exit_code == 0, result.output
    assert "✓ Ran 0 tasks, 0 still scheduled" in result.output


def test_malformed_collaborator_reference():
    with pytest.raises(ValueError):
        load_collaborators("tests.fakes")
