from __future__ import annotations

from Enliterator_KG.pipeline.errors import EmbeddingProviderError, MissingRightsError, StageOrderError


def test_report_keeps_only_the_fields_that_were_set():
    exc = StageOrderError("Stage lexicon requires triage_completed")

    assert exc.report.as_dict() == {
        "title": "Stage lexicon requires triage_completed",
        "status": 409,
        "code": "stage_order",
    }


def test_subclasses_inherit_status_and_accept_context():
    exc = EmbeddingProviderError("upload failed", instance="batch/batch-1", extra={"path": "/files"})
    missing = MissingRightsError("no rights", detail="nothing resolvable")

    assert exc.report.status == 503
    assert exc.report.as_dict()["extra"] == {"path": "/files"}
    assert exc.report.instance == "batch/batch-1"
    assert missing.report.as_dict()["detail"] == "nothing resolvable"
    assert missing.report.code == "missing_rights"
