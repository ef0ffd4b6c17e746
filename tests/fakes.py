"""Hand-written collaborators and providers shared by the test suite."""

from __future__ import annotations

import itertools
import json
from collections.abc import Mapping, Sequence
from datetime import datetime

from Enliterator_KG.application import Collaborators
from Enliterator_KG.embedding.provider import BatchJobStatus, EmbeddingRequest
from Enliterator_KG.pipeline.collaborators import (
    EntityFact,
    ExtractionResult,
    RelationFact,
    RightsSignal,
    StageContext,
    TermFact,
)
from Enliterator_KG.pipeline.errors import EmbeddingProviderError
from Enliterator_KG.pipeline.models import PipelineStage


def capitalised_words(content: str) -> list[str]:
    return [word.strip(".,;:") for word in content.split() if word[:1].isupper()]


class FakeRightsInferencer:
    """Confidence 0.9 unless the content is listed in ``confidences``."""

    def __init__(
        self,
        confidences: Mapping[str, float] | None = None,
        *,
        failing: Sequence[str] = (),
        raising: Sequence[str] = (),
        license: str = "CC-BY-4.0",
        allow_public_display: bool = False,
    ) -> None:
        self.confidences = dict(confidences or {})
        self.failing = set(failing)
        self.raising = set(raising)
        self.license = license
        self.allow_public_display = allow_public_display
        self.calls: list[str] = []

    def extract(self, content: str, context: StageContext) -> ExtractionResult[RightsSignal]:
        self.calls.append(content)
        if content in self.raising:
            raise RuntimeError("rights service timed out")
        if content in self.failing:
            return ExtractionResult.failure("rights service rejected the content")
        signal = RightsSignal(
            confidence=self.confidences.get(content, 0.9),
            consent="explicit",
            license=self.license,
            owner="field team",
            allow_public_display=self.allow_public_display,
        )
        return ExtractionResult.ok([signal])


class FakeLexiconExtractor:
    """Every capitalised word is a term."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def extract(self, content: str, context: StageContext) -> ExtractionResult[TermFact]:
        self.calls.append(content)
        return ExtractionResult.ok([TermFact(term=word) for word in capitalised_words(content)])


class FakeEntityExtractor:
    """Every capitalised word becomes an ``idea`` entity unless overridden."""

    def __init__(self, entities: Mapping[str, Sequence[EntityFact]] | None = None) -> None:
        self.entities = dict(entities or {})
        self.calls: list[str] = []

    def extract(self, content: str, context: StageContext) -> ExtractionResult[EntityFact]:
        self.calls.append(content)
        if content in self.entities:
            return ExtractionResult.ok(self.entities[content])
        return ExtractionResult.ok([EntityFact(pool="idea", name=word) for word in capitalised_words(content)])


class FakeRelationExtractor:
    def __init__(self, relations: Mapping[str, Sequence[RelationFact]] | None = None) -> None:
        self.relations = dict(relations or {})

    def extract(
        self, content: str, context: StageContext, entities: Sequence[EntityFact]
    ) -> ExtractionResult[RelationFact]:
        return ExtractionResult.ok(self.relations.get(content, ()))


def collaborators(**overrides) -> Collaborators:
    """Factory also used as a ``module:factory`` reference by the CLI tests."""
    values = {
        "rights": FakeRightsInferencer(),
        "lexicon": FakeLexiconExtractor(),
        "entities": FakeEntityExtractor(),
        "relations": FakeRelationExtractor(),
    }
    values.update(overrides)
    return Collaborators(**values)


class FakeEmbeddingProvider:
    """In-process stand-in for the batch embeddings API."""

    model = "fake-embed"

    def __init__(self, *, dimensions: int = 3) -> None:
        self.dimensions = dimensions
        self._ids = itertools.count(1)
        self.submitted: dict[str, list[EmbeddingRequest]] = {}
        self.jobs: dict[str, BatchJobStatus] = {}
        self.files: dict[str, str] = {}
        self.unavailable = 0
        self.failing_downloads = 0
        self.failing_texts: set[str] = set()
        self.embedded_texts: list[str] = []

    def vector_for(self, text: str) -> tuple[float, ...]:
        return tuple(float(len(text) + offset) for offset in range(self.dimensions))

    def submit_batch(self, requests: Sequence[EmbeddingRequest]) -> tuple[str, str]:
        number = next(self._ids)
        job_id, file_id = f"batch_{number}", f"file-in-{number}"
        self.submitted[job_id] = list(requests)
        self.jobs[job_id] = BatchJobStatus(id=job_id, status="validating")
        return job_id, file_id

    def get_batch(self, job_id: str) -> BatchJobStatus:
        if self.unavailable:
            self.unavailable -= 1
            raise EmbeddingProviderError("provider unavailable")
        return self.jobs[job_id]

    def download_file(self, file_id: str) -> str:
        if self.failing_downloads:
            self.failing_downloads -= 1
            raise EmbeddingProviderError("file download failed", status=503)
        return self.files[file_id]

    def embed_one(self, text: str) -> tuple[float, ...]:
        if text in self.failing_texts:
            raise EmbeddingProviderError("embedding request rejected")
        self.embedded_texts.append(text)
        return self.vector_for(text)

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------
    def set_status(self, job_id: str, status: str) -> None:
        self.jobs[job_id] = BatchJobStatus(id=job_id, status=status)

    def finish(
        self,
        job_id: str,
        *,
        status: str = "completed",
        embed: Sequence[str] | None = None,
        errors: Sequence[str] = (),
        with_error_file: bool = True,
    ) -> None:
        """Finish ``job_id``; ``embed`` lists the custom ids given a vector."""
        requests = {request.custom_id: request for request in self.submitted[job_id]}
        embedded = list(requests) if embed is None else list(embed)
        output_id = error_id = None
        if embedded:
            output_id = f"file-out-{job_id}"
            self.files[output_id] = "\n".join(
                json.dumps(
                    {
                        "custom_id": custom_id,
                        "response": {
                            "status_code": 200,
                            "body": {"data": [{"embedding": list(self.vector_for(requests[custom_id].text))}]},
                        },
                    }
                )
                for custom_id in embedded
            )
        if errors and with_error_file:
            error_id = f"file-err-{job_id}"
            self.files[error_id] = "\n".join(
                json.dumps({"custom_id": custom_id, "error": {"message": "rate limited"}}) for custom_id in errors
            )
        self.jobs[job_id] = BatchJobStatus(
            id=job_id, status=status, output_file_id=output_id, error_file_id=error_id
        )


class FixedClock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


class ManualTime:
    """Monotonic seconds for the delayed task queue."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def context_for(batch_id: str, stage: PipelineStage) -> StageContext:
    return StageContext(batch_id=batch_id, stage=stage, actor_id="tester", correlation_id="corr-1")
