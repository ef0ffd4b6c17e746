from __future__ import annotations

import json

import httpx
import pytest

from Enliterator_KG.config.settings import EmbeddingSettings
from Enliterator_KG.embedding.provider import (
    EmbeddingRequest,
    OpenAIEmbeddingProvider,
    build_request_file,
    parse_error_ids,
    parse_output_lines,
)
from Enliterator_KG.pipeline.errors import EmbeddingProviderError

BASE_URL = "https://embeddings.test/v1"


@pytest.fixture
def provider():
    settings = EmbeddingSettings(base_url=BASE_URL, api_key="sk-test", model="embed-small", dimensions=3)
    client = OpenAIEmbeddingProvider(settings, retry_wait_seconds=0.001)
    yield client
    client.close()


def test_submit_batch_uploads_jsonl_and_creates_job(respx_mock, provider):
    upload = respx_mock.post(f"{BASE_URL}/files").mock(return_value=httpx.Response(200, json={"id": "file-in-1"}))
    create = respx_mock.post(f"{BASE_URL}/batches").mock(
        return_value=httpx.Response(200, json={"id": "batch_abc", "status": "validating"})
    )

    job_id, file_id = provider.submit_batch([EmbeddingRequest("item-itm-000001", "Coffee shops")])

    assert (job_id, file_id) == ("batch_abc", "file-in-1")
    assert upload.calls.last.request.headers["Authorization"] == "Bearer sk-test"
    assert b"item-itm-000001" in upload.calls.last.request.content
    assert json.loads(create.calls.last.request.content) == {
        "input_file_id": "file-in-1",
        "endpoint": "/v1/embeddings",
        "completion_window": "24h",
    }


def test_get_batch_reads_status_and_files(respx_mock, provider):
    respx_mock.get(f"{BASE_URL}/batches/batch_abc").mock(
        return_value=httpx.Response(
            200,
            json={
                "id": "batch_abc",
                "status": "completed",
                "output_file_id": "file-out",
                "error_file_id": None,
                "request_counts": {"total": 2, "completed": 2, "failed": 0},
            },
        )
    )

    status = provider.get_batch("batch_abc")

    assert status.status == "completed"
    assert status.output_file_id == "file-out"
    assert status.error_file_id is None
    assert status.request_counts["total"] == 2


def test_server_errors_are_retried(respx_mock, provider):
    route = respx_mock.get(f"{BASE_URL}/files/file-out/content").mock(
        side_effect=[httpx.Response(503), httpx.Response(200, text='{"custom_id": "item-a"}\n')]
    )

    assert provider.download_file("file-out") == '{"custom_id": "item-a"}\n'
    assert route.call_count == 2


def test_client_errors_are_not_retried(respx_mock, provider):
    route = respx_mock.get(f"{BASE_URL}/batches/missing").mock(return_value=httpx.Response(404))

    with pytest.raises(EmbeddingProviderError) as excinfo:
        provider.get_batch("missing")

    assert route.call_count == 1
    assert excinfo.value.report.extra["status_code"] == 404


def test_exhausted_retries_raise_provider_error(respx_mock, provider):
    route = respx_mock.post(f"{BASE_URL}/embeddings").mock(side_effect=httpx.ConnectError("refused"))

    with pytest.raises(EmbeddingProviderError):
        provider.embed_one("Coffee")

    assert route.call_count == 3


def test_embed_one_returns_the_vector(respx_mock, provider):
    route = respx_mock.post(f"{BASE_URL}/embeddings").mock(
        return_value=httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})
    )

    assert provider.embed_one("Coffee") == (0.1, 0.2, 0.3)
    assert json.loads(route.calls.last.request.content) == {"model": "embed-small", "input": "Coffee", "dimensions": 3}


def test_embed_one_without_vector_is_an_error(respx_mock, provider):
    respx_mock.post(f"{BASE_URL}/embeddings").mock(return_value=httpx.Response(200, json={"data": []}))

    with pytest.raises(EmbeddingProviderError):
        provider.embed_one("Coffee")


def test_parse_output_lines_separates_failures():
    content = "\n".join(
        [
            json.dumps(
                {
                    "custom_id": "item-a",
                    "response": {"status_code": 200, "body": {"data": [{"embedding": [1, 2]}]}},
                }
            ),
            json.dumps({"custom_id": "item-b", "response": {"status_code": 429, "body": {}}}),
            "not json",
            "",
        ]
    )

    results, failed = parse_output_lines(content)

    assert [(r.custom_id, r.vector) for r in results] == [("item-a", (1.0, 2.0))]
    assert failed == ["item-b"]
    assert parse_error_ids('{"custom_id": "item-c", "error": {}}\n{"error": {}}') == ["item-c"]


def test_request_file_lines_target_the_embeddings_endpoint():
    payload = build_request_file([EmbeddingRequest("item-a", "Coffee")], "embed-small", 3)

    (line,) = payload.decode().splitlines()
    assert json.loads(line) == {
        "custom_id": "item-a",
        "method": "POST",
        "url": "/v1/embeddings",
        "body": {"model": "embed-small", "input": "Coffee", "dimensions": 3},
    }
