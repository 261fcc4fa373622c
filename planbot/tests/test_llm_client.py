"""Gemini client: retries, backoff and failure mapping (no network)."""
import json

import httpx
import pytest

from planbot.core.errors import LLMError
from planbot.features.ai.client import Attachment, GeminiClient, extract_text


def _ok(text="Plan ready"):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _client(responses, **kwargs):
    """GeminiClient over a MockTransport that replays `responses` in order."""
    requests = []
    sleeps = []
    queue = list(responses)

    def handler(request):
        requests.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    http = httpx.Client(transport=httpx.MockTransport(handler))
    params = dict(api_key="test-key", model="gemini-test", max_retries=3, backoff_base=1, backoff_max=8)
    params.update(kwargs)
    client = GeminiClient(http_client=http, sleep=sleeps.append, **params)
    return client, requests, sleeps


def test_generate_returns_text_and_sends_key():
    client, requests, sleeps = _client([_ok("Hello")])
    assert client.generate("prompt") == "Hello"
    assert len(requests) == 1
    assert requests[0].url.params["key"] == "test-key"
    assert requests[0].url.path.endswith("/models/gemini-test:generateContent")
    assert sleeps == []


def test_attachment_is_sent_inline():
    client, requests, _ = _client([_ok()])
    client.generate("look", Attachment(data=b"\x89PNG", mime_type="image/png", filename="a.png"))
    body = json.loads(requests[0].content)
    parts = body["contents"][0]["parts"]
    assert parts[0] == {"text": "look"}
    assert parts[1]["inline_data"]["mime_type"] == "image/png"
    assert parts[1]["inline_data"]["data"] == "iVBORw=="


def test_retries_on_429_with_exponential_backoff():
    client, requests, sleeps = _client([httpx.Response(429), httpx.Response(503), _ok()])
    assert client.generate("p") == "Plan ready"
    assert len(requests) == 3
    assert sleeps == [1, 2]


def test_retry_after_header_is_honoured_up_to_the_cap():
    client, _, sleeps = _client(
        [
            httpx.Response(429, headers={"Retry-After": "3"}),
            httpx.Response(429, headers={"Retry-After": "60"}),
            _ok(),
        ]
    )
    client.generate("p")
    assert sleeps == [3, 8]


def test_gives_up_after_max_retries():
    client, requests, sleeps = _client([httpx.Response(429) for _ in range(3)], max_retries=2)
    with pytest.raises(LLMError) as exc:
        client.generate("p")
    assert exc.value.status_code == 502
    assert exc.value.code == "ai_failed"
    assert len(requests) == 3
    assert sleeps == [1, 2]


def test_other_statuses_are_not_retried():
    client, requests, sleeps = _client([httpx.Response(500)])
    with pytest.raises(LLMError):
        client.generate("p")
    assert len(requests) == 1
    assert sleeps == []


def test_timeout_maps_to_ai_timeout():
    client, _, _ = _client([httpx.ReadTimeout("slow")])
    with pytest.raises(LLMError) as exc:
        client.generate("p")
    assert exc.value.code == "ai_timeout"


def test_transport_error_maps_to_ai_failed():
    client, _, _ = _client([httpx.ConnectError("refused")])
    with pytest.raises(LLMError) as exc:
        client.generate("p")
    assert exc.value.code == "ai_failed"


def test_empty_answer_is_an_error():
    client, _, _ = _client([_ok("   ")])
    with pytest.raises(LLMError):
        client.generate("p")


def test_missing_api_key_is_unavailable():
    client = GeminiClient(api_key="")
    with pytest.raises(LLMError) as exc:
        client.generate("p")
    assert exc.value.code == "ai_unavailable"
    assert exc.value.status_code == 503


def test_backoff_delay_is_truncated():
    client = GeminiClient(api_key="k", backoff_base=1, backoff_max=8)
    assert [client.backoff_delay(a) for a in range(5)] == [1, 2, 4, 8, 8]
    assert client.backoff_delay(0, retry_after=5) == 5
    assert client.backoff_delay(2, retry_after=1) == 4


def test_extract_text_joins_parts():
    data = {"candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}]}
    assert extract_text(data) == "ab"
    assert extract_text({}) == ""
