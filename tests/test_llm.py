from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, BadRequestError

from medreport.config import Settings
from medreport.errors import ConfigurationError, UpstreamError
from medreport.llm import VisionClient

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _response(text="{}", finish_reason="stop"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason=finish_reason)],
        model="gpt-4o-2024-08-06",
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


class FakeOpenAI:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_complete_returns_text_usage_and_finish_reason():
    fake = FakeOpenAI(_response('{"a": 1}', finish_reason="length"))
    client = VisionClient(Settings(openai_api_key="k", temperature=0.3), client=fake)

    completion = client.complete([{"role": "user", "content": "hi"}], max_tokens=100, model="gpt-4o")

    assert completion.text == '{"a": 1}'
    assert completion.truncated
    assert completion.model == "gpt-4o-2024-08-06"
    assert completion.usage == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
    assert fake.requests[0]["max_tokens"] == 100
    assert fake.requests[0]["temperature"] == 0.3


def test_transient_error_is_retried():
    fake = FakeOpenAI(APIConnectionError(request=_REQUEST), _response("ok"))
    client = VisionClient(Settings(openai_api_key="k", max_attempts=2), client=fake)

    assert client.complete([], max_tokens=10).text == "ok"
    assert len(fake.requests) == 2


def test_exhausted_retries_raise_upstream_error():
    fake = FakeOpenAI(APIConnectionError(request=_REQUEST))
    client = VisionClient(Settings(openai_api_key="k", max_attempts=1), client=fake)

    with pytest.raises(UpstreamError):
        client.complete([], max_tokens=10)


def test_bad_request_is_not_retried():
    error = BadRequestError("bad image", response=httpx.Response(400, request=_REQUEST), body=None)
    fake = FakeOpenAI(error)
    client = VisionClient(Settings(openai_api_key="k", max_attempts=3), client=fake)

    with pytest.raises(UpstreamError) as exc:
        client.complete([], max_tokens=10)
    assert "bad image" in exc.value.details
    assert len(fake.requests) == 1


def test_missing_api_key_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        VisionClient(Settings(openai_api_key="")).complete([], max_tokens=10)
