import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from landing.config import Settings
from landing.errors import ProviderError, ProviderTimeout
from landing.llm_client import LLMClient, StubLLMClient, build_llm_client
from landing.llm_parsing import parse_model_output
from landing.llm_prompts import build_prompt


def _resp(status=200, payload=None, text=None):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = payload if payload is not None else {}
    r.text = text if text is not None else json.dumps(payload or {})
    return r


def _chat(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


PROMPT = build_prompt("Family law in Moscow", "consult")


def test_complete_returns_message_content():
    client = LLMClient("sk-test", base_url="https://llm.example/v1/")
    with patch("requests.post", return_value=_resp(200, _chat('{"hero": {}}'))) as mock_post:
        out = client.complete(PROMPT, "gpt-4o-mini")
    assert out == '{"hero": {}}'
    args, kwargs = mock_post.call_args
    assert args[0] == "https://llm.example/v1/chat/completions"
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
    body = kwargs["json"]
    assert body["model"] == "gpt-4o-mini"
    assert body["response_format"] == {"type": "json_object"}
    assert body["messages"][0]["role"] == "system"
    assert kwargs["timeout"] == client.timeout


def test_json_mode_rejected_retries_without_response_format():
    client = LLMClient("sk-test")
    responses = [_resp(400, {"error": "response_format unsupported"}), _resp(200, _chat("{}"))]
    with patch("requests.post", side_effect=responses) as mock_post:
        assert client.complete(PROMPT, "old-model") == "{}"
    assert mock_post.call_count == 2
    first, second = mock_post.call_args_list
    assert "response_format" in first.kwargs["json"]
    assert "response_format" not in second.kwargs["json"]


def test_non_2xx_raises_provider_error_with_status_and_body():
    client = LLMClient("sk-test")
    with patch("requests.post", return_value=_resp(503, text="upstream overloaded")):
        with pytest.raises(ProviderError) as ei:
            client.complete(PROMPT, "gpt-4o-mini")
    assert ei.value.status == 503
    assert ei.value.body == "upstream overloaded"
    assert ei.value.status_code == 502


def test_timeout_raises_provider_timeout():
    client = LLMClient("sk-test", timeout=0.5)
    with patch("requests.post", side_effect=requests.Timeout("slow")):
        with pytest.raises(ProviderTimeout):
            client.complete(PROMPT, "gpt-4o-mini")


def test_connection_error_raises_provider_error():
    client = LLMClient("sk-test")
    with patch("requests.post", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(ProviderError) as ei:
            client.complete(PROMPT, "gpt-4o-mini")
    assert not isinstance(ei.value, ProviderTimeout)


def test_missing_key_fails_without_network():
    client = LLMClient("")
    with patch("requests.post") as mock_post:
        with pytest.raises(ProviderError):
            client.complete(PROMPT, "gpt-4o-mini")
    mock_post.assert_not_called()


def test_empty_completion_is_provider_error():
    client = LLMClient("sk-test")
    with patch("requests.post", return_value=_resp(200, _chat(""))):
        with pytest.raises(ProviderError):
            client.complete(PROMPT, "gpt-4o-mini")


def test_legacy_text_field_is_accepted():
    client = LLMClient("sk-test")
    with patch("requests.post", return_value=_resp(200, {"choices": [{"text": "{}"}]})):
        assert client.complete(PROMPT, "gpt-4o-mini") == "{}"


def test_stub_reply_parses_as_landing():
    stub = StubLLMClient()
    doc = parse_model_output(stub.complete(PROMPT, "any"))
    assert doc["hero"]["title"]
    assert stub.calls == 1


def test_build_llm_client_honours_mock_flag():
    assert isinstance(build_llm_client(Settings(llm_mock=True)), StubLLMClient)
    real = build_llm_client(Settings(openai_api_key="sk-x", llm_timeout_secs=5))
    assert isinstance(real, LLMClient)
    assert real.timeout == 5
    assert real.status()["has_token"] is True
