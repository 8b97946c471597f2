import io
import json

import pytest

from nebularnews.config import default_config
from nebularnews.llm import client as llm_client
from nebularnews.llm.client import CompletionClient, CompletionError


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _reply(content, model="gpt-test"):
    body = {
        "model": model,
        "choices": [{"message": {"content": content}}],
        "usage": {"total_tokens": 42},
    }
    return _Response(json.dumps(body).encode("utf-8"))


def test_complete_parses_fenced_json(monkeypatch):
    seen = {}

    def fake_urlopen(request, timeout):
        seen["auth"] = request.get_header("Authorization")
        seen["payload"] = json.loads(request.data.decode("utf-8"))
        return _reply('```json\n{"summary": "Short.", "key_points": ["a"]}\n```')

    monkeypatch.setattr(llm_client.urllib.request, "urlopen", fake_urlopen)
    completer = CompletionClient(default_config().llm, api_key="secret")

    completion = completer.complete("summarize", "Title: x")

    assert completion.summary == "Short."
    assert completion.key_points == ["a"]
    assert completion.model == "gpt-test"
    assert completion.usage == {"total_tokens": 42}
    assert seen["auth"] == "Bearer secret"
    assert seen["payload"]["messages"][1]["content"] == "Title: x"


def test_profile_is_added_to_score_prompt(monkeypatch):
    seen = {}

    def fake_urlopen(request, timeout):
        seen["payload"] = json.loads(request.data.decode("utf-8"))
        return _reply('{"score": 5, "label": "great", "reason": "on topic"}')

    monkeypatch.setattr(llm_client.urllib.request, "urlopen", fake_urlopen)
    completion = CompletionClient(default_config().llm, api_key="").complete(
        "score", "text", profile="Likes rockets."
    )

    assert completion.score == 5
    assert "Likes rockets." in seen["payload"]["messages"][0]["content"]


def test_schema_violation_is_rejected(monkeypatch):
    monkeypatch.setattr(
        llm_client.urllib.request, "urlopen", lambda request, timeout: _reply('{"score": 11}')
    )
    with pytest.raises(CompletionError) as excinfo:
        CompletionClient(default_config().llm, api_key="").complete("score", "text")
    assert "schema_invalid" in str(excinfo.value)


def test_unknown_task_is_rejected():
    with pytest.raises(CompletionError):
        CompletionClient(default_config().llm, api_key="").complete("translate", "text")
