from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any

import jsonschema

from ..config import LlmConfig
from ..utils import log_event

PROVIDER_NAME = "openai_compatible"

TASK_SCHEMAS: dict[str, dict[str, Any]] = {
    "summarize": {
        "type": "object",
        "required": ["summary"],
        "properties": {
            "summary": {"type": "string", "minLength": 1},
            "key_points": {"type": "array", "items": {"type": "string"}},
        },
    },
    "score": {
        "type": "object",
        "required": ["score"],
        "properties": {
            "score": {"type": "integer", "minimum": 1, "maximum": 5},
            "label": {"type": "string"},
            "reason": {"type": "string"},
        },
    },
    "auto_tag": {
        "type": "object",
        "required": ["tags"],
        "properties": {
            "tags": {"type": "array", "items": {"type": "string"}},
        },
    },
    "refresh_profile": {
        "type": "object",
        "required": ["profile"],
        "properties": {
            "profile": {"type": "string", "minLength": 1},
        },
    },
}

TASK_PROMPTS: dict[str, str] = {
    "summarize": (
        "Summarize the news article for a busy reader. Respond with JSON: "
        '{"summary": "<2-3 sentences>", "key_points": ["<short point>", ...]}.'
    ),
    "score": (
        "Rate how well the article matches the reader preference profile on a 1-5 scale. "
        'Respond with JSON: {"score": <1-5>, "label": "<one word>", "reason": "<one sentence>"}.'
    ),
    "auto_tag": (
        "Suggest short topical tags (1-3 words each, lowercase) for the article. "
        'Respond with JSON: {"tags": ["<tag>", ...]}.'
    ),
    "refresh_profile": (
        "Write a concise reader preference profile from the rated articles below. "
        'Respond with JSON: {"profile": "<paragraph>"}.'
    ),
}


class CompletionError(RuntimeError):
    pass


@dataclass(frozen=True)
class Completion:
    provider: str
    model: str
    summary: str | None = None
    key_points: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    score: int | None = None
    label: str | None = None
    reason: str | None = None
    profile: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


class CompletionClient:
    def __init__(
        self,
        config: LlmConfig,
        api_key: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.api_key = api_key if api_key is not None else os.environ.get("NN_LLM_API_KEY")
        self.logger = logger or logging.getLogger("nebularnews.llm")

    def complete(self, task: str, text: str, profile: str | None = None) -> Completion:
        if task not in TASK_SCHEMAS:
            raise CompletionError(f"unsupported_task {task}")
        messages = _render_messages(task, text[: self.config.max_input_chars], profile)
        payload = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "response_format": {"type": "json_object"},
        }
        response = self._post("/chat/completions", payload)
        raw = _read_openai(response)
        parsed = _maybe_parse_json(raw)
        try:
            jsonschema.validate(parsed, TASK_SCHEMAS[task])
        except jsonschema.ValidationError as exc:
            raise CompletionError(f"schema_invalid {task}: {exc.message}") from exc
        usage = {
            key: int(value)
            for key, value in (response.get("usage") or {}).items()
            if isinstance(value, int)
        }
        log_event(
            self.logger,
            logging.DEBUG,
            "completion_ok",
            task=task,
            model=self.config.model,
            total_tokens=usage.get("total_tokens"),
        )
        return Completion(
            provider=PROVIDER_NAME,
            model=str(response.get("model") or self.config.model),
            summary=parsed.get("summary"),
            key_points=[str(point) for point in parsed.get("key_points") or []],
            tags=[str(tag) for tag in parsed.get("tags") or []],
            score=parsed.get("score"),
            label=parsed.get("label"),
            reason=parsed.get("reason"),
            profile=parsed.get("profile"),
            usage=usage,
        )

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self.config.base_url.rstrip("/") + path
        request = urllib.request.Request(
            url, data=json.dumps(payload).encode("utf-8"), method="POST"
        )
        request.add_header("Content-Type", "application/json")
        if self.api_key:
            request.add_header("Authorization", f"Bearer {self.api_key}")
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise CompletionError(f"http_error {exc.code}: {body[:500]}") from exc
        except urllib.error.URLError as exc:
            raise CompletionError(f"network_error: {exc}") from exc
        except TimeoutError as exc:
            raise CompletionError("timeout") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CompletionError("invalid_response_json") from exc


def _render_messages(task: str, text: str, profile: str | None) -> list[dict[str, str]]:
    system = TASK_PROMPTS[task]
    if profile:
        system += "\n\nReader preference profile:\n" + profile
    return [{"role": "system", "content": system}, {"role": "user", "content": text}]


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise CompletionError("openai_missing_choices")
    return choices[0].get("message", {}).get("content") or ""


def _maybe_parse_json(raw: str) -> Any:
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return raw
