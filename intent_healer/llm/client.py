from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any
from urllib import error, request

from intent_healer.config.schema import SnapshotConfig
from intent_healer.core.collaborators import HealOracle
from intent_healer.core.models import FailureContext, HealDecision, IntentContract, PageSnapshot
from intent_healer.llm.parser import parse_decision_response
from intent_healer.llm.prompts import SYSTEM_PROMPT, build_payload, build_user_prompt

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30
MAX_RESPONSE_TOKENS = 512


class DecisionCompletionClient(ABC):
    """Provider-neutral interface: one system prompt and one user prompt in, raw text out."""

    provider_name = "unknown"
    model = "unknown"

    @property
    def model_id(self) -> str:
        return f"{self.provider_name}:{self.model}"

    @abstractmethod
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        raise NotImplementedError


class OpenAICompletionClient(DecisionCompletionClient):
    provider_name = "openai"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def __init__(self, api_key: str, model: str | None = None) -> None:
        self.api_key = api_key
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        response = _post_json(
            self.endpoint,
            {
                "model": self.model,
                "temperature": 0,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            },
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        return response["choices"][0]["message"]["content"]


class AnthropicCompletionClient(DecisionCompletionClient):
    provider_name = "anthropic"
    endpoint = "https://api.anthropic.com/v1/messages"

    def __init__(self, api_key: str, model: str | None = None) -> None:
        self.api_key = api_key
        self.model = model or os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest")

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        response = _post_json(
            self.endpoint,
            {
                "model": self.model,
                "max_tokens": MAX_RESPONSE_TOKENS,
                "temperature": 0,
                "system": system_prompt,
                "messages": [{"role": "user", "content": user_prompt}],
            },
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
        )
        return "".join(block.get("text", "") for block in response.get("content", []) if isinstance(block, dict))


class GeminiCompletionClient(DecisionCompletionClient):
    provider_name = "gemini"
    endpoint_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(self, api_key: str, model: str | None = None) -> None:
        self.api_key = api_key
        self.model = model or os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        response = _post_json(
            self.endpoint_template.format(model=self.model),
            {
                "system_instruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
                "generationConfig": {"temperature": 0, "responseMimeType": "application/json"},
            },
            headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
        )
        candidates = response.get("candidates", [])
        if not candidates:
            raise RuntimeError("Gemini returned no candidates")
        parts = candidates[0].get("content", {}).get("parts", [])
        content = "".join(part.get("text", "") for part in parts if isinstance(part, dict)).strip()
        if not content:
            raise RuntimeError("Gemini returned an empty response")
        return content


_PROVIDERS = {
    "openai": (OpenAICompletionClient, "OPENAI_API_KEY"),
    "anthropic": (AnthropicCompletionClient, "ANTHROPIC_API_KEY"),
    "gemini": (GeminiCompletionClient, "GEMINI_API_KEY"),
}


def create_completion_client() -> DecisionCompletionClient:
    provider = os.getenv("LLM_PROVIDER", "openai").lower()
    try:
        client_class, key_variable = _PROVIDERS[provider]
    except KeyError:
        raise RuntimeError(f"Unsupported LLM provider: {provider}") from None
    api_key = os.getenv(key_variable)
    if not api_key:
        raise RuntimeError(f"{key_variable} is required when LLM_PROVIDER={provider}")
    return client_class(api_key)


class LlmHealOracle(HealOracle):
    """Asks a language model to pick the replacement element."""

    def __init__(self, client: DecisionCompletionClient, snapshot_config: SnapshotConfig | None = None) -> None:
        self.client = client
        self.snapshot_config = snapshot_config or SnapshotConfig()

    @property
    def model_id(self) -> str:
        return self.client.model_id

    def evaluate(self, failure: FailureContext, snapshot: PageSnapshot, intent: IntentContract) -> HealDecision:
        payload = build_payload(failure, snapshot, intent, self.snapshot_config)
        logger.debug("Asking %s to heal %r over %d elements", self.model_id, failure.step_text, len(payload["elements"]))
        answer = self.client.complete(SYSTEM_PROMPT, build_user_prompt(payload))
        return parse_decision_response(answer, model_id=self.model_id)


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
    encoded = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=encoded, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=REQUEST_TIMEOUT_SECONDS) as response:
            raw = response.read().decode("utf-8")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"LLM request failed with status {exc.code}: {detail}") from exc
    except error.URLError as exc:
        raise RuntimeError(f"LLM request could not be completed: {exc.reason}") from exc
    return json.loads(raw)
