from __future__ import annotations

import json
from typing import Any

from intent_healer.config.schema import SnapshotConfig
from intent_healer.core.models import ElementSnapshot, FailureContext, IntentContract, PageSnapshot

SYSTEM_PROMPT = """You repair broken UI test steps. A step failed because its element could not be used.
Pick the element from the provided snapshot that fulfils the step's intent, or refuse.
Rules:
1. Only choose an element whose index appears in the snapshot.
2. Do not pick an element that would do something different from the intent, even if it looks similar.
3. Refuse when no element clearly matches, when several match equally, or when the action looks destructive.
4. Confidence is your probability, between 0 and 1, that the chosen element is correct.
5. Answer with a single JSON object and nothing else, no markdown and no code fence:
{"can_heal": true, "selected_element_index": 3, "confidence": 0.92, "reasoning": "...",
 "alternative_indices": [], "warnings": [], "refusal_reason": null}"""


def _truncate(text: str | None, limit: int) -> str | None:
    if text is None:
        return None
    return text if len(text) <= limit else text[:limit] + "..."


def element_payload(element: ElementSnapshot, max_text_length: int) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "index": element.index,
        "tag": element.tag,
        "id": element.id,
        "name": element.name,
        "type": element.type,
        "classes": list(element.classes),
        "text": _truncate(element.normalized_text, max_text_length),
        "placeholder": element.placeholder,
        "aria_label": element.aria_label,
        "role": element.aria_role,
        "title": element.title,
        "visible": element.visible,
        "enabled": element.enabled,
        "container": element.container,
        "nearby_labels": list(element.nearby_labels),
        "data_attributes": dict(element.data_attributes),
    }
    return {key: value for key, value in payload.items() if value not in (None, "", [], {})}


def build_payload(
    failure: FailureContext,
    snapshot: PageSnapshot,
    intent: IntentContract,
    config: SnapshotConfig | None = None,
) -> dict[str, Any]:
    config = config or SnapshotConfig()
    elements = snapshot.elements if config.include_hidden else snapshot.interactable_elements()
    return {
        "step": failure.step_text,
        "step_keyword": failure.step_keyword,
        "action": failure.action_type.value,
        "original_locator": str(failure.original_locator) if failure.original_locator else None,
        "failure_kind": failure.failure_kind.value,
        "exception": failure.exception_message,
        "intent": {
            "action": intent.action,
            "description": intent.description,
            "destructive": intent.destructive,
        },
        "page": {"url": snapshot.url, "title": snapshot.title},
        "elements": [element_payload(item, config.max_text_length) for item in elements[: config.max_elements]],
    }


def build_user_prompt(payload: dict[str, Any]) -> str:
    """Formats a deterministic user payload for the model."""

    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
