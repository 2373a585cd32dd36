from __future__ import annotations

import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from intent_healer.core.exceptions import OracleResponseError
from intent_healer.core.models import HealDecision


class DecisionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    can_heal: bool
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    selected_element_index: int | None = Field(default=None, ge=0)
    reasoning: str = ""
    alternative_indices: list[int] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    refusal_reason: str | None = None

    @model_validator(mode="after")
    def require_index_when_healing(self) -> DecisionPayload:
        if self.can_heal and self.selected_element_index is None:
            raise ValueError("selected_element_index is required when can_heal is true")
        return self


def parse_decision_response(response: str, model_id: str | None = None) -> HealDecision:
    text = (response or "").strip()
    if not text:
        raise OracleResponseError("Oracle returned an empty response")
    if "```" in text:
        raise OracleResponseError("Oracle returned markdown instead of a JSON object")
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise OracleResponseError(f"Oracle response is not valid JSON: {exc.msg}") from exc
    if not isinstance(raw, dict):
        raise OracleResponseError("Oracle response must be a JSON object")
    try:
        payload = DecisionPayload.model_validate(raw)
    except ValidationError as exc:
        raise OracleResponseError(f"Oracle response failed validation: {exc.error_count()} error(s)") from exc

    if not payload.can_heal:
        return HealDecision(
            can_heal=False,
            confidence=payload.confidence,
            reasoning=payload.reasoning,
            warnings=tuple(payload.warnings),
            refusal_reason=payload.refusal_reason or payload.reasoning or "Oracle declined to heal",
            model_id=model_id,
        )
    return HealDecision(
        can_heal=True,
        confidence=payload.confidence,
        selected_element_index=payload.selected_element_index,
        reasoning=payload.reasoning,
        alternative_indices=tuple(payload.alternative_indices),
        warnings=tuple(payload.warnings),
        model_id=model_id,
    )
