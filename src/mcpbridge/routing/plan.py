"""Routing plan model, LLM reply parsing, and catalog validation."""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from mcpbridge.mcp.errors import RoutingValidationError
from mcpbridge.mcp.models import CatalogStatus, ServerCatalog

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\s*\n?|```")


class RoutingPlan(BaseModel):
    """Which server and tool should answer a query, with what arguments."""

    model_config = ConfigDict(populate_by_name=True)

    intent: str = "Unknown intent"
    selected_server: str = Field(
        default="",
        validation_alias=AliasChoices("selected_server", "selectedServer"),
    )
    selected_tool: str = Field(
        default="",
        validation_alias=AliasChoices("selected_tool", "selectedTool"),
    )
    parameters: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = "No reasoning provided"
    confidence: float = 0.0
    fallback_options: list[RoutingPlan] = Field(
        default_factory=list,
        validation_alias=AliasChoices("fallback_options", "fallbackOptions"),
    )

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError, OverflowError):
            return 0.0
        if math.isnan(number):
            return 0.0
        return max(0.0, min(1.0, number))

    @field_validator("parameters", mode="before")
    @classmethod
    def _parameters_object(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("intent", "reasoning", mode="before")
    @classmethod
    def _text_or_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "Unknown intent" if info.field_name == "intent" else "No reasoning provided"
        return value if isinstance(value, str) else str(value)

    @field_validator("fallback_options", mode="before")
    @classmethod
    def _fallback_objects(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict | RoutingPlan)]

    @property
    def is_empty(self) -> bool:
        return not self.selected_server or not self.selected_tool


def empty_plan(reasoning: str = "No suitable server/tool found") -> RoutingPlan:
    return RoutingPlan(intent="Unknown", reasoning=reasoning, confidence=0.0)


def validate_plan(plan: RoutingPlan, catalog: ServerCatalog) -> RoutingPlan:
    """Reject plans naming a server or tool missing from the catalog."""
    entry = catalog.get(plan.selected_server)
    if entry is None or entry.status is not CatalogStatus.CONNECTED:
        msg = f"Invalid server: {plan.selected_server or '<none>'}"
        raise RoutingValidationError(msg, server_id=plan.selected_server or None)
    if entry.find_tool(plan.selected_tool) is None:
        msg = f"Tool {plan.selected_tool or '<none>'} not found on server {plan.selected_server}"
        raise RoutingValidationError(msg, server_id=plan.selected_server)
    return plan


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences around a JSON answer."""
    return _CODE_FENCE.sub("", text).strip()


def parse_llm_response(text: str, catalog: ServerCatalog) -> RoutingPlan:
    """Parse a model reply into a validated plan.

    Fallback options that fail validation are dropped.
    """
    cleaned = strip_code_fences(text)
    try:
        payload = json.loads(cleaned)
    except ValueError as exc:
        logger.debug("Raw LLM response: %s", text)
        msg = f"Failed to parse LLM response: {exc}"
        raise RoutingValidationError(msg) from exc
    if not isinstance(payload, dict):
        msg = "Failed to parse LLM response: expected a JSON object"
        raise RoutingValidationError(msg)
    try:
        plan = RoutingPlan.model_validate(payload)
    except ValidationError as exc:
        msg = f"Failed to parse LLM response: {exc}"
        raise RoutingValidationError(msg) from exc
    if plan.is_empty:
        msg = "Invalid LLM response: missing required fields"
        raise RoutingValidationError(msg)
    validate_plan(plan, catalog)
    valid_fallbacks: list[RoutingPlan] = []
    for option in plan.fallback_options:
        try:
            valid_fallbacks.append(validate_plan(option, catalog))
        except RoutingValidationError as exc:
            logger.warning("Dropping invalid fallback option: %s", exc)
    return plan.model_copy(update={"fallback_options": valid_fallbacks})
