"""
Template selection — picks a template for a message and fills it in.

  determine_template_type   text → TemplateType (keyword table, first match wins)
  prepare_parameters        TemplateType + text + contact → slot values
  build_components          definition + slot values → filled component list

The selector is a strategy: anything implementing TemplateSelector can
replace the keyword table without touching the dispatcher.
"""
from __future__ import annotations

import abc
import math
from datetime import datetime, timedelta
from typing import Any, Optional

from models.schemas import TemplateDefinition, TemplateType, UserDetails

DEFAULT_CUSTOMER_NAME = "Valued Customer"
DEFAULT_OFFER_TEXT = "Special offer available"

# Order matters: the first row with a matching keyword wins.
KEYWORD_TABLE: list[tuple[TemplateType, tuple[str, ...]]] = [
    (TemplateType.FOLLOW_UP, ("follow up", "reminder")),
    (TemplateType.OFFER, ("offer", "discount", "deal")),
    (TemplateType.SURVEY, ("survey", "feedback", "question")),
    (TemplateType.NEWS, ("news", "update", "announcement")),
]
DEFAULT_TEMPLATE_TYPE = TemplateType.ENGAGEMENT

SUBSTITUTABLE_KINDS = ("header", "body")


class TemplateSelector(abc.ABC):

    @abc.abstractmethod
    def determine_template_type(self, message_text: str) -> TemplateType:
        ...


class KeywordTemplateSelector(TemplateSelector):
    """Case-insensitive substring match against an ordered keyword table."""

    def __init__(
        self,
        table: list[tuple[TemplateType, tuple[str, ...]]] = None,
        default: TemplateType = DEFAULT_TEMPLATE_TYPE,
    ):
        self.table = table if table is not None else KEYWORD_TABLE
        self.default = default

    def determine_template_type(self, message_text: str) -> TemplateType:
        text = (message_text or "").lower()
        for template_type, keywords in self.table:
            if any(k in text for k in keywords):
                return template_type
        return self.default


_default_selector = KeywordTemplateSelector()


def determine_template_type(message_text: str) -> TemplateType:
    return _default_selector.determine_template_type(message_text)


def days_since(now: datetime, then: Optional[datetime]) -> int:
    """Whole days elapsed, rounded up. 0 when unknown or in the future."""
    if then is None or then >= now:
        return 0
    return math.ceil((now - then) / timedelta(days=1))


def prepare_parameters(
    template_type: TemplateType,
    message_text: str,
    user_details: Optional[UserDetails],
    now: datetime,
) -> dict[str, Any]:
    """Slot values in the order the template's body declares them."""
    details = user_details or UserDetails()
    params: dict[str, Any] = {"customer_name": details.name or DEFAULT_CUSTOMER_NAME}
    text = (message_text or "").strip()

    if template_type == TemplateType.FOLLOW_UP:
        params["days_since_contact"] = days_since(now, details.last_activity)
    elif template_type == TemplateType.OFFER:
        params["offer_details"] = text or DEFAULT_OFFER_TEXT
    elif template_type == TemplateType.SURVEY:
        params["survey_topic"] = text
    elif template_type == TemplateType.NEWS:
        params["headline"] = text
    elif template_type == TemplateType.CUSTOMER_SERVICE:
        params["issue_summary"] = text
    return params


def build_components(definition: TemplateDefinition, parameters: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Fill each header/body slot positionally from the parameter values.

    Values are consumed in order across components. Empty values fall
    back to the slot default. Buttons keep their static text.
    """
    values = list(parameters.values())
    cursor = 0
    components = []

    for component_spec in definition.components:
        component: dict[str, Any] = {"type": component_spec.kind}
        if component_spec.sub_type:
            component["sub_type"] = component_spec.sub_type
        if component_spec.index is not None:
            component["index"] = component_spec.index

        filled = []
        for slot in component_spec.parameter_slots:
            text = slot.default
            if component_spec.kind in SUBSTITUTABLE_KINDS:
                if cursor < len(values) and values[cursor] not in (None, ""):
                    text = str(values[cursor])
                cursor += 1
            filled.append({"type": "text", "text": text})
        component["parameters"] = filled
        components.append(component)

    return components
