"""
Template Registry — Approved message templates, one per TemplateType.

Definitions are static by default and can be overridden from config
(settings.yaml, applied by create_messaging_service):

    templates:
      include_defaults: true      # false: only configured types + follow-up reminder
      definitions:
        - type: special_offer
          name: special_offer_v2
          language_code: en
          components:
            - kind: body
              parameter_slots: [{name: customer_name}, {name: offer_details}]

Resolution: exact TemplateType, else the follow-up reminder definition.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from models.schemas import ComponentSpec, ParameterSlot, TemplateDefinition, TemplateType

logger = structlog.get_logger()

FALLBACK_TEMPLATE_TYPE = TemplateType.FOLLOW_UP


def _body(*slot_names: str) -> ComponentSpec:
    return ComponentSpec(kind="body", parameter_slots=[ParameterSlot(name=n) for n in slot_names])


DEFAULT_TEMPLATES: dict[TemplateType, TemplateDefinition] = {
    TemplateType.FOLLOW_UP: TemplateDefinition(
        name=TemplateType.FOLLOW_UP.value,
        components=[_body("customer_name", "days_since_contact")],
    ),
    TemplateType.ENGAGEMENT: TemplateDefinition(
        name=TemplateType.ENGAGEMENT.value,
        components=[
            _body("customer_name"),
            ComponentSpec(
                kind="button", sub_type="quick_reply", index=0,
                parameter_slots=[ParameterSlot(default="Yes, I'm interested")],
            ),
        ],
    ),
    TemplateType.OFFER: TemplateDefinition(
        name=TemplateType.OFFER.value,
        components=[_body("customer_name", "offer_details")],
    ),
    TemplateType.NEWS: TemplateDefinition(
        name=TemplateType.NEWS.value,
        components=[_body("customer_name", "headline")],
    ),
    TemplateType.SURVEY: TemplateDefinition(
        name=TemplateType.SURVEY.value,
        components=[
            _body("customer_name", "survey_topic"),
            ComponentSpec(
                kind="button", sub_type="quick_reply", index=0,
                parameter_slots=[ParameterSlot(default="Share feedback")],
            ),
        ],
    ),
    TemplateType.CUSTOMER_SERVICE: TemplateDefinition(
        name=TemplateType.CUSTOMER_SERVICE.value,
        components=[_body("customer_name", "issue_summary")],
    ),
}

# Free-form follow-up sent when the conversation is back inside the window
FOLLOW_UP_MESSAGES: dict[TemplateType, str] = {
    TemplateType.FOLLOW_UP: "Hi! I wanted to follow up on our previous conversation. How can I help you today?",
    TemplateType.ENGAGEMENT: "Great to hear from you again! Is there anything specific you'd like to discuss?",
    TemplateType.OFFER: "I have some exciting updates and offers to share with you. Would you like to hear more?",
    TemplateType.SURVEY: "I'd love to get your feedback on our recent interaction. Would you mind sharing your thoughts?",
    TemplateType.NEWS: "I have some important updates to share. Are you available for a quick chat?",
    TemplateType.CUSTOMER_SERVICE: "I wanted to check if everything was resolved to your satisfaction. Is there anything else you need help with?",
}

# Text fed into the template parameters when still outside the window
FOLLOW_UP_TEMPLATE_TEXT: dict[TemplateType, str] = {
    TemplateType.FOLLOW_UP: "We haven't heard from you in a while. Would you like to continue our conversation?",
    TemplateType.ENGAGEMENT: "It's been a while since we last spoke. I'd love to reconnect and see how I can help!",
    TemplateType.OFFER: "I have some exclusive offers that might interest you. Would you like to learn more?",
    TemplateType.SURVEY: "Your feedback is valuable to us. Could you spare a moment to share your thoughts?",
    TemplateType.NEWS: "I have some exciting news to share. Would you like to be the first to know?",
    TemplateType.CUSTOMER_SERVICE: "I wanted to ensure you're completely satisfied with our service. Is there anything else I can help with?",
}


def follow_up_message(template_type: TemplateType) -> str:
    return FOLLOW_UP_MESSAGES.get(template_type, FOLLOW_UP_MESSAGES[TemplateType.ENGAGEMENT])


def follow_up_template_text(template_type: TemplateType) -> str:
    return FOLLOW_UP_TEMPLATE_TEXT.get(template_type, FOLLOW_UP_TEMPLATE_TEXT[TemplateType.ENGAGEMENT])


class TemplateRegistry:
    """
    Holds the approved template definition for each TemplateType.

    With include_defaults=False only the follow-up reminder is preloaded;
    any other type must come from config or register(), and unregistered
    types resolve to the follow-up reminder.
    """

    def __init__(
        self,
        definitions: dict[TemplateType, TemplateDefinition] = None,
        include_defaults: bool = True,
    ):
        self._definitions: dict[TemplateType, TemplateDefinition] = {}
        base = DEFAULT_TEMPLATES if include_defaults else {
            FALLBACK_TEMPLATE_TYPE: DEFAULT_TEMPLATES[FALLBACK_TEMPLATE_TYPE],
        }
        for template_type, definition in {**base, **(definitions or {})}.items():
            self.register(template_type, definition)

    def register(self, template_type: TemplateType, definition: TemplateDefinition) -> None:
        errors = self._validate(definition)
        if errors:
            logger.error("invalid_template_definition",
                         template_type=template_type.value, errors=errors)
            raise ValueError(f"Invalid template '{definition.name}': {'; '.join(errors)}")
        self._definitions[template_type] = definition

    def register_from_config(self, config: list[dict[str, Any]]) -> None:
        for raw in config:
            template_type = TemplateType(raw["type"])
            definition = TemplateDefinition.model_validate(
                {k: v for k, v in raw.items() if k != "type"}
            )
            self.register(template_type, definition)
        logger.info("template_definitions_loaded", count=len(config))

    def get(self, template_type: TemplateType) -> TemplateDefinition:
        definition = self._definitions.get(template_type)
        if definition is None:
            logger.warning("template_definition_missing",
                           template_type=template_type.value,
                           fallback=FALLBACK_TEMPLATE_TYPE.value)
            definition = self._definitions[FALLBACK_TEMPLATE_TYPE]
        return definition

    def find(self, template_type: TemplateType) -> Optional[TemplateDefinition]:
        return self._definitions.get(template_type)

    def __contains__(self, template_type: TemplateType) -> bool:
        return template_type in self._definitions

    @property
    def types(self) -> list[TemplateType]:
        return list(self._definitions)

    @staticmethod
    def _validate(definition: TemplateDefinition) -> list[str]:
        errors = []
        if not definition.name:
            errors.append("name is required")
        if not definition.language_code:
            errors.append("language_code is required")
        if not definition.components:
            errors.append("at least one component is required")
        return errors
