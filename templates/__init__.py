"""
Approved message templates.

A template is the only way to reach a conversation outside the 24-hour
window. The registry holds one definition per TemplateType; the selector
picks a type from message text and fills the definition's slots.
"""
from templates.registry import (
    DEFAULT_TEMPLATES, TemplateRegistry,
    follow_up_message, follow_up_template_text,
)
from templates.selector import (
    KEYWORD_TABLE, KeywordTemplateSelector, TemplateSelector,
    build_components, determine_template_type, prepare_parameters,
)

__all__ = [
    "DEFAULT_TEMPLATES", "TemplateRegistry",
    "follow_up_message", "follow_up_template_text",
    "KEYWORD_TABLE", "KeywordTemplateSelector", "TemplateSelector",
    "build_components", "determine_template_type", "prepare_parameters",
]
