# app/core/generation/compiler.py
"""
COMPILER MODULE - Assemble the exact prompt text sent to the model

Purpose:
    1. System text = template system prompt → knowledge block → company rules block
    2. User text = template user prompt with {{placeholders}} filled from the Intent
    3. Record template version and knowledge ids for the audit trail

Why a closed placeholder table:
    A template may only ask for values listed in PLACEHOLDERS. Anything else is
    left exactly as written and reported, so templates can never pull arbitrary
    request data into a prompt.

Compilation is pure: same inputs give byte-identical output, which lets tests
check prompts without a model.
"""

import re
from typing import Callable, Dict, List, Optional, Tuple

from app.core.errors import TemplateNotFoundError
from app.core.schemas import (
    CompanyRule,
    CompiledPrompt,
    Intent,
    IntentKind,
    KnowledgeSelection,
    PromptTemplate,
    UiType,
)

KNOWLEDGE_HEADER = "=== REFERENCE KNOWLEDGE ==="
KNOWLEDGE_FOOTER = "=== END REFERENCE KNOWLEDGE ==="
KNOWLEDGE_SEPARATOR = "\n\n---\n\n"
RULES_HEADER = "=== COMPANY RULES ==="
RULES_FOOTER = "=== END COMPANY RULES ==="

DEFAULT_PACKAGE_BASE = "com.company.project"

_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

_LIST_KINDS = (IntentKind.LIST, IntentKind.LIST_WITH_POPUP)


# ============================================================================
# STEP 1: RENDERERS (one per placeholder)
# ============================================================================


def _lines(items: List[str], empty: str) -> str:
    return "\n".join(items) if items else empty


def render_fields(intent: Intent) -> str:
    """
    Example:
        - CUST_ID (Cust Id): hidden/string, required, read-only, primary key
    """
    lines = []
    for field in intent.fields:
        flags = []
        if field.required:
            flags.append("required")
        if field.read_only:
            flags.append("read-only")
        if field.primary_key:
            flags.append("primary key")
        if field.max_length:
            flags.append(f"max length {field.max_length}")
        suffix = f", {', '.join(flags)}" if flags else ""
        lines.append(
            f"- {field.name} ({field.label}): {field.ui_type.value}/{field.data_type.value}{suffix}"
        )
    return _lines(lines, "(none given - propose fields that fit the notes)")


def render_actions(intent: Intent) -> str:
    return _lines([f"- {action.value}" for action in intent.actions], "(none)")


def render_datasets(intent: Intent) -> str:
    if not intent.fields:
        return f"- {intent.dataset_id} (columns to be proposed)"
    columns = ", ".join(f"{field.name}:{field.data_type.value}" for field in intent.fields)
    return f"- {intent.dataset_id}: {columns}"


def render_grid_columns(intent: Intent) -> str:
    if intent.kind not in _LIST_KINDS:
        return "(no grid on this screen)"
    lines = [
        f'- {field.name} "{field.label}"'
        for field in intent.fields
        if field.ui_type != UiType.HIDDEN
    ]
    return f"Grid id: {intent.grid_id}\n" + _lines(lines, "(columns to be proposed)")


def render_form_fields(intent: Intent) -> str:
    lines = []
    for field in intent.fields:
        flags = [field.ui_type.value]
        if field.required:
            flags.append("required")
        if field.read_only:
            flags.append("readonly")
        lines.append(f'- {field.name} "{field.label}" [{", ".join(flags)}]')
    return _lines(lines, "(fields to be proposed)")


def render_functions(intent: Intent) -> str:
    return _lines([f"- {name}" for name in intent.function_names], "(none)")


def render_service_methods(intent: Intent) -> str:
    return _lines([f"- {name}" for name in intent.service_methods], "(none)")


def render_mapper_methods(intent: Intent) -> str:
    return _lines([f"- {name}" for name in intent.mapper_methods], "(none)")


Renderer = Callable[[Intent, str], str]

PLACEHOLDERS: Dict[str, Renderer] = {
    "screen_name": lambda intent, _: intent.name,
    "entity_name": lambda intent, _: intent.entity,
    "entity_class": lambda intent, _: intent.entity_class,
    "kind": lambda intent, _: intent.kind.value,
    "product": lambda intent, _: intent.product.value,
    "fields": lambda intent, _: render_fields(intent),
    "actions": lambda intent, _: render_actions(intent),
    "datasets": lambda intent, _: render_datasets(intent),
    "grid_columns": lambda intent, _: render_grid_columns(intent),
    "form_fields": lambda intent, _: render_form_fields(intent),
    "functions": lambda intent, _: render_functions(intent),
    "service_methods": lambda intent, _: render_service_methods(intent),
    "mapper_methods": lambda intent, _: render_mapper_methods(intent),
    "notes": lambda intent, _: intent.notes or "(none)",
    "package_base": lambda _, package_base: package_base,
}


# ============================================================================
# STEP 2: SYSTEM AND USER TEXT
# ============================================================================


def build_system_text(
    template: PromptTemplate,
    knowledge: KnowledgeSelection,
    rule: Optional[CompanyRule] = None,
) -> str:
    """Template, then knowledge, then company rules. The order never changes."""
    sections = [template.system_prompt.strip()]

    if knowledge.entries:
        body = KNOWLEDGE_SEPARATOR.join(entry.content.strip() for entry in knowledge.entries)
        sections.append(f"{KNOWLEDGE_HEADER}\n{body}\n{KNOWLEDGE_FOOTER}")

    if rule is not None and rule.rules.strip():
        sections.append(f"{RULES_HEADER}\n{rule.rules.strip()}\n{RULES_FOOTER}")

    return "\n\n".join(sections)


def substitute_placeholders(
    skeleton: str,
    intent: Intent,
    package_base: str = DEFAULT_PACKAGE_BASE,
) -> Tuple[str, List[str]]:
    """
    Replace known {{placeholders}} in one pass.

    Returns:
        (text, warnings) where warnings lists each unknown placeholder once
    """
    warnings: List[str] = []

    def replace(match: re.Match) -> str:
        name = match.group(1)
        renderer = PLACEHOLDERS.get(name)
        if renderer is None:
            warning = f"Unknown placeholder '{match.group(0)}' left unchanged"
            if warning not in warnings:
                warnings.append(warning)
            return match.group(0)
        return renderer(intent, package_base)

    return _PLACEHOLDER_PATTERN.sub(replace, skeleton), warnings


def compile_prompt(
    intent: Intent,
    template: Optional[PromptTemplate],
    knowledge: KnowledgeSelection,
    rule: Optional[CompanyRule] = None,
    package_base: str = DEFAULT_PACKAGE_BASE,
) -> CompiledPrompt:
    """
    Build the CompiledPrompt for one request.

    Args:
        intent: Normalized intent
        template: Active template for (intent.product, intent.kind), or None
        knowledge: Selection from the knowledge selector, used in its given order
        rule: Optional tenant rule appended last
        package_base: Java package used by backend templates

    Returns:
        CompiledPrompt with the template version and knowledge ids it used

    Raises:
        TemplateNotFoundError: no template, or a template for another (product, kind)
    """
    if template is None or template.product != intent.product or template.kind != intent.kind:
        raise TemplateNotFoundError(intent.product.value, intent.kind.value)

    user, warnings = substitute_placeholders(template.user_prompt_template, intent, package_base)

    return CompiledPrompt(
        system=build_system_text(template, knowledge, rule),
        user=user.strip(),
        template_version=template.version,
        knowledge_ids=knowledge.ids,
        knowledge_tokens=knowledge.total_tokens,
        warnings=warnings,
    )
