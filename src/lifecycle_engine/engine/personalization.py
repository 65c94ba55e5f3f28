"""Content personalization.

Variable mappings pull live user/account values (with fallback and an
optional transform) into ``{{placeholders}}``; conditional blocks are
chosen with the segment rule engine; personalization rules pick content
per slot for users matching their filters.
"""
from __future__ import annotations
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from lifecycle_engine.engine.segmentation import evaluate_segment_filters, lookup_path
from lifecycle_engine.engine.templating import UNRESOLVED, Placeholder, render
from lifecycle_engine.models.domain import SegmentFilter
from lifecycle_engine.utils.values import to_number, to_text

_BLOCK_PLACEHOLDER = re.compile(r"\{\{block:[^}]+\}\}")

DEFAULT_APP_NAME = "LifecycleOS"

VARIABLE_SOURCES: dict[str, list[tuple[str, str]]] = {
    "user": [
        ("name", "User Name"),
        ("email", "User Email"),
        ("lifecycleState", "Lifecycle State"),
        ("plan", "User Plan"),
        ("mrr", "User MRR"),
        ("churnRiskScore", "Churn Risk Score"),
        ("expansionScore", "Expansion Score"),
        ("loginFrequency7d", "Logins (7d)"),
        ("loginFrequency30d", "Logins (30d)"),
        ("sessionDepthMinutes", "Session Depth (min)"),
        ("npsScore", "NPS Score"),
        ("seatCount", "Seat Count"),
        ("seatLimit", "Seat Limit"),
        ("apiCalls30d", "API Calls (30d)"),
        ("supportTickets30d", "Support Tickets (30d)"),
        ("daysUntilRenewal", "Days Until Renewal"),
    ],
    "account": [
        ("name", "Account Name"),
        ("domain", "Account Domain"),
        ("industry", "Industry"),
        ("plan", "Account Plan"),
        ("mrr", "Account MRR"),
        ("arr", "Account ARR"),
        ("userCount", "User Count"),
        ("health", "Account Health"),
        ("churnRiskScore", "Account Churn Risk"),
        ("expansionScore", "Account Expansion Score"),
    ],
    "custom": [
        ("current_date", "Current Date"),
        ("app_name", "App Name"),
        ("support_email", "Support Email"),
    ],
}


@dataclass
class VariableMapping:
    variable_key: str
    source: str
    source_field: str
    fallback: str = ""
    transform: str | None = None
    transform_param: str | None = None


@dataclass
class ConditionalBlock:
    id: str
    name: str
    html_content: str
    rules: list[SegmentFilter] = field(default_factory=list)
    rule_logic: str = "AND"


@dataclass
class PersonalizationVariant:
    slot_key: str
    content: str
    content_type: str = "text"


@dataclass
class PersonalizationRule:
    id: str
    name: str
    filters: list[SegmentFilter] = field(default_factory=list)
    filter_logic: str = "AND"
    variants: list[PersonalizationVariant] = field(default_factory=list)
    variable_mappings: list[VariableMapping] = field(default_factory=list)
    priority: int = 0


@dataclass
class ResolvedPersonalization:
    rule_id: str
    rule_name: str
    variants: list[PersonalizationVariant]
    resolved_variables: dict[str, str]


@dataclass
class TemplateVariable:
    key: str
    label: str
    source: str
    fallback: str = ""


@dataclass
class PersonalizableTemplate:
    subject: str
    body_html: str
    body_text: str | None = None
    variables: list[TemplateVariable] = field(default_factory=list)
    conditional_blocks: list[ConditionalBlock] = field(default_factory=list)


@dataclass
class PersonalizedEmail:
    subject: str
    body_html: str
    body_text: str
    resolved_variables: dict[str, str]


# ── Transforms ──────────────────────────────────────────────────────────

def _truncate(value: str, param: str | None) -> str:
    try:
        length = int(param if param is not None else 50)
    except ValueError:
        return value
    return value[:length] + "..." if len(value) > length else value


def _number_format(value: str, param: str | None) -> str:
    num = to_number(value)
    if math.isnan(num):
        return value
    if num.is_integer():
        return f"{int(num):,}"
    return f"{num:,.3f}".rstrip("0").rstrip(".")


TRANSFORMS: dict[str, Callable[[str, str | None], str]] = {
    "uppercase": lambda v, p: v.upper(),
    "lowercase": lambda v, p: v.lower(),
    "capitalize": lambda v, p: v[:1].upper() + v[1:],
    "truncate": _truncate,
    "number_format": _number_format,
}


# ── Variable resolution ─────────────────────────────────────────────────

def _builtin_custom(name: str, now: datetime | None, app_name: str | None) -> Any:
    if name == "current_date":
        today = (now or datetime.now(timezone.utc)).date()
        return f"{today.month}/{today.day}/{today.year}"
    if name == "app_name":
        return app_name or DEFAULT_APP_NAME
    return None


def resolve_variable_value(
    mapping: VariableMapping,
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
    custom_vars: Mapping[str, str] | None = None,
    now: datetime | None = None,
    app_name: str | None = None,
) -> str:
    raw: Any = None
    if mapping.source == "user":
        raw = lookup_path(user, mapping.source_field)
    elif mapping.source == "account":
        raw = lookup_path(account, mapping.source_field) if account else None
    elif mapping.source == "custom":
        custom_vars = custom_vars or {}
        if mapping.source_field in custom_vars:
            raw = custom_vars[mapping.source_field]
        else:
            raw = _builtin_custom(mapping.source_field, now, app_name)
    # "event" values are filled in at send time

    value = to_text(raw) if raw is not None and raw != "" else mapping.fallback
    transform = TRANSFORMS.get(mapping.transform or "")
    if transform is not None:
        value = transform(value, mapping.transform_param)
    return value


def resolve_variables(
    mappings: list[VariableMapping],
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
    custom_vars: Mapping[str, str] | None = None,
    now: datetime | None = None,
    app_name: str | None = None,
) -> dict[str, str]:
    return {
        m.variable_key: resolve_variable_value(m, user, account, custom_vars, now, app_name)
        for m in mappings
    }


def render_template(
    template: str,
    mappings: list[VariableMapping],
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
    custom_vars: Mapping[str, str] | None = None,
    now: datetime | None = None,
    app_name: str | None = None,
) -> str:
    """Replace placeholders with mapped variables or ``user.*``/``account.*`` scalars."""
    resolved = resolve_variables(mappings, user, account, custom_vars, now, app_name)
    for prefix, record in (("user", user), ("account", account)):
        for key, val in (record or {}).items():
            if val is not None and not isinstance(val, (dict, list)):
                resolved[f"{prefix}.{key}"] = to_text(val)

    def lookup(ph: Placeholder) -> Any:
        return resolved.get(ph.key, UNRESOLVED)

    return render(template, lookup)


# ── Conditional content and rules ───────────────────────────────────────

def evaluate_conditional_blocks(
    blocks: list[ConditionalBlock],
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
) -> list[ConditionalBlock]:
    return [b for b in blocks if evaluate_segment_filters(b.rules, b.rule_logic, user, account)]


def resolve_personalization_rule(
    rule: PersonalizationRule,
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
    custom_vars: Mapping[str, str] | None = None,
    now: datetime | None = None,
    app_name: str | None = None,
) -> ResolvedPersonalization | None:
    if not evaluate_segment_filters(rule.filters, rule.filter_logic, user, account):
        return None
    variants = [
        PersonalizationVariant(
            slot_key=v.slot_key,
            content=render_template(v.content, rule.variable_mappings, user, account, custom_vars, now, app_name),
            content_type=v.content_type,
        )
        for v in rule.variants
    ]
    return ResolvedPersonalization(
        rule_id=rule.id,
        rule_name=rule.name,
        variants=variants,
        resolved_variables=resolve_variables(rule.variable_mappings, user, account, custom_vars, now, app_name),
    )


def resolve_all_personalizations(
    rules: list[PersonalizationRule],
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
    custom_vars: Mapping[str, str] | None = None,
    now: datetime | None = None,
    app_name: str | None = None,
) -> dict[str, ResolvedPersonalization]:
    """Slot key -> winning rule. Rules are tried by descending priority; first match per slot wins."""
    slots: dict[str, ResolvedPersonalization] = {}
    for rule in sorted(rules, key=lambda r: r.priority, reverse=True):
        resolved = resolve_personalization_rule(rule, user, account, custom_vars, now, app_name)
        if resolved is None:
            continue
        for variant in resolved.variants:
            slots.setdefault(variant.slot_key, resolved)
    return slots


def _template_mapping(var: TemplateVariable) -> VariableMapping:
    source_field = var.key.split(".", 1)[1] if "." in var.key else var.key
    return VariableMapping(variable_key=var.key, source=var.source, source_field=source_field, fallback=var.fallback)


def personalize_email(
    template: PersonalizableTemplate,
    mappings: list[VariableMapping],
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
    custom_vars: Mapping[str, str] | None = None,
    now: datetime | None = None,
    app_name: str | None = None,
) -> PersonalizedEmail:
    explicit = {m.variable_key for m in mappings}
    all_mappings = list(mappings) + [_template_mapping(v) for v in template.variables if v.key not in explicit]

    def rendered(text: str) -> str:
        return render_template(text, all_mappings, user, account, custom_vars, now, app_name)

    subject = rendered(template.subject)
    body_html = rendered(template.body_html)
    body_text = rendered(template.body_text or "")

    if template.conditional_blocks:
        for block in evaluate_conditional_blocks(template.conditional_blocks, user, account):
            body_html = body_html.replace(f"{{{{block:{block.id}}}}}", rendered(block.html_content), 1)
        body_html = _BLOCK_PLACEHOLDER.sub("", body_html)

    return PersonalizedEmail(
        subject=subject,
        body_html=body_html,
        body_text=body_text,
        resolved_variables=resolve_variables(all_mappings, user, account, custom_vars, now, app_name),
    )
