"""
strategy-copilot — template catalog boundary and in-memory reference catalog

File: src/strategy_copilot/candidates/catalog.py
Last updated: 2026-10-17

Purpose
- Template/branch lookup, policy patch merging, allow-list validation, and spec
  materialization used by the candidate pipeline.

What should be included in this file
- ``TemplateCatalog`` protocol consumed by the pipeline.
- Typed recursive ``merge_patch`` over scalar / list / mapping values.
- Declarative ``FieldRule`` allow-list and a validator producing ``PatchViolation`` records.
- ``StaticTemplateCatalog`` plus the bundled default templates.

Functional requirements
- Template precedence: model template, caller template, first catalog entry.
- Branch precedence: model branch, caller branch, template default branch, first branch.
- Override values win on scalar conflicts; mappings merge recursively; lists are replaced.
- Unknown patch keys are rejected with their full path.

Non-functional requirements
- Catalog operations are pure; materialized specs never alias template baselines.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final, Literal, Protocol, runtime_checkable

from strategy_copilot.domain.models import JSONValue, PatchViolation
from strategy_copilot.utils.text import as_string

RuleKind = Literal["string", "number", "boolean", "any", "object", "list", "mapping"]


class CatalogError(ValueError):
    """Raised when a template/branch cannot be resolved or a spec cannot be materialized."""


@dataclass(frozen=True, slots=True)
class Branch:
    branch_id: str
    name: str
    description: str = ""
    policy: Mapping[str, JSONValue] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Template:
    template_id: str
    name: str
    category: str
    trigger_event: str
    default_branch_id: str
    branches: tuple[Branch, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "branches", tuple(self.branches))

    def find_branch(self, branch_id: str) -> Branch | None:
        normalized = as_string(branch_id)
        if not normalized:
            return None
        for branch in self.branches:
            if branch.branch_id == normalized:
                return branch
        return None


@dataclass(frozen=True, slots=True)
class FieldRule:
    """Allow-list node: the expected kind and, for containers, the nested rules."""

    kind: RuleKind
    children: Mapping[str, FieldRule] = field(default_factory=dict)
    item: FieldRule | None = None


def _string() -> FieldRule:
    return FieldRule("string")


def _number() -> FieldRule:
    return FieldRule("number")


DEFAULT_PATCH_RULES: Final[Mapping[str, FieldRule]] = {
    "name": _string(),
    "description": _string(),
    "priority": _number(),
    "ttl_hours": _number(),
    "segment": _string(),
    "conditions": FieldRule(
        "list",
        item=FieldRule(
            "object",
            children={"field": _string(), "op": _string(), "value": FieldRule("any")},
        ),
    ),
    "budget": FieldRule(
        "object",
        children={"cap": _number(), "used": _number(), "cost_per_hit": _number()},
    ),
    "constraints": FieldRule(
        "list",
        item=FieldRule("object", children={"plugin": _string(), "params": FieldRule("mapping")}),
    ),
    "action": FieldRule("mapping"),
}


@runtime_checkable
class TemplateCatalog(Protocol):
    """Catalog operations the candidate pipeline depends on."""

    def resolve_template_and_branch(
        self,
        *,
        ai_template_id: str = "",
        ai_branch_id: str = "",
        template_id: str = "",
        branch_id: str = "",
    ) -> tuple[Template, Branch]: ...

    def merge_patch(
        self, base: Mapping[str, JSONValue], patch: Mapping[str, JSONValue]
    ) -> dict[str, JSONValue]: ...

    def validate_policy_patch(
        self, template: Template, patch: Mapping[str, JSONValue]
    ) -> tuple[PatchViolation, ...]: ...

    def materialize_spec(
        self,
        *,
        merchant_id: str,
        template: Template,
        branch: Branch,
        patch: Mapping[str, JSONValue],
    ) -> dict[str, JSONValue]: ...


def merge_patch(base: JSONValue, patch: JSONValue) -> JSONValue:
    """Recursive merge where ``patch`` wins; only mapping/mapping pairs merge deeper."""

    if not isinstance(patch, Mapping):
        return copy.deepcopy(patch)
    result: dict[str, JSONValue] = copy.deepcopy(dict(base)) if isinstance(base, Mapping) else {}
    for key, value in patch.items():
        current = result.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            result[key] = merge_patch(current, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def validate_against_rules(
    patch: Mapping[str, JSONValue],
    rules: Mapping[str, FieldRule],
    *,
    root: str = "policyPatch",
) -> tuple[PatchViolation, ...]:
    violations: list[PatchViolation] = []
    _validate_object(patch, rules, root, violations)
    return tuple(violations)


def _validate_object(
    value: Mapping[str, JSONValue],
    rules: Mapping[str, FieldRule],
    path: str,
    violations: list[PatchViolation],
) -> None:
    for key in value:
        key_path = f"{path}.{key}"
        rule = rules.get(key)
        if rule is None:
            violations.append(PatchViolation(path=key_path, reason="field not allowed"))
            continue
        _validate_value(value[key], rule, key_path, violations)


def _validate_value(
    value: JSONValue,
    rule: FieldRule,
    path: str,
    violations: list[PatchViolation],
) -> None:
    if rule.kind == "any":
        return
    if rule.kind == "string":
        if not isinstance(value, str):
            violations.append(PatchViolation(path=path, reason="expected string"))
        return
    if rule.kind == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            violations.append(PatchViolation(path=path, reason="expected number"))
        return
    if rule.kind == "boolean":
        if not isinstance(value, bool):
            violations.append(PatchViolation(path=path, reason="expected boolean"))
        return
    if rule.kind == "mapping":
        if not isinstance(value, Mapping):
            violations.append(PatchViolation(path=path, reason="expected object"))
        return
    if rule.kind == "object":
        if not isinstance(value, Mapping):
            violations.append(PatchViolation(path=path, reason="expected object"))
            return
        _validate_object(value, rule.children, path, violations)
        return
    if not isinstance(value, list):
        violations.append(PatchViolation(path=path, reason="expected array"))
        return
    if rule.item is None:
        return
    for index, item in enumerate(value):
        _validate_value(item, rule.item, f"{path}[{index}]", violations)


class StaticTemplateCatalog:
    """In-memory ``TemplateCatalog`` over a fixed template list."""

    def __init__(
        self,
        templates: Iterable[Template],
        *,
        patch_rules: Mapping[str, FieldRule] = DEFAULT_PATCH_RULES,
    ) -> None:
        self._templates = tuple(templates)
        self._patch_rules = dict(patch_rules)

    @property
    def templates(self) -> tuple[Template, ...]:
        return self._templates

    def find_template(self, template_id: str) -> Template | None:
        normalized = as_string(template_id)
        if not normalized:
            return None
        for template in self._templates:
            if template.template_id == normalized:
                return template
        return None

    def resolve_template_and_branch(
        self,
        *,
        ai_template_id: str = "",
        ai_branch_id: str = "",
        template_id: str = "",
        branch_id: str = "",
    ) -> tuple[Template, Branch]:
        template = (
            self.find_template(ai_template_id)
            or self.find_template(template_id)
            or (self._templates[0] if self._templates else None)
        )
        if template is None:
            raise CatalogError("strategy template not found")

        branch = (
            template.find_branch(ai_branch_id)
            or template.find_branch(branch_id)
            or template.find_branch(template.default_branch_id)
            or (template.branches[0] if template.branches else None)
        )
        if branch is None:
            raise CatalogError(f"strategy branch not found for template {template.template_id}")
        return template, branch

    def merge_patch(
        self, base: Mapping[str, JSONValue], patch: Mapping[str, JSONValue]
    ) -> dict[str, JSONValue]:
        merged = merge_patch(dict(base), dict(patch))
        return merged if isinstance(merged, dict) else {}

    def validate_policy_patch(
        self, template: Template, patch: Mapping[str, JSONValue]
    ) -> tuple[PatchViolation, ...]:
        return validate_against_rules(patch, self._patch_rules)

    def materialize_spec(
        self,
        *,
        merchant_id: str,
        template: Template,
        branch: Branch,
        patch: Mapping[str, JSONValue],
    ) -> dict[str, JSONValue]:
        spec = self.merge_patch(branch.policy, patch)
        if not as_string(spec.get("name")):
            spec["name"] = f"{template.name} - {branch.name}"

        budget = spec.get("budget")
        if isinstance(budget, Mapping):
            cap = budget.get("cap")
            used = budget.get("used", 0)
            if isinstance(cap, (int, float)) and cap < 0:
                raise CatalogError("budget.cap must be >= 0")
            if isinstance(cap, (int, float)) and isinstance(used, (int, float)) and used > cap:
                raise CatalogError("budget.used must not exceed budget.cap")

        trigger = spec.get("trigger")
        trigger_payload: dict[str, JSONValue] = dict(trigger) if isinstance(trigger, Mapping) else {}
        trigger_payload["event"] = template.trigger_event
        spec["trigger"] = trigger_payload
        spec["template_id"] = template.template_id
        spec["branch_id"] = branch.branch_id
        spec["merchant_id"] = merchant_id
        return spec

    def describe(self) -> list[dict[str, JSONValue]]:
        """Compact catalog listing for prompts."""

        return [
            {
                "templateId": template.template_id,
                "name": template.name,
                "category": template.category,
                "triggerEvent": template.trigger_event,
                "defaultBranchId": template.default_branch_id,
                "branches": [
                    {
                        "branchId": branch.branch_id,
                        "name": branch.name,
                        "description": branch.description,
                    }
                    for branch in template.branches
                ],
            }
            for template in self._templates
        ]


def default_templates() -> Sequence[Template]:
    return (
        Template(
            template_id="acquisition_welcome_gift",
            name="Welcome Gift",
            category="ACQUISITION",
            trigger_event="USER_ENTER_SHOP",
            default_branch_id="DEFAULT",
            branches=(
                Branch(
                    branch_id="DEFAULT",
                    name="Default Reward",
                    description="Standard welcome gift on a natural first visit",
                    policy={
                        "priority": 70,
                        "conditions": [
                            {"field": "isNewUser", "op": "eq", "value": True},
                            {"field": "hasReferral", "op": "eq", "value": False},
                        ],
                        "budget": {"cap": 120, "used": 0, "cost_per_hit": 6},
                        "action": {
                            "type": "GRANT_VOUCHER",
                            "voucher": {"type": "ITEM_WARRANT", "value": 18, "min_spend": 0},
                        },
                    },
                ),
                Branch(
                    branch_id="CHANNEL",
                    name="Channel Reward",
                    description="Gift for visitors arriving through an invite or share",
                    policy={
                        "priority": 72,
                        "conditions": [
                            {"field": "isNewUser", "op": "eq", "value": True},
                            {"field": "hasReferral", "op": "eq", "value": True},
                        ],
                        "budget": {"cap": 140, "used": 0, "cost_per_hit": 8},
                        "action": {
                            "type": "GRANT_VOUCHER",
                            "voucher": {
                                "type": "NO_THRESHOLD_VOUCHER",
                                "value": 10,
                                "min_spend": 20,
                            },
                        },
                    },
                ),
            ),
        ),
        Template(
            template_id="acquisition_first_buy",
            name="First Purchase",
            category="ACQUISITION",
            trigger_event="PAYMENT_PRECHECK",
            default_branch_id="DIRECT_DEDUCTION",
            branches=(
                Branch(
                    branch_id="DIRECT_DEDUCTION",
                    name="Instant Discount",
                    description="Discount applied before payment on the first order",
                    policy={
                        "priority": 75,
                        "conditions": [
                            {"field": "orderCount", "op": "eq", "value": 0},
                            {"field": "orderAmount", "op": "gte", "value": 20},
                        ],
                        "budget": {"cap": 180, "used": 0, "cost_per_hit": 5},
                        "action": {
                            "type": "GRANT_VOUCHER",
                            "voucher": {"type": "NO_THRESHOLD_VOUCHER", "value": 5, "min_spend": 20},
                        },
                    },
                ),
            ),
        ),
    )


def default_catalog() -> StaticTemplateCatalog:
    return StaticTemplateCatalog(default_templates())


__all__ = [
    "DEFAULT_PATCH_RULES",
    "Branch",
    "CatalogError",
    "FieldRule",
    "StaticTemplateCatalog",
    "Template",
    "TemplateCatalog",
    "default_catalog",
    "default_templates",
    "merge_patch",
    "validate_against_rules",
]
