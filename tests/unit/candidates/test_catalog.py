"""
strategy-copilot — unit tests for the template catalog

File: tests/unit/candidates/test_catalog.py
Last updated: 2026-10-17

Purpose
- Validate template/branch resolution order, the patch allow-list, and spec materialization.
"""

from __future__ import annotations

import pytest

from strategy_copilot.candidates.catalog import (
    DEFAULT_PATCH_RULES,
    Branch,
    CatalogError,
    StaticTemplateCatalog,
    Template,
    TemplateCatalog,
    default_catalog,
    merge_patch,
    validate_against_rules,
)
from strategy_copilot.domain.models import PatchViolation

CATALOG = default_catalog()


def test_default_catalog_satisfies_the_protocol() -> None:
    assert isinstance(CATALOG, TemplateCatalog)
    ids = [template.template_id for template in CATALOG.templates]
    assert ids == ["acquisition_welcome_gift", "acquisition_first_buy"]


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({"ai_template_id": "acquisition_first_buy"}, ("acquisition_first_buy", "DIRECT_DEDUCTION")),
        (
            {"ai_template_id": "nope", "template_id": "acquisition_first_buy"},
            ("acquisition_first_buy", "DIRECT_DEDUCTION"),
        ),
        ({}, ("acquisition_welcome_gift", "DEFAULT")),
        (
            {"ai_branch_id": "CHANNEL", "branch_id": "DEFAULT"},
            ("acquisition_welcome_gift", "CHANNEL"),
        ),
        ({"ai_branch_id": "missing", "branch_id": "CHANNEL"}, ("acquisition_welcome_gift", "CHANNEL")),
        ({"ai_branch_id": "missing"}, ("acquisition_welcome_gift", "DEFAULT")),
    ],
)
def test_resolution_falls_back_in_order(kwargs: dict[str, str], expected: tuple[str, str]) -> None:
    template, branch = CATALOG.resolve_template_and_branch(**kwargs)

    assert (template.template_id, branch.branch_id) == expected


def test_missing_default_branch_falls_back_to_first_branch() -> None:
    template = Template(
        template_id="t",
        name="T",
        category="X",
        trigger_event="E",
        default_branch_id="GONE",
        branches=(Branch(branch_id="ONLY", name="Only"),),
    )

    _, branch = StaticTemplateCatalog([template]).resolve_template_and_branch()

    assert branch.branch_id == "ONLY"


def test_empty_catalog_and_branchless_template_raise() -> None:
    with pytest.raises(CatalogError):
        StaticTemplateCatalog([]).resolve_template_and_branch()

    hollow = Template(
        template_id="t", name="T", category="X", trigger_event="E", default_branch_id="", branches=()
    )
    with pytest.raises(CatalogError):
        StaticTemplateCatalog([hollow]).resolve_template_and_branch()


def test_merge_patch_is_recursive_and_does_not_alias() -> None:
    base = {"budget": {"cap": 100, "used": 0}, "conditions": [1, 2]}
    patch = {"budget": {"cap": 50}, "conditions": [3]}

    merged = merge_patch(base, patch)

    assert merged == {"budget": {"cap": 50, "used": 0}, "conditions": [3]}
    assert base["budget"] == {"cap": 100, "used": 0}
    assert merge_patch({"a": 1}, "scalar") == "scalar"


def test_allow_list_reports_each_violation_path() -> None:
    violations = validate_against_rules(
        {
            "name": 3,
            "governance": {"approval_required": False},
            "budget": {"cap": "lots", "secret": 1},
            "conditions": [{"field": "x", "op": "eq", "value": [1]}, "bad"],
            "constraints": [{"plugin": "cap", "params": []}],
            "action": {"anything": {"goes": True}},
            "priority": True,
        },
        DEFAULT_PATCH_RULES,
    )

    assert violations == (
        PatchViolation(path="policyPatch.name", reason="expected string"),
        PatchViolation(path="policyPatch.governance", reason="field not allowed"),
        PatchViolation(path="policyPatch.budget.cap", reason="expected number"),
        PatchViolation(path="policyPatch.budget.secret", reason="field not allowed"),
        PatchViolation(path="policyPatch.conditions[1]", reason="expected object"),
        PatchViolation(path="policyPatch.constraints[0].params", reason="expected object"),
        PatchViolation(path="policyPatch.priority", reason="expected number"),
    )


def test_materialize_stamps_identity_and_defaults_name() -> None:
    template, branch = CATALOG.resolve_template_and_branch(ai_branch_id="CHANNEL")

    spec = CATALOG.materialize_spec(
        merchant_id="m_store_001",
        template=template,
        branch=branch,
        patch={"budget": {"cap": 90}, "template_id": "spoofed"},
    )

    assert spec["name"] == "Welcome Gift - Channel Reward"
    assert spec["budget"] == {"cap": 90, "used": 0, "cost_per_hit": 8}
    assert spec["priority"] == 72
    assert spec["trigger"] == {"event": "USER_ENTER_SHOP"}
    assert (spec["template_id"], spec["branch_id"], spec["merchant_id"]) == (
        "acquisition_welcome_gift",
        "CHANNEL",
        "m_store_001",
    )
    assert branch.policy["budget"]["cap"] == 140


@pytest.mark.parametrize(
    "budget",
    [{"cap": -1}, {"cap": 10, "used": 11}],
)
def test_materialize_rejects_inconsistent_budget(budget: dict[str, int]) -> None:
    template, branch = CATALOG.resolve_template_and_branch()

    with pytest.raises(CatalogError):
        CATALOG.materialize_spec(
            merchant_id="m", template=template, branch=branch, patch={"budget": budget}
        )


def test_describe_lists_templates_and_branches() -> None:
    described = CATALOG.describe()

    assert described[0]["templateId"] == "acquisition_welcome_gift"
    assert [item["branchId"] for item in described[0]["branches"]] == ["DEFAULT", "CHANNEL"]
    assert described[1]["defaultBranchId"] == "DIRECT_DEDUCTION"
