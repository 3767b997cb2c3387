from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .errors import MalformedFormMapping
from .models import ConditionalRule, FormRequirement, RuleCondition

EFFECTS = {"require", "show", "hide"}
OPERATORS = {"equals", "not_equals", "in", "not_in", "present", "absent", "gt", "gte", "lt", "lte"}


@dataclass(frozen=True)
class FormTemplate:
    template_id: str
    field_ids: tuple[str, ...]


@dataclass(frozen=True)
class FormMapping:
    """Template binding for one category (default) or one product (override)."""

    form_template_id: str | None = None
    required_field_ids: tuple[str, ...] = ()
    conditional_rules: tuple[ConditionalRule, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FormMapping":
        return cls(
            form_template_id=data.get("form_template_id"),
            required_field_ids=tuple(str(field_id) for field_id in data.get("required_field_ids") or ()),
            conditional_rules=tuple(ConditionalRule.from_dict(item) for item in data.get("conditional_rules") or ()),
        )


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _same(left: Any, right: Any) -> bool:
    # "82" and 82 are the same answer
    try:
        return float(left) == float(right)
    except (TypeError, ValueError):
        return _normalize(left) == _normalize(right)


def _compare(left: Any, right: Any, operator: str) -> bool:
    try:
        left_number = float(left)
        right_number = float(right)
    except (TypeError, ValueError):
        return False
    if operator == "gt":
        return left_number > right_number
    if operator == "gte":
        return left_number >= right_number
    if operator == "lt":
        return left_number < right_number
    return left_number <= right_number


def condition_holds(condition: RuleCondition, form_data: Mapping[str, Any]) -> bool:
    value = form_data.get(condition.field)
    operator = condition.operator
    if operator == "present":
        return not is_blank(value)
    if operator == "absent":
        return is_blank(value)
    if is_blank(value):
        return False
    if operator == "equals":
        return _same(value, condition.value)
    if operator == "not_equals":
        return not _same(value, condition.value)
    if operator in {"in", "not_in"}:
        # multi-select answers match when any selected option is listed
        answers = value if isinstance(value, (list, tuple, set)) else [value]
        found = any(_same(answer, option) for answer in answers for option in (condition.value or ()))
        return found if operator == "in" else not found
    return _compare(value, condition.value, operator)


class FormRequirementResolver:
    def __init__(
        self,
        templates: Mapping[str, FormTemplate],
        category_mappings: Mapping[str, FormMapping],
        product_mappings: Mapping[str, FormMapping],
    ) -> None:
        self._templates = templates
        self._category_mappings = category_mappings
        self._product_mappings = product_mappings

    def resolve(self, category_id: str, product_id: str | None = None) -> FormRequirement:
        category_mapping = self._category_mappings.get(category_id)
        product_mapping = self._product_mappings.get(product_id) if product_id else None
        primary = product_mapping or category_mapping
        if primary is None:
            return FormRequirement(category_id=category_id, product_id=product_id, form_template_id=None)

        template_id = primary.form_template_id
        if template_id is None and category_mapping is not None:
            template_id = category_mapping.form_template_id

        merged: dict[str, list[ConditionalRule]] = {}
        for rule in category_mapping.conditional_rules if category_mapping else ():
            merged.setdefault(rule.field_id, []).append(rule)
        overridden: set[str] = set()
        for rule in product_mapping.conditional_rules if product_mapping else ():
            if rule.field_id not in overridden:
                merged[rule.field_id] = []
                overridden.add(rule.field_id)
            merged[rule.field_id].append(rule)
        conditional_rules = tuple(rule for rules in merged.values() for rule in rules)

        requirement = FormRequirement(
            category_id=category_id,
            product_id=product_id,
            form_template_id=template_id,
            required_field_ids=tuple(dict.fromkeys(primary.required_field_ids)),
            conditional_rules=conditional_rules,
        )
        self._check(requirement)
        return requirement

    def _check(self, requirement: FormRequirement) -> None:
        scope = f"{requirement.category_id}/{requirement.product_id or '*'}"
        if requirement.form_template_id is None:
            if requirement.required_field_ids or requirement.conditional_rules:
                raise MalformedFormMapping(f"Form mapping {scope} declares fields without a template")
            return
        template = self._templates.get(requirement.form_template_id)
        if template is None:
            raise MalformedFormMapping(f"Form mapping {scope} references unknown template {requirement.form_template_id}")
        declared = set(template.field_ids)
        undeclared = [field_id for field_id in requirement.required_field_ids if field_id not in declared]
        for rule in requirement.conditional_rules:
            if rule.effect not in EFFECTS:
                raise MalformedFormMapping(f"Form mapping {scope} uses unknown effect {rule.effect!r}")
            if rule.condition.operator not in OPERATORS:
                raise MalformedFormMapping(f"Form mapping {scope} uses unknown operator {rule.condition.operator!r}")
            for field_id in (rule.field_id, rule.condition.field):
                if field_id not in declared and field_id not in undeclared:
                    undeclared.append(field_id)
        if undeclared:
            raise MalformedFormMapping(
                f"Form mapping {scope} uses fields not declared by template "
                f"{requirement.form_template_id}: {', '.join(undeclared)}"
            )

    def effective_required_fields(self, requirement: FormRequirement, form_data: Mapping[str, Any]) -> list[str]:
        hidden: set[str] = set()
        shown: set[str] = set()
        gated: set[str] = set()
        extra_required: list[str] = []
        for rule in requirement.conditional_rules:
            holds = condition_holds(rule.condition, form_data)
            if rule.effect == "show":
                gated.add(rule.field_id)
                if holds:
                    shown.add(rule.field_id)
            elif rule.effect == "hide" and holds:
                hidden.add(rule.field_id)
            elif rule.effect == "require" and holds:
                extra_required.append(rule.field_id)
        invisible = hidden | (gated - shown)

        required: list[str] = []
        for field_id in list(requirement.required_field_ids) + extra_required:
            if field_id in invisible or field_id in required:
                continue
            required.append(field_id)
        return required

    def missing_fields(self, requirement: FormRequirement, form_data: Mapping[str, Any]) -> list[str]:
        return [
            field_id
            for field_id in self.effective_required_fields(requirement, form_data)
            if is_blank(form_data.get(field_id))
        ]
