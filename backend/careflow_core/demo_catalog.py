from __future__ import annotations

import copy
from typing import Any

from .catalog import CatalogReadModel

# Served when CAREFLOW_CATALOG_PATH is unset, so the API runs out of the box.
DEMO_CATALOG: dict[str, Any] = {
    "categories": [
        {"category_id": "weight-mgmt", "name": "Weight Management"},
        {"category_id": "hair-loss", "name": "Hair Loss"},
        {"category_id": "legacy-care", "name": "Legacy Care", "active": False},
    ],
    "subscription_durations": [
        {"duration_id": "monthly", "name": "Monthly", "months": 1},
        {"duration_id": "quarterly", "name": "Quarterly", "months": 3},
        {"duration_id": "annual", "name": "Annual", "months": 12, "active": False},
    ],
    "products": [
        {
            "product_id": "semaglutide-1",
            "category_id": "weight-mgmt",
            "name": "Semaglutide Starter",
            "base_price": "200.00",
            "subscription_duration_ids": ["monthly", "quarterly"],
            "acceptance_rates": {"default": 0.4, "new_patient": 0.5},
            "merchandising_priority": 8,
            "tags": ["weight", "glp1"],
        },
        {
            "product_id": "tirzepatide-1",
            "category_id": "weight-mgmt",
            "name": "Tirzepatide Starter",
            "base_price": "350.00",
            "subscription_duration_ids": ["monthly", "quarterly"],
            "acceptance_rates": {"default": 0.35, "new_patient": 0.3},
            "merchandising_priority": 6,
            "tags": ["weight", "glp1"],
        },
        {
            "product_id": "metformin-er",
            "category_id": "weight-mgmt",
            "name": "Metformin ER",
            "base_price": "45.00",
            "subscription_duration_ids": ["monthly"],
            "acceptance_rates": {"default": 0.2},
            "merchandising_priority": 3,
            "tags": ["weight", "blood-sugar"],
        },
        {
            "product_id": "nutrition-coaching",
            "category_id": "weight-mgmt",
            "name": "Nutrition Coaching Session",
            "base_price": "60.00",
            "acceptance_rates": {"default": 0.25},
            "merchandising_priority": 4,
            "tags": ["coaching", "nutrition"],
        },
        {
            "product_id": "orlistat-legacy",
            "category_id": "weight-mgmt",
            "name": "Orlistat (discontinued)",
            "base_price": "80.00",
            "active": False,
            "subscription_duration_ids": ["monthly"],
        },
        {
            "product_id": "finasteride-1",
            "category_id": "hair-loss",
            "name": "Finasteride",
            "base_price": "30.00",
            "subscription_duration_ids": ["monthly", "quarterly"],
            "cross_sell": {"weight-mgmt": 0.2},
            "acceptance_rates": {"default": 0.15},
            "merchandising_priority": 5,
            "tags": ["hair"],
        },
    ],
    "pricing_rules": [
        {
            "rule_id": "wm-monthly-10",
            "scope_type": "category",
            "scope_id": "weight-mgmt",
            "subscription_duration_id": "monthly",
            "discount_type": "percentage",
            "discount_value": "0.10",
            "priority": 10,
        },
        {
            "rule_id": "wm-quarterly-15",
            "scope_type": "category",
            "scope_id": "weight-mgmt",
            "subscription_duration_id": "quarterly",
            "discount_type": "percentage",
            "discount_value": "0.15",
            "priority": 10,
        },
    ],
    "form_templates": [
        {
            "template_id": "weight-intake-v1",
            "field_ids": [
                "full_name",
                "date_of_birth",
                "current_weight",
                "height",
                "allergies",
                "medications",
                "pregnant",
                "pregnancy_due_date",
                "glp1_history",
            ],
        },
        {
            "template_id": "hair-intake-v1",
            "field_ids": ["full_name", "date_of_birth", "allergies", "scalp_condition"],
        },
    ],
    "form_mappings": {
        "categories": {
            "weight-mgmt": {
                "form_template_id": "weight-intake-v1",
                "required_field_ids": ["full_name", "date_of_birth", "current_weight", "allergies"],
                "conditional_rules": [
                    {
                        "field_id": "pregnancy_due_date",
                        "condition": {"field": "pregnant", "operator": "equals", "value": "yes"},
                        "effect": "require",
                    }
                ],
            },
            "hair-loss": {
                "form_template_id": "hair-intake-v1",
                "required_field_ids": ["full_name", "allergies"],
            },
        },
        "products": {
            "tirzepatide-1": {
                "required_field_ids": ["full_name", "date_of_birth", "current_weight", "allergies", "glp1_history"],
            },
        },
    },
}


def demo_catalog_data() -> dict[str, Any]:
    return copy.deepcopy(DEMO_CATALOG)


def demo_catalog() -> CatalogReadModel:
    return CatalogReadModel.from_dict(demo_catalog_data())
