from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable

from .errors import MalformedCatalog
from .forms import FormMapping, FormTemplate
from .pricing import PricingRule, to_decimal, validate_rule_set


@dataclass(frozen=True)
class Category:
    category_id: str
    name: str
    active: bool = True


@dataclass(frozen=True)
class SubscriptionDuration:
    duration_id: str
    name: str
    months: int = 1
    active: bool = True


@dataclass(frozen=True)
class Product:
    product_id: str
    category_id: str
    name: str
    base_price: Decimal
    currency: str = "USD"
    active: bool = True
    subscription_duration_ids: tuple[str, ...] = ()
    cross_sell: dict[str, float] = field(default_factory=dict)
    acceptance_rates: dict[str, float] = field(default_factory=dict)
    merchandising_priority: int = 0
    tags: tuple[str, ...] = ()

    @property
    def offers_subscription(self) -> bool:
        return bool(self.subscription_duration_ids)

    def cross_sell_affinity(self, category_id: str) -> float:
        return float(self.cross_sell.get(category_id, 0.0))


class CatalogReadModel:
    """Read-only view of categories, products, pricing rules and form mappings.

    Administrators own this data; the orchestrator only queries it.
    """

    def __init__(
        self,
        *,
        categories: Iterable[Category] = (),
        products: Iterable[Product] = (),
        durations: Iterable[SubscriptionDuration] = (),
        pricing_rules: Iterable[PricingRule] = (),
        form_templates: Iterable[FormTemplate] = (),
        category_form_mappings: dict[str, FormMapping] | None = None,
        product_form_mappings: dict[str, FormMapping] | None = None,
    ) -> None:
        self._categories = {category.category_id: category for category in categories}
        self._products = {product.product_id: product for product in products}
        self._durations = {duration.duration_id: duration for duration in durations}
        self._pricing_rules = list(pricing_rules)
        self.form_templates = {template.template_id: template for template in form_templates}
        self.category_form_mappings = dict(category_form_mappings or {})
        self.product_form_mappings = dict(product_form_mappings or {})
        validate_rule_set(self._pricing_rules)
        self._validate_references()

    def _validate_references(self) -> None:
        for product in self._products.values():
            if product.category_id not in self._categories:
                raise MalformedCatalog(f"Product {product.product_id} references unknown category {product.category_id}")
            unknown = [d for d in product.subscription_duration_ids if d not in self._durations]
            if unknown:
                raise MalformedCatalog(
                    f"Product {product.product_id} references unknown subscription durations: {', '.join(unknown)}"
                )

    def get_category(self, category_id: str) -> Category | None:
        return self._categories.get(category_id)

    def get_product(self, product_id: str) -> Product | None:
        return self._products.get(product_id)

    def get_duration(self, duration_id: str) -> SubscriptionDuration | None:
        return self._durations.get(duration_id)

    def products(self) -> list[Product]:
        return [self._products[key] for key in sorted(self._products)]

    def pricing_rules(self) -> list[PricingRule]:
        return list(self._pricing_rules)

    def with_pricing_rules(self, rules: Iterable[PricingRule]) -> "CatalogReadModel":
        return CatalogReadModel(
            categories=self._categories.values(),
            products=self._products.values(),
            durations=self._durations.values(),
            pricing_rules=rules,
            form_templates=self.form_templates.values(),
            category_form_mappings=self.category_form_mappings,
            product_form_mappings=self.product_form_mappings,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CatalogReadModel":
        try:
            categories = [
                Category(
                    category_id=str(item["category_id"]),
                    name=str(item.get("name") or item["category_id"]),
                    active=bool(item.get("active", True)),
                )
                for item in data.get("categories", [])
            ]
            durations = [
                SubscriptionDuration(
                    duration_id=str(item["duration_id"]),
                    name=str(item.get("name") or item["duration_id"]),
                    months=int(item.get("months", 1)),
                    active=bool(item.get("active", True)),
                )
                for item in data.get("subscription_durations", [])
            ]
            products = [
                Product(
                    product_id=str(item["product_id"]),
                    category_id=str(item["category_id"]),
                    name=str(item.get("name") or item["product_id"]),
                    base_price=to_decimal(item["base_price"]),
                    currency=str(item.get("currency", "USD")).upper(),
                    active=bool(item.get("active", True)),
                    subscription_duration_ids=tuple(item.get("subscription_duration_ids") or ()),
                    cross_sell={str(k): float(v) for k, v in (item.get("cross_sell") or {}).items()},
                    acceptance_rates={str(k): float(v) for k, v in (item.get("acceptance_rates") or {}).items()},
                    merchandising_priority=int(item.get("merchandising_priority", 0)),
                    tags=tuple(str(tag).lower() for tag in item.get("tags") or ()),
                )
                for item in data.get("products", [])
            ]
            templates = [
                FormTemplate(template_id=str(item["template_id"]), field_ids=tuple(item.get("field_ids") or ()))
                for item in data.get("form_templates", [])
            ]
            mappings = data.get("form_mappings") or {}
            category_mappings = {
                str(key): FormMapping.from_dict(value) for key, value in (mappings.get("categories") or {}).items()
            }
            product_mappings = {
                str(key): FormMapping.from_dict(value) for key, value in (mappings.get("products") or {}).items()
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedCatalog(f"Malformed catalog: {exc}") from exc
        rules = [PricingRule.from_dict(item) for item in data.get("pricing_rules", [])]
        return cls(
            categories=categories,
            products=products,
            durations=durations,
            pricing_rules=rules,
            form_templates=templates,
            category_form_mappings=category_mappings,
            product_form_mappings=product_mappings,
        )

    @classmethod
    def from_json_file(cls, path: str | Path) -> "CatalogReadModel":
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise MalformedCatalog(f"Catalog file is not readable: {path}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedCatalog(f"Catalog file is not valid JSON: {path}") from exc
        return cls.from_dict(data)
