from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from flow_store.time_utils import parse_iso, utc_now

from .errors import MalformedPricingRule
from .models import PriceResult

DISCOUNT_TYPES = {"percentage", "fixed_amount"}
SCOPE_TYPES = {"category", "product"}

# Minor-unit exponent per ISO 4217 currency.
CURRENCY_EXPONENTS = {"USD": 2, "EUR": 2, "GBP": 2, "CAD": 2, "AUD": 2, "JPY": 0, "KRW": 0}
DEFAULT_EXPONENT = 2


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps binary float noise out of the decimal.
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise MalformedPricingRule(f"Not a monetary amount: {value!r}") from exc


def quantize_money(amount: Decimal, currency: str = "USD") -> Decimal:
    exponent = CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)
    return amount.quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingRule:
    rule_id: str
    scope_type: str
    scope_id: str
    discount_type: str
    discount_value: Decimal
    priority: int = 100
    subscription_duration_id: str | None = None
    stackable: bool = False
    is_default: bool = False
    effective_from: datetime | None = None
    effective_to: datetime | None = None

    def __post_init__(self) -> None:
        if self.scope_type not in SCOPE_TYPES:
            raise MalformedPricingRule(f"Rule {self.rule_id}: unknown scope type {self.scope_type!r}")
        if self.discount_type not in DISCOUNT_TYPES:
            raise MalformedPricingRule(f"Rule {self.rule_id}: unknown discount type {self.discount_type!r}")
        if self.discount_value < 0:
            raise MalformedPricingRule(f"Rule {self.rule_id}: discount value must not be negative")
        if self.discount_type == "percentage" and self.discount_value > 1:
            raise MalformedPricingRule(f"Rule {self.rule_id}: percentage discounts are fractions in [0, 1]")
        if self.effective_from and self.effective_to and self.effective_to < self.effective_from:
            raise MalformedPricingRule(f"Rule {self.rule_id}: effective window ends before it starts")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PricingRule":
        try:
            return cls(
                rule_id=str(data["rule_id"]),
                scope_type=str(data.get("scope_type", "product")),
                scope_id=str(data["scope_id"]),
                discount_type=str(data["discount_type"]),
                discount_value=to_decimal(data["discount_value"]),
                priority=int(data.get("priority", 100)),
                subscription_duration_id=data.get("subscription_duration_id"),
                stackable=bool(data.get("stackable", False)),
                is_default=bool(data.get("is_default", False)),
                effective_from=parse_iso(data.get("effective_from")),
                effective_to=parse_iso(data.get("effective_to")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPricingRule(f"Malformed pricing rule: {data!r}") from exc

    def is_effective(self, now: datetime) -> bool:
        if self.effective_from and now < self.effective_from:
            return False
        if self.effective_to and now >= self.effective_to:
            return False
        return True

    def apply(self, price: Decimal) -> Decimal:
        if self.discount_type == "percentage":
            return price * (Decimal(1) - self.discount_value)
        return price - self.discount_value


def validate_rule_set(rules: Iterable[PricingRule]) -> None:
    """Reject duplicate rule ids and more than one default rule per scope."""
    seen_ids: set[str] = set()
    defaults: dict[tuple[str, str], str] = {}
    for rule in rules:
        if rule.rule_id in seen_ids:
            raise MalformedPricingRule(f"Duplicate pricing rule id: {rule.rule_id}")
        seen_ids.add(rule.rule_id)
        if not rule.is_default:
            continue
        scope = (rule.scope_type, rule.scope_id)
        if scope in defaults:
            raise MalformedPricingRule(
                f"Scope {rule.scope_type}:{rule.scope_id} has more than one default rule "
                f"({defaults[scope]}, {rule.rule_id})"
            )
        defaults[scope] = rule.rule_id


class PricingEngine:
    """Pure price computation. Reads nothing, writes nothing."""

    def matching_rules(
        self,
        product_id: str,
        subscription_duration_id: str | None,
        rules: Iterable[PricingRule],
        *,
        category_id: str | None,
        now: datetime,
    ) -> list[PricingRule]:
        matched = []
        for rule in rules:
            if rule.scope_type == "product" and rule.scope_id != product_id:
                continue
            if rule.scope_type == "category" and (category_id is None or rule.scope_id != category_id):
                continue
            if rule.subscription_duration_id is not None and rule.subscription_duration_id != subscription_duration_id:
                continue
            if not rule.is_effective(now):
                continue
            matched.append(rule)
        # Product-scoped rules win ties over category-scoped ones; rule id keeps the order total.
        matched.sort(key=lambda rule: (rule.priority, 0 if rule.scope_type == "product" else 1, rule.rule_id))
        return matched

    def compute_price(
        self,
        product_id: str,
        base_price: Any,
        subscription_duration_id: str | None = None,
        applicable_rules: Iterable[PricingRule] = (),
        *,
        category_id: str | None = None,
        now: datetime | None = None,
        currency: str = "USD",
    ) -> PriceResult:
        base = quantize_money(to_decimal(base_price), currency)
        if base < 0:
            raise MalformedPricingRule(f"Product {product_id} has a negative base price")
        moment = now or utc_now()
        matched = self.matching_rules(
            product_id,
            subscription_duration_id,
            applicable_rules,
            category_id=category_id,
            now=moment,
        )
        stackable = [rule for rule in matched if rule.stackable]
        to_apply = stackable if stackable else matched[:1]

        price = base
        clamped = False
        for rule in to_apply:
            price = rule.apply(price)
            if price < 0:
                price = Decimal(0)
                clamped = True

        final_price = quantize_money(price, currency)
        return PriceResult(
            product_id=product_id,
            currency=currency.upper(),
            base_price=base,
            final_price=final_price,
            discount_amount=quantize_money(base - final_price, currency),
            applied_rule_ids=tuple(rule.rule_id for rule in to_apply),
            clamped_to_zero=clamped,
            subscription_duration_id=subscription_duration_id,
        )
