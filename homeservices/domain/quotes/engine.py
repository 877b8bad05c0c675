"""
Quote engine - deterministic price calculation

Pure functions over a pricing-rule table. All money is integer cents and
every monetary step is rounded half-up to the cent before the next step:

    base -> deep/move-out multiplier -> minimum floor -> addons
         -> recurring discount -> tax -> total
"""

from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional, Union

from ...errors import InvalidQuantity, UnknownPricingRule

PER_UNIT = "PER_UNIT"
FLAT = "FLAT"
MULTIPLIER = "MULTIPLIER"
ADDON = "ADDON"
MINIMUM = "MINIMUM"

# Services whose subtotal is not taxed (wash & fold is a tax-exempt service in NY)
TAX_EXEMPT_SERVICES = {"LAUNDRY"}

DEFAULT_TAX_RATE = Decimal("0.08875")

# Multiplier rule keys by service, applied when the matching flag is set
MULTIPLIER_KEYS = {
    "CLEANING": {"deep": "CLN_DEEP_MULTI", "move_out": "CLN_MOVEOUT_MULTI"},
}

RECURRING_DISCOUNTS = {
    "WEEKLY": Decimal("0.20"),
    "BIWEEKLY": Decimal("0.15"),
    "MONTHLY": Decimal("0.10"),
}

Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class PriceRule:
    """Engine-side view of a pricing rule row"""

    unit_key: str
    service_type: str
    unit_type: str
    unit_price_cents: Optional[int] = None
    multiplier: Optional[str] = None
    label: Optional[str] = None

    @classmethod
    def from_model(cls, rule) -> "PriceRule":
        return cls(
            unit_key=rule.unit_key,
            service_type=rule.service_type,
            unit_type=rule.unit_type,
            unit_price_cents=rule.unit_price_cents,
            multiplier=rule.multiplier,
            label=rule.label,
        )


@dataclass(frozen=True)
class QuoteFlags:
    deep: bool = False
    move_out: bool = False
    frequency: Optional[str] = None  # WEEKLY, BIWEEKLY, MONTHLY
    first_visit: bool = True


@dataclass
class QuoteBreakdown:
    service_type: str
    unit_key: str
    quantity: str
    base_cents: int
    multiplier: Optional[str]
    adjusted_base_cents: int
    minimum_cents: Optional[int]
    minimum_applied: bool
    addon_lines: list[dict] = field(default_factory=list)
    addons_cents: int = 0
    discount_pct: Optional[str] = None
    discount_cents: int = 0
    subtotal_cents: int = 0
    tax_rate: str = "0"
    tax_cents: int = 0
    total_cents: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def round_cents(value: Decimal) -> int:
    """Round a cent amount half-up to a whole cent"""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, pct: Number) -> int:
    """round_cents(amount × pct); pct is a fraction (0.15 = 15%)"""
    return round_cents(Decimal(amount_cents) * Decimal(str(pct)))


def build_rule_table(rules: Iterable) -> dict[str, PriceRule]:
    table = {}
    for rule in rules:
        if not isinstance(rule, PriceRule):
            rule = PriceRule.from_model(rule)
        table[rule.unit_key] = rule
    return table


def _to_decimal(quantity: Number) -> Decimal:
    try:
        value = Decimal(str(quantity))
    except (InvalidOperation, ValueError) as e:
        raise InvalidQuantity(f"Quantity is not a number: {quantity!r}") from e
    if not value.is_finite():
        raise InvalidQuantity(f"Quantity is not a number: {quantity!r}")
    return value


def _lookup(rules: Mapping[str, PriceRule], key: str, expected_type: str) -> PriceRule:
    rule = rules.get(key)
    if rule is None or rule.unit_type != expected_type:
        raise UnknownPricingRule(f"No {expected_type} pricing rule for key {key}")
    return rule


def _minimum_rule(rules: Mapping[str, PriceRule], service_type: str) -> Optional[PriceRule]:
    for rule in rules.values():
        if rule.unit_type == MINIMUM and rule.service_type == service_type:
            return rule
    return None


def compute_quote(
    rules: Mapping[str, PriceRule],
    unit_key: str,
    quantity: Number = 1,
    addon_keys: Iterable[str] = (),
    flags: Optional[QuoteFlags] = None,
    tax_rate: Optional[Number] = None,
    max_quantity: Optional[Number] = None,
) -> QuoteBreakdown:
    """
    Compute a quote for one line of service.

    Args:
        rules: unit_key -> PriceRule lookup table
        unit_key: PER_UNIT or FLAT rule for the base price
        quantity: measured quantity (lbs for laundry); ignored for FLAT tiers
        addon_keys: ADDON rule keys, each a flat fee
        flags: deep / move-out multipliers and recurring plan details
        tax_rate: overrides DEFAULT_TAX_RATE
        max_quantity: upper bound on the measured quantity

    Raises:
        UnknownPricingRule: unit, addon or multiplier key missing from the table
        InvalidQuantity: quantity <= 0 or above max_quantity
    """
    flags = flags or QuoteFlags()
    qty = _to_decimal(quantity)
    if qty <= 0:
        raise InvalidQuantity(f"Quantity must be positive, got {qty}")
    if max_quantity is not None and qty > _to_decimal(max_quantity):
        raise InvalidQuantity(f"Quantity {qty} exceeds maximum of {max_quantity}")

    rule = rules.get(unit_key)
    if rule is None or rule.unit_type not in (PER_UNIT, FLAT):
        raise UnknownPricingRule(f"No base pricing rule for key {unit_key}")
    service_type = rule.service_type

    # 1. base
    if rule.unit_type == PER_UNIT:
        base = round_cents(Decimal(rule.unit_price_cents) * qty)
    else:
        base = int(rule.unit_price_cents)

    # 2. multiplier; move-out supersedes deep
    multiplier = None
    keys = MULTIPLIER_KEYS.get(service_type, {})
    flag_name = "move_out" if flags.move_out else "deep" if flags.deep else None
    if flag_name:
        if flag_name not in keys:
            raise UnknownPricingRule(f"No {flag_name} multiplier for {service_type}")
        multiplier = _lookup(rules, keys[flag_name], MULTIPLIER).multiplier
    adjusted = round_cents(Decimal(base) * Decimal(multiplier)) if multiplier else base

    # 3. minimum charge
    minimum_rule = _minimum_rule(rules, service_type)
    minimum = minimum_rule.unit_price_cents if minimum_rule else None
    minimum_applied = minimum is not None and adjusted < minimum
    if minimum_applied:
        adjusted = minimum

    # 4. addons
    addon_lines = []
    for key in addon_keys:
        addon = _lookup(rules, key, ADDON)
        addon_lines.append(
            {"unit_key": key, "label": addon.label or key, "cents": int(addon.unit_price_cents)}
        )
    addons = sum(line["cents"] for line in addon_lines)
    subtotal = adjusted + addons

    # 5. recurring discount, never on the first visit
    discount_pct = None
    discount = 0
    if flags.frequency and not flags.first_visit:
        pct = RECURRING_DISCOUNTS.get(flags.frequency.upper())
        if pct is not None:
            discount_pct = pct
            discount = percent_of(subtotal, pct)
            subtotal -= discount

    # 6. tax
    rate = DEFAULT_TAX_RATE if tax_rate is None else Decimal(str(tax_rate))
    if service_type in TAX_EXEMPT_SERVICES:
        tax = 0
    else:
        tax = round_cents(Decimal(subtotal) * rate)

    # 7. total
    return QuoteBreakdown(
        service_type=service_type,
        unit_key=unit_key,
        quantity=str(qty),
        base_cents=base,
        multiplier=multiplier,
        adjusted_base_cents=adjusted,
        minimum_cents=minimum,
        minimum_applied=minimum_applied,
        addon_lines=addon_lines,
        addons_cents=addons,
        discount_pct=str(discount_pct) if discount_pct is not None else None,
        discount_cents=discount,
        subtotal_cents=subtotal,
        tax_rate=str(rate),
        tax_cents=tax,
        total_cents=subtotal + tax,
    )


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(int(cents))
    return f"{sign}${cents // 100:,}.{cents % 100:02d}"


def format_breakdown(breakdown: QuoteBreakdown) -> list[str]:
    """Human-readable lines for receipts and partner SMS"""
    lines = [f"Base ({breakdown.quantity} x {breakdown.unit_key}): {format_cents(breakdown.base_cents)}"]
    if breakdown.multiplier:
        lines.append(f"Service multiplier x{breakdown.multiplier}: {format_cents(breakdown.adjusted_base_cents)}")
    if breakdown.minimum_applied:
        lines.append(f"Minimum charge applied: {format_cents(breakdown.minimum_cents)}")
    for line in breakdown.addon_lines:
        lines.append(f"{line['label']}: {format_cents(line['cents'])}")
    if breakdown.discount_cents:
        lines.append(f"Recurring discount: -{format_cents(breakdown.discount_cents)}")
    lines.append(f"Subtotal: {format_cents(breakdown.subtotal_cents)}")
    if breakdown.tax_cents:
        lines.append(f"Tax: {format_cents(breakdown.tax_cents)}")
    lines.append(f"Total: {format_cents(breakdown.total_cents)}")
    return lines
