from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any


_LOOKUP_KEY_RE = re.compile(r"[^a-z0-9]")
_PERIOD_KEY_RE = re.compile(r"[\s_-]+")
_ISO_DATE_PREFIX_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")

FREQUENCY_LABELS = {
    "Monthly": "monthly",
    "Quarterly": "quarterly",
    "Biannual": "per_six_months",
    "Annual": "annually",
}

# (product name, CRM product id, frequency label)
PRODUCT_FREQUENCY_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("Signature Plan", "2324781", "Monthly"),
    ("Pipeline Plan", "3065596", "Monthly"),
    ("Complete Plan", "3563937", "Monthly"),
    ("Discount Recurring", "26391830", "Annual"),
    ("Discount One-Time", "27215512", "Annual"),
    ("Other (reccurring)", "27663040", "Annual"),
    ("Other (one-time)", "27659258", "Annual"),
    ("Monthly Billing Fee 20%", "38999861", "Monthly"),
    ("Quarterly Billing Fee 10%", "39001604", "Quarterly"),
    ("SPF Flattening - Tier 1", "1084489515", "Annual"),
    ("Additional Domains", "1084337011", "Annual"),
    ("Opensense Signature Package", "1483161702", "Annual"),
    ("Opensense Pipeline Package", "1483153265", "Annual"),
    ("Opensense Complete Package", "1483153267", "Annual"),
    ("Platform License", "2081778700", "Monthly"),
    ("Platform License - Premium", "2082106010", "Monthly"),
    ("Platform License - Enterprise", "2081778701", "Monthly"),
    ("Compliance Plan", "3379735458", "Monthly"),
    ("Digital Business Cards", "16031140980", "Monthly"),
    ("Signature Lite Plan", "20145631887", "Monthly"),
    ("Discount - Volume", "25082565921", "Annual"),
    ("Discount - Competitive", "25082194576", "Annual"),
    ("Discount - Platform License", "25082194577", "Annual"),
    ("Discount - Case Study", "25082565922", "Annual"),
    ("Discount - Social Proof", "25082194579", "Annual"),
    ("Discount Sales Incentives", "25082194581", "Annual"),
    ("Discount - Events", "25082194582", "Annual"),
    ("Discount - Waived Fees", "25082565924", "Annual"),
    ("Bronze Engagement Plan", "33136518206", "Monthly"),
    ("Silver Engagement Plan", "33136456258", "Monthly"),
    ("Gold Engagement Plan", "33136518231", "Monthly"),
    ("Signature Plan - GCC High", "40915323994", "Monthly"),
    ("Pipeline Plan - GCC High", "40912561672", "Monthly"),
    ("Complete Plan - GCC High", "40912561673", "Monthly"),
    ("Bronze Engagement Plan - GCC High", "40912375845", "Monthly"),
    ("Silver Engagement Plan - GCC High", "40912375846", "Monthly"),
    ("Gold Engagement Plan - GCC High", "40912499776", "Monthly"),
)

BILLING_PERIOD_FREQUENCIES = {
    "annual": "annually",
    "monthly": "monthly",
    "quarterly": "quarterly",
    "biannual": "per_six_months",
    "endofterm": "annually",
    "weekly": "weekly",
    "everytwoweeks": "biweekly",
    "semiannually": "per_six_months",
    "annually": "annually",
    "everytwoyears": "per_two_years",
    "everythreeyears": "per_three_years",
    "everyfouryears": "per_four_years",
    "everyfiveyears": "per_five_years",
}


def normalize_lookup_key(value: str) -> str:
    return _LOOKUP_KEY_RE.sub("", value.lower())


def _build_product_lookup() -> dict[str, str]:
    lookup: dict[str, str] = {}
    for name, product_id, label in PRODUCT_FREQUENCY_OVERRIDES:
        lookup[normalize_lookup_key(name)] = FREQUENCY_LABELS[label]
        lookup[normalize_lookup_key(product_id)] = FREQUENCY_LABELS[label]
    lookup[normalize_lookup_key("Other (recurring)")] = "annually"
    return lookup


PRODUCT_FREQUENCY_LOOKUP = _build_product_lookup()


class ChargeRejected(ValueError):
    """A charge cannot be turned into a line item."""


@dataclass(slots=True)
class LineItemDraft:
    charge_identifier: str
    fingerprint: str
    properties: dict[str, str]
    amount: Decimal


def as_non_empty_string(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        candidate = Decimal(str(value))
    elif isinstance(value, str) and value.strip():
        try:
            candidate = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None
    return candidate if candidate.is_finite() else None


def format_decimal(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def parse_iso_date(value: str, field_name: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ChargeRejected(f"Invalid {field_name} value: {value}") from exc


def parse_date_like(value: str, field_name: str) -> date:
    """Parse an ISO date or datetime into its UTC calendar date."""
    trimmed = value.strip()
    match = _ISO_DATE_PREFIX_RE.match(trimmed)
    if match:
        return parse_iso_date(match.group(0), field_name)
    try:
        parsed = datetime.fromisoformat(trimmed.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ChargeRejected(f"Invalid {field_name}: {value}") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def date_to_epoch_ms(value: date) -> int:
    return int(datetime.combine(value, time.min, tzinfo=timezone.utc).timestamp() * 1000)


def add_one_year(value: date) -> date:
    try:
        return value.replace(year=value.year + 1)
    except ValueError:
        # Feb 29 rolls forward
        return date(value.year + 1, 3, 1)


def forecast_start_date(term_end_date: date) -> date:
    return term_end_date + timedelta(days=1)


def is_recurring_and_active(charge: dict[str, Any]) -> bool:
    charge_type = (as_non_empty_string(charge.get("chargeType")) or "").lower()
    change_state = (as_non_empty_string(charge.get("changeState")) or "").lower()
    return charge_type == "recurring" and change_state != "cancelled"


def charge_identifier(charge: dict[str, Any]) -> str | None:
    return (
        as_non_empty_string(charge.get("chargeId"))
        or as_non_empty_string(charge.get("id"))
        or as_non_empty_string(charge.get("chargeNumber"))
    )


def compute_fingerprint(subscription_id: str, term_end_date: date, charge: dict[str, Any]) -> str | None:
    identifier = charge_identifier(charge)
    if identifier is None:
        return None
    fingerprint = f"{subscription_id}:{term_end_date.isoformat()}:{identifier}"
    product_charge_id = as_non_empty_string(charge.get("chargeId"))
    order_charge_id = as_non_empty_string(charge.get("id"))
    if product_charge_id and order_charge_id and order_charge_id != product_charge_id:
        fingerprint = f"{fingerprint}:{order_charge_id}"
    return fingerprint


def find_price(charge: dict[str, Any]) -> Decimal | None:
    display_price = as_decimal(charge.get("displayPrice"))
    if display_price is not None:
        return display_price
    details = charge.get("priceDetails")
    if isinstance(details, list) and details and isinstance(details[0], dict):
        return as_decimal(details[0].get("price"))
    return None


def billing_period_frequency(value: Any) -> str | None:
    raw = as_non_empty_string(value)
    if raw is None:
        return None
    return BILLING_PERIOD_FREQUENCIES.get(_PERIOD_KEY_RE.sub("", raw.lower()))


def _product_candidates(charge: dict[str, Any]) -> list[str]:
    candidates = [
        as_non_empty_string(charge.get("name")),
        as_non_empty_string(charge.get("productName")),
        as_non_empty_string(charge.get("productId")),
        as_non_empty_string(charge.get("hubspotProductId")),
    ]
    product = charge.get("product")
    if isinstance(product, dict):
        candidates.append(as_non_empty_string(product.get("id")) or as_non_empty_string(product.get("name")))
    else:
        candidates.append(as_non_empty_string(product))
    return [candidate for candidate in candidates if candidate]


def recurring_frequency(charge: dict[str, Any]) -> str | None:
    period_key = normalize_lookup_key(as_non_empty_string(charge.get("billingPeriod")) or "")
    if period_key == "quarterly":
        return "quarterly"
    if period_key in {"biannual", "semiannually"}:
        return "per_six_months"

    for candidate in _product_candidates(charge):
        frequency = PRODUCT_FREQUENCY_LOOKUP.get(normalize_lookup_key(candidate))
        if frequency:
            return frequency

    return billing_period_frequency(charge.get("billingPeriod"))


def build_line_item(
    charge: dict[str, Any],
    subscription_id: str,
    term_end_date: date,
    property_names: dict[str, str],
) -> LineItemDraft:
    """Derive the CRM line item for one billing charge of a renewal.

    The forecast period starts the day after the term ends and keeps the
    source charge's duration (one year when the charge is open-ended).
    Raises ``ChargeRejected`` when a required field is missing or invalid.
    """
    fingerprint = compute_fingerprint(subscription_id, term_end_date, charge)
    if fingerprint is None:
        raise ChargeRejected("Skipping charge with missing chargeId/id/chargeNumber for fingerprint")

    charge_id = as_non_empty_string(charge.get("chargeId")) or as_non_empty_string(charge.get("id"))
    order_charge_id = as_non_empty_string(charge.get("id"))
    charge_number = as_non_empty_string(charge.get("chargeNumber"))
    charge_name = as_non_empty_string(charge.get("name")) or charge_number or charge_id or "Billing Charge"
    raw_quantity = as_decimal(charge.get("quantity"))
    quantity = raw_quantity if raw_quantity is not None and raw_quantity > 0 else Decimal(1)
    price = find_price(charge)
    start_raw = as_non_empty_string(charge.get("effectiveStartDate"))
    end_raw = as_non_empty_string(charge.get("effectiveEndDate"))
    frequency = recurring_frequency(charge)

    if not charge_id:
        raise ChargeRejected("Missing charge identifier (chargeId/id)")
    if not charge_number:
        raise ChargeRejected(f"Missing charge.chargeNumber for charge {charge_id}")
    if price is None:
        raise ChargeRejected(f"Missing price for charge {charge_id}")
    if not start_raw:
        raise ChargeRejected(f"Missing effectiveStartDate for charge {charge_id}")
    if not frequency:
        billing_period = as_non_empty_string(charge.get("billingPeriod")) or "<missing>"
        raise ChargeRejected(f'Unsupported billingPeriod "{billing_period}" for charge {charge_id}')

    source_start = parse_date_like(start_raw, f"effectiveStartDate for charge {charge_id}")
    forecast_start = forecast_start_date(term_end_date)
    if end_raw:
        source_end = parse_date_like(end_raw, f"effectiveEndDate for charge {charge_id}")
        if source_end < source_start:
            raise ChargeRejected(f"effectiveEndDate is before effectiveStartDate for charge {charge_id}")
        duration_days = (source_end - source_start).days + 1
        forecast_end = forecast_start + timedelta(days=max(duration_days - 1, 0))
    else:
        forecast_end = add_one_year(forecast_start) - timedelta(days=1)

    unit_price = price / quantity
    properties = {
        "name": charge_name,
        "quantity": format_decimal(quantity),
        "price": format_decimal(max(unit_price, Decimal(0))),
        "recurringbillingfrequency": frequency,
        property_names["hs_li_charge_effective_start_date_prop"]: str(date_to_epoch_ms(forecast_start)),
        property_names["hs_li_charge_effective_end_date_prop"]: forecast_end.isoformat(),
        property_names["hs_li_line_item_status_prop"]: "Existing",
        property_names["hs_li_order_product_charge_prop"]: charge_number,
        property_names["hs_li_start_on_prop"]: "alignToOrder",
        property_names["hs_li_end_on_prop"]: "alignToOrder",
        property_names["hs_li_fingerprint_prop"]: fingerprint,
        property_names["hs_li_charge_id_prop"]: charge_id,
        property_names["hs_li_order_charge_id_prop"]: order_charge_id or "",
    }
    if unit_price < 0:
        properties["discount"] = format_decimal(abs(unit_price))

    return LineItemDraft(charge_identifier=charge_id, fingerprint=fingerprint, properties=properties, amount=price)
