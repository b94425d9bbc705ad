"""
Aggregate Calculator
Summary values derived from a deal's line items: money totals, profit,
a one-line vehicle description and a single vendor label.
"""

import re
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from dealcrm.config import config
from dealcrm.engine.normalize import clean_text, to_canonical_line_item, to_decimal
from dealcrm.models import Deal, LineItem, Totals

MIXED_VENDOR_LABEL = 'Mixed'

# Titles the system generates on its own ("Deal 1042", "Deal ABC-7", "Untitled Deal").
# Heuristic only: a new auto-title format would be read as custom. Deal.title_is_custom overrides it.
GENERIC_TITLE_PATTERN = re.compile(r'^(Deal\s+[\w-]+|Untitled Deal)$', re.IGNORECASE)


def _items(items: Optional[Iterable[Any]]) -> List[LineItem]:
    return [to_canonical_line_item(item) for item in (items or [])]


def line_total(item: LineItem) -> Decimal:
    return item.unit_price * item.quantity


def total_amount(items: Optional[Iterable[Any]]) -> Decimal:
    """Σ unit_price × quantity. Removed items are simply absent from `items`."""
    return sum((line_total(item) for item in _items(items)), Decimal('0'))


def item_profit(item: Any) -> Decimal:
    """(price − cost) × quantity; cost defaults to 0."""
    item = to_canonical_line_item(item)
    return (item.unit_price - item.cost) * item.quantity


def total_profit(items: Optional[Iterable[Any]]) -> Decimal:
    return sum((item_profit(item) for item in _items(items)), Decimal('0'))


def calculate_totals(items: Optional[Iterable[Any]], tax_amount: Any = 0) -> Totals:
    """Subtotal, tax, total and profit for a set of line items."""
    canonical = _items(items)
    subtotal = sum((line_total(item) for item in canonical), Decimal('0'))
    tax = to_decimal(tax_amount, Decimal('0'))
    return Totals(
        subtotal=subtotal,
        tax_amount=tax,
        total_amount=subtotal + tax,
        profit=sum((item_profit(item) for item in canonical), Decimal('0')),
        item_count=len(canonical),
    )


def is_custom_title(title: Optional[str], title_is_custom: Optional[bool] = None) -> bool:
    if title_is_custom is not None:
        return bool(title_is_custom) and bool(title)
    if not title or not title.strip():
        return False
    return not GENERIC_TITLE_PATTERN.match(title.strip())


def _vehicle_parts(vehicle: Any) -> List[str]:
    if vehicle is None:
        return []
    if isinstance(vehicle, Mapping):
        values = [vehicle.get('year'), vehicle.get('make'), vehicle.get('model')]
    else:
        values = [getattr(vehicle, 'year', None), getattr(vehicle, 'make', None),
                  getattr(vehicle, 'model', None)]
    return [str(v) for v in values if v not in (None, '')]


def vehicle_description(deal: Any) -> str:
    """
    One human-readable vehicle line for a deal.

    A custom title is returned verbatim; a generic or empty title falls back
    to "{year} {make} {model}" (whichever parts exist); otherwise ''.
    Accepts a Deal or a mapping with title / vehicle(s) keys.
    """
    if deal is None:
        return ''
    if isinstance(deal, Deal):
        title, vehicle, override = deal.title, deal.vehicle, deal.title_is_custom
    elif isinstance(deal, Mapping):
        title = deal.get('title')
        vehicle = deal.get('vehicle') or deal.get('vehicles')
        override = deal.get('title_is_custom')
    else:
        return ''

    if is_custom_title(title, override):
        return title
    return ' '.join(_vehicle_parts(vehicle))


def vendor_label(
    items: Optional[Iterable[Any]],
    vendors: Optional[Dict[Any, str]] = None,
    fallback: Optional[str] = None,
) -> str:
    """
    Single vendor label for a deal, computed from its off-site line items.

    No off-site vendor  -> `fallback` (deal-level vendor name) or the "none" label
    One distinct vendor -> that vendor's name
    Several vendors     -> "Mixed"
    """
    names: Dict[Any, Optional[str]] = {}
    for item in _items(items):
        if not item.is_off_site or item.vendor_id is None:
            continue
        if item.vendor_id not in names or names[item.vendor_id] is None:
            names[item.vendor_id] = item.vendor_name

    if len(names) > 1:
        return MIXED_VENDOR_LABEL
    if len(names) == 1:
        vendor_id, item_name = next(iter(names.items()))
        known = (vendors or {}).get(vendor_id)
        return known or item_name or str(vendor_id)
    return clean_text(fallback) or config.VENDOR_NONE_LABEL


def deal_vendor_label(deal: Deal, vendors: Optional[Dict[Any, str]] = None) -> str:
    """vendor_label for a whole Deal, falling back to its deal-level vendor."""
    fallback = deal.vendor_name
    if fallback is None and deal.vendor_id is not None:
        fallback = (vendors or {}).get(deal.vendor_id)
    return vendor_label(deal.line_items, vendors=vendors, fallback=fallback)
