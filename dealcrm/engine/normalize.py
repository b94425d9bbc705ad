"""
Field Normalizer
Turns loosely-keyed line items (form rows, legacy payloads, DB rows) into one
canonical LineItem, and renders canonical items back out at the edge.

Everything here is pure and total: malformed input degrades to defaults,
nothing raises, inputs are never mutated.
"""

import dataclasses
import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from dealcrm.models import LineItem

# Alternate spellings per concept, first present (non-None) key wins
_PRODUCT_KEYS = ('product_id', 'productId')
_PRICE_KEYS = ('unit_price', 'unitPrice', 'price')
_QUANTITY_KEYS = ('quantity_used', 'quantity', 'qty', 'quantityUsed')
_COST_KEYS = ('cost', 'unit_cost', 'unitCost')
_OFF_SITE_KEYS = ('is_off_site', 'isOffSite')
_VENDOR_KEYS = ('vendor_id', 'vendorId')
_VENDOR_NAME_KEYS = ('vendor_name', 'vendorName')
_PRODUCT_NAME_KEYS = ('product_name', 'productName')
_SCHEDULING_KEYS = ('requires_scheduling', 'requiresScheduling')
_PROMISED_KEYS = ('promised_date', 'promisedDate', 'lineItemPromisedDate', 'dateScheduled')
_REASON_KEYS = ('no_schedule_reason', 'noScheduleReason')
_START_KEYS = ('scheduled_start_time', 'scheduledStartTime')
_END_KEYS = ('scheduled_end_time', 'scheduledEndTime')

# snake_case field -> camelCase alias, used only when rendering for old callers
_CAMEL = {
    'id': 'id',
    'deal_id': 'dealId',
    'product_id': 'productId',
    'product_name': 'productName',
    'unit_price': 'unitPrice',
    'cost': 'cost',
    'quantity': 'quantity',
    'is_off_site': 'isOffSite',
    'vendor_id': 'vendorId',
    'vendor_name': 'vendorName',
    'requires_scheduling': 'requiresScheduling',
    'promised_date': 'promisedDate',
    'no_schedule_reason': 'noScheduleReason',
    'scheduled_start_time': 'scheduledStartTime',
    'scheduled_end_time': 'scheduledEndTime',
}

# Columns written to the line_items table
LINE_ITEM_COLUMNS = (
    'deal_id', 'product_id', 'unit_price', 'cost', 'quantity', 'is_off_site',
    'vendor_id', 'requires_scheduling', 'promised_date', 'no_schedule_reason',
    'scheduled_start_time', 'scheduled_end_time',
)

_ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}')
_TRUE_STRINGS = {'true', '1', 'yes', 'y', 'on'}
_FALSE_STRINGS = {'false', '0', 'no', 'n', 'off', ''}


def _first(raw: Mapping, keys) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _has_any(raw: Mapping, keys) -> bool:
    return any(raw.get(key) is not None for key in keys)


def to_decimal(value: Any, default: Decimal) -> Decimal:
    """Coerce to a finite Decimal; anything else becomes `default`."""
    if value is None or isinstance(value, bool):
        return default
    try:
        if isinstance(value, float):
            result = Decimal(str(value))
        else:
            result = Decimal(str(value).strip()) if isinstance(value, str) else Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return default
    if not result.is_finite():
        return default
    return result


def to_quantity(value: Any, default: int = 1) -> int:
    number = to_decimal(value, Decimal(default))
    return int(number)


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        return default
    return bool(value)


def clean_id(value: Any) -> Any:
    """Blank strings become None; other ids (int, UUID) pass through."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_iso_date(value: Any) -> Optional[str]:
    """Render a date as YYYY-MM-DD; timestamps are cut to their date part."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    if _ISO_DATE_RE.match(text):
        return text[:10]
    return text


def to_timestamp(value: Any) -> Optional[str]:
    """
    Canonicalize a schedule timestamp so equal instants compare equal.
    Aware values are rendered in UTC with a trailing Z; unparsable strings
    are returned trimmed.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        candidate = text.replace(' ', 'T', 1) if re.match(r'^\d{4}-\d{2}-\d{2} ', text) else text
        if candidate.endswith('Z'):
            candidate = candidate[:-1] + '+00:00'
        elif re.search(r'[+-]\d{2}$', candidate):
            candidate += ':00'
        try:
            value = datetime.fromisoformat(candidate)
        except ValueError:
            return text
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(timezone.utc).replace(tzinfo=None).isoformat() + 'Z'


def to_canonical_line_item(raw: Any) -> LineItem:
    """
    Build a canonical LineItem from any accepted spelling of its fields.

    `raw` may be a LineItem, a mapping in DB-row, form or legacy shape, or
    garbage (which yields a default LineItem).
    """
    if isinstance(raw, LineItem):
        raw = dataclasses.asdict(raw)
    if not isinstance(raw, Mapping):
        return LineItem()

    is_off_site = _first(raw, _OFF_SITE_KEYS)
    if is_off_site is None:
        is_off_site = str(raw.get('service_location') or '').lower() in ('offsite', 'off_site', 'off-site')
    else:
        is_off_site = to_bool(is_off_site, False)

    promised_date = to_iso_date(_first(raw, _PROMISED_KEYS))
    reason = clean_text(_first(raw, _REASON_KEYS))

    if _has_any(raw, _SCHEDULING_KEYS):
        requires_scheduling = to_bool(_first(raw, _SCHEDULING_KEYS), True)
    else:
        # Older rows carry no flag; a reason without a date means "not scheduled"
        requires_scheduling = not (reason and not promised_date)

    vendor = raw.get('vendor')
    vendor_name = clean_text(_first(raw, _VENDOR_NAME_KEYS))
    if vendor_name is None and isinstance(vendor, Mapping):
        vendor_name = clean_text(vendor.get('name'))

    product = raw.get('products') or raw.get('product')
    product_name = clean_text(_first(raw, _PRODUCT_NAME_KEYS))
    if product_name is None and isinstance(product, Mapping):
        product_name = clean_text(product.get('name'))

    created_at = raw.get('created_at')

    return LineItem(
        id=clean_id(raw.get('id')),
        deal_id=clean_id(_first(raw, ('deal_id', 'dealId', 'job_id'))),
        product_id=clean_id(_first(raw, _PRODUCT_KEYS)),
        product_name=product_name,
        unit_price=to_decimal(_first(raw, _PRICE_KEYS), Decimal('0')),
        cost=to_decimal(_first(raw, _COST_KEYS), Decimal('0')),
        quantity=to_quantity(_first(raw, _QUANTITY_KEYS)),
        is_off_site=is_off_site,
        vendor_id=clean_id(_first(raw, _VENDOR_KEYS)),
        vendor_name=vendor_name,
        requires_scheduling=requires_scheduling,
        promised_date=promised_date,
        no_schedule_reason=reason,
        scheduled_start_time=to_timestamp(_first(raw, _START_KEYS)),
        scheduled_end_time=to_timestamp(_first(raw, _END_KEYS)),
        created_at=created_at if isinstance(created_at, datetime) else None,
    )


def render_line_item(item: LineItem, convention: str = 'snake') -> Dict[str, Any]:
    """
    Render a canonical item for an outside consumer.

    convention: 'snake' (DB/API), 'camel' (newer form code) or 'both'
    (older form code that reads either spelling).
    """
    if convention not in ('snake', 'camel', 'both'):
        raise ValueError(f"Unknown convention: {convention!r}")

    snake = {name: getattr(item, name) for name in _CAMEL}
    if convention == 'snake':
        return snake
    camel = {_CAMEL[name]: value for name, value in snake.items()}
    if convention == 'camel':
        return camel
    return {**snake, **camel}


def line_item_to_row(item: LineItem, deal_id: Any) -> Dict[str, Any]:
    """Column dict for inserting `item` into line_items under `deal_id`."""
    row = {name: getattr(item, name) for name in LINE_ITEM_COLUMNS if name != 'deal_id'}
    row['deal_id'] = deal_id
    return row


def normalize_phone(value: Any) -> str:
    """
    Normalize a phone number to E.164.

    '(555) 123-4567' -> '+15551234567'; '15551234567' -> '+15551234567';
    '+4982112345' stays as is; '' and None -> ''.
    """
    if value is None:
        return ''
    text = str(value).strip()
    digits = re.sub(r'\D', '', text)
    if not digits:
        return ''
    if text.startswith('+'):
        return f'+{digits}'
    if len(digits) == 10:
        return f'+1{digits}'
    return f'+{digits}'
