"""
Line-Item Validator
Reports every business-rule violation in a set of line items before anything
is written. Reports only: inputs are never changed.
"""

import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Dict, Iterable, List

from dealcrm.engine.normalize import to_canonical_line_item
from dealcrm.models import (
    DEAL_PRIORITIES, DEAL_STATUSES, FieldError, LineItem, ValidationResult,
)

logger = logging.getLogger(__name__)

EMPTY_LINE_ITEMS = 'EMPTY_LINE_ITEMS'
MISSING_PRODUCT = 'MISSING_PRODUCT'
INVALID_PRICE = 'INVALID_PRICE'
INVALID_QUANTITY = 'INVALID_QUANTITY'
VENDOR_REQUIRED = 'VENDOR_REQUIRED'
PROMISED_DATE_REQUIRED = 'PROMISED_DATE_REQUIRED'
SCHEDULING_REASON_REQUIRED = 'SCHEDULING_REASON_REQUIRED'
INVALID_STATUS = 'INVALID_STATUS'
INVALID_PRIORITY = 'INVALID_PRIORITY'

_MESSAGES = {
    EMPTY_LINE_ITEMS: 'A deal needs at least one line item',
    MISSING_PRODUCT: 'Select a product',
    INVALID_PRICE: 'Price must be greater than zero',
    INVALID_QUANTITY: 'Quantity must be at least 1',
    VENDOR_REQUIRED: 'Off-site items need a vendor',
    PROMISED_DATE_REQUIRED: 'Scheduled items need a promised date',
    SCHEDULING_REASON_REQUIRED: 'Give a reason why this item is not scheduled',
    INVALID_STATUS: 'Unknown deal status',
    INVALID_PRIORITY: 'Unknown deal priority',
}


def _error(field: str, code: str, index=None) -> FieldError:
    return FieldError(field=field, code=code, index=index, message=_MESSAGES[code])


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _item_errors(index: int, item: LineItem) -> List[FieldError]:
    errors = []
    if _blank(item.product_id):
        errors.append(_error('product_id', MISSING_PRODUCT, index))
    if item.unit_price <= Decimal('0'):
        errors.append(_error('unit_price', INVALID_PRICE, index))
    if item.quantity < 1:
        errors.append(_error('quantity', INVALID_QUANTITY, index))
    if item.is_off_site and _blank(item.vendor_id):
        errors.append(_error('vendor_id', VENDOR_REQUIRED, index))
    if item.requires_scheduling:
        if _blank(item.promised_date):
            errors.append(_error('promised_date', PROMISED_DATE_REQUIRED, index))
    elif _blank(item.no_schedule_reason):
        errors.append(_error('no_schedule_reason', SCHEDULING_REASON_REQUIRED, index))
    return errors


def validate_line_items(items: Iterable[Any]) -> ValidationResult:
    """
    Check a set of line items (LineItem objects or raw mappings).

    Returns ValidationResult(ok=True) or ok=False with one FieldError per
    violation, each tagged with the item's index and field.
    """
    canonical = [to_canonical_line_item(item) for item in (items or [])]
    if not canonical:
        return ValidationResult(ok=False, errors=[_error('line_items', EMPTY_LINE_ITEMS)])

    errors = []
    for index, item in enumerate(canonical):
        errors.extend(_item_errors(index, item))

    if errors:
        logger.debug(f"validate_line_items: {len(errors)} error(s) across {len(canonical)} items")
        return ValidationResult(ok=False, errors=errors)
    return ValidationResult(ok=True)


def validate_deal_fields(deal: Mapping) -> ValidationResult:
    """Check deal-level enumerations (status, priority) of a deal column dict."""
    errors = []
    status = deal.get('status')
    if status is not None and status not in DEAL_STATUSES:
        errors.append(_error('status', INVALID_STATUS))
    priority = deal.get('priority')
    if priority is not None and priority not in DEAL_PRIORITIES:
        errors.append(_error('priority', INVALID_PRIORITY))
    return ValidationResult(ok=not errors, errors=errors)


def errors_by_index(result: ValidationResult) -> Dict[Any, List[FieldError]]:
    """Group errors per line-item index (None for deal-level errors) for form highlighting."""
    grouped: Dict[Any, List[FieldError]] = {}
    for error in result.errors:
        grouped.setdefault(error.index, []).append(error)
    return grouped
