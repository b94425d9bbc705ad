"""
Draft Adapter
Converts a persisted deal into an editable DealDraft and a draft back into a
DealPayload the deal service can write.

Two adapter strategies exist because two generations of deal form post
differently shaped data:

  NormalizedDraftAdapter  current form, works on DealDraft objects
  LegacyFormAdapter       older form, posts a flat dict (customer_mobile,
                          loaner_number, items, assigned_to, ...)

The deal service is handed one of them explicitly; adapter_for() resolves
the configured default.
"""

import dataclasses
import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Dict, List, Optional

from dealcrm.config import config
from dealcrm.engine.normalize import (
    clean_id, clean_text, normalize_phone, render_line_item,
    to_bool, to_canonical_line_item, to_decimal, to_iso_date,
)
from dealcrm.models import Deal, DealDraft, DealPayload, LineItem, Loaner, LoanerForm

logger = logging.getLogger(__name__)

_LINE_ITEM_COLLECTIONS = ('lineItems', 'line_items', 'job_parts', 'items')

# Deal-row columns filled from the draft
DEAL_COLUMNS = (
    'job_number', 'title', 'description', 'status', 'priority',
    'customer_needs_loaner', 'sales_consultant_id', 'finance_manager_id',
    'delivery_coordinator_id', 'vendor_id', 'vehicle_id',
    'loaner_number', 'loaner_eta_return_date', 'loaner_notes',
)


def _text(value: Any) -> str:
    return '' if value is None else str(value)


def _pick(source: Mapping, *keys, default=None):
    for key in keys:
        value = source.get(key)
        if value is not None:
            return value
    return default


def _loaner_form_from_mapping(entity: Mapping) -> LoanerForm:
    nested = entity.get('loanerForm') or entity.get('loaner_form') or entity.get('loaner')
    if isinstance(nested, Loaner):
        nested = dataclasses.asdict(nested)
    if isinstance(nested, LoanerForm):
        nested = dataclasses.asdict(nested)
    if isinstance(nested, Mapping):
        number = nested.get('loaner_number')
        eta = _pick(nested, 'eta_return_date', 'loaner_eta_return_date')
        notes = _pick(nested, 'notes', 'loaner_notes')
    else:
        number = entity.get('loaner_number')
        eta = _pick(entity, 'loaner_eta_return_date', 'eta_return_date')
        notes = entity.get('loaner_notes')
    return LoanerForm(
        loaner_number=_text(number),
        eta_return_date=to_iso_date(eta) or '',
        notes=_text(notes),
    )


def _transaction_from_mapping(entity: Mapping) -> Mapping:
    txn = entity.get('transaction')
    if txn is None:
        txns = entity.get('transactions')
        if isinstance(txns, list) and txns:
            txn = txns[0]
        elif isinstance(txns, Mapping):
            txn = txns
    if txn is not None and not isinstance(txn, Mapping):
        txn = dataclasses.asdict(txn)
    return txn or {}


def _line_items_from_mapping(entity: Mapping) -> List[LineItem]:
    raw_items = None
    for key in _LINE_ITEM_COLLECTIONS:
        if isinstance(entity.get(key), list):
            raw_items = entity[key]
            break
    return [to_canonical_line_item(item) for item in (raw_items or []) if item]


def _draft_from_mapping(entity: Mapping) -> DealDraft:
    txn = _transaction_from_mapping(entity)
    needs_loaner = to_bool(_pick(entity, 'customer_needs_loaner', 'customerNeedsLoaner'), False)
    draft = DealDraft(
        id=clean_id(entity.get('id')),
        job_number=_text(entity.get('job_number')),
        title=_text(entity.get('title')),
        description=_text(entity.get('description')),
        status=_pick(entity, 'status', 'job_status', default='pending'),
        priority=_pick(entity, 'priority', default='medium'),
        customer_needs_loaner=needs_loaner,
        loaner_form=_loaner_form_from_mapping(entity) if needs_loaner else LoanerForm(),
        sales_consultant_id=_text(_pick(entity, 'sales_consultant_id', 'assigned_to')),
        finance_manager_id=_text(entity.get('finance_manager_id')),
        delivery_coordinator_id=_text(entity.get('delivery_coordinator_id')),
        vendor_id=_text(entity.get('vendor_id')),
        vehicle_id=_text(entity.get('vehicle_id')),
        customer_name=_text(_pick(txn, 'customer_name') or entity.get('customer_name')),
        customer_phone=_text(_pick(txn, 'customer_phone')
                             or _pick(entity, 'customer_mobile', 'customer_phone')),
        customer_email=_text(_pick(txn, 'customer_email') or entity.get('customer_email')),
        spouse_name=_text(_pick(txn, 'spouse_name') or entity.get('spouse_name')),
        tax_amount=to_decimal(_pick(txn, 'tax_amount', default=entity.get('tax_amount')), Decimal('0')),
        notes=_text(_pick(txn, 'notes') or entity.get('notes')),
        line_items=_line_items_from_mapping(entity),
        updated_at=entity.get('updated_at'),
    )
    if entity.get('draft_id'):
        draft.draft_id = str(entity['draft_id'])
    return draft


def _draft_from_deal(deal: Deal) -> DealDraft:
    txn = deal.transaction
    loaner = deal.loaner
    if deal.customer_needs_loaner and loaner is not None:
        loaner_form = LoanerForm(
            loaner_number=_text(loaner.loaner_number),
            eta_return_date=to_iso_date(loaner.eta_return_date) or '',
            notes=_text(loaner.notes),
        )
    else:
        loaner_form = LoanerForm()
    return DealDraft(
        id=deal.id,
        job_number=_text(deal.job_number),
        title=_text(deal.title),
        description=_text(deal.description),
        status=deal.status or 'pending',
        priority=deal.priority or 'medium',
        customer_needs_loaner=bool(deal.customer_needs_loaner),
        loaner_form=loaner_form,
        sales_consultant_id=_text(deal.sales_consultant_id),
        finance_manager_id=_text(deal.finance_manager_id),
        delivery_coordinator_id=_text(deal.delivery_coordinator_id),
        vendor_id=_text(deal.vendor_id),
        vehicle_id=_text(deal.vehicle_id),
        customer_name=_text(txn.customer_name if txn else None),
        customer_phone=_text(txn.customer_phone if txn else None),
        customer_email=_text(txn.customer_email if txn else None),
        spouse_name=_text(txn.spouse_name if txn else None),
        tax_amount=txn.tax_amount if txn else Decimal('0'),
        notes=_text(txn.notes if txn else None),
        line_items=[to_canonical_line_item(item) for item in deal.line_items],
        updated_at=deal.updated_at,
    )


def entity_to_draft(entity: Any = None) -> DealDraft:
    """
    Build an editable draft from a persisted deal.

    `entity` may be a Deal, a raw mapping (DB row shape or older payload,
    line items under lineItems / line_items / job_parts / items), or
    None / {} for a blank draft. The entity is never modified.
    """
    if isinstance(entity, Deal):
        return _draft_from_deal(entity)
    if isinstance(entity, Mapping):
        return _draft_from_mapping(entity)
    return DealDraft()


def _coerce_draft(draft: Any) -> DealDraft:
    if isinstance(draft, DealDraft):
        return draft
    return entity_to_draft(draft)


def _payload_line_item(item: LineItem) -> LineItem:
    if item.requires_scheduling:
        item.no_schedule_reason = None
    else:
        item.promised_date = None
        item.scheduled_start_time = None
        item.scheduled_end_time = None
    return item


def _loaner_payload(draft: DealDraft) -> Optional[Loaner]:
    form = draft.loaner_form or LoanerForm()
    number = (form.loaner_number or '').strip()
    if not draft.customer_needs_loaner or not number:
        return None
    return Loaner(
        loaner_number=number,
        eta_return_date=to_iso_date(form.eta_return_date),
        notes=clean_text(form.notes),
    )


def draft_to_create_payload(draft: Any) -> DealPayload:
    """
    Turn a draft into a DealPayload for a new deal. The draft is not modified.

    - customer phone normalized to E.164
    - loaner payload only when the loaner flag is on AND a loaner number is given
    - rows without a product are dropped (the form keeps a blank trailing row)
    - scheduled items never carry a no-schedule reason; unscheduled items
      never carry a promised date or times
    """
    draft = _coerce_draft(draft)
    loaner = _loaner_payload(draft)

    deal = {
        'job_number': clean_text(draft.job_number),
        'title': clean_text(draft.title),
        'description': clean_text(draft.description),
        'status': draft.status or 'pending',
        'priority': draft.priority or 'medium',
        'customer_needs_loaner': bool(draft.customer_needs_loaner),
        'sales_consultant_id': clean_id(draft.sales_consultant_id),
        'finance_manager_id': clean_id(draft.finance_manager_id),
        'delivery_coordinator_id': clean_id(draft.delivery_coordinator_id),
        'vendor_id': clean_id(draft.vendor_id),
        'vehicle_id': clean_id(draft.vehicle_id),
        'loaner_number': loaner.loaner_number if loaner else None,
        'loaner_eta_return_date': loaner.eta_return_date if loaner else None,
        'loaner_notes': loaner.notes if loaner else None,
    }

    canonical = [to_canonical_line_item(item) for item in draft.line_items]
    line_items = [
        _payload_line_item(item) for item in canonical if clean_id(item.product_id) is not None
    ]
    dropped = len(draft.line_items) - len(line_items)
    if dropped:
        logger.debug(f"draft_to_create_payload: dropped {dropped} line item(s) without a product")

    transaction = {
        'customer_name': clean_text(draft.customer_name),
        'customer_phone': normalize_phone(draft.customer_phone),
        'customer_email': clean_text(draft.customer_email),
        'spouse_name': clean_text(draft.spouse_name),
        'tax_amount': to_decimal(draft.tax_amount, Decimal('0')),
        'notes': clean_text(draft.notes),
    }

    return DealPayload(
        deal=deal,
        loaner=loaner,
        line_items=line_items,
        transaction=transaction,
        draft_id=draft.draft_id,
    )


def draft_to_update_payload(original: Any, draft: Any) -> DealPayload:
    """
    As draft_to_create_payload, plus the deal id and its last-known
    updated_at marker for the optimistic-concurrency check.

    `original` may be the loaded Deal, its mapping, or just the deal id (the
    draft's own updated_at is carried in that case).
    """
    draft = _coerce_draft(draft)
    payload = draft_to_create_payload(draft)

    if isinstance(original, Deal):
        deal_id, marker = original.id, original.updated_at
    elif isinstance(original, Mapping):
        deal_id, marker = original.get('id'), original.get('updated_at')
    else:
        deal_id, marker = original, draft.updated_at

    payload.id = clean_id(deal_id) if deal_id is not None else draft.id
    payload.expected_updated_at = marker if marker is not None else draft.updated_at
    return payload


def draft_to_form_dict(draft: DealDraft) -> Dict[str, Any]:
    """
    Render a draft for the older form code, which reads both snake_case and
    camelCase spellings and a few legacy field names.
    """
    data = {f.name: getattr(draft, f.name) for f in dataclasses.fields(draft)
            if f.name not in ('loaner_form', 'line_items')}
    loaner = dataclasses.asdict(draft.loaner_form)
    items = [render_line_item(item, 'both') for item in draft.line_items]
    data.update({
        'loaner_form': loaner,
        'loanerForm': dict(loaner),
        'line_items': items,
        'lineItems': items,
        'items': [dict(item) for item in items],
        'customer_mobile': draft.customer_phone,
        'assigned_to': draft.sales_consultant_id,
        'customerNeedsLoaner': draft.customer_needs_loaner,
    })
    return data


# =============================================================================
# ADAPTER STRATEGIES
# =============================================================================

class DraftAdapter:
    """Strategy turning whatever a deal form posts into DealPayloads."""

    name = 'base'

    def draft_key(self, draft: Any) -> str:
        raise NotImplementedError

    def to_create_payload(self, draft: Any) -> DealPayload:
        raise NotImplementedError

    def to_update_payload(self, original: Any, draft: Any) -> DealPayload:
        raise NotImplementedError


def _form_draft(form: Mapping) -> DealDraft:
    draft = _draft_from_mapping(form)
    if not form.get('draft_id'):
        # No session token posted; the posted dict is the session
        draft.draft_id = f"form-{id(form)}"
    return draft


class NormalizedDraftAdapter(DraftAdapter):
    """Current deal form: posts DealDraft objects produced by entity_to_draft."""

    name = 'normalized'

    def _to_draft(self, draft: Any) -> DealDraft:
        if isinstance(draft, Mapping):
            return _form_draft(draft)
        return _coerce_draft(draft)

    def draft_key(self, draft: Any) -> str:
        return self._to_draft(draft).draft_id

    def to_create_payload(self, draft: Any) -> DealPayload:
        return draft_to_create_payload(self._to_draft(draft))

    def to_update_payload(self, original: Any, draft: Any) -> DealPayload:
        return draft_to_update_payload(original, self._to_draft(draft))


class LegacyFormAdapter(DraftAdapter):
    """
    Older deal form: posts one flat dict. Loaner fields sit at top level,
    the phone is customer_mobile, items may be under `items`.
    """

    name = 'legacy'

    def _to_draft(self, form: Any) -> DealDraft:
        if isinstance(form, DealDraft):
            return form
        if not isinstance(form, Mapping):
            return DealDraft()
        return _form_draft(form)

    def draft_key(self, draft: Any) -> str:
        return self._to_draft(draft).draft_id

    def to_create_payload(self, draft: Any) -> DealPayload:
        return draft_to_create_payload(self._to_draft(draft))

    def to_update_payload(self, original: Any, draft: Any) -> DealPayload:
        return draft_to_update_payload(original, self._to_draft(draft))


_ADAPTERS = {
    NormalizedDraftAdapter.name: NormalizedDraftAdapter,
    LegacyFormAdapter.name: LegacyFormAdapter,
}


def adapter_for(name: Optional[str] = None) -> DraftAdapter:
    """Adapter instance by name; defaults to config.DEAL_ADAPTER."""
    name = (name or config.DEAL_ADAPTER or 'normalized').strip().lower()
    if name not in _ADAPTERS:
        raise ValueError(f"Unknown deal adapter {name!r}; expected one of {sorted(_ADAPTERS)}")
    return _ADAPTERS[name]()
