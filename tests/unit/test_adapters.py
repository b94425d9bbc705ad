"""
Unit tests for the draft adapter (dealcrm/engine/adapters.py).
"""

import copy
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from dealcrm.config import config
from dealcrm.engine.adapters import (
    LegacyFormAdapter, NormalizedDraftAdapter, adapter_for, draft_to_create_payload,
    draft_to_form_dict, draft_to_update_payload, entity_to_draft,
)
from dealcrm.engine.normalize import to_canonical_line_item
from dealcrm.models import Deal, DealDraft, LineItem, Loaner, LoanerForm, Transaction

UPDATED = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

DEAL_ROW = {
    'id': 7,
    'job_number': 'J-7',
    'title': 'Deal J-7',
    'status': 'scheduled',
    'customer_needs_loaner': True,
    'loaner_number': 'L-4',
    'loaner_eta_return_date': '2026-10-10',
    'updated_at': UPDATED,
    'transactions': [{'customer_name': 'Dana Reyes', 'customer_phone': '+15551234567',
                      'tax_amount': '8.25'}],
    'job_parts': [
        {'product_id': 'p1', 'unit_price': '120', 'quantity_used': 1, 'promised_date': '2026-10-12'},
        {'productId': 'p2', 'price': 40, 'requiresScheduling': False, 'noScheduleReason': 'walk-in'},
    ],
}


# ---------------------------------------------------------------------------
# entity_to_draft
# ---------------------------------------------------------------------------

@pytest.mark.parametrize('entity', [None, {}, 'garbage'])
def test_empty_input_gives_blank_draft(entity):
    draft = entity_to_draft(entity)
    assert isinstance(draft, DealDraft)
    assert draft.line_items == []
    assert draft.customer_needs_loaner is False
    assert draft.loaner_form == LoanerForm()


def test_row_mapping_to_draft():
    draft = entity_to_draft(DEAL_ROW)
    assert draft.id == 7
    assert draft.status == 'scheduled'
    assert draft.customer_name == 'Dana Reyes'
    assert draft.tax_amount == Decimal('8.25')
    assert draft.updated_at == UPDATED
    assert [i.product_id for i in draft.line_items] == ['p1', 'p2']
    assert draft.line_items[1].no_schedule_reason == 'walk-in'


def test_loaner_form_from_flat_fields():
    form = entity_to_draft(DEAL_ROW).loaner_form
    assert form == LoanerForm(loaner_number='L-4', eta_return_date='2026-10-10', notes='')


def test_loaner_ignored_when_flag_off():
    row = dict(DEAL_ROW, customer_needs_loaner=False)
    assert entity_to_draft(row).loaner_form == LoanerForm()


@pytest.mark.parametrize('flag', ['false', 'False', '0', 'no'])
def test_loaner_flag_strings_read_as_false(flag):
    row = dict(DEAL_ROW, customer_needs_loaner=flag)
    draft = entity_to_draft(row)
    assert draft.customer_needs_loaner is False
    assert draft.loaner_form == LoanerForm()


def test_loaner_flag_string_true():
    assert entity_to_draft(dict(DEAL_ROW, customer_needs_loaner='true')).customer_needs_loaner is True


def test_entity_is_not_mutated():
    row = copy.deepcopy(DEAL_ROW)
    entity_to_draft(row)
    assert row == DEAL_ROW


def test_deal_to_draft():
    deal = Deal(
        id=3, title='Custom', customer_needs_loaner=True,
        loaner=Loaner(loaner_number='L-9', eta_return_date=None, notes=None),
        transaction=Transaction(customer_name='Sam', tax_amount=Decimal('3')),
        line_items=[LineItem(product_id='p1', unit_price=Decimal('9'))],
    )
    draft = entity_to_draft(deal)
    assert draft.loaner_form == LoanerForm(loaner_number='L-9', eta_return_date='', notes='')
    assert draft.customer_phone == ''
    assert draft.tax_amount == Decimal('3')
    assert draft.line_items[0] is not deal.line_items[0]


def test_nested_loaner_form_mapping():
    draft = entity_to_draft({'customerNeedsLoaner': True,
                             'loanerForm': {'loaner_number': 'L-1', 'notes': 'keys at desk'}})
    assert draft.loaner_form.loaner_number == 'L-1'
    assert draft.loaner_form.notes == 'keys at desk'


def test_toggle_loaner_off_clears_form():
    draft = entity_to_draft(DEAL_ROW)
    draft.set_customer_needs_loaner(False)
    assert draft.loaner_form == LoanerForm()


# ---------------------------------------------------------------------------
# draft_to_create_payload
# ---------------------------------------------------------------------------

def test_create_payload_normalizes_phone():
    payload = draft_to_create_payload(DealDraft(customer_phone='(555) 123-4567'))
    assert payload.transaction['customer_phone'] == '+15551234567'


def test_create_payload_loaner_requires_flag_and_number():
    draft = DealDraft(customer_needs_loaner=True, loaner_form=LoanerForm(loaner_number='   '))
    assert draft_to_create_payload(draft).loaner is None

    draft.loaner_form.loaner_number = ' L-3 '
    payload = draft_to_create_payload(draft)
    assert payload.loaner.loaner_number == 'L-3'
    assert payload.deal['loaner_number'] == 'L-3'


def test_create_payload_loaner_none_when_flag_off():
    draft = DealDraft(customer_needs_loaner=False, loaner_form=LoanerForm(loaner_number='L-3'))
    payload = draft_to_create_payload(draft)
    assert payload.loaner is None
    assert payload.deal['loaner_number'] is None


def test_create_payload_drops_items_without_product():
    draft = DealDraft(line_items=[LineItem(product_id='p1'), LineItem(product_id='  ')])
    assert [i.product_id for i in draft_to_create_payload(draft).line_items] == ['p1']


def test_create_payload_canonicalizes_each_item_once():
    draft = DealDraft(line_items=[LineItem(product_id='p1'), LineItem(product_id=''),
                                  LineItem(product_id='p2')])
    with patch('dealcrm.engine.adapters.to_canonical_line_item',
               wraps=to_canonical_line_item) as canonical:
        payload = draft_to_create_payload(draft)
    assert canonical.call_count == 3
    assert [i.product_id for i in payload.line_items] == ['p1', 'p2']


def test_create_payload_scheduling_exclusivity():
    draft = DealDraft(line_items=[
        LineItem(product_id='p1', requires_scheduling=True, promised_date='2026-10-20',
                 no_schedule_reason='stale reason'),
        LineItem(product_id='p2', requires_scheduling=False, promised_date='2026-10-21',
                 scheduled_start_time='2026-10-21T09:00:00Z', no_schedule_reason='walk-in'),
    ])
    scheduled, unscheduled = draft_to_create_payload(draft).line_items
    assert scheduled.no_schedule_reason is None
    assert scheduled.promised_date == '2026-10-20'
    assert unscheduled.promised_date is None
    assert unscheduled.scheduled_start_time is None
    assert unscheduled.no_schedule_reason == 'walk-in'


def test_create_payload_does_not_mutate_draft():
    draft = DealDraft(customer_phone='555 123 4567',
                      line_items=[LineItem(product_id='p1', no_schedule_reason='x')])
    before = copy.deepcopy(draft)
    draft_to_create_payload(draft)
    assert draft == before


def test_create_payload_carries_draft_id():
    draft = DealDraft()
    assert draft_to_create_payload(draft).draft_id == draft.draft_id


# ---------------------------------------------------------------------------
# draft_to_update_payload
# ---------------------------------------------------------------------------

def test_update_payload_from_deal_carries_marker():
    deal = Deal(id=7, updated_at=UPDATED)
    payload = draft_to_update_payload(deal, entity_to_draft(deal))
    assert payload.id == 7
    assert payload.expected_updated_at == UPDATED


def test_update_payload_from_bare_id_uses_draft_marker():
    draft = entity_to_draft(DEAL_ROW)
    payload = draft_to_update_payload(7, draft)
    assert payload.id == 7
    assert payload.expected_updated_at == UPDATED


def test_update_payload_from_mapping():
    payload = draft_to_update_payload({'id': 'abc', 'updated_at': 'marker'}, DealDraft())
    assert payload.id == 'abc'
    assert payload.expected_updated_at == 'marker'


# ---------------------------------------------------------------------------
# draft_to_form_dict
# ---------------------------------------------------------------------------

def test_form_dict_has_both_spellings():
    draft = entity_to_draft(DEAL_ROW)
    form = draft_to_form_dict(draft)
    assert form['lineItems'][0]['productId'] == form['line_items'][0]['product_id'] == 'p1'
    assert form['loanerForm'] == form['loaner_form']
    assert form['customer_mobile'] == draft.customer_phone
    assert form['customerNeedsLoaner'] is True


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def test_adapter_for_names():
    assert isinstance(adapter_for('normalized'), NormalizedDraftAdapter)
    assert isinstance(adapter_for(' LEGACY '), LegacyFormAdapter)


def test_adapter_for_unknown_raises():
    with pytest.raises(ValueError, match='deal adapter'):
        adapter_for('v3')


def test_adapter_for_default_comes_from_config(monkeypatch):
    monkeypatch.setattr(config, 'DEAL_ADAPTER', 'legacy')
    assert isinstance(adapter_for(), LegacyFormAdapter)


def test_normalized_draft_key_is_draft_id():
    draft = DealDraft()
    assert NormalizedDraftAdapter().draft_key(draft) == draft.draft_id


def test_normalized_draft_key_stable_for_same_mapping():
    adapter = NormalizedDraftAdapter()
    form = {'title': 'Deal 9', 'line_items': [{'product_id': 'p1', 'unit_price': '5'}]}
    assert adapter.draft_key(form) == adapter.draft_key(form)
    assert adapter.draft_key(form) != adapter.draft_key(dict(form))
    assert adapter.to_create_payload(form).draft_id == adapter.draft_key(form)


def test_normalized_draft_key_uses_posted_draft_id():
    assert NormalizedDraftAdapter().draft_key({'draft_id': 'sess-2'}) == 'sess-2'


def test_legacy_form_payload():
    form = {
        'customer_mobile': '5559876543',
        'customer_needs_loaner': True,
        'loaner_number': 'L-8',
        'assigned_to': 'staff-1',
        'items': [{'productId': 'p1', 'price': '15', 'promisedDate': '2026-10-30'}],
    }
    payload = LegacyFormAdapter().to_create_payload(form)
    assert payload.transaction['customer_phone'] == '+15559876543'
    assert payload.loaner.loaner_number == 'L-8'
    assert payload.deal['sales_consultant_id'] == 'staff-1'
    assert payload.line_items[0].unit_price == Decimal('15')


def test_legacy_draft_key_stable_for_same_form():
    adapter = LegacyFormAdapter()
    form = {'items': []}
    assert adapter.draft_key(form) == adapter.draft_key(form)
    assert adapter.draft_key({'draft_id': 'sess-1'}) == 'sess-1'
