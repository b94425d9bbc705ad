"""
Data Models
Dataclasses for the deal aggregate. These are pure Python objects, no database logic.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

DEAL_STATUSES = ('pending', 'scheduled', 'in_progress', 'completed', 'cancelled')
DEAL_PRIORITIES = ('low', 'medium', 'high', 'urgent')


@dataclass
class Vehicle:
    """Vehicle the deal is written against (referenced, not owned)."""
    id: Optional[str] = None
    year: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    vin: Optional[str] = None
    stock_number: Optional[str] = None


@dataclass
class Loaner:
    """Loaner vehicle handed to the customer while the deal is serviced."""
    loaner_number: str = ''
    eta_return_date: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class LineItem:
    """One product/service sold on a deal (a row of line_items)."""
    id: Optional[str] = None
    deal_id: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    unit_price: Decimal = Decimal('0')
    cost: Decimal = Decimal('0')
    quantity: int = 1
    is_off_site: bool = False
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    requires_scheduling: bool = True
    promised_date: Optional[str] = None
    no_schedule_reason: Optional[str] = None
    scheduled_start_time: Optional[str] = None
    scheduled_end_time: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Transaction:
    """Financial record of a deal. Exactly one per deal once saved."""
    id: Optional[str] = None
    deal_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    spouse_name: Optional[str] = None
    subtotal: Decimal = Decimal('0')
    tax_amount: Decimal = Decimal('0')
    total_amount: Decimal = Decimal('0')
    notes: Optional[str] = None
    transaction_status: str = 'pending'
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Deal:
    """Aggregate root: one sales/service transaction tied to one vehicle."""
    id: Optional[str] = None
    job_number: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    status: str = 'pending'
    priority: str = 'medium'
    customer_needs_loaner: bool = False
    loaner: Optional[Loaner] = None
    sales_consultant_id: Optional[str] = None
    finance_manager_id: Optional[str] = None
    delivery_coordinator_id: Optional[str] = None
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    vehicle_id: Optional[str] = None
    vehicle: Optional[Vehicle] = None
    title_is_custom: Optional[bool] = None
    line_items: List[LineItem] = field(default_factory=list)
    transaction: Optional[Transaction] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class LoanerForm:
    """Loaner sub-form of a draft. Text inputs never see None."""
    loaner_number: str = ''
    eta_return_date: str = ''
    notes: str = ''

    def clear(self):
        self.loaner_number = ''
        self.eta_return_date = ''
        self.notes = ''


@dataclass
class DealDraft:
    """
    Editable, UI-owned copy of a deal for one edit session.

    draft_id identifies the edit session; the deal service uses it to
    recognise a double-submitted create.
    """
    id: Optional[str] = None
    job_number: str = ''
    title: str = ''
    description: str = ''
    status: str = 'pending'
    priority: str = 'medium'
    customer_needs_loaner: bool = False
    loaner_form: LoanerForm = field(default_factory=LoanerForm)
    sales_consultant_id: str = ''
    finance_manager_id: str = ''
    delivery_coordinator_id: str = ''
    vendor_id: str = ''
    vehicle_id: str = ''
    customer_name: str = ''
    customer_phone: str = ''
    customer_email: str = ''
    spouse_name: str = ''
    tax_amount: Decimal = Decimal('0')
    notes: str = ''
    line_items: List[LineItem] = field(default_factory=list)
    updated_at: Any = None
    draft_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def set_customer_needs_loaner(self, needs_loaner: bool):
        """Toggle the loaner flag; switching it off blanks the loaner form."""
        self.customer_needs_loaner = bool(needs_loaner)
        if not self.customer_needs_loaner:
            self.loaner_form.clear()


@dataclass
class DealPayload:
    """What the deal service writes: deal columns, loaner, line items, transaction columns."""
    deal: Dict[str, Any] = field(default_factory=dict)
    loaner: Optional[Loaner] = None
    line_items: List[LineItem] = field(default_factory=list)
    transaction: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    expected_updated_at: Any = None
    draft_id: Optional[str] = None


@dataclass
class FieldError:
    """A single validation failure; index is None for deal-level errors."""
    field: str
    code: str
    index: Optional[int] = None
    message: str = ''


@dataclass
class ValidationResult:
    ok: bool = True
    errors: List[FieldError] = field(default_factory=list)


@dataclass
class Totals:
    """Derived money figures for a set of line items."""
    subtotal: Decimal = Decimal('0')
    tax_amount: Decimal = Decimal('0')
    total_amount: Decimal = Decimal('0')
    profit: Decimal = Decimal('0')
    item_count: int = 0
