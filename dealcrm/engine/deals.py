"""
Deal Engine - Reconciliation of the deal aggregate
Creates and updates a deal together with its single transaction and its full
set of line items, so that saving the same draft any number of times leaves
exactly one transaction and exactly N line-item rows for N submitted items.

Save sequence (all-or-nothing from the caller's point of view):
    1. validate            -> ValidationError, nothing written
    2. upsert parent deal  -> InfrastructureError(step='parent')
    3. upsert transaction  -> InfrastructureError(step='transaction')
    4. replace line items  -> InfrastructureError(step='line_items')
    5. re-read the aggregate from the store and return it

Steps 2-4 run inside store.transaction() when the store supports it. Stores
without transactions get stage-then-prune line-item replacement instead of
delete-then-insert, so the deal never sits at zero line items.
"""

import logging
import threading
from concurrent.futures import Future
from contextlib import nullcontext
from dataclasses import fields, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dealcrm.config import config
from dealcrm.db.store import PostgresStore, Store
from dealcrm.engine.adapters import DraftAdapter, adapter_for
from dealcrm.engine.aggregates import calculate_totals
from dealcrm.engine.normalize import line_item_to_row, to_canonical_line_item, to_decimal, to_iso_date
from dealcrm.engine.validation import validate_deal_fields, validate_line_items
from dealcrm.exceptions import (
    ConflictError, DealNotFoundError, InfrastructureError, SaveCancelledError,
    StoreError, ValidationError,
)
from dealcrm.logging_config import log_call
from dealcrm.models import (
    DEAL_STATUSES, Deal, DealPayload, LineItem, Loaner, Totals, Transaction, Vehicle,
)

logger = logging.getLogger(__name__)

DEALS = 'deals'
LINE_ITEMS = 'line_items'
TRANSACTIONS = 'transactions'
VEHICLES = 'vehicles'
VENDORS = 'vendors'
PRODUCTS = 'products'


def _now() -> datetime:
    return datetime.now(timezone.utc)


def local_today() -> str:
    """Today's calendar date in config.TIMEZONE, as YYYY-MM-DD."""
    try:
        return datetime.now(ZoneInfo(config.TIMEZONE)).date().isoformat()
    except ZoneInfoNotFoundError:
        logger.warning(f"Unknown TIMEZONE {config.TIMEZONE!r}; using the host's local date")
        return date.today().isoformat()


def apply_default_promised_dates(items: Iterable[LineItem], today: str) -> List[LineItem]:
    """Copies of `items` where scheduled items without a date are promised for `today`."""
    result = []
    for item in items:
        item = to_canonical_line_item(item)
        if item.requires_scheduling and not item.promised_date:
            item = replace(item, promised_date=today)
        result.append(item)
    return result


def _marker(value: Any) -> Optional[str]:
    """Comparable form of an updated_at value (datetime or ISO string)."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return value.strip()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        else:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def _from_row(cls, row: Dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


class _InFlightSaves:
    """
    Duplicate-submit guard. While a save for a key is running, later calls
    with the same key wait for it and get its result (or its exception).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[Tuple[str, Any], Future] = {}

    def is_pending(self, key) -> bool:
        with self._lock:
            return key in self._pending

    def run(self, key, save: Callable[[], Any]):
        with self._lock:
            future = self._pending.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._pending[key] = future

        if not owner:
            logger.info(f"Save {key} already in flight; waiting for its result")
            return future.result()

        try:
            result = save()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._pending.pop(key, None)


class DealService:
    """
    Entry points for saving and loading deals.

    Args:
        store:   persistence collaborator (defaults to PostgresStore)
        adapter: draft adapter strategy (defaults to config.DEAL_ADAPTER)
        today:   callable returning today's date as YYYY-MM-DD
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        adapter: Optional[DraftAdapter] = None,
        today: Optional[Callable[[], str]] = None,
    ):
        self.store = store if store is not None else PostgresStore()
        self.adapter = adapter if adapter is not None else adapter_for()
        self._today = today or local_today
        self._in_flight = _InFlightSaves()

    def __repr__(self):
        return f"DealService(adapter={self.adapter.name})"

    # -------------------------------------------------------------------------
    # Saves
    # -------------------------------------------------------------------------

    @log_call
    def create_deal(self, draft: Any, cancel: Optional[threading.Event] = None) -> Deal:
        """
        Save a new deal from a draft. Returns the deal as re-read from the store.

        `cancel` is honoured only until the first write is issued.
        """
        key = ('create', self.adapter.draft_key(draft))
        return self._in_flight.run(
            key, lambda: self._save(self.adapter.to_create_payload(draft), cancel)
        )

    @log_call
    def update_deal(self, deal_id: Any, draft: Any, cancel: Optional[threading.Event] = None) -> Deal:
        """
        Save an edited draft over deal `deal_id`.

        Raises ConflictError when the deal changed since the draft was loaded
        (the draft's updated_at no longer matches and the last save came from
        another draft), DealNotFoundError when the deal is gone.
        """
        key = ('update', deal_id)

        def save():
            payload = self.adapter.to_update_payload(deal_id, draft)
            payload.id = deal_id
            return self._save(payload, cancel)

        return self._in_flight.run(key, save)

    def is_saving(self, deal_id: Any) -> bool:
        """True while an update of `deal_id` is in flight."""
        return self._in_flight.is_pending(('update', deal_id))

    def _validate(self, payload: DealPayload) -> List[LineItem]:
        items = apply_default_promised_dates(payload.line_items, self._today())
        result = validate_line_items(items)
        deal_result = validate_deal_fields(payload.deal)
        errors = deal_result.errors + result.errors
        if errors:
            logger.info(f"Deal {payload.id or '(new)'} rejected: {[e.code for e in errors]}")
            raise ValidationError(errors)
        return items

    def _write_scope(self):
        if getattr(self.store, 'supports_transactions', False):
            return self.store.transaction()
        return nullcontext()

    def _save(self, payload: DealPayload, cancel: Optional[threading.Event]) -> Deal:
        items = self._validate(payload)
        totals = calculate_totals(items, payload.transaction.get('tax_amount'))

        if cancel is not None and cancel.is_set():
            raise SaveCancelledError(f"Save of deal {payload.id or '(new)'} cancelled before writing")

        # No cancellation checks past this point: once writing starts the save runs to the end
        with self._write_scope():
            deal_id = self._upsert_parent(payload)
            self._upsert_transaction(deal_id, payload, totals)
            self._replace_line_items(deal_id, items)
            if payload.id is not None:
                # The marker moves only once every child write has landed
                self._stamp_parent(deal_id, payload.draft_id)

        logger.info(
            f"Saved deal {deal_id}: {len(items)} line items, total {totals.total_amount}"
        )
        deal = self._load(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal

    def _partial(self) -> bool:
        return not getattr(self.store, 'supports_transactions', False)

    def _upsert_parent(self, payload: DealPayload) -> Any:
        now = _now()
        row = dict(payload.deal)

        if payload.id is None:
            row.update(created_at=now, updated_at=now, last_draft_id=payload.draft_id)
            try:
                inserted = self.store.insert_row(DEALS, row)
            except StoreError as e:
                raise InfrastructureError('parent', e) from e
            logger.info(f"Created deal ID {inserted['id']}: {row.get('title')}")
            return inserted['id']

        deal_id = payload.id
        row.pop('job_number', None)
        try:
            current = self.store.select_rows(DEALS, {'id': deal_id})
            if not current:
                raise DealNotFoundError(deal_id)
            self._check_marker(deal_id, payload, current[0])
            updated = self.store.update_row(DEALS, deal_id, row)
        except StoreError as e:
            raise InfrastructureError('parent', e) from e
        if updated is None:
            raise DealNotFoundError(deal_id)
        logger.info(f"Updated deal ID {deal_id}")
        return deal_id

    def _check_marker(self, deal_id: Any, payload: DealPayload, current: Dict[str, Any]) -> None:
        """
        Optimistic-concurrency check. A stale marker is accepted only when the
        last completed save of this deal came from the same draft, so
        re-applying one draft converges instead of conflicting with itself.
        """
        expected = payload.expected_updated_at
        actual = current.get('updated_at')
        if expected is None or _marker(expected) == _marker(actual):
            return
        if payload.draft_id is not None and current.get('last_draft_id') == payload.draft_id:
            logger.info(f"Deal {deal_id}: re-applying draft {payload.draft_id}")
            return
        raise ConflictError(deal_id, expected, actual)

    def _stamp_parent(self, deal_id: Any, draft_id: Optional[str]) -> None:
        try:
            self.store.update_row(DEALS, deal_id, {'updated_at': _now(), 'last_draft_id': draft_id})
        except StoreError as e:
            raise InfrastructureError('parent', e, partial_write=self._partial()) from e

    def _upsert_transaction(self, deal_id: Any, payload: DealPayload, totals: Totals) -> None:
        now = _now()
        row = dict(payload.transaction)
        row.update(
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            customer_phone=row.get('customer_phone') or None,
            updated_at=now,
        )
        try:
            # Existence check must precede the write: one deal -> at most one transaction
            existing = self.store.select_rows(
                TRANSACTIONS, {'deal_id': deal_id}, order_by=('created_at', 'id')
            )
            if existing:
                if len(existing) > 1:
                    logger.warning(
                        f"Deal {deal_id} has {len(existing)} transactions; updating the oldest only"
                    )
                self.store.update_row(TRANSACTIONS, existing[0]['id'], row)
                logger.debug(f"Updated transaction {existing[0]['id']} for deal {deal_id}")
            else:
                row.update(deal_id=deal_id, transaction_status='pending', created_at=now)
                inserted = self.store.insert_row(TRANSACTIONS, row)
                logger.debug(f"Created transaction {inserted.get('id')} for deal {deal_id}")
        except StoreError as e:
            raise InfrastructureError('transaction', e, partial_write=self._partial()) from e

    def _replace_line_items(self, deal_id: Any, items: List[LineItem]) -> None:
        now = _now()
        rows = []
        for position, item in enumerate(items):
            row = line_item_to_row(item, deal_id)
            row.update(position=position, created_at=now)
            rows.append(row)

        if getattr(self.store, 'supports_transactions', False):
            self._delete_then_insert(deal_id, rows)
        else:
            self._stage_then_prune(deal_id, rows)
        logger.debug(f"Replaced line items of deal {deal_id} with {len(rows)} rows")

    def _delete_then_insert(self, deal_id: Any, rows: List[Dict[str, Any]]) -> None:
        try:
            self.store.delete_rows(LINE_ITEMS, {'deal_id': deal_id})
        except StoreError as e:
            raise InfrastructureError('line_items', e) from e
        try:
            for row in rows:
                self.store.insert_row(LINE_ITEMS, row)
        except StoreError as e:
            logger.error(f"Inserting line items of deal {deal_id} failed after delete; rolling back")
            raise InfrastructureError('line_items', e) from e

    def _stage_then_prune(self, deal_id: Any, rows: List[Dict[str, Any]]) -> None:
        """
        Insert the new rows first, then delete the rows that existed before.
        A failure part-way leaves the old rows in place; a retry prunes every
        row present before it started, so it still ends at len(rows).
        """
        try:
            stale_ids = [r['id'] for r in self.store.select_rows(LINE_ITEMS, {'deal_id': deal_id})]
            for row in rows:
                self.store.insert_row(LINE_ITEMS, row)
        except StoreError as e:
            raise InfrastructureError('line_items', e, partial_write=True) from e
        if not stale_ids:
            return
        try:
            self.store.delete_rows(LINE_ITEMS, {'deal_id': deal_id, 'id': stale_ids})
        except StoreError as e:
            raise InfrastructureError('line_items', e, partial_write=True) from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @log_call
    def get_deal(self, deal_id: Any) -> Optional[Deal]:
        """The full aggregate for `deal_id`, or None when it does not exist."""
        return self._load(deal_id)

    def _load(self, deal_id: Any) -> Optional[Deal]:
        try:
            rows = self.store.select_rows(DEALS, {'id': deal_id})
            if not rows:
                logger.debug(f"get_deal: deal_id={deal_id} not found")
                return None
            return self._assemble(rows)[0]
        except StoreError as e:
            raise InfrastructureError('read', e) from e

    @log_call
    def list_deals(
        self,
        status: Optional[str] = None,
        vendor_id: Any = None,
        limit: Optional[int] = None,
    ) -> List[Deal]:
        """Newest deals first, optionally filtered by status and deal-level vendor."""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status
        if vendor_id is not None:
            filters['vendor_id'] = vendor_id
        try:
            rows = self.store.select_rows(
                DEALS, filters, order_by=('-created_at',), limit=limit or config.DEAL_LIST_LIMIT
            )
            return self._assemble(rows)
        except StoreError as e:
            raise InfrastructureError('read', e) from e

    def _assemble(self, deal_rows: List[Dict[str, Any]]) -> List[Deal]:
        """Build Deal aggregates for deal rows, loading children in batches."""
        if not deal_rows:
            return []
        deal_ids = [row['id'] for row in deal_rows]

        item_rows = self.store.select_rows(
            LINE_ITEMS, {'deal_id': deal_ids}, order_by=('position', 'created_at', 'id')
        )
        txn_rows = self.store.select_rows(
            TRANSACTIONS, {'deal_id': deal_ids}, order_by=('created_at', 'id')
        )

        vendor_ids = {r['vendor_id'] for r in deal_rows + item_rows if r.get('vendor_id') is not None}
        product_ids = {r['product_id'] for r in item_rows if r.get('product_id') is not None}
        vehicle_ids = {r['vehicle_id'] for r in deal_rows if r.get('vehicle_id') is not None}

        vendors = {r['id']: r.get('name') for r in self.store.select_rows(VENDORS, {'id': list(vendor_ids)})}
        products = {r['id']: r.get('name') for r in self.store.select_rows(PRODUCTS, {'id': list(product_ids)})}
        vehicles = {r['id']: _from_row(Vehicle, r) for r in self.store.select_rows(VEHICLES, {'id': list(vehicle_ids)})}

        items_by_deal: Dict[Any, List[LineItem]] = {deal_id: [] for deal_id in deal_ids}
        for row in item_rows:
            item = to_canonical_line_item(row)
            item.vendor_name = vendors.get(item.vendor_id)
            item.product_name = products.get(item.product_id)
            items_by_deal.setdefault(row['deal_id'], []).append(item)

        txn_by_deal: Dict[Any, Transaction] = {}
        for row in txn_rows:
            txn_by_deal.setdefault(row['deal_id'], _from_row(Transaction, row))

        return [
            self._deal_from_row(row, items_by_deal.get(row['id'], []), txn_by_deal.get(row['id']),
                                vendors, vehicles)
            for row in deal_rows
        ]

    @staticmethod
    def _deal_from_row(row, items, txn, vendors, vehicles) -> Deal:
        loaner = None
        if row.get('customer_needs_loaner') and row.get('loaner_number'):
            loaner = Loaner(
                loaner_number=row['loaner_number'],
                eta_return_date=to_iso_date(row.get('loaner_eta_return_date')),
                notes=row.get('loaner_notes'),
            )
        deal = _from_row(Deal, {
            k: v for k, v in row.items()
            if k not in ('loaner_number', 'loaner_eta_return_date', 'loaner_notes')
        })
        deal.customer_needs_loaner = bool(row.get('customer_needs_loaner'))
        deal.loaner = loaner
        deal.line_items = items
        deal.transaction = txn
        deal.vendor_name = vendors.get(row.get('vendor_id'))
        deal.vehicle = vehicles.get(row.get('vehicle_id'))
        return deal

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    @log_call
    def delete_deal(self, deal_id: Any) -> bool:
        """Delete a deal with its line items and transaction. False when it did not exist."""
        try:
            with self._write_scope():
                self.store.delete_rows(LINE_ITEMS, {'deal_id': deal_id})
                self.store.delete_rows(TRANSACTIONS, {'deal_id': deal_id})
                deleted = self.store.delete_rows(DEALS, {'id': deal_id})
        except StoreError as e:
            raise InfrastructureError('parent', e, partial_write=self._partial()) from e
        if deleted:
            logger.info(f"Deleted deal ID {deal_id}")
        return deleted > 0

    @log_call
    def get_deal_stats(self) -> Dict[str, Any]:
        """Deal counts per status and the summed transaction totals."""
        try:
            deal_rows = self.store.select_rows(DEALS)
            txn_rows = self.store.select_rows(TRANSACTIONS)
        except StoreError as e:
            raise InfrastructureError('read', e) from e

        stats: Dict[str, Any] = {status: 0 for status in DEAL_STATUSES}
        for row in deal_rows:
            status = row.get('status') or 'pending'
            stats[status] = stats.get(status, 0) + 1
        stats['total'] = len(deal_rows)
        stats['total_value'] = sum(
            (to_decimal(r.get('total_amount'), Decimal('0')) for r in txn_rows), Decimal('0')
        )
        return stats


_default_service: Optional[DealService] = None


def default_service() -> DealService:
    """Process-wide DealService on PostgreSQL with the configured adapter."""
    global _default_service
    if _default_service is None:
        _default_service = DealService()
    return _default_service
