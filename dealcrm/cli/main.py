#!/usr/bin/env python3
"""
Deal CRM Terminal CLI
Operator commands for inspecting and repairing saved deals.
"""

import logging
import click

from dealcrm.engine.adapters import draft_to_create_payload, entity_to_draft
from dealcrm.engine.aggregates import calculate_totals, deal_vendor_label, vehicle_description
from dealcrm.engine.deals import apply_default_promised_dates, default_service, local_today
from dealcrm.engine.validation import validate_deal_fields, validate_line_items
from dealcrm.exceptions import DealError
from dealcrm.logging_config import configure_logging, log_call
from dealcrm.models import DEAL_STATUSES


@click.group()
def cli():
    """Deal CRM - deal, transaction and line-item maintenance"""
    configure_logging()


# =============================================================================
# DEALS COMMANDS
# =============================================================================

@cli.group()
def deals():
    """Inspect and repair deals"""
    pass


@deals.command('list')
@click.option('--status', type=click.Choice(DEAL_STATUSES), help='Filter by deal status')
@click.option('--vendor', 'vendor_id', help='Filter by deal-level vendor id')
@click.option('--limit', type=int, default=None, help='Max results (default: DEAL_LIST_LIMIT)')
@log_call
def deals_list(status, vendor_id, limit):
    """List recent deals"""
    results = default_service().list_deals(status=status, vendor_id=vendor_id, limit=limit)

    if not results:
        click.echo("No deals found.")
        return

    click.echo(f"\nFound {len(results)} deals:\n")
    click.echo(f"{'ID':<10} {'Vehicle':<30} {'Vendor':<18} {'Status':<12} {'Total':>10}")
    click.echo("-" * 84)

    for d in results:
        total = d.transaction.total_amount if d.transaction else calculate_totals(d.line_items).total_amount
        click.echo(
            f"{str(d.id)[:8]:<10} {vehicle_description(d)[:28]:<30} "
            f"{deal_vendor_label(d)[:16]:<18} {d.status:<12} {total:>10.2f}"
        )


@deals.command('show')
@click.argument('deal_id')
@log_call
def deals_show(deal_id):
    """Show a deal with its transaction and line items"""
    logger = logging.getLogger("dealcrm")
    deal = default_service().get_deal(deal_id)

    if not deal:
        logger.warning(f"deals_show | deal_id={deal_id} not found")
        click.echo(f"Deal ID {deal_id} not found.", err=True)
        return

    totals = calculate_totals(deal.line_items, deal.transaction.tax_amount if deal.transaction else 0)

    click.echo(f"\n{'='*80}")
    click.echo(f"DEAL #{deal.job_number or deal.id}: {vehicle_description(deal) or '(no vehicle)'}")
    click.echo(f"{'='*80}")
    click.echo(f"Status:      {deal.status}")
    click.echo(f"Priority:    {deal.priority}")
    click.echo(f"Vendor:      {deal_vendor_label(deal)}")
    if deal.customer_needs_loaner and deal.loaner:
        click.echo(f"Loaner:      {deal.loaner.loaner_number} (back {deal.loaner.eta_return_date or '?'})")
    if deal.transaction:
        click.echo(f"Customer:    {deal.transaction.customer_name or '(not set)'}")
        click.echo(f"Phone:       {deal.transaction.customer_phone or '(not set)'}")
    click.echo(f"Updated:     {deal.updated_at}")

    click.echo(f"\n{'-'*80}")
    click.echo("LINE ITEMS")
    click.echo(f"{'-'*80}")
    for n, item in enumerate(deal.line_items, 1):
        when = item.promised_date if item.requires_scheduling else f"not scheduled: {item.no_schedule_reason}"
        where = f"off-site ({item.vendor_name or item.vendor_id})" if item.is_off_site else "on-site"
        click.echo(
            f"{n:>3}. {(item.product_name or str(item.product_id))[:30]:<32} "
            f"{item.quantity} x {item.unit_price:.2f}  {where}  {when}"
        )

    click.echo(f"\nSubtotal: {totals.subtotal:.2f}  Tax: {totals.tax_amount:.2f}  "
               f"Total: {totals.total_amount:.2f}  Profit: {totals.profit:.2f}")


@deals.command('check')
@click.argument('deal_id')
@log_call
def deals_check(deal_id):
    """Validate a saved deal as if it were re-submitted (no writes)"""
    deal = default_service().get_deal(deal_id)
    if not deal:
        click.echo(f"Deal ID {deal_id} not found.", err=True)
        raise SystemExit(1)

    payload = draft_to_create_payload(entity_to_draft(deal))
    items = apply_default_promised_dates(payload.line_items, local_today())
    errors = validate_deal_fields(payload.deal).errors + validate_line_items(items).errors

    if not errors:
        click.echo(f"Deal {deal_id}: OK ({len(items)} line items)")
        return

    click.echo(f"Deal {deal_id}: {len(errors)} problem(s)")
    for e in errors:
        where = f"item {e.index + 1}" if e.index is not None else "deal"
        click.echo(f"  {where:<8} {e.field:<20} {e.code}: {e.message}")
    raise SystemExit(1)


@deals.command('resave')
@click.argument('deal_id')
@log_call
def deals_resave(deal_id):
    """Load a deal and save it again (rebuilds its transaction and line items)"""
    service = default_service()
    deal = service.get_deal(deal_id)
    if not deal:
        click.echo(f"Deal ID {deal_id} not found.", err=True)
        raise SystemExit(1)

    try:
        saved = service.update_deal(deal.id, entity_to_draft(deal))
    except DealError as e:
        click.echo(f"Resave failed [{e.code}]: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Deal {saved.id} saved: {len(saved.line_items)} line items, "
               f"total {saved.transaction.total_amount:.2f}")


@deals.command('delete')
@click.argument('deal_id')
@click.confirmation_option(prompt='Delete this deal with its transaction and line items?')
@log_call
def deals_delete(deal_id):
    """Delete a deal and everything it owns"""
    if default_service().delete_deal(deal_id):
        click.echo(f"Deleted deal {deal_id}.")
    else:
        click.echo(f"Deal ID {deal_id} not found.", err=True)


@deals.command('stats')
@log_call
def deals_stats():
    """Deal counts per status"""
    stats = default_service().get_deal_stats()
    for status in DEAL_STATUSES:
        click.echo(f"{status:<12} {stats.get(status, 0):>6}")
    click.echo("-" * 19)
    click.echo(f"{'total':<12} {stats['total']:>6}")
    click.echo(f"Value: {stats['total_value']:.2f}")


if __name__ == '__main__':
    cli()
