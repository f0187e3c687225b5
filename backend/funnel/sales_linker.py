"""
Sale -> source attribution.

Each closed deal is attributed to the source of the earliest lead created
for the same contact. The linker never raises on data gaps: a deal without a
contact or without any lead for its contact is still returned, tagged with
the reason, under the UNKNOWN source.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from .entities import Deal, Lead
from .rounding import ratio, round_half_up

logger = logging.getLogger(__name__)

UNKNOWN_SOURCE = "UNKNOWN"


class LinkMethod:
    CONTACT_ID = "CONTACT_ID"
    NO_CONTACT = "NO_CONTACT"
    NO_LEADS_FOUND = "NO_LEADS_FOUND"

    ALL = (CONTACT_ID, NO_CONTACT, NO_LEADS_FOUND)


DATE_ERROR = "date error"
NO_DATA = "no data"
LEAD_NOT_FOUND = "lead not found"
DISPLAY_DATE_FORMAT = "%d.%m.%Y"

SECONDS_PER_DAY = 86400


@dataclass
class LinkResult:
    sales: list[dict]
    stats: dict = field(default_factory=dict)


def _is_earlier(candidate: Lead, current: Lead) -> bool:
    # Undated leads only win over other undated leads, and never on a tie.
    if candidate.created_at is None:
        return False
    if current.created_at is None:
        return True
    return candidate.created_at < current.created_at


def index_earliest_leads(leads: Iterable[Lead]) -> dict[str, Lead]:
    """contact id -> earliest-created lead for that contact (first seen wins ties)."""
    index: dict[str, Lead] = {}
    for lead in leads:
        if not lead.contact_id:
            continue
        existing = index.get(lead.contact_id)
        if existing is None or _is_earlier(lead, existing):
            index[lead.contact_id] = lead
    return index


def deal_cycle(lead_date: Optional[datetime], sale_date: Optional[datetime]) -> tuple[Optional[str], Optional[int]]:
    """
    Human-scaled time from lead creation to sale plus the floored day count.

    Returns ("date error", None) when the sale predates the lead and
    (None, None) when either date is missing.
    """
    if lead_date is None or sale_date is None:
        return None, None

    seconds = (sale_date - lead_date).total_seconds()
    if seconds < 0:
        return DATE_ERROR, None

    days = int(seconds // SECONDS_PER_DAY)
    hours = int((seconds % SECONDS_PER_DAY) // 3600)
    if days == 0:
        if hours == 0:
            minutes = int((seconds % 3600) // 60)
            return f"{minutes} min", days
        return f"{hours} h", days
    if days < 30:
        return f"{days} d", days
    return f"{days // 30} mo", days


def format_display_date(value: Optional[datetime]) -> str:
    if value is None:
        return NO_DATA
    return value.strftime(DISPLAY_DATE_FORMAT)


def _sale_base(deal: Deal) -> dict:
    return {
        "id": deal.id,
        "title": deal.title,
        "amount": deal.amount,
        "currencyId": deal.currency_id,
        "stageId": deal.stage_id,
        "categoryId": deal.category_id,
        "contactId": deal.contact_id,
        "leadId": deal.lead_id,
        "assignedById": deal.assigned_by_id,
        "saleDate": deal.date_create_raw,
        "saleDateFormatted": format_display_date(deal.created_at),
    }


def link_sale(deal: Deal, index: dict[str, Lead], source_name: Callable[[str], str]) -> dict:
    sale = _sale_base(deal)
    lead = index.get(deal.contact_id) if deal.contact_id else None

    if lead is None:
        sale.update({
            "sourceId": UNKNOWN_SOURCE,
            "sourceName": source_name(UNKNOWN_SOURCE),
            "linkMethod": LinkMethod.NO_LEADS_FOUND if deal.contact_id else LinkMethod.NO_CONTACT,
            "linkedLeadId": None,
            "leadDate": None,
            "leadDateFormatted": LEAD_NOT_FOUND,
            "dealCycle": NO_DATA,
            "dealCycleDays": None,
        })
        return sale

    label, days = deal_cycle(lead.created_at, deal.created_at)
    sale.update({
        "sourceId": lead.source_key,
        "sourceName": source_name(lead.source_key),
        "linkMethod": LinkMethod.CONTACT_ID,
        "linkedLeadId": lead.id,
        "leadDate": lead.date_create_raw,
        "leadDateFormatted": format_display_date(lead.created_at),
        "dealCycle": label if label is not None else NO_DATA,
        "dealCycleDays": days,
    })
    return sale


def cycle_stats(sales: list[dict]) -> dict:
    days = [s["dealCycleDays"] for s in sales if s.get("dealCycleDays") is not None]
    if not days:
        return {"avgDays": None, "minDays": None, "maxDays": None, "salesWithCycleData": 0}
    return {
        "avgDays": round_half_up(ratio(sum(days), len(days))),
        "minDays": min(days),
        "maxDays": max(days),
        "salesWithCycleData": len(days),
    }


def link_sales(deals: list[Deal], leads: list[Lead], source_name: Callable[[str], str]) -> LinkResult:
    """Attribute every deal; the output has exactly one entry per input deal, in order."""
    index = index_earliest_leads(leads)
    logger.info(f"Earliest-lead index built: {len(index)} contacts from {len(leads)} leads")

    sales = [link_sale(deal, index, source_name) for deal in deals]

    by_method = {method: 0 for method in LinkMethod.ALL}
    for sale in sales:
        by_method[sale["linkMethod"]] += 1
    linked = by_method[LinkMethod.CONTACT_ID]
    success_rate = round_half_up(ratio(linked * 100, len(sales))) if sales else 0

    stats = {
        "successRate": success_rate,
        "totalLinked": linked,
        "byMethod": by_method,
        "dealCycleStats": cycle_stats(sales),
    }
    logger.info(f"Linked {linked}/{len(sales)} sales ({success_rate}%)")
    return LinkResult(sales=sales, stats=stats)


def group_sales_by_source(sales: list[dict]) -> list[dict]:
    """Per-source sales totals, sorted by number of sales (descending, stable)."""
    groups: dict[str, dict] = {}
    for sale in sales:
        source_id = sale["sourceId"]
        group = groups.get(source_id)
        if group is None:
            group = groups[source_id] = {
                "sourceId": source_id,
                "sourceName": sale["sourceName"],
                "sales": [],
                "totalSales": 0,
                "totalAmount": 0.0,
                "averageAmount": 0,
            }
        group["sales"].append(sale)
        group["totalSales"] += 1
        group["totalAmount"] += sale["amount"]

    for group in groups.values():
        group["averageAmount"] = (
            round_half_up(ratio(group["totalAmount"], group["totalSales"])) if group["totalSales"] else 0
        )

    return sorted(groups.values(), key=lambda g: g["totalSales"], reverse=True)
