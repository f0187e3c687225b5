"""
Analytics reports served by /api/analytics/*.

Each builder runs one request end to end: fetch from Bitrix24, normalize,
aggregate or link in memory, and shape the JSON response. Nothing is kept
between requests except the source name cache passed in by the caller.

Transport failures (BitrixAPIError) propagate to the HTTP layer; empty
results are a normal response with zero totals and a note.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Iterable, Optional, Sequence

from .aggregator import average_conversion, group_by_employee, group_by_source, unknown_status_total
from .entities import Deal, Employee, Lead
from .periods import DateRange
from .rounding import ratio, round_half_up
from .sales_linker import UNKNOWN_SOURCE, group_sales_by_source, link_sales
from .stages import FunnelConfig

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _by_total_leads(groups: list[dict], key=lambda g: g["totalLeads"]) -> list[dict]:
    return sorted(groups, key=key, reverse=True)


def lead_filters(
    date_range: DateRange,
    source_ids: Optional[Sequence[str]] = None,
    employee_id: Optional[str] = None,
) -> dict:
    filters = date_range.bitrix_filter("DATE_CREATE")
    if source_ids:
        filters["SOURCE_ID"] = source_ids[0] if len(source_ids) == 1 else list(source_ids)
    if employee_id:
        filters["ASSIGNED_BY_ID"] = employee_id
    return filters


def _unknown_status_codes(source_groups: Iterable[dict]) -> dict[str, int]:
    """Unmapped status code -> lead count, logged once per code."""
    codes: Counter = Counter()
    for group in source_groups:
        codes.update(group["unknownStatuses"])
    for code, count in codes.items():
        logger.warning(f"Unknown lead status {code or '<empty>'} on {count} leads")
    return dict(codes)


def _sources_note(source_ids: Optional[Sequence[str]]) -> str:
    return f"Source: {', '.join(source_ids)}" if source_ids else "All sources"


async def build_sources_report(
    client,
    source_cache,
    config: FunnelConfig,
    date_range: DateRange,
    source_ids: Optional[Sequence[str]] = None,
) -> dict:
    """Funnel metrics per traffic source."""
    started = time.monotonic()
    filters = lead_filters(date_range, source_ids)
    logger.info(f"Sources analytics for {date_range.to_dict()} filters={filters}")

    raw_leads = await client.fetch_leads(filters)
    leads = [Lead.from_bitrix(raw) for raw in raw_leads]

    if not leads:
        return {
            "success": True,
            "data": [],
            "period": date_range.to_dict(),
            "totalLeads": 0,
            "totalMeetingsHeld": 0,
            "unknownStatusCount": 0,
            "processingTimeMs": _elapsed_ms(started),
            "note": "No leads found for the selected period",
        }

    await source_cache.ensure_loaded(client)
    groups = _by_total_leads(group_by_source(leads, config, source_cache.name_for))

    total_held = sum(g["meetingsHeld"] for g in groups)
    unknown_codes = _unknown_status_codes(groups)

    without_source = sum(1 for lead in leads if not lead.source_id)
    logger.info(
        f"Sources analytics: {len(leads)} leads in {len(groups)} sources, "
        f"{total_held} meetings held, {without_source} without source"
    )

    return {
        "success": True,
        "data": groups,
        "period": date_range.to_dict(),
        "totalLeads": len(leads),
        "totalMeetingsHeld": total_held,
        "unknownStatusCount": unknown_status_total(groups),
        "processingTimeMs": _elapsed_ms(started),
        "note": _sources_note(source_ids),
        "debug": {
            "filters": filters,
            "requestedSources": list(source_ids) if source_ids else "all",
            "actualPeriod": date_range.period,
            "periodDefaulted": date_range.defaulted,
            "meetingsHeldRule": f"STATUS_ID == {config.converted_status}",
            "totalLeadsReceived": len(raw_leads),
            "leadsWithoutSource": without_source,
            "unknownStatusCodes": unknown_codes,
            "sampleLeads": [
                {
                    "id": lead.id,
                    "sourceId": lead.source_id,
                    "statusId": lead.status_id,
                    "sourceDescription": lead.source_description,
                    "contactId": lead.contact_id,
                }
                for lead in leads[:3]
            ],
            "meetingsBreakdown": [
                {
                    "sourceName": g["sourceName"],
                    "totalLeads": g["totalLeads"],
                    "meetingsHeld": g["meetingsHeld"],
                    "meetingsScheduledTotal": g["meetingsScheduledTotal"],
                    "meetingsHeldConversion": g["meetingsHeldConversion"],
                }
                for g in groups
            ],
        },
    }


async def build_employees_report(
    client,
    source_cache,
    config: FunnelConfig,
    date_range: DateRange,
    source_ids: Optional[Sequence[str]] = None,
    employee_id: Optional[str] = None,
) -> dict:
    """Funnel metrics per responsible employee, split by source."""
    started = time.monotonic()
    filters = lead_filters(date_range, source_ids, employee_id)
    logger.info(f"Employees analytics for {date_range.to_dict()} filters={filters}")

    raw_leads = await client.fetch_leads(filters)
    leads = [Lead.from_bitrix(raw) for raw in raw_leads]

    if not leads:
        return {
            "success": True,
            "data": [],
            "period": date_range.to_dict(),
            "totalLeads": 0,
            "totalEmployees": 0,
            "totalMeetingsHeld": 0,
            "averageConversion": "0.0",
            "unknownStatusCount": 0,
            "processingTimeMs": _elapsed_ms(started),
            "note": "No leads found for the selected period",
        }

    users = await client.fetch_users()
    employees = {e.id: e for e in (Employee.from_bitrix(u) for u in users) if e.id}
    await source_cache.ensure_loaded(client)

    groups = _by_total_leads(
        group_by_employee(leads, config, employees, source_cache.name_for),
        key=lambda g: g["employee"]["totalLeads"],
    )
    for group in groups:
        group["sources"] = _by_total_leads(group["sources"])

    _unknown_status_codes(source for group in groups for source in group["sources"])
    total_held = sum(g["employee"]["totalMeetingsHeld"] for g in groups)
    logger.info(f"Employees analytics: {len(leads)} leads across {len(groups)} employees")

    return {
        "success": True,
        "data": groups,
        "period": date_range.to_dict(),
        "totalLeads": len(leads),
        "totalEmployees": len(groups),
        "totalMeetingsHeld": total_held,
        "averageConversion": average_conversion(groups),
        "unknownStatusCount": unknown_status_total(groups, key="employee"),
        "processingTimeMs": _elapsed_ms(started),
        "note": _sources_note(source_ids),
    }


def _empty_sales_report(date_range: DateRange, started: float) -> dict:
    return {
        "success": True,
        "data": [],
        "period": date_range.to_dict(),
        "totals": {"totalSales": 0, "totalAmount": 0, "averageAmount": 0, "linkingSuccessRate": 0},
        "processingTimeMs": _elapsed_ms(started),
        "note": "No sales found for the selected period",
        "debug": {"salesFound": 0, "uniqueContacts": 0, "leadsFound": 0, "linkedSales": 0, "unknownSales": 0},
    }


async def build_sales_report(
    client,
    source_cache,
    config: FunnelConfig,
    date_range: DateRange,
) -> dict:
    """
    Closed sales (won deals in the contract funnel) attributed to lead sources.

    Only the leads of contacts that appear in the sales are fetched.
    """
    started = time.monotonic()
    filters = {
        "CATEGORY_ID": config.contract_category_id,
        "STAGE_ID": config.contract_won_stage_id,
        **date_range.bitrix_filter("DATE_CREATE"),
    }
    logger.info(f"Sales analytics for {date_range.to_dict()} filters={filters}")

    raw_deals = await client.fetch_deals(filters)
    deals = [Deal.from_bitrix(raw) for raw in raw_deals]
    if not deals:
        return _empty_sales_report(date_range, started)

    contact_ids = list(dict.fromkeys(d.contact_id for d in deals if d.contact_id))
    raw_leads = await client.fetch_leads_by_contact_ids(contact_ids) if contact_ids else []
    leads = [Lead.from_bitrix(raw) for raw in raw_leads]

    await source_cache.ensure_loaded(client)
    linking = link_sales(deals, leads, source_cache.name_for)
    groups = group_sales_by_source(linking.sales)

    total_amount = sum(sale["amount"] for sale in linking.sales)
    unknown = sum(1 for sale in linking.sales if sale["sourceId"] == UNKNOWN_SOURCE)

    return {
        "success": True,
        "data": groups,
        "period": date_range.to_dict(),
        "totals": {
            "totalSales": len(deals),
            "totalAmount": round_half_up(total_amount),
            "averageAmount": round_half_up(ratio(total_amount, len(deals))),
            "linkingSuccessRate": linking.stats["successRate"],
        },
        "processingTimeMs": _elapsed_ms(started),
        "note": f"Funnel {config.contract_category_id}, stage {config.contract_won_stage_id}",
        "debug": {
            "salesFound": len(deals),
            "uniqueContacts": len(contact_ids),
            "leadsFound": len(leads),
            "linkedSales": linking.stats["totalLinked"],
            "unknownSales": unknown,
            "linkingStats": linking.stats,
            "salesBreakdown": [
                {"source": g["sourceName"], "sales": g["totalSales"], "amount": g["totalAmount"]}
                for g in groups[:5]
            ],
        },
    }
