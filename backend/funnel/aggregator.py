"""
Funnel aggregation
==================
Groups leads by traffic source or by owning employee and computes stage
counts and conversion percentages per group.

Meetings held
-------------
A lead counts as a held meeting when its STATUS_ID equals the configured
converted code (FunnelConfig.converted_status). Deals are not consulted.

Scheduled meetings
------------------
meetingsScheduledTotal = leads currently in the meeting-scheduled stage
                         + meetingsHeld
A held meeting was scheduled at some point, so it stays in the scheduled
total after the lead moves on. Every conversion that mentions scheduled
meetings uses this total.

All percentages are strings with one decimal; a zero denominator gives "0.0".
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional

from .entities import Employee, Lead
from .rounding import one_decimal, ratio, to_decimal
from .stages import FunnelConfig, Stage

logger = logging.getLogger(__name__)


def percent(numerator: float, denominator: float) -> str:
    """n / d * 100 as a one-decimal string (halves up), "0.0" when d == 0."""
    if not denominator:
        return "0.0"
    return one_decimal(ratio(numerator * 100, denominator))


@dataclass
class StageCounts:
    counts: Counter = field(default_factory=Counter)
    meetings_held: int = 0
    unknown_statuses: Counter = field(default_factory=Counter)

    def __getitem__(self, stage: str) -> int:
        return self.counts.get(stage, 0)

    @property
    def communication_total(self) -> int:
        return self[Stage.COMMUNICATION] + self[Stage.NO_RESPONSE] + self[Stage.LONG_NO_CALL]

    @property
    def meetings_scheduled_total(self) -> int:
        return self[Stage.MEETINGS_SCHEDULED] + self.meetings_held

    def as_dict(self) -> dict[str, int]:
        return {stage: self[stage] for stage in Stage.ORDER}


def count_stages(leads: Iterable[Lead], config: FunnelConfig) -> StageCounts:
    """Classify every lead; unknown codes are counted, never dropped."""
    result = StageCounts()
    for lead in leads:
        stage = config.classify(lead.status_id)
        result.counts[stage.key] += 1
        if stage.key == Stage.UNKNOWN:
            result.unknown_statuses[lead.status_id or ""] += 1
        if config.is_meeting_held(lead.status_id):
            result.meetings_held += 1
    return result


def group_leads(leads: Iterable[Lead], key: Callable[[Lead], str]) -> dict[str, list[Lead]]:
    """Partition leads by key, preserving first-seen order of keys and leads."""
    grouped: dict[str, list[Lead]] = {}
    for lead in leads:
        grouped.setdefault(key(lead), []).append(lead)
    return grouped


def build_group(group_id: str, group_name: str, leads: list[Lead], config: FunnelConfig) -> dict:
    """Metrics for one group of leads (one source, or one source of one employee)."""
    stages = count_stages(leads, config)
    total = len(leads)
    held = stages.meetings_held
    scheduled_total = stages.meetings_scheduled_total
    communication = stages.communication_total

    return {
        "sourceId": group_id,
        "sourceName": group_name,
        "totalLeads": total,
        "comments": communication,
        "commentsConversion": percent(communication, total),
        "qualified": stages[Stage.QUALIFIED],
        "qualifiedConversion": percent(stages[Stage.QUALIFIED], total),
        "meetingsScheduled": stages[Stage.MEETINGS_SCHEDULED],
        "meetingsScheduledTotal": scheduled_total,
        "meetingsScheduledConversion": percent(scheduled_total, total),
        "meetingsHeld": held,
        "meetingsHeldConversion": percent(held, total),
        "meetingsHeldFromScheduledConversion": percent(held, scheduled_total),
        "converted": stages[Stage.CONVERTED],
        "junk": stages[Stage.JUNK],
        "junkPercent": percent(stages[Stage.JUNK], total),
        "unknown": stages[Stage.UNKNOWN],
        "unknownStatuses": dict(stages.unknown_statuses),
        "stageAnalysis": stages.as_dict(),
    }


def _check_integrity(label: str, received: int, groups: Mapping[str, list[Lead]]) -> None:
    grouped = sum(len(v) for v in groups.values())
    if grouped != received:
        logger.error(f"{label}: received {received} leads but grouped {grouped}")


def group_by_source(
    leads: list[Lead],
    config: FunnelConfig,
    source_name: Callable[[str], str],
) -> list[dict]:
    """One group per distinct SOURCE_ID (NO_SOURCE when empty), first-seen order."""
    grouped = group_leads(leads, lambda lead: lead.source_key)
    _check_integrity("group_by_source", len(leads), grouped)
    return [
        build_group(source_id, source_name(source_id), source_leads, config)
        for source_id, source_leads in grouped.items()
    ]


def build_employee_summary(employee: Employee, leads: list[Lead], config: FunnelConfig) -> dict:
    stages = count_stages(leads, config)
    total = len(leads)
    held = stages.meetings_held
    scheduled_total = stages.meetings_scheduled_total

    summary = employee.to_dict()
    summary.update({
        "totalLeads": total,
        "totalMeetingsHeld": held,
        "totalMeetingsScheduled": scheduled_total,
        "totalCommunication": stages.communication_total,
        "totalJunk": stages[Stage.JUNK],
        "totalUnknown": stages[Stage.UNKNOWN],
        "overallConversion": percent(held, total),
        "meetingsFromScheduledConversion": percent(held, scheduled_total),
    })
    return summary


def group_by_employee(
    leads: list[Lead],
    config: FunnelConfig,
    employees: Mapping[str, Employee],
    source_name: Callable[[str], str],
) -> list[dict]:
    """
    One group per ASSIGNED_BY_ID, each holding an employee summary and the
    employee's leads split by source. Owners missing from `employees` get a
    placeholder record.
    """
    grouped = group_leads(leads, lambda lead: lead.employee_key)
    _check_integrity("group_by_employee", len(leads), grouped)

    result = []
    for employee_id, employee_leads in grouped.items():
        employee = employees.get(employee_id)
        if employee is None:
            logger.info(f"Employee {employee_id} not found among {len(employees)} users")
            employee = Employee.placeholder(employee_id)
        result.append({
            "employee": build_employee_summary(employee, employee_leads, config),
            "sources": group_by_source(employee_leads, config, source_name),
        })
    return result


def average_conversion(employee_groups: list[dict]) -> str:
    """Mean of per-employee overallConversion values, one decimal."""
    if not employee_groups:
        return "0.0"
    values = [to_decimal(g["employee"]["overallConversion"]) for g in employee_groups]
    return one_decimal(ratio(sum(values), len(values)))


def unknown_status_total(groups: Iterable[dict], key: Optional[str] = None) -> int:
    """Sum of `unknown` counts across source groups (or employee summaries via key)."""
    if key:
        return sum(g[key]["totalUnknown"] for g in groups)
    return sum(g["unknown"] for g in groups)
