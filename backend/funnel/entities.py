"""
Normalized CRM records.

Raw Bitrix24 payloads use upper-case field names, string ids, "0" for an
empty link and a mix of date formats. Everything downstream works with these
frozen snapshots instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

NO_SOURCE = "NO_SOURCE"
UNASSIGNED = "UNASSIGNED"


def parse_bitrix_date(value: Any) -> Optional[datetime]:
    """Parse a Bitrix date string into an aware datetime (UTC when no offset).

    Bitrix returns mixed formats: ISO with T, space-separated,
    with/without Z suffix, or a bare date.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        cleaned = str(value).strip()
        if " " in cleaned and "T" not in cleaned:
            cleaned = cleaned.replace(" ", "T", 1)
        if cleaned.endswith("Z"):
            cleaned = cleaned[:-1] + "+00:00"
        dt = datetime.fromisoformat(cleaned)
    except (ValueError, TypeError):
        logger.debug("Could not parse date value: %s", value)
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _link_id(value: Any) -> Optional[str]:
    """Bitrix link fields use 0 / "0" / "" for "not linked"."""
    if value in (None, "", 0, "0"):
        return None
    return str(value).strip() or None


def _amount(value: Any) -> float:
    try:
        return float(value) if value not in (None, "") else 0.0
    except (ValueError, TypeError):
        return 0.0


@dataclass(frozen=True)
class Lead:
    id: str
    created_at: Optional[datetime]
    status_id: Optional[str]
    source_id: Optional[str]
    assigned_by_id: Optional[str]
    contact_id: Optional[str] = None
    title: Optional[str] = None
    source_description: Optional[str] = None
    date_create_raw: Optional[str] = None

    @property
    def source_key(self) -> str:
        return self.source_id or NO_SOURCE

    @property
    def employee_key(self) -> str:
        return self.assigned_by_id or UNASSIGNED

    @classmethod
    def from_bitrix(cls, raw: dict) -> "Lead":
        return cls(
            id=str(raw.get("ID", "")),
            created_at=parse_bitrix_date(raw.get("DATE_CREATE")),
            status_id=raw.get("STATUS_ID") or None,
            source_id=raw.get("SOURCE_ID") or None,
            assigned_by_id=_link_id(raw.get("ASSIGNED_BY_ID")),
            contact_id=_link_id(raw.get("CONTACT_ID")),
            title=raw.get("TITLE"),
            source_description=raw.get("SOURCE_DESCRIPTION"),
            date_create_raw=raw.get("DATE_CREATE"),
        )


@dataclass(frozen=True)
class Deal:
    id: str
    title: Optional[str]
    amount: float
    stage_id: Optional[str]
    created_at: Optional[datetime]
    category_id: Optional[str] = None
    contact_id: Optional[str] = None
    lead_id: Optional[str] = None
    assigned_by_id: Optional[str] = None
    currency_id: Optional[str] = None
    date_create_raw: Optional[str] = None

    @classmethod
    def from_bitrix(cls, raw: dict) -> "Deal":
        category = raw.get("CATEGORY_ID")
        return cls(
            id=str(raw.get("ID", "")),
            title=raw.get("TITLE"),
            amount=_amount(raw.get("OPPORTUNITY")),
            stage_id=raw.get("STAGE_ID") or None,
            created_at=parse_bitrix_date(raw.get("DATE_CREATE")),
            category_id=str(category) if category not in (None, "") else None,
            contact_id=_link_id(raw.get("CONTACT_ID")),
            lead_id=_link_id(raw.get("LEAD_ID")),
            assigned_by_id=_link_id(raw.get("ASSIGNED_BY_ID")),
            currency_id=raw.get("CURRENCY_ID"),
            date_create_raw=raw.get("DATE_CREATE"),
        )


@dataclass(frozen=True)
class Employee:
    id: str
    name: str
    email: str = ""
    position: str = ""
    active: bool = False

    @classmethod
    def from_bitrix(cls, raw: dict) -> "Employee":
        uid = str(raw.get("ID", "")).strip()
        name_parts = [raw.get("NAME", "") or "", raw.get("LAST_NAME", "") or ""]
        full_name = " ".join(p for p in name_parts if p).strip()
        return cls(
            id=uid,
            name=full_name or f"Employee {uid}",
            email=raw.get("EMAIL") or "",
            position=raw.get("WORK_POSITION") or "",
            active=raw.get("ACTIVE") in (True, "Y"),
        )

    @classmethod
    def placeholder(cls, employee_id: str) -> "Employee":
        """Stand-in for an owner id missing from the user directory."""
        if employee_id == UNASSIGNED:
            return cls(id=employee_id, name="Unassigned")
        return cls(id=employee_id, name=f"Employee {employee_id}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "position": self.position,
            "active": self.active,
        }
