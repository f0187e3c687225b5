"""
Lead funnel classifier.

Maps Bitrix24 lead STATUS_ID codes to one semantic pipeline stage. The table
is many-to-one (every junk reason collapses into `junk`) and is built once at
process start into an immutable FunnelConfig. Changing the portal's status
codes means updating DEFAULT_STAGE_TABLE or pointing FUNNEL_CONFIG_PATH at a
JSON file with the same shape; there is no dynamic discovery.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)


class Stage:
    """Canonical stage keys. Plain strings so they serialize as-is."""
    NEW = "new"
    DISTRIBUTED = "distributed"
    IN_WORK = "inWork"
    COMMUNICATION = "communication"
    NO_RESPONSE = "noResponse"
    LONG_NO_CALL = "longNoCall"
    QUALIFIED = "qualified"
    MEETINGS_SCHEDULED = "meetingsScheduled"
    MEETINGS_FAILED = "meetingsFailed"
    CONVERTED = "converted"
    JUNK = "junk"
    UNKNOWN = "unknown"

    ORDER = (
        NEW, DISTRIBUTED, IN_WORK, COMMUNICATION, NO_RESPONSE, LONG_NO_CALL,
        QUALIFIED, MEETINGS_SCHEDULED, MEETINGS_FAILED, CONVERTED, JUNK, UNKNOWN,
    )
    ALL = frozenset(ORDER)

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL


# stage -> (label, type, statuses)
DEFAULT_STAGE_TABLE: dict[str, dict[str, Any]] = {
    Stage.NEW: {"name": "Не обработан", "type": "working", "statuses": ["2"]},
    Stage.DISTRIBUTED: {"name": "Распределен", "type": "working", "statuses": ["NEW"]},
    Stage.IN_WORK: {"name": "В работе", "type": "working", "statuses": ["4"]},
    Stage.COMMUNICATION: {"name": "Коммуникация установлена", "type": "working", "statuses": ["UC_WFIWVS"]},
    Stage.NO_RESPONSE: {"name": "Не отвечает", "type": "working", "statuses": ["UC_OMBROC"]},
    Stage.LONG_NO_CALL: {"name": "Длительный недозвон", "type": "working", "statuses": ["UC_VKCFXM"]},
    Stage.QUALIFIED: {"name": "Квалификация проведена", "type": "working", "statuses": ["6"]},
    Stage.MEETINGS_SCHEDULED: {"name": "Встреча назначена", "type": "meeting", "statuses": ["UC_AD2OF7"]},
    Stage.MEETINGS_FAILED: {"name": "Несостоявшаяся встреча", "type": "working", "statuses": ["UC_25C0T2"]},
    Stage.CONVERTED: {"name": "Обработка лида завершена", "type": "success", "statuses": ["CONVERTED"]},
    Stage.JUNK: {
        "name": "Брак",
        "type": "junk",
        "statuses": [
            "JUNK",       # legacy, before 01.12.2022
            "11",         # no agreement
            "10",         # debts that cannot be written off
            "9",          # client blocked the chat
            "8",          # works with competitors
            "5",          # property loss risk
            "UC_GQ2A1A",  # no longer needed
            "UC_32WMCS",  # ads / spam
            "UC_XSGR98",  # debt under 250k
            "UC_NN9P5K",  # number unavailable
            "UC_T7LX9V",  # no answer / long no-call
            "UC_C175EE",  # never submitted a request
            "UC_DFO4SC",  # duplicate
        ],
    },
}

DEFAULT_CONVERTED_STATUS = "CONVERTED"


@dataclass(frozen=True)
class StageInfo:
    key: str
    name: str
    type: str


@dataclass(frozen=True)
class FunnelConfig:
    """Immutable status -> stage lookup plus the designated funnel codes."""
    stages: Mapping[str, StageInfo]
    status_to_stage: Mapping[str, str]
    converted_status: str = DEFAULT_CONVERTED_STATUS
    contract_category_id: str = "31"
    contract_won_stage_id: str = "C31:WON"
    ordered_statuses: tuple = field(default=(), repr=False)

    def classify(self, status_id: Optional[str]) -> StageInfo:
        """Return the stage for a status code; never raises."""
        code = str(status_id) if status_id not in (None, "") else ""
        key = self.status_to_stage.get(code)
        if key is None:
            logger.debug(f"Unknown lead status: {code or '<empty>'}")
            return StageInfo(Stage.UNKNOWN, f"Unknown status: {code or '<empty>'}", "working")
        return self.stages[key]

    def is_meeting_held(self, status_id: Optional[str]) -> bool:
        return status_id == self.converted_status

    def status_names(self) -> dict[str, str]:
        """status code -> stage label, in table order."""
        return {status: self.stages[self.status_to_stage[status]].name for status in self.ordered_statuses}


def build_funnel_config(
    table: Mapping[str, Mapping[str, Any]],
    converted_status: str = DEFAULT_CONVERTED_STATUS,
    contract_category_id: str = "31",
    contract_won_stage_id: str = "C31:WON",
) -> FunnelConfig:
    """Validate a stage table and freeze it. Raises ValueError on bad input."""
    stages: dict[str, StageInfo] = {}
    status_to_stage: dict[str, str] = {}
    ordered_statuses: list[str] = []

    for key, entry in table.items():
        if not Stage.is_valid(key) or key == Stage.UNKNOWN:
            raise ValueError(f"Unsupported stage key in funnel config: {key}")
        stages[key] = StageInfo(key, entry.get("name") or key, entry.get("type") or "working")
        for status in entry.get("statuses", []):
            status = str(status)
            if status in status_to_stage:
                raise ValueError(
                    f"Status {status} mapped to both {status_to_stage[status]} and {key}"
                )
            status_to_stage[status] = key
            ordered_statuses.append(status)

    return FunnelConfig(
        stages=MappingProxyType(stages),
        status_to_stage=MappingProxyType(status_to_stage),
        converted_status=converted_status,
        contract_category_id=contract_category_id,
        contract_won_stage_id=contract_won_stage_id,
        ordered_statuses=tuple(ordered_statuses),
    )


def load_funnel_config(
    path: Optional[str] = None,
    contract_category_id: str = "31",
    contract_won_stage_id: str = "C31:WON",
) -> FunnelConfig:
    """
    Build the process-wide funnel config.

    The JSON file, when given, looks like
    {"converted_status": "CONVERTED", "stages": {"new": {"name": ..., "type": ..., "statuses": [...]}}}
    """
    table: Mapping[str, Mapping[str, Any]] = DEFAULT_STAGE_TABLE
    converted_status = DEFAULT_CONVERTED_STATUS

    if path:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        table = data.get("stages") or DEFAULT_STAGE_TABLE
        converted_status = data.get("converted_status", DEFAULT_CONVERTED_STATUS)
        logger.info(f"Loaded funnel config from {path}: {len(table)} stages")

    config = build_funnel_config(
        table,
        converted_status=converted_status,
        contract_category_id=contract_category_id,
        contract_won_stage_id=contract_won_stage_id,
    )
    if config.converted_status not in config.status_to_stage:
        logger.warning(f"Converted status {config.converted_status} is not in the stage table")
    return config


DEFAULT_FUNNEL_CONFIG = build_funnel_config(DEFAULT_STAGE_TABLE)
