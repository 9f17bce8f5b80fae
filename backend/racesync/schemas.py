from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Point = Literal["S", "F"]
Run = Literal[1, 2]
EntryStatus = Literal["ok", "dns", "dnf", "dsq", "flt"]
FaultType = Literal["MG", "STR", "BR"]
TimeSource = Literal["gps", "system"]
Role = Literal["timer", "gateJudge", "chiefJudge"]
ChangeType = Literal["create", "edit", "delete", "restore"]

MAX_BIB_LENGTH = 10
MAX_DEVICE_NAME_LENGTH = 100

_UNSAFE_CHARS = re.compile(r"[<>&\x00-\x1f\x7f]")


def sanitize_string(value: Any, max_length: int) -> str:
    """Truncate and strip markup and control characters; non-strings become ''."""
    if not value or not isinstance(value, str):
        return ""
    return _UNSAFE_CHARS.sub("", value[:max_length])


def _coerce_id(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value <= 0:
            raise ValueError("numeric id must be positive")
        return str(value)
    return value


def _check_timestamp(value: str) -> str:
    datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class GpsCoords(WireModel):
    latitude: float
    longitude: float
    accuracy: float = Field(ge=0)


class Entry(WireModel):
    id: str = Field(min_length=1)
    bib: str = Field(default="", max_length=MAX_BIB_LENGTH)
    point: Point
    run: Optional[Run] = None
    timestamp: str
    status: EntryStatus = "ok"
    device_id: str = ""
    device_name: str = ""
    gps_coords: Optional[GpsCoords] = None
    gps_timestamp: Optional[float] = None
    time_source: Optional[TimeSource] = None
    synced_at: Optional[int] = Field(default=None, ge=0)

    coerce_id = field_validator("id", mode="before")(_coerce_id)
    check_timestamp = field_validator("timestamp")(_check_timestamp)

    @property
    def effective_run(self) -> int:
        # Entries written before runs existed count as run 1
        return self.run or 1

    @property
    def sync_key(self) -> str:
        return f"{self.id}:{self.device_id}"


class FaultVersion(WireModel):
    version: int
    timestamp: str
    edited_by: str = ""
    edited_by_device_id: str = ""
    change_type: ChangeType
    data: dict[str, Any] = Field(default_factory=dict)
    change_description: Optional[str] = None


class FaultEntry(WireModel):
    id: str = Field(min_length=1)
    bib: str = Field(default="", max_length=MAX_BIB_LENGTH)
    run: Run
    gate_number: int = Field(ge=1)
    fault_type: FaultType
    timestamp: str
    device_id: str = ""
    device_name: str = ""
    gate_range: tuple[int, int]
    current_version: int = 1
    version_history: list[FaultVersion] = Field(default_factory=list)
    marked_for_deletion: bool = False
    marked_for_deletion_at: Optional[str] = None
    marked_for_deletion_by: Optional[str] = None
    marked_for_deletion_by_device_id: Optional[str] = None
    deletion_approved_at: Optional[str] = None
    deletion_approved_by: Optional[str] = None
    notes: Optional[str] = None
    notes_source: Optional[Literal["voice", "manual"]] = None
    notes_timestamp: Optional[str] = None
    synced_at: Optional[int] = None

    coerce_id = field_validator("id", mode="before")(_coerce_id)
    check_timestamp = field_validator("timestamp")(_check_timestamp)

    @field_validator("version_history", mode="before")
    @classmethod
    def drop_malformed_versions(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
        return value

    @property
    def sync_key(self) -> str:
        return f"{self.id}:{self.device_id}"


class GateAssignment(WireModel):
    device_id: str
    device_name: str = "Unknown"
    gate_start: int
    gate_end: int
    last_seen: int = 0
    is_ready: bool = False
    first_gate_color: Literal["red", "blue"] = "red"


class CrossDeviceDuplicate(WireModel):
    bib: str
    point: Point
    run: int
    device_name: str
    timestamp: str


class RaceSummary(WireModel):
    race_id: str
    entry_count: int
    device_count: int
    last_updated: Optional[int] = None


class Tombstone(WireModel):
    deleted_at: int
    message: str = "Race deleted by administrator"


# ---------------------------
# Request bodies
# ---------------------------

class EntryPostBody(WireModel):
    entry: Optional[dict[str, Any]] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None


class EntryDeleteBody(WireModel):
    entry_id: Optional[Union[str, int]] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None


class FaultPostBody(WireModel):
    fault: Optional[dict[str, Any]] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    gate_range: Optional[list[Any]] = None
    is_ready: Optional[bool] = None
    first_gate_color: Optional[str] = None


class FaultDeleteBody(WireModel):
    fault_id: Optional[Union[str, int]] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    approved_by: Optional[str] = None


class TokenRequest(WireModel):
    pin: Optional[str] = None
    role: Optional[str] = None
