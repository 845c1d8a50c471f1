from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional, Tuple


class ResourceType(str, Enum):
    OPERATOR = "operator"
    DRIVER = "driver"
    STRIPER = "striper"
    FOREMAN = "foreman"
    LABORER = "laborer"
    PRIVATE_DRIVER = "privateDriver"
    SKIDSTEER = "skidsteer"
    PAVER = "paver"
    EXCAVATOR = "excavator"
    SWEEPER = "sweeper"
    MILLING_MACHINE = "millingMachine"
    GRADER = "grader"
    DOZER = "dozer"
    PAYLOADER = "payloader"
    ROLLER = "roller"
    EQUIPMENT = "equipment"
    TRUCK = "truck"


PERSONNEL_TYPES = frozenset({
    ResourceType.OPERATOR,
    ResourceType.DRIVER,
    ResourceType.STRIPER,
    ResourceType.FOREMAN,
    ResourceType.LABORER,
    ResourceType.PRIVATE_DRIVER,
})

# Everything an operator can be authorized to run
EQUIPMENT_TYPES = frozenset(t for t in ResourceType if t not in PERSONNEL_TYPES and t is not ResourceType.TRUCK)


class ClassType(str, Enum):
    EMPLOYEE = "employee"
    EQUIPMENT = "equipment"


class RowType(str, Enum):
    FORMAN = "Forman"
    EQUIPMENT = "Equipment"
    SWEEPER = "Sweeper"
    TACK = "Tack"
    MPT = "MPT"
    CREW = "Crew"
    TRUCKS = "Trucks"

    @classmethod
    def _missing_(cls, value):
        # Board data mixes "crew"/"Crew" and "trucks"/"Trucks"
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


class JobType(str, Enum):
    MILLING = "milling"
    PAVING = "paving"
    BOTH = "both"
    OTHER = "other"
    DRAINAGE = "drainage"
    STRIPPING = "stripping"
    HIRED = "hired"


class Shift(str, Enum):
    DAY = "day"
    NIGHT = "night"


class MagnetStatus(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    MULTI_ASSIGNED = "multiAssigned"
    DRAGGING = "dragging"


class AssignmentState(str, Enum):
    PROPOSED = "proposed"
    VALIDATED = "validated"
    COMMITTED = "committed"
    PERSISTED = "persisted"
    RECONCILED = "reconciled"
    REJECTED = "rejected"
    ROLLED_BACK = "rolledBack"


def parse_clock(value: str) -> int:
    """Convert "HH:MM" to minutes from midnight."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class TimeSlot:
    start_minute: int  # minutes from midnight
    end_minute: int
    is_full_day: bool = False

    @classmethod
    def parse(cls, start: str, end: str, is_full_day: bool = False) -> "TimeSlot":
        return cls(parse_clock(start), parse_clock(end), is_full_day)

    def overlaps(self, other: "TimeSlot") -> bool:
        if self.is_full_day or other.is_full_day:
            return True
        return max(self.start_minute, other.start_minute) < min(self.end_minute, other.end_minute)


@dataclass(frozen=True)
class Resource:
    id: str
    type: ResourceType
    class_type: ClassType
    name: str = ""
    allowed_equipment: Optional[Tuple[str, ...]] = None  # empty or None = unrestricted
    on_site: bool = True
    version: int = 0


@dataclass(frozen=True)
class JobRow:
    row: RowType
    allowed_types: Optional[frozenset] = None  # narrows the rule store's drop rule
    max_count: Optional[int] = None


@dataclass(frozen=True)
class Job:
    id: str
    type: JobType
    name: str = ""
    shift: Shift = Shift.DAY
    schedule_date: Optional[date] = None
    start_time: Optional[str] = None  # "HH:MM" default crew start
    finalized: bool = False
    rows: Tuple[JobRow, ...] = ()
    version: int = 0

    def row_config(self, row: RowType) -> Optional[JobRow]:
        for job_row in self.rows:
            if job_row.row is row:
                return job_row
        return None


@dataclass(frozen=True)
class Assignment:
    id: str
    resource_id: str
    job_id: str
    row: RowType
    position: int = 0
    attached_to: Optional[str] = None
    time_slot: Optional[TimeSlot] = None
    multi_shift: bool = False
    version: int = 0
    note: Optional[str] = field(default=None, compare=False)
