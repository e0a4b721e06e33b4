# data_models.py
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional

from lab_scheduler.clock import as_utc

# Computer states
AVAILABLE = "available"
OCCUPIED = "occupied"
MAINTENANCE = "maintenance"
COMPUTER_STATUSES = (AVAILABLE, OCCUPIED, MAINTENANCE)

# Reservation lifecycle
PENDING = "pending"
ACTIVE = "active"
COMPLETED = "completed"
CANCELLED = "cancelled"
RESERVATION_STATUSES = (PENDING, ACTIVE, COMPLETED, CANCELLED)
OPEN_STATUSES = (PENDING, ACTIVE)
FINAL_STATUSES = (COMPLETED, CANCELLED)

# Queue entry states
WAITING = "waiting"
READY = "ready"
CALLED = "called"
EXPIRED = "expired"

NOTIFICATION_TYPES = ("info", "success", "warning", "error")

# Roles handed over by the identity layer
USER_ROLE = "user"
ADMIN_ROLE = "admin"


def is_privileged(user) -> bool:
    return getattr(user, "role", None) == ADMIN_ROLE


def _serialize(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in data.items()
    }


@dataclass
class Computer:
    """A bookable station in the lab."""
    id: int
    name: str
    status: str = AVAILABLE
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "Computer":
        return cls(
            id=record["id"],
            name=record["name"],
            status=record["status"],
            description=record["description"],
            created_at=as_utc(record["created_at"]),
            updated_at=as_utc(record["updated_at"]),
        )

    @property
    def under_maintenance(self) -> bool:
        return self.status == MAINTENANCE

    def to_dict(self) -> dict:
        return _serialize(asdict(self))


@dataclass
class Reservation:
    """A half-open [start_time, end_time) claim on one computer."""
    id: int
    user_id: int
    computer_id: int
    start_time: datetime
    end_time: datetime
    status: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "Reservation":
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            computer_id=record["computer_id"],
            start_time=as_utc(record["start_time"]),
            end_time=as_utc(record["end_time"]),
            status=record["status"],
            notes=record["notes"],
            created_at=as_utc(record["created_at"]),
            updated_at=as_utc(record["updated_at"]),
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> dict:
        return _serialize(asdict(self))


@dataclass
class WaitlistEntry:
    """Represents one user's place in the global queue."""
    id: int
    user_id: int
    position: int
    status: str
    joined_at: datetime
    computer_id: Optional[int] = None
    called_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "WaitlistEntry":
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            position=record["position"],
            status=record["status"],
            joined_at=as_utc(record["joined_at"]),
            computer_id=record["computer_id"],
            called_at=as_utc(record["called_at"]),
            expires_at=as_utc(record["expires_at"]),
        )

    def to_dict(self) -> dict:
        return _serialize(asdict(self))


@dataclass
class Notification:
    id: int
    user_id: int
    title: str
    message: str
    type: str
    read: bool
    created_at: datetime

    @classmethod
    def from_record(cls, record) -> "Notification":
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            title=record["title"],
            message=record["message"],
            type=record["type"],
            read=bool(record["read"]),
            created_at=as_utc(record["created_at"]),
        )

    def to_dict(self) -> dict:
        return _serialize(asdict(self))


@dataclass
class ComputerStatus:
    """Point-in-time view of a computer's timeline."""
    computer: Computer
    is_occupied: bool
    current_reservation: Optional[Reservation] = None
    next_available_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = self.computer.to_dict()
        data.update({
            "is_occupied": self.is_occupied,
            "current_reservation": self.current_reservation.to_dict() if self.current_reservation else None,
            "next_available_at": self.next_available_at.isoformat() if self.next_available_at else None,
        })
        return data
