"""Pydantic models for the dispatch collections."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Literal, Self

from pydantic import BaseModel, Field, model_validator

from resq.store.records import StoredRecord

UserRole = Literal["citizen", "responder", "coordinator"]
Availability = Literal["idle", "busy"]
CitizenStatus = Literal["safe", "need_food", "need_water", "in_danger"]
ReportCategory = Literal["fire", "medical", "flood", "rescue"]
Severity = Literal["low", "medium", "high"]
ReportStatus = Literal["pending", "assigned", "resolved"]
AssignmentStatus = Literal["dispatched", "accepted", "on_site", "completed"]

CATEGORIES: tuple[str, ...] = ("fire", "medical", "flood", "rescue")
SEVERITIES: tuple[str, ...] = ("low", "medium", "high")
CITIZEN_STATUSES: tuple[str, ...] = ("safe", "need_food", "need_water", "in_danger")
ROLES: tuple[str, ...] = ("citizen", "responder", "coordinator")

# Forward-only mission progression
ASSIGNMENT_SEQUENCE: tuple[str, ...] = ("dispatched", "accepted", "on_site", "completed")
ACTIVE_ASSIGNMENT_STATUSES = frozenset({"dispatched", "accepted", "on_site"})
EN_ROUTE_STATUSES = frozenset({"accepted", "on_site"})


class Location(BaseModel):
    """A coordinate pair in decimal degrees."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    @classmethod
    def parse(cls, value: Location | str | tuple[float, float]) -> Self:
        """Accept a ``"lat,lng"`` string, a pair, or an existing Location.

        Raises:
            ValueError: If the value is empty, malformed, or out of range
        """
        if value is None:
            raise ValueError("Location is required")
        if isinstance(value, Location):
            return value
        if isinstance(value, str):
            text = value.strip()
            if not text:
                raise ValueError("Location is required")
            parts = [p.strip() for p in text.split(",")]
            if len(parts) != 2:
                raise ValueError(f"Location must be 'lat,lng', got {value!r}")
            try:
                lat, lng = float(parts[0]), float(parts[1])
            except ValueError:
                raise ValueError(f"Location must be numeric 'lat,lng', got {value!r}") from None
        else:
            try:
                lat, lng = value
            except (TypeError, ValueError):
                raise ValueError(f"Location must be 'lat,lng', got {value!r}") from None
        return cls(latitude=lat, longitude=lng)

    def __str__(self) -> str:
        return f"{self.latitude},{self.longitude}"


class Record(BaseModel):
    """Base for documents kept in the record store.

    ``etag`` is the version the model was read at. It is never serialized;
    repositories pass it back to the store as the compare-and-swap guard.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    etag: str | None = Field(default=None, exclude=True)

    def to_record(self) -> dict:
        """Serialize for storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, stored: StoredRecord) -> Self:
        """Deserialize a stored record, keeping its ETag."""
        model = cls.model_validate(stored.data)
        model.etag = stored.etag
        return model


class User(Record):
    """A citizen, responder, or coordinator profile.

    ``availability`` only applies to responders and ``citizen_status`` only
    to citizens. A responder's stored availability is a cached hint; the
    coordinator derives the real value from active assignments.
    """

    email: str
    full_name: str
    role: UserRole = "citizen"
    is_verified: bool = False
    availability: Availability | None = None
    citizen_status: CitizenStatus | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _role_defaults(self) -> Self:
        if self.role == "responder":
            if self.availability is None:
                self.availability = "idle"
            self.citizen_status = None
        elif self.role == "citizen":
            if self.citizen_status is None:
                self.citizen_status = "safe"
            self.availability = None
        else:
            self.availability = None
            self.citizen_status = None
        return self


class Report(Record):
    """An incident filed by a citizen.

    Category, description, location, and severity are fixed at submission;
    only ``status`` changes afterwards.
    """

    user_id: str
    category: ReportCategory
    description: str
    location: Location
    severity: Severity = "medium"
    severity_reason: str = ""
    status: ReportStatus = "pending"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Assignment(Record):
    """The binding between one report and one responder."""

    report_id: str
    responder_id: str
    status: AssignmentStatus = "dispatched"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """Anything short of ``completed`` still holds the report and the responder."""
        return self.status in ACTIVE_ASSIGNMENT_STATUSES
