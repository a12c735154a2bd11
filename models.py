"""
Typed records flowing through the pipeline.

Staging records are built from validated staging rows (dicts); SCD2 versions
are immutable values, closing a version yields a new value.
"""
import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from errors import EngineError, LateArrivingConflictError, MalformedInputError

LOGIN = "login"
DEVICE = "device"
USER = "user"
IDENTITY_SPACES = (LOGIN, DEVICE)


def _is_missing(value) -> bool:
    return value is None or (not isinstance(value, (list, dict, tuple)) and pd.isna(value))


def to_timestamp(value, field_name: str = "timestamp", record=None) -> datetime:
    """Coerce to a naive UTC datetime (DuckDB TIMESTAMP semantics)."""
    if _is_missing(value):
        raise MalformedInputError(f"missing_required:{field_name}", record)
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError) as e:
        raise MalformedInputError(f"invalid:{field_name} ({e})", record)
    if pd.isna(ts):
        raise MalformedInputError(f"invalid:{field_name}", record)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.to_pydatetime()


def optional_timestamp(value, field_name: str, record=None) -> Optional[datetime]:
    if _is_missing(value):
        return None
    if isinstance(value, str) and clean_str(value) is None:
        return None
    return to_timestamp(value, field_name, record)


def clean_str(value) -> Optional[str]:
    """Blank strings, NaN and the usual null markers collapse to None."""
    if value is None:
        return None
    if not isinstance(value, str) and pd.isna(value):
        return None
    text = str(value).strip()
    if text in ("", "null", "(not set)"):
        return None
    return text


def to_amount(value, record=None) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedInputError(f"invalid:amount ({value!r})", record)
    if not amount.is_finite():
        raise MalformedInputError(f"invalid:amount ({value!r})", record)
    if amount < 0:
        raise MalformedInputError("invalid:amount (negative)", record)
    return amount


def compute_change_hash(values: Dict[str, Any]) -> str:
    """sha256 over the canonical JSON of the tracked attributes."""
    payload = json.dumps(values, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


# --- Staging records -----------------------------------------------------------


@dataclass(frozen=True)
class IdentityFact:
    observed_at: datetime
    source_batch_id: Optional[str] = None
    login_user_id: Optional[str] = None
    device_id: Optional[str] = None
    canonical_user_id_hint: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "IdentityFact":
        login = clean_str(row.get("login_user_id"))
        device = clean_str(row.get("device_id"))
        if login is None and device is None:
            raise MalformedInputError(
                "missing_required:login_user_id|device_id", dict(row)
            )
        attributes = row.get("attributes")
        if isinstance(attributes, str):
            try:
                attributes = json.loads(attributes)
            except json.JSONDecodeError as e:
                raise MalformedInputError(f"invalid:attributes ({e})", dict(row))
        if not isinstance(attributes, dict):
            attributes = {}
        return cls(
            observed_at=to_timestamp(row.get("observed_at"), "observed_at", dict(row)),
            source_batch_id=clean_str(row.get("source_batch_id")),
            login_user_id=login,
            device_id=device,
            canonical_user_id_hint=clean_str(row.get("canonical_user_id_hint")),
            attributes=dict(attributes),
        )

    def identifiers(self) -> List[Tuple[str, str]]:
        out = []
        if self.login_user_id:
            out.append((LOGIN, self.login_user_id))
        if self.device_id:
            out.append((DEVICE, self.device_id))
        return out

    def to_record(self) -> Dict[str, Any]:
        return {
            "login_user_id": self.login_user_id,
            "device_id": self.device_id,
            "canonical_user_id_hint": self.canonical_user_id_hint,
            "observed_at": self.observed_at,
            "source_batch_id": self.source_batch_id,
            "attributes": self.attributes,
        }


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    updated_at: datetime
    started_at: datetime
    login_user_id: Optional[str] = None
    device_id: Optional[str] = None
    channel: Optional[str] = None
    page_views: int = 0
    ingest_seq: int = 0

    @classmethod
    def from_dict(cls, row: Dict[str, Any], ingest_seq: int = 0) -> "SessionRecord":
        session_id = clean_str(row.get("session_id"))
        if session_id is None:
            raise MalformedInputError("missing_required:session_id", dict(row))
        updated_at = to_timestamp(row.get("updated_at"), "updated_at", dict(row))
        started_at = optional_timestamp(row.get("started_at"), "started_at", dict(row))
        page_views = row.get("page_views")
        return cls(
            session_id=session_id,
            updated_at=updated_at,
            started_at=started_at or updated_at,
            login_user_id=clean_str(row.get("login_user_id")),
            device_id=clean_str(row.get("device_id")),
            channel=clean_str(row.get("channel")),
            page_views=0 if page_views is None or pd.isna(page_views) else int(page_views),
            ingest_seq=ingest_seq,
        )


@dataclass(frozen=True)
class AppointmentRecord:
    appointment_id: str
    booked_at: datetime
    updated_at: datetime
    login_user_id: Optional[str] = None
    device_id: Optional[str] = None
    provider_id: Optional[str] = None
    insurance_plan_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    status: Optional[str] = None
    ingest_seq: int = 0

    @classmethod
    def from_dict(cls, row: Dict[str, Any], ingest_seq: int = 0) -> "AppointmentRecord":
        appointment_id = clean_str(row.get("appointment_id"))
        if appointment_id is None:
            raise MalformedInputError("missing_required:appointment_id", dict(row))
        booked_at = to_timestamp(row.get("booked_at"), "booked_at", dict(row))
        updated_at = optional_timestamp(row.get("updated_at"), "updated_at", dict(row))
        status = clean_str(row.get("status"))
        return cls(
            appointment_id=appointment_id,
            booked_at=booked_at,
            updated_at=updated_at or booked_at,
            login_user_id=clean_str(row.get("login_user_id")),
            device_id=clean_str(row.get("device_id")),
            provider_id=clean_str(row.get("provider_id")),
            insurance_plan_id=clean_str(row.get("insurance_plan_id")),
            scheduled_for=optional_timestamp(
                row.get("scheduled_for"), "scheduled_for", dict(row)
            ),
            status=status.lower() if status else None,
            ingest_seq=ingest_seq,
        )


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: str
    appointment_id: str
    amount: Decimal
    status: str
    event_at: datetime
    ingest_seq: int = 0

    @classmethod
    def from_dict(cls, row: Dict[str, Any], ingest_seq: int = 0) -> "PaymentRecord":
        missing = [
            c
            for c in ("payment_id", "appointment_id", "status")
            if clean_str(row.get(c)) is None
        ]
        if missing:
            raise MalformedInputError(
                ",".join(f"missing_required:{c}" for c in missing), dict(row)
            )
        if row.get("amount") is None:
            raise MalformedInputError("missing_required:amount", dict(row))
        return cls(
            payment_id=clean_str(row["payment_id"]),
            appointment_id=clean_str(row["appointment_id"]),
            amount=to_amount(row["amount"], dict(row)),
            status=clean_str(row["status"]).lower(),
            event_at=to_timestamp(row.get("event_at"), "event_at", dict(row)),
            ingest_seq=ingest_seq,
        )


# --- SCD2 versions -------------------------------------------------------------


@dataclass(frozen=True)
class Scd2Version:
    """One validity interval [valid_from, valid_to); valid_to None is open-ended."""

    space: str
    natural_key: str
    values: Dict[str, Any] = field(hash=False)
    valid_from: datetime
    valid_to: Optional[datetime] = None
    is_current: bool = True
    change_hash: str = ""
    source_batch_id: Optional[str] = None
    surrogate_key: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.valid_to is not None and self.valid_to <= self.valid_from

    def contains(self, ts: datetime) -> bool:
        return self.valid_from <= ts and (self.valid_to is None or ts < self.valid_to)

    def close(self, at: datetime) -> "Scd2Version":
        return replace(self, valid_to=at, is_current=False)


class IdentityMapVersion(Scd2Version):
    """user_identity_map row: login or device id -> canonical user id."""

    @property
    def key_type(self) -> str:
        return self.space

    @property
    def canonical_user_id(self) -> str:
        return self.values["canonical_user_id"]


class UserDimVersion(Scd2Version):
    """dim_user row keyed by canonical user id."""

    @property
    def canonical_user_id(self) -> str:
        return self.natural_key

    @property
    def attributes(self) -> Dict[str, Any]:
        return self.values


VERSION_TYPES = {LOGIN: IdentityMapVersion, DEVICE: IdentityMapVersion, USER: UserDimVersion}


def check_intervals(versions: List[Scd2Version]) -> List[str]:
    """Return human-readable problems with one key's history (empty when sound)."""
    problems = []
    current = [v for v in versions if v.is_current]
    if len(current) != 1:
        problems.append(f"expected exactly one current version, found {len(current)}")
    for v in current:
        if v.valid_to is not None:
            problems.append(f"current version {v.surrogate_key} has valid_to={v.valid_to}")
    for v in versions:
        if not v.is_current and v.valid_to is None:
            problems.append(f"closed version {v.surrogate_key} has no valid_to")
    spans = sorted(
        (v for v in versions if not v.is_empty), key=lambda v: v.valid_from
    )
    for prev, nxt in zip(spans, spans[1:]):
        if prev.valid_to is None or nxt.valid_from < prev.valid_to:
            problems.append(
                f"versions {prev.surrogate_key} and {nxt.surrogate_key} overlap "
                f"at {nxt.valid_from}"
            )
    return problems


# --- Batch results -------------------------------------------------------------


@dataclass
class MergeResult:
    inserted: List[Scd2Version] = field(default_factory=list)
    closed: List[Scd2Version] = field(default_factory=list)
    unchanged: int = 0
    rejected: List[EngineError] = field(default_factory=list)
    committed_keys: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def conflicts(self) -> List[EngineError]:
        return [e for e in self.rejected if isinstance(e, LateArrivingConflictError)]

    def summary(self) -> Dict[str, int]:
        return {
            "inserted": len(self.inserted),
            "closed": len(self.closed),
            "unchanged": self.unchanged,
            "rejected": len(self.rejected),
            "conflicts": len(self.conflicts),
            "committed_keys": len(self.committed_keys),
        }


def coerce_records(rows: Iterable[Dict[str, Any]], record_type) -> Tuple[list, List[EngineError]]:
    """Build typed records from staging rows; malformed rows are collected, not raised."""
    good, rejected = [], []
    for seq, row in enumerate(rows):
        if isinstance(row, record_type):
            good.append(row)
            continue
        try:
            if record_type is IdentityFact:
                good.append(record_type.from_dict(row))
            else:
                good.append(record_type.from_dict(row, ingest_seq=seq))
        except MalformedInputError as e:
            rejected.append(e)
    return good, rejected
