"""
Record and alert data models for the Traceability Service.
"""

from typing import Dict, Any, Optional, List, Set
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Interpret naive datetimes as UTC and normalize aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CheckKind(str, Enum):
    """Evaluation check kinds."""
    COMPLIANCE = "compliance"
    TRUSTWORTHINESS = "trustworthiness"
    QUALITY_ALERT = "quality_alert"


class AlertKind(str, Enum):
    """Alert kinds produced by evaluators."""
    EXPIRED = "Expired"
    NEAR_EXPIRY = "NearExpiry"
    CONTAMINATION_RISK = "ContaminationRisk"
    MISSING_CERTIFICATION = "MissingCertification"


# Fields computed by evaluators, never accepted from callers
DERIVED_FIELDS = frozenset({"compliance_status", "quality_issue_flag"})

# Fields owned by the service itself
SYSTEM_FIELDS = frozenset({"trace_id", "last_updated"})


@dataclass
class FoodRecord:
    """Traceability record for a single food item."""
    trace_id: str
    name: str = ""
    origin: str = ""
    quality_check_date: datetime = field(default_factory=utcnow)
    freshness_expiry_date: Optional[datetime] = None
    certifications: Set[str] = field(default_factory=set)
    contamination_risk: bool = False
    compliance_status: bool = False
    quality_issue_flag: bool = False
    last_updated: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.certifications = set(self.certifications or ())
        self.quality_check_date = ensure_utc(self.quality_check_date)
        self.freshness_expiry_date = ensure_utc(self.freshness_expiry_date)
        self.last_updated = ensure_utc(self.last_updated)

    def merged(self, fields: Dict[str, Any], last_updated: datetime) -> "FoodRecord":
        """Return a copy with ``fields`` applied and ``last_updated`` set."""
        return replace(self, **fields, last_updated=last_updated)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; certifications are sorted for stable output."""
        return {
            "trace_id": self.trace_id,
            "name": self.name,
            "origin": self.origin,
            "quality_check_date": self.quality_check_date.isoformat(),
            "freshness_expiry_date": (
                self.freshness_expiry_date.isoformat() if self.freshness_expiry_date else None
            ),
            "certifications": sorted(self.certifications),
            "contamination_risk": self.contamination_risk,
            "compliance_status": self.compliance_status,
            "quality_issue_flag": self.quality_issue_flag,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class Alert:
    """A single evaluator finding."""
    kind: AlertKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "details": dict(self.details)}


@dataclass
class ComplianceResult:
    """Pass/fail regulatory compliance outcome."""
    compliant: bool
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"compliant": self.compliant, "reasons": list(self.reasons)}


def combine_alerts(*groups: Optional[List[Alert]]) -> List[Alert]:
    """Concatenate alert groups keeping the first alert of each kind."""
    combined: List[Alert] = []
    seen = set()
    for group in groups:
        for alert in group or ():
            if alert.kind not in seen:
                seen.add(alert.kind)
                combined.append(alert)
    return combined


@dataclass
class EvaluationResult:
    """Outcome of the checks run for one record.

    ``event_alerts`` holds what gets broadcast: every quality alert plus the
    trustworthiness alerts when that check ran, whatever the caller chose to
    see in the response.
    """
    compliance: Optional[ComplianceResult] = None
    trustworthiness_alerts: Optional[List[Alert]] = None
    quality_alerts: Optional[List[Alert]] = None
    skipped: Dict[str, str] = field(default_factory=dict)
    event_alerts: List[Alert] = field(default_factory=list)

    @property
    def alerts(self) -> List[Alert]:
        """Reported trustworthiness then quality alerts, one per kind."""
        return combine_alerts(self.trustworthiness_alerts, self.quality_alerts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compliance": self.compliance.to_dict() if self.compliance else None,
            "trustworthiness_alerts": (
                [a.to_dict() for a in self.trustworthiness_alerts]
                if self.trustworthiness_alerts is not None else None
            ),
            "quality_alerts": (
                [a.to_dict() for a in self.quality_alerts]
                if self.quality_alerts is not None else None
            ),
            "skipped": dict(self.skipped),
        }


@dataclass
class RecordEvaluation:
    """A record together with the evaluation computed for it."""
    record: FoodRecord
    result: EvaluationResult
    event_published: bool = False


@dataclass(frozen=True)
class AlertEvent:
    """Broadcast payload delivered to alert subscribers."""
    trace_id: str
    record_name: str
    alerts: tuple
    emitted_at: datetime = field(default_factory=utcnow)

    @property
    def alert_message(self) -> str:
        messages = " ".join(alert.message for alert in self.alerts)
        return f"Quality issues detected for {self.record_name}: {messages}"

    def to_message(self) -> Dict[str, Any]:
        """Wire representation sent to subscribers."""
        return {
            "type": "quality_alert",
            "trace_id": self.trace_id,
            "record_name": self.record_name,
            "alerts": [alert.to_dict() for alert in self.alerts],
            "alert_message": self.alert_message,
            "emitted_at": self.emitted_at.isoformat(),
        }


class FoodRecordPatch(BaseModel):
    """Partial update accepted from callers."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, description="Name of the food item")
    origin: Optional[str] = Field(None, description="Supplier or farm of origin")
    quality_check_date: Optional[datetime] = Field(None, description="Last quality check date")
    freshness_expiry_date: Optional[datetime] = Field(None, description="Freshness expiry date")
    certifications: Optional[List[str]] = Field(None, description="Safety certifications")
    contamination_risk: Optional[StrictBool] = Field(None, description="Contamination risk flag")

    @field_validator("name", "origin", "quality_check_date", "certifications", "contamination_risk")
    @classmethod
    def _reject_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value

    @field_validator("certifications")
    @classmethod
    def _strip_certifications(cls, value):
        if value is None:
            return value
        cleaned = [cert.strip() for cert in value]
        if any(not cert for cert in cleaned):
            raise ValueError("certification names must be non-empty")
        return cleaned

    def to_fields(self) -> Dict[str, Any]:
        """Fields explicitly provided by the caller, ready to merge."""
        fields = self.model_dump(exclude_unset=True)
        if "certifications" in fields:
            fields["certifications"] = set(fields["certifications"])
        for key in ("quality_check_date", "freshness_expiry_date"):
            if key in fields:
                fields[key] = ensure_utc(fields[key])
        return fields


class FoodRecordCreate(FoodRecordPatch):
    """Payload for creating a record."""

    trace_id: str = Field(..., min_length=1, description="Unique trace identifier")
    name: str = Field(..., description="Name of the food item")

    def to_record(self, now: datetime) -> FoodRecord:
        fields = self.to_fields()
        fields.pop("trace_id", None)
        return FoodRecord(
            trace_id=self.trace_id,
            quality_check_date=fields.pop("quality_check_date", now),
            last_updated=now,
            **fields
        )
