"""
Rule evaluators for the Traceability Service.

All evaluators share the ``evaluate(record, now)`` shape and are keyed by
:class:`CheckKind`. They are pure: no store access, no broadcasting.
"""

import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from shared.config import DEFAULT_REQUIRED_CERTIFICATIONS
from shared.errors import ValidationError
from shared.logging import get_logger
from .models import Alert, AlertKind, CheckKind, ComplianceResult, FoodRecord, ensure_utc

HOUR = timedelta(hours=1)


def missing_certifications(record: FoodRecord, required: Sequence[str]) -> List[str]:
    """Required certifications absent from the record, in required order."""
    return [cert for cert in required if cert not in record.certifications]


def hours_until(expiry: datetime, now: datetime) -> int:
    """Whole hours from ``now`` until ``expiry``, floored."""
    return math.floor((ensure_utc(expiry) - ensure_utc(now)) / HOUR)


def contamination_alert() -> Alert:
    return Alert(AlertKind.CONTAMINATION_RISK, "Food item has a contamination risk.")


def expired_alert(expiry: datetime) -> Alert:
    return Alert(
        AlertKind.EXPIRED,
        "Food item has expired.",
        {"freshness_expiry_date": expiry.isoformat()}
    )


class Evaluator:
    """Base class for record evaluators."""

    kind: CheckKind

    def __init__(self, required_certifications: Optional[Iterable[str]] = None):
        self.required_certifications = list(
            required_certifications
            if required_certifications is not None
            else DEFAULT_REQUIRED_CERTIFICATIONS
        )
        self.logger = get_logger(f"traceability.evaluators.{self.kind.value}")

    def evaluate(self, record: FoodRecord, now: datetime):
        raise NotImplementedError


class ComplianceEvaluator(Evaluator):
    """Regulatory pass/fail check: certifications plus contamination."""

    kind = CheckKind.COMPLIANCE

    def evaluate(self, record: FoodRecord, now: Optional[datetime] = None) -> ComplianceResult:
        reasons = [
            f"missing {cert}"
            for cert in missing_certifications(record, self.required_certifications)
        ]
        if record.contamination_risk:
            reasons.append("contamination risk present")

        result = ComplianceResult(compliant=not reasons, reasons=reasons)
        self.logger.debug(
            "Compliance evaluated",
            trace_id=record.trace_id,
            compliant=result.compliant,
            reasons=reasons
        )
        return result


class TrustworthinessEvaluator(Evaluator):
    """Freshness and contamination check.

    Requires ``freshness_expiry_date``; without it freshness cannot be
    assessed and a :class:`ValidationError` is raised.
    """

    kind = CheckKind.TRUSTWORTHINESS

    def __init__(self, required_certifications: Optional[Iterable[str]] = None, near_expiry_hours: int = 24):
        super().__init__(required_certifications)
        self.near_expiry_hours = near_expiry_hours

    def evaluate(self, record: FoodRecord, now: datetime) -> List[Alert]:
        if record.freshness_expiry_date is None:
            raise ValidationError(
                f"Cannot assess freshness of {record.trace_id}: freshness_expiry_date is not set",
                field="freshness_expiry_date",
                details={"trace_id": record.trace_id}
            )

        alerts: List[Alert] = []
        remaining = hours_until(record.freshness_expiry_date, now)

        if remaining < 0:
            alerts.append(expired_alert(record.freshness_expiry_date))
        elif remaining < self.near_expiry_hours:
            alerts.append(Alert(
                AlertKind.NEAR_EXPIRY,
                f"Food item is nearing expiration ({remaining} hours remaining).",
                {"hours_remaining": remaining}
            ))

        if record.contamination_risk:
            alerts.append(contamination_alert())

        return alerts


class QualityAlertEvaluator(Evaluator):
    """Union of contamination, expiry and missing-certification alerts.

    An absent expiry date counts as not expired.
    """

    kind = CheckKind.QUALITY_ALERT

    def evaluate(self, record: FoodRecord, now: datetime) -> List[Alert]:
        alerts: List[Alert] = []

        if record.contamination_risk:
            alerts.append(contamination_alert())

        expiry = record.freshness_expiry_date
        if expiry is not None and expiry < ensure_utc(now):
            alerts.append(expired_alert(expiry))

        missing = missing_certifications(record, self.required_certifications)
        if missing:
            alerts.append(Alert(
                AlertKind.MISSING_CERTIFICATION,
                f"Missing required certifications: {', '.join(missing)}",
                {"missing": missing}
            ))

        return alerts


def default_evaluators(
    required_certifications: Optional[Iterable[str]] = None,
    near_expiry_hours: int = 24
) -> Dict[CheckKind, Evaluator]:
    """Build one evaluator per check kind, in evaluation order."""
    required = list(required_certifications) if required_certifications is not None else None
    return {
        CheckKind.COMPLIANCE: ComplianceEvaluator(required),
        CheckKind.TRUSTWORTHINESS: TrustworthinessEvaluator(required, near_expiry_hours),
        CheckKind.QUALITY_ALERT: QualityAlertEvaluator(required),
    }
