"""
Record service: fetch/update a record, evaluate it, broadcast alerts.
"""

from contextlib import nullcontext
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pydantic

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger, set_record_context
from shared.metrics import MetricsCollector
from ..alerts.broadcaster import AlertBroadcaster
from ..store.base import RecordStore
from .evaluators import Evaluator, default_evaluators
from .locks import KeyedLock
from .models import (
    AlertEvent, CheckKind, DERIVED_FIELDS, EvaluationResult, FoodRecord, FoodRecordCreate,
    FoodRecordPatch, RecordEvaluation, SYSTEM_FIELDS, combine_alerts, utcnow
)

CheckSelection = Optional[Iterable[Union[CheckKind, str]]]

# Smallest step that keeps last_updated strictly increasing
LAST_UPDATED_STEP = timedelta(microseconds=1)


def parse_checks(checks: CheckSelection) -> Optional[List[CheckKind]]:
    """Normalize a check selection; None means every check."""
    if checks is None:
        return None
    selected = set()
    for check in checks:
        try:
            selected.add(CheckKind(check))
        except ValueError:
            raise ValidationError(
                f"Unknown check: {check}",
                field="checks",
                details={"allowed": [kind.value for kind in CheckKind]}
            )
    if not selected:
        raise ValidationError("At least one check must be selected", field="checks")
    return [kind for kind in CheckKind if kind in selected]


def _validation_error(exc: pydantic.ValidationError) -> ValidationError:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return ValidationError(
        f"Invalid {field}: {first.get('msg', 'invalid value')}" if field else "Invalid payload",
        field=field,
        details={"errors": [
            {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")}
            for e in errors
        ]}
    )


class RecordService:
    """Orchestrates record reads/updates, evaluation and alert fan-out.

    Every operation on a trace id runs fetch, merge, evaluate, write and
    publish under that id's lock, so concurrent updates never overwrite each
    other and no stale evaluation is broadcast after a newer update.
    """

    def __init__(
        self,
        store: RecordStore,
        broadcaster: AlertBroadcaster,
        evaluators: Optional[Mapping[CheckKind, Evaluator]] = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsCollector] = None
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.evaluators: Dict[CheckKind, Evaluator] = dict(evaluators or default_evaluators())
        self.clock = clock
        self.metrics = metrics
        self.locks = KeyedLock()
        self.logger = get_logger("traceability.records.service")

    async def get_record(self, trace_id: str, checks: CheckSelection = None) -> RecordEvaluation:
        """Fetch a record and evaluate it. Reads never write to the store."""
        selected = parse_checks(checks)
        set_record_context(trace_id)

        with self._timed("get"):
            async with self.locks.hold(trace_id):
                record = await self.store.find_by_trace_id(trace_id)
                if record is None:
                    raise self._not_found(trace_id)

                record, result = self._evaluate(record, self.clock(), selected)
                published = self._publish(record, result)

        return RecordEvaluation(record=record, result=result, event_published=published)

    async def update_record(
        self,
        trace_id: str,
        partial_update: Mapping[str, Any],
        checks: CheckSelection = None
    ) -> RecordEvaluation:
        """Merge a partial update, re-evaluate and persist the derived fields."""
        selected = parse_checks(checks)
        fields = self._validate_patch(partial_update)
        set_record_context(trace_id)

        with self._timed("update"):
            async with self.locks.hold(trace_id):
                existing = await self.store.find_by_trace_id(trace_id)
                if existing is None:
                    raise self._not_found(trace_id)

                now = self.clock()
                last_updated = max(now, existing.last_updated + LAST_UPDATED_STEP)
                merged = existing.merged(fields, last_updated)
                merged, result = self._evaluate(merged, now, selected)

                fields = dict(
                    fields,
                    compliance_status=merged.compliance_status,
                    quality_issue_flag=merged.quality_issue_flag
                )
                stored = await self.store.upsert(trace_id, fields, last_updated)
                if stored is None:
                    raise self._not_found(trace_id)

                # No await between the write and the publish
                published = self._publish(stored, result)

        self._business_event("record_updated")
        self.logger.info(
            "Record updated",
            trace_id=trace_id,
            fields=sorted(fields),
            compliant=stored.compliance_status,
            quality_issue=stored.quality_issue_flag
        )
        return RecordEvaluation(record=stored, result=result, event_published=published)

    async def create_record(self, payload: Mapping[str, Any], checks: CheckSelection = None) -> RecordEvaluation:
        """Create a record through the explicit create path."""
        selected = parse_checks(checks)
        self._reject_protected(payload, allowed={"trace_id"})
        try:
            request = FoodRecordCreate.model_validate(payload)
        except pydantic.ValidationError as e:
            raise _validation_error(e)
        set_record_context(request.trace_id)

        with self._timed("create"):
            async with self.locks.hold(request.trace_id):
                now = self.clock()
                record, result = self._evaluate(request.to_record(now), now, selected)
                stored = await self.store.insert(record)
                published = self._publish(stored, result)

        self._business_event("record_created")
        self.logger.info("Record created", trace_id=stored.trace_id)
        return RecordEvaluation(record=stored, result=result, event_published=published)

    def _validate_patch(self, partial_update: Mapping[str, Any]) -> Dict[str, Any]:
        self._reject_protected(partial_update)
        try:
            fields = FoodRecordPatch.model_validate(partial_update).to_fields()
        except pydantic.ValidationError as e:
            raise _validation_error(e)
        if not fields:
            raise ValidationError("Update must set at least one field", field="body")
        return fields

    @staticmethod
    def _reject_protected(payload: Mapping[str, Any], allowed: Iterable[str] = ()):
        if not isinstance(payload, Mapping):
            raise ValidationError("Body must be a JSON object", field="body")
        for key in sorted(DERIVED_FIELDS):
            if key in payload:
                raise ValidationError(
                    f"{key} is derived from evaluation and cannot be set directly",
                    field=key
                )
        for key in sorted(SYSTEM_FIELDS - set(allowed)):
            if key in payload:
                raise ValidationError(f"{key} cannot be changed", field=key)

    def _evaluate(
        self,
        record: FoodRecord,
        now: datetime,
        selected: Optional[List[CheckKind]]
    ) -> Tuple[FoodRecord, EvaluationResult]:
        """Run the selected checks; derived fields are always recomputed.

        When trustworthiness is requested explicitly a missing expiry date is
        an error; when every check runs by default it is reported as skipped.
        The selection shapes the reported result only; quality alerts are
        always part of the broadcast.
        """
        explicit = selected is not None
        selected = selected if explicit else list(CheckKind)

        compliance = self.evaluators[CheckKind.COMPLIANCE].evaluate(record, now)
        quality_alerts = self.evaluators[CheckKind.QUALITY_ALERT].evaluate(record, now)

        result = EvaluationResult()
        if CheckKind.COMPLIANCE in selected:
            result.compliance = compliance
            self._count(CheckKind.COMPLIANCE, "pass" if compliance.compliant else "fail")

        if CheckKind.TRUSTWORTHINESS in selected:
            try:
                result.trustworthiness_alerts = self.evaluators[CheckKind.TRUSTWORTHINESS].evaluate(record, now)
                self._count(CheckKind.TRUSTWORTHINESS, "alert" if result.trustworthiness_alerts else "pass")
            except ValidationError as e:
                self._count(CheckKind.TRUSTWORTHINESS, "invalid")
                if explicit:
                    raise
                result.skipped[CheckKind.TRUSTWORTHINESS.value] = e.field or "unknown"

        if CheckKind.QUALITY_ALERT in selected:
            result.quality_alerts = quality_alerts
            self._count(CheckKind.QUALITY_ALERT, "alert" if quality_alerts else "pass")

        result.event_alerts = combine_alerts(result.trustworthiness_alerts, quality_alerts)

        record = replace(
            record,
            compliance_status=compliance.compliant,
            quality_issue_flag=bool(quality_alerts)
        )
        return record, result

    def _publish(self, record: FoodRecord, result: EvaluationResult) -> bool:
        alerts = result.event_alerts
        if not alerts:
            return False

        event = AlertEvent(
            trace_id=record.trace_id,
            record_name=record.name,
            alerts=tuple(alerts),
            emitted_at=self.clock()
        )
        self.broadcaster.publish(event)
        self._business_event("alert_published")
        self.logger.info(
            "Quality alert broadcast",
            trace_id=record.trace_id,
            alerts=[alert.kind.value for alert in alerts]
        )
        return True

    def _not_found(self, trace_id: str) -> NotFoundError:
        self.logger.info("Record not found", trace_id=trace_id)
        return NotFoundError("Food item not found.", details={"trace_id": trace_id})

    def _count(self, check: CheckKind, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("record_evaluations_total", check=check.value, outcome=outcome)

    def _business_event(self, event_type: str):
        if self.metrics:
            self.metrics.record_business_event(event_type)

    def _timed(self, operation: str):
        if self.metrics:
            return self.metrics.time_operation("record_operation_duration_seconds", operation=operation)
        return nullcontext()

