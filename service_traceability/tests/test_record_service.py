"""
Unit tests for the Traceability RecordService.
"""

import pytest
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import DuplicateRecordError, NotFoundError, StoreError, ValidationError
from shared.metrics import MetricsCollector
from service_traceability.app.alerts.broadcaster import AlertBroadcaster
from service_traceability.app.records.locks import KeyedLock
from service_traceability.app.records.models import AlertKind, CheckKind, FoodRecord
from service_traceability.app.records.service import RecordService, parse_checks
from service_traceability.app.store.memory import InMemoryRecordStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
ALL_CERTS = {"FDA Approved", "FSSAI Certified", "ISO 22000"}


class FrozenClock:
    """Manually advanced clock."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class SlowStore(InMemoryRecordStore):
    """Store that yields to the event loop on every call."""

    async def find_by_trace_id(self, trace_id):
        await asyncio.sleep(0.01)
        return await super().find_by_trace_id(trace_id)

    async def upsert(self, trace_id, fields, last_updated):
        await asyncio.sleep(0.01)
        return await super().upsert(trace_id, fields, last_updated)


def seed(store, **overrides):
    values = {
        "trace_id": "T1",
        "name": "Basmati Rice",
        "origin": "FarmA",
        "certifications": set(ALL_CERTS),
        "contamination_risk": False,
        "freshness_expiry_date": NOW + timedelta(hours=48),
        "last_updated": NOW - timedelta(days=1),
    }
    values.update(overrides)
    record = FoodRecord(**values)
    store.records[record.trace_id] = record
    return record


async def next_event(handle):
    async for event in handle.events():
        return event


class TestRecordService:
    """Test cases for RecordService."""

    @pytest.fixture
    def store(self):
        return InMemoryRecordStore()

    @pytest.fixture
    def broadcaster(self):
        return AlertBroadcaster()

    @pytest.fixture
    def clock(self):
        return FrozenClock()

    @pytest.fixture
    def service(self, store, broadcaster, clock):
        return RecordService(store=store, broadcaster=broadcaster, clock=clock)

    @pytest.mark.asyncio
    async def test_get_missing_record_is_not_found(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            await service.get_record("T4")

        assert exc_info.value.details["trace_id"] == "T4"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_get_reports_non_compliance_as_result(self, service, store):
        seed(store, certifications={"FDA Approved"})

        evaluation = await service.get_record("T1")

        assert evaluation.result.compliance.compliant is False
        assert evaluation.result.compliance.reasons == [
            "missing FSSAI Certified", "missing ISO 22000"
        ]
        assert evaluation.record.compliance_status is False
        assert evaluation.record.quality_issue_flag is True

    @pytest.mark.asyncio
    async def test_get_clean_record_publishes_nothing(self, service, store, broadcaster):
        seed(store)
        handle = await broadcaster.subscribe()

        evaluation = await service.get_record("T1")

        assert evaluation.event_published is False
        assert evaluation.result.alerts == []
        assert evaluation.record.compliance_status is True
        assert handle.queue.empty()

    @pytest.mark.asyncio
    async def test_get_does_not_write(self, service, store):
        original = seed(store, contamination_risk=True)

        evaluation = await service.get_record("T1")

        assert evaluation.record.quality_issue_flag is True
        assert store.records["T1"].quality_issue_flag is False
        assert store.records["T1"].last_updated == original.last_updated

    @pytest.mark.asyncio
    async def test_near_expiry_and_contamination_are_broadcast_in_order(self, service, store, broadcaster):
        seed(store, trace_id="T3", freshness_expiry_date=NOW + timedelta(hours=5), contamination_risk=True)
        handle = await broadcaster.subscribe()

        evaluation = await service.get_record("T3", checks=["trustworthiness"])

        kinds = [a.kind for a in evaluation.result.trustworthiness_alerts]
        assert kinds == [AlertKind.NEAR_EXPIRY, AlertKind.CONTAMINATION_RISK]
        assert evaluation.result.trustworthiness_alerts[0].details["hours_remaining"] == 5

        event = await next_event(handle)
        assert event.trace_id == "T3"
        assert event.record_name == "Basmati Rice"
        assert [a.kind for a in event.alerts] == kinds
        assert event.emitted_at == NOW

    @pytest.mark.asyncio
    async def test_full_evaluation_merges_alerts_without_duplicates(self, service, store, broadcaster):
        seed(
            store,
            freshness_expiry_date=NOW - timedelta(hours=2),
            contamination_risk=True,
            certifications=set()
        )
        handle = await broadcaster.subscribe()

        evaluation = await service.get_record("T1")

        event = await next_event(handle)
        assert [a.kind for a in event.alerts] == [
            AlertKind.EXPIRED,
            AlertKind.CONTAMINATION_RISK,
            AlertKind.MISSING_CERTIFICATION,
        ]
        assert [a.kind for a in evaluation.result.quality_alerts] == [
            AlertKind.CONTAMINATION_RISK,
            AlertKind.EXPIRED,
            AlertKind.MISSING_CERTIFICATION,
        ]

    @pytest.mark.asyncio
    async def test_missing_expiry_skips_trustworthiness_by_default(self, service, store):
        seed(store, freshness_expiry_date=None)

        evaluation = await service.get_record("T1")

        assert evaluation.result.trustworthiness_alerts is None
        assert evaluation.result.skipped == {"trustworthiness": "freshness_expiry_date"}
        assert evaluation.result.quality_alerts == []

    @pytest.mark.asyncio
    async def test_missing_expiry_fails_when_trustworthiness_requested(self, service, store):
        seed(store, freshness_expiry_date=None)

        with pytest.raises(ValidationError) as exc_info:
            await service.get_record("T1", checks=[CheckKind.TRUSTWORTHINESS])

        assert exc_info.value.field == "freshness_expiry_date"

    @pytest.mark.asyncio
    async def test_selected_checks_only(self, service, store):
        seed(store, contamination_risk=True)

        evaluation = await service.get_record("T1", checks=["compliance"])

        assert evaluation.result.compliance is not None
        assert evaluation.result.trustworthiness_alerts is None
        assert evaluation.result.quality_alerts is None
        assert evaluation.event_published is True
        # Derived fields are recomputed regardless of the selection
        assert evaluation.record.quality_issue_flag is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("checks", [["compliance"], ["trustworthiness"]])
    async def test_quality_issue_is_broadcast_whatever_checks_are_reported(self, service, store, broadcaster, checks):
        seed(store)
        handle = await broadcaster.subscribe()

        evaluation = await service.update_record("T1", {"certifications": ["FDA Approved"]}, checks=checks)

        assert evaluation.result.quality_alerts is None
        assert store.records["T1"].quality_issue_flag is True
        assert evaluation.event_published is True
        event = await next_event(handle)
        assert [a.kind for a in event.alerts] == [AlertKind.MISSING_CERTIFICATION]

    @pytest.mark.asyncio
    async def test_update_merges_and_advances_last_updated(self, service, store, clock):
        original = seed(store)

        evaluation = await service.update_record("T1", {"origin": "FarmX"})

        assert evaluation.record.origin == "FarmX"
        assert evaluation.record.name == original.name
        assert evaluation.record.last_updated == NOW
        assert store.records["T1"].origin == "FarmX"

    @pytest.mark.asyncio
    async def test_last_updated_strictly_advances_with_same_clock(self, service, store):
        seed(store, last_updated=NOW)

        first = await service.update_record("T1", {"origin": "FarmX"})
        second = await service.update_record("T1", {"origin": "FarmY"})

        assert NOW < first.record.last_updated < second.record.last_updated

    @pytest.mark.asyncio
    async def test_update_persists_recomputed_derived_fields(self, service, store):
        seed(store, compliance_status=True)

        evaluation = await service.update_record("T1", {"contamination_risk": True})

        assert evaluation.result.compliance.reasons == ["contamination risk present"]
        assert store.records["T1"].compliance_status is False
        assert store.records["T1"].quality_issue_flag is True

    @pytest.mark.asyncio
    async def test_update_then_get_observes_new_state(self, service, store):
        seed(store)

        await service.update_record("T1", {"contamination_risk": True})
        evaluation = await service.get_record("T1")

        assert evaluation.record.contamination_risk is True
        assert evaluation.result.compliance.compliant is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["compliance_status", "quality_issue_flag"])
    async def test_update_rejects_derived_fields(self, service, store, field):
        seed(store)

        with pytest.raises(ValidationError) as exc_info:
            await service.update_record("T1", {field: True, "origin": "FarmX"})

        assert exc_info.value.field == field
        assert store.records["T1"].origin == "FarmA"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload,field", [
        ({"trace_id": "T9"}, "trace_id"),
        ({"last_updated": "2024-01-01T00:00:00Z"}, "last_updated"),
        ({"colour": "red"}, "colour"),
        ({"contamination_risk": "maybe"}, "contamination_risk"),
        ({"contamination_risk": "yes"}, "contamination_risk"),
        ({"contamination_risk": 1}, "contamination_risk"),
        ({"name": None}, "name"),
        ({"certifications": ["FDA Approved", " "]}, "certifications"),
        ({}, "body"),
    ])
    async def test_update_rejects_invalid_payloads(self, service, store, payload, field):
        seed(store)

        with pytest.raises(ValidationError) as exc_info:
            await service.update_record("T1", payload)

        assert exc_info.value.field == field

    @pytest.mark.asyncio
    async def test_update_rejects_non_object_body(self, service, store):
        seed(store)

        with pytest.raises(ValidationError) as exc_info:
            await service.update_record("T1", ["origin", "FarmX"])

        assert exc_info.value.field == "body"

    @pytest.mark.asyncio
    async def test_update_collapses_duplicate_certifications(self, service, store):
        seed(store)

        evaluation = await service.update_record(
            "T1", {"certifications": ["ISO 22000", "ISO 22000", "FDA Approved"]}
        )

        assert evaluation.record.certifications == {"ISO 22000", "FDA Approved"}

    @pytest.mark.asyncio
    async def test_update_can_clear_expiry_date(self, service, store):
        seed(store)

        evaluation = await service.update_record("T1", {"freshness_expiry_date": None})

        assert evaluation.record.freshness_expiry_date is None
        assert evaluation.result.skipped == {"trustworthiness": "freshness_expiry_date"}

    @pytest.mark.asyncio
    async def test_update_missing_record_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.update_record("T4", {"origin": "FarmX"})

    @pytest.mark.asyncio
    async def test_failed_validation_leaves_record_and_subscribers_untouched(self, service, store, broadcaster):
        seed(store)
        handle = await broadcaster.subscribe()

        with pytest.raises(ValidationError):
            await service.update_record(
                "T1",
                {"freshness_expiry_date": None, "contamination_risk": True},
                checks=["trustworthiness"]
            )

        assert store.records["T1"].contamination_risk is False
        assert handle.queue.empty()

    @pytest.mark.asyncio
    async def test_store_failure_publishes_nothing(self, store, broadcaster, clock):
        seed(store)
        store.upsert = AsyncMock(side_effect=StoreError("connection refused"))
        service = RecordService(store=store, broadcaster=broadcaster, clock=clock)
        handle = await broadcaster.subscribe()

        with pytest.raises(StoreError):
            await service.update_record("T1", {"contamination_risk": True})

        assert handle.queue.empty()

    @pytest.mark.asyncio
    async def test_update_broadcasts_after_write(self, service, store, broadcaster):
        seed(store)
        handle = await broadcaster.subscribe()

        await service.update_record("T1", {"contamination_risk": True})

        event = await next_event(handle)
        assert store.records["T1"].contamination_risk is True
        assert [a.kind for a in event.alerts] == [AlertKind.CONTAMINATION_RISK]

    @pytest.mark.asyncio
    async def test_concurrent_disjoint_updates_both_apply(self, broadcaster, clock):
        store = SlowStore()
        seed(store)
        service = RecordService(store=store, broadcaster=broadcaster, clock=clock)

        await asyncio.gather(
            service.update_record("T1", {"contamination_risk": True}),
            service.update_record("T1", {"origin": "FarmX"}),
        )

        final = store.records["T1"]
        assert final.contamination_risk is True
        assert final.origin == "FarmX"
        assert final.compliance_status is False

    @pytest.mark.asyncio
    async def test_events_follow_update_order(self, broadcaster, clock):
        store = SlowStore()
        seed(store, certifications=set())
        service = RecordService(store=store, broadcaster=broadcaster, clock=clock)
        handle = await broadcaster.subscribe()

        await asyncio.gather(
            service.update_record("T1", {"contamination_risk": True}),
            service.update_record("T1", {"certifications": list(ALL_CERTS)}),
        )

        first = await next_event(handle)
        second = await next_event(handle)
        assert [a.kind for a in first.alerts] == [
            AlertKind.CONTAMINATION_RISK, AlertKind.MISSING_CERTIFICATION
        ]
        assert [a.kind for a in second.alerts] == [AlertKind.CONTAMINATION_RISK]

    @pytest.mark.asyncio
    async def test_create_record(self, service, store, broadcaster):
        handle = await broadcaster.subscribe()

        evaluation = await service.create_record({
            "trace_id": "T7",
            "name": "Alphonso Mango",
            "origin": "Ratnagiri",
            "certifications": ["FDA Approved"],
            "freshness_expiry_date": (NOW + timedelta(days=5)).isoformat(),
        })

        assert store.records["T7"].name == "Alphonso Mango"
        assert evaluation.record.quality_check_date == NOW
        assert evaluation.record.compliance_status is False
        assert evaluation.event_published is True
        event = await next_event(handle)
        assert [a.kind for a in event.alerts] == [AlertKind.MISSING_CERTIFICATION]

    @pytest.mark.asyncio
    async def test_create_duplicate_record(self, service, store):
        seed(store)

        with pytest.raises(DuplicateRecordError):
            await service.create_record({"trace_id": "T1", "name": "Again"})

    @pytest.mark.asyncio
    async def test_create_rejects_derived_fields(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_record({"trace_id": "T8", "name": "Milk", "compliance_status": True})

        assert exc_info.value.field == "compliance_status"

    @pytest.mark.asyncio
    async def test_unknown_check_is_rejected(self, service, store):
        seed(store)

        with pytest.raises(ValidationError) as exc_info:
            await service.get_record("T1", checks=["allergens"])

        assert exc_info.value.field == "checks"

    @pytest.mark.asyncio
    async def test_evaluation_metrics(self, store, broadcaster, clock):
        metrics = MetricsCollector("traceability")
        service = RecordService(store=store, broadcaster=broadcaster, clock=clock, metrics=metrics)
        seed(store, certifications=set())

        await service.get_record("T1")

        registry = metrics.registry
        assert registry.get_sample_value(
            "record_evaluations_total", {"check": "compliance", "outcome": "fail"}
        ) == 1
        assert registry.get_sample_value(
            "record_evaluations_total", {"check": "quality_alert", "outcome": "alert"}
        ) == 1

    @pytest.mark.asyncio
    async def test_business_events_are_counted(self, store, broadcaster, clock):
        metrics = MetricsCollector("traceability")
        service = RecordService(store=store, broadcaster=broadcaster, clock=clock, metrics=metrics)
        seed(store)

        await service.update_record("T1", {"origin": "FarmX"})
        await service.update_record("T1", {"contamination_risk": True})
        await service.create_record({"trace_id": "T9", "name": "Saffron"})

        def events(event_type):
            return metrics.registry.get_sample_value(
                "business_events_total", {"event_type": event_type, "service": "traceability"}
            )

        assert events("record_updated") == 2
        assert events("record_created") == 1
        # Contamination on T1 and missing certifications on T9
        assert events("alert_published") == 2


class TestParseChecks:
    """Test cases for check selection parsing."""

    def test_none_means_all(self):
        assert parse_checks(None) is None

    def test_order_follows_check_kind(self):
        assert parse_checks(["quality_alert", "compliance"]) == [
            CheckKind.COMPLIANCE, CheckKind.QUALITY_ALERT
        ]

    def test_empty_selection_is_invalid(self):
        with pytest.raises(ValidationError):
            parse_checks([])


class TestKeyedLock:
    """Test cases for KeyedLock."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("T1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("T1"):
                inside.set()
                await asyncio.sleep(0.05)

        task = asyncio.create_task(holder())
        await inside.wait()

        async with locks.hold("T2"):
            assert locks.is_locked("T1")

        await task

    @pytest.mark.asyncio
    async def test_entries_are_released(self):
        locks = KeyedLock()

        async with locks.hold("T1"):
            assert locks.active_keys() == ["T1"]

        assert locks.active_keys() == []

    @pytest.mark.asyncio
    async def test_entry_released_after_exception(self):
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("T1"):
                raise RuntimeError("boom")

        assert locks.active_keys() == []
