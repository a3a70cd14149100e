"""
Records package.

Defines the food record model and the evaluators that judge it:

- models: FoodRecord, Alert, AlertEvent and request payloads.
- evaluators: Compliance, Trustworthiness and QualityAlert checks sharing
  the ``evaluate(record, now)`` shape.
- locks: Per trace id mutual exclusion.
- service: RecordService tying store, evaluators and broadcaster together.
"""
