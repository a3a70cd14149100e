"""
Traceability Service package.

This package evaluates food traceability records against safety and
freshness rules and pushes the findings to live subscribers. It provides:

- app.main: API surface for record reads, updates, creation and the
  alert WebSocket.
- app.records: Record models, the evaluator family, the per-record lock
  and the RecordService orchestrating them.
- app.alerts: The AlertBroadcaster fanning AlertEvents out to subscribers.
- app.store: Record store interface with in-memory and PostgreSQL backends.

Guidelines:
- Non-compliance and alerts are results, not errors.
- Derived fields (compliance_status, quality_issue_flag) only ever come
  from evaluators.
"""
