"""
Traceability service: record evaluation API and live alert stream.
"""

import json
from typing import Any, Dict, Optional

from fastapi import Body, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AccessLayerException

from .alerts.broadcaster import AlertBroadcaster
from .records.evaluators import default_evaluators
from .records.models import AlertEvent, RecordEvaluation
from .records.service import RecordService
from .store import create_record_store
from .store.base import RecordStore

SERVICE_NAME = "traceability"
SERVICE_PORT = 8020


def render_evaluation(evaluation: RecordEvaluation, message: Optional[str] = None) -> Dict[str, Any]:
    """Flatten a record and its evaluation into the response body."""
    body = evaluation.record.to_dict()
    body.update(evaluation.result.to_dict())
    body["alert_published"] = evaluation.event_published
    if message:
        body["message"] = message
    return body


def _split_checks(checks: Optional[str]):
    if checks is None:
        return None
    return [check.strip() for check in checks.split(",") if check.strip()]


class TraceabilityService(BaseService):
    """Traceability service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[RecordStore] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))

        self.store = store or create_record_store(self.config)
        self.broadcaster = AlertBroadcaster(
            max_subscribers=self.config.max_subscribers,
            queue_size=self.config.subscriber_queue_size,
            metrics=self.metrics
        )
        self.record_service = RecordService(
            store=self.store,
            broadcaster=self.broadcaster,
            evaluators=default_evaluators(
                self.config.required_certifications,
                self.config.near_expiry_hours
            ),
            metrics=self.metrics
        )

        self._setup_traceability_routes()
        self.app.state.traceability_service = self

    def _setup_traceability_routes(self):
        """Set up traceability-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Food Traceability - Traceability Service",
                "version": "1.0.0",
                "capabilities": ["compliance", "trustworthiness", "quality_alerts", "websocket"],
                "required_certifications": list(self.config.required_certifications)
            }

        @self.app.get("/api/food/{trace_id}")
        async def get_food_item(
            trace_id: str,
            checks: Optional[str] = Query(None, description="Comma separated checks to run")
        ):
            """Get traceability details and evaluation of a food item."""
            evaluation = await self.record_service.get_record(trace_id, _split_checks(checks))
            return render_evaluation(evaluation)

        @self.app.post("/api/food/{trace_id}")
        async def update_food_item(
            trace_id: str,
            payload: Any = Body(...),
            checks: Optional[str] = Query(None, description="Comma separated checks to run")
        ):
            """Update traceability data of a food item."""
            evaluation = await self.record_service.update_record(
                trace_id, payload, _split_checks(checks)
            )
            return render_evaluation(
                evaluation,
                "Food item traceability and quality information updated successfully."
            )

        @self.app.post("/api/food")
        async def create_food_item(payload: Any = Body(...)):
            """Register a new food item."""
            evaluation = await self.record_service.create_record(payload)
            return JSONResponse(
                status_code=201,
                content=render_evaluation(evaluation, "Food item registered successfully.")
            )

        @self.app.get("/alerts/stats")
        async def alert_stats():
            """Get alert broadcaster statistics."""
            return self.broadcaster.get_stats()

        @self.app.websocket("/ws/alerts")
        async def alerts_websocket(websocket: WebSocket):
            """Live quality alert stream."""
            await websocket.accept()

            async def send_event(event: AlertEvent):
                await websocket.send_text(json.dumps(event.to_message()))

            handle = None
            try:
                handle = await self.broadcaster.subscribe(
                    sink=send_event,
                    metadata={"client": websocket.client.host if websocket.client else None}
                )
                await websocket.send_text(json.dumps({
                    "type": "subscribed",
                    "subscription_id": handle.subscription_id
                }))

                while True:
                    message_text = await websocket.receive_text()
                    await websocket.send_text(json.dumps(self._handle_client_message(message_text)))

            except WebSocketDisconnect:
                pass
            except AccessLayerException as e:
                await websocket.send_text(json.dumps({"error": e.code, "message": e.message}))
                await websocket.close()
            finally:
                if handle is not None:
                    await self.broadcaster.unsubscribe(handle)

    def _handle_client_message(self, message_text: str) -> Dict[str, Any]:
        try:
            message = json.loads(message_text)
        except json.JSONDecodeError:
            return {"error": "INVALID_JSON", "message": "Message must be valid JSON"}

        if not isinstance(message, dict) or "action" not in message:
            return {"error": "INVALID_FORMAT", "message": "Message must have 'action' field"}

        if message["action"] == "ping":
            return {"type": "pong"}

        return {
            "error": "UNKNOWN_ACTION",
            "message": f"Unknown action: {message['action']}",
            "available_actions": ["ping"]
        }

    async def _check_dependencies(self):
        """Check traceability service dependencies."""
        return {
            "record_store": "ok" if await self.store.health_check() else "error",
            "alert_subscribers": len(self.broadcaster.subscribers)
        }

    async def start(self):
        """Start traceability service components."""
        await self.store.start()
        await self.broadcaster.start()
        self.logger.info("Traceability service started", store_backend=self.config.store_backend)

    async def stop(self):
        """Stop traceability service components."""
        await self.broadcaster.stop()
        await self.store.stop()
        self.logger.info("Traceability service stopped")


def create_app():
    """Create traceability service application."""
    service = TraceabilityService()
    return service.app


if __name__ == "__main__":
    service = TraceabilityService()
    service.run()
