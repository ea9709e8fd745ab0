# worker_main.py
"""
DB Queue Worker for payment-intent settlement

Addressing
----------
Each QueueMessage row has a receiver_id column. This worker process is
identified by QUEUE_RECEIVER_ID and polls ONLY messages where:
    QueueMessage.receiver_id == QUEUE_RECEIVER_ID

Replies go back to the original sender_id as "<type>_response" messages.

Message types
-------------
  - "process_intent" payload {"intent_id": ...}  -> IntentService.process_intent
  - "intent_status"  payload {"intent_id": ...}  -> IntentService.intent_status
  - "submit_intent"  payload {family_id, clinic_id, fiat_amount, input_method, input_tx_ref?}

Anything else is answered with an error payload.

Concurrency
-----------
max_concurrent is a global cap on jobs running in this process. A
process_intent for an intent already in flight here is answered with
"already_processing" instead of starting a second run; across processes the
per-intent lease taken by IntentSolver keeps runs exclusive.
"""

import os
import asyncio
import logging
import traceback
from typing import Any, Callable, Dict

from dotenv import load_dotenv

load_dotenv()

from settlement.db_helpers import get_session_factory
from settlement.entities import QueueMessage
from settlement.inflight_cache import IN_FLIGHT_INTENTS, InFlightIntents
from settlement.intent_service import IntentService


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("settlement_worker")

QUEUE_RECEIVER_ID = os.getenv("QUEUE_RECEIVER_ID")
CONCURRENT_INSTANCES = int(os.getenv("CONCURRENT_INSTANCES", "4"))


class IntentApp:
    def __init__(self, service: IntentService, in_flight: InFlightIntents = IN_FLIGHT_INTENTS):
        self.service = service
        self.in_flight = in_flight
        self._routes: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "process_intent": self._process_intent,
            "intent_status": service.intent_status,
            "submit_intent": service.submit_intent,
        }

    def sweep(self) -> None:
        removed = self.in_flight.sweep_finished(self.service.SessionFactory)
        if removed:
            logger.debug("InFlightIntents sweep: removed %d finished intents", removed)

    def handle(self, job: Dict[str, Any]) -> Dict[str, Any]:
        msg_type = job.get("type") or "unknown"
        route = self._routes.get(msg_type)
        if route is None:
            return {"status": "error", "message": f"Unknown message type '{msg_type}'"}
        return route(job.get("payload") or {})

    def _process_intent(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        intent_id = payload.get("intent_id")
        if not self.in_flight.try_add(intent_id):
            return {"success": False, "intent_id": intent_id, "status": "already_processing"}
        try:
            return self.service.process_intent(payload)
        finally:
            self.in_flight.remove(intent_id)


class AppHost:
    def __init__(self, Session, receiver_id: str, app: IntentApp):
        self.SessionFactory = Session
        self.receiver_id = receiver_id
        self.app = app

    def _send_queue_message(
        self,
        to_receiver_id: str,
        msg_type: str,
        payload: Dict[str, Any],
    ) -> None:
        session = self.SessionFactory()
        try:
            session.add(
                QueueMessage(
                    sender_id=str(self.receiver_id),
                    receiver_id=str(to_receiver_id),
                    type=msg_type,
                    payload=payload,
                )
            )
            session.commit()
        finally:
            session.close()

    def process_queue_job(self, job: Dict[str, Any]) -> None:
        sender = str(job.get("sender_id") or "")
        msg_type = job.get("type") or "unknown"

        try:
            response_payload = self.app.handle(job)
        except Exception as e:
            logger.info("Error processing job id=%s type=%s: %s", job.get("id"), msg_type, e)
            traceback.print_exc()
            response_payload = {"status": "error", "message": str(e)}

        response_payload.setdefault("correlation_id", job.get("id"))
        self._send_queue_message(sender, f"{msg_type}_response", response_payload)


class AsyncGuard:
    def __init__(
        self,
        host: AppHost,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.host = host
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight = set()

    async def _run_job(self, job: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.host.process_queue_job, job)
        finally:
            self._in_flight.discard(job["id"])

    def _take_jobs(self, limit: int) -> list:
        session = self.host.SessionFactory()
        try:
            rows = (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == str(self.host.receiver_id))
                .order_by(QueueMessage.created_at.asc())
                .with_for_update(skip_locked=True)
                .limit(limit)
                .all()
            )

            jobs = [
                {
                    "id": r.id,
                    "sender_id": r.sender_id,
                    "receiver_id": r.receiver_id,
                    "type": r.type,
                    "payload": r.payload,
                }
                for r in rows
            ]

            for r in rows:
                session.delete(r)

            session.commit()
            return jobs
        finally:
            session.close()

    async def run(self) -> None:
        logger.info("AsyncGuard running - receiver_id=%s (max_concurrent=%d)",
                    self.host.receiver_id, self.max_concurrent)

        while True:
            self.host.app.sweep()

            available_slots = self.max_concurrent - len(self._in_flight)
            if available_slots <= 0:
                await asyncio.sleep(self.poll_interval)
                continue

            jobs = self._take_jobs(available_slots)
            if not jobs:
                await asyncio.sleep(self.poll_interval)
                continue

            for job in jobs:
                if job["id"] in self._in_flight:
                    continue
                self._in_flight.add(job["id"])
                asyncio.create_task(self._run_job(job))

            await asyncio.sleep(self.poll_interval)


def main() -> None:
    if not QUEUE_RECEIVER_ID:
        raise RuntimeError("QUEUE_RECEIVER_ID env var is required for DB queue mode")

    session_factory = get_session_factory()
    app = IntentApp(IntentService(session_factory))
    host = AppHost(session_factory, receiver_id=QUEUE_RECEIVER_ID, app=app)
    guard = AsyncGuard(host=host, max_concurrent=CONCURRENT_INSTANCES)
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
