"""
Queue handoff between the webhook endpoint and event processing.

The endpoint only enqueues the raw payload. A fixed pool of worker tasks
drains the bounded queue and runs validation, classification and the state
transaction for each event. Forwarding a stored message runs as its own
tracked task, so slow platforms never hold up the workers.
"""

import asyncio
import logging
from typing import Any, Optional

from pydantic import ValidationError

from app.classifier import ClassifiedEvent, EventKind, classify
from app.errors import DeviceNotFound, InvalidEvent, StateTransactionFailure
from app.forwarder import ForwardOrchestrator
from app.heartbeat import HeartbeatMonitor
from app.metrics import record_event_dropped, record_webhook_event
from app.schemas import WebhookEvent
from app.state_store import EventOutcome, StateStore


def offline_callback(state_store: StateStore):
    """Heartbeat expiry handler that runs the offline transition off the event loop."""
    async def expire(dev_id: str) -> bool:
        return await asyncio.to_thread(state_store.mark_device_offline, dev_id)
    return expire


class EventPipeline:
    """Bounded event queue, the workers that drain it and their forward tasks."""

    def __init__(
        self,
        state_store: StateStore,
        heartbeat: HeartbeatMonitor,
        forwarder: ForwardOrchestrator,
        workers: int = 4,
        queue_size: int = 1000,
        logger: Optional[logging.Logger] = None,
    ):
        self._state = state_store
        self._heartbeat = heartbeat
        self._forwarder = forwarder
        self._worker_count = max(1, workers)
        self._queue_size = queue_size
        self._log = logger or logging.getLogger(__name__)
        self._queue: Optional[asyncio.Queue] = None
        self._workers: list[asyncio.Task] = []
        self._forwards: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def forwards_in_flight(self) -> int:
        return len(self._forwards)

    async def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"event-worker-{i}")
            for i in range(self._worker_count)
        ]
        self._log.info("Event pipeline started", extra={"workers": self._worker_count, "queue_size": self._queue_size})

    def submit(self, payload: Any) -> bool:
        """
        Hand a raw payload to the workers without waiting.

        Returns:
            False if the pipeline is not running or the queue is full
        """
        if self._queue is None or not self._workers:
            self._log.error("Event pipeline not running, event dropped", extra={"payload": payload})
            record_event_dropped()
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._log.warning("Event queue full, event dropped", extra={"payload": payload})
            record_event_dropped()
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued event has been processed and forwarded."""
        if self._queue is not None:
            await self._queue.join()
        while self._forwards:
            await asyncio.gather(*list(self._forwards), return_exceptions=True)

    async def stop(self, drain_timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + drain_timeout

        if self._queue is not None and self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                self._log.warning(
                    "Event queue not drained before shutdown",
                    extra={"pending": self._queue.qsize()},
                )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        await self._finish_forwards(max(0.0, deadline - loop.time()))
        await self._heartbeat.shutdown()
        self._log.info("Event pipeline stopped")

    async def _finish_forwards(self, timeout: float) -> None:
        tasks = list(self._forwards)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            self._log.warning("Forwarding cancelled at shutdown", extra={"pending": len(pending)})
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _worker(self, index: int) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self.process(payload)
            except Exception:
                self._log.exception(
                    "Unhandled error while processing event",
                    extra={"worker": index, "payload": payload},
                )
            finally:
                self._queue.task_done()

    async def process(self, payload: Any) -> Optional[EventOutcome]:
        """
        Run one event through validation and the state transaction.

        A created message is handed to a forward task; `join()` waits for it.
        Returns None when the event was dropped.
        """
        try:
            event = WebhookEvent.model_validate(payload)
        except ValidationError as e:
            record_webhook_event("invalid")
            self._log.warning(
                "Invalid webhook payload dropped",
                extra={"payload": payload, "error": e.errors(include_url=False)},
            )
            return None

        classified = classify(event, raw=payload)
        record_webhook_event(classified.kind.value)
        log_fields = {
            "event_type": classified.kind.value,
            "type": event.type,
            "dev_id": event.dev_id,
            "slot": event.slot,
        }

        if classified.kind == EventKind.UNKNOWN:
            self._log.info("Unhandled event type", extra=log_fields)
            return None

        try:
            if classified.kind == EventKind.HEARTBEAT:
                return await self._heartbeat_event(classified, log_fields)
            outcome = await asyncio.to_thread(self._state.apply_event, classified)
        except DeviceNotFound:
            self._log.warning("Device not registered, event dropped", extra=log_fields)
            return None
        except InvalidEvent as e:
            self._log.warning("Event dropped", extra={**log_fields, "reason": e.reason})
            return None
        except StateTransactionFailure as e:
            self._log.error(
                "State transaction failed, event dropped",
                extra={**log_fields, "error": str(e.cause), "payload": payload},
            )
            return None

        message = outcome.message
        self._log.info(
            "Event stored",
            extra={
                **log_fields,
                "sim_card_id": outcome.sim_card.id if outcome.sim_card is not None else None,
                "message_pk": message.id if message is not None else None,
            },
        )

        if message is not None:
            self._spawn_forward(outcome, {**log_fields, "message_pk": message.id})
        return outcome

    async def _heartbeat_event(self, classified: ClassifiedEvent, log_fields: dict) -> EventOutcome:
        dev_id = classified.dev_id
        async with self._heartbeat.device_lock(dev_id):
            # Re-arm before the write so an expiry already due cannot demote this heartbeat
            self._heartbeat.on_heartbeat(dev_id)
            try:
                device = await asyncio.to_thread(self._state.record_heartbeat, dev_id)
            except DeviceNotFound:
                self._heartbeat.discard(dev_id)
                raise
        self._log.debug("Heartbeat received", extra={**log_fields, "cnt": classified.event.count})
        return EventOutcome(event=classified, device=device)

    def _spawn_forward(self, outcome: EventOutcome, log_fields: dict) -> None:
        task = asyncio.create_task(
            self._forward(outcome, log_fields),
            name=f"forward-{log_fields['message_pk']}",
        )
        self._forwards.add(task)
        task.add_done_callback(self._forwards.discard)

    async def _forward(self, outcome: EventOutcome, log_fields: dict) -> None:
        try:
            await self._forwarder.forward(outcome.message, outcome.device, outcome.sim_card)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._log.exception("Forwarding failed", extra=log_fields)
