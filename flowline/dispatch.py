"""Trigger dispatcher: turns API calls, webhooks and bus events into instances."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from .contracts import WorkItemKind
from .errors import ExpressionError, InvalidTransition, QueueFull, ValidationError
from .events import Event
from .expressions import evaluate_condition
from .models import (
    DefinitionStatus,
    TriggerKind,
    WorkflowDefinition,
    WorkflowInstance,
    execution_key,
)
from .persistence.repository import Repository
from .signing import verify_request

if TYPE_CHECKING:
    from .engine import Engine

logger = logging.getLogger(__name__)


def _filter_passes(expression: Optional[str], payload: Dict[str, Any], what: str) -> bool:
    if not expression:
        return True
    try:
        return evaluate_condition(expression, {"event": payload, **payload})
    except ExpressionError as exc:
        logger.warning(f"Event filter of {what} failed, treating as no match: {exc}")
        return False


class TriggerDispatcher:
    def __init__(self, engine: "Engine") -> None:
        self.engine = engine
        self.clock = engine.clock

    async def start_instance(
        self,
        definition_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        *,
        trigger_kind: TriggerKind = TriggerKind.MANUAL,
        trigger_data: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> WorkflowInstance:
        """Create an instance of an active definition and enqueue its entry step.

        Raises:
            NotFound: the definition does not exist
            InvalidTransition: the definition is not active
            QueueFull: the queue has no room at the instance's priority
            ValidationError: the input does not match the declared variables
        """

        async with self.engine.store.transaction() as tx:
            definition = await Repository(tx).get_definition(definition_id)
        self._check_active(definition)
        effective = (
            priority
            or definition.definition.effective_settings.priority
            or self.engine.config.engine.default_priority
        )
        if not await self.engine.queue.has_capacity(effective):
            raise QueueFull(f"Queue is full at priority {effective}", details={"priority": effective})

        async with self.engine.store.transaction() as tx:
            repo = Repository(tx)
            # re-read: the definition may have been deactivated meanwhile
            definition = await repo.get_definition(definition_id)
            self._check_active(definition)
            instance = await self.engine.executor.create_instance(
                repo,
                definition,
                dict(input_data or {}),
                trigger_kind=trigger_kind,
                trigger_data=trigger_data,
                initiated_by=initiated_by,
                priority=priority,
            )
        await self.engine.executor.relay()
        return instance

    @staticmethod
    def _check_active(definition: WorkflowDefinition) -> None:
        if definition.status != DefinitionStatus.ACTIVE:
            raise InvalidTransition(
                f"Definition {definition.id} is {definition.status.value}, not active",
                details={"definitionId": definition.id, "status": definition.status.value},
            )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        definition_id: str,
        body: Union[str, bytes],
        headers: Mapping[str, str],
    ) -> WorkflowInstance:
        """Verify a signed webhook call and start an instance with its JSON body as input."""

        async with self.engine.store.transaction() as tx:
            definition = await Repository(tx).get_definition(definition_id)
        if definition.trigger_kind != TriggerKind.WEBHOOK:
            raise InvalidTransition(f"Definition {definition_id} is not webhook-triggered")
        secret = definition.trigger_config.get("secret")
        if not secret:
            raise ValidationError(f"Definition {definition_id} has no webhook secret")
        verify_request(
            body,
            headers,
            secret,
            self.clock.now_ms(),
            skew_ms=self.engine.config.engine.webhook_skew_ms,
        )
        try:
            payload = json.loads(body) if body else {}
        except ValueError as exc:
            raise ValidationError(f"Webhook body is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            payload = {"payload": payload}
        logger.info(f"Verified webhook for definition {definition_id}")
        return await self.start_instance(
            definition_id,
            payload,
            trigger_kind=TriggerKind.WEBHOOK,
            trigger_data={"headers": {k: v for k, v in headers.items() if k.lower().startswith("x-")}},
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> Dict[str, List[str]]:
        """Start matching event-triggered definitions and wake matching waits.

        Events are deduplicated by id, so redelivery by the bus is harmless.
        """

        async with self.engine.store.transaction() as tx:
            repo = Repository(tx)
            if not await repo.mark_event_seen(event.id, self.clock.now_ms()):
                logger.debug(f"Ignoring duplicate event {event.id}")
                return {"started": [], "woken": []}
            definitions = await repo.list_definitions()

        started: List[str] = []
        for definition in definitions:
            if (
                definition.status != DefinitionStatus.ACTIVE
                or definition.trigger_kind != TriggerKind.EVENT
                or definition.trigger_config.get("topic") != event.topic
            ):
                continue
            if not _filter_passes(definition.trigger_config.get("filter"), event.payload, definition.name):
                continue
            try:
                instance = await self.start_instance(
                    definition.id,
                    event.payload,
                    trigger_kind=TriggerKind.EVENT,
                    trigger_data={"eventId": event.id, "topic": event.topic},
                )
            except (QueueFull, ValidationError) as exc:
                logger.warning(f"Event {event.id} could not start {definition.name}: {exc}")
                continue
            started.append(instance.id)

        woken = await self.wake_waiters(event.topic, event.payload)
        return {"started": started, "woken": woken}

    async def wake_waiters(
        self, topic: str, payload: Dict[str, Any], instance_id: Optional[str] = None, step_id: Optional[str] = None
    ) -> List[str]:
        """Resume steps waiting on ``topic`` whose filter accepts ``payload``."""

        woken: List[str] = []
        async with self.engine.store.transaction() as tx:
            repo = Repository(tx)
            for subscription in await repo.subscriptions_for(topic):
                if subscription.topic != topic:
                    continue
                if instance_id is not None and subscription.instance_id != instance_id:
                    continue
                if step_id is not None and subscription.step_id != step_id:
                    continue
                if not _filter_passes(subscription.filter, payload, subscription.key):
                    continue
                instance = await repo.find_instance(subscription.instance_id)
                step = await repo.get_step(
                    execution_key(subscription.instance_id, subscription.step_id, subscription.attempt)
                )
                await repo.delete_subscription(subscription.key)
                if instance is None or step is None:
                    continue
                await self.engine.executor.stage_item(
                    repo, instance, step, WorkItemKind.RESUME, data={"reason": "event", "payload": payload}
                )
                woken.append(step.key)
        if woken:
            logger.info(f"Event on {topic} woke {len(woken)} waiting steps")
            await self.engine.executor.relay()
        return woken

    async def listen(self, topics: List[str], lifespan: Optional[float] = None) -> int:
        """Consume ``topics`` from the event bus until ``lifespan`` elapses."""

        async def consume(topic: str) -> int:
            handled = 0
            async for event in self.engine.events.subscribe(topic, lifespan=lifespan):
                await self.handle_event(event)
                handled += 1
            return handled

        counts = await asyncio.gather(*(consume(topic) for topic in topics))
        return sum(counts)
