"""Delivery adapters: ``deliver(target, payload) -> DeliveryOutcome``.

Email, storage and other transports are supplied by the host application
through :class:`DeliveryRegistry`; flowline ships log, webhook, memory and
``none`` adapters.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from .clock import Clock, SystemClock
from .constants import WEBHOOK_SIGNATURE_HEADER, WEBHOOK_TIMESTAMP_HEADER
from .contracts import DeliveryOutcome
from .errors import NotFound
from .signing import WebhookSigner

logger = logging.getLogger(__name__)

DELIVERED = "delivered"
FAILED = "failed"
NOT_APPLICABLE = "not_applicable"


class DeliveryAdapter(Protocol):
    async def deliver(self, target: Dict[str, Any], payload: Dict[str, Any]) -> DeliveryOutcome:
        """Send ``payload`` to ``target``."""


class LogDeliveryAdapter:
    """Writes the payload to the log; always succeeds."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level
        self._counter = 0

    async def deliver(self, target: Dict[str, Any], payload: Dict[str, Any]) -> DeliveryOutcome:
        self._counter += 1
        logger.log(self.level, f"Delivery to {target}: {json.dumps(payload, default=str)}")
        return DeliveryOutcome(status=DELIVERED, provider_message_id=f"log-{self._counter}")


class NullDeliveryAdapter:
    """Used when a report has no delivery configured."""

    async def deliver(self, target: Dict[str, Any], payload: Dict[str, Any]) -> DeliveryOutcome:
        return DeliveryOutcome(status=NOT_APPLICABLE)


class MemoryDeliveryAdapter:
    """Keeps deliveries in memory; can be told to fail the next N calls."""

    def __init__(self, fail_times: int = 0, retriable: bool = True) -> None:
        self.delivered: List[Dict[str, Any]] = []
        self.attempts = 0
        self.fail_times = fail_times
        self.retriable = retriable

    async def deliver(self, target: Dict[str, Any], payload: Dict[str, Any]) -> DeliveryOutcome:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            return DeliveryOutcome(status=FAILED, retriable=self.retriable, error="simulated failure")
        self.delivered.append({"target": target, "payload": payload})
        return DeliveryOutcome(status=DELIVERED, provider_message_id=f"mem-{len(self.delivered)}")


class WebhookDeliveryAdapter:
    """POSTs the payload as JSON to ``target['url']``.

    When ``target`` carries a ``secret`` the body is signed with the same
    HMAC scheme the webhook trigger verifies.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        clock: Optional[Clock] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self.timeout = timeout
        self.clock = clock or SystemClock()
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=self.timeout))
        self._signer = WebhookSigner()

    async def deliver(self, target: Dict[str, Any], payload: Dict[str, Any]) -> DeliveryOutcome:
        url = target.get("url")
        if not url:
            return DeliveryOutcome(status=FAILED, retriable=False, error="webhook target has no url")
        body = json.dumps(payload, sort_keys=True, default=str)
        headers = {"Content-Type": "application/json", **target.get("headers", {})}
        secret = target.get("secret")
        if secret:
            headers[WEBHOOK_SIGNATURE_HEADER] = self._signer.sign(body, secret)
            headers[WEBHOOK_TIMESTAMP_HEADER] = str(self.clock.now_ms())
        try:
            async with self._client_factory() as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(f"Webhook delivery to {url} failed: {exc}")
            return DeliveryOutcome(status=FAILED, retriable=True, error=str(exc) or type(exc).__name__)

        if response.is_success:
            message_id = response.headers.get("X-Message-Id")
            return DeliveryOutcome(status=DELIVERED, provider_message_id=message_id)
        retriable = response.status_code >= 500 or response.status_code == 429
        return DeliveryOutcome(
            status=FAILED,
            retriable=retriable,
            error=f"HTTP {response.status_code} from {url}",
        )


class DeliveryRegistry:
    """Named delivery adapters."""

    def __init__(self) -> None:
        self._adapters: Dict[str, DeliveryAdapter] = {}

    def register(self, name: str, adapter: DeliveryAdapter) -> None:
        self._adapters[name] = adapter

    def get(self, name: str) -> DeliveryAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise NotFound(f"No delivery adapter named {name!r}") from None

    def names(self) -> List[str]:
        return sorted(self._adapters)

    @classmethod
    def with_defaults(cls, timeout: float = 10.0, clock: Optional[Clock] = None) -> "DeliveryRegistry":
        registry = cls()
        registry.register("log", LogDeliveryAdapter())
        registry.register("none", NullDeliveryAdapter())
        registry.register("memory", MemoryDeliveryAdapter())
        registry.register("webhook", WebhookDeliveryAdapter(timeout=timeout, clock=clock))
        return registry
