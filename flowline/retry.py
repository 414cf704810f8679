from __future__ import annotations

import random
from typing import Callable, List, Optional

from pydantic import BaseModel

from .config import DeliveryConfig, RetryConfig
from .contracts import DefinitionGraph, RetryPolicy, StepSpec


class EffectiveRetryPolicy(BaseModel):
    """Fully resolved retry settings for one step."""

    max_attempts: int
    initial_delay_ms: int
    multiplier: float
    max_delay_ms: int
    retriable_errors: List[str]
    jitter: float = 0.0

    def allows(self, attempt: int, error_kind: str) -> bool:
        """Whether a failure of ``attempt`` with ``error_kind`` gets another try."""
        return attempt < self.max_attempts and error_kind in self.retriable_errors


def resolve_policy(
    step: StepSpec, graph: Optional[DefinitionGraph], defaults: RetryConfig
) -> EffectiveRetryPolicy:
    """Merge retry settings field by field: step first, then workflow, then config."""

    layers: List[RetryPolicy] = []
    if step.retry_policy is not None:
        layers.append(step.retry_policy)
    if graph is not None and graph.effective_settings.retry_policy is not None:
        layers.append(graph.effective_settings.retry_policy)

    def pick(field: str, fallback):
        for layer in layers:
            value = getattr(layer, field)
            if value is not None:
                return value
        return fallback

    return EffectiveRetryPolicy(
        max_attempts=pick("max_attempts", defaults.max_attempts),
        initial_delay_ms=pick("initial_delay", defaults.initial_delay_ms),
        multiplier=pick("multiplier", defaults.multiplier),
        max_delay_ms=pick("max_delay", defaults.max_delay_ms),
        retriable_errors=list(pick("retriable_errors", defaults.retriable_errors)),
        jitter=defaults.jitter,
    )


def delivery_policy(config: DeliveryConfig, jitter: float = 0.1) -> EffectiveRetryPolicy:
    return EffectiveRetryPolicy(
        max_attempts=config.max_attempts,
        initial_delay_ms=config.initial_delay_ms,
        multiplier=2.0,
        max_delay_ms=config.max_delay_ms,
        retriable_errors=["transient", "network", "timeout", "5xx"],
        jitter=jitter,
    )


def compute_backoff(
    policy: EffectiveRetryPolicy,
    attempt: int,
    rand: Callable[[], float] = random.random,
) -> int:
    """Delay in ms before the attempt after ``attempt``, with +/- jitter."""

    delay = policy.initial_delay_ms * policy.multiplier ** max(attempt - 1, 0)
    delay = min(delay, policy.max_delay_ms)
    if policy.jitter:
        delay *= 1 + policy.jitter * (2 * rand() - 1)
    return max(0, min(int(delay), policy.max_delay_ms))
