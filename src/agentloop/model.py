"""Model transport interface used by the loop engine.

The engine only needs ``complete(request) -> response``; concrete SDK
adapters live in :mod:`agentloop.providers`. ``complete`` may be a plain
function or a coroutine function.
"""

from __future__ import annotations

import abc
import inspect
from typing import Any

from agentloop.schemas import ModelRequest, ModelResponse, ModelUsage


async def maybe_await(value: Any) -> Any:
    """Await ``value`` when it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


class ModelClient(abc.ABC):
    """Common interface for chat model transports.

    Subclasses implement :meth:`complete`. ``pricing`` maps a model-name
    prefix to ``(input, output)`` USD per million tokens and is used when a
    response does not carry its own cost.
    """

    #: Provider label used in logs and the CLI.
    name: str = "base"

    pricing: dict[str, tuple[float, float]] = {}

    @abc.abstractmethod
    def complete(self, request: ModelRequest) -> ModelResponse:
        """Run one model call and return the normalised response.

        Parameters
        ----------
        request:
            System prompt, conversation, tool schemas and output limit.
        """

    def estimate_cost(self, model: str, usage: ModelUsage) -> float:
        """Estimate USD cost of ``usage`` from the longest matching price prefix."""
        return estimate_cost(self.pricing, model, usage)


def estimate_cost(pricing: dict[str, tuple[float, float]], model: str, usage: ModelUsage) -> float:
    key = (model or "").lower()
    matches = [prefix for prefix in pricing if key.startswith(prefix.lower())]
    if not matches:
        return 0.0
    input_price, output_price = pricing[max(matches, key=len)]
    return (usage.input_tokens * input_price + usage.output_tokens * output_price) / 1_000_000


def response_cost(client: Any, model: str, response: ModelResponse) -> float:
    """Reported cost when present, else the client's estimate (0 for clients without one)."""
    if response.cost is not None:
        return float(response.cost)
    estimator = getattr(client, "estimate_cost", None)
    if estimator is None:
        return 0.0
    return float(estimator(response.model or model, response.usage))
