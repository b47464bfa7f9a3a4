"""Token usage billing hook.

TokenCharger is the host-side BillingHook: it turns the input and output
tokens of one completion into chargeable units (one unit per 100 tokens,
rounded up) per model family. Units go to a platform charge callback when
one is configured and are logged otherwise. Charge errors propagate so
the failing completion call surfaces them.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TOKENS_PER_UNIT = 100

# Platform charge callback: (event_name, count) -> None
ChargeCallback = Callable[[str, int], Awaitable[None]]


def charge_units(tokens: int) -> int:
    return math.ceil(tokens / TOKENS_PER_UNIT) if tokens > 0 else 0


def event_names(model: str) -> tuple[str, str]:
    """Charge event names for input and output tokens of a model family."""
    family = "haiku" if "haiku" in model else "sonnet"
    return f"input-tokens-{family}", f"output-tokens-{family}"


class TokenCharger:
    """Charges token usage per completion call."""

    def __init__(self, charge: ChargeCallback | None = None) -> None:
        self._charge = charge

    async def charge_tokens(self, input_tokens: int, output_tokens: int, model: str) -> None:
        input_event, output_event = event_names(model)
        charges = [(input_event, charge_units(input_tokens)), (output_event, charge_units(output_tokens))]

        if self._charge is None:
            for event, units in charges:
                logger.info("Charge event %s: %d units", event, units)
            return

        try:
            for event, units in charges:
                await self._charge(event, units)
        except Exception:
            logger.error("Failed to charge for token usage (model=%s)", model)
            raise
        logger.info("Charged %d input tokens and %d output tokens", input_tokens, output_tokens)
