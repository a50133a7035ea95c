"""Sequential provider fallback with explicit attempt outcomes.

Each attempt becomes ``Ok(envelope)`` or ``Err(error)``; the chain loop
branches on that tag instead of catching provider exceptions itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

from parley.connectors.base import LLMConnector
from parley.errors import AllProvidersFailedError, CredentialMissingError, ProviderError
from parley.models import ResponseEnvelope

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: ProviderError


Outcome = Ok[ResponseEnvelope] | Err

Call = Callable[[LLMConnector], Awaitable[ResponseEnvelope]]


async def attempt(connector: LLMConnector, call: Call) -> Outcome:
    """Run one provider attempt. Only ``ProviderError`` becomes ``Err``; cancellation propagates."""
    try:
        return Ok(await call(connector))
    except ProviderError as exc:
        return Err(exc)


async def run_chain(
    chain: Sequence[LLMConnector],
    call: Call,
    should_continue: Callable[[ProviderError], bool] | None = None,
) -> tuple[LLMConnector, ResponseEnvelope]:
    """Try each connector once, in order, until one answers.

    ``should_continue`` can stop the chain early after a failure (the failure is
    still reported in the aggregate error).
    """
    if not chain:
        raise CredentialMissingError("*", "no provider has a usable credential")

    failures: list[tuple[str, ProviderError]] = []
    for connector in chain:
        logger.info("Trying provider %s (%s)", connector.name, connector.model_id)
        outcome = await attempt(connector, call)
        if isinstance(outcome, Ok):
            if failures:
                logger.info("Provider %s answered after %d failure(s)", connector.name, len(failures))
            return connector, outcome.value

        failures.append((connector.name, outcome.error))
        logger.warning("Provider %s failed: %s", connector.name, outcome.error)
        if should_continue is not None and not should_continue(outcome.error):
            break

    raise AllProvidersFailedError(failures)
