from __future__ import annotations

import logging
from typing import Iterable, Iterator

from parley.connectors.base import LLMConnector

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Ordered set of connectors plus the process-wide active selection.

    ``set_active`` only changes what future ``chain()`` snapshots look like;
    a send that already took its snapshot keeps the connectors it bound to.
    """

    def __init__(self, connectors: Iterable[LLMConnector] = ()) -> None:
        self._connectors: list[LLMConnector] = []
        self._active: LLMConnector | None = None
        for connector in connectors:
            self.register(connector)

    def register(self, connector: LLMConnector) -> None:
        if self.get(connector.name) is not None:
            raise ValueError(f"Provider '{connector.name}' is already registered")
        self._connectors.append(connector)

    def get(self, name: str) -> LLMConnector | None:
        wanted = name.lower()
        for connector in self._connectors:
            if connector.name.lower() == wanted:
                return connector
        return None

    @property
    def names(self) -> list[str]:
        return [c.name for c in self._connectors]

    def __iter__(self) -> Iterator[LLMConnector]:
        return iter(list(self._connectors))

    def __len__(self) -> int:
        return len(self._connectors)

    @property
    def active(self) -> LLMConnector | None:
        if self._active is not None:
            return self._active
        for connector in self._connectors:
            if connector.has_valid_credential():
                return connector
        return self._connectors[0] if self._connectors else None

    def set_active(self, name: str) -> bool:
        connector = self.get(name)
        if connector is None:
            logger.warning("LLM provider not found: %s", name)
            return False
        self._active = connector
        logger.info("Active LLM provider set to: %s", connector.name)
        return True

    def chain(self) -> tuple[LLMConnector, ...]:
        """Snapshot of the fallback chain: active first, then registration order.

        The active provider leads and the rest follow in strict registration
        order. With no provider explicitly activated, the active one is the
        first credentialed registration, so the chain is exactly registration
        order. Connectors without a usable credential are left out; they are
        skipped, not tried.
        """
        active = self.active
        ordered = [active] if active is not None else []
        ordered += [c for c in self._connectors if c is not active]
        eligible = []
        for connector in ordered:
            if connector.has_valid_credential():
                eligible.append(connector)
            else:
                logger.debug("Skipping provider %s: no credential", connector.name)
        return tuple(eligible)
