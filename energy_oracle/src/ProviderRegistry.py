"""ProviderRegistry: In-memory set of oracle providers and their trust state.

Each provider carries a reputation score (10-100) that doubles as the
confidence of the readings it reports. A successful fetch resets the
consecutive failure counter. Once a provider has failed more than three
rounds in a row, every further failure costs it 5 reputation points, down
to a floor of 10. Reputation is never raised again by successes.

.. code-block:: python

    >>> registry = ProviderRegistry()
    >>> registry.add(OracleProvider(name="meter-a", endpoint="http://a/latest"))
    >>> [p.name for p in registry.enabled()]
    ['meter-a']
    >>> for _ in range(4):
    ...     registry.record_failure("meter-a")
    >>> registry.get("meter-a").reputation
    95
"""

from __future__ import annotations

import dataclasses
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

MIN_REPUTATION = 10
MAX_REPUTATION = 100

# Failures tolerated before reputation starts to decay.
FAILURE_TOLERANCE = 3
REPUTATION_PENALTY = 5

# Fields callers may not pass to update(); use add() to rename.
_IMMUTABLE_FIELDS = {"name"}


class ProviderHealth(str, Enum):
    """Health state derived from consecutive failures."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class OracleProvider:
    """One external measurement source.

    :ivar name: Unique provider key.
    :ivar endpoint: URL returning the latest meter reading as JSON.
    :ivar weight: Tuning weight (0-1), not used by the consensus math.
    :ivar timeout: Hard deadline for one fetch, in seconds.
    :ivar retry_attempts: Extra attempts allowed within the deadline.
    :ivar enabled: Whether the provider takes part in rounds.
    :ivar reputation: Trust score, 10-100.
    :ivar consecutive_failures: Failures since the last success.
    :ivar last_success: Unix timestamp of the last successful fetch.
    :ivar last_failure: Unix timestamp of the last failed fetch.
    """

    name: str
    endpoint: str
    weight: float = 1.0
    timeout: float = 5.0
    retry_attempts: int = 0
    enabled: bool = True
    reputation: int = 100
    consecutive_failures: int = 0
    last_success: float | None = None
    last_failure: float | None = None

    def __post_init__(self) -> None:
        self.reputation = max(MIN_REPUTATION, min(MAX_REPUTATION, self.reputation))

    @property
    def confidence(self) -> float:
        """Confidence assigned to readings from this provider."""
        return self.reputation / 100

    @property
    def health(self) -> ProviderHealth:
        if self.consecutive_failures == 0:
            return ProviderHealth.HEALTHY
        if self.consecutive_failures <= FAILURE_TOLERANCE:
            return ProviderHealth.DEGRADED
        return ProviderHealth.UNHEALTHY


def default_providers() -> list[OracleProvider]:
    """Build the seed provider set.

    Endpoints can be overridden with environment variables.

    :returns: Fresh list of enabled providers.
    """
    return [
        OracleProvider(
            name="switchboard-primary",
            endpoint=os.environ.get("SWITCHBOARD_ENDPOINT")
            or "http://localhost:3000/api/meter/latest",
            weight=1.0,
            timeout=5.0,
            retry_attempts=3,
            reputation=95,
        ),
        OracleProvider(
            name="switchboard-secondary",
            endpoint=os.environ.get("SWITCHBOARD_BACKUP_ENDPOINT")
            or "http://localhost:3000/api/meter/mock-oracle",
            weight=0.9,
            timeout=5.0,
            retry_attempts=3,
            reputation=90,
        ),
        OracleProvider(
            name="external-oracle-1",
            endpoint=os.environ.get("EXTERNAL_ORACLE_1_ENDPOINT")
            or "http://localhost:3000/api/meter/external-oracle",
            weight=0.8,
            timeout=8.0,
            retry_attempts=2,
            reputation=85,
        ),
        OracleProvider(
            name="iot-direct",
            endpoint=os.environ.get("IOT_DIRECT_ENDPOINT")
            or "http://iot-gateway.local:8080/metrics",
            weight=0.7,
            timeout=3.0,
            retry_attempts=5,
            reputation=80,
        ),
    ]


class ProviderRegistry:
    """Authoritative in-memory set of oracle providers.

    Not thread-safe. All access is expected to happen on the event loop
    that drives aggregation rounds.

    .. code-block:: python

        >>> registry = ProviderRegistry.with_defaults()
        >>> len(registry.all())
        4
    """

    def __init__(self, providers: list[OracleProvider] | None = None) -> None:
        """Initialize the registry.

        :param providers: Optional providers to register immediately.
        """
        self._providers: dict[str, OracleProvider] = {}
        for provider in providers or []:
            self.add(provider)

    @classmethod
    def with_defaults(cls) -> ProviderRegistry:
        """Create a registry holding the seed providers."""
        return cls(default_providers())

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def add(self, provider: OracleProvider) -> None:
        """Insert or replace a provider by name.

        Replacing a provider discards its trust history.

        :param provider: Provider record to store.
        :raises ValueError: If the provider has no name.
        """
        if not provider.name:
            raise ValueError("Oracle provider must have a non-empty name")
        self._providers[provider.name] = provider
        logger.info(
            f"Added oracle provider: {provider.name} "
            f"(endpoint={provider.endpoint}, reputation={provider.reputation})"
        )

    def remove(self, name: str) -> None:
        """Remove a provider. Unknown names are ignored.

        :param name: Provider name to remove.
        """
        if self._providers.pop(name, None) is not None:
            logger.info(f"Removed oracle provider: {name}")

    def get(self, name: str) -> OracleProvider | None:
        return self._providers.get(name)

    def is_current(self, provider: OracleProvider) -> bool:
        """Whether this exact record is still registered under its name."""
        return self._providers.get(provider.name) is provider

    def all(self) -> list[OracleProvider]:
        return list(self._providers.values())

    def enabled(self) -> list[OracleProvider]:
        return [p for p in self._providers.values() if p.enabled]

    def update(self, name: str, **fields: object) -> OracleProvider | None:
        """Merge fields into an existing provider record.

        :param name: Provider to update.
        :param fields: Field values to assign (e.g. ``timeout=3.0``).
        :returns: The updated provider, or None if the name is unknown.
        :raises ValueError: If a field name is not a provider field.
        """
        provider = self._providers.get(name)
        if provider is None:
            return None

        known = {f.name for f in dataclasses.fields(OracleProvider)}
        unknown = sorted((set(fields) - known) | (set(fields) & _IMMUTABLE_FIELDS))
        if unknown:
            raise ValueError(f"Cannot update provider fields: {unknown}")

        for key, value in fields.items():
            setattr(provider, key, value)
        if "reputation" in fields:
            provider.reputation = max(
                MIN_REPUTATION, min(MAX_REPUTATION, provider.reputation)
            )

        logger.info(f"Updated oracle provider: {name} {fields}")
        return provider

    def record_success(self, name: str) -> None:
        """Record a successful fetch, resetting the failure counter.

        :param name: Provider that succeeded.
        """
        provider = self._providers.get(name)
        if provider is None:
            return
        provider.last_success = time.time()
        provider.consecutive_failures = 0

    def record_failure(self, name: str) -> int | None:
        """Record a failed fetch and decay reputation past the tolerance.

        :param name: Provider that failed.
        :returns: The provider's reputation afterwards, or None if unknown.
        """
        provider = self._providers.get(name)
        if provider is None:
            return None

        provider.last_failure = time.time()
        provider.consecutive_failures += 1

        if provider.consecutive_failures > FAILURE_TOLERANCE:
            provider.reputation = max(
                MIN_REPUTATION, provider.reputation - REPUTATION_PENALTY
            )
            logger.warning(
                f"[{name}] Reduced reputation to {provider.reputation} after "
                f"{provider.consecutive_failures} consecutive failures"
            )

        return provider.reputation
