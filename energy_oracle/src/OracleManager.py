"""OracleManager: Orchestrator for multi-oracle meter reading consensus.

A round for one project fans out a fetch to every enabled provider
concurrently, waits until each fetch has finished or hit its own timeout,
and hands whatever readings arrived to the ConsensusCalculator.

Architecture:
    - ProviderRegistry holds providers and their trust state
    - ReadingFetcher performs one bounded-time fetch per provider
    - ConsensusCalculator turns a round's readings into an AggregatedReading
    - ReadingHistory keeps the latest round per project for diagnostics

Rounds for the same project must not overlap; if they do, the history
entry of the round that finishes last wins.

.. code-block:: python

    manager = OracleManager(ProviderRegistry.with_defaults())
    result = await manager.get_aggregated_reading("project-42")
    if result is not None and result.consensus:
        release_funds(result.kwh, result.co2)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, TypedDict

from .ConsensusCalculator import AggregatedReading, ConsensusCalculator, ConsensusConfig
from .ProviderRegistry import OracleProvider, ProviderHealth, ProviderRegistry
from .ReadingFetcher import OracleReading, ReadingFetcher, now_ms
from .ReadingHistory import ReadingHistory

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)

# A provider that succeeded this recently counts as healthy even if it
# has failed since.
RECENT_SUCCESS_SECONDS = 5 * 60


class HealthStatus(TypedDict):
    """Provider health summary.

    :ivar total_providers: Registered providers.
    :ivar enabled_providers: Providers taking part in rounds.
    :ivar healthy_providers: Enabled providers with no consecutive failures
        or a success within the last 5 minutes.
    :ivar average_reputation: Mean reputation of enabled providers.
    :ivar last_update: Time of the report in epoch milliseconds.
    """

    total_providers: int
    enabled_providers: int
    healthy_providers: int
    average_reputation: float
    last_update: int


class OracleManager:
    """Coordinates fetch rounds, consensus and health reporting.

    :ivar registry: Provider registry (owned by the caller).
    :ivar fetcher: Reading fetcher bound to the registry.
    :ivar calculator: Consensus calculator holding the active config.
    :ivar history: Latest readings per project.
    """

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        config: ConsensusConfig | None = None,
        client: httpx.AsyncClient | None = None,
        retry_backoff: float = ReadingFetcher.DEFAULT_RETRY_BACKOFF,
    ) -> None:
        """Initialize the manager.

        :param registry: Provider registry; the seed providers if omitted.
        :param config: Consensus policy (defaults to ConsensusConfig()).
        :param client: Optional HTTP client shared by all fetches.
        :param retry_backoff: Base pause between fetch attempts in seconds.
        """
        self.registry = registry if registry is not None else ProviderRegistry.with_defaults()
        self.fetcher = ReadingFetcher(
            self.registry, client=client, retry_backoff=retry_backoff
        )
        self.calculator = ConsensusCalculator(config)
        self.history = ReadingHistory()

        logger.info(
            f"OracleManager initialized: providers={[p.name for p in self.registry.all()]}, "
            f"config={self.calculator.config.to_dict()}"
        )

    async def aclose(self) -> None:
        """Release the HTTP client."""
        await self.fetcher.aclose()

    async def __aenter__(self) -> OracleManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # Rounds

    async def fetch_all_readings(self, project_id: str) -> list[OracleReading]:
        """Fetch from every enabled provider concurrently.

        :param project_id: Project the round is for.
        :returns: Readings from the providers that succeeded (possibly empty).
        """
        providers = self.registry.enabled()
        logger.info(
            f"Fetching readings from {len(providers)} oracle providers "
            f"for project {project_id}"
        )

        results = await asyncio.gather(
            *(self.fetcher.fetch(provider) for provider in providers),
            return_exceptions=True,
        )

        readings: list[OracleReading] = []
        for provider, result in zip(providers, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"[{provider.name}] Fetch raised unexpectedly: {result}")
                if self.registry.is_current(provider):
                    self.registry.record_failure(provider.name)
            elif result is not None:
                readings.append(result)

        self.history.store(project_id, readings)
        logger.info(
            f"Collected {len(readings)} readings for project {project_id}: "
            f"{[r.source for r in readings]}"
        )
        return readings

    async def get_aggregated_reading(self, project_id: str) -> AggregatedReading | None:
        """Run one consensus round for a project.

        :param project_id: Project the round is for.
        :returns: The aggregated reading, or None if no readings arrived or
            fewer than min_sources did. A result with ``consensus=False``
            must not be acted on.
        """
        readings = await self.fetch_all_readings(project_id)
        if not readings:
            logger.error(f"No readings available for project {project_id}")
            return None
        return self.calculator.calculate(readings)

    def get_recent_readings(self, project_id: str) -> list[OracleReading]:
        return self.history.get(project_id)

    def cleanup_old_readings(self) -> int:
        return self.history.cleanup()

    # Health

    def get_health_status(self) -> HealthStatus:
        providers = self.registry.all()
        enabled = [p for p in providers if p.enabled]
        now = time.time()
        healthy = [
            p
            for p in enabled
            if p.consecutive_failures == 0
            or (
                p.last_success is not None
                and now - p.last_success < RECENT_SUCCESS_SECONDS
            )
        ]
        average_reputation = (
            sum(p.reputation for p in enabled) / len(enabled) if enabled else 0.0
        )

        return HealthStatus(
            total_providers=len(providers),
            enabled_providers=len(enabled),
            healthy_providers=len(healthy),
            average_reputation=average_reputation,
            last_update=now_ms(),
        )

    def get_provider_health(self) -> dict[str, ProviderHealth]:
        return {p.name: p.health for p in self.registry.all()}

    # Provider and config management

    def add_provider(self, provider: OracleProvider) -> None:
        self.registry.add(provider)

    def remove_provider(self, name: str) -> None:
        self.registry.remove(name)

    def update_provider(self, name: str, **fields: Any) -> OracleProvider | None:
        return self.registry.update(name, **fields)

    def get_provider(self, name: str) -> OracleProvider | None:
        return self.registry.get(name)

    def update_consensus_config(self, **updates: Any) -> ConsensusConfig:
        """Change the consensus policy; a rejected update keeps the old one."""
        self.calculator.config = self.calculator.config.merged(**updates)
        logger.info(
            f"Updated consensus configuration: {self.calculator.config.to_dict()}"
        )
        return self.get_consensus_config()

    def get_consensus_config(self) -> ConsensusConfig:
        """Get a copy of the active consensus policy."""
        return self.calculator.config.merged()
