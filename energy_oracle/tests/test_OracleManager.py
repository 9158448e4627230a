"""Unit tests for OracleManager."""

import asyncio
import time
from unittest.mock import patch

import httpx
import pytest

from energy_oracle.src.ConsensusCalculator import ConsensusConfig
from energy_oracle.src.OracleManager import OracleManager
from energy_oracle.src.ProviderRegistry import (
    OracleProvider,
    ProviderHealth,
    ProviderRegistry,
)
from energy_oracle.src.ReadingFetcher import OracleReading


def provider(name: str, **kwargs) -> OracleProvider:
    defaults = {"reputation": 90, "timeout": 2.0, "retry_attempts": 0}
    defaults.update(kwargs)
    return OracleProvider(name=name, endpoint=f"http://{name}.test/latest", **defaults)


def meter_handler(responses: dict, delay: float = 0.0):
    """Build a transport handler answering per provider host.

    Values are a JSON payload (dict), an HTTP status (int) or an exception
    class to raise.
    """

    async def handler(request: httpx.Request) -> httpx.Response:
        name = request.url.host.removesuffix(".test")
        if delay:
            await asyncio.sleep(delay)
        answer = responses[name]
        if isinstance(answer, dict):
            return httpx.Response(200, json=answer)
        if isinstance(answer, int):
            return httpx.Response(answer)
        raise answer("simulated failure", request=request)

    return handler


def run_round(manager_factory, handler, project_id: str = "solar-1"):
    """Run one aggregated round and return (manager, result)."""

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            manager = manager_factory(client)
            result = await manager.get_aggregated_reading(project_id)
            return manager, result

    return asyncio.run(scenario())


AGREEING = {
    "a": {"kwh": 100.0, "co2": 50.0},
    "b": {"kwh": 102.0, "co2": 51.0},
    "c": {"kwh": 98.0, "co2": 49.0},
}


class TestOracleManagerInit:
    """Test OracleManager construction."""

    def test_default_registry(self) -> None:
        """Without a registry the seed providers are used."""
        manager = OracleManager()
        assert len(manager.registry) == 4
        assert manager.get_consensus_config() == ConsensusConfig()

    def test_injected_registry(self) -> None:
        """An injected registry should be used as-is."""
        registry = ProviderRegistry([provider("a")])
        manager = OracleManager(registry)
        assert manager.registry is registry
        assert manager.fetcher.registry is registry


class TestOracleManagerRounds:
    """Test fetch rounds and aggregation."""

    def test_agreeing_providers(self) -> None:
        """Three agreeing providers should reach consensus."""
        registry = ProviderRegistry([provider(n) for n in "abc"])

        manager, result = run_round(
            lambda client: OracleManager(registry, client=client, retry_backoff=0),
            meter_handler(AGREEING),
        )

        assert result is not None
        assert result.consensus is True
        assert result.kwh == pytest.approx(100.0)
        assert result.confidence == pytest.approx(0.9)
        assert sorted(r.source for r in manager.get_recent_readings("solar-1")) == [
            "a",
            "b",
            "c",
        ]

    def test_no_enabled_providers(self) -> None:
        """With nothing enabled, the round yields no readings and None."""
        registry = ProviderRegistry([provider("a", enabled=False)])

        async def scenario():
            manager = OracleManager(registry)
            readings = await manager.fetch_all_readings("solar-1")
            result = await manager.get_aggregated_reading("solar-1")
            return manager, readings, result

        manager, readings, result = asyncio.run(scenario())

        assert readings == []
        assert result is None
        assert manager.get_recent_readings("solar-1") == []

    def test_partial_failure_tolerated(self) -> None:
        """A failing provider is excluded without failing the round."""
        registry = ProviderRegistry([provider(n) for n in "abcd"])
        responses = dict(AGREEING, d=500)

        manager, result = run_round(
            lambda client: OracleManager(registry, client=client, retry_backoff=0),
            meter_handler(responses),
        )

        assert result is not None
        assert result.consensus is True
        assert [r.source for r in result.sources] == ["a", "b", "c"]
        assert registry.get("d").consecutive_failures == 1
        assert registry.get("a").consecutive_failures == 0

    def test_transport_errors_tolerated(self) -> None:
        """Timeouts and connection errors behave like any other failure."""
        registry = ProviderRegistry([provider(n) for n in "abcde"])
        responses = dict(AGREEING, d=httpx.ConnectTimeout, e=httpx.ConnectError)

        _, result = run_round(
            lambda client: OracleManager(registry, client=client, retry_backoff=0),
            meter_handler(responses),
        )

        assert result is not None
        assert len(result.sources) == 3

    def test_disabled_provider_not_contacted(self) -> None:
        """Disabled providers should not be fetched."""
        registry = ProviderRegistry(
            [provider("a"), provider("b"), provider("c"), provider("x", enabled=False)]
        )
        contacted: list[str] = []
        inner = meter_handler(AGREEING)

        async def handler(request: httpx.Request) -> httpx.Response:
            contacted.append(request.url.host)
            return await inner(request)

        run_round(
            lambda client: OracleManager(registry, client=client, retry_backoff=0),
            handler,
        )

        assert "x.test" not in contacted
        assert len(contacted) == 3

    def test_insufficient_sources(self) -> None:
        """Fewer readings than min_sources yields None."""
        registry = ProviderRegistry([provider(n) for n in "abc"])
        responses = dict(AGREEING, c=503)

        manager, result = run_round(
            lambda client: OracleManager(registry, client=client, retry_backoff=0),
            meter_handler(responses),
        )

        assert result is None
        assert len(manager.get_recent_readings("solar-1")) == 2

    def test_gross_anomaly_flagged(self) -> None:
        """A provider reporting an anomalous value is listed as an outlier."""
        names = ["a", "b", "c", "d", "e", "rogue"]
        registry = ProviderRegistry([provider(n) for n in names])
        responses = {
            "a": {"kwh": 100.0, "co2": 50.0},
            "b": {"kwh": 102.0, "co2": 50.0},
            "c": {"kwh": 98.0, "co2": 50.0},
            "d": {"kwh": 101.0, "co2": 50.0},
            "e": {"kwh": 99.0, "co2": 50.0},
            "rogue": {"kwh": 5000.0, "co2": 50.0},
        }

        _, result = run_round(
            lambda client: OracleManager(registry, client=client, retry_backoff=0),
            meter_handler(responses),
        )

        assert result.outlier_sources == ["rogue"]
        assert result.kwh == pytest.approx(100.0)
        assert result.consensus is True

    def test_fetches_run_concurrently(self) -> None:
        """Round duration is bounded by the slowest fetch, not the sum."""
        registry = ProviderRegistry([provider(n) for n in "abc"])

        start = time.monotonic()
        _, result = run_round(
            lambda client: OracleManager(registry, client=client, retry_backoff=0),
            meter_handler(AGREEING, delay=0.3),
        )
        elapsed = time.monotonic() - start

        assert result is not None
        assert elapsed < 0.85

    def test_slow_provider_excluded(self) -> None:
        """A provider exceeding its timeout contributes no reading."""
        registry = ProviderRegistry(
            [provider("a"), provider("b"), provider("c"), provider("slow", timeout=0.05)]
        )
        inner = meter_handler(dict(AGREEING, slow={"kwh": 100.0, "co2": 50.0}))

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "slow.test":
                await asyncio.sleep(5)
            return await inner(request)

        _, result = run_round(
            lambda client: OracleManager(registry, client=client, retry_backoff=0),
            handler,
        )

        assert [r.source for r in result.sources] == ["a", "b", "c"]
        assert registry.get("slow").consecutive_failures == 1

    def test_unexpected_fetch_exception_isolated(self) -> None:
        """An exception escaping one fetch should not fail the round."""
        registry = ProviderRegistry([provider(n) for n in "abc"])
        manager = OracleManager(registry, ConsensusConfig(min_sources=2))

        async def fake_fetch(p: OracleProvider) -> OracleReading | None:
            if p.name == "c":
                raise RuntimeError("bug")
            return OracleReading(p.name, 1, 10.0, 5.0, p.confidence)

        with patch.object(manager.fetcher, "fetch", side_effect=fake_fetch):
            readings = asyncio.run(manager.fetch_all_readings("p1"))

        assert [r.source for r in readings] == ["a", "b"]
        assert registry.get("c").consecutive_failures == 1
        assert registry.get("c").last_failure is not None
        assert registry.get("a").consecutive_failures == 0

    def test_out_of_range_payload_decays_reputation(self) -> None:
        """A provider sending unparseable numbers loses trust like any failure."""
        registry = ProviderRegistry(
            [provider("a"), provider("b"), provider("c"), provider("d", reputation=80)]
        )
        responses = dict(AGREEING, d={"kwh": 10**400, "co2": 1.0})

        async def scenario():
            handler = meter_handler(responses)
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                manager = OracleManager(registry, client=client, retry_backoff=0)
                results = [await manager.get_aggregated_reading("p1") for _ in range(4)]
                return manager, results

        manager, results = asyncio.run(scenario())

        assert all(r.consensus for r in results)
        assert registry.get("d").consecutive_failures == 4
        assert registry.get("d").reputation == 75
        assert manager.get_provider_health()["d"] == ProviderHealth.UNHEALTHY

    def test_history_overwritten_per_project(self) -> None:
        """Each round replaces the stored readings for its project only."""
        registry = ProviderRegistry([provider(n) for n in "abc"])
        responses = dict(AGREEING)

        async def scenario():
            handler = meter_handler(responses)
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                manager = OracleManager(registry, client=client, retry_backoff=0)
                await manager.fetch_all_readings("p1")
                await manager.fetch_all_readings("p2")
                responses["c"] = 500
                await manager.fetch_all_readings("p1")
                return manager

        manager = asyncio.run(scenario())

        assert len(manager.get_recent_readings("p1")) == 2
        assert len(manager.get_recent_readings("p2")) == 3

    def test_repeated_timeouts_decay_reputation(self) -> None:
        """Four timed-out rounds cost a provider exactly 5 reputation."""
        registry = ProviderRegistry(
            [provider("a"), provider("b"), provider("c"), provider("d", reputation=80)]
        )
        responses = dict(AGREEING, d=httpx.ConnectTimeout)

        async def scenario():
            handler = meter_handler(responses)
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                manager = OracleManager(registry, client=client, retry_backoff=0)
                for _ in range(4):
                    await manager.get_aggregated_reading("p1")

        asyncio.run(scenario())

        assert registry.get("d").consecutive_failures == 4
        assert registry.get("d").reputation == 75
        assert registry.get("a").reputation == 90


class TestOracleManagerHealth:
    """Test health reporting."""

    @patch("energy_oracle.src.OracleManager.time.time")
    def test_health_status(self, mock_time) -> None:
        """Counts should follow the healthy definition."""
        mock_time.return_value = 10_000.0
        registry = ProviderRegistry(
            [
                provider("ok", reputation=90),
                provider("recent", reputation=80, consecutive_failures=2, last_success=9_900.0),
                provider("stale", reputation=70, consecutive_failures=2, last_success=9_000.0),
                provider("off", reputation=10, enabled=False),
            ]
        )
        status = OracleManager(registry).get_health_status()

        assert status["total_providers"] == 4
        assert status["enabled_providers"] == 3
        assert status["healthy_providers"] == 2
        assert status["average_reputation"] == pytest.approx(80.0)
        assert status["last_update"] == 10_000_000

    def test_health_no_enabled_providers(self) -> None:
        """Average reputation is 0 with nothing enabled."""
        registry = ProviderRegistry([provider("off", enabled=False)])
        status = OracleManager(registry).get_health_status()

        assert status["enabled_providers"] == 0
        assert status["healthy_providers"] == 0
        assert status["average_reputation"] == 0.0

    def test_provider_health(self) -> None:
        """Per-provider health state should be reported."""
        registry = ProviderRegistry(
            [
                provider("a"),
                provider("b", consecutive_failures=2),
                provider("c", consecutive_failures=7),
            ]
        )
        assert OracleManager(registry).get_provider_health() == {
            "a": ProviderHealth.HEALTHY,
            "b": ProviderHealth.DEGRADED,
            "c": ProviderHealth.UNHEALTHY,
        }


class TestOracleManagerConfiguration:
    """Test provider and consensus config management."""

    def test_provider_management(self) -> None:
        """add/update/remove should pass through to the registry."""
        manager = OracleManager(ProviderRegistry())
        manager.add_provider(provider("a"))
        manager.update_provider("a", timeout=1.5)

        assert manager.get_provider("a").timeout == 1.5

        manager.remove_provider("a")
        assert manager.get_provider("a") is None

    def test_update_consensus_config(self) -> None:
        """Config updates apply to the calculator immediately."""
        manager = OracleManager(ProviderRegistry())
        config = manager.update_consensus_config(min_sources=2, outlier_threshold=3.0)

        assert config.min_sources == 2
        assert manager.calculator.config.outlier_threshold == 3.0
        assert manager.calculator.config.required_confidence == 0.8

    def test_invalid_update_keeps_previous(self) -> None:
        """A rejected update leaves the active config unchanged."""
        manager = OracleManager(ProviderRegistry())
        with pytest.raises(ValueError):
            manager.update_consensus_config(consensus_threshold=2.0)

        assert manager.get_consensus_config().consensus_threshold == 0.7

    def test_get_consensus_config_is_copy(self) -> None:
        """Mutating the returned config should not change the manager."""
        manager = OracleManager(ProviderRegistry())
        config = manager.get_consensus_config()
        config.min_sources = 99

        assert manager.get_consensus_config().min_sources == 3

    @patch("energy_oracle.src.ReadingHistory.time.time")
    def test_cleanup_old_readings(self, mock_time) -> None:
        """Readings older than 24h are pruned from history."""
        mock_time.return_value = 1_000_000.0
        manager = OracleManager(ProviderRegistry())
        old = OracleReading("a", int((1_000_000.0 - 25 * 3600) * 1000), 1.0, 1.0, 0.9)
        manager.history.store("p1", [old])

        assert manager.cleanup_old_readings() == 1
        assert manager.get_recent_readings("p1") == []


class TestOracleManagerLifecycle:
    """Test async context management."""

    def test_context_manager_closes_client(self) -> None:
        """Leaving the context should close the fetcher's client."""

        async def scenario() -> bool:
            async with OracleManager(ProviderRegistry()) as manager:
                client = manager.fetcher.get_client()
            return client.is_closed

        assert asyncio.run(scenario()) is True
