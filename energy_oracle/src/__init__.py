"""
Energy Oracle - Multi-Source Meter Reading Consensus

This module aggregates energy/carbon readings from independent oracle providers:
- ProviderRegistry: Providers with reputation and failure tracking
- ReadingFetcher: Bounded-time fetch and payload normalization
- ConsensusCalculator: Weighted mean with standard-deviation outlier rejection
- ReadingHistory: Per-project cache of the latest round
- OracleManager: Main orchestrator for consensus rounds and health
"""

from .ConsensusCalculator import AggregatedReading, ConsensusCalculator, ConsensusConfig
from .OracleManager import HealthStatus, OracleManager
from .ProviderRegistry import (
    OracleProvider,
    ProviderHealth,
    ProviderRegistry,
    default_providers,
)
from .ReadingFetcher import (
    FetcherError,
    FetcherHTTPError,
    FetcherPayloadError,
    OracleReading,
    ReadingFetcher,
)
from .ReadingHistory import ReadingHistory

__all__ = [
    "AggregatedReading",
    "ConsensusCalculator",
    "ConsensusConfig",
    "FetcherError",
    "FetcherHTTPError",
    "FetcherPayloadError",
    "HealthStatus",
    "OracleManager",
    "OracleProvider",
    "OracleReading",
    "ProviderHealth",
    "ProviderRegistry",
    "ReadingFetcher",
    "ReadingHistory",
    "default_providers",
]
