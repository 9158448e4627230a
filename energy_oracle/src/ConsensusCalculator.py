"""ConsensusCalculator: Weighted consensus with standard-deviation outlier rejection.

Algorithm:
    1. Return None if fewer than min_sources readings were collected
    2. Compute the confidence-weighted mean of kwh and co2 over all readings
    3. Compute the population standard deviation of raw kwh and co2 values
    4. Flag readings deviating > outlier_threshold std devs on either dimension
    5. Recompute the weighted mean from the remaining (valid) readings
    6. confidence = plain mean of the valid readings' confidence
    7. consensus = valid/total >= consensus_threshold and
       confidence >= required_confidence, and valid >= min_sources

A round that fails step 7 still returns an AggregatedReading, with
``consensus=False``. Callers must not act on it.

.. code-block:: python

    >>> calc = ConsensusCalculator(ConsensusConfig(min_sources=3))
    >>> readings = [
    ...     OracleReading("a", 0, 100.0, 50.0, 0.9),
    ...     OracleReading("b", 0, 102.0, 51.0, 0.9),
    ...     OracleReading("c", 0, 98.0, 49.0, 0.9),
    ... ]
    >>> result = calc.calculate(readings)
    >>> result.consensus, round(result.kwh, 6), result.outlier_sources
    (True, 100.0, [])
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable

from .ReadingFetcher import OracleReading, now_ms

logger = logging.getLogger(__name__)


@dataclass
class ConsensusConfig:
    """Tunable consensus policy.

    :ivar min_sources: Minimum readings needed to attempt consensus.
    :ivar required_confidence: Minimum mean confidence of valid readings.
    :ivar outlier_threshold: Standard deviations beyond which a reading is dropped.
    :ivar consensus_threshold: Minimum fraction of readings that must survive.
    """

    min_sources: int = 3
    required_confidence: float = 0.8
    outlier_threshold: float = 2.0
    consensus_threshold: float = 0.7

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check that all thresholds are in range.

        :raises ValueError: If any parameter is invalid.
        """
        if self.min_sources < 1:
            raise ValueError("min_sources must be at least 1")
        if not 0 <= self.required_confidence <= 1:
            raise ValueError("required_confidence must be between 0 and 1")
        if self.outlier_threshold <= 0:
            raise ValueError("outlier_threshold must be positive")
        if not 0 <= self.consensus_threshold <= 1:
            raise ValueError("consensus_threshold must be between 0 and 1")

    def merged(self, **updates: Any) -> ConsensusConfig:
        """Return a validated copy with some fields replaced.

        :raises ValueError: On unknown field names or invalid values.
        """
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(updates) - known)
        if unknown:
            raise ValueError(f"Unknown consensus config fields: {unknown}")
        return dataclasses.replace(self, **updates)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class AggregatedReading:
    """Consensus result for one round.

    :ivar timestamp: Aggregation time in epoch milliseconds.
    :ivar kwh: Consensus energy value.
    :ivar co2: Consensus emissions-avoided value.
    :ivar confidence: Mean confidence of the valid readings.
    :ivar sources: Every reading considered, outliers included.
    :ivar consensus: Whether the result is trustworthy enough to act on.
    :ivar outlier_sources: Providers excluded as statistical outliers.
    """

    timestamp: int
    kwh: float
    co2: float
    confidence: float
    sources: list[OracleReading]
    consensus: bool
    outlier_sources: list[str] = field(default_factory=list)

    @property
    def valid_sources(self) -> list[str]:
        """Names of the providers used for the final value."""
        outliers = set(self.outlier_sources)
        return [r.source for r in self.sources if r.source not in outliers]

    @property
    def consensus_ratio(self) -> float:
        if not self.sources:
            return 0.0
        return len(self.valid_sources) / len(self.sources)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "kwh": self.kwh,
            "co2": self.co2,
            "confidence": self.confidence,
            "sources": [r.to_dict() for r in self.sources],
            "consensus": self.consensus,
            "outlier_sources": list(self.outlier_sources),
        }


def weighted_mean(values: Iterable[float], weights: Iterable[float]) -> float:
    """Weighted arithmetic mean; 0.0 when the total weight is zero.

    .. code-block:: python

        >>> weighted_mean([10.0, 20.0], [1.0, 3.0])
        17.5
    """
    pairs = list(zip(values, weights, strict=True))
    total_weight = sum(weight for _, weight in pairs)
    if total_weight <= 0:
        return 0.0
    # Normalizing first keeps a single-element mean exact.
    return sum(value * (weight / total_weight) for value, weight in pairs)


def population_stdev(values: list[float]) -> float:
    """Population standard deviation; 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def _exceeds(value: float, mean: float, limit: float) -> bool:
    # Identical values can differ from their weighted mean by float noise.
    if math.isclose(value, mean, rel_tol=1e-9, abs_tol=1e-12):
        return False
    return abs(value - mean) > limit


class ConsensusCalculator:
    """Computes a consensus reading from one round of provider readings.

    Pure with respect to its inputs; the only state is the config, which
    may be swapped between calls.

    :ivar config: Active consensus policy.
    """

    def __init__(self, config: ConsensusConfig | None = None) -> None:
        """Initialize the calculator.

        :param config: Consensus policy (defaults to ConsensusConfig()).
        """
        self.config = config or ConsensusConfig()

    def find_outliers(self, readings: list[OracleReading]) -> list[str]:
        """Name the readings deviating too far from the weighted mean.

        :param readings: All readings of the round.
        :returns: Outlier source names, in reading order.
        """
        weights = [r.confidence for r in readings]
        mean_kwh = weighted_mean((r.kwh for r in readings), weights)
        mean_co2 = weighted_mean((r.co2 for r in readings), weights)

        kwh_limit = self.config.outlier_threshold * population_stdev(
            [r.kwh for r in readings]
        )
        co2_limit = self.config.outlier_threshold * population_stdev(
            [r.co2 for r in readings]
        )

        return [
            r.source
            for r in readings
            if _exceeds(r.kwh, mean_kwh, kwh_limit)
            or _exceeds(r.co2, mean_co2, co2_limit)
        ]

    def calculate(self, readings: list[OracleReading]) -> AggregatedReading | None:
        """Aggregate one round of readings.

        :param readings: Readings collected this round.
        :returns: AggregatedReading, or None if fewer than min_sources readings.
        :raises ValueError: If two readings share a source name.
        """
        config = self.config

        names = [r.source for r in readings]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate reading sources: {duplicates}")

        if len(readings) < config.min_sources:
            logger.warning(
                f"Insufficient readings for consensus: "
                f"{len(readings)}/{config.min_sources}"
            )
            return None

        outlier_sources = self.find_outliers(readings)
        outlier_set = set(outlier_sources)
        valid = [r for r in readings if r.source not in outlier_set]

        if valid:
            weights = [r.confidence for r in valid]
            kwh = weighted_mean((r.kwh for r in valid), weights)
            co2 = weighted_mean((r.co2 for r in valid), weights)
            confidence = sum(weights) / len(valid)
        else:
            kwh = co2 = confidence = 0.0

        consensus_ratio = len(valid) / len(readings)
        if len(valid) < config.min_sources:
            logger.warning(
                f"Too many outliers detected: {len(valid)} valid readings, "
                f"{config.min_sources} required (outliers: {outlier_sources})"
            )
            has_consensus = False
        else:
            has_consensus = (
                consensus_ratio >= config.consensus_threshold
                and confidence >= config.required_confidence
            )

        result = AggregatedReading(
            timestamp=now_ms(),
            kwh=kwh,
            co2=co2,
            confidence=confidence,
            sources=list(readings),
            consensus=has_consensus,
            outlier_sources=outlier_sources,
        )

        logger.info(
            f"Consensus calculation completed: total={len(readings)}, "
            f"valid={len(valid)}, outliers={len(outlier_sources)}, "
            f"consensus={has_consensus}, kwh={kwh:.4f}, co2={co2:.4f}, "
            f"confidence={confidence:.3f}"
        )
        return result
