"""
Process-wide rule graph snapshot cache.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..rules.graph import RuleGraph


class RuleGraphCache:
    """Holds one rule graph snapshot with a TTL and a generation counter.

    ``invalidate()`` bumps the generation and drops the snapshot. Concurrent
    reloads are collapsed behind a lock, and a load that started under an
    older generation is discarded and retried.

    ``version`` names the snapshot currently held: it changes on every
    invalidation and on every reload, TTL expiry included, so results keyed
    by it never outlive the snapshot they were computed from.
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[RuleGraph]],
        ttl_seconds: float = 300,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = get_logger("compatibility.cache.rule_graph")
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics
        self._clock = clock

        self._snapshot: Optional[RuleGraph] = None
        self._loaded_at = 0.0
        self._generation = 0
        self._snapshot_seq = 0
        self._lock = asyncio.Lock()
        self.loads = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def version(self) -> str:
        return f"{self._generation}.{self._snapshot_seq}"

    def _fresh(self) -> Optional[RuleGraph]:
        if self._snapshot is None:
            return None
        if self._clock() - self._loaded_at >= self.ttl_seconds:
            return None
        return self._snapshot

    def _record(self, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("rule_graph_cache_total", outcome=outcome)

    async def get(self) -> RuleGraph:
        """Current snapshot, loading it if missing or expired."""
        snapshot = self._fresh()
        if snapshot is not None:
            self._record("hit")
            return snapshot

        async with self._lock:
            snapshot = self._fresh()
            if snapshot is not None:
                self._record("hit")
                return snapshot

            self._record("miss")
            while True:
                generation = self._generation
                graph = await self._loader()
                self.loads += 1

                if generation == self._generation:
                    self._snapshot = graph
                    self._snapshot_seq += 1
                    self._loaded_at = self._clock()
                    self.logger.info("Rule graph loaded", generation=generation, version=self.version,
                                     **graph.stats())
                    return graph

                self._record("stale_load")
                self.logger.info(
                    "Discarding rule graph loaded under an older generation",
                    started_generation=generation,
                    current_generation=self._generation
                )

    def invalidate(self) -> int:
        """Drop the snapshot and bump the generation."""
        self._generation += 1
        self._snapshot = None
        self._loaded_at = 0.0

        self._record("invalidated")
        if self.metrics:
            self.metrics.set_gauge("rule_graph_generation", self._generation)

        self.logger.info("Rule graph invalidated", generation=self._generation)
        return self._generation

    def get_cache_stats(self):
        age = self._clock() - self._loaded_at if self._snapshot is not None else None
        return {
            "generation": self._generation,
            "version": self.version,
            "loaded": self._snapshot is not None,
            "age_seconds": age,
            "ttl_seconds": self.ttl_seconds,
            "loads": self.loads,
        }
