"""
Compatibility check orchestration.

Resolves slugs through the catalog, takes the current rule graph snapshot,
runs the engine and assembles the public response models. Assembled
responses are cached in Redis under the rule graph snapshot version they
were computed with.
"""

import asyncio
from contextlib import nullcontext
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger, set_build_context
from shared.metrics import MetricsCollector

from .cache.redis_cache import RedisCache
from .cache.rule_graph_cache import RuleGraphCache
from .rules.engine import RuleEngine
from .rules.graph import RuleGraph
from .rules.models import (
    BuildCompatibilityResult, Category, ComponentCompatibilityResult, ComponentsCheckRequest,
    CompatibilityResult, PairCheckRequest, PairResult, Product, ProductSummary, RequiredSlotGroup
)
from .rules.results import (
    to_build_response, to_candidate_response, to_components_check_response, to_pair_response
)


class CompatibilityChecker:
    """Async entry point for every compatibility operation."""

    def __init__(
        self,
        catalog,
        rule_graph_cache: RuleGraphCache,
        result_cache: Optional[RedisCache] = None,
        metrics: Optional[MetricsCollector] = None,
        delimiter: str = ",",
        required_slots: Iterable[RequiredSlotGroup] = (),
        result_cache_ttl: Optional[int] = None,
    ):
        self.logger = get_logger("compatibility.checker")
        self.catalog = catalog
        self.rule_graph_cache = rule_graph_cache
        self.result_cache = result_cache
        self.metrics = metrics
        self.delimiter = delimiter
        self.required_slots = list(required_slots)
        self.result_cache_ttl = result_cache_ttl
        self._engine: Optional[RuleEngine] = None

    async def _get_engine(self) -> RuleEngine:
        graph = await self.rule_graph_cache.get()
        if self._engine is None or self._engine.graph is not graph:
            self._engine = RuleEngine(graph, delimiter=self.delimiter)
        return self._engine

    # Catalog resolution

    async def _resolve_category(self, slug: str) -> Category:
        category = await self.catalog.get_category_by_slug(slug)
        if category is None:
            raise NotFoundError("Category not found", {"categorySlug": slug})
        return category

    async def _resolve_component(self, category_slug: str, product_slug: Optional[str]) -> Product:
        if not product_slug:
            raise ValidationError("Component is missing a product slug", {"categorySlug": category_slug})

        category, product = await asyncio.gather(
            self._resolve_category(category_slug),
            self.catalog.get_product_by_slug(product_slug),
        )
        if product is None:
            raise NotFoundError("Product not found", {"categorySlug": category_slug, "productSlug": product_slug})

        if product.category_id != category.id:
            product_category = await self.catalog.get_category_by_slug(product.category_slug) \
                if product.category_slug else None
            if product_category is None or product_category.parent_id != category.id:
                raise NotFoundError(
                    "Product not found in category",
                    {"categorySlug": category_slug, "productSlug": product_slug}
                )
        return product

    async def _resolve_components(self, components: Sequence[Tuple[str, Optional[str]]]) -> List[Product]:
        return list(await asyncio.gather(*(
            self._resolve_component(category_slug, product_slug)
            for category_slug, product_slug in components
        )))

    # Result cache

    async def _cached(self, kind: str, payload: Dict[str, Any]) -> Optional[Any]:
        if self.result_cache is None:
            return None
        # Refresh an expired snapshot first so its version is current.
        await self.rule_graph_cache.get()
        return await self.result_cache.get_result(kind, self.rule_graph_cache.version, payload)

    async def _store(self, kind: str, payload: Dict[str, Any], version: str, response: Any):
        if self.result_cache is None:
            return
        if isinstance(response, BaseModel):
            data = response.model_dump(mode="json")
        else:
            data = [item.model_dump(mode="json") for item in response]
        await self.result_cache.set_result(kind, version, payload, data, self.result_cache_ttl)

    def _record(self, kind: str, compatible: bool):
        if self.metrics:
            self.metrics.increment_counter(
                "compatibility_checks_total",
                kind=kind,
                verdict="compatible" if compatible else "incompatible"
            )

    def _timed(self, kind: str):
        if self.metrics:
            return self.metrics.time_operation("compatibility_check_duration_seconds", kind=kind)
        return nullcontext()

    # Operations

    async def check_components(self, request: ComponentsCheckRequest) -> CompatibilityResult:
        """Pairwise check of an ordered component list."""
        if not request.components:
            raise ValidationError("At least one component is required")

        pairs = [(ref.categorySlug, ref.product_slug) for ref in request.components]
        payload = {"components": pairs}

        cached = await self._cached("check", payload)
        if cached is not None:
            return CompatibilityResult.model_validate(cached)

        with self._timed("check"):
            products = await self._resolve_components(pairs)
            engine = await self._get_engine()
            version = self.rule_graph_cache.version
            result = engine.evaluate_build(products, self.required_slots)

        response = to_components_check_response(result)
        self._record("check", response.compatible)
        await self._store("check", payload, version, response)
        return response

    async def check_build(self, components: Dict[str, str]) -> BuildCompatibilityResult:
        """Check a build given as categorySlug -> productSlug."""
        pairs = [(category, product) for category, product in components.items() if product]
        payload = {"build": sorted(pairs)}

        cached = await self._cached("build", payload)
        if cached is not None:
            return BuildCompatibilityResult.model_validate(cached)

        with self._timed("build"):
            products = await self._resolve_components(pairs)
            engine = await self._get_engine()
            version = self.rule_graph_cache.version
            result = engine.evaluate_build(products, self.required_slots)

        self.logger.info(
            "Build checked",
            components=len(products),
            compatible=result.compatible,
            issues=len(result.issues),
            evaluation_time_ms=round(result.evaluation_time_ms, 2)
        )

        response = to_build_response(result)
        self._record("build", response.compatible)
        await self._store("build", payload, version, response)
        return response

    async def check_saved_build(self, build_id: int) -> BuildCompatibilityResult:
        """Check a saved build by id."""
        set_build_context(build_id)
        components = await self.catalog.get_build_components(build_id)
        if components is None:
            raise NotFoundError("Build not found", {"buildId": build_id})
        return await self.check_build(components)

    async def check_pair(self, request: PairCheckRequest) -> ComponentCompatibilityResult:
        """Detailed check of two specific components."""
        with self._timed("pair"):
            first, second = await self._resolve_components([
                (request.category1Slug, request.product1Slug),
                (request.category2Slug, request.product2Slug),
            ])
            engine = await self._get_engine()
            issues = [] if first.category_id == second.category_id else engine.evaluate_pair(first, second)

        response = to_pair_response(PairResult(primary=first, secondary=second, issues=issues))
        self._record("pair", response.compatible)
        return response

    async def filter_candidates(self, category_slug: str, build_components: Dict[str, str]) -> List[ProductSummary]:
        """Products of a category compatible with the selected components."""
        selected_pairs = [(category, product) for category, product in build_components.items() if product]
        payload = {"category": category_slug, "selected": sorted(selected_pairs)}

        cached = await self._cached("filter", payload)
        if cached is not None:
            return [ProductSummary.model_validate(item) for item in cached]

        with self._timed("filter"):
            category = await self._resolve_category(category_slug)
            candidates, selected = await asyncio.gather(
                self.catalog.list_category_products(category.id),
                self._resolve_components(selected_pairs),
            )
            engine = await self._get_engine()
            version = self.rule_graph_cache.version
            result = engine.filter_candidates(candidates, selected)

        if result.fallback_applied and self.metrics:
            self.metrics.increment_counter("candidate_filter_fallbacks_total", category=category_slug)

        self.logger.info(
            "Candidates filtered",
            category=category_slug,
            candidates=len(candidates),
            compatible=len(result.product_ids),
            fallback_applied=result.fallback_applied
        )

        response = to_candidate_response(candidates, result)
        await self._store("filter", payload, version, response)
        return response

    async def export_rules(self) -> Dict[str, Any]:
        graph: RuleGraph = await self.rule_graph_cache.get()
        return graph.to_export()

    async def invalidate(self) -> int:
        """Drop the rule graph snapshot and every cached result."""
        generation = self.rule_graph_cache.invalidate()
        cleared = 0
        if self.result_cache is not None:
            cleared = await self.result_cache.clear_results()
        self.logger.info("Compatibility caches invalidated", generation=generation, cleared_results=cleared)
        return generation

    async def get_stats(self) -> Dict[str, Any]:
        engine = await self._get_engine()
        stats = {
            "engine": engine.get_engine_stats(),
            "rule_graph_cache": self.rule_graph_cache.get_cache_stats(),
            "required_slot_groups": len(self.required_slots),
        }
        if self.result_cache is not None:
            stats["result_cache"] = await self.result_cache.get_cache_stats()
        return stats

