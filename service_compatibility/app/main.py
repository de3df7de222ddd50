"""
Compatibility service for the PC Configurator.
"""

from datetime import datetime
from typing import Optional

from fastapi import Body, HTTPException

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ConfiguratorException, ExternalServiceError

from .cache.redis_cache import RedisCache
from .cache.rule_graph_cache import RuleGraphCache
from .checker import CompatibilityChecker
from .persistence.memory import FileRuleStore
from .persistence.postgres import PostgreSQLPersistence
from .rules.models import (
    BuildCheckRequest, ComponentsCheckRequest, FilterRequest, PairCheckRequest, RequiredSlotGroup
)


class CompatibilityService(BaseService):
    """Compatibility service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        catalog=None,
        rule_store=None,
        result_cache: Optional[RedisCache] = None,
    ):
        super().__init__("compatibility", 8020, config)

        # Initialize components
        persistence = None
        if catalog is None or (rule_store is None and not self.config.rules_file):
            persistence = PostgreSQLPersistence(self.config.postgres_dsn)

        self.catalog = catalog or persistence
        if rule_store is not None:
            self.rule_store = rule_store
        elif self.config.rules_file:
            self.rule_store = FileRuleStore(self.config.rules_file)
        else:
            self.rule_store = persistence

        if result_cache is None and self.config.enable_result_cache:
            result_cache = RedisCache(self.config.redis_url, self.config.result_cache_ttl_seconds)
        self.cache = result_cache

        self.rule_graph_cache = RuleGraphCache(
            self.rule_store.load_rule_graph,
            ttl_seconds=self.config.rule_graph_ttl_seconds,
            metrics=self.metrics
        )
        self.checker = CompatibilityChecker(
            self.catalog,
            self.rule_graph_cache,
            result_cache=self.cache,
            metrics=self.metrics,
            delimiter=self.config.list_delimiter,
            required_slots=[RequiredSlotGroup.from_dict(group) for group in self.config.required_slot_groups],
            result_cache_ttl=self.config.result_cache_ttl_seconds,
        )

        self._setup_compatibility_routes()

    def _setup_compatibility_routes(self):
        """Set up compatibility-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "compatibility",
                "message": "PC Configurator - Compatibility Service",
                "version": "1.0.0",
                "capabilities": ["rule_engine", "candidate_filter", "caching", "persistence"]
            }

        @self.app.post("/compatibility/check")
        async def check_components(request: ComponentsCheckRequest):
            """Check an ordered list of components pairwise."""
            try:
                return await self.checker.check_components(request)
            except ConfiguratorException:
                raise
            except Exception as e:
                self.logger.error("Error checking components", error=str(e))
                raise HTTPException(status_code=500, detail="Internal server error")

        @self.app.post("/compatibility/build")
        async def check_build(request: BuildCheckRequest):
            """Check a build given as categorySlug -> productSlug."""
            try:
                return await self.checker.check_build(request.components)
            except ConfiguratorException:
                raise
            except Exception as e:
                self.logger.error("Error checking build", error=str(e))
                raise HTTPException(status_code=500, detail="Internal server error")

        @self.app.get("/compatibility/build/{build_id}")
        async def check_saved_build(build_id: int):
            """Check a saved build."""
            try:
                return await self.checker.check_saved_build(build_id)
            except ConfiguratorException:
                raise
            except Exception as e:
                self.logger.error("Error checking saved build", build_id=build_id, error=str(e))
                raise HTTPException(status_code=500, detail="Internal server error")

        @self.app.post("/compatibility/pair")
        async def check_pair(request: PairCheckRequest):
            """Check two specific components."""
            try:
                return await self.checker.check_pair(request)
            except ConfiguratorException:
                raise
            except Exception as e:
                self.logger.error("Error checking pair", error=str(e))
                raise HTTPException(status_code=500, detail="Internal server error")

        @self.app.post("/compatibility/filter")
        async def filter_candidates(request: FilterRequest):
            """Products of a category compatible with the current build."""
            try:
                return await self.checker.filter_candidates(request.categorySlug, request.buildComponents)
            except ConfiguratorException:
                raise
            except Exception as e:
                self.logger.error("Error filtering candidates", category=request.categorySlug, error=str(e))
                raise HTTPException(status_code=500, detail="Internal server error")

        @self.app.get("/compatibility/rules/export")
        async def export_rules():
            """Export the rule graph."""
            return await self.checker.export_rules()

        @self.app.post("/compatibility/rules/invalidate")
        async def invalidate_rules(reason: Optional[str] = Body(None, embed=True)):
            """Drop cached rules and results after a rule change."""
            generation = await self.checker.invalidate()
            self.metrics.record_business_event("rules_invalidated")
            self.logger.info("Rules invalidated", generation=generation, reason=reason)
            return {"success": True, "generation": generation}

        @self.app.get("/compatibility/stats")
        async def get_stats():
            """Get compatibility service statistics."""
            try:
                stats = await self.checker.get_stats()
                stats["timestamp"] = datetime.now().isoformat()
                return stats
            except ConfiguratorException:
                raise
            except Exception as e:
                self.logger.error("Error getting stats", error=str(e))
                raise HTTPException(status_code=500, detail="Internal server error")

    async def _check_dependencies(self):
        """Check compatibility service dependencies."""
        dependencies = {}

        if self.cache is not None:
            try:
                dependencies["redis"] = "ok" if await self.cache.health_check() else "error"
            except Exception:
                dependencies["redis"] = "error"

        try:
            dependencies["catalog"] = "ok" if await self.catalog.health_check() else "error"
        except Exception:
            dependencies["catalog"] = "error"

        if self.rule_store is not self.catalog:
            try:
                dependencies["rules"] = "ok" if await self.rule_store.health_check() else "error"
            except Exception:
                dependencies["rules"] = "error"

        return dependencies

    async def start(self):
        """Start compatibility service components."""
        await self.catalog.start()
        if self.rule_store is not self.catalog:
            await self.rule_store.start()

        if self.cache is not None:
            try:
                await self.cache.start()
            except ExternalServiceError as e:
                # Results are recomputed on every request while Redis is down.
                self.logger.warning("Result cache unavailable", error=e.message)

        graph = await self.rule_graph_cache.get()
        self.logger.info(f"Compatibility service started with {len(graph.rules)} rules")

    async def stop(self):
        """Stop compatibility service components."""
        if self.cache is not None:
            await self.cache.stop()
        if self.rule_store is not self.catalog:
            await self.rule_store.stop()
        await self.catalog.stop()

        self.logger.info("Compatibility service stopped")


def create_app():
    """Create compatibility service application."""
    service = CompatibilityService()
    return service.app


if __name__ == "__main__":
    service = CompatibilityService()
    service.run()
