"""
In-memory catalog and file-backed rule store.

Used for local development and tests, and wherever the rules ship as a
rule export document instead of living in PostgreSQL.
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from shared.errors import ExternalServiceError
from shared.logging import get_logger

from ..rules.graph import RuleGraph
from ..rules.models import Category, Product


class InMemoryCatalog:
    """Catalog accessor over fixed categories, products and saved builds."""

    def __init__(
        self,
        categories: Iterable[Category] = (),
        products: Iterable[Product] = (),
        builds: Optional[Dict[int, Dict[str, str]]] = None,
    ):
        self.logger = get_logger("compatibility.persistence.memory")
        self.categories: Dict[str, Category] = {category.slug: category for category in categories}
        self._categories_by_id: Dict[int, Category] = {c.id: c for c in self.categories.values()}
        self.products: Dict[str, Product] = {}
        self.builds: Dict[int, Dict[str, str]] = dict(builds or {})

        for product in products:
            self.add_product(product)

    def add_product(self, product: Product):
        category = self._categories_by_id.get(product.category_id)
        if category is not None:
            product.category_slug = product.category_slug or category.slug
            product.category_name = product.category_name or category.name
        self.products[product.slug] = product

    async def start(self):
        self.logger.info("In-memory catalog started", categories=len(self.categories), products=len(self.products))

    async def stop(self):
        pass

    async def get_category_by_slug(self, slug: str) -> Optional[Category]:
        return self.categories.get(slug)

    async def get_product_by_slug(self, slug: str) -> Optional[Product]:
        return self.products.get(slug)

    async def list_category_products(self, category_id: int) -> List[Product]:
        matches = []
        for product in self.products.values():
            category = self._categories_by_id.get(product.category_id)
            if product.category_id == category_id or (category and category.parent_id == category_id):
                matches.append(product)
        return sorted(matches, key=lambda product: product.id)

    async def get_build_components(self, build_id: int) -> Optional[Dict[str, str]]:
        return self.builds.get(build_id)

    async def health_check(self) -> bool:
        return True


class FileRuleStore:
    """Rule store reading a rule export JSON document."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.logger = get_logger("compatibility.persistence.file")

    async def start(self):
        if not self.path.exists():
            self.logger.warning("Rule export file not found", path=str(self.path))

    async def stop(self):
        pass

    async def load_rule_graph(self) -> RuleGraph:
        try:
            with self.path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.error("Failed to read rule export", path=str(self.path), error=str(e))
            raise ExternalServiceError("rules_file", f"cannot read {self.path}", {"error": str(e)})

        graph = RuleGraph.from_export(data)
        self.logger.info("Rule export loaded", path=str(self.path), rules=len(graph.rules))
        return graph

    async def health_check(self) -> bool:
        return self.path.is_file()


class StaticRuleStore:
    """Rule store serving a graph held in memory."""

    def __init__(self, graph: RuleGraph):
        self.graph = graph

    async def start(self):
        pass

    async def stop(self):
        pass

    async def load_rule_graph(self) -> RuleGraph:
        return self.graph

    async def health_check(self) -> bool:
        return True
