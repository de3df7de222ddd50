"""
PostgreSQL persistence layer for Compatibility Service.

Serves both the catalog lookups (categories, products, saved builds) and the
rule graph load.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import asyncpg

from shared.errors import ExternalServiceError
from shared.logging import get_logger

from ..rules.graph import RuleGraph
from ..rules.models import (
    AllowedValuePair, Category, CategoryBinding, CharacteristicConstraint,
    CharacteristicType, ComparisonType, CompatibilityRule, Product, Severity
)

_PRODUCT_COLUMNS = """
    p.id, p.slug, p.category_id, p.title, p.price, p.brand, p.image,
    c.slug AS category_slug, c.name AS category_name
"""

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgreSQLPersistence:
    """PostgreSQL catalog accessor and rule store."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("compatibility.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    @asynccontextmanager
    async def _connection(self, operation: str):
        if self.pool is None:
            raise ExternalServiceError("postgres", "persistence not started")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _STORE_ERRORS as e:
            self.logger.error("PostgreSQL query failed", operation=operation, error=str(e))
            raise ExternalServiceError("postgres", f"{operation} failed", {"error": str(e)})

    async def _fetch(self, operation: str, query: str, *args) -> List[asyncpg.Record]:
        async with self._connection(operation) as conn:
            return await conn.fetch(query, *args)

    # Catalog accessor

    async def get_category_by_slug(self, slug: str) -> Optional[Category]:
        """Resolve a category slug."""
        async with self._connection("get_category_by_slug") as conn:
            row = await conn.fetchrow("""
                SELECT id, slug, name, parent_id FROM categories WHERE slug = $1
            """, slug)

        return self._row_to_category(row) if row else None

    async def get_product_by_slug(self, slug: str) -> Optional[Product]:
        """Resolve a product slug with its characteristic values."""
        async with self._connection("get_product_by_slug") as conn:
            row = await conn.fetchrow(f"""
                SELECT {_PRODUCT_COLUMNS}
                FROM products p JOIN categories c ON c.id = p.category_id
                WHERE p.slug = $1
            """, slug)
            if not row:
                return None

            values = await conn.fetch("""
                SELECT product_id, characteristic_type_id, value
                FROM product_characteristics WHERE product_id = $1
            """, row["id"])

        return self._row_to_product(row, values)

    async def list_category_products(self, category_id: int) -> List[Product]:
        """Products of a category and its subcategories, in catalog order."""
        async with self._connection("list_category_products") as conn:
            rows = await conn.fetch(f"""
                SELECT {_PRODUCT_COLUMNS}
                FROM products p JOIN categories c ON c.id = p.category_id
                WHERE c.id = $1 OR c.parent_id = $1
                ORDER BY p.id
            """, category_id)
            if not rows:
                return []

            values = await conn.fetch("""
                SELECT product_id, characteristic_type_id, value
                FROM product_characteristics WHERE product_id = ANY($1::int[])
            """, [row["id"] for row in rows])

        by_product: Dict[int, List[asyncpg.Record]] = {}
        for value in values:
            by_product.setdefault(value["product_id"], []).append(value)

        return [self._row_to_product(row, by_product.get(row["id"], [])) for row in rows]

    async def get_build_components(self, build_id: int) -> Optional[Dict[str, str]]:
        """categorySlug -> productSlug mapping of a saved build."""
        async with self._connection("get_build_components") as conn:
            row = await conn.fetchrow("""
                SELECT components FROM pc_builds WHERE id = $1
            """, build_id)

        if not row:
            return None

        components = row["components"]
        if isinstance(components, str):
            components = json.loads(components)
        return {str(category): str(product) for category, product in components.items() if product}

    # Rule store

    async def load_rule_graph(self) -> RuleGraph:
        """Load the full rule graph with concurrent table reads."""
        (
            category_rows, type_rows, rule_rows, binding_rows, constraint_rows, value_rows
        ) = await asyncio.gather(
            self._fetch("load_categories", """
                SELECT id, slug, name, parent_id FROM categories ORDER BY id
            """),
            self._fetch("load_characteristic_types", """
                SELECT id, slug, name FROM characteristics_types ORDER BY id
            """),
            self._fetch("load_rules", """
                SELECT r.id, r.name, r.description, to_jsonb(r)->>'severity' AS severity
                FROM compatibility_rules r ORDER BY r.id
            """),
            self._fetch("load_rule_categories", """
                SELECT rule_id, primary_category_id, secondary_category_id
                FROM compatibility_rule_categories ORDER BY id
            """),
            self._fetch("load_rule_characteristics", """
                SELECT id, rule_id, primary_characteristic_id, secondary_characteristic_id, comparison_type
                FROM compatibility_rule_characteristics ORDER BY id
            """),
            self._fetch("load_compatibility_values", """
                SELECT rule_characteristic_id, primary_value, secondary_value
                FROM compatibility_values ORDER BY id
            """),
        )

        values_by_constraint: Dict[int, List[AllowedValuePair]] = {}
        for row in value_rows:
            values_by_constraint.setdefault(row["rule_characteristic_id"], []).append(AllowedValuePair(
                constraint_id=row["rule_characteristic_id"],
                primary_value=row["primary_value"],
                secondary_value=row["secondary_value"],
            ))

        constraints = []
        for row in constraint_rows:
            try:
                comparison_type = ComparisonType(row["comparison_type"])
            except ValueError:
                self.logger.error("Unknown comparison type in rule data",
                                  constraint_id=row["id"], comparison_type=row["comparison_type"])
                raise ExternalServiceError(
                    "postgres",
                    "unknown comparison type in rule data",
                    {"constraint_id": row["id"], "rule_id": row["rule_id"],
                     "comparison_type": row["comparison_type"]}
                )
            constraints.append(CharacteristicConstraint(
                id=row["id"],
                rule_id=row["rule_id"],
                primary_characteristic_type_id=row["primary_characteristic_id"],
                secondary_characteristic_type_id=row["secondary_characteristic_id"],
                comparison_type=comparison_type,
                allowed_pairs=tuple(values_by_constraint.get(row["id"], ())),
            ))

        return RuleGraph(
            rules=[self._row_to_rule(row) for row in rule_rows],
            bindings=[
                CategoryBinding(
                    rule_id=row["rule_id"],
                    primary_category_id=row["primary_category_id"],
                    secondary_category_id=row["secondary_category_id"],
                )
                for row in binding_rows
            ],
            constraints=constraints,
            categories=[self._row_to_category(row) for row in category_rows],
            characteristic_types=[
                CharacteristicType(id=row["id"], slug=row["slug"], name=row["name"]) for row in type_rows
            ],
        )

    async def health_check(self) -> bool:
        """Check PostgreSQL health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception:
            return False

    def _row_to_category(self, row) -> Category:
        return Category(id=row["id"], slug=row["slug"], name=row["name"], parent_id=row["parent_id"])

    def _row_to_rule(self, row) -> CompatibilityRule:
        try:
            severity = Severity(row["severity"]) if row["severity"] else Severity.ERROR
        except ValueError:
            self.logger.warning("Unknown rule severity, using error", rule_id=row["id"], severity=row["severity"])
            severity = Severity.ERROR
        return CompatibilityRule(id=row["id"], name=row["name"], description=row["description"], severity=severity)

    def _row_to_product(self, row, values) -> Product:
        return Product(
            id=row["id"],
            slug=row["slug"],
            category_id=row["category_id"],
            title=row["title"],
            characteristics={value["characteristic_type_id"]: value["value"] for value in values},
            category_slug=row["category_slug"],
            category_name=row["category_name"],
            price=row["price"],
            brand=row["brand"],
            image=row["image"],
        )
