"""
Unit tests for the PostgreSQL catalog accessor and rule store.
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.errors import ExternalServiceError
from service_compatibility.app.persistence.postgres import PostgreSQLPersistence
from service_compatibility.app.rules.models import ComparisonType, Severity


CATEGORY_ROWS = [
    {"id": 1, "slug": "processors", "name": "Processors", "parent_id": None},
    {"id": 2, "slug": "motherboards", "name": "Motherboards", "parent_id": None},
    {"id": 3, "slug": "memory", "name": "Memory", "parent_id": None},
]

TYPE_ROWS = [
    {"id": 1, "slug": "socket", "name": "Socket"},
    {"id": 2, "slug": "memory-type", "name": "Memory type"},
]

RULE_ROWS = [
    {"id": 1, "name": "Socket", "description": None, "severity": None},
    {"id": 2, "name": "Memory type", "description": "DDR generation", "severity": "warning"},
    {"id": 3, "name": "Legacy", "description": None, "severity": "critical"},
]

BINDING_ROWS = [
    {"rule_id": 1, "primary_category_id": 2, "secondary_category_id": 1},
    {"rule_id": 2, "primary_category_id": 2, "secondary_category_id": 3},
]

CONSTRAINT_ROWS = [
    {"id": 10, "rule_id": 1, "primary_characteristic_id": 1, "secondary_characteristic_id": 1,
     "comparison_type": "exact_match"},
    {"id": 20, "rule_id": 2, "primary_characteristic_id": 2, "secondary_characteristic_id": 2,
     "comparison_type": "compatible_values"},
]

VALUE_ROWS = [
    {"rule_characteristic_id": 20, "primary_value": "DDR4", "secondary_value": "DDR4"},
    {"rule_characteristic_id": 20, "primary_value": "DDR5", "secondary_value": "DDR5"},
]


def make_fetch(tables):
    async def fetch(query, *args):
        for table, rows in tables.items():
            if f"FROM {table}" in query:
                return rows
        return []
    return fetch


class TestPostgreSQLPersistence:
    """Test cases for PostgreSQLPersistence."""

    @pytest.fixture
    def conn(self):
        conn = AsyncMock()
        conn.fetch.side_effect = make_fetch({
            "categories": CATEGORY_ROWS,
            "characteristics_types": TYPE_ROWS,
            "compatibility_rules": RULE_ROWS,
            "compatibility_rule_categories": BINDING_ROWS,
            "compatibility_rule_characteristics": CONSTRAINT_ROWS,
            "compatibility_values": VALUE_ROWS,
        })
        return conn

    @pytest.fixture
    def persistence(self, conn):
        persistence = PostgreSQLPersistence("postgresql://localhost/configurator")
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        pool.acquire.return_value.__aexit__.return_value = False
        persistence.pool = pool
        return persistence

    @pytest.mark.asyncio
    async def test_load_rule_graph(self, persistence, conn):
        graph = await persistence.load_rule_graph()

        assert conn.fetch.await_count == 6
        assert sorted(graph.rules) == [1, 2, 3]
        assert [rule.id for rule in graph.bound_rules()] == [1, 2]
        assert graph.categories.get_by_slug("memory").id == 3
        assert graph.characteristic_name(2) == "Memory type"

        constraint = graph.constraints_for(2)[0]
        assert constraint.comparison_type == ComparisonType.COMPATIBLE_VALUES
        assert [(pair.primary_value, pair.secondary_value) for pair in constraint.allowed_pairs] == [
            ("DDR4", "DDR4"), ("DDR5", "DDR5")
        ]
        assert graph.constraints_for(1)[0].allowed_pairs == ()

    @pytest.mark.asyncio
    async def test_rule_severity_defaults_to_error(self, persistence):
        graph = await persistence.load_rule_graph()

        assert graph.rules[1].severity == Severity.ERROR
        assert graph.rules[2].severity == Severity.WARNING
        assert graph.rules[3].severity == Severity.ERROR

    @pytest.mark.asyncio
    async def test_unknown_comparison_type_fails_the_load(self, persistence, conn):
        rows = CONSTRAINT_ROWS + [
            {"id": 30, "rule_id": 2, "primary_characteristic_id": 2, "secondary_characteristic_id": 2,
             "comparison_type": "fuzzy_match"},
        ]
        conn.fetch.side_effect = make_fetch({
            "categories": CATEGORY_ROWS,
            "compatibility_rules": RULE_ROWS,
            "compatibility_rule_characteristics": rows,
        })

        with pytest.raises(ExternalServiceError) as exc_info:
            await persistence.load_rule_graph()

        assert exc_info.value.details["comparison_type"] == "fuzzy_match"
        assert exc_info.value.details["constraint_id"] == 30

    @pytest.mark.asyncio
    async def test_get_build_components_decodes_text_column(self, persistence, conn):
        conn.fetchrow.return_value = {
            "components": json.dumps({"processors": "ryzen-5-5600", "memory": None, "cases": ""})
        }

        assert await persistence.get_build_components(42) == {"processors": "ryzen-5-5600"}

        conn.fetchrow.return_value = {"components": {"motherboards": "b550-tomahawk"}}
        assert await persistence.get_build_components(42) == {"motherboards": "b550-tomahawk"}

        conn.fetchrow.return_value = None
        assert await persistence.get_build_components(7) is None

    @pytest.mark.asyncio
    async def test_get_product_by_slug(self, persistence, conn):
        conn.fetchrow.return_value = {
            "id": 3, "slug": "b550-tomahawk", "category_id": 2, "title": "MSI B550 Tomahawk",
            "price": None, "brand": "MSI", "image": None,
            "category_slug": "motherboards", "category_name": "Motherboards",
        }
        conn.fetch.side_effect = None
        conn.fetch.return_value = [
            {"product_id": 3, "characteristic_type_id": 1, "value": "AM4"},
        ]

        product = await persistence.get_product_by_slug("b550-tomahawk")

        assert product.category_slug == "motherboards"
        assert product.value_of(1) == "AM4"

    @pytest.mark.asyncio
    async def test_store_errors_fail_closed(self, persistence, conn):
        conn.fetchrow.side_effect = ConnectionResetError("connection reset")

        with pytest.raises(ExternalServiceError) as exc_info:
            await persistence.get_category_by_slug("processors")

        assert exc_info.value.status_code == 502
        assert "get_category_by_slug failed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_not_started(self):
        persistence = PostgreSQLPersistence("postgresql://localhost/configurator")

        with pytest.raises(ExternalServiceError):
            await persistence.load_rule_graph()
        assert await persistence.health_check() is False

    @pytest.mark.asyncio
    async def test_health_check(self, persistence, conn):
        conn.fetchval.return_value = 1
        assert await persistence.health_check() is True

        conn.fetchval.side_effect = OSError("connection refused")
        assert await persistence.health_check() is False
