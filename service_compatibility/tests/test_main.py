"""
Unit tests for Compatibility main service.
"""

import pytest
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient

from shared.config import get_config
from shared.errors import ExternalServiceError
from service_compatibility.app.main import CompatibilityService
from service_compatibility.app.persistence.memory import FileRuleStore
from service_compatibility.app.persistence.postgres import PostgreSQLPersistence


class TestCompatibilityService:
    """Test cases for CompatibilityService."""

    @pytest.fixture
    def config(self, rules_file):
        return get_config("compatibility", 8020, rules_file=rules_file, enable_result_cache=False)

    @pytest.fixture
    def compatibility_service(self, config, catalog):
        """Create CompatibilityService backed by the in-memory catalog and a rule export file."""
        return CompatibilityService(config=config, catalog=catalog)

    @pytest.fixture
    def client(self, compatibility_service):
        """Create test client."""
        return TestClient(compatibility_service.app)

    def test_components_are_wired_from_config(self, compatibility_service, catalog):
        assert compatibility_service.catalog is catalog
        assert isinstance(compatibility_service.rule_store, FileRuleStore)
        assert compatibility_service.cache is None

    def test_postgres_is_default_store(self):
        service = CompatibilityService(config=get_config("compatibility", 8020, enable_result_cache=False))

        assert isinstance(service.catalog, PostgreSQLPersistence)
        assert service.rule_store is service.catalog

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["service"] == "compatibility"
        assert "rule_engine" in data["capabilities"]

    def test_health_endpoint(self, client):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"catalog": "ok", "rules": "ok"}

    def test_check_components(self, client):
        response = client.post("/compatibility/check", json={
            "components": [
                {"categorySlug": "motherboards", "productSlug": "b550-tomahawk"},
                {"categorySlug": "processors", "slug": "core-i5-13600k"},
                {"categorySlug": "memory", "productSlug": "ddr4-3200-16gb"},
            ]
        })
        assert response.status_code == 200

        data = response.json()
        assert data["compatible"] is False
        assert len(data["componentPairs"]) == 3
        assert len(data["issues"]) == 1
        assert "LGA1700" in data["issues"][0]["reason"]
        assert "x-request-id" in response.headers

    def test_check_requires_components(self, client):
        response = client.post("/compatibility/check", json={"components": []})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_check_unknown_product(self, client):
        response = client.post("/compatibility/check", json={
            "components": [{"categorySlug": "processors", "productSlug": "pentium-4"}]
        })

        assert response.status_code == 404
        data = response.json()
        assert data["code"] == "NOT_FOUND"
        assert data["details"]["productSlug"] == "pentium-4"

    def test_check_build(self, client):
        response = client.post("/compatibility/build", json={
            "components": {
                "motherboards": "b550-tomahawk",
                "processors": "ryzen-5-5600",
                "power-supplies": "psu-450w",
                "graphics-cards": "rtx-5090",
            }
        })
        assert response.status_code == 200

        data = response.json()
        assert data["compatible"] is False
        aggregate = [r for r in data["results"] if r["secondary_product"] is None]
        assert len(aggregate) == 1
        assert aggregate[0]["primary_product"]["title"] == "450 W Bronze"
        assert aggregate[0]["issues"][0]["severity"] == "error"

        warnings = [i for r in data["results"] for i in r["issues"] if i["severity"] == "warning"]
        assert [i["rule_name"] for i in warnings] == ["PCIe generation"]

    def test_check_saved_build(self, client):
        response = client.get("/compatibility/build/42")
        assert response.status_code == 200
        assert response.json()["compatible"] is True

        response = client.get("/compatibility/build/7")
        assert response.status_code == 404

    def test_check_pair(self, client):
        response = client.post("/compatibility/pair", json={
            "category1Slug": "cases",
            "product1Slug": "mini-tower",
            "category2Slug": "graphics-cards",
            "product2Slug": "rtx-5090",
        })
        assert response.status_code == 200

        data = response.json()
        assert data["compatible"] is False
        assert data["issues"][0]["rule_name"] == "GPU clearance"
        assert data["issues"][0]["secondary_value"] == "357 mm"

    def test_filter_candidates(self, client):
        response = client.post("/compatibility/filter", json={
            "categorySlug": "graphics-cards",
            "buildComponents": {"cases": "mini-tower"},
        })
        assert response.status_code == 200

        data = response.json()
        assert [p["slug"] for p in data] == ["rtx-4070"]
        assert data[0]["categoryId"] == 5
        assert data[0]["brand"] == "Generic"

    def test_filter_without_selection_returns_category(self, client):
        response = client.post("/compatibility/filter", json={"categorySlug": "cooling"})

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == [12, 13]

    def test_filter_unknown_category(self, client):
        response = client.post("/compatibility/filter", json={"categorySlug": "monitors"})
        assert response.status_code == 404

    def test_export_rules(self, client):
        response = client.get("/compatibility/rules/export")
        assert response.status_code == 200

        data = response.json()
        assert data["version"] == "1.0"
        assert len(data["rules"]) == 7

    def test_invalidate_rules(self, client, compatibility_service):
        client.get("/compatibility/rules/export")

        response = client.post("/compatibility/rules/invalidate", json={"reason": "rule edited"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "generation": 1}
        assert compatibility_service.rule_graph_cache.get_cache_stats()["loaded"] is False

    def test_stats(self, client):
        response = client.get("/compatibility/stats")
        assert response.status_code == 200

        data = response.json()
        assert data["engine"]["rules"] == 7
        assert "timestamp" in data

    def test_metrics_endpoint(self, client):
        client.post("/compatibility/build", json={"components": {"processors": "ryzen-5-5600"}})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "compatibility_checks_total" in response.text

    def test_required_slot_groups_from_config(self, rules_file, catalog):
        config = get_config(
            "compatibility", 8020,
            rules_file=rules_file,
            enable_result_cache=False,
            required_slot_groups=[
                {"name": "Power supply", "categorySlugs": ["power-supplies"], "message": "Add a power supply"},
            ],
        )
        client = TestClient(CompatibilityService(config=config, catalog=catalog).app)

        response = client.post("/compatibility/build", json={
            "components": {"motherboards": "b550-tomahawk", "processors": "ryzen-5-5600"}
        })

        data = response.json()
        assert data["compatible"] is False
        assert data["results"][-1]["primary_product"]["category_name"] == "Configuration"
        assert data["results"][-1]["issues"][0]["message"] == "Add a power supply"

    def test_unexpected_error_returns_500(self, client):
        with patch(
            "service_compatibility.app.checker.CompatibilityChecker.check_build",
            new_callable=AsyncMock,
            side_effect=RuntimeError("boom"),
        ):
            response = client.post("/compatibility/build", json={"components": {}})

        assert response.status_code == 500


class TestServiceLifecycle:
    """Test cases for service start and stop."""

    @pytest.mark.asyncio
    async def test_start_survives_redis_outage(self, rules_file, catalog):
        config = get_config("compatibility", 8020, rules_file=rules_file)
        service = CompatibilityService(config=config, catalog=catalog)

        with patch.object(service.cache, "start", new_callable=AsyncMock) as cache_start:
            cache_start.side_effect = ExternalServiceError("redis", "connection refused")

            await service.start()

        assert service.rule_graph_cache.get_cache_stats()["loaded"] is True
        await service.stop()
