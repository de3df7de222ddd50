"""
Shared fixtures: a small PC catalog and its rule export.
"""

import copy
import json
from decimal import Decimal

import pytest

from service_compatibility.app.persistence.memory import InMemoryCatalog
from service_compatibility.app.rules.graph import RuleGraph
from service_compatibility.app.rules.models import Category, Product

# Characteristic type ids
SOCKET = 1
MEMORY_TYPE = 2
SUPPORTED_FREQUENCIES = 3
MEMORY_FREQUENCY = 4
WATTAGE = 5
POWER_DRAW = 6
PCIE_VERSION = 7
COOLER_TDP = 8
MAX_GPU_LENGTH = 9
GPU_LENGTH = 10

CATEGORIES = [
    {"id": 1, "slug": "processors", "name": "Processors", "parentId": None},
    {"id": 2, "slug": "motherboards", "name": "Motherboards", "parentId": None},
    {"id": 3, "slug": "memory", "name": "Memory", "parentId": None},
    {"id": 4, "slug": "power-supplies", "name": "Power supplies", "parentId": None},
    {"id": 5, "slug": "graphics-cards", "name": "Graphics cards", "parentId": None},
    {"id": 6, "slug": "cases", "name": "Cases", "parentId": None},
    {"id": 7, "slug": "cooling", "name": "Cooling", "parentId": None},
    {"id": 8, "slug": "air-coolers", "name": "Air coolers", "parentId": 7},
]

CHARACTERISTIC_TYPES = [
    {"id": SOCKET, "slug": "socket", "name": "Socket"},
    {"id": MEMORY_TYPE, "slug": "memory-type", "name": "Memory type"},
    {"id": SUPPORTED_FREQUENCIES, "slug": "supported-frequencies", "name": "Supported memory frequencies"},
    {"id": MEMORY_FREQUENCY, "slug": "memory-frequency", "name": "Memory frequency"},
    {"id": WATTAGE, "slug": "wattage", "name": "Wattage"},
    {"id": POWER_DRAW, "slug": "power-draw", "name": "Power draw"},
    {"id": PCIE_VERSION, "slug": "pcie-version", "name": "PCIe version"},
    {"id": COOLER_TDP, "slug": "cooler-tdp", "name": "Cooler TDP"},
    {"id": MAX_GPU_LENGTH, "slug": "max-gpu-length", "name": "Max GPU length"},
    {"id": GPU_LENGTH, "slug": "gpu-length", "name": "GPU length"},
]


def _rule(rule_id, name, primary_category, secondary_category, constraints, severity=None):
    rule = {
        "id": rule_id,
        "name": name,
        "description": f"{name} check",
        "categories": [{"primaryCategoryId": primary_category, "secondaryCategoryId": secondary_category}],
        "characteristics": [
            {
                "id": rule_id * 10 + position,
                "primaryCharacteristicId": primary_char,
                "secondaryCharacteristicId": secondary_char,
                "comparisonType": comparison_type,
                "values": [{"primaryValue": p, "secondaryValue": s} for p, s in values],
            }
            for position, (primary_char, secondary_char, comparison_type, values) in enumerate(constraints)
        ],
    }
    if severity:
        rule["severity"] = severity
    return rule


RULE_EXPORT = {
    "version": "1.0",
    "exportDate": "2026-01-01T00:00:00+00:00",
    "categories": CATEGORIES,
    "characteristicTypes": CHARACTERISTIC_TYPES,
    "rules": [
        _rule(1, "Socket", 2, 1, [(SOCKET, SOCKET, "exact_match", [])]),
        _rule(2, "Memory type", 2, 3, [
            (MEMORY_TYPE, MEMORY_TYPE, "compatible_values", [("DDR4", "DDR4"), ("DDR5", "DDR5")]),
        ]),
        _rule(3, "Memory frequency", 2, 3, [
            (SUPPORTED_FREQUENCIES, MEMORY_FREQUENCY, "frequency_match", []),
        ], severity="warning"),
        _rule(4, "Power supply", 4, 1, [(WATTAGE, POWER_DRAW, "power_sufficient", [])]),
        _rule(5, "Cooler capacity", 7, 1, [(COOLER_TDP, POWER_DRAW, "greater_than_or_equal", [])]),
        _rule(6, "GPU clearance", 6, 5, [(MAX_GPU_LENGTH, GPU_LENGTH, "greater_than_or_equal", [])]),
        _rule(7, "PCIe generation", 2, 5, [(PCIE_VERSION, PCIE_VERSION, "backward_compatible", [])],
              severity="warning"),
    ],
}


def _product(product_id, slug, category_id, title, characteristics, price="100.00", brand="Generic"):
    return Product(
        id=product_id,
        slug=slug,
        category_id=category_id,
        title=title,
        characteristics=dict(characteristics),
        price=Decimal(price),
        brand=brand,
    )


def make_products():
    return [
        _product(1, "ryzen-5-5600", 1, "AMD Ryzen 5 5600", {SOCKET: "AM4", POWER_DRAW: "65 W"}),
        _product(2, "core-i5-13600k", 1, "Intel Core i5-13600K", {SOCKET: "LGA1700", POWER_DRAW: "181 W"}),
        _product(3, "b550-tomahawk", 2, "MSI B550 Tomahawk", {
            SOCKET: "AM4", MEMORY_TYPE: "DDR4", SUPPORTED_FREQUENCIES: "2666,3000,3200,3600", PCIE_VERSION: "4.0",
        }),
        _product(4, "z790-aorus", 2, "Gigabyte Z790 Aorus", {
            SOCKET: "LGA1700", MEMORY_TYPE: "DDR5", SUPPORTED_FREQUENCIES: "4800,5600,6000", PCIE_VERSION: "5.0",
        }),
        _product(5, "ddr4-3200-16gb", 3, "DDR4 3200 16GB", {
            MEMORY_TYPE: "DDR4", MEMORY_FREQUENCY: "3200 MHz", POWER_DRAW: "5",
        }),
        _product(6, "ddr5-6000-32gb", 3, "DDR5 6000 32GB", {MEMORY_TYPE: "DDR5", MEMORY_FREQUENCY: "6000 MHz"}),
        _product(7, "psu-450w", 4, "450 W Bronze", {WATTAGE: "450 W"}),
        _product(8, "psu-850w", 4, "850 W Gold", {WATTAGE: "850 W"}),
        _product(9, "rtx-4070", 5, "GeForce RTX 4070", {
            POWER_DRAW: "200 W", GPU_LENGTH: "285 mm", PCIE_VERSION: "PCIe 4.0",
        }),
        _product(10, "rtx-5090", 5, "GeForce RTX 5090", {
            POWER_DRAW: "575 W", GPU_LENGTH: "357 mm", PCIE_VERSION: "PCIe 5.0",
        }),
        _product(11, "mini-tower", 6, "Compact Mini Tower", {MAX_GPU_LENGTH: "300 mm"}),
        _product(12, "tower-cooler-95", 8, "Tower cooler 95 W", {COOLER_TDP: "95"}),
        _product(13, "tower-cooler-250", 8, "Tower cooler 250 W", {COOLER_TDP: "250"}),
    ]


def make_categories():
    return [
        Category(id=c["id"], slug=c["slug"], name=c["name"], parent_id=c["parentId"]) for c in CATEGORIES
    ]


@pytest.fixture
def rule_export():
    return copy.deepcopy(RULE_EXPORT)


@pytest.fixture
def rule_graph(rule_export):
    return RuleGraph.from_export(rule_export)


@pytest.fixture
def products():
    return {product.slug: product for product in make_products()}


@pytest.fixture
def catalog():
    return InMemoryCatalog(
        categories=make_categories(),
        products=make_products(),
        builds={
            42: {"motherboards": "b550-tomahawk", "processors": "ryzen-5-5600", "memory": "ddr4-3200-16gb"},
        },
    )


@pytest.fixture
def rules_file(tmp_path, rule_export):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps(rule_export), encoding="utf-8")
    return str(path)
