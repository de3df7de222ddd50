"""
Immutable rule graph snapshot.

The snapshot bundles everything the engine needs to interpret rules: the
category tree (as an index-based arena), characteristic types, rules, their
category bindings, and their characteristic constraints with allowed-value
pairs. It is built once per load and then shared read-only.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shared.errors import ValidationError
from shared.logging import get_logger

from .models import (
    AllowedValuePair, Category, CategoryBinding, CharacteristicConstraint,
    CharacteristicType, ComparisonType, CompatibilityRule, Severity
)

EXPORT_VERSION = "1.0"

logger = get_logger("compatibility.rule_graph")


@dataclass(frozen=True)
class _CategoryNode:
    category: Category
    parent_index: Optional[int]


class CategoryIndex:
    """Arena of categories with index-based parent pointers."""

    def __init__(self, categories: Iterable[Category] = ()):
        self._nodes: List[_CategoryNode] = []
        self._by_id: Dict[int, int] = {}
        self._by_slug: Dict[str, int] = {}

        ordered = list(categories)
        for position, category in enumerate(ordered):
            self._by_id[category.id] = position
            self._by_slug[category.slug] = position

        for category in ordered:
            parent_index = self._by_id.get(category.parent_id) if category.parent_id is not None else None
            self._nodes.append(_CategoryNode(category=category, parent_index=parent_index))

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self):
        return (node.category for node in self._nodes)

    def get(self, category_id: int) -> Optional[Category]:
        index = self._by_id.get(category_id)
        return self._nodes[index].category if index is not None else None

    def get_by_slug(self, slug: str) -> Optional[Category]:
        index = self._by_slug.get(slug)
        return self._nodes[index].category if index is not None else None

    def parent_of(self, category_id: int) -> Optional[Category]:
        index = self._by_id.get(category_id)
        if index is None:
            return None
        parent_index = self._nodes[index].parent_index
        return self._nodes[parent_index].category if parent_index is not None else None

    def lineage(self, category_id: int) -> Tuple[int, ...]:
        """The category itself followed by its parent, if any."""
        parent = self.parent_of(category_id)
        if parent is None:
            return (category_id,)
        return (category_id, parent.id)

    def slug_lineage(self, slug: str) -> Tuple[str, ...]:
        category = self.get_by_slug(slug)
        if category is None:
            return (slug,)
        parent = self.parent_of(category.id)
        return (slug, parent.slug) if parent else (slug,)


class RuleGraph:
    """Read-only snapshot of the compatibility rule graph."""

    def __init__(
        self,
        rules: Iterable[CompatibilityRule] = (),
        bindings: Iterable[CategoryBinding] = (),
        constraints: Iterable[CharacteristicConstraint] = (),
        categories: Iterable[Category] = (),
        characteristic_types: Iterable[CharacteristicType] = (),
    ):
        self.rules: Dict[int, CompatibilityRule] = {rule.id: rule for rule in rules}
        self.categories = CategoryIndex(categories)
        self.characteristic_types: Dict[int, CharacteristicType] = {
            char_type.id: char_type for char_type in characteristic_types
        }

        self._bindings: Dict[int, List[CategoryBinding]] = {}
        for binding in bindings:
            if binding.primary_category_id == binding.secondary_category_id:
                logger.warning("Dropping self-referencing category binding", rule_id=binding.rule_id,
                               category_id=binding.primary_category_id)
                continue
            if binding.rule_id not in self.rules:
                logger.warning("Dropping binding for unknown rule", rule_id=binding.rule_id)
                continue
            self._bindings.setdefault(binding.rule_id, []).append(binding)

        self._constraints: Dict[int, List[CharacteristicConstraint]] = {}
        for constraint in constraints:
            if constraint.rule_id not in self.rules:
                logger.warning("Dropping constraint for unknown rule", rule_id=constraint.rule_id,
                               constraint_id=constraint.id)
                continue
            self._constraints.setdefault(constraint.rule_id, []).append(constraint)

        self.created_at = datetime.now(timezone.utc)

    def bindings_for(self, rule_id: int) -> List[CategoryBinding]:
        return self._bindings.get(rule_id, [])

    def constraints_for(self, rule_id: int) -> List[CharacteristicConstraint]:
        return self._constraints.get(rule_id, [])

    def bound_rules(self) -> List[CompatibilityRule]:
        """Rules with at least one category binding, in id order."""
        return [self.rules[rule_id] for rule_id in sorted(self._bindings)]

    def characteristic_name(self, characteristic_type_id: int) -> str:
        char_type = self.characteristic_types.get(characteristic_type_id)
        return char_type.name if char_type else f"characteristic #{characteristic_type_id}"

    def stats(self) -> Dict[str, Any]:
        return {
            "rules": len(self.rules),
            "bindings": sum(len(items) for items in self._bindings.values()),
            "constraints": sum(len(items) for items in self._constraints.values()),
            "allowed_pairs": sum(
                len(constraint.allowed_pairs)
                for items in self._constraints.values() for constraint in items
            ),
            "categories": len(self.categories),
            "characteristic_types": len(self.characteristic_types),
            "created_at": self.created_at.isoformat(),
        }

    def to_export(self) -> Dict[str, Any]:
        """Serialize to the rule export document."""
        rules = []
        for rule_id in sorted(self.rules):
            rule = self.rules[rule_id]
            rules.append({
                "id": rule.id,
                "name": rule.name,
                "description": rule.description,
                "severity": rule.severity.value,
                "categories": [
                    {
                        "ruleId": rule.id,
                        "primaryCategoryId": binding.primary_category_id,
                        "secondaryCategoryId": binding.secondary_category_id,
                    }
                    for binding in self.bindings_for(rule.id)
                ],
                "characteristics": [
                    {
                        "id": constraint.id,
                        "ruleId": rule.id,
                        "primaryCharacteristicId": constraint.primary_characteristic_type_id,
                        "secondaryCharacteristicId": constraint.secondary_characteristic_type_id,
                        "comparisonType": constraint.comparison_type.value,
                        "values": [
                            {"primaryValue": pair.primary_value, "secondaryValue": pair.secondary_value}
                            for pair in constraint.allowed_pairs
                        ],
                    }
                    for constraint in self.constraints_for(rule.id)
                ],
            })

        return {
            "version": EXPORT_VERSION,
            "exportDate": datetime.now(timezone.utc).isoformat(),
            "categories": [
                {"id": c.id, "slug": c.slug, "name": c.name, "parentId": c.parent_id}
                for c in self.categories
            ],
            "characteristicTypes": [
                {"id": t.id, "slug": t.slug, "name": t.name}
                for t in sorted(self.characteristic_types.values(), key=lambda t: t.id)
            ],
            "rules": rules,
        }

    @classmethod
    def from_export(cls, data: Dict[str, Any]) -> "RuleGraph":
        """Build a snapshot from a rule export document."""
        if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
            raise ValidationError("Invalid rule export: 'rules' list is required")

        categories = [
            Category(id=int(c["id"]), slug=c["slug"], name=c.get("name") or c["slug"],
                     parent_id=int(c["parentId"]) if c.get("parentId") is not None else None)
            for c in data.get("categories") or []
        ]
        characteristic_types = [
            CharacteristicType(id=int(t["id"]), slug=t["slug"], name=t.get("name") or t["slug"])
            for t in data.get("characteristicTypes") or []
        ]

        rules: List[CompatibilityRule] = []
        bindings: List[CategoryBinding] = []
        constraints: List[CharacteristicConstraint] = []
        next_constraint_id = 1

        for position, rule_data in enumerate(data["rules"], start=1):
            rule_id = int(rule_data.get("id") or position)
            try:
                severity = Severity(rule_data.get("severity") or Severity.ERROR.value)
            except ValueError:
                raise ValidationError(
                    "Invalid rule export: unknown severity",
                    {"rule": rule_data.get("name"), "severity": rule_data.get("severity")}
                )
            rules.append(CompatibilityRule(
                id=rule_id,
                name=rule_data["name"],
                description=rule_data.get("description"),
                severity=severity,
            ))

            for binding_data in rule_data.get("categories") or []:
                bindings.append(CategoryBinding(
                    rule_id=rule_id,
                    primary_category_id=int(binding_data["primaryCategoryId"]),
                    secondary_category_id=int(binding_data["secondaryCategoryId"]),
                ))

            for char_data in rule_data.get("characteristics") or []:
                constraint_id = int(char_data.get("id") or next_constraint_id)
                next_constraint_id = max(next_constraint_id, constraint_id) + 1
                try:
                    comparison_type = ComparisonType(char_data["comparisonType"])
                except ValueError:
                    raise ValidationError(
                        "Invalid rule export: unknown comparison type",
                        {"rule": rule_data.get("name"), "constraint_id": constraint_id,
                         "comparisonType": char_data.get("comparisonType")}
                    )
                constraints.append(CharacteristicConstraint(
                    id=constraint_id,
                    rule_id=rule_id,
                    primary_characteristic_type_id=int(char_data["primaryCharacteristicId"]),
                    secondary_characteristic_type_id=int(char_data["secondaryCharacteristicId"]),
                    comparison_type=comparison_type,
                    allowed_pairs=tuple(
                        AllowedValuePair(
                            constraint_id=constraint_id,
                            primary_value=str(value["primaryValue"]),
                            secondary_value=str(value["secondaryValue"]),
                        )
                        for value in char_data.get("values") or []
                    ),
                ))

        return cls(
            rules=rules,
            bindings=bindings,
            constraints=constraints,
            categories=categories,
            characteristic_types=characteristic_types,
        )
