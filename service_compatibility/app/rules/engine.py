"""
Rule evaluation engine for Compatibility Service.
"""

import time
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from shared.logging import get_logger

from .comparisons import ComparisonContext, compare, describe_failure, parse_number
from .graph import RuleGraph
from .models import (
    BuildResult, CandidateFilterResult, CategoryBinding, CharacteristicConstraint,
    ComparisonType, CompatibilityRule, Issue, PairResult, Product, RequiredSlotGroup, Verdict
)


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


class RuleEngine:
    """Evaluates products against an immutable rule graph snapshot."""

    def __init__(self, graph: RuleGraph, delimiter: str = ","):
        self.logger = get_logger("compatibility.rule_engine")
        self.graph = graph
        self.delimiter = delimiter
        self._contexts: Dict[int, ComparisonContext] = {}

        # (primary category, secondary category) -> [(rule, binding)]
        self._binding_index: Dict[Tuple[int, int], List[Tuple[CompatibilityRule, CategoryBinding]]] = {}
        for rule in graph.bound_rules():
            for binding in graph.bindings_for(rule.id):
                key = (binding.primary_category_id, binding.secondary_category_id)
                self._binding_index.setdefault(key, []).append((rule, binding))

    # Pair evaluation

    def matching_rules(self, product_a: Product, product_b: Product) -> List[Tuple[CompatibilityRule, Product, Product]]:
        """Rules bound to the pair's categories, with (primary, secondary) roles resolved.

        A binding on a parent category applies to its children. When a rule
        matches through several bindings, the one needing the fewest parent
        hops wins, and on a tie request order is kept.
        """
        lineage_a = self.graph.categories.lineage(product_a.category_id)
        lineage_b = self.graph.categories.lineage(product_b.category_id)

        best: Dict[int, Tuple[Tuple[int, int], CompatibilityRule, Product, Product]] = {}
        for hops_a, category_a in enumerate(lineage_a):
            for hops_b, category_b in enumerate(lineage_b):
                hops = hops_a + hops_b
                for order, key, primary, secondary in (
                    (0, (category_a, category_b), product_a, product_b),
                    (1, (category_b, category_a), product_b, product_a),
                ):
                    for rule, _binding in self._binding_index.get(key, ()):
                        rank = (hops, order)
                        current = best.get(rule.id)
                        if current is None or rank < current[0]:
                            best[rule.id] = (rank, rule, primary, secondary)

        return [(rule, primary, secondary) for _, (_, rule, primary, secondary) in sorted(best.items())]

    def evaluate_pair(self, product_a: Product, product_b: Product) -> List[Issue]:
        """Issues raised by every rule bound to the pair's categories."""
        issues: List[Issue] = []
        for rule, primary, secondary in self.matching_rules(product_a, product_b):
            rule_issues = self._evaluate_rule(rule, primary, secondary)
            if rule_issues:
                self.logger.debug(
                    "Rule fired",
                    rule_id=rule.id,
                    rule_name=rule.name,
                    primary_product=primary.id,
                    secondary_product=secondary.id,
                    issues=len(rule_issues)
                )
            issues.extend(rule_issues)
        return issues

    def _evaluate_rule(self, rule: CompatibilityRule, primary: Product, secondary: Product) -> List[Issue]:
        issues = []
        for constraint in self.graph.constraints_for(rule.id):
            if constraint.comparison_type.is_aggregate:
                # Needs the whole build; evaluated by evaluate_build.
                continue

            primary_value = primary.value_of(constraint.primary_characteristic_type_id)
            secondary_value = secondary.value_of(constraint.secondary_characteristic_type_id)

            verdict = self._run_constraint(constraint, primary_value, secondary_value)
            if verdict == Verdict.FAIL:
                issues.append(self._issue(rule, constraint, primary_value, secondary_value))
        return issues

    def _run_constraint(self, constraint: CharacteristicConstraint, primary_value: Optional[str],
                        secondary_value: Optional[str],
                        peer_values: Optional[Sequence[Optional[str]]] = None) -> Verdict:
        kind = constraint.comparison_type
        # Absence is indeterminate for every kind but exists.
        if kind != ComparisonType.EXISTS:
            if primary_value is None:
                return Verdict.INDETERMINATE
            if secondary_value is None and not kind.is_single_sided and not kind.is_aggregate:
                return Verdict.INDETERMINATE

        return compare(kind, primary_value, secondary_value, self._context_for(constraint, peer_values))

    def _context_for(self, constraint: CharacteristicConstraint,
                     peer_values: Optional[Sequence[Optional[str]]] = None) -> ComparisonContext:
        if peer_values is not None:
            return ComparisonContext.for_allowed_pairs(constraint.allowed_pairs, self.delimiter, peer_values)

        context = self._contexts.get(constraint.id)
        if context is None:
            context = ComparisonContext.for_allowed_pairs(constraint.allowed_pairs, self.delimiter)
            self._contexts[constraint.id] = context
        return context

    def _issue(self, rule: CompatibilityRule, constraint: CharacteristicConstraint,
               primary_value: Optional[str], secondary_value: Optional[str]) -> Issue:
        primary_char = self.graph.characteristic_name(constraint.primary_characteristic_type_id)
        secondary_char = self.graph.characteristic_name(constraint.secondary_characteristic_type_id)
        return Issue(
            rule_id=rule.id,
            rule_name=rule.name,
            message=describe_failure(constraint.comparison_type, primary_char, primary_value,
                                     secondary_char, secondary_value),
            severity=rule.severity,
            primary_char=primary_char,
            primary_value=primary_value,
            secondary_char=secondary_char,
            secondary_value=secondary_value,
        )

    # Build evaluation

    def evaluate_build(self, components: Sequence[Product],
                       required_slots: Iterable[RequiredSlotGroup] = ()) -> BuildResult:
        """Evaluate every pair of a build plus its build-wide rules."""
        start_time = time.time()
        components = list(components)
        result = BuildResult(components=components)

        for product_a, product_b in combinations(components, 2):
            if product_a.category_id == product_b.category_id:
                continue
            result.pairs.append(PairResult(
                primary=product_a,
                secondary=product_b,
                issues=self.evaluate_pair(product_a, product_b),
            ))

        result.pairs.extend(self._evaluate_aggregates(components))

        if len(components) >= 2:
            result.build_issues.extend(self.check_required_slots(components, required_slots))

        result.evaluation_time_ms = (time.time() - start_time) * 1000

        self.logger.debug(
            "Build evaluated",
            components=len(components),
            pairs=len(result.pairs),
            issues=len(result.issues),
            compatible=result.compatible,
            evaluation_time_ms=result.evaluation_time_ms
        )
        return result

    def _matches(self, product: Product, category_id: int) -> bool:
        return category_id in self.graph.categories.lineage(product.category_id)

    def _evaluate_aggregates(self, components: List[Product]) -> List[PairResult]:
        results = []
        for rule in self.graph.bound_rules():
            aggregates = [c for c in self.graph.constraints_for(rule.id) if c.comparison_type.is_aggregate]
            if not aggregates:
                continue

            bindings = self.graph.bindings_for(rule.id)
            for primary in components:
                primary_bindings = [b for b in bindings if self._matches(primary, b.primary_category_id)]
                if not primary_bindings:
                    continue

                issues = []
                for constraint in aggregates:
                    if constraint.comparison_type == ComparisonType.POWER_SUFFICIENT:
                        peers = [p for p in components if p is not primary]
                    else:
                        peers = [
                            p for p in components
                            if p is not primary
                            and any(self._matches(p, b.secondary_category_id) for b in primary_bindings)
                        ]
                        if not peers:
                            continue

                    peer_values = [p.value_of(constraint.secondary_characteristic_type_id) for p in peers]
                    primary_value = primary.value_of(constraint.primary_characteristic_type_id)
                    verdict = self._run_constraint(constraint, primary_value, None, peer_values)

                    if verdict == Verdict.FAIL:
                        total = sum(parse_number(value) or 0.0 for value in peer_values)
                        issues.append(self._issue(rule, constraint, primary_value, _format_number(total)))
                    elif verdict == Verdict.INDETERMINATE:
                        self.logger.debug("Aggregate constraint indeterminate", rule_id=rule.id,
                                          constraint_id=constraint.id, product_id=primary.id)

                if issues:
                    results.append(PairResult(primary=primary, secondary=None, issues=issues))
        return results

    def check_required_slots(self, components: Sequence[Product],
                             groups: Iterable[RequiredSlotGroup]) -> List[Issue]:
        """Issues for required slot groups no component of the build fills."""
        present = set()
        for product in components:
            slug = product.category_slug
            if slug is None:
                category = self.graph.categories.get(product.category_id)
                slug = category.slug if category else None
            if slug is not None:
                present.update(self.graph.categories.slug_lineage(slug))

        issues = []
        for group in groups:
            if present.isdisjoint(group.category_slugs):
                issues.append(Issue(
                    rule_id=0,
                    rule_name=group.name,
                    message=group.message,
                    severity=group.severity,
                ))
        return issues

    # Candidate filtering

    def filter_candidates(self, candidates: Sequence[Product], selected: Sequence[Product]) -> CandidateFilterResult:
        """Narrow candidates to those without blocking issues against the selection.

        Selected components in a candidate's own category are the slot being
        replaced and are not compared. If nothing survives, the full
        candidate list is returned instead of an empty one.
        """
        all_ids = [candidate.id for candidate in candidates]
        if not selected:
            return CandidateFilterResult(product_ids=all_ids)

        survivors: List[int] = []
        rejected: Dict[int, List[Issue]] = {}

        for candidate in candidates:
            blocking: List[Issue] = []
            for component in selected:
                if component.category_id == candidate.category_id:
                    continue
                blocking = [issue for issue in self.evaluate_pair(candidate, component) if issue.is_blocking]
                if blocking:
                    break

            if blocking:
                rejected[candidate.id] = blocking
            else:
                survivors.append(candidate.id)

        if not survivors and candidates:
            self.logger.warning(
                "No compatible candidates, returning full category list",
                candidates=len(candidates),
                selected=len(selected)
            )
            return CandidateFilterResult(product_ids=all_ids, fallback_applied=True, rejected=rejected)

        return CandidateFilterResult(product_ids=survivors, rejected=rejected)

    def get_engine_stats(self):
        """Get engine statistics."""
        stats = self.graph.stats()
        stats["binding_keys"] = len(self._binding_index)
        return stats
