"""
Shapes engine output into the public response models.
"""

from typing import List, Optional, Sequence

from .models import (
    BuildCompatibilityResult, BuildResult, CandidateFilterResult, CompatibilityEdge,
    CompatibilityIssueModel, CompatibilityPairIssue, CompatibilityResult, ComponentCompatibilityResult,
    ComponentInfo, ComponentNode, Issue, PairResult, Product, ProductCompatibilityInfo, ProductSummary
)

# Build-wide issues are attributed to this pseudo-component.
CONFIGURATION_COMPONENT = ComponentInfo(id=0, title="Configuration", category="Configuration")
CONFIGURATION_PRODUCT = ProductCompatibilityInfo(
    id=0, title="Configuration", category_id=0, category_name="Configuration"
)


def _reason(issues: Sequence[Issue]) -> Optional[str]:
    if not issues:
        return None
    return "; ".join(issue.message for issue in issues)


def _component_info(product: Product) -> ComponentInfo:
    return ComponentInfo(
        id=product.id,
        title=product.title,
        category=product.category_name or product.category_slug or str(product.category_id),
    )


def _component_node(product: Product) -> ComponentNode:
    return ComponentNode(
        id=product.id,
        categorySlug=product.category_slug or "",
        productSlug=product.slug,
        title=product.title,
        categoryName=product.category_name or product.category_slug or "",
    )


def _product_info(product: Product) -> ProductCompatibilityInfo:
    return ProductCompatibilityInfo(
        id=product.id,
        title=product.title,
        category_id=product.category_id,
        category_name=product.category_name or product.category_slug or "",
    )


def issue_model(issue: Issue) -> CompatibilityIssueModel:
    return CompatibilityIssueModel(
        rule_id=issue.rule_id,
        rule_name=issue.rule_name,
        message=issue.message,
        primary_char=issue.primary_char,
        primary_value=issue.primary_value,
        secondary_char=issue.secondary_char,
        secondary_value=issue.secondary_value,
        severity=issue.severity,
    )


def to_components_check_response(result: BuildResult) -> CompatibilityResult:
    """Pairwise check form: grouped issues plus one edge per evaluated pair."""
    issues: List[CompatibilityPairIssue] = []
    edges: List[CompatibilityEdge] = []

    for pair in result.pairs:
        components = [_component_info(pair.primary)]
        if pair.secondary is not None:
            components.append(_component_info(pair.secondary))
            edges.append(CompatibilityEdge(
                source=_component_node(pair.primary),
                target=_component_node(pair.secondary),
                compatible=pair.compatible,
                reason=_reason(pair.issues),
            ))
        if pair.issues:
            issues.append(CompatibilityPairIssue(components=components, reason=_reason(pair.issues)))

    for issue in result.build_issues:
        issues.append(CompatibilityPairIssue(components=[CONFIGURATION_COMPONENT], reason=issue.message))

    return CompatibilityResult(compatible=result.compatible, issues=issues, componentPairs=edges)


def to_pair_response(pair: PairResult) -> ComponentCompatibilityResult:
    return ComponentCompatibilityResult(
        compatible=pair.compatible,
        issues=[issue_model(issue) for issue in pair.issues],
        primary_product=_product_info(pair.primary),
        secondary_product=_product_info(pair.secondary) if pair.secondary is not None else None,
    )


def to_build_response(result: BuildResult) -> BuildCompatibilityResult:
    """Build check form: one entry per pair, aggregate rule and build-wide issue."""
    entries = [to_pair_response(pair) for pair in result.pairs]

    if result.build_issues:
        entries.append(ComponentCompatibilityResult(
            compatible=not any(issue.is_blocking for issue in result.build_issues),
            issues=[issue_model(issue) for issue in result.build_issues],
            primary_product=CONFIGURATION_PRODUCT,
        ))

    return BuildCompatibilityResult(compatible=result.compatible, results=entries)


def to_candidate_response(products: Sequence[Product], result: CandidateFilterResult) -> List[ProductSummary]:
    """Candidate summaries in catalog order."""
    kept = set(result.product_ids)
    return [
        ProductSummary(
            id=product.id,
            title=product.title,
            slug=product.slug,
            price=product.price,
            image=product.image,
            brand=product.brand,
            categoryId=product.category_id,
        )
        for product in products
        if product.id in kept
    ]
