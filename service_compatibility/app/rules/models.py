"""
Rule data models for Compatibility Service.
"""

from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class ComparisonType(str, Enum):
    """Comparison kinds a characteristic constraint can apply."""
    EXACT_MATCH = "exact_match"
    COMPATIBLE_VALUES = "compatible_values"
    CONTAINS = "contains"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    GREATER_THAN_ZERO = "greater_than_zero"
    EXISTS = "exists"
    BACKWARD_COMPATIBLE = "backward_compatible"
    FREQUENCY_MATCH = "frequency_match"
    GREATER_THAN_OR_EQUAL_COMBINED = "greater_than_or_equal_combined"
    POWER_SUFFICIENT = "power_sufficient"

    @property
    def is_aggregate(self) -> bool:
        return self in AGGREGATE_COMPARISONS

    @property
    def is_single_sided(self) -> bool:
        return self in SINGLE_SIDED_COMPARISONS


AGGREGATE_COMPARISONS = frozenset({
    ComparisonType.GREATER_THAN_OR_EQUAL_COMBINED,
    ComparisonType.POWER_SUFFICIENT,
})

SINGLE_SIDED_COMPARISONS = frozenset({
    ComparisonType.EXISTS,
    ComparisonType.GREATER_THAN_ZERO,
})


class Severity(str, Enum):
    """Issue severity."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class Verdict(str, Enum):
    """Outcome of a single comparison."""
    PASS = "pass"
    FAIL = "fail"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class Category:
    """Catalog category."""
    id: int
    slug: str
    name: str
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class CharacteristicType:
    """Named product attribute, e.g. socket or wattage."""
    id: int
    slug: str
    name: str


@dataclass
class Product:
    """Catalog product with its characteristic values."""
    id: int
    slug: str
    category_id: int
    title: str = ""
    characteristics: Dict[int, str] = field(default_factory=dict)
    category_slug: Optional[str] = None
    category_name: Optional[str] = None
    price: Optional[Decimal] = None
    brand: Optional[str] = None
    image: Optional[str] = None

    def value_of(self, characteristic_type_id: int) -> Optional[str]:
        """Characteristic value, or None when absent or blank."""
        value = self.characteristics.get(characteristic_type_id)
        if value is None or not str(value).strip():
            return None
        return str(value)


@dataclass(frozen=True)
class CompatibilityRule:
    """Named compatibility policy."""
    id: int
    name: str
    description: Optional[str] = None
    severity: Severity = Severity.ERROR


@dataclass(frozen=True)
class CategoryBinding:
    """Declares that a rule applies between two categories."""
    rule_id: int
    primary_category_id: int
    secondary_category_id: int


@dataclass(frozen=True)
class AllowedValuePair:
    """Explicit allow-list entry for a constraint."""
    constraint_id: int
    primary_value: str
    secondary_value: str


@dataclass(frozen=True)
class CharacteristicConstraint:
    """A comparison between one characteristic on each side of a rule."""
    id: int
    rule_id: int
    primary_characteristic_type_id: int
    secondary_characteristic_type_id: int
    comparison_type: ComparisonType
    allowed_pairs: Tuple[AllowedValuePair, ...] = ()


@dataclass
class Issue:
    """One reported compatibility problem."""
    rule_id: int
    rule_name: str
    message: str
    severity: Severity = Severity.ERROR
    primary_char: Optional[str] = None
    primary_value: Optional[str] = None
    secondary_char: Optional[str] = None
    secondary_value: Optional[str] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity == Severity.ERROR


@dataclass
class PairResult:
    """Issues found for one evaluated pair (or one aggregate rule)."""
    primary: Product
    secondary: Optional[Product] = None
    issues: List[Issue] = field(default_factory=list)

    @property
    def compatible(self) -> bool:
        return not any(issue.is_blocking for issue in self.issues)


@dataclass
class BuildResult:
    """Verdict for a whole build."""
    components: List[Product]
    pairs: List[PairResult] = field(default_factory=list)
    build_issues: List[Issue] = field(default_factory=list)
    evaluation_time_ms: float = 0.0

    @property
    def issues(self) -> List[Issue]:
        flattened = [issue for pair in self.pairs for issue in pair.issues]
        return flattened + list(self.build_issues)

    @property
    def compatible(self) -> bool:
        return not any(issue.is_blocking for issue in self.issues)


@dataclass
class CandidateFilterResult:
    """Outcome of narrowing a category to compatible candidates."""
    product_ids: List[int]
    fallback_applied: bool = False
    rejected: Dict[int, List[Issue]] = field(default_factory=dict)


@dataclass(frozen=True)
class RequiredSlotGroup:
    """A slot the build must fill with at least one of the listed categories."""
    name: str
    category_slugs: Tuple[str, ...]
    message: str
    severity: Severity = Severity.ERROR

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequiredSlotGroup":
        return cls(
            name=data["name"],
            category_slugs=tuple(data.get("categorySlugs") or data.get("category_slugs") or ()),
            message=data.get("message") or f"Build is missing a component for {data['name']}",
            severity=Severity(data.get("severity", Severity.ERROR.value)),
        )


# API models

class ComponentRef(BaseModel):
    """Reference to a product in a category slot."""
    categorySlug: str = Field(..., min_length=1, description="Category slug")
    productSlug: Optional[str] = Field(None, description="Product slug")
    slug: Optional[str] = Field(None, description="Product slug (legacy field name)")

    @property
    def product_slug(self) -> Optional[str]:
        return self.productSlug or self.slug


class ComponentsCheckRequest(BaseModel):
    """Request model for the pairwise components check."""
    components: List[ComponentRef] = Field(..., description="Components to check")


class BuildCheckRequest(BaseModel):
    """Request model for the build check."""
    components: Dict[str, str] = Field(..., description="categorySlug -> productSlug")


class PairCheckRequest(BaseModel):
    """Request model for checking two specific components."""
    category1Slug: str
    product1Slug: str
    category2Slug: str
    product2Slug: str


class FilterRequest(BaseModel):
    """Request model for candidate filtering."""
    categorySlug: str = Field(..., min_length=1, description="Target category slug")
    buildComponents: Dict[str, str] = Field(default_factory=dict, description="Selected components")


class ComponentInfo(BaseModel):
    """Product summary used in pairwise issues."""
    id: int
    title: str
    category: str


class ComponentNode(BaseModel):
    """Product node of a compatibility edge."""
    id: int
    categorySlug: str
    productSlug: str
    title: str
    categoryName: str


class CompatibilityEdge(BaseModel):
    """Compatibility between two components of a build."""
    source: ComponentNode
    target: ComponentNode
    compatible: bool
    reason: Optional[str] = None


class CompatibilityPairIssue(BaseModel):
    """Pairwise issue with the components it concerns."""
    components: List[ComponentInfo]
    reason: str


class CompatibilityResult(BaseModel):
    """Response model for the pairwise components check."""
    compatible: bool
    issues: List[CompatibilityPairIssue] = Field(default_factory=list)
    componentPairs: List[CompatibilityEdge] = Field(default_factory=list)


class CompatibilityIssueModel(BaseModel):
    """Serialized issue."""
    rule_id: int
    rule_name: str
    message: str
    primary_char: Optional[str] = None
    primary_value: Optional[str] = None
    secondary_char: Optional[str] = None
    secondary_value: Optional[str] = None
    severity: Severity


class ProductCompatibilityInfo(BaseModel):
    """Product summary used in build results."""
    id: int
    title: str
    category_id: int
    category_name: str


class ComponentCompatibilityResult(BaseModel):
    """Result for one pair (or aggregate rule) of a build."""
    compatible: bool
    issues: List[CompatibilityIssueModel] = Field(default_factory=list)
    primary_product: Optional[ProductCompatibilityInfo] = None
    secondary_product: Optional[ProductCompatibilityInfo] = None


class BuildCompatibilityResult(BaseModel):
    """Response model for the build check."""
    compatible: bool
    results: List[ComponentCompatibilityResult] = Field(default_factory=list)


class ProductSummary(BaseModel):
    """Candidate product returned by the filter."""
    id: int
    title: str
    slug: str
    price: Optional[Decimal] = None
    image: Optional[str] = None
    brand: Optional[str] = None
    categoryId: int
