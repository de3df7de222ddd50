"""
Comparison strategies for characteristic constraints.

Each strategy is a pure function ``(primary, secondary, context) -> Verdict``.
Values are the raw text stored for a product characteristic, or None when the
product has no value. Strategies never raise on malformed input: a value that
cannot be interpreted under the strategy's expected type yields
``Verdict.INDETERMINATE``.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from shared.logging import get_logger

from .models import AllowedValuePair, ComparisonType, Verdict

logger = get_logger("compatibility.comparisons")

DEFAULT_DELIMITER = ","

# A comma before exactly three digits groups thousands; any other comma is a decimal point.
_NUMBER_RE = re.compile(r"^\s*([-+]?)(\d{1,3}(?:,\d{3})+(?!\d)|\d+)(?:[.,](\d+))?")
_VERSION_RE = re.compile(r"\d+(?:\.\d+)*")


@dataclass(frozen=True)
class ComparisonContext:
    """Extra inputs a strategy may need beyond the two values."""
    allowed_pairs: FrozenSet[Tuple[str, str]] = frozenset()
    peer_values: Optional[Sequence[Optional[str]]] = None
    delimiter: str = DEFAULT_DELIMITER

    @classmethod
    def for_allowed_pairs(cls, pairs: Sequence[AllowedValuePair], delimiter: str = DEFAULT_DELIMITER,
                          peer_values: Optional[Sequence[Optional[str]]] = None) -> "ComparisonContext":
        return cls(
            allowed_pairs=frozenset(
                (_normalize(pair.primary_value), _normalize(pair.secondary_value)) for pair in pairs
            ),
            peer_values=peer_values,
            delimiter=delimiter,
        )


Strategy = Callable[[Optional[str], Optional[str], ComparisonContext], Verdict]


def _normalize(value: str) -> str:
    return value.strip().casefold()


def parse_number(value: Optional[str]) -> Optional[float]:
    """Leading number of a value such as ``"650 W"``, ``"2,5"`` or ``"1,000 W"``, else None."""
    if value is None:
        return None
    match = _NUMBER_RE.match(str(value))
    if not match:
        return None
    sign, whole, fraction = match.groups()
    number = sign + whole.replace(",", "")
    if fraction:
        number += "." + fraction
    return float(number)


def parse_version(value: Optional[str]) -> Optional[Tuple[int, ...]]:
    """Dotted version found in a value such as ``"PCIe 4.0"``, else None."""
    if value is None:
        return None
    match = _VERSION_RE.search(str(value))
    if not match:
        return None
    return tuple(int(part) for part in match.group(0).split("."))


def split_list(value: str, delimiter: str = DEFAULT_DELIMITER) -> List[str]:
    return [item.strip() for item in value.split(delimiter) if item.strip()]


def _bool(result: bool) -> Verdict:
    return Verdict.PASS if result else Verdict.FAIL


def _numbers(primary: Optional[str], secondary: Optional[str], kind: str):
    left, right = parse_number(primary), parse_number(secondary)
    if left is None or right is None:
        logger.debug("Non-numeric value in numeric comparison", kind=kind,
                     primary=primary, secondary=secondary)
        return None
    return left, right


def exact_match(primary, secondary, context):
    if primary is None or secondary is None:
        return Verdict.INDETERMINATE
    return _bool(_normalize(primary) == _normalize(secondary))


def compatible_values(primary, secondary, context):
    if primary is None or secondary is None:
        return Verdict.INDETERMINATE
    if not context.allowed_pairs:
        logger.warning("No allowed values configured for compatible_values constraint",
                       primary=primary, secondary=secondary)
        return Verdict.FAIL
    return _bool((_normalize(primary), _normalize(secondary)) in context.allowed_pairs)


def contains(primary, secondary, context):
    if primary is None or secondary is None:
        return Verdict.INDETERMINATE
    elements = {_normalize(item) for item in split_list(primary, context.delimiter)}
    return _bool(_normalize(secondary) in elements)


def frequency_match(primary, secondary, context):
    if primary is None or secondary is None:
        return Verdict.INDETERMINATE
    wanted_number = parse_number(secondary)
    wanted_text = _normalize(secondary)
    for item in split_list(primary, context.delimiter):
        if _normalize(item) == wanted_text:
            return Verdict.PASS
        if wanted_number is not None and parse_number(item) == wanted_number:
            return Verdict.PASS
    return Verdict.FAIL


def greater_than_or_equal(primary, secondary, context):
    numbers = _numbers(primary, secondary, "greater_than_or_equal")
    if numbers is None:
        return Verdict.INDETERMINATE
    return _bool(numbers[0] >= numbers[1])


def less_than_or_equal(primary, secondary, context):
    numbers = _numbers(primary, secondary, "less_than_or_equal")
    if numbers is None:
        return Verdict.INDETERMINATE
    return _bool(numbers[0] <= numbers[1])


def greater_than_zero(primary, secondary, context):
    number = parse_number(primary)
    if number is None:
        logger.debug("Non-numeric value in greater_than_zero", primary=primary)
        return Verdict.INDETERMINATE
    return _bool(number > 0)


def exists(primary, secondary, context):
    return _bool(primary is not None and bool(str(primary).strip()))


def backward_compatible(primary, secondary, context):
    left, right = parse_version(primary), parse_version(secondary)
    if left is None or right is None:
        logger.debug("Unparsable version", primary=primary, secondary=secondary)
        return Verdict.INDETERMINATE
    width = max(len(left), len(right))
    left = left + (0,) * (width - len(left))
    right = right + (0,) * (width - len(right))
    return _bool(left >= right)


def greater_than_or_equal_combined(primary, secondary, context):
    if context.peer_values is None:
        logger.debug("Missing peer context for combined comparison")
        return Verdict.INDETERMINATE
    capacity = parse_number(primary)
    if capacity is None:
        return Verdict.INDETERMINATE

    demand = 0.0
    for value in context.peer_values:
        if value is None:
            continue
        number = parse_number(value)
        if number is None:
            logger.debug("Non-numeric peer value in combined comparison", value=value)
            return Verdict.INDETERMINATE
        demand += number
    return _bool(capacity >= demand)


def power_sufficient(primary, secondary, context):
    if context.peer_values is None:
        logger.debug("Missing build context for power_sufficient")
        return Verdict.INDETERMINATE
    wattage = parse_number(primary)
    if wattage is None:
        return Verdict.INDETERMINATE

    draw = 0.0
    for value in context.peer_values:
        # Components without a power-draw value draw nothing.
        if value is None:
            continue
        number = parse_number(value)
        if number is None:
            logger.debug("Non-numeric power draw", value=value)
            return Verdict.INDETERMINATE
        draw += number
    return _bool(wattage >= draw)


STRATEGIES: Dict[ComparisonType, Strategy] = {
    ComparisonType.EXACT_MATCH: exact_match,
    ComparisonType.COMPATIBLE_VALUES: compatible_values,
    ComparisonType.CONTAINS: contains,
    ComparisonType.GREATER_THAN_OR_EQUAL: greater_than_or_equal,
    ComparisonType.LESS_THAN_OR_EQUAL: less_than_or_equal,
    ComparisonType.GREATER_THAN_ZERO: greater_than_zero,
    ComparisonType.EXISTS: exists,
    ComparisonType.BACKWARD_COMPATIBLE: backward_compatible,
    ComparisonType.FREQUENCY_MATCH: frequency_match,
    ComparisonType.GREATER_THAN_OR_EQUAL_COMBINED: greater_than_or_equal_combined,
    ComparisonType.POWER_SUFFICIENT: power_sufficient,
}

_missing = set(ComparisonType) - set(STRATEGIES)
if _missing:
    raise RuntimeError(f"No comparison strategy for: {sorted(kind.value for kind in _missing)}")


def compare(
    comparison_type: ComparisonType,
    primary: Optional[str],
    secondary: Optional[str],
    context: Optional[ComparisonContext] = None,
) -> Verdict:
    """Run the strategy registered for a comparison kind."""
    return STRATEGIES[comparison_type](primary, secondary, context or ComparisonContext())


def describe_failure(comparison_type: ComparisonType, primary_char: str, primary_value: Optional[str],
                     secondary_char: str, secondary_value: Optional[str]) -> str:
    """Human-readable message for a failed comparison."""
    pv = primary_value if primary_value is not None else "not specified"
    sv = secondary_value if secondary_value is not None else "not specified"

    if comparison_type == ComparisonType.EXACT_MATCH:
        return f"{primary_char} ({pv}) does not match {secondary_char} ({sv})"
    if comparison_type == ComparisonType.COMPATIBLE_VALUES:
        return f"{primary_char} ({pv}) is not compatible with {secondary_char} ({sv})"
    if comparison_type in (ComparisonType.CONTAINS, ComparisonType.FREQUENCY_MATCH):
        return f"{primary_char} ({pv}) does not support {secondary_char} ({sv})"
    if comparison_type == ComparisonType.GREATER_THAN_OR_EQUAL:
        return f"{primary_char} ({pv}) is less than the required {secondary_char} ({sv})"
    if comparison_type == ComparisonType.LESS_THAN_OR_EQUAL:
        return f"{primary_char} ({pv}) exceeds the maximum {secondary_char} ({sv})"
    if comparison_type == ComparisonType.GREATER_THAN_ZERO:
        return f"{primary_char} ({pv}) must be greater than zero"
    if comparison_type == ComparisonType.EXISTS:
        return f"{primary_char} is required but not specified"
    if comparison_type == ComparisonType.BACKWARD_COMPATIBLE:
        return f"{primary_char} ({pv}) does not support {secondary_char} ({sv})"
    if comparison_type == ComparisonType.GREATER_THAN_OR_EQUAL_COMBINED:
        return f"{primary_char} ({pv}) is less than the combined {secondary_char} ({sv})"
    return f"{primary_char} ({pv}) is insufficient for the total {secondary_char} ({sv})"
