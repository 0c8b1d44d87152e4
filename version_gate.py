"""
Version gate - compare dotted numeric version strings

Used by argocd_setup to require a minimum Kubernetes server version, but has
no dependencies of its own and performs no I/O.
"""

from dataclasses import dataclass
from enum import Enum
from itertools import zip_longest


class InvalidVersionFormat(ValueError):
    """Raised when a version string is not made of dot-separated integers."""

    pass


class UnrecognizedOperator(ValueError):
    """Raised when an expected operator is not one of '=', '>' or '<'."""

    pass


class Relation(Enum):
    EQUAL = "="
    GREATER_THAN = ">"
    LESS_THAN = "<"


@dataclass(frozen=True)
class GateResult:
    """Outcome of a gate check."""

    passed: bool
    actual: Relation


def parse_version(text: str) -> tuple:
    """Split a dotted version string into integer components."""
    if not text:
        raise InvalidVersionFormat("Version string is empty")

    components = []
    for part in text.split("."):
        # str.isdigit alone accepts non-ASCII digits that int() rejects
        if not (part.isascii() and part.isdigit()):
            raise InvalidVersionFormat(
                f"Invalid version '{text}': component '{part}' is not a number"
            )
        components.append(int(part, 10))
    return tuple(components)


def compare(a: str, b: str) -> Relation:
    """Compare two dotted versions, padding the shorter one with zeros."""
    for left, right in zip_longest(parse_version(a), parse_version(b), fillvalue=0):
        if left > right:
            return Relation.GREATER_THAN
        if left < right:
            return Relation.LESS_THAN
    return Relation.EQUAL


def evaluate(a: str, b: str, expected: str) -> GateResult:
    """Check that the relation between a and b is the expected operator."""
    try:
        wanted = Relation(expected)
    except ValueError:
        raise UnrecognizedOperator(
            f"Unrecognized operator '{expected}', expected one of '=', '>', '<'"
        ) from None

    actual = compare(a, b)
    return GateResult(passed=actual is wanted, actual=actual)
