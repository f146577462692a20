"""
Matrix expansion.

Turns a matrix declaration into the ordered list of legs a run executes.
"""

import itertools
from typing import List, Optional

from ..exceptions import SpecError, ValidationError
from .types import Leg, MatrixSpec


def expand_matrix(matrix: Optional[MatrixSpec]) -> List[Leg]:
    """
    Expand a matrix into legs.

    Args:
        matrix: Matrix declaration, or None for a pipeline without one

    Returns:
        Legs in deterministic order. Explicit ``include`` entries keep their
        declaration order; axes expand as a cross product with the first
        declared axis varying slowest.

    Raises:
        SpecError: If an axis has no values or repeats one, or include entries
            disagree or repeat
    """
    if matrix is None or (not matrix.include and not matrix.axes):
        return [Leg(0, {})]

    if matrix.include:
        return _expand_include(matrix)

    errors = []
    for name, values in matrix.axes:
        if not values:
            errors.append(ValidationError(f"matrix axis '{name}' has no values", path=f"matrix.{name}"))
        duplicates = sorted({v for v in values if values.count(v) > 1})
        if duplicates:
            errors.append(ValidationError(
                f"matrix axis '{name}' repeats values {duplicates}", path=f"matrix.{name}"
            ))
    if errors:
        raise SpecError(errors)

    names = [name for name, _ in matrix.axes]
    combinations = itertools.product(*(values for _, values in matrix.axes))
    return [Leg(i, dict(zip(names, combo))) for i, combo in enumerate(combinations)]


def _expand_include(matrix: MatrixSpec) -> List[Leg]:
    axis_names = set(matrix.include[0].keys())
    errors = []
    seen = set()
    legs = []

    for i, entry in enumerate(matrix.include):
        if set(entry.keys()) != axis_names:
            errors.append(ValidationError(
                f"matrix.include[{i}] axes {sorted(entry.keys())} differ from {sorted(axis_names)}",
                path=f"matrix.include[{i}]"
            ))
            continue
        key = tuple(sorted(entry.items()))
        if key in seen:
            errors.append(ValidationError(
                f"matrix.include[{i}] duplicates an earlier leg", path=f"matrix.include[{i}]"
            ))
            continue
        seen.add(key)
        legs.append(Leg(i, entry))

    if errors:
        raise SpecError(errors)
    return legs
