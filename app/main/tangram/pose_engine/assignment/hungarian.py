"""
Hungarian Algorithm (min-cost assignment).

Dense O(n^3) shortest-augmenting-path variant with row/column potentials
(u, v), column owners p and back-pointers way.

Independent of tangram types: operates on plain cost matrices.
"""

from __future__ import annotations
from typing import Sequence, Union
import math
import numpy as np

PADDING_COST = 1_000_000.0
"""Cost of padded cells when the input is rectangular"""


def hungarian_min_cost(
    cost: Union[np.ndarray, Sequence[Sequence[float]]],
    padding_cost: float = PADDING_COST
) -> tuple[list[int], float]:
    """
    Solve the min-cost assignment problem.

    Args:
        cost: (rows, cols) cost matrix, rows/cols may differ
        padding_cost: Cost for cells added to square the matrix

    Returns:
        (assignment, total_cost):
        - assignment[row] = column index, or -1 if the row only got a padded column
        - total_cost = sum over real (non-padded) assigned cells

    Raises:
        ValueError: Not a 2D matrix, or a NaN/inf cost or padding cost

    Example:
        >>> hungarian_min_cost([[4, 1], [2, 3]])
        ([1, 0], 3.0)
    """
    a = np.asarray(cost, dtype=float)
    if a.size == 0:
        return [], 0.0
    if a.ndim != 2:
        raise ValueError(f"Expected 2D cost matrix, got shape {a.shape}")
    if not np.isfinite(a).all() or not math.isfinite(padding_cost):
        raise ValueError("Cost matrix and padding cost must be finite")

    rows, cols = a.shape
    n = max(rows, cols)
    padded = np.full((n, n), padding_cost, dtype=float)
    padded[:rows, :cols] = a

    # 1-based potentials, index 0 is the virtual start column
    u = np.zeros(n + 1)
    v = np.zeros(n + 1)
    p = np.zeros(n + 1, dtype=int)
    way = np.zeros(n + 1, dtype=int)

    for i in range(1, n + 1):
        p[0] = i
        j0 = 0
        minv = np.full(n + 1, math.inf)
        used = np.zeros(n + 1, dtype=bool)
        while True:
            used[j0] = True
            i0 = p[j0]
            delta = math.inf
            j1 = 0
            for j in range(1, n + 1):
                if used[j]:
                    continue
                cur = padded[i0 - 1, j - 1] - u[i0] - v[j]
                if cur < minv[j]:
                    minv[j] = cur
                    way[j] = j0
                if minv[j] < delta:
                    delta = minv[j]
                    j1 = j
            for j in range(n + 1):
                if used[j]:
                    u[p[j]] += delta
                    v[j] -= delta
                else:
                    minv[j] -= delta
            j0 = j1
            if p[j0] == 0:
                break
        # Augment along the alternating path
        while True:
            j1 = way[j0]
            p[j0] = p[j1]
            j0 = j1
            if j0 == 0:
                break

    assignment = [-1] * rows
    for j in range(1, n + 1):
        row = p[j] - 1
        col = j - 1
        if 0 <= row < rows and col < cols:
            assignment[row] = col

    total = float(sum(a[r, c] for r, c in enumerate(assignment) if c >= 0))
    return assignment, total
