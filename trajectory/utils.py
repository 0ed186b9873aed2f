from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np
from scipy import linalg

from control.errors import DegenerateGeometry, InsufficientWaypoints
from data.formats.data_format import PredictedTrajectory, ReferencePath


MIN_WAYPOINTS = 4
DEFAULT_ORDER = 3
DEFAULT_MAX_CONDITION_NUMBER = 1e12


def to_vehicle_frame(
    xs: Sequence[float],
    ys: Sequence[float],
    px: float,
    py: float,
    psi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Express world-frame points in the vehicle frame.

    The vehicle frame has its origin at (px, py) and its x-axis along the
    heading psi: translate by (-px, -py), then rotate by -psi.
    """
    dx = np.asarray(xs, dtype=float) - px
    dy = np.asarray(ys, dtype=float) - py
    cos_psi = math.cos(-psi)
    sin_psi = math.sin(-psi)
    local_x = dx * cos_psi - dy * sin_psi
    local_y = dx * sin_psi + dy * cos_psi
    return local_x, local_y


def to_world_frame(
    xs: Sequence[float],
    ys: Sequence[float],
    px: float,
    py: float,
    psi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`to_vehicle_frame`: rotate by psi, then translate."""
    local_x = np.asarray(xs, dtype=float)
    local_y = np.asarray(ys, dtype=float)
    cos_psi = math.cos(psi)
    sin_psi = math.sin(psi)
    world_x = local_x * cos_psi - local_y * sin_psi + px
    world_y = local_x * sin_psi + local_y * cos_psi + py
    return world_x, world_y


def polyfit(
    xs: Sequence[float],
    ys: Sequence[float],
    order: int = DEFAULT_ORDER,
    max_condition_number: float = DEFAULT_MAX_CONDITION_NUMBER,
) -> np.ndarray:
    """
    Least-squares polynomial fit, coefficients in ascending powers.

    Solves A c = y with a QR factorization of the Vandermonde design matrix
    A[i, j] = x_i ** j instead of forming the normal equations.

    Raises:
        InsufficientWaypoints: fewer points than order + 1, or mismatched inputs.
        DegenerateGeometry: non-finite input or an ill-conditioned design matrix
            (e.g. repeated x values).
    """
    x = np.asarray(xs, dtype=float).ravel()
    y = np.asarray(ys, dtype=float).ravel()
    if order < 1:
        raise ValueError(f"order must be >= 1, got {order}")
    if x.size != y.size:
        raise InsufficientWaypoints(
            min(x.size, y.size), order,
            f"Waypoint x/y lengths differ: {x.size} != {y.size}",
        )
    if x.size <= order:
        raise InsufficientWaypoints(x.size, order)
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        raise DegenerateGeometry("Waypoints contain non-finite values")

    A = np.vander(x, order + 1, increasing=True)
    q, r = linalg.qr(A, mode="economic")
    diag = np.abs(np.diag(r))
    if diag.min() <= np.finfo(float).eps * max(diag.max(), 1.0) * x.size:
        raise DegenerateGeometry(
            f"Design matrix is rank deficient (fewer than {order + 1} distinct x values)"
        )
    condition = np.linalg.cond(r)
    if not np.isfinite(condition) or condition > max_condition_number:
        raise DegenerateGeometry(f"Ill-conditioned waypoint fit (condition number {condition:.3g})")

    return linalg.solve_triangular(r, q.T @ y)


def preprocess_waypoints(
    ptsx: Sequence[float],
    ptsy: Sequence[float],
    px: float,
    py: float,
    psi: float,
    order: int = DEFAULT_ORDER,
    max_condition_number: float = DEFAULT_MAX_CONDITION_NUMBER,
) -> ReferencePath:
    """Transform world waypoints into the vehicle frame and fit the reference curve."""
    if len(ptsx) != len(ptsy):
        raise InsufficientWaypoints(
            min(len(ptsx), len(ptsy)), order,
            f"Waypoint x/y lengths differ: {len(ptsx)} != {len(ptsy)}",
        )
    num_points = len(ptsx)
    if num_points < max(MIN_WAYPOINTS, order + 1):
        raise InsufficientWaypoints(num_points, order)
    local_x, local_y = to_vehicle_frame(ptsx, ptsy, px, py, psi)
    coeffs = polyfit(local_x, local_y, order=order, max_condition_number=max_condition_number)
    return ReferencePath(coeffs=tuple(coeffs))


def reference_line(path: ReferencePath, spacing: float = 5.0, count: int = 11) -> PredictedTrajectory:
    """Sample the reference curve ahead of the vehicle for display."""
    xs = spacing * np.arange(1, count + 1)
    return PredictedTrajectory(points=tuple((float(x), float(path.evaluate(x))) for x in xs))
