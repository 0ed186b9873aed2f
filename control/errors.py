"""
Error kinds raised by the MPC pipeline.

Waypoint errors abort a cycle before the optimizer runs. Solver errors are
raised after a solve whose result must not be trusted; they carry the raw
solution so callers can log it, never actuate it.
"""

from typing import Optional


class MPCError(Exception):
    """Base class for all controller errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class WaypointError(MPCError, ValueError):
    """The reference path could not be built from the given waypoints."""


class InsufficientWaypoints(WaypointError):
    """Fewer waypoints than the requested polynomial order needs."""

    def __init__(self, num_points: int, order: int, message: Optional[str] = None):
        self.num_points = num_points
        self.order = order
        super().__init__(
            message or f"Need at least {order + 1} waypoints for an order-{order} fit, got {num_points}"
        )


class DegenerateGeometry(WaypointError):
    """Waypoints produce an ill-conditioned or rank-deficient fit."""


class SolverError(MPCError, RuntimeError):
    """The optimizer returned a result that must not be actuated."""

    def __init__(self, status: str, solution=None, message: Optional[str] = None):
        self.status = status
        self.solution = solution
        super().__init__(message or f"IPOPT returned status {status}")


class SolverNonConvergence(SolverError):
    """The solver finished without a (locally) optimal solution."""


class SolverTimeout(SolverNonConvergence):
    """The solver ran out of its time budget before converging."""
