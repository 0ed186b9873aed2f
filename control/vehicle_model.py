"""
Vehicle dynamics model (kinematic bicycle model) with tracking errors.
Used by the latency compensator, the MPC constraints and simulation.
"""

import math
import numpy as np
from typing import Sequence, Tuple

from data.formats.data_format import ReferencePath


class KinematicBicycleModel:
    """
    Kinematic bicycle model extended with cross-track and heading error.

    State is (x, y, psi, v, cte, epsi), controls are (delta, a). The update
    equations only use arithmetic plus ``sin``, ``cos`` and ``atan`` taken
    from ``ops``, so the same code runs on floats (``math``), arrays
    (``numpy``) and symbolic expressions (``casadi``).
    """

    def __init__(self, lf: float = 2.67):
        """
        Initialize bicycle model.

        Args:
            lf: Distance from the front axle to the center of gravity (meters)
        """
        if lf <= 0.0:
            raise ValueError(f"lf must be positive, got {lf}")
        self.lf = lf

    def step(self, state: Sequence, control: Sequence, path: ReferencePath,
             dt: float, ops=math) -> Tuple:
        """
        Advance the state by one time step.

        Args:
            state: (x, y, psi, v, cte, epsi)
            control: (delta, a) steering angle (radians) and acceleration
            path: Reference curve the errors are measured against
            dt: Time step (seconds)
            ops: Math backend providing sin, cos and atan

        Returns:
            Next (x, y, psi, v, cte, epsi)
        """
        x, y, psi, v, cte, epsi = state
        delta, a = control
        next_x, next_y, next_psi, next_v = self.advance_pose(x, y, psi, v, delta, a, dt, ops=ops)
        # Errors are measured at the current x, then advanced along the heading error
        next_cte = (path.evaluate(x) - y) + v * ops.sin(epsi) * dt
        next_epsi = (psi - ops.atan(path.slope(x))) + v * delta / self.lf * dt
        return next_x, next_y, next_psi, next_v, next_cte, next_epsi

    def residual(self, current: Sequence, following: Sequence, control: Sequence,
                 path: ReferencePath, dt: float, ops=math) -> Tuple:
        """Dynamics defect: ``following - step(current, control)`` (zero when consistent)."""
        predicted = self.step(current, control, path, dt, ops=ops)
        return tuple(f - p for f, p in zip(following, predicted))

    def rollout(self, initial_state: Sequence[float], steering: Sequence[float],
                acceleration: Sequence[float], path: ReferencePath, dt: float) -> np.ndarray:
        """
        Simulate the model forward from ``initial_state`` under a control sequence.

        Returns:
            Array of shape (len(steering) + 1, 6), first row is the initial state.
        """
        if len(steering) != len(acceleration):
            raise ValueError("steering and acceleration sequences must have equal length")
        states = [tuple(float(s) for s in initial_state)]
        for delta, a in zip(steering, acceleration):
            states.append(self.step(states[-1], (float(delta), float(a)), path, dt))
        return np.array(states, dtype=float)

    def advance_pose(self, x, y, psi, v, delta, a, dt: float, ops=math) -> Tuple:
        """Advance only the pose and speed (x, y, psi, v) by one time step."""
        return (
            x + v * ops.cos(psi) * dt,
            y + v * ops.sin(psi) * dt,
            psi + v * delta / self.lf * dt,
            v + a * dt,
        )
