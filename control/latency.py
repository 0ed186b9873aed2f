"""
Latency compensation: plan from the state the vehicle will be in when the
next command actually takes effect.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import ReferencePath, VehicleState


logger = logging.getLogger(__name__)

ERROR_MODELS = ("linear", "reevaluate")


@dataclass(frozen=True)
class LatencyConfig:
    """Configuration for latency compensation."""

    dt: float = 0.1  # actuation delay (seconds)
    # "linear": first-order correction of the errors measured at the origin.
    # "reevaluate": errors recomputed from the curve at the projected pose.
    error_model: str = "linear"

    def __post_init__(self):
        if self.dt < 0.0:
            raise ValueError(f"latency dt must be >= 0, got {self.dt}")
        if self.error_model not in ERROR_MODELS:
            raise ValueError(
                f"Unknown latency error model: {self.error_model} (expected one of {ERROR_MODELS})"
            )


class LatencyCompensator:
    """Projects the vehicle state forward by a fixed actuation delay."""

    def __init__(self, model: KinematicBicycleModel, config: LatencyConfig) -> None:
        self.model = model
        self.config = config

    def compensate(self, speed: float, path: ReferencePath,
                   prev_steering: float = 0.0, prev_throttle: float = 0.0) -> VehicleState:
        """
        Build the optimizer's initial state.

        The pose starts at the local origin (x = y = psi = 0) and is advanced
        with the bicycle model while the previous command is still in effect.

        Args:
            speed: Current speed
            path: Reference curve in the vehicle frame
            prev_steering: Previously issued steering, local polarity (radians)
            prev_throttle: Previously issued throttle / acceleration

        Returns:
            VehicleState for the optimizer
        """
        dt_lat = self.config.dt
        x0, y0, psi0, v0 = self.model.advance_pose(
            0.0, 0.0, 0.0, speed, prev_steering, prev_throttle, dt_lat
        )

        if self.config.error_model == "reevaluate":
            cte0 = path.evaluate(x0) - y0
            epsi0 = path.heading(x0, ops=math) - psi0
        else:
            cte0 = path.evaluate(0.0) + speed * math.sin(prev_steering) * dt_lat
            epsi0 = path.heading(0.0, ops=math) + speed * prev_steering / self.model.lf * dt_lat

        state = VehicleState(x=x0, y=y0, psi=psi0, v=v0, cte=cte0, epsi=epsi0)
        logger.debug(f"Latency-compensated state ({self.config.error_model}, {dt_lat:.3f}s): {state}")
        return state
