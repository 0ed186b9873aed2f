"""
Command extraction: turn an optimizer solution into the command the vehicle
consumes plus the trajectory shown to the operator.

The vehicle frame used for planning turns left for positive yaw, while the
vehicle expects positive steering to turn right. ``to_consumer_steering`` is
the one place that polarity is converted, in both directions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from control.mpc_controller import MPCSolution
from data.formats.data_format import ControlCommand, PredictedTrajectory


@dataclass(frozen=True)
class ExtractorConfig:
    """Configuration for command extraction."""

    max_steer: float = 0.436332  # radians
    max_throttle: float = 1.0
    # Report steering divided by max_steer ([-1, 1]) instead of radians
    normalize_steering: bool = False
    # Reference line display (points ahead of the vehicle)
    reference_spacing: float = 5.0
    reference_points: int = 11


def to_consumer_steering(steering: float) -> float:
    """
    Convert steering between planning polarity and vehicle polarity.

    The conversion is a sign flip, so it is its own inverse: apply it to
    outgoing commands and to steering reported back by the vehicle.
    """
    # 0.0 - x keeps zero unsigned
    return 0.0 - float(steering)


def steering_from_feedback(reported: Optional[float], config: ExtractorConfig) -> float:
    """Previous steering as reported by the vehicle, in planning polarity and radians."""
    if reported is None:
        return 0.0
    value = float(reported)
    if config.normalize_steering:
        value *= config.max_steer
    return to_consumer_steering(value)


class CommandExtractor:
    """Converts an MPCSolution into a ControlCommand and PredictedTrajectory."""

    def __init__(self, config: ExtractorConfig) -> None:
        self.config = config

    def make_command(self, steering: float, throttle: float,
                     fallback_reason: Optional[str] = None) -> ControlCommand:
        """
        Build a command from planning-polarity steering (radians) and throttle.

        Applies the polarity flip and clamps both channels to their limits.
        """
        requested = to_consumer_steering(steering)
        consumer_steering = float(np.clip(requested, -self.config.max_steer, self.config.max_steer))
        clamped_throttle = float(np.clip(throttle, -self.config.max_throttle, self.config.max_throttle))
        return ControlCommand(
            steering=consumer_steering,
            throttle=clamped_throttle,
            steering_normalized=consumer_steering / self.config.max_steer,
            steering_before_limits=requested,
            throttle_before_limits=float(throttle),
            fallback_used=fallback_reason is not None,
            fallback_reason=fallback_reason,
        )

    def extract(self, solution: MPCSolution) -> tuple[ControlCommand, PredictedTrajectory]:
        """Split a solution into the immediate command and the display trajectory."""
        steering, acceleration = solution.first_control
        return self.make_command(steering, acceleration), solution.predicted_trajectory()
