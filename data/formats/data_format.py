"""
Data format definitions for the MPC tracking stack.

Every object here is a per-cycle value: created by one stage of the pipeline,
read by the next, and discarded when the cycle ends.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Sequence, Tuple
import numpy as np


STATE_FIELDS = ("x", "y", "psi", "v", "cte", "epsi")


def polyeval(coeffs: Sequence[float], x):
    """Evaluate an ascending-power polynomial (Horner)."""
    result = 0.0
    for c in reversed(list(coeffs)):
        result = result * x + c
    return result


def polyderiv(coeffs: Sequence[float], x):
    """Evaluate the first derivative of an ascending-power polynomial."""
    coeffs = list(coeffs)
    result = 0.0
    for power in range(len(coeffs) - 1, 0, -1):
        result = result * x + power * coeffs[power]
    return result


@dataclass(frozen=True)
class VehicleState:
    """Local-frame vehicle state at planning time."""
    x: float = 0.0
    y: float = 0.0
    psi: float = 0.0  # heading (radians), 0 = local x-axis
    v: float = 0.0  # speed, same units as the reference speed
    cte: float = 0.0  # cross-track error
    epsi: float = 0.0  # heading error

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.psi, self.v, self.cte, self.epsi], dtype=float)

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "VehicleState":
        if len(values) != len(STATE_FIELDS):
            raise ValueError(f"Expected {len(STATE_FIELDS)} state values, got {len(values)}")
        return cls(*(float(v) for v in values))


@dataclass(frozen=True)
class ReferencePath:
    """
    Cubic reference curve y = f(x) in the vehicle frame.

    Coefficients are in ascending powers: f(x) = c0 + c1*x + c2*x^2 + c3*x^3.
    ``evaluate`` and ``slope`` only use + and *, so they accept floats, numpy
    arrays and symbolic CasADi expressions alike.
    """
    coeffs: Tuple[float, ...]

    def __post_init__(self):
        object.__setattr__(self, "coeffs", tuple(float(c) for c in self.coeffs))

    @property
    def order(self) -> int:
        return len(self.coeffs) - 1

    def evaluate(self, x):
        return polyeval(self.coeffs, x)

    def slope(self, x):
        return polyderiv(self.coeffs, x)

    def heading(self, x, ops=np):
        """Tangent angle of the curve at ``x`` (``ops`` supplies ``atan``)."""
        atan = getattr(ops, "atan", None) or getattr(ops, "arctan")
        return atan(self.slope(x))

    def padded(self, size: int = 4) -> np.ndarray:
        """Coefficients zero-padded to ``size`` entries (cubic by default)."""
        if len(self.coeffs) > size:
            raise ValueError(f"Polynomial of order {self.order} does not fit in {size} coefficients")
        out = np.zeros(size)
        out[:len(self.coeffs)] = self.coeffs
        return out


@dataclass(frozen=True)
class ControlCommand:
    """Actuation command sent to the vehicle (consumer polarity)."""
    steering: float  # radians, within +/- max_steer
    throttle: float  # -1.0 to 1.0 (acceleration proxy)
    steering_normalized: float = 0.0  # steering / max_steer, -1.0 to 1.0
    # Raw optimizer output before polarity flip and clamping (for analysis)
    steering_before_limits: Optional[float] = None
    throttle_before_limits: Optional[float] = None
    # Diagnostics
    fallback_used: bool = False
    fallback_reason: Optional[str] = None

    @classmethod
    def zero(cls) -> "ControlCommand":
        return cls(steering=0.0, throttle=0.0)


@dataclass(frozen=True)
class PredictedTrajectory:
    """Predicted (x, y) positions in the vehicle frame, display only."""
    points: Tuple[Tuple[float, float], ...] = ()

    def __len__(self) -> int:
        return len(self.points)

    @property
    def xs(self) -> List[float]:
        return [p[0] for p in self.points]

    @property
    def ys(self) -> List[float]:
        return [p[1] for p in self.points]


@dataclass
class Telemetry:
    """
    Decoded telemetry for one cycle.

    Steering and throttle are the previous command as reported by the vehicle
    (consumer polarity). ``None`` means the vehicle did not report them.
    """
    ptsx: List[float]
    ptsy: List[float]
    x: float
    y: float
    psi: float
    speed: float
    steering_angle: Optional[float] = None
    throttle: Optional[float] = None
    timestamp: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Telemetry":
        """Build from the simulator's telemetry field names."""
        missing = [k for k in ("ptsx", "ptsy", "x", "y", "psi", "speed") if k not in data]
        if missing:
            raise KeyError(f"Telemetry missing fields: {', '.join(missing)}")
        steering = data.get("steering_angle")
        throttle = data.get("throttle")
        return cls(
            ptsx=[float(v) for v in data["ptsx"]],
            ptsy=[float(v) for v in data["ptsy"]],
            x=float(data["x"]),
            y=float(data["y"]),
            psi=float(data["psi"]),
            speed=float(data["speed"]),
            steering_angle=float(steering) if steering is not None else None,
            throttle=float(throttle) if throttle is not None else None,
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass
class CycleResult:
    """Everything one control cycle produced."""
    command: ControlCommand
    trajectory: PredictedTrajectory = field(default_factory=PredictedTrajectory)
    reference_line: PredictedTrajectory = field(default_factory=PredictedTrajectory)
    state: Optional[VehicleState] = None
    reference: Optional[ReferencePath] = None
    solve_status: Optional[str] = None
    solve_time_s: Optional[float] = None
    cost: Optional[float] = None
    error: Optional[str] = None  # error kind name when the cycle fell back
    skipped: bool = False  # True if the cycle was dropped (solve already in flight)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped

    def to_dict(self, normalize_steering: bool = False) -> Dict[str, Any]:
        """Output in the simulator's field names plus diagnostics."""
        steering = self.command.steering_normalized if normalize_steering else self.command.steering
        return {
            "steering_angle": steering,
            "throttle": self.command.throttle,
            "mpc_x": self.trajectory.xs,
            "mpc_y": self.trajectory.ys,
            "next_x": self.reference_line.xs,
            "next_y": self.reference_line.ys,
            "state": asdict(self.state) if self.state is not None else None,
            "solve_status": self.solve_status,
            "solve_time_s": self.solve_time_s,
            "cost": self.cost,
            "error": self.error,
            "fallback_used": self.command.fallback_used,
            "skipped": self.skipped,
        }
