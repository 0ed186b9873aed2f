#!/usr/bin/env python3
"""
Closed-loop simulation of the MPC stack on a synthetic track.

The simulated vehicle follows the kinematic bicycle model in world
coordinates. Each cycle the vehicle keeps executing the previous command for
the actuation delay, then the new command takes over, which is exactly the
situation the latency compensator plans for.

Usage:
    python tools/simulate_track.py
    python tools/simulate_track.py --track curve --steps 200 --speed 40
"""

import argparse
import logging
import math
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from control.command_extractor import to_consumer_steering
from mpc_stack import MPCStack, build_stack_config, load_config
from data.formats.data_format import ControlCommand, Telemetry

logger = logging.getLogger(__name__)


@dataclass
class Track:
    """Centerline y = center(x) in world coordinates."""
    name: str
    center: Callable[[np.ndarray], np.ndarray]

    def waypoints(self, x: float, spacing: float = 20.0, count: int = 6, behind: float = 10.0):
        xs = x - behind + spacing * np.arange(count)
        return xs, self.center(xs)

    def lateral_error(self, x: float, y: float) -> float:
        return float(y - self.center(np.array([x]))[0])


def straight_track(offset: float = 0.0) -> Track:
    return Track("straight", lambda xs: np.full_like(np.asarray(xs, dtype=float), offset))


def curved_track(amplitude: float = 8.0, wavelength: float = 400.0) -> Track:
    k = 2.0 * math.pi / wavelength
    return Track("curve", lambda xs: amplitude * np.sin(k * np.asarray(xs, dtype=float)))


@dataclass
class SimulationReport:
    """Per-step history and summary of a closed-loop run."""
    lateral_errors: List[float] = field(default_factory=list)
    speeds: List[float] = field(default_factory=list)
    steering: List[float] = field(default_factory=list)
    throttle: List[float] = field(default_factory=list)
    fallbacks: int = 0
    solve_times: List[float] = field(default_factory=list)

    @property
    def max_abs_lateral_error(self) -> float:
        return max((abs(e) for e in self.lateral_errors), default=0.0)

    @property
    def mean_speed(self) -> float:
        return float(np.mean(self.speeds)) if self.speeds else 0.0

    @property
    def mean_solve_time(self) -> float:
        return float(np.mean(self.solve_times)) if self.solve_times else 0.0


def simulate(stack: MPCStack, track: Track, steps: int = 100,
             initial_speed: float = 40.0, initial_offset: float = 0.0,
             initial_heading: float = 0.0, cycle_dt: Optional[float] = None) -> SimulationReport:
    """
    Drive the stack around ``track`` for ``steps`` cycles.

    Args:
        stack: MPC stack under test
        track: Track to follow
        steps: Number of control cycles
        initial_speed: Starting speed
        initial_offset: Starting lateral offset from the centerline
        initial_heading: Starting heading (radians)
        cycle_dt: Cycle duration; defaults to the configured actuation delay

    Returns:
        SimulationReport
    """
    model = stack.controller.model
    dt = cycle_dt if cycle_dt is not None else (stack.config.latency.dt or stack.config.mpc.dt)
    x, y, psi, v = 0.0, track.center(np.array([0.0]))[0] + initial_offset, initial_heading, initial_speed
    applied = ControlCommand.zero()
    report = SimulationReport()

    for step in range(steps):
        ptsx, ptsy = track.waypoints(x)
        telemetry = Telemetry(
            ptsx=list(ptsx), ptsy=list(ptsy), x=x, y=y, psi=psi, speed=v,
            steering_angle=applied.steering_normalized if stack.config.extractor.normalize_steering
            else applied.steering,
            throttle=applied.throttle,
            timestamp=step * dt,
        )
        result = stack.process_telemetry(telemetry)
        if result.command.fallback_used:
            report.fallbacks += 1
        if result.solve_time_s is not None:
            report.solve_times.append(result.solve_time_s)

        # The previous command acts during the cycle; the new one applies from the next cycle
        delta = to_consumer_steering(applied.steering)
        x, y, psi, v = model.advance_pose(x, y, psi, v, delta, applied.throttle, dt)
        applied = result.command

        report.lateral_errors.append(track.lateral_error(x, y))
        report.speeds.append(v)
        report.steering.append(applied.steering)
        report.throttle.append(applied.throttle)
        logger.debug(
            f"step={step} x={x:.1f} y={y:.2f} v={v:.1f} cte={report.lateral_errors[-1]:.3f} "
            f"steer={applied.steering:.3f} throttle={applied.throttle:.3f}"
        )

    return report


def main():
    parser = argparse.ArgumentParser(description="Closed-loop MPC simulation on a synthetic track")
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--steps', type=int, default=100, help='Number of control cycles')
    parser.add_argument('--track', choices=['straight', 'curve'], default='curve')
    parser.add_argument('--speed', type=float, default=40.0, help='Initial speed')
    parser.add_argument('--offset', type=float, default=1.0, help='Initial lateral offset')
    parser.add_argument('--verbose', action='store_true', help='Log every cycle')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    stack = MPCStack(config=build_stack_config(load_config(args.config)))
    track = straight_track() if args.track == 'straight' else curved_track()
    report = simulate(stack, track, steps=args.steps, initial_speed=args.speed,
                      initial_offset=args.offset)

    print(f"Track:              {track.name}")
    print(f"Cycles:             {args.steps}")
    print(f"Max |lateral error|: {report.max_abs_lateral_error:.3f}")
    print(f"Mean speed:         {report.mean_speed:.2f}")
    print(f"Mean solve time:    {report.mean_solve_time * 1000.0:.1f} ms")
    print(f"Fallback cycles:    {report.fallbacks}")


if __name__ == "__main__":
    main()
