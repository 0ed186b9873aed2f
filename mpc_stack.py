"""
Main MPC stack integration script.
Connects all components: waypoint preprocessing, latency compensation,
trajectory optimization and command extraction.
"""

import json
import logging
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# Add paths
sys.path.insert(0, str(Path(__file__).parent))

from control.command_extractor import (
    CommandExtractor,
    ExtractorConfig,
    steering_from_feedback,
    to_consumer_steering,
)
from control.errors import SolverError, WaypointError
from control.latency import LatencyCompensator, LatencyConfig
from control.mpc_controller import MPCConfig, MPCController, MPCWeights
from data.formats.data_format import ControlCommand, CycleResult, Telemetry
from trajectory.utils import DEFAULT_MAX_CONDITION_NUMBER, preprocess_waypoints, reference_line

logger = logging.getLogger(__name__)

FALLBACK_POLICIES = ("hold", "decelerate")


@dataclass(frozen=True)
class PreprocessConfig:
    """Waypoint preprocessing configuration."""
    order: int = 3
    max_condition_number: float = DEFAULT_MAX_CONDITION_NUMBER


@dataclass(frozen=True)
class FallbackConfig:
    """What to send when a cycle cannot produce a trusted command."""
    policy: str = "hold"  # "hold" previous command or "decelerate"
    decel_throttle: float = -0.5
    max_consecutive_failures: int = 5  # after this many, hold escalates to decelerate

    def __post_init__(self):
        if self.policy not in FALLBACK_POLICIES:
            raise ValueError(f"Unknown fallback policy: {self.policy} (expected one of {FALLBACK_POLICIES})")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")


@dataclass(frozen=True)
class StackConfig:
    """Complete, immutable configuration of the MPC stack."""
    mpc: MPCConfig = field(default_factory=MPCConfig)
    latency: LatencyConfig = field(default_factory=LatencyConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = Path(__file__).parent / "config" / "mpc_config.yaml"
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


def build_stack_config(config: dict) -> StackConfig:
    """Build a StackConfig from the config dictionary (missing keys use defaults)."""
    horizon_cfg = config.get("horizon", {}) or {}
    vehicle_cfg = config.get("vehicle", {}) or {}
    weights_cfg = config.get("weights", {}) or {}
    reference_cfg = config.get("reference", {}) or {}
    solver_cfg = config.get("solver", {}) or {}
    latency_cfg = config.get("latency", {}) or {}
    preprocess_cfg = config.get("preprocess", {}) or {}
    extractor_cfg = config.get("extractor", {}) or {}
    fallback_cfg = config.get("fallback", {}) or {}

    weights = MPCWeights(
        cte=float(weights_cfg.get("cte", 1000.0)),
        epsi=float(weights_cfg.get("epsi", 1000.0)),
        dv=float(weights_cfg.get("dv", 1.0)),
        delta=float(weights_cfg.get("delta", 100.0)),
        a=float(weights_cfg.get("a", 10.0)),
        ddelta=float(weights_cfg.get("ddelta", 10.0)),
        da=float(weights_cfg.get("da", 10.0)),
    )

    max_steer = float(vehicle_cfg.get("max_steer", 0.436332))
    max_throttle = float(vehicle_cfg.get("max_throttle", 1.0))
    lf = float(vehicle_cfg.get("lf", 2.67))

    mpc = MPCConfig(
        horizon_steps=int(horizon_cfg.get("steps", 15)),
        dt=float(horizon_cfg.get("dt", 0.15)),
        lf=lf,
        max_steer=max_steer,
        max_throttle=max_throttle,
        ref_v=float(reference_cfg.get("v", 80.0)),
        ref_cte=float(reference_cfg.get("cte", 0.0)),
        ref_epsi=float(reference_cfg.get("epsi", 0.0)),
        weights=weights,
        max_solve_time=float(solver_cfg.get("max_solve_time", 0.5)),
        max_iter=int(solver_cfg.get("max_iter", 3000)),
        tol=float(solver_cfg.get("tol", 1e-8)),
        acceptable_tol=float(solver_cfg.get("acceptable_tol", 1e-6)),
        print_level=int(solver_cfg.get("print_level", 0)),
        warm_start=bool(solver_cfg.get("warm_start", False)),
    )

    latency = LatencyConfig(
        dt=float(latency_cfg.get("dt", 0.1)),
        error_model=str(latency_cfg.get("error_model", "linear")),
    )

    preprocess = PreprocessConfig(
        order=int(preprocess_cfg.get("order", 3)),
        max_condition_number=float(
            preprocess_cfg.get("max_condition_number", DEFAULT_MAX_CONDITION_NUMBER)
        ),
    )
    if not 1 <= preprocess.order <= 3:
        raise ValueError(f"preprocess.order must be between 1 and 3, got {preprocess.order}")

    extractor = ExtractorConfig(
        max_steer=max_steer,
        max_throttle=max_throttle,
        normalize_steering=bool(extractor_cfg.get("normalize_steering", False)),
        reference_spacing=float(extractor_cfg.get("reference_spacing", 5.0)),
        reference_points=int(extractor_cfg.get("reference_points", 11)),
    )

    fallback = FallbackConfig(
        policy=str(fallback_cfg.get("policy", "hold")),
        decel_throttle=float(fallback_cfg.get("decel_throttle", -0.5)),
        max_consecutive_failures=int(fallback_cfg.get("max_consecutive_failures", 5)),
    )

    return StackConfig(
        mpc=mpc,
        latency=latency,
        extractor=extractor,
        preprocess=preprocess,
        fallback=fallback,
    )


class MPCStack:
    """
    Runs one control cycle per telemetry message.

    Holds only read-only configuration, the compiled optimizer and the last
    issued command. At most one cycle runs at a time; a cycle that arrives
    while another is solving is dropped and reported as skipped.
    """

    def __init__(self, config: Optional[StackConfig] = None,
                 config_path: Optional[str] = None,
                 controller: Optional[MPCController] = None):
        """
        Initialize MPC stack.

        Args:
            config: Prebuilt configuration (takes precedence over config_path)
            config_path: Path to YAML configuration
            controller: Optimizer to use (built from config when omitted)
        """
        if config is None:
            config = build_stack_config(load_config(config_path))
        self.config = config

        self.controller = controller if controller is not None else MPCController(config.mpc)
        self.compensator = LatencyCompensator(self.controller.model, config.latency)
        self.extractor = CommandExtractor(config.extractor)

        self._lock = threading.Lock()
        self.last_command: Optional[ControlCommand] = None
        self.consecutive_failures = 0

    def reset(self) -> None:
        """Forget the last issued command and the failure streak."""
        with self._lock:
            self.last_command = None
            self.consecutive_failures = 0

    def process_telemetry(self, telemetry: Telemetry) -> CycleResult:
        """Run one cycle; never raises for waypoint or solver failures."""
        if not self._lock.acquire(blocking=False):
            logger.warning("Solve already in flight, dropping telemetry cycle")
            return CycleResult(command=self.last_command or ControlCommand.zero(), skipped=True)
        try:
            return self._run_cycle(telemetry)
        finally:
            self._lock.release()

    def _run_cycle(self, telemetry: Telemetry) -> CycleResult:
        # 1. Waypoints -> reference curve in the vehicle frame
        try:
            path = preprocess_waypoints(
                telemetry.ptsx, telemetry.ptsy,
                telemetry.x, telemetry.y, telemetry.psi,
                order=self.config.preprocess.order,
                max_condition_number=self.config.preprocess.max_condition_number,
            )
        except WaypointError as e:
            logger.warning(f"Waypoint preprocessing failed ({e.kind}): {e}")
            return CycleResult(command=self._fallback(e.kind, hold=True), error=e.kind)

        # 2. Previous command, planning polarity
        prev_steering, prev_throttle = self._previous_command(telemetry)

        # 3. Latency compensation
        state = self.compensator.compensate(telemetry.speed, path, prev_steering, prev_throttle)

        ref_line = reference_line(
            path,
            spacing=self.config.extractor.reference_spacing,
            count=self.config.extractor.reference_points,
        )

        # 4. Optimize
        try:
            solution = self.controller.solve(state, path)
        except SolverError as e:
            logger.warning(f"MPC solve failed ({e.kind}, status={e.status}), using fallback")
            solution = e.solution
            return CycleResult(
                command=self._fallback(e.kind, hold=self.config.fallback.policy == "hold"),
                reference_line=ref_line,
                state=state,
                reference=path,
                solve_status=e.status,
                solve_time_s=solution.solve_time_s if solution is not None else None,
                cost=solution.cost if solution is not None else None,
                error=e.kind,
            )

        # 5. Extract
        command, trajectory = self.extractor.extract(solution)
        self.last_command = command
        self.consecutive_failures = 0
        return CycleResult(
            command=command,
            trajectory=trajectory,
            reference_line=ref_line,
            state=state,
            reference=path,
            solve_status=solution.status,
            solve_time_s=solution.solve_time_s,
            cost=solution.cost,
        )

    def _previous_command(self, telemetry: Telemetry) -> tuple:
        """Steering (planning polarity, radians) and throttle in effect during the latency."""
        last = self.last_command
        if telemetry.steering_angle is not None:
            steering = steering_from_feedback(telemetry.steering_angle, self.config.extractor)
        elif last is not None:
            steering = to_consumer_steering(last.steering)
        else:
            steering = 0.0
        if telemetry.throttle is not None:
            throttle = float(telemetry.throttle)
        elif last is not None:
            throttle = last.throttle
        else:
            throttle = 0.0
        return steering, throttle

    def _fallback(self, reason: str, hold: bool) -> ControlCommand:
        """Hold the last command, or decelerate with zero steering once failures persist."""
        self.consecutive_failures += 1
        fallback_cfg = self.config.fallback
        if self.consecutive_failures > fallback_cfg.max_consecutive_failures:
            if hold:
                logger.warning(
                    f"{self.consecutive_failures} consecutive failed cycles, switching to deceleration"
                )
            hold = False

        if hold:
            last = self.last_command or ControlCommand.zero()
            steering = to_consumer_steering(last.steering)
            throttle = last.throttle
        else:
            steering = 0.0
            throttle = fallback_cfg.decel_throttle

        command = self.extractor.make_command(steering, throttle, fallback_reason=reason)
        self.last_command = command
        return command


def main():
    """Process JSON-lines telemetry (one record per line) and print one result per line."""
    import argparse

    parser = argparse.ArgumentParser(description='Run the MPC stack on recorded telemetry')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--input', type=str, default=None,
                        help='JSON-lines telemetry file (default: stdin)')
    parser.add_argument('--verbose', action='store_true',
                        help='Enable debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    stack = MPCStack(config_path=args.config)
    normalize = stack.config.extractor.normalize_steering

    source = open(args.input, 'r') if args.input else sys.stdin
    try:
        for line_number, line in enumerate(source, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                telemetry = Telemetry.from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Skipping malformed telemetry on line {line_number}: {e}")
                continue
            result = stack.process_telemetry(telemetry)
            print(json.dumps(result.to_dict(normalize_steering=normalize)))
    finally:
        if source is not sys.stdin:
            source.close()


if __name__ == "__main__":
    main()
