"""
MPC (Model Predictive Control) controller.

Transcribes the finite-horizon tracking problem into a single nonlinear
program over the stacked state/control trajectory and solves it with IPOPT
through CasADi. The symbolic problem is built once per controller; the
initial state and the reference polynomial enter as parameters, so each
cycle only re-runs the solver.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import casadi as ca
import numpy as np

from control.errors import SolverNonConvergence, SolverTimeout
from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import (
    PredictedTrajectory,
    ReferencePath,
    STATE_FIELDS,
    VehicleState,
    polyderiv,
    polyeval,
)


logger = logging.getLogger(__name__)

NUM_STATES = len(STATE_FIELDS)
NUM_CONTROLS = 2
NUM_COEFFS = 4  # cubic reference curve

SUCCESS_STATUSES = ("Solve_Succeeded", "Solved_To_Acceptable_Level")
TIMEOUT_STATUSES = ("Maximum_CpuTime_Exceeded", "Maximum_WallTime_Exceeded")


@dataclass(frozen=True)
class MPCWeights:
    """Cost weights."""

    cte: float = 1000.0
    epsi: float = 1000.0
    dv: float = 1.0
    delta: float = 100.0  # steering use
    a: float = 10.0  # throttle use
    ddelta: float = 10.0  # steering change between steps
    da: float = 10.0  # throttle change between steps


@dataclass(frozen=True)
class MPCConfig:
    """Configuration for the MPC optimizer. Built once, never mutated."""

    horizon_steps: int = 15  # N
    dt: float = 0.15  # seconds per step
    lf: float = 2.67  # front axle to center of gravity (meters)
    max_steer: float = 0.436332  # 25 degrees in radians
    max_throttle: float = 1.0
    ref_v: float = 80.0
    ref_cte: float = 0.0
    ref_epsi: float = 0.0
    weights: MPCWeights = field(default_factory=MPCWeights)
    state_bound: float = 1.0e19  # effectively unbounded states

    # IPOPT
    max_solve_time: float = 0.5  # wall-clock budget per solve (seconds)
    max_iter: int = 3000
    tol: float = 1e-8
    acceptable_tol: float = 1e-6
    print_level: int = 0
    warm_start: bool = False  # seed with a zero-control rollout instead of zeros

    def __post_init__(self):
        if self.horizon_steps < 3:
            raise ValueError(f"horizon_steps must be >= 3, got {self.horizon_steps}")
        if self.dt <= 0.0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        if self.lf <= 0.0:
            raise ValueError(f"lf must be positive, got {self.lf}")
        if self.max_steer <= 0.0 or self.max_throttle <= 0.0:
            raise ValueError("max_steer and max_throttle must be positive")
        if self.max_solve_time <= 0.0:
            raise ValueError(f"max_solve_time must be positive, got {self.max_solve_time}")


@dataclass(frozen=True)
class DecisionLayout:
    """
    Index layout of the decision vector.

    Six state blocks of length N (x, y, psi, v, cte, epsi) followed by two
    control blocks of length N - 1 (steering, acceleration). The constraint
    vector mirrors the state blocks: entry ``k*N`` pins state ``k`` to its
    initial value, entries ``k*N + t + 1`` hold the dynamics residual of
    step t.
    """

    horizon_steps: int

    @property
    def delta_start(self) -> int:
        return NUM_STATES * self.horizon_steps

    @property
    def a_start(self) -> int:
        return self.delta_start + self.horizon_steps - 1

    @property
    def num_vars(self) -> int:
        return NUM_STATES * self.horizon_steps + NUM_CONTROLS * (self.horizon_steps - 1)

    @property
    def num_constraints(self) -> int:
        return NUM_STATES * self.horizon_steps

    def state_start(self, name: str) -> int:
        return STATE_FIELDS.index(name) * self.horizon_steps

    def state_index(self, k: int, t: int) -> int:
        return k * self.horizon_steps + t


class _PolynomialCurve:
    """Reference curve over arbitrary (possibly symbolic) coefficients."""

    def __init__(self, coeffs: Sequence):
        self.coeffs = list(coeffs)

    def evaluate(self, x):
        return polyeval(self.coeffs, x)

    def slope(self, x):
        return polyderiv(self.coeffs, x)


@dataclass
class MPCSolution:
    """Raw optimizer output for one cycle."""

    decision: np.ndarray
    layout: DecisionLayout
    status: str
    success: bool
    cost: float
    solve_time_s: float
    iterations: Optional[int] = None

    @property
    def states(self) -> np.ndarray:
        """(N, 6) array of predicted states."""
        n = self.layout.horizon_steps
        return self.decision[:self.layout.delta_start].reshape(NUM_STATES, n).T

    @property
    def steering(self) -> np.ndarray:
        return self.decision[self.layout.delta_start:self.layout.a_start]

    @property
    def acceleration(self) -> np.ndarray:
        return self.decision[self.layout.a_start:self.layout.num_vars]

    @property
    def first_control(self) -> Tuple[float, float]:
        return float(self.steering[0]), float(self.acceleration[0])

    def predicted_trajectory(self) -> PredictedTrajectory:
        """(x_t, y_t) for t = 0..N-2."""
        states = self.states[:-1]
        return PredictedTrajectory(points=tuple((float(s[0]), float(s[1])) for s in states))


class MPCController:
    """
    Receding-horizon tracking controller.

    Minimizes cross-track/heading error and speed deviation with penalties on
    actuator use and actuator change, subject to kinematic bicycle dynamics
    and actuator bounds.
    """

    def __init__(self, config: MPCConfig):
        self.config = config
        self.layout = DecisionLayout(config.horizon_steps)
        self.model = KinematicBicycleModel(lf=config.lf)
        self.lbx, self.ubx = self._variable_bounds()
        self._solver = self._build_solver()

    # ----------------------------------------------------------------------
    # Problem definition, generic over the math backend
    # ----------------------------------------------------------------------

    def cost(self, z):
        """Objective value for decision vector ``z`` (numpy array or CasADi symbol)."""
        cfg = self.config
        w = cfg.weights
        n = cfg.horizon_steps
        cte_start = self.layout.state_start("cte")
        epsi_start = self.layout.state_start("epsi")
        v_start = self.layout.state_start("v")
        delta_start = self.layout.delta_start
        a_start = self.layout.a_start

        total = 0.0
        for t in range(n):
            total += w.cte * (z[cte_start + t] - cfg.ref_cte) ** 2
            total += w.epsi * (z[epsi_start + t] - cfg.ref_epsi) ** 2
            total += w.dv * (z[v_start + t] - cfg.ref_v) ** 2
        for t in range(n - 1):
            total += w.delta * z[delta_start + t] ** 2
            total += w.a * z[a_start + t] ** 2
        for t in range(n - 2):
            total += w.ddelta * (z[delta_start + t + 1] - z[delta_start + t]) ** 2
            total += w.da * (z[a_start + t + 1] - z[a_start + t]) ** 2
        return total

    def constraints(self, z, initial_state, curve, ops=math) -> List:
        """
        Constraint vector: initial-state pins followed (per state block) by
        the dynamics residuals. All entries are zero for a feasible ``z``.
        """
        n = self.config.horizon_steps
        layout = self.layout
        g = [None] * layout.num_constraints

        for k in range(NUM_STATES):
            g[layout.state_index(k, 0)] = z[layout.state_index(k, 0)] - initial_state[k]

        for t in range(n - 1):
            current = [z[layout.state_index(k, t)] for k in range(NUM_STATES)]
            following = [z[layout.state_index(k, t + 1)] for k in range(NUM_STATES)]
            control = (z[layout.delta_start + t], z[layout.a_start + t])
            residual = self.model.residual(current, following, control, curve, self.config.dt, ops=ops)
            for k in range(NUM_STATES):
                g[layout.state_index(k, t + 1)] = residual[k]
        return g

    def _variable_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        cfg = self.config
        lbx = np.full(self.layout.num_vars, -cfg.state_bound)
        ubx = np.full(self.layout.num_vars, cfg.state_bound)
        lbx[self.layout.delta_start:self.layout.a_start] = -cfg.max_steer
        ubx[self.layout.delta_start:self.layout.a_start] = cfg.max_steer
        lbx[self.layout.a_start:] = -cfg.max_throttle
        ubx[self.layout.a_start:] = cfg.max_throttle
        return lbx, ubx

    def _build_solver(self):
        z = ca.SX.sym("z", self.layout.num_vars)
        p = ca.SX.sym("p", NUM_STATES + NUM_COEFFS)
        initial_state = [p[k] for k in range(NUM_STATES)]
        curve = _PolynomialCurve([p[NUM_STATES + i] for i in range(NUM_COEFFS)])

        nlp = {
            "x": z,
            "p": p,
            "f": self.cost(z),
            "g": ca.vertcat(*self.constraints(z, initial_state, curve, ops=ca)),
        }
        options = {
            "ipopt.print_level": int(self.config.print_level),
            "ipopt.sb": "yes",
            "ipopt.max_iter": int(self.config.max_iter),
            "ipopt.max_wall_time": float(self.config.max_solve_time),
            "ipopt.tol": float(self.config.tol),
            "ipopt.acceptable_tol": float(self.config.acceptable_tol),
            "print_time": False,
            "error_on_fail": False,
        }
        logger.info(
            f"Building MPC NLP: N={self.config.horizon_steps}, dt={self.config.dt}, "
            f"{self.layout.num_vars} variables, {self.layout.num_constraints} constraints"
        )
        return ca.nlpsol("mpc_tracking", "ipopt", nlp, options)

    # ----------------------------------------------------------------------
    # Solve
    # ----------------------------------------------------------------------

    def initial_guess(self, state: VehicleState, path: ReferencePath) -> np.ndarray:
        """Zeros with the initial state pinned, or a zero-control rollout when warm starting."""
        n = self.config.horizon_steps
        guess = np.zeros(self.layout.num_vars)
        x0 = state.as_array()
        if self.config.warm_start:
            rollout = self.model.rollout(x0, np.zeros(n - 1), np.zeros(n - 1), path, self.config.dt)
            guess[:self.layout.delta_start] = rollout.T.ravel()
        else:
            for k in range(NUM_STATES):
                guess[self.layout.state_index(k, 0)] = x0[k]
        return guess

    def solve(self, state: VehicleState, path: ReferencePath) -> MPCSolution:
        """
        Solve the tracking problem from ``state`` along ``path``.

        Returns:
            MPCSolution with a successful status.

        Raises:
            SolverTimeout: the time budget ran out before convergence.
            SolverNonConvergence: any other non-success outcome.
        """
        params = np.concatenate([state.as_array(), path.padded(NUM_COEFFS)])
        guess = self.initial_guess(state, path)
        zeros = np.zeros(self.layout.num_constraints)

        start = time.perf_counter()
        try:
            result = self._solver(x0=guess, p=params, lbx=self.lbx, ubx=self.ubx, lbg=zeros, ubg=zeros)
        except RuntimeError as e:
            raise SolverNonConvergence("Evaluation_Failed", message=f"IPOPT failed: {e}") from e
        solve_time = time.perf_counter() - start

        stats = self._solver.stats()
        status = str(stats.get("return_status", "Unknown"))
        solution = MPCSolution(
            decision=np.array(result["x"]).ravel(),
            layout=self.layout,
            status=status,
            success=status in SUCCESS_STATUSES,
            cost=float(result["f"]),
            solve_time_s=solve_time,
            iterations=stats.get("iter_count"),
        )
        logger.debug(
            f"MPC solve: status={status}, cost={solution.cost:.3f}, "
            f"time={solve_time * 1000.0:.1f}ms, iterations={solution.iterations}"
        )

        if status in TIMEOUT_STATUSES:
            raise SolverTimeout(status, solution)
        if not solution.success:
            raise SolverNonConvergence(status, solution)
        return solution
