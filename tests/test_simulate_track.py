"""
Closed-loop tests: the MPC stack driving a simulated vehicle.
"""

import numpy as np
import pytest

from control.mpc_controller import MPCConfig
from mpc_stack import MPCStack, StackConfig
from tools.simulate_track import curved_track, simulate, straight_track


@pytest.fixture(scope="module")
def stack():
    return MPCStack(config=StackConfig(mpc=MPCConfig(ref_v=40.0, max_solve_time=5.0)))


def test_track_waypoints_follow_centerline():
    track = curved_track(amplitude=5.0, wavelength=200.0)
    xs, ys = track.waypoints(30.0, spacing=10.0, count=4, behind=5.0)
    np.testing.assert_allclose(xs, [25.0, 35.0, 45.0, 55.0])
    np.testing.assert_allclose(ys, track.center(xs))
    assert track.lateral_error(30.0, float(track.center(np.array([30.0]))[0]) + 1.5) == pytest.approx(1.5)


def test_straight_track_converges_from_offset(stack):
    """Starting 2 m off a straight road, the vehicle settles onto the centerline."""
    stack.reset()
    report = simulate(stack, straight_track(), steps=150, initial_speed=40.0, initial_offset=2.0)

    assert report.fallbacks == 0
    assert len(report.lateral_errors) == 150
    assert abs(report.lateral_errors[-1]) < 1.0
    assert report.max_abs_lateral_error < 3.0
    assert np.all(np.abs(report.steering) <= stack.config.extractor.max_steer + 1e-9)


def test_curved_track_stays_close(stack):
    stack.reset()
    report = simulate(stack, curved_track(), steps=100, initial_speed=30.0)

    assert report.fallbacks == 0
    assert report.max_abs_lateral_error < 3.0
    assert report.mean_speed > 25.0
    assert report.mean_solve_time > 0.0


def test_speeds_up_toward_reference(stack):
    stack.reset()
    report = simulate(stack, straight_track(), steps=40, initial_speed=20.0)
    assert report.speeds[-1] > 20.0
    assert all(t >= 0.0 for t in report.throttle)
