"""
Tests for waypoint preprocessing: frame transforms and the reference curve fit.
"""

import math

import numpy as np
import pytest

from control.errors import DegenerateGeometry, InsufficientWaypoints, WaypointError
from data.formats.data_format import ReferencePath, polyderiv, polyeval
from trajectory.utils import (
    polyfit,
    preprocess_waypoints,
    reference_line,
    to_vehicle_frame,
    to_world_frame,
)


class TestFrameTransform:
    """World <-> vehicle frame conversion."""

    def test_point_ahead_maps_to_positive_x(self):
        """A point straight ahead of the vehicle lands on the local x-axis."""
        psi = math.pi / 3
        px, py = 10.0, -4.0
        ahead_x = px + 5.0 * math.cos(psi)
        ahead_y = py + 5.0 * math.sin(psi)

        local_x, local_y = to_vehicle_frame([ahead_x], [ahead_y], px, py, psi)

        assert local_x[0] == pytest.approx(5.0)
        assert local_y[0] == pytest.approx(0.0, abs=1e-12)

    def test_point_to_the_left_has_positive_y(self):
        """Left of the heading is +y in the vehicle frame."""
        local_x, local_y = to_vehicle_frame([0.0], [3.0], 0.0, 0.0, 0.0)
        assert local_x[0] == pytest.approx(0.0)
        assert local_y[0] == pytest.approx(3.0)

        # Heading north: a point to the west is on the left
        local_x, local_y = to_vehicle_frame([-2.0], [0.0], 0.0, 0.0, math.pi / 2)
        assert local_x[0] == pytest.approx(0.0, abs=1e-12)
        assert local_y[0] == pytest.approx(2.0)

    def test_round_trip_for_many_poses(self):
        """Transform followed by the inverse transform reproduces the input."""
        rng = np.random.default_rng(7)
        xs = rng.uniform(-200.0, 200.0, size=20)
        ys = rng.uniform(-200.0, 200.0, size=20)
        for _ in range(50):
            px, py = rng.uniform(-500.0, 500.0, size=2)
            psi = rng.uniform(-2.0 * math.pi, 2.0 * math.pi)
            local_x, local_y = to_vehicle_frame(xs, ys, px, py, psi)
            world_x, world_y = to_world_frame(local_x, local_y, px, py, psi)
            np.testing.assert_allclose(world_x, xs, atol=1e-9)
            np.testing.assert_allclose(world_y, ys, atol=1e-9)

    def test_distances_are_preserved(self):
        """The transform is rigid."""
        xs = np.array([0.0, 3.0, -7.0])
        ys = np.array([1.0, 5.0, 2.0])
        local_x, local_y = to_vehicle_frame(xs, ys, 12.0, -3.0, 0.7)
        original = np.hypot(np.diff(xs), np.diff(ys))
        transformed = np.hypot(np.diff(local_x), np.diff(local_y))
        np.testing.assert_allclose(transformed, original)


class TestPolyfit:
    """Least-squares cubic fit."""

    def test_recovers_cubic_coefficients(self):
        """Samples of a cubic give back its coefficients."""
        rng = np.random.default_rng(3)
        for _ in range(25):
            coeffs = rng.uniform(-1.0, 1.0, size=4) * np.array([5.0, 0.5, 0.01, 0.0001])
            xs = np.sort(rng.uniform(-10.0, 80.0, size=rng.integers(4, 12)))
            ys = polyeval(coeffs, xs)
            fitted = polyfit(xs, ys, order=3)
            np.testing.assert_allclose(fitted, coeffs, rtol=1e-6, atol=1e-9)

    def test_lower_degree_polynomial_has_zero_high_terms(self):
        """A line fitted with a cubic keeps c2 = c3 = 0."""
        xs = np.array([0.0, 10.0, 20.0, 30.0, 40.0])
        ys = 2.0 - 0.25 * xs
        fitted = polyfit(xs, ys, order=3)
        assert fitted[0] == pytest.approx(2.0)
        assert fitted[1] == pytest.approx(-0.25)
        assert fitted[2] == pytest.approx(0.0, abs=1e-9)
        assert fitted[3] == pytest.approx(0.0, abs=1e-10)

    def test_exactly_order_plus_one_points(self):
        """Four points determine the cubic exactly."""
        coeffs = [1.0, -0.5, 0.02, -0.001]
        xs = np.array([-5.0, 5.0, 15.0, 25.0])
        fitted = polyfit(xs, polyeval(coeffs, xs), order=3)
        np.testing.assert_allclose(fitted, coeffs, rtol=1e-8, atol=1e-10)

    def test_too_few_points(self):
        with pytest.raises(InsufficientWaypoints):
            polyfit([0.0, 1.0, 2.0], [0.0, 1.0, 4.0], order=3)

    def test_order_not_below_point_count(self):
        with pytest.raises(InsufficientWaypoints):
            polyfit([0.0, 1.0, 2.0, 3.0], [0.0, 1.0, 4.0, 9.0], order=4)

    def test_mismatched_lengths(self):
        with pytest.raises(InsufficientWaypoints):
            polyfit([0.0, 1.0, 2.0, 3.0, 4.0], [0.0, 1.0, 2.0, 3.0], order=3)

    def test_repeated_x_values_are_degenerate(self):
        """All waypoints at the same x (path perpendicular to the heading)."""
        with pytest.raises(DegenerateGeometry):
            polyfit([5.0, 5.0, 5.0, 5.0, 5.0], [0.0, 1.0, 2.0, 3.0, 4.0], order=3)

    def test_too_few_distinct_x_values_are_degenerate(self):
        with pytest.raises(DegenerateGeometry):
            polyfit([1.0, 1.0, 2.0, 2.0, 3.0, 3.0], [0.0, 0.1, 0.2, 0.3, 0.4, 0.5], order=3)

    def test_non_finite_input_is_degenerate(self):
        with pytest.raises(DegenerateGeometry):
            polyfit([0.0, 1.0, 2.0, np.nan], [0.0, 1.0, 2.0, 3.0], order=3)

    def test_clustered_far_x_values_are_ill_conditioned(self):
        """Full rank, but the Vandermonde matrix of far-off clustered x is ill-conditioned."""
        with pytest.raises(DegenerateGeometry, match="Ill-conditioned"):
            polyfit([1000.0, 1000.5, 1001.0, 1001.5, 1002.0], [0.0] * 5, order=3)

    def test_condition_limit_is_configurable(self):
        xs = [0.0, 10.0, 20.0, 30.0, 40.0]
        ys = [0.0, 1.0, 0.5, 2.0, 1.0]
        polyfit(xs, ys, order=3)
        with pytest.raises(DegenerateGeometry, match="Ill-conditioned"):
            polyfit(xs, ys, order=3, max_condition_number=10.0)


class TestPreprocessWaypoints:
    """World waypoints -> ReferencePath."""

    def test_straight_road_ahead(self):
        """Waypoints along the heading give a zero polynomial."""
        psi = 0.4
        px, py = 100.0, 50.0
        distances = np.array([-5.0, 10.0, 25.0, 40.0, 55.0, 70.0])
        ptsx = px + distances * math.cos(psi)
        ptsy = py + distances * math.sin(psi)

        path = preprocess_waypoints(ptsx, ptsy, px, py, psi)

        assert isinstance(path, ReferencePath)
        np.testing.assert_allclose(path.coeffs, [0.0, 0.0, 0.0, 0.0], atol=1e-9)

    def test_offset_road_gives_cross_track_intercept(self):
        """A parallel road 2 m to the right has f(0) = -2."""
        ptsx = [0.0, 10.0, 20.0, 30.0, 40.0]
        ptsy = [-2.0] * 5
        path = preprocess_waypoints(ptsx, ptsy, 0.0, 0.0, 0.0)
        assert path.evaluate(0.0) == pytest.approx(-2.0)
        assert path.slope(0.0) == pytest.approx(0.0, abs=1e-9)

    def test_fewer_than_four_waypoints(self):
        with pytest.raises(InsufficientWaypoints) as excinfo:
            preprocess_waypoints([0.0, 10.0, 20.0], [0.0, 0.0, 0.0], 0.0, 0.0, 0.0)
        assert excinfo.value.num_points == 3
        assert isinstance(excinfo.value, WaypointError)
        assert isinstance(excinfo.value, ValueError)

    def test_lower_order_still_needs_four_waypoints(self):
        with pytest.raises(InsufficientWaypoints):
            preprocess_waypoints([0.0, 10.0, 20.0], [0.0, 0.0, 0.0], 0.0, 0.0, 0.0, order=1)

    def test_mismatched_waypoint_lengths(self):
        with pytest.raises(InsufficientWaypoints):
            preprocess_waypoints([0.0, 10.0, 20.0, 30.0, 40.0], [0.0, 0.0, 0.0, 0.0], 0.0, 0.0, 0.0)

    def test_condition_limit_passed_through(self):
        ptsx = [0.0, 10.0, 20.0, 30.0, 40.0]
        ptsy = [-2.0, -1.5, -1.0, -0.2, 0.5]
        preprocess_waypoints(ptsx, ptsy, 0.0, 0.0, 0.0)
        with pytest.raises(DegenerateGeometry):
            preprocess_waypoints(ptsx, ptsy, 0.0, 0.0, 0.0, max_condition_number=10.0)


class TestReferencePath:
    def test_evaluate_and_slope(self):
        path = ReferencePath(coeffs=(1.0, 2.0, 3.0, 4.0))
        x = 1.5
        assert path.evaluate(x) == pytest.approx(1.0 + 2.0 * x + 3.0 * x ** 2 + 4.0 * x ** 3)
        assert path.slope(x) == pytest.approx(2.0 + 6.0 * x + 12.0 * x ** 2)
        assert path.heading(x, ops=math) == pytest.approx(math.atan(path.slope(x)))

    def test_vectorized_evaluation(self):
        coeffs = (0.5, -0.1, 0.01, 0.0)
        xs = np.linspace(0.0, 10.0, 5)
        np.testing.assert_allclose(ReferencePath(coeffs).evaluate(xs), polyeval(coeffs, xs))
        np.testing.assert_allclose(ReferencePath(coeffs).slope(xs), polyderiv(coeffs, xs))

    def test_padded_lower_order(self):
        path = ReferencePath(coeffs=(1.0, 2.0))
        np.testing.assert_array_equal(path.padded(), [1.0, 2.0, 0.0, 0.0])

    def test_reference_line_samples_ahead(self):
        path = ReferencePath(coeffs=(1.0, 0.1, 0.0, 0.0))
        line = reference_line(path, spacing=5.0, count=11)
        assert len(line) == 11
        assert line.xs[0] == pytest.approx(5.0)
        assert line.xs[-1] == pytest.approx(55.0)
        assert line.ys[2] == pytest.approx(1.0 + 0.1 * 15.0)
