"""Tests for keypoint smoothing, outlier rejection and joint histories."""

import math

import numpy as np
import pytest

from gaitstream.schema import Point3D, Pose, TrajectoryPoint
from gaitstream.smoothing import (
    ButterworthSmoothing,
    HistoryArena,
    JointHistory,
    KeypointSmoother,
    SavgolSmoothing,
    exponential_smooth_scalar,
    interpolate_values,
    list_smoothing_methods,
    make_algorithm,
    moving_average_scalar,
    remove_outliers,
    smooth_trajectory,
)

from conftest import make_keypoint, make_pose


# ── helpers ──────────────────────────────────────────────────────────

def _feed(smoother, xs, history=None, dt_ms=33, y=0.0, score=0.9):
    history = history if history is not None else smoother.new_history()
    out = []
    for i, x in enumerate(xs):
        out.append(smoother.smooth(make_keypoint("left_ankle", x, y, score, i * dt_ms), history))
    return out, history


# ── history ──────────────────────────────────────────────────────────

class TestJointHistory:

    def test_velocity_and_acceleration(self):
        h = JointHistory()
        h.push(np.array([0.0, 0.0, 0.0]), 1.0, 0)
        assert len(h.velocities) == 0
        h.push(np.array([10.0, 0.0, 0.0]), 1.0, 100)
        np.testing.assert_allclose(h.velocities[-1], [100.0, 0.0, 0.0])
        assert len(h.accelerations) == 0
        h.push(np.array([30.0, 0.0, 0.0]), 1.0, 200)
        np.testing.assert_allclose(h.accelerations[-1], [1000.0, 0.0, 0.0])

    def test_bounded_oldest_first(self):
        h = JointHistory(max_size=30)
        for i in range(40):
            h.push(np.array([float(i), 0.0, 0.0]), 1.0, i * 33)
        assert len(h) == 30
        assert h.positions[0][0] == 10.0
        assert h.timestamps[0] == 10 * 33

    def test_predict(self):
        h = JointHistory()
        h.push(np.array([0.0, 0.0, 0.0]), 1.0, 0)
        assert h.predict(100) is None
        h.push(np.array([10.0, 0.0, 0.0]), 1.0, 100)
        np.testing.assert_allclose(h.predict(200), [20.0, 0.0, 0.0])

    def test_predict_degenerate_dt_uses_nominal_interval(self):
        h = JointHistory()
        h.push(np.array([0.0, 0.0, 0.0]), 1.0, 0)
        h.push(np.array([10.0, 0.0, 0.0]), 1.0, 100)
        np.testing.assert_allclose(h.predict(100), [10.0 + 100.0 / 30.0, 0.0, 0.0])

    def test_duplicate_timestamp_adds_no_velocity(self):
        h = JointHistory()
        h.push(np.array([0.0, 0.0, 0.0]), 1.0, 0)
        h.push(np.array([5.0, 0.0, 0.0]), 1.0, 0)
        assert len(h.velocities) == 0
        assert h.predict(33) is None


class TestHistoryArena:

    def test_keys_are_isolated(self):
        arena = HistoryArena()
        a = arena.get("p1", "left_ankle")
        assert arena.get("p1", "left_ankle") is a
        assert arena.get("p2", "left_ankle") is not a
        assert arena.get("p1", "right_ankle") is not a
        assert len(arena) == 3

    def test_drop_person(self):
        arena = HistoryArena()
        arena.get("p1", "left_ankle")
        arena.get("p1", "right_ankle")
        arena.get("p2", "left_ankle")
        assert arena.drop_person("p1") == 2
        assert arena.persons() == ["p2"]
        assert ("p1", "left_ankle") not in arena
        assert arena.peek("p1", "left_ankle") is None


# ── algorithms ───────────────────────────────────────────────────────

class TestAlgorithms:

    def test_available_methods(self):
        assert set(list_smoothing_methods()) == {
            "exponential", "moving_average", "kalman", "butterworth", "savgol",
        }

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown smoothing method"):
            make_algorithm("median")
        with pytest.raises(ValueError):
            KeypointSmoother(method="median")

    def test_invalid_parameter(self):
        with pytest.raises(ValueError):
            KeypointSmoother(factor=0.0)
        with pytest.raises(ValueError):
            KeypointSmoother(method="butterworth", cutoff_hz=15.0, sample_rate_hz=30.0)

    def test_exponential_confidence_damps_update(self):
        smoother = KeypointSmoother(method="exponential", factor=0.7)
        history = smoother.new_history()
        smoother.smooth(make_keypoint("k", 0.0, 0.0, 1.0, 0), history)
        high = smoother.smooth(make_keypoint("k", 10.0, 0.0, 1.0, 33), history)
        assert high.x == pytest.approx(7.0)

        smoother = KeypointSmoother(method="exponential", factor=0.7)
        history = smoother.new_history()
        smoother.smooth(make_keypoint("k", 0.0, 0.0, 1.0, 0), history)
        low = smoother.smooth(make_keypoint("k", 10.0, 0.0, 0.5, 33), history)
        assert low.x == pytest.approx(3.5)

    def test_kalman_gain(self):
        smoother = KeypointSmoother(method="kalman", process_noise=0.1)
        history = smoother.new_history()
        smoother.smooth(make_keypoint("k", 0.0, 0.0, 0.9, 0), history)
        out = smoother.smooth(make_keypoint("k", 10.0, 0.0, 0.9, 33), history)
        assert out.x == pytest.approx(5.0)

    def test_moving_average_window(self):
        smoother = KeypointSmoother(method="moving_average", window_size=3)
        out, _ = _feed(smoother, [0.0, 3.0, 6.0, 9.0])
        assert out[-1].x == pytest.approx(6.0)

    def test_savgol_coefficients_precomputed_and_frozen(self):
        algo = SavgolSmoothing(window_size=7)
        for w in (3, 5, 7):
            coeffs = algo.coefficients[w]
            assert coeffs.flags.writeable is False
            assert coeffs.sum() == pytest.approx(1.0)

    def test_savgol_exact_on_linear_motion(self):
        smoother = KeypointSmoother(method="savgol", window_size=5)
        xs = [3.0 * i for i in range(12)]
        out, _ = _feed(smoother, xs)
        for sk, x in list(zip(out, xs))[2:]:
            assert sk.x == pytest.approx(x, abs=1e-9)

    def test_butterworth_unity_dc_gain(self):
        algo = ButterworthSmoothing(cutoff_hz=3.0, sample_rate_hz=30.0)
        assert sum(algo.b) / sum(algo.a) == pytest.approx(1.0)

    @pytest.mark.parametrize("method", ["exponential", "moving_average", "kalman",
                                        "butterworth", "savgol"])
    def test_stationary_input_converges(self, method):
        smoother = KeypointSmoother(method=method)
        xs = [0.0] + [10.0] * 60
        out, _ = _feed(smoother, xs, y=5.0)
        assert out[-1].x == pytest.approx(10.0, abs=1e-3)
        assert out[-1].y == pytest.approx(5.0, abs=1e-3)


# ── outliers and malformed input ─────────────────────────────────────

class TestOutlierRejection:

    def test_jump_replaced_by_prediction(self):
        smoother = KeypointSmoother(max_movement=50.0)
        out, _ = _feed(smoother, [0.0, 5.0, 10.0, 15.0, 200.0], dt_ms=33)
        jumped = out[-1]
        assert jumped.predicted
        assert abs(jumped.x - 20.0) < abs(jumped.x - 200.0)

    def test_no_velocity_falls_back_to_raw(self):
        smoother = KeypointSmoother(max_movement=50.0)
        out, history = _feed(smoother, [0.0, 200.0])
        assert not out[-1].predicted
        assert out[-1].x > 100.0
        assert history.consecutive_outliers == 0

    def test_reacquire_after_consecutive_outliers(self):
        smoother = KeypointSmoother(max_movement=50.0, max_consecutive_outliers=3)
        out, history = _feed(smoother, [0.0, 5.0, 10.0, 15.0] + [300.0] * 4)
        assert [sk.predicted for sk in out[4:]] == [True, True, True, False]
        assert history.consecutive_outliers == 0
        np.testing.assert_allclose(history.positions[-1][:2], [300.0, 0.0])

    def test_stats_count_outliers(self):
        smoother = KeypointSmoother(max_movement=50.0)
        for i, x in enumerate([0.0, 5.0, 10.0]):
            smoother.smooth_pose("p", [make_keypoint("left_ankle", x, 0.0, 0.9, i * 33)])
        _, stats = smoother.smooth_pose("p", [make_keypoint("left_ankle", 400.0, 0.0, 0.9, 99)])
        assert stats.n_outliers == 1
        assert stats.n_predicted == 1


class TestMalformedInput:

    @pytest.mark.parametrize("x, y, score", [
        (float("nan"), 0.0, 0.9),
        (0.0, float("inf"), 0.9),
        (0.0, 0.0, 1.5),
        (0.0, 0.0, -0.2),
        (0.0, 0.0, float("nan")),
    ])
    def test_no_history_gives_invalid_zero_point(self, x, y, score):
        smoother = KeypointSmoother()
        sk = smoother.smooth(make_keypoint("left_ankle", x, y, score, 0))
        assert sk.valid is False
        assert sk.score == 0.0
        assert (sk.x, sk.y) == (0.0, 0.0)

    def test_with_history_uses_velocity_prediction(self):
        smoother = KeypointSmoother()
        _, history = _feed(smoother, [0.0, 10.0, 20.0, 30.0, 40.0], dt_ms=33)
        bad = smoother.smooth(make_keypoint("left_ankle", float("nan"), 0.0, 0.9, 165), history)
        assert bad.valid
        assert bad.predicted
        assert bad.score == 0.0
        assert bad.x == pytest.approx(50.0)
        np.testing.assert_allclose(history.positions[-1][:2], [50.0, 0.0])
        np.testing.assert_allclose(history.velocities[-1][0], 10.0 / 0.033)

    def test_prediction_continues_after_dropout(self):
        smoother = KeypointSmoother()
        _, history = _feed(smoother, [0.0, 10.0, 20.0], dt_ms=33)
        first = smoother.smooth(make_keypoint("left_ankle", float("nan"), 0.0, 0.9, 99), history)
        again = smoother.smooth(make_keypoint("left_ankle", float("nan"), 0.0, 0.9, 132), history)
        assert first.x == pytest.approx(30.0)
        assert again.x == pytest.approx(40.0)

    def test_without_velocity_holds_last_output(self):
        smoother = KeypointSmoother()
        out, history = _feed(smoother, [10.0])
        bad = smoother.smooth(make_keypoint("left_ankle", float("nan"), 0.0, 0.9, 33), history)
        assert bad.predicted
        assert bad.score == 0.0
        assert bad.x == pytest.approx(out[-1].x)
        np.testing.assert_allclose(history.velocities[-1], 0.0)
        assert all(math.isfinite(v) for v in history.positions[-1])

    def test_garbage_timestamp_does_not_raise(self):
        smoother = KeypointSmoother()
        _, history = _feed(smoother, [1.0, 2.0])
        sk = smoother.smooth(make_keypoint("left_ankle", 3.0, 0.0, 0.9, float("nan")), history)
        assert sk.timestamp == history.timestamps[-1]


# ── per pose ─────────────────────────────────────────────────────────

class TestSmoothPose:

    def test_one_output_per_joint(self, standing_pose):
        smoother = KeypointSmoother()
        smoothed, stats = smoother.smooth_pose("p", standing_pose)
        assert len(smoothed) == len(standing_pose.keypoints)
        assert stats.n_keypoints == len(standing_pose.keypoints)
        assert stats.n_invalid == 0

    def test_duplicate_names_first_wins(self):
        smoother = KeypointSmoother()
        pose = Pose((make_keypoint("nose", 1.0, 1.0), make_keypoint("nose", 9.0, 9.0)))
        smoothed, stats = smoother.smooth_pose("p", pose)
        assert len(smoothed) == 1
        assert smoothed[0].x == pytest.approx(1.0)

    def test_persons_do_not_share_history(self):
        smoother = KeypointSmoother()
        smoother.smooth_pose("a", make_pose(0))
        smoothed, _ = smoother.smooth_pose("b", make_pose(33, dx=40.0))
        by_name = {sk.name: sk for sk in smoothed}
        assert by_name["left_ankle"].x == pytest.approx(345.0)

    def test_reset_person(self):
        smoother = KeypointSmoother()
        smoother.smooth_pose("a", make_pose(0))
        smoother.smooth_pose("b", make_pose(0))
        smoother.reset("a")
        assert smoother.arena.persons() == ["b"]
        smoother.reset()
        assert len(smoother.arena) == 0

    def test_input_pose_not_mutated(self, standing_pose):
        before = standing_pose.keypoints
        KeypointSmoother().smooth_pose("p", standing_pose)
        assert standing_pose.keypoints == before


# ── series helpers ───────────────────────────────────────────────────

class TestSeriesHelpers:

    def test_smooth_trajectory_preserves_length(self):
        points = [TrajectoryPoint(Point3D(float(i), 0.0), i * 33, 0.9) for i in range(10)]
        out = smooth_trajectory(points, method="moving_average", window_size=3)
        assert len(out) == 10
        assert [p.timestamp for p in out] == [p.timestamp for p in points]

    def test_smooth_trajectory_short_input(self):
        points = [TrajectoryPoint(Point3D(1.0, 2.0), 0, 0.9)]
        assert smooth_trajectory(points) == points

    def test_interpolate_values(self):
        assert interpolate_values([1.0, None, 3.0]) == pytest.approx([1.0, 2.0, 3.0])
        assert interpolate_values([None, 2.0, float("nan")]) == pytest.approx([2.0, 2.0, 2.0])
        assert interpolate_values([None, None]) == [0.0, 0.0]
        assert interpolate_values([]) == []

    def test_remove_outliers(self):
        assert remove_outliers([1, 1, 1, 1, 1, 1, 100]) == [1, 1, 1, 1, 1, 1]
        assert remove_outliers([1, 100]) == [1, 100]

    def test_scalar_helpers(self):
        assert exponential_smooth_scalar(10.0, 0.0, 0.7) == pytest.approx(7.0)
        assert moving_average_scalar([1, 2, 3, 4], 2) == pytest.approx(3.5)
        assert moving_average_scalar([], 3) == 0.0
