"""Tests for per-leg HMM observation features."""

import math

import numpy as np
import pytest

from gaitstream.config import merge_config
from gaitstream.features import ObservationBuilder

from conftest import make_keypoint, make_pose


class TestObservationBuilder:

    def test_standing_pose(self, standing_pose):
        obs = ObservationBuilder("left").build(standing_pose)
        f = obs.features
        assert obs.timestamp == 1000
        assert f.ankle_velocity == 0.0
        assert f.knee_flexion == pytest.approx(0.0, abs=1e-6)
        assert f.vertical_position == 0.0
        assert math.isfinite(f.hip_flexion)
        assert f.confidence == pytest.approx(0.9)
        assert obs.position.x == pytest.approx(305.0)

    def test_missing_joint_is_uninformative(self):
        obs = ObservationBuilder("left").build(make_pose(skip=("left_ankle",)))
        assert obs.features.confidence == 0.0
        assert all(math.isnan(v) for v in obs.features.values())
        assert obs.position is None

    def test_invalid_smoothed_joint_is_uninformative(self):
        pose = make_pose(overrides={"left_knee": (305.0, 110.0, 0.0)})
        obs = ObservationBuilder("left").build(pose)
        assert obs.features.confidence == 0.0

    def test_confidence_is_weakest_joint(self):
        pose = make_pose(overrides={"right_knee": (335.0, 110.0, 0.4)})
        obs = ObservationBuilder("right").build(pose)
        assert obs.features.confidence == pytest.approx(0.4)

    def test_knee_flexion(self):
        kps = [
            make_keypoint("left_hip", 0.0, 200.0),
            make_keypoint("left_knee", 0.0, 100.0),
            make_keypoint("left_ankle", 100.0, 100.0),
        ]
        obs = ObservationBuilder("left").build(kps, timestamp=0)
        assert obs.features.knee_flexion == pytest.approx(90.0)
        assert math.isnan(obs.features.hip_flexion)

    def test_ankle_velocity_normalized_by_leg(self):
        builder = ObservationBuilder("left")
        builder.build(make_pose(timestamp=0))
        moved = make_pose(timestamp=100, overrides={"left_ankle": (323.0, 20.0)})
        obs = builder.build(moved)
        leg = np.hypot(18.0, 180.0)
        assert obs.features.ankle_velocity == pytest.approx(18.0 / 0.1 / leg)

    def test_clearance_above_ground(self):
        builder = ObservationBuilder("left")
        builder.build(make_pose(timestamp=0))
        lifted = make_pose(timestamp=33, overrides={"left_ankle": (305.0, 38.0)})
        obs = builder.build(lifted)
        assert obs.features.vertical_position == pytest.approx(18.0 / 162.0)

    def test_hip_flexion_sign_follows_walking_direction(self):
        knee_ahead = {"left_knee": (325.0, 110.0)}
        forward = ObservationBuilder("left")
        forward.build(make_pose(timestamp=0))
        f = forward.build(make_pose(timestamp=33, dx=5.0,
                                    overrides={"left_knee": (330.0, 110.0)})).features
        backward = ObservationBuilder("left")
        backward.build(make_pose(timestamp=0))
        b = backward.build(make_pose(timestamp=33, dx=-5.0, overrides=knee_ahead)).features
        assert f.hip_flexion > 0
        assert b.hip_flexion < 0

    def test_reset(self):
        builder = ObservationBuilder("left")
        builder.build(make_pose(timestamp=0))
        builder.reset()
        obs = builder.build(make_pose(timestamp=100, overrides={"left_ankle": (400.0, 20.0)}))
        assert obs.features.ankle_velocity == 0.0

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            ObservationBuilder("middle")
        with pytest.raises(ValueError):
            ObservationBuilder("left", velocity_window=0)

    def test_from_config(self):
        cfg = merge_config({"features": {"ground_window": 10},
                            "trajectory": {"ground_is_min": False}})
        builder = ObservationBuilder.from_config(cfg, "right")
        assert builder.side == "right"
        assert builder.ground_is_min is False
