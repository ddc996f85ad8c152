"""Shared test fixtures for the gaitstream test suite.

Provides synthetic pose and trajectory generators used across all test
modules. Coordinates are pixels with the y axis pointing up, so ground
contact is a minimum of ``y``.
"""

import math

import numpy as np
import pytest

from gaitstream.schema import Keypoint, Point3D, Pose, TrajectoryPoint


STANDING = {
    "nose": (320.0, 340.0),
    "left_eye": (315.0, 345.0),
    "right_eye": (325.0, 345.0),
    "left_ear": (310.0, 340.0),
    "right_ear": (330.0, 340.0),
    "left_shoulder": (300.0, 300.0),
    "right_shoulder": (340.0, 300.0),
    "left_elbow": (298.0, 250.0),
    "right_elbow": (342.0, 250.0),
    "left_wrist": (296.0, 205.0),
    "right_wrist": (344.0, 205.0),
    "left_hip": (305.0, 200.0),
    "right_hip": (335.0, 200.0),
    "left_knee": (305.0, 110.0),
    "right_knee": (335.0, 110.0),
    "left_ankle": (305.0, 20.0),
    "right_ankle": (335.0, 20.0),
}


def make_keypoint(name, x, y, score=0.9, timestamp=0, z=None):
    return Keypoint(name=name, x=x, y=y, score=score, timestamp=timestamp, z=z)


def make_pose(timestamp=0, score=0.9, dx=0.0, dy=0.0, overrides=None, skip=()):
    """Standing side-view pose, optionally shifted and partially overridden.

    ``overrides`` maps a joint name to ``(x, y)`` or ``(x, y, score)``.
    """
    overrides = overrides or {}
    keypoints = []
    for name, (x, y) in STANDING.items():
        if name in skip:
            continue
        s = score
        if name in overrides:
            values = overrides[name]
            x, y = values[0], values[1]
            if len(values) > 2:
                s = values[2]
        else:
            x, y = x + dx, y + dy
        keypoints.append(make_keypoint(name, x, y, s, timestamp))
    return Pose(tuple(keypoints), score, timestamp)


def make_walking_poses(n_frames=90, dt_ms=33, cycle_ms=1000, speed_px_s=60.0,
                       lift=15.0, stride_px=40.0, score=0.9):
    """Side-view walker: both ankles alternate stance and a 40% swing arc."""
    poses = []
    for i in range(n_frames):
        t = i * dt_ms
        dx = speed_px_s * t / 1000.0
        overrides = {}
        for side, offset in (("left", 0.0), ("right", 0.5)):
            phase = (t / cycle_ms + offset) % 1.0
            hip_x, hip_y = STANDING[f"{side}_hip"]
            hip_x += dx
            if phase >= 0.6:
                s = (phase - 0.6) / 0.4
                ankle_x = hip_x + stride_px * (s - 0.5)
                ankle_y = 20.0 + lift * math.sin(math.pi * s)
                bend = 10.0 * math.sin(math.pi * s)
            else:
                ankle_x = hip_x + stride_px * (0.5 - phase / 0.6)
                ankle_y = 20.0
                bend = 0.0
            overrides[f"{side}_ankle"] = (ankle_x, ankle_y)
            overrides[f"{side}_knee"] = ((hip_x + ankle_x) / 2 + 6.0 + bend,
                                         (hip_y + ankle_y) / 2)
        poses.append(make_pose(t, score, dx=dx, overrides=overrides))
    return poses


def make_points(ys, dt_ms=33, x_step=0.0, confidence=0.9):
    """Trajectory points with the given vertical profile."""
    return [
        TrajectoryPoint(Point3D(i * x_step, float(y), 0.0), i * dt_ms, confidence)
        for i, y in enumerate(ys)
    ]


def dip_profile(n, minima, base=10.0, depth=9.0):
    """Flat profile with a sharp single-sample dip at each index in *minima*."""
    ys = np.full(n, base)
    for m in minima:
        ys[m] = base - depth
        if m > 0:
            ys[m - 1] = base - depth / 2
        if m + 1 < n:
            ys[m + 1] = base - depth / 2
    return ys.tolist()


@pytest.fixture
def standing_pose():
    return make_pose(timestamp=1000)


@pytest.fixture
def walking_poses():
    return make_walking_poses()
