"""Per-frame HMM feature vectors from smoothed keypoints.

For one leg, :class:`ObservationBuilder` turns a frame of smoothed
keypoints into an :class:`~gaitstream.schema.HMMObservation`:

- ankle velocity: ankle speed in leg lengths per second
- knee flexion: ``180 - angle(hip, knee, ankle)``, 0 = full extension
- hip flexion: thigh vs trunk line, positive when the knee is ahead of
  the hip in the walking direction
- vertical position: ankle clearance above the running ground level,
  in leg lengths

Distances are normalized by leg length so the features do not depend on
camera distance. When a required joint is missing the features are NaN
and the confidence 0; the HMM then treats the frame as uninformative.
"""

import logging
from collections import deque
from typing import Optional

import numpy as np

from .geometry import angle_between, as_keypoint_map, finite_float, finite_int, is_finite_point
from .schema import HMMFeatures, HMMObservation, Point3D

logger = logging.getLogger(__name__)

_NAN = float("nan")


def _usable(kp) -> bool:
    return (kp is not None and getattr(kp, "valid", True)
            and (finite_float(kp.score) or 0.0) > 0 and is_finite_point(kp))


def _xy(kp) -> np.ndarray:
    return np.array([kp.x, kp.y], dtype=float)


class ObservationBuilder:
    """Build HMM observations for one leg of one person.

    Parameters
    ----------
    side : str
        ``"left"`` or ``"right"``.
    velocity_window : int
        Frames between the two ankle samples used for velocity.
    ground_window : int
        Frames of ankle history used to estimate the ground level.
    ground_is_min : bool
        True when ground contact is the minimum of ``y`` (y axis up).
    """

    def __init__(self, side: str = "left", velocity_window: int = 2,
                 ground_window: int = 60, ground_is_min: bool = True):
        if side not in ("left", "right"):
            raise ValueError(f"side must be 'left' or 'right', got {side!r}")
        if velocity_window < 1 or ground_window < 1:
            raise ValueError("velocity_window and ground_window must be >= 1")
        self.side = side
        self.ground_is_min = ground_is_min
        self._ankles = deque(maxlen=velocity_window + 1)
        self._ground = deque(maxlen=ground_window)
        self._hip_x = None
        self._direction = 1.0

    @classmethod
    def from_config(cls, config: dict, side: str = "left") -> "ObservationBuilder":
        fe = config.get("features", {})
        return cls(side=side,
                   velocity_window=fe.get("velocity_window", 2),
                   ground_window=fe.get("ground_window", 60),
                   ground_is_min=config.get("trajectory", {}).get("ground_is_min", True))

    def reset(self) -> None:
        self._ankles.clear()
        self._ground.clear()
        self._hip_x = None
        self._direction = 1.0

    def _update_direction(self, kp_map) -> None:
        hips = [kp_map.get("left_hip"), kp_map.get("right_hip")]
        hips = [h for h in hips if _usable(h)]
        if not hips:
            return
        x = float(np.mean([h.x for h in hips]))
        if self._hip_x is not None and x != self._hip_x:
            self._direction = 1.0 if x > self._hip_x else -1.0
        self._hip_x = x

    def build(self, keypoints, timestamp: Optional[int] = None) -> HMMObservation:
        """Features of this frame. Never raises."""
        kp_map = as_keypoint_map(keypoints)
        hip = kp_map.get(f"{self.side}_hip")
        knee = kp_map.get(f"{self.side}_knee")
        ankle = kp_map.get(f"{self.side}_ankle")
        if timestamp is None:
            stamps = [finite_int(kp.timestamp) for kp in (hip, knee, ankle) if kp is not None]
            stamps = [t for t in stamps if t is not None]
            timestamp = max(stamps) if stamps else 0

        self._update_direction(kp_map)

        if not (_usable(hip) and _usable(knee) and _usable(ankle)):
            return HMMObservation(timestamp, HMMFeatures(_NAN, _NAN, _NAN, _NAN, 0.0))

        h, k, a = _xy(hip), _xy(knee), _xy(ankle)
        leg = float(np.linalg.norm(a - h))
        if leg < 1e-6:
            return HMMObservation(timestamp, HMMFeatures(_NAN, _NAN, _NAN, _NAN, 0.0))

        # Ankle speed over the velocity window
        self._ankles.append((timestamp, a))
        velocity = 0.0
        if len(self._ankles) > 1:
            t0, a0 = self._ankles[0]
            dt = (timestamp - t0) / 1000.0
            if dt > 0:
                velocity = float(np.linalg.norm(a - a0)) / dt / leg

        knee_flexion = 180.0 - angle_between(h - k, a - k)

        # Hip: angle between the trunk line (mid-shoulder -> mid-hip) and the thigh
        shoulders = [kp_map.get("left_shoulder"), kp_map.get("right_shoulder")]
        shoulders = [s for s in shoulders if _usable(s)]
        hips = [kp_map.get("left_hip"), kp_map.get("right_hip")]
        hips = [p for p in hips if _usable(p)]
        scores = [hip.score, knee.score, ankle.score]
        if shoulders:
            shoulder_center = np.mean([_xy(s) for s in shoulders], axis=0)
            trunk = np.mean([_xy(p) for p in hips], axis=0) - shoulder_center
            thigh = k - h
            hip_flexion = angle_between(trunk, thigh)
            ahead = (k[0] - h[0]) * self._direction
            if ahead < 0:
                hip_flexion = -hip_flexion
            scores.extend(s.score for s in shoulders)
        else:
            hip_flexion = _NAN

        # Clearance above the lowest (or highest) recent ankle position
        self._ground.append(a[1])
        ground = min(self._ground) if self.ground_is_min else max(self._ground)
        clearance = (a[1] - ground) if self.ground_is_min else (ground - a[1])

        features = HMMFeatures(
            ankle_velocity=velocity,
            knee_flexion=float(knee_flexion),
            hip_flexion=float(hip_flexion),
            vertical_position=float(clearance / leg),
            confidence=float(min(scores)),
        )
        z = 0.0 if ankle.z is None else float(ankle.z)
        return HMMObservation(timestamp, features, Point3D(float(a[0]), float(a[1]), z))
