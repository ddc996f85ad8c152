"""Per-person foot and center-of-mass trajectories.

The tracker keeps one :class:`~gaitstream.schema.GaitTrajectory` per
person id: bounded FIFO lists of left-ankle, right-ankle and weighted
center-of-mass points, each lightly blended with its predecessor. Heel
strikes are local extrema of the vertical foot coordinate, from which
stride and step measures are derived.

All derived quantities are in input units (pixels) and seconds; metric
conversion happens in :mod:`gaitstream.analysis`.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence

import numpy as np

from .config import merge_config
from .constants import COM_WEIGHTS
from .geometry import (
    as_keypoint_map,
    distance_3d,
    finite_float,
    finite_int,
    is_finite_point,
    weighted_center_of_mass,
)
from .schema import GaitTrajectory, Point3D, Pose, TrajectoryPoint

logger = logging.getLogger(__name__)

_ANKLES = {"left": "left_ankle", "right": "right_ankle"}


def find_heel_strikes(
    points: List[TrajectoryPoint],
    prominence: float = 0.1,
    min_peak_distance: int = 20,
    debounce: str = "index",
    min_peak_interval_ms: float = 400,
    ground_is_min: bool = True,
) -> List[TrajectoryPoint]:
    """Detect heel strikes as prominent extrema of the vertical coordinate.

    A point is a candidate when it is below (or above, when
    ``ground_is_min`` is False) both neighbors by more than *prominence*.
    Candidates too close to the previous accepted strike are discarded.

    Parameters
    ----------
    points : list of TrajectoryPoint
        One foot's trajectory, oldest first.
    prominence : float
        Minimum depth of the extremum relative to both neighbors.
    min_peak_distance : int
        Minimum separation in samples (``debounce="index"``).
    debounce : str
        ``"index"`` separates strikes by sample count; ``"time"`` by
        elapsed milliseconds (robust to variable frame rate).
    min_peak_interval_ms : float
        Minimum separation in ms (``debounce="time"``).
    ground_is_min : bool
        True when ground contact is a minimum of ``y``.

    Returns
    -------
    list of TrajectoryPoint
    """
    sign = 1.0 if ground_is_min else -1.0
    strikes = []
    last_idx = None
    for i in range(1, len(points) - 1):
        prev_y = sign * points[i - 1].position.y
        curr_y = sign * points[i].position.y
        next_y = sign * points[i + 1].position.y
        if not (curr_y < prev_y and curr_y < next_y):
            continue
        if min(prev_y - curr_y, next_y - curr_y) <= prominence:
            continue
        if last_idx is not None:
            if debounce == "time":
                if points[i].timestamp - points[last_idx].timestamp < min_peak_interval_ms:
                    continue
            elif i - last_idx < min_peak_distance:
                continue
        strikes.append(points[i])
        last_idx = i
    return strikes


class TrajectoryTracker:
    """Accumulate bounded per-person trajectories from smoothed keypoints.

    Parameters
    ----------
    max_length : int
        Capacity of each sub-trajectory; oldest points are evicted first.
    blend_factor : float
        Weight of the previous point in the blend
        ``f * last + (1 - f) * new``. 0 disables blending.
    ankle_min_confidence, com_min_confidence : float
        Acceptance floors (exclusive) for ankles and CoM joints.
    prominence, min_peak_distance, debounce, min_peak_interval_ms, ground_is_min
        Heel-strike detection settings, see :func:`find_heel_strikes`.

    Raises
    ------
    ValueError
        If any setting is invalid.
    """

    def __init__(self, max_length: int = 100, blend_factor: float = 0.7,
                 ankle_min_confidence: float = 0.5, com_min_confidence: float = 0.3,
                 prominence: float = 0.1, min_peak_distance: int = 20,
                 debounce: str = "index", min_peak_interval_ms: float = 400,
                 ground_is_min: bool = True):
        cfg = merge_config({"trajectory": {
            "max_length": max_length, "blend_factor": blend_factor,
            "ankle_min_confidence": ankle_min_confidence,
            "com_min_confidence": com_min_confidence,
            "prominence": prominence, "min_peak_distance": min_peak_distance,
            "debounce": debounce, "min_peak_interval_ms": min_peak_interval_ms,
            "ground_is_min": ground_is_min,
        }})["trajectory"]
        self.config = cfg
        self.max_length = max_length
        self.blend_factor = blend_factor
        self._trajectories: Dict[str, GaitTrajectory] = {}
        self._last_seen: Dict[str, int] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict) -> "TrajectoryTracker":
        return cls(**config.get("trajectory", config))

    # ── update ──

    def _get_or_create(self, person_id: str) -> GaitTrajectory:
        trajectory = self._trajectories.get(person_id)
        if trajectory is None:
            with self._lock:
                trajectory = self._trajectories.setdefault(
                    person_id, GaitTrajectory(max_length=self.max_length))
        return trajectory

    def _append(self, points: List[TrajectoryPoint], position: np.ndarray,
                timestamp: int, confidence: float) -> None:
        if points and self.blend_factor > 0:
            last = points[-1].position.as_array()
            position = self.blend_factor * last + (1.0 - self.blend_factor) * position
        points.append(TrajectoryPoint(
            Point3D(float(position[0]), float(position[1]), float(position[2])),
            int(timestamp), float(confidence)))
        if len(points) > self.max_length:
            del points[:len(points) - self.max_length]

    def update(self, person_id: str, keypoints) -> None:
        """Append this frame's ankles and center of mass for *person_id*.

        Parameters
        ----------
        person_id : str
        keypoints : Pose, mapping or iterable of Keypoint
            Smoothed keypoints of one frame. Missing, low-confidence or
            non-finite joints, and joints without a finite timestamp, are
            skipped. Never raises.
        """
        kp_map = as_keypoint_map(keypoints)
        trajectory = self._get_or_create(person_id)
        cfg = self.config
        latest = None

        for foot, name in _ANKLES.items():
            kp = kp_map.get(name)
            if kp is None or not is_finite_point(kp):
                continue
            score = finite_float(kp.score)
            timestamp = finite_int(kp.timestamp)
            if score is None or timestamp is None or not score > cfg["ankle_min_confidence"]:
                continue
            z = 0.0 if kp.z is None else kp.z
            self._append(trajectory.part(foot), np.array([kp.x, kp.y, z], dtype=float),
                         timestamp, score)
            latest = timestamp if latest is None else max(latest, timestamp)

        com, confidence = weighted_center_of_mass(kp_map, COM_WEIGHTS, cfg["com_min_confidence"])
        if confidence > 0:
            t = finite_int(keypoints.timestamp) if isinstance(keypoints, Pose) else None
            if not t:
                stamps = [finite_int(kp_map[n].timestamp) for n in COM_WEIGHTS if n in kp_map
                          and (finite_float(kp_map[n].score) or 0.0) > cfg["com_min_confidence"]]
                stamps = [s for s in stamps if s is not None]
                t = max(stamps) if stamps else finite_int(getattr(keypoints, "timestamp", None))
            if t is not None:
                self._append(trajectory.center_of_mass, com.as_array(), t, confidence)
                latest = t if latest is None else max(latest, t)

        if latest is not None:
            self._last_seen[person_id] = latest

    # ── queries ──

    def get_trajectory(self, person_id: str) -> Optional[GaitTrajectory]:
        """Copy of the person's trajectory, or ``None`` if unknown."""
        trajectory = self._trajectories.get(person_id)
        return trajectory.copy() if trajectory is not None else None

    def export_trajectories(self) -> Dict[str, GaitTrajectory]:
        return {pid: t.copy() for pid, t in list(self._trajectories.items())}

    def persons(self) -> List[str]:
        return list(self._trajectories)

    def _points(self, person_id: str, part: str) -> List[TrajectoryPoint]:
        trajectory = self._trajectories.get(person_id)
        if trajectory is None:
            return []
        return list(trajectory.part(part))

    def heel_strikes(self, person_id: str, foot: str) -> List[TrajectoryPoint]:
        """Heel strikes of *foot* (``"left"`` or ``"right"``); empty if unknown."""
        cfg = self.config
        return find_heel_strikes(
            self._points(person_id, foot),
            prominence=cfg["prominence"],
            min_peak_distance=cfg["min_peak_distance"],
            debounce=cfg["debounce"],
            min_peak_interval_ms=cfg["min_peak_interval_ms"],
            ground_is_min=cfg["ground_is_min"],
        )

    def stride_length(self, person_id: str, foot: str) -> float:
        """Mean distance between consecutive heel strikes; 0 with fewer than two."""
        strikes = self.heel_strikes(person_id, foot)
        if len(strikes) < 2:
            return 0.0
        d = [distance_3d(a.position, b.position) for a, b in zip(strikes[:-1], strikes[1:])]
        return float(np.mean(d))

    def step_length(self, person_id: str) -> float:
        """Mean horizontal distance between alternating-foot heel strikes.

        Falls back to half the mean stride length when the strikes of the
        two feet do not alternate; 0 when nothing is available.
        """
        tagged = sorted(
            [(p.timestamp, foot, p) for foot in _ANKLES for p in self.heel_strikes(person_id, foot)],
            key=lambda item: item[0],
        )
        steps = [abs(b[2].position.x - a[2].position.x)
                 for a, b in zip(tagged[:-1], tagged[1:]) if a[1] != b[1]]
        if steps:
            return float(np.mean(steps))
        strides = [s for s in (self.stride_length(person_id, f) for f in _ANKLES) if s > 0]
        return float(np.mean(strides)) / 2.0 if strides else 0.0

    def step_width(self, person_id: str, lateral_axis: str = "x", scale: float = 1.0,
                   valid_range: Optional[Sequence[float]] = None) -> float:
        """Mean lateral ankle separation over frames where both ankles exist.

        Separations are divided by *scale*; when *valid_range* is given,
        values outside ``[min, max]`` are ignored.
        """
        left = {p.timestamp: p for p in self._points(person_id, "left")}
        widths = [
            abs(getattr(p.position, lateral_axis) - getattr(left[p.timestamp].position, lateral_axis)) / scale
            for p in self._points(person_id, "right") if p.timestamp in left
        ]
        if valid_range is not None:
            lo, hi = valid_range
            widths = [w for w in widths if lo <= w <= hi]
        return float(np.mean(widths)) if widths else 0.0

    def velocity(self, person_id: str, part: str) -> Point3D:
        """Velocity of the last two points of *part* in units per second."""
        points = self._points(person_id, part)
        if len(points) < 2:
            return Point3D(0.0, 0.0, 0.0)
        a, b = points[-2], points[-1]
        dt = (b.timestamp - a.timestamp) / 1000.0
        if dt <= 0:
            return Point3D(0.0, 0.0, 0.0)
        v = (b.position.as_array() - a.position.as_array()) / dt
        return Point3D(float(v[0]), float(v[1]), float(v[2]))

    def com_vertical_excursion(self, person_id: str) -> float:
        """Peak-to-peak vertical motion of the center of mass."""
        ys = [p.position.y for p in self._points(person_id, "com")]
        if len(ys) < 2:
            return 0.0
        return float(max(ys) - min(ys))

    def mean_ankle_confidence(self, person_id: str) -> float:
        conf = [p.confidence for foot in _ANKLES for p in self._points(person_id, foot)]
        return float(np.mean(conf)) if conf else 0.0

    # ── lifecycle ──

    def clear(self, person_id: Optional[str] = None) -> None:
        with self._lock:
            if person_id is None:
                self._trajectories.clear()
                self._last_seen.clear()
            else:
                self._trajectories.pop(person_id, None)
                self._last_seen.pop(person_id, None)

    def drop_stale(self, now_ms: int, max_age_ms: float) -> List[str]:
        """Forget persons not updated within *max_age_ms* of *now_ms*."""
        stale = [pid for pid in list(self._trajectories)
                 if now_ms - self._last_seen.get(pid, now_ms) > max_age_ms]
        for pid in stale:
            self.clear(pid)
            logger.info(f"Dropped trajectory of lost person {pid}")
        return stale
