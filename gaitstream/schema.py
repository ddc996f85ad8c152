"""Record types exchanged between the stream-processing stages.

All input-side records are frozen dataclasses: the core never mutates
a caller's keypoint, it only derives new values. ``to_dict`` turns any
record into plain Python types for external serializers.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


def _convert_numpy(obj: Any) -> Any:
    """Recursively convert numpy and enum types to plain Python types."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, dict):
        return {_convert_numpy(k): _convert_numpy(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_convert_numpy(v) for v in obj]
    if isinstance(obj, np.bool_):
        return bool(obj)
    return obj


def to_dict(record: Any) -> Any:
    """Convert a record (or list/dict of records) to plain Python types.

    Parameters
    ----------
    record : dataclass instance, list, dict or scalar

    Returns
    -------
    dict, list or scalar
        Structure made only of ``dict``, ``list``, ``str``, ``int``,
        ``float``, ``bool`` and ``None``.
    """
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return _convert_numpy(dataclasses.asdict(record))
    if isinstance(record, dict):
        return {_convert_numpy(k): to_dict(v) for k, v in record.items()}
    if isinstance(record, (list, tuple)):
        return [to_dict(v) for v in record]
    return _convert_numpy(record)


# ── Geometry ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Point3D:
    x: float
    y: float
    z: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)


# ── Pose input ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Keypoint:
    """One named landmark from the pose model.

    ``timestamp`` is in integer milliseconds, ``score`` is the detection
    confidence in [0, 1]. ``z`` is ``None`` for 2D models.
    """

    name: str
    x: float
    y: float
    score: float
    timestamp: int
    z: Optional[float] = None

    @property
    def position(self) -> Point3D:
        return Point3D(self.x, self.y, 0.0 if self.z is None else self.z)


@dataclass(frozen=True)
class SmoothedKeypoint(Keypoint):
    """Keypoint produced by the smoother.

    ``predicted`` is set when the value was extrapolated from velocity
    instead of measured; ``valid`` is False only when the input was
    unusable and no history existed to fall back on.
    """

    predicted: bool = False
    valid: bool = True


@dataclass(frozen=True)
class Pose:
    keypoints: Tuple[Keypoint, ...]
    score: float = 1.0
    timestamp: int = 0

    def __post_init__(self):
        # Value semantics: never keep the caller's list.
        object.__setattr__(self, "keypoints", tuple(self.keypoints))

    def keypoint_map(self) -> Dict[str, Keypoint]:
        """Map joint name to keypoint; the first duplicate wins."""
        out: Dict[str, Keypoint] = {}
        for kp in self.keypoints:
            name = kp.name.value if isinstance(kp.name, Enum) else kp.name
            out.setdefault(name, kp)
        return out


# ── Trajectories ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrajectoryPoint:
    position: Point3D
    timestamp: int
    confidence: float


@dataclass
class GaitTrajectory:
    """Bounded per-person trajectories of both feet and the center of mass."""

    left_foot: List[TrajectoryPoint] = field(default_factory=list)
    right_foot: List[TrajectoryPoint] = field(default_factory=list)
    center_of_mass: List[TrajectoryPoint] = field(default_factory=list)
    max_length: int = 100

    def part(self, name: str) -> List[TrajectoryPoint]:
        if name in ("left", "left_foot"):
            return self.left_foot
        if name in ("right", "right_foot"):
            return self.right_foot
        if name in ("com", "center_of_mass"):
            return self.center_of_mass
        raise ValueError(f"Unknown trajectory part: {name!r}")

    def copy(self) -> "GaitTrajectory":
        # Points are frozen, so copying the lists is enough.
        return GaitTrajectory(
            left_foot=list(self.left_foot),
            right_foot=list(self.right_foot),
            center_of_mass=list(self.center_of_mass),
            max_length=self.max_length,
        )

    def __len__(self) -> int:
        return max(len(self.left_foot), len(self.right_foot), len(self.center_of_mass))


# ── HMM observation and events ───────────────────────────────────────

@dataclass(frozen=True)
class HMMFeatures:
    """Feature vector for one frame of one leg.

    ankle_velocity : ankle speed in leg lengths per second
    knee_flexion : degrees, 0 = full extension
    hip_flexion : degrees, positive = thigh ahead of trunk
    vertical_position : ankle clearance above ground in leg lengths
    confidence : [0, 1], scales how much the observation is trusted
    """

    ankle_velocity: float
    knee_flexion: float
    hip_flexion: float
    vertical_position: float
    confidence: float = 1.0

    def values(self) -> Tuple[float, float, float, float]:
        return (self.ankle_velocity, self.knee_flexion,
                self.hip_flexion, self.vertical_position)


@dataclass(frozen=True)
class HMMObservation:
    timestamp: int
    features: HMMFeatures
    position: Optional[Point3D] = None


@dataclass(frozen=True)
class GaitEvent:
    type: str
    foot: str
    timestamp: int
    confidence: float
    position: Optional[Point3D] = None


# ── Outputs ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GaitParameters:
    """Snapshot of temporal and spatial gait parameters.

    Times are in seconds, lengths in meters, cadence in steps/min,
    velocity in m/s, symmetry and variability in %. ``status`` is
    ``"ok"``, ``"low_confidence"`` or ``"no_data"``.

    ``left_step_length``/``right_step_length`` are the mean distance
    between successive heel strikes of that foot. ``left_phase`` and
    ``right_phase`` name the current gait phase of each leg ("" when
    unknown), ``*_phase_progress`` is the elapsed fraction of that phase
    (0-1) and ``phase_confidence`` the lower of the two phase
    probabilities.
    """

    cadence: float = 0.0
    stride_time: float = 0.0
    step_time: float = 0.0
    stance_time: float = 0.0
    swing_time: float = 0.0
    double_support: float = 0.0
    stride_length: float = 0.0
    step_length: float = 0.0
    left_step_length: float = 0.0
    right_step_length: float = 0.0
    step_width: float = 0.0
    foot_angle: float = 0.0
    velocity: float = 0.0
    symmetry_index: float = 0.0
    variability_index: float = 0.0
    left_phase: str = ""
    right_phase: str = ""
    left_phase_progress: float = 0.0
    right_phase_progress: float = 0.0
    phase_confidence: float = 0.0
    confidence: float = 0.0
    n_heel_strikes: int = 0
    status: str = "no_data"

    @classmethod
    def empty(cls) -> "GaitParameters":
        return cls()

    @property
    def has_data(self) -> bool:
        return self.status != "no_data"


@dataclass(frozen=True)
class FrameMetrics:
    """Telemetry for one pipeline call, returned with its result."""

    person_id: str
    timestamp: int
    processing_ms: float
    n_keypoints: int = 0
    n_invalid: int = 0
    n_outliers: int = 0
    n_predicted: int = 0
