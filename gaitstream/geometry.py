"""Pure geometry helpers on keypoints and points.

Every function here is total: given finite inputs it returns a value,
and when too few usable joints are present it returns a neutral result
(0, an empty box, ``None``) instead of raising.

Points may be :class:`~gaitstream.schema.Keypoint`,
:class:`~gaitstream.schema.Point3D`, or plain ``(x, y[, z])`` sequences.
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Sequence, Union

import numpy as np

from .constants import BODY_SEGMENTS, COM_MIN_CONFIDENCE
from .schema import Keypoint, Point3D, Pose


def _xyz(p) -> np.ndarray:
    if isinstance(p, np.ndarray):
        arr = np.zeros(3)
        arr[:min(3, p.size)] = p.ravel()[:3]
        return arr
    if hasattr(p, "x"):
        z = getattr(p, "z", 0.0)
        return np.array([p.x, p.y, 0.0 if z is None else z], dtype=float)
    seq = list(p)
    return np.array([seq[0], seq[1], seq[2] if len(seq) > 2 else 0.0], dtype=float)


def is_finite_point(p) -> bool:
    """True when all coordinates of *p* are finite numbers."""
    try:
        return bool(np.all(np.isfinite(_xyz(p))))
    except (TypeError, ValueError):
        return False


def finite_float(value) -> Optional[float]:
    """*value* as a float, or ``None`` when missing or not finite."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def finite_int(value) -> Optional[int]:
    """*value* truncated to an int, or ``None`` when missing or not finite."""
    value = finite_float(value)
    return None if value is None else int(value)


def as_keypoint_map(keypoints) -> Dict[str, Keypoint]:
    """Normalize a Pose, mapping or iterable of keypoints to ``{name: kp}``."""
    if isinstance(keypoints, Pose):
        return keypoints.keypoint_map()
    if isinstance(keypoints, Mapping):
        return {str(getattr(k, "value", k)): v for k, v in keypoints.items()}
    return Pose(tuple(keypoints)).keypoint_map()


# ── Distances ────────────────────────────────────────────────────────

def distance_2d(a, b) -> float:
    """Euclidean distance in the image plane."""
    pa, pb = _xyz(a), _xyz(b)
    return float(math.hypot(pa[0] - pb[0], pa[1] - pb[1]))


def distance_3d(a, b) -> float:
    """Euclidean distance including depth (missing z counts as 0)."""
    return float(np.linalg.norm(_xyz(a) - _xyz(b)))


def manhattan_distance(a, b) -> float:
    """City-block distance in the image plane."""
    pa, pb = _xyz(a), _xyz(b)
    return float(abs(pa[0] - pb[0]) + abs(pa[1] - pb[1]))


def keypoint_distance(keypoints, first: str, second: str,
                      min_confidence: float = 0.0) -> Optional[float]:
    """Distance between two named joints, or ``None`` if either is unusable."""
    kp_map = as_keypoint_map(keypoints)
    a, b = kp_map.get(first), kp_map.get(second)
    if a is None or b is None:
        return None
    if not (is_finite_point(a) and is_finite_point(b)):
        return None
    if a.score < min_confidence or b.score < min_confidence:
        return None
    return distance_2d(a, b)


# ── Angles ───────────────────────────────────────────────────────────

def angle_between(v1: np.ndarray, v2: np.ndarray) -> float:
    """Angle between two vectors in degrees [0, 180]; NaN if degenerate."""
    n1 = np.linalg.norm(v1)
    n2 = np.linalg.norm(v2)
    if n1 < 1e-10 or n2 < 1e-10:
        return np.nan
    cos_a = np.clip(np.dot(v1, v2) / (n1 * n2), -1.0, 1.0)
    return float(np.degrees(np.arccos(cos_a)))


def three_point_angle(a, vertex, c, degrees: bool = True) -> float:
    """Interior angle at *vertex* formed by *a* and *c*.

    The cosine is clamped to [-1, 1] before ``arccos`` so floating-point
    drift never produces a domain error. Returns 0 when either arm has
    zero length.
    """
    v = _xyz(vertex)[:2]
    angle = angle_between(_xyz(a)[:2] - v, _xyz(c)[:2] - v)
    if np.isnan(angle):
        return 0.0
    return angle if degrees else math.radians(angle)


def signed_segment_angle(proximal_vec: np.ndarray, distal_vec: np.ndarray) -> float:
    """Signed angle of *distal_vec* relative to *proximal_vec*, degrees in [-180, 180]."""
    a = np.arctan2(distal_vec[0], distal_vec[1])
    b = np.arctan2(proximal_vec[0], proximal_vec[1])
    raw = np.degrees(a - b)
    return float(((raw + 180) % 360) - 180)


JOINT_ANGLE_TRIPLETS = {
    "left_knee": ("left_hip", "left_knee", "left_ankle"),
    "right_knee": ("right_hip", "right_knee", "right_ankle"),
    "left_elbow": ("left_shoulder", "left_elbow", "left_wrist"),
    "right_elbow": ("right_shoulder", "right_elbow", "right_wrist"),
    "left_hip": ("left_shoulder", "left_hip", "left_knee"),
    "right_hip": ("right_shoulder", "right_hip", "right_knee"),
}


def joint_angles(keypoints) -> Optional[dict]:
    """Interior joint angles (degrees) for knees, elbows and hips.

    Parameters
    ----------
    keypoints : Pose, mapping or iterable of Keypoint

    Returns
    -------
    dict or None
        One entry per angle in ``JOINT_ANGLE_TRIPLETS`` (0.0 when the
        joints are missing) plus ``confidence``: the mean over computed
        angles of the weakest contributing joint score. ``None`` when no
        angle could be computed.
    """
    kp_map = as_keypoint_map(keypoints)
    result = {}
    confidences = []
    for name, (p1, vertex, p3) in JOINT_ANGLE_TRIPLETS.items():
        pts = [kp_map.get(p1), kp_map.get(vertex), kp_map.get(p3)]
        if any(p is None or not is_finite_point(p) for p in pts):
            result[name] = 0.0
            continue
        result[name] = three_point_angle(pts[0], pts[1], pts[2])
        confidences.append(min(p.score for p in pts))
    if not confidences:
        return None
    result["confidence"] = float(np.mean(confidences))
    return result


# ── Bounding boxes ───────────────────────────────────────────────────

@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return max(self.width, 0.0) * max(self.height, 0.0)


def bounding_box(keypoints: Iterable, min_confidence: float = 0.3,
                 padding: float = 20.0) -> BoundingBox:
    """Padded box around keypoints scoring above *min_confidence*.

    Returns a zero box when no keypoint qualifies.
    """
    pts = [
        _xyz(kp)[:2] for kp in as_keypoint_map(keypoints).values()
        if kp.score > min_confidence and is_finite_point(kp)
    ]
    if not pts:
        return BoundingBox(0.0, 0.0, 0.0, 0.0)
    arr = np.asarray(pts)
    min_x, min_y = arr.min(axis=0) - padding
    max_x, max_y = arr.max(axis=0) + padding
    return BoundingBox(float(min_x), float(min_y),
                       float(max_x - min_x), float(max_y - min_y))


def boxes_overlap(a: BoundingBox, b: BoundingBox) -> bool:
    return (a.x < b.x + b.width and a.x + a.width > b.x
            and a.y < b.y + b.height and a.y + a.height > b.y)


def intersection_over_union(a: BoundingBox, b: BoundingBox) -> float:
    """IoU of two boxes in [0, 1]."""
    ix = max(a.x, b.x)
    iy = max(a.y, b.y)
    iw = min(a.x + a.width, b.x + b.width) - ix
    ih = min(a.y + a.height, b.y + b.height) - iy
    if iw <= 0 or ih <= 0:
        return 0.0
    inter = iw * ih
    union = a.area + b.area - inter
    return float(inter / union) if union > 0 else 0.0


# ── Center of mass ───────────────────────────────────────────────────

def weighted_center_of_mass(
    keypoints,
    weights: Optional[Mapping[str, float]] = None,
    min_confidence: float = COM_MIN_CONFIDENCE,
):
    """Weighted center of mass over qualifying joints.

    Parameters
    ----------
    keypoints : Pose, mapping or iterable of Keypoint
    weights : mapping, optional
        Joint name to weight. When ``None``, each joint is weighted by its
        own score (whole-body estimate).
    min_confidence : float
        Joints must score strictly above this floor.

    Returns
    -------
    (Point3D, float)
        Center and confidence (mean score of contributing joints).
        ``(Point3D(0, 0, 0), 0.0)`` when no joint qualifies.
    """
    kp_map = as_keypoint_map(keypoints)
    names = list(weights) if weights is not None else list(kp_map)
    total = np.zeros(3)
    total_weight = 0.0
    scores = []
    for name in names:
        kp = kp_map.get(name)
        score = finite_float(getattr(kp, "score", None))
        if score is None or not score > min_confidence or not is_finite_point(kp):
            continue
        w = weights[name] if weights is not None else score
        total += _xyz(kp) * w
        total_weight += w
        scores.append(score)
    if total_weight <= 0:
        return Point3D(0.0, 0.0, 0.0), 0.0
    c = total / total_weight
    return Point3D(float(c[0]), float(c[1]), float(c[2])), float(np.mean(scores))


# ── Body measurements ────────────────────────────────────────────────

def body_measurements(keypoints, min_confidence: float = 0.0) -> dict:
    """Segment length estimates in pixels.

    Lengths come from ``BODY_SEGMENTS`` plus leg length (hip to ankle),
    torso length (mean of both shoulder-hip distances), height (nose to
    ankle) and arm span (wrist to wrist). Missing measurements are 0.0.
    ``confidence`` is the mean, over measured lengths, of the weaker
    endpoint score; 0.0 when nothing could be measured.
    """
    kp_map = as_keypoint_map(keypoints)
    out = {}
    confidences = []

    def _measure(key, first, second):
        d = keypoint_distance(kp_map, first, second, min_confidence)
        if d is None:
            out[key] = 0.0
            return None
        out[key] = d
        confidences.append(min(kp_map[first].score, kp_map[second].score))
        return d

    for proximal, distal, name in BODY_SEGMENTS:
        _measure(name, proximal, distal)
    _measure("leg_left", "left_hip", "left_ankle")
    _measure("leg_right", "right_hip", "right_ankle")
    _measure("arm_span", "left_wrist", "right_wrist")

    torso, torso_scores = [], []
    for side in ("left", "right"):
        d = keypoint_distance(kp_map, f"{side}_shoulder", f"{side}_hip", min_confidence)
        if d is not None:
            torso.append(d)
            torso_scores.append(min(kp_map[f"{side}_shoulder"].score, kp_map[f"{side}_hip"].score))
    out["torso_length"] = float(np.mean(torso)) if torso else 0.0
    if torso:
        confidences.append(min(torso_scores))

    ankle = "left_ankle" if "left_ankle" in kp_map else "right_ankle"
    _measure("height", "nose", ankle)

    out["confidence"] = float(np.mean(confidences)) if confidences else 0.0
    return out


# ── Kinematics ───────────────────────────────────────────────────────

def velocity(p1, p2, dt: float, scale: float = 1.0) -> Point3D:
    """Velocity from *p1* to *p2* over *dt* seconds, divided by *scale*.

    Zero when ``dt <= 0``.
    """
    if not dt > 0:
        return Point3D(0.0, 0.0, 0.0)
    v = (_xyz(p2) - _xyz(p1)) / scale / dt
    return Point3D(float(v[0]), float(v[1]), float(v[2]))


def acceleration(v1, v2, dt: float) -> Point3D:
    """Acceleration between two velocities over *dt* seconds; zero when ``dt <= 0``."""
    return velocity(v1, v2, dt)


def stride_length_from_positions(positions: Sequence,
                                 pixels_per_meter: float = 1.0) -> float:
    """Mean distance between consecutive positions, scaled.

    Returns 0 when fewer than two positions are given.
    """
    if len(positions) < 2:
        return 0.0
    d = [distance_2d(a, b) for a, b in zip(positions[:-1], positions[1:])]
    return float(np.mean(d)) / pixels_per_meter


def as_point(p: Union[Keypoint, Point3D, Sequence[float]]) -> Point3D:
    c = _xyz(p)
    return Point3D(float(c[0]), float(c[1]), float(c[2]))
