"""Per-joint keypoint smoothing with outlier rejection and prediction.

Each joint of each tracked person owns a :class:`JointHistory`: fixed
capacity ring buffers of positions, confidences, timestamps and the
velocities/accelerations derived from them. Histories live in a
:class:`HistoryArena` keyed by ``(person_id, joint_name)`` so no joint or
person ever sees another's state.

The smoothing algorithm is one of a closed set of variants chosen when
the smoother is built:

- ``exponential``: ``a * current + (1 - a) * previous_output`` with
  ``a = min(1, factor * confidence)``
- ``moving_average``: mean of the last *window_size* positions
- ``kalman``: gain ``q / (q + (1 - confidence))`` toward the measurement
- ``butterworth``: 2nd-order IIR low-pass (``scipy.signal.butter``)
- ``savgol``: causal Savitzky-Golay end-point fit over 3/5/7 samples

Functions
---------
make_algorithm
    Build a smoothing variant by name.
smooth_trajectory
    Run a fresh smoother over a list of trajectory points.
exponential_smooth_scalar, moving_average_scalar, remove_outliers,
interpolate_values
    Scalar helpers for 1-D series.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import butter, savgol_coeffs

from .config import merge_config
from .constants import NOMINAL_FRAME_INTERVAL_S
from .geometry import finite_float, finite_int, is_finite_point
from .schema import Keypoint, Point3D, Pose, SmoothedKeypoint, TrajectoryPoint

logger = logging.getLogger(__name__)


# ── History ──────────────────────────────────────────────────────────

class JointHistory:
    """Bounded history of one joint of one person.

    Positions are stored as length-3 arrays (z = 0 for 2D input). The
    stored position is the one the smoother *accepted*: the raw sample,
    the prediction when the raw sample was rejected, or a repeat of the
    last accepted position while no velocity is known yet.
    """

    def __init__(self, max_size: int = 30):
        self.max_size = max_size
        self.positions = deque(maxlen=max_size)
        self.confidences = deque(maxlen=max_size)
        self.timestamps = deque(maxlen=max_size)
        self.velocities = deque(maxlen=max_size)
        self.accelerations = deque(maxlen=max_size)
        self.smoothed = deque(maxlen=max_size)
        self.consecutive_outliers = 0

    def __len__(self) -> int:
        return len(self.positions)

    def push(self, position: np.ndarray, confidence: float, timestamp: int) -> None:
        """Append a sample and derive velocity/acceleration when time advanced."""
        if self.positions:
            dt = (timestamp - self.timestamps[-1]) / 1000.0
            if dt > 0:
                vel = (position - self.positions[-1]) / dt
                if self.velocities:
                    self.accelerations.append((vel - self.velocities[-1]) / dt)
                self.velocities.append(vel)
        self.positions.append(np.array(position, dtype=float))
        self.confidences.append(float(confidence))
        self.timestamps.append(timestamp)

    def predict(self, timestamp: int) -> Optional[np.ndarray]:
        """Constant-velocity extrapolation to *timestamp*, or ``None``."""
        if len(self.positions) < 2 or not self.velocities:
            return None
        dt = (timestamp - self.timestamps[-1]) / 1000.0
        if not dt > 0:
            dt = NOMINAL_FRAME_INTERVAL_S
        return self.positions[-1] + self.velocities[-1] * dt

    def recent_positions(self, n: int) -> List[np.ndarray]:
        if n <= 0:
            return []
        return list(self.positions)[-n:]

    def clear(self) -> None:
        for buf in (self.positions, self.confidences, self.timestamps,
                    self.velocities, self.accelerations, self.smoothed):
            buf.clear()
        self.consecutive_outliers = 0


class HistoryArena:
    """All joint histories, keyed by ``(person_id, joint_name)``."""

    def __init__(self, max_size: int = 30):
        self.max_size = max_size
        self._histories: Dict[Tuple[str, str], JointHistory] = {}
        # Guards insertion and removal only; a history is owned by one person.
        self._lock = threading.Lock()

    def get(self, person_id: str, joint: str) -> JointHistory:
        key = (person_id, joint)
        history = self._histories.get(key)
        if history is None:
            with self._lock:
                history = self._histories.setdefault(key, JointHistory(self.max_size))
        return history

    def peek(self, person_id: str, joint: str) -> Optional[JointHistory]:
        return self._histories.get((person_id, joint))

    def drop_person(self, person_id: str) -> int:
        """Remove every history of *person_id*; return how many were dropped."""
        with self._lock:
            keys = [k for k in self._histories if k[0] == person_id]
            for k in keys:
                del self._histories[k]
        return len(keys)

    def persons(self) -> List[str]:
        return sorted({k[0] for k in self.keys()})

    def keys(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._histories)

    def clear(self) -> None:
        with self._lock:
            self._histories.clear()

    def __len__(self) -> int:
        return len(self._histories)

    def __contains__(self, key) -> bool:
        return key in self._histories


# ── Algorithms ───────────────────────────────────────────────────────

class SmoothingAlgorithm:
    """Base variant. ``apply`` sees the history *before* the current sample."""

    name = ""

    def apply(self, history: JointHistory, current: np.ndarray,
              confidence: float) -> np.ndarray:
        raise NotImplementedError

    @classmethod
    def from_config(cls, cfg: dict) -> "SmoothingAlgorithm":
        return cls()


class ExponentialSmoothing(SmoothingAlgorithm):
    name = "exponential"

    def __init__(self, factor: float = 0.7):
        self.factor = factor

    def apply(self, history, current, confidence):
        if not history.smoothed:
            return current
        alpha = min(1.0, self.factor * confidence)
        return alpha * current + (1.0 - alpha) * history.smoothed[-1]

    @classmethod
    def from_config(cls, cfg):
        return cls(factor=cfg["factor"])


class MovingAverageSmoothing(SmoothingAlgorithm):
    name = "moving_average"

    def __init__(self, window_size: int = 5):
        self.window_size = window_size

    def apply(self, history, current, confidence):
        window = history.recent_positions(self.window_size - 1)
        window.append(current)
        return np.mean(window, axis=0)

    @classmethod
    def from_config(cls, cfg):
        return cls(window_size=cfg["window_size"])


class KalmanSmoothing(SmoothingAlgorithm):
    """Scalar-gain Kalman blend; detection confidence sets measurement noise."""

    name = "kalman"

    def __init__(self, process_noise: float = 0.1):
        self.process_noise = process_noise

    def apply(self, history, current, confidence):
        if not history.smoothed:
            return current
        gain = self.process_noise / (self.process_noise + (1.0 - confidence))
        prev = history.smoothed[-1]
        return prev + gain * (current - prev)

    @classmethod
    def from_config(cls, cfg):
        return cls(process_noise=cfg["process_noise"])


class ButterworthSmoothing(SmoothingAlgorithm):
    """Causal 2nd-order Butterworth low-pass in direct form I.

    Coefficients are designed once with ``scipy.signal.butter``. Until
    two previous samples exist the output falls back to exponential
    smoothing at full confidence.
    """

    name = "butterworth"

    def __init__(self, cutoff_hz: float = 3.0, sample_rate_hz: float = 30.0,
                 factor: float = 0.7):
        nyq = sample_rate_hz / 2.0
        if not 0 < cutoff_hz < nyq:
            raise ValueError(f"cutoff_hz must be in (0, {nyq}), got {cutoff_hz}")
        b, a = butter(2, cutoff_hz / nyq, btype="low")
        self.b = tuple(float(v) for v in b)
        self.a = tuple(float(v) for v in a)
        self._warmup = ExponentialSmoothing(factor)

    def apply(self, history, current, confidence):
        if len(history.positions) < 2 or len(history.smoothed) < 2:
            return self._warmup.apply(history, current, 1.0)
        b0, b1, b2 = self.b
        _, a1, a2 = self.a
        x1, x2 = history.positions[-1], history.positions[-2]
        y1, y2 = history.smoothed[-1], history.smoothed[-2]
        return b0 * current + b1 * x1 + b2 * x2 - a1 * y1 - a2 * y2

    @classmethod
    def from_config(cls, cfg):
        return cls(cutoff_hz=cfg["cutoff_hz"], sample_rate_hz=cfg["sample_rate_hz"],
                   factor=cfg["factor"])


SAVGOL_WINDOWS = (3, 5, 7)


def _savgol_table() -> Dict[int, np.ndarray]:
    """End-point Savitzky-Golay weights, oldest sample first."""
    table = {}
    for w in SAVGOL_WINDOWS:
        coeffs = savgol_coeffs(w, polyorder=min(2, w - 2), pos=w - 1, use="dot")
        coeffs.setflags(write=False)
        table[w] = coeffs
    return table


class SavgolSmoothing(SmoothingAlgorithm):
    name = "savgol"

    def __init__(self, window_size: int = 5):
        usable = [w for w in SAVGOL_WINDOWS if w <= max(window_size, SAVGOL_WINDOWS[0])]
        self.max_window = usable[-1]
        self.coefficients = _savgol_table()
        self._fallback = MovingAverageSmoothing(window_size)

    def apply(self, history, current, confidence):
        available = len(history.positions) + 1
        windows = [w for w in SAVGOL_WINDOWS if w <= min(self.max_window, available)]
        if not windows:
            return self._fallback.apply(history, current, confidence)
        w = windows[-1]
        samples = history.recent_positions(w - 1)
        samples.append(current)
        return self.coefficients[w] @ np.asarray(samples)

    @classmethod
    def from_config(cls, cfg):
        return cls(window_size=cfg["window_size"])


SMOOTHING_METHODS = {
    cls.name: cls
    for cls in (ExponentialSmoothing, MovingAverageSmoothing, KalmanSmoothing,
                ButterworthSmoothing, SavgolSmoothing)
}


def list_smoothing_methods() -> list:
    return list(SMOOTHING_METHODS)


def make_algorithm(name: str, config: Optional[dict] = None) -> SmoothingAlgorithm:
    """Build the smoothing variant *name*.

    Parameters
    ----------
    name : str
        One of :func:`list_smoothing_methods`.
    config : dict, optional
        ``smoothing`` config section; defaults are used for missing keys.

    Raises
    ------
    ValueError
        If *name* is unknown or a parameter is invalid.
    """
    if name not in SMOOTHING_METHODS:
        raise ValueError(
            f"Unknown smoothing method: {name!r}. Available: {list_smoothing_methods()}"
        )
    cfg = merge_config({"smoothing": dict(config or {}, method=name)})["smoothing"]
    return SMOOTHING_METHODS[name].from_config(cfg)


# ── Smoother ─────────────────────────────────────────────────────────

@dataclass
class SmoothingStats:
    n_keypoints: int = 0
    n_invalid: int = 0
    n_outliers: int = 0
    n_predicted: int = 0


def _is_usable(kp: Keypoint) -> bool:
    score = finite_float(kp.score)
    if score is None or not is_finite_point(kp):
        return False
    return 0.0 <= score <= 1.0


def _timestamp(kp: Keypoint, history: JointHistory) -> int:
    t = finite_int(kp.timestamp)
    if t is not None:
        return t
    return history.timestamps[-1] if history.timestamps else 0


class KeypointSmoother:
    """Denoise keypoints one at a time.

    Parameters
    ----------
    method : str
        Smoothing variant (see :data:`SMOOTHING_METHODS`).
    factor : float
        Exponential base factor in (0, 1].
    window_size : int
        Window for moving average / Savitzky-Golay.
    max_movement : float
        Largest accepted jump between frames, in input units (pixels).
    max_history : int
        Ring-buffer capacity per joint.
    max_consecutive_outliers : int
        Rejections in a row after which a raw sample is accepted again,
        so a genuine relocation is not locked out forever.
    process_noise, cutoff_hz, sample_rate_hz : float
        Kalman and Butterworth parameters.

    Raises
    ------
    ValueError
        If any parameter is invalid.
    """

    def __init__(self, method: str = "exponential", factor: float = 0.7,
                 window_size: int = 5, max_movement: float = 50.0,
                 max_history: int = 30, max_consecutive_outliers: int = 3,
                 process_noise: float = 0.1, cutoff_hz: float = 3.0,
                 sample_rate_hz: float = 30.0):
        cfg = merge_config({"smoothing": {
            "method": method, "factor": factor, "window_size": window_size,
            "max_movement": max_movement, "max_history": max_history,
            "max_consecutive_outliers": max_consecutive_outliers,
            "process_noise": process_noise, "cutoff_hz": cutoff_hz,
            "sample_rate_hz": sample_rate_hz,
        }})["smoothing"]
        self.config = cfg
        self.algorithm = make_algorithm(method, cfg)
        self.max_movement = float(max_movement)
        self.max_consecutive_outliers = max_consecutive_outliers
        self.arena = HistoryArena(max_history)

    @classmethod
    def from_config(cls, config: dict) -> "KeypointSmoother":
        """Build from a full config dict (or its ``smoothing`` section)."""
        section = config.get("smoothing", config)
        return cls(**section)

    def new_history(self) -> JointHistory:
        return JointHistory(self.arena.max_size)

    # ── per keypoint ──

    def smooth(self, keypoint: Keypoint,
               history: Optional[JointHistory] = None) -> SmoothedKeypoint:
        """Smooth one keypoint against its joint history.

        Never raises. When *history* is omitted the smoother's own arena
        entry for ``("default", keypoint.name)`` is used.
        """
        if history is None:
            history = self.arena.get("default", str(getattr(keypoint.name, "value", keypoint.name)))
        return self._smooth(keypoint, history)[0]

    def _smooth(self, keypoint: Keypoint, history: JointHistory):
        t = _timestamp(keypoint, history)

        if not _is_usable(keypoint):
            if not history.smoothed:
                logger.debug(f"Invalid {keypoint.name} with no history, emitting empty point")
                return self._emit(keypoint, np.zeros(3), 0.0, t, valid=False), "invalid"
            predicted = history.predict(t)
            if predicted is not None:
                history.push(predicted, 0.0, t)
                history.smoothed.append(predicted)
                logger.debug(f"Invalid {keypoint.name} at t={t}, using prediction")
                return self._emit(keypoint, predicted, 0.0, t, predicted=True), "invalid"
            # No velocity yet: hold the last output, keep the last accepted sample.
            held = np.array(history.smoothed[-1])
            history.push(np.array(history.positions[-1]), 0.0, t)
            history.smoothed.append(held)
            logger.debug(f"Invalid {keypoint.name} at t={t}, holding last output")
            return self._emit(keypoint, held, 0.0, t, predicted=True), "invalid"

        z = 0.0 if keypoint.z is None else float(keypoint.z)
        current = np.array([float(keypoint.x), float(keypoint.y), z])
        confidence = float(keypoint.score)

        if history.positions:
            jump = float(np.hypot(*(current[:2] - history.positions[-1][:2])))
            if jump > self.max_movement:
                if history.consecutive_outliers < self.max_consecutive_outliers:
                    predicted = history.predict(t)
                    if predicted is not None:
                        history.consecutive_outliers += 1
                        history.push(predicted, confidence, t)
                        history.smoothed.append(predicted)
                        logger.debug(
                            f"Outlier {keypoint.name} jump={jump:.1f} at t={t}, using prediction"
                        )
                        return (self._emit(keypoint, predicted, confidence, t, predicted=True),
                                "outlier")
                else:
                    logger.debug(f"Re-acquired {keypoint.name} after "
                                 f"{history.consecutive_outliers} rejected samples")
            history.consecutive_outliers = 0

        smoothed = np.asarray(self.algorithm.apply(history, current, confidence), dtype=float)
        history.push(current, confidence, t)
        history.smoothed.append(smoothed)
        return self._emit(keypoint, smoothed, confidence, t), "ok"

    @staticmethod
    def _emit(keypoint, pos, score, t, predicted=False, valid=True) -> SmoothedKeypoint:
        return SmoothedKeypoint(
            name=keypoint.name,
            x=float(pos[0]),
            y=float(pos[1]),
            score=float(score),
            timestamp=t,
            z=None if keypoint.z is None or not valid else float(pos[2]),
            predicted=predicted,
            valid=valid,
        )

    # ── per pose ──

    def smooth_pose(self, person_id: str,
                    pose) -> Tuple[List[SmoothedKeypoint], SmoothingStats]:
        """Smooth every keypoint of *pose* for *person_id*.

        Parameters
        ----------
        person_id : str
        pose : Pose or iterable of Keypoint

        Returns
        -------
        (list of SmoothedKeypoint, SmoothingStats)
        """
        keypoints = pose.keypoints if isinstance(pose, Pose) else tuple(pose)
        stats = SmoothingStats()
        out = []
        seen = set()
        for kp in keypoints:
            name = str(getattr(kp.name, "value", kp.name))
            if name in seen:
                continue
            seen.add(name)
            sk, outcome = self._smooth(kp, self.arena.get(person_id, name))
            stats.n_keypoints += 1
            if outcome == "invalid":
                stats.n_invalid += 1
            elif outcome == "outlier":
                stats.n_outliers += 1
            if sk.predicted:
                stats.n_predicted += 1
            out.append(sk)
        return out, stats

    def reset(self, person_id: Optional[str] = None) -> None:
        if person_id is None:
            self.arena.clear()
        else:
            self.arena.drop_person(person_id)


# ── Trajectories and scalar series ───────────────────────────────────

def smooth_trajectory(points: Sequence[TrajectoryPoint], method: str = "exponential",
                      **params) -> List[TrajectoryPoint]:
    """Smooth a trajectory with a fresh single-joint smoother.

    Lists shorter than two points are returned as a copy.
    """
    if len(points) < 2:
        return list(points)
    smoother = KeypointSmoother(method=method, **params)
    history = smoother.new_history()
    out = []
    for p in points:
        kp = Keypoint("trajectory", p.position.x, p.position.y, p.confidence,
                      p.timestamp, p.position.z)
        sk = smoother.smooth(kp, history)
        out.append(TrajectoryPoint(Point3D(sk.x, sk.y, sk.z or 0.0), p.timestamp, p.confidence))
    return out


def exponential_smooth_scalar(current: float, previous: float, factor: float) -> float:
    return factor * current + (1.0 - factor) * previous


def moving_average_scalar(values: Sequence[float], window_size: int) -> float:
    """Mean of the last *window_size* values; 0.0 for an empty sequence."""
    window = list(values)[-window_size:] if window_size > 0 else []
    if not window:
        return 0.0
    return float(np.mean(window))


def remove_outliers(values: Sequence[float], threshold: float = 2.0) -> List[float]:
    """Drop values further than *threshold* standard deviations from the mean."""
    values = list(values)
    if len(values) < 3:
        return values
    arr = np.asarray(values, dtype=float)
    mean, std = arr.mean(), arr.std()
    return [v for v in values if abs(v - mean) <= threshold * std]


def interpolate_values(values: Iterable[Optional[float]]) -> List[float]:
    """Fill ``None``/NaN gaps by linear interpolation, holding the edges.

    An all-missing sequence becomes zeros.
    """
    arr = np.array([np.nan if v is None else float(v) for v in values], dtype=float)
    if arr.size == 0:
        return []
    valid = np.isfinite(arr)
    if not valid.any():
        return [0.0] * arr.size
    idx = np.arange(arr.size)
    arr[~valid] = np.interp(idx[~valid], idx[valid], arr[valid])
    return arr.tolist()
