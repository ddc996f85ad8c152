"""Gait parameter aggregation from HMM events and trajectories.

:class:`GaitMetricsAggregator` keeps a bounded log of gait events for one
person and, on demand, combines it with the person's trajectories from a
:class:`~gaitstream.trajectory.TrajectoryTracker` into an immutable
:class:`~gaitstream.schema.GaitParameters` snapshot.

Temporal parameters come from event timing, spatial parameters from the
trajectories converted to meters with a :class:`Calibration`. Values
outside physiologically plausible ranges are discarded rather than
averaged in.

Functions
---------
auto_calibrate
    Estimate pixels-per-meter from shoulder/hip width and torso height.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, List, Optional

import numpy as np

from .config import merge_config
from .constants import (
    AVERAGE_HIP_WIDTH_M,
    AVERAGE_SHOULDER_WIDTH_M,
    AVERAGE_TORSO_HEIGHT_M,
    DEFAULT_PIXELS_PER_METER,
    FEET,
    PHASE_BOUNDARIES,
)
from .geometry import as_keypoint_map, is_finite_point
from .schema import GaitEvent, GaitParameters

logger = logging.getLogger(__name__)


def _symmetry_index(left: float, right: float) -> float:
    """SI = |L - R| / (0.5 * (L + R)) * 100. Returns 0 if both are 0."""
    denom = 0.5 * (left + right)
    if denom == 0:
        return 0.0
    return abs(left - right) / denom * 100


def _cv(values: list) -> float:
    """Coefficient of variation (%)."""
    if len(values) < 2:
        return 0.0
    m = np.mean(values)
    if m == 0:
        return 0.0
    return float(np.std(values, ddof=1) / m * 100)


def _mean(values: list) -> float:
    return float(np.mean(values)) if values else 0.0


def _in_range(value: float, bounds) -> bool:
    return bounds[0] <= value <= bounds[1]


PHASE_WIDTHS = {name: end - start for name, start, end in PHASE_BOUNDARIES}

# Stride time assumed for phase progress before any stride is measured
NOMINAL_STRIDE_TIME_S = 1.0


def phase_summary(phases, stride_time: float = 0.0) -> dict:
    """Current phase, progress and confidence per leg.

    Parameters
    ----------
    phases : mapping
        Foot to its latest :class:`~gaitstream.hmm.PhaseEstimate`;
        missing feet are reported as unknown.
    stride_time : float
        Measured stride time in seconds; progress is the time spent in
        the phase over its share of the stride.

    Returns
    -------
    dict
        ``left_phase``, ``right_phase``, ``left_phase_progress``,
        ``right_phase_progress`` and ``phase_confidence``.
    """
    stride_time = stride_time if stride_time > 0 else NOMINAL_STRIDE_TIME_S
    summary = {}
    probabilities = []
    for foot in FEET:
        estimate = (phases or {}).get(foot)
        phase = getattr(estimate, "phase", None)
        if phase is None:
            summary[f"{foot}_phase"] = ""
            summary[f"{foot}_phase_progress"] = 0.0
            probabilities.append(0.0)
            continue
        name = getattr(phase, "value", phase)
        elapsed = max(0, estimate.timestamp - estimate.entered_at) / 1000.0
        progress = min(elapsed / (PHASE_WIDTHS[name] * stride_time), 1.0)
        summary[f"{foot}_phase"] = name
        summary[f"{foot}_phase_progress"] = round(progress, 4)
        probabilities.append(float(estimate.probability))
    summary["phase_confidence"] = round(min(probabilities), 4)
    return summary


# ── Calibration ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class Calibration:
    pixels_per_meter: float = DEFAULT_PIXELS_PER_METER
    source: str = "default"

    def __post_init__(self):
        if not self.pixels_per_meter > 0:
            raise ValueError(f"pixels_per_meter must be > 0, got {self.pixels_per_meter}")


def auto_calibrate(pose, min_confidence: float = 0.6) -> Optional[Calibration]:
    """Estimate image scale from average adult body proportions.

    Uses shoulder width (0.45 m), hip width (0.35 m) and torso height
    (0.6 m); references shorter than one pixel (e.g. overlapping
    shoulders in a side view) are skipped.

    Parameters
    ----------
    pose : Pose, mapping or iterable of Keypoint
    min_confidence : float
        Minimum score of both shoulders and both hips.

    Returns
    -------
    Calibration or None
        ``None`` when a required joint is missing or below confidence.
    """
    kp_map = as_keypoint_map(pose)
    names = ("left_shoulder", "right_shoulder", "left_hip", "right_hip")
    joints = [kp_map.get(n) for n in names]
    if any(j is None or not is_finite_point(j) or j.score < min_confidence for j in joints):
        return None
    ls, rs, lh, rh = joints

    shoulder_width = abs(rs.x - ls.x)
    hip_width = abs(rh.x - lh.x)
    torso_height = abs((ls.y + rs.y) / 2 - (lh.y + rh.y) / 2)

    estimates = [
        px / meters
        for px, meters in ((shoulder_width, AVERAGE_SHOULDER_WIDTH_M),
                           (hip_width, AVERAGE_HIP_WIDTH_M),
                           (torso_height, AVERAGE_TORSO_HEIGHT_M))
        if px >= 1.0
    ]
    if not estimates:
        return None
    ppm = float(np.mean(estimates))
    logger.info(f"Auto-calibrated {ppm:.1f} px/m from {len(estimates)} references")
    return Calibration(pixels_per_meter=ppm, source="auto")


# ── Aggregator ───────────────────────────────────────────────────────

class GaitMetricsAggregator:
    """Combine gait events and trajectories into gait parameters.

    Parameters
    ----------
    pixels_per_meter : float
        Initial image scale.
    max_event_age_s : float
        Events older than this (relative to the newest) are dropped.
    max_events : int
        Hard cap on the event log.
    min_confidence : float
        Below this overall confidence the snapshot is flagged
        ``"low_confidence"``.
    stride_time_range, stance_time_range, stride_length_range, step_width_range
        Plausible ``[min, max]`` bounds (seconds / meters).

    Raises
    ------
    ValueError
        If any setting is invalid.
    """

    def __init__(self, pixels_per_meter: float = 100.0, max_event_age_s: float = 30.0,
                 max_events: int = 200, min_confidence: float = 0.5,
                 stride_time_range=(0.5, 3.0), stance_time_range=(0.2, 1.5),
                 stride_length_range=(0.3, 2.0), step_width_range=(0.05, 0.5)):
        cfg = merge_config({"analysis": {
            "pixels_per_meter": pixels_per_meter, "max_event_age_s": max_event_age_s,
            "max_events": max_events, "min_confidence": min_confidence,
            "stride_time_range": list(stride_time_range),
            "stance_time_range": list(stance_time_range),
            "stride_length_range": list(stride_length_range),
            "step_width_range": list(step_width_range),
        }})["analysis"]
        self.config = cfg
        self.calibration = Calibration(float(pixels_per_meter))
        self._events = deque(maxlen=max_events)

    @classmethod
    def from_config(cls, config: dict) -> "GaitMetricsAggregator":
        return cls(**config.get("analysis", config))

    # ── calibration ──

    def calibrate(self, calibration) -> Calibration:
        """Set the image scale from a :class:`Calibration` or a px/m value."""
        if not isinstance(calibration, Calibration):
            calibration = Calibration(float(calibration), source="manual")
        self.calibration = calibration
        return calibration

    def auto_calibrate(self, pose, min_confidence: float = 0.6) -> Optional[Calibration]:
        """Calibrate from body proportions; keeps the current scale on failure."""
        calibration = auto_calibrate(pose, min_confidence)
        if calibration is not None:
            self.calibration = calibration
        return calibration

    # ── events ──

    def record_event(self, event: GaitEvent) -> None:
        self._events.append(event)
        horizon = event.timestamp - self.config["max_event_age_s"] * 1000.0
        while self._events and self._events[0].timestamp < horizon:
            self._events.popleft()

    def record_events(self, events: Iterable[GaitEvent]) -> None:
        for event in sorted(events, key=lambda e: e.timestamp):
            self.record_event(event)

    def events(self, foot: Optional[str] = None, type: Optional[str] = None,
               since_ms: Optional[float] = None) -> List[GaitEvent]:
        """Logged events in chronological order, optionally filtered.

        ``since_ms`` keeps only events strictly newer than that timestamp.
        """
        out = sorted(self._events, key=lambda e: e.timestamp)
        if foot is not None:
            out = [e for e in out if e.foot == foot]
        if type is not None:
            out = [e for e in out if e.type == type]
        if since_ms is not None:
            out = [e for e in out if e.timestamp > since_ms]
        return out

    def recent_events(self, window_ms: float = 5000.0) -> List[GaitEvent]:
        """Events within *window_ms* of the newest logged event."""
        if not self._events:
            return []
        newest = max(e.timestamp for e in self._events)
        return self.events(since_ms=newest - window_ms)

    def reset(self) -> None:
        self._events.clear()

    # ── temporal ──

    def _stride_times(self, foot: str) -> List[float]:
        strikes = self.events(foot, "heel_strike")
        intervals = [(b.timestamp - a.timestamp) / 1000.0 for a, b in zip(strikes[:-1], strikes[1:])]
        return [t for t in intervals if _in_range(t, self.config["stride_time_range"])]

    def _step_times(self) -> List[float]:
        strikes = self.events(type="heel_strike")
        lo, hi = self.config["stride_time_range"]
        return [
            (b.timestamp - a.timestamp) / 1000.0
            for a, b in zip(strikes[:-1], strikes[1:])
            if a.foot != b.foot and lo / 2 <= (b.timestamp - a.timestamp) / 1000.0 <= hi / 2
        ]

    def _stance_times(self, foot: str) -> List[float]:
        """Heel strike to the following toe off of the same foot."""
        events = self.events(foot)
        out = []
        for i, event in enumerate(events):
            if event.type != "heel_strike":
                continue
            for later in events[i + 1:]:
                if later.type == "heel_strike":
                    break
                if later.type == "toe_off":
                    t = (later.timestamp - event.timestamp) / 1000.0
                    if _in_range(t, self.config["stance_time_range"]):
                        out.append(t)
                    break
        return out

    # ── spatial ──

    def _heel_strike_distances(self, foot: str) -> List[float]:
        """Meters between successive heel strikes of *foot*, within the stride range."""
        strikes = [e for e in self.events(foot, "heel_strike") if e.position is not None]
        ppm = self.calibration.pixels_per_meter
        out = []
        for a, b in zip(strikes[:-1], strikes[1:]):
            d = float(np.hypot(b.position.x - a.position.x, b.position.y - a.position.y)) / ppm
            if np.isfinite(d) and _in_range(d, self.config["stride_length_range"]):
                out.append(d)
        return out

    # ── snapshot ──

    def compute(self, tracker=None, person_id: Optional[str] = None,
                phases=None) -> GaitParameters:
        """Current gait parameters.

        Parameters
        ----------
        tracker : TrajectoryTracker, optional
            Source of spatial measures for *person_id*.
        person_id : str, optional
        phases : mapping, optional
            Foot to its latest :class:`~gaitstream.hmm.PhaseEstimate`, for
            the current-phase fields (see :func:`phase_summary`).

        Returns
        -------
        GaitParameters
            Status ``"no_data"``, with only the phase fields filled, until
            two heel strikes have been logged.
        """
        heel_strikes = self.events(type="heel_strike")
        if len(heel_strikes) < 2:
            return GaitParameters(n_heel_strikes=len(heel_strikes), **phase_summary(phases))

        cfg = self.config
        ppm = self.calibration.pixels_per_meter

        stride_by_foot = {f: _mean(self._stride_times(f)) for f in FEET}
        all_strides = [t for f in FEET for t in self._stride_times(f)]
        stride_time = _mean(all_strides)
        step_times = self._step_times()
        step_time = _mean(step_times)
        if step_time > 0:
            cadence = 60.0 / step_time
        elif stride_time > 0:
            cadence = 120.0 / stride_time
        else:
            cadence = 0.0

        stance_by_foot = {f: _mean(self._stance_times(f)) for f in FEET}
        stances = [v for v in stance_by_foot.values() if v > 0]
        stance_time = _mean(stances)
        swing_time = stride_time - stance_time if stride_time > stance_time > 0 else 0.0
        if stride_time > 0 and stances:
            total_stance = sum(stances) if len(stances) == 2 else 2 * stances[0]
            double_support = max(0.0, total_stance - stride_time)
        else:
            double_support = 0.0

        stride_length = step_length = step_width = 0.0
        length_by_foot = {f: 0.0 for f in FEET}
        ankle_confidence = 0.0
        if tracker is not None and person_id is not None:
            for f in FEET:
                length = tracker.stride_length(person_id, f) / ppm
                if _in_range(length, cfg["stride_length_range"]):
                    length_by_foot[f] = length
            stride_length = _mean([v for v in length_by_foot.values() if v > 0])
            step = tracker.step_length(person_id) / ppm
            if 0 < step <= cfg["stride_length_range"][1]:
                step_length = step
            step_width = tracker.step_width(person_id, scale=ppm,
                                            valid_range=cfg["step_width_range"])
            ankle_confidence = tracker.mean_ankle_confidence(person_id)
        else:
            ankle_confidence = _mean([e.confidence for e in self._events])

        # strides per minute = cadence / 2
        velocity = stride_length * cadence / 120.0

        if length_by_foot["left"] > 0 and length_by_foot["right"] > 0:
            symmetry = _symmetry_index(length_by_foot["left"], length_by_foot["right"])
        elif stride_by_foot["left"] > 0 and stride_by_foot["right"] > 0:
            symmetry = _symmetry_index(stride_by_foot["left"], stride_by_foot["right"])
        else:
            symmetry = 0.0

        confidence = ankle_confidence * min(len(self._events) / 10.0, 1.0)
        status = "ok" if confidence >= cfg["min_confidence"] else "low_confidence"

        return GaitParameters(
            cadence=round(cadence, 2),
            stride_time=round(stride_time, 4),
            step_time=round(step_time, 4),
            stance_time=round(stance_time, 4),
            swing_time=round(swing_time, 4),
            double_support=round(double_support, 4),
            stride_length=round(stride_length, 4),
            step_length=round(step_length, 4),
            left_step_length=round(_mean(self._heel_strike_distances("left")), 4),
            right_step_length=round(_mean(self._heel_strike_distances("right")), 4),
            step_width=round(step_width, 4),
            foot_angle=0.0,
            velocity=round(velocity, 4),
            symmetry_index=round(symmetry, 2),
            variability_index=round(_cv(all_strides), 2),
            **phase_summary(phases, stride_time),
            confidence=round(float(confidence), 4),
            n_heel_strikes=len(heel_strikes),
            status=status,
        )
