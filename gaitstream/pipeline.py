"""Frame-by-frame gait pipeline over any number of tracked persons.

:class:`GaitPipeline` wires the stages together for one pose frame at a
time::

    pose -> KeypointSmoother -> TrajectoryTracker
                             -> ObservationBuilder -> GaitPhaseHMM (per leg)
                                                   -> GaitMetricsAggregator

Each person id maps to an isolated :class:`PersonState`; the smoother
arena and the trajectory tracker key all of their state by person id.
Frames of one person must arrive in non-decreasing timestamp order;
different persons may be processed from different threads.

Example::

    from gaitstream import GaitPipeline
    pipeline = GaitPipeline()
    for pose in stream:
        result = pipeline.process_pose("p0", pose)
        for event in result.events:
            print(event.type, event.foot, event.timestamp)
    params = pipeline.gait_parameters("p0")
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .analysis import GaitMetricsAggregator
from .config import merge_config
from .constants import FEET
from .features import ObservationBuilder
from .geometry import finite_float, finite_int
from .hmm import GaitPhaseHMM, PhaseEstimate
from .schema import FrameMetrics, GaitEvent, GaitParameters, GaitTrajectory, Pose, SmoothedKeypoint
from .smoothing import KeypointSmoother
from .trajectory import TrajectoryTracker

logger = logging.getLogger(__name__)


@dataclass
class PersonState:
    """Everything the pipeline keeps for one person except shared-keyed maps."""

    person_id: str
    builders: Dict[str, ObservationBuilder]
    hmms: Dict[str, GaitPhaseHMM]
    aggregator: GaitMetricsAggregator
    last_timestamp: int = 0
    calibrated: bool = False
    estimates: Dict[str, PhaseEstimate] = field(default_factory=dict)


@dataclass(frozen=True)
class FrameResult:
    person_id: str
    smoothed: List[SmoothedKeypoint]
    estimates: Dict[str, PhaseEstimate]
    events: List[GaitEvent] = field(default_factory=list)
    metrics: Optional[FrameMetrics] = None


class GaitPipeline:
    """Run smoothing, tracking, phase estimation and aggregation per frame.

    Parameters
    ----------
    config : dict, optional
        Partial configuration merged against ``DEFAULT_CONFIG``.

    Raises
    ------
    ValueError
        If the configuration is invalid.
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = merge_config(config)
        self.smoother = KeypointSmoother.from_config(self.config)
        self.tracker = TrajectoryTracker.from_config(self.config)
        # Fail at construction, not on the first frame of a new person.
        self._new_state("__check__")
        self._persons: Dict[str, PersonState] = {}
        self._lock = threading.Lock()

    def _new_state(self, person_id: str) -> PersonState:
        return PersonState(
            person_id=person_id,
            builders={f: ObservationBuilder.from_config(self.config, f) for f in FEET},
            hmms={f: GaitPhaseHMM.from_config(self.config, f) for f in FEET},
            aggregator=GaitMetricsAggregator.from_config(self.config),
        )

    def _state(self, person_id: str) -> PersonState:
        state = self._persons.get(person_id)
        if state is None:
            with self._lock:
                state = self._persons.get(person_id)
                if state is None:
                    state = self._new_state(person_id)
                    self._persons[person_id] = state
                    logger.info(f"Tracking new person {person_id}")
        return state

    @property
    def persons(self) -> List[str]:
        return list(self._persons)

    def process_pose(self, person_id: str, pose) -> FrameResult:
        """Process one pose frame of *person_id*.

        Parameters
        ----------
        person_id : str
        pose : Pose or iterable of Keypoint

        Returns
        -------
        FrameResult
            Smoothed keypoints, per-leg phase estimates, gait events
            emitted by this frame and the call's :class:`FrameMetrics`.
        """
        start = time.perf_counter()
        state = self._state(person_id)
        keypoints = pose.keypoints if isinstance(pose, Pose) else tuple(pose)
        timestamp = finite_int(getattr(pose, "timestamp", None))
        if not timestamp:
            stamps = [finite_int(kp.timestamp) for kp in keypoints]
            stamps = [t for t in stamps if t is not None]
            timestamp = max(stamps) if stamps else state.last_timestamp
        score = finite_float(getattr(pose, "score", 1.0))
        pose = Pose(keypoints, 1.0 if score is None else score, timestamp)

        smoothed, stats = self.smoother.smooth_pose(person_id, pose)
        frame = Pose(smoothed, pose.score, pose.timestamp)
        self.tracker.update(person_id, frame)

        if self.config["pipeline"]["auto_calibrate"] and not state.calibrated:
            state.calibrated = state.aggregator.auto_calibrate(frame) is not None

        estimates = {}
        events = []
        for foot in FEET:
            observation = state.builders[foot].build(frame, pose.timestamp or None)
            estimate = state.hmms[foot].process_observation(observation)
            estimates[foot] = estimate
            for event in estimate.events:
                events.append(event)
                state.aggregator.record_event(event)

        state.estimates = estimates
        state.last_timestamp = max(state.last_timestamp, int(pose.timestamp))
        metrics = FrameMetrics(
            person_id=person_id,
            timestamp=int(pose.timestamp),
            processing_ms=(time.perf_counter() - start) * 1000.0,
            n_keypoints=stats.n_keypoints,
            n_invalid=stats.n_invalid,
            n_outliers=stats.n_outliers,
            n_predicted=stats.n_predicted,
        )
        return FrameResult(person_id, smoothed, estimates, events, metrics)

    # ── downstream views ──

    def gait_parameters(self, person_id: str) -> GaitParameters:
        """Snapshot for *person_id*; ``GaitParameters.empty()`` if unknown."""
        state = self._persons.get(person_id)
        if state is None:
            return GaitParameters.empty()
        return state.aggregator.compute(self.tracker, person_id, phases=state.estimates)

    def trajectory(self, person_id: str) -> Optional[GaitTrajectory]:
        return self.tracker.get_trajectory(person_id)

    def events(self, person_id: str, since_ms: Optional[float] = None) -> List[GaitEvent]:
        state = self._persons.get(person_id)
        return state.aggregator.events(since_ms=since_ms) if state is not None else []

    def current_phases(self, person_id: str) -> Dict[str, Optional[str]]:
        state = self._persons.get(person_id)
        if state is None:
            return {f: None for f in FEET}
        return {f: (h.current_phase.value if h.current_phase else None) for f, h in state.hmms.items()}

    # ── lifecycle ──

    def drop_person(self, person_id: str) -> bool:
        with self._lock:
            state = self._persons.pop(person_id, None)
        self.smoother.reset(person_id)
        self.tracker.clear(person_id)
        if state is not None:
            logger.info(f"Dropped person {person_id}")
        return state is not None

    def prune(self, now_ms: int) -> List[str]:
        """Drop persons with no frame within ``pipeline.max_person_age_ms``."""
        max_age = self.config["pipeline"]["max_person_age_ms"]
        lost = [pid for pid, s in list(self._persons.items()) if now_ms - s.last_timestamp > max_age]
        for pid in lost:
            self.drop_person(pid)
        return lost

    def reset(self) -> None:
        with self._lock:
            self._persons.clear()
        self.smoother.reset()
        self.tracker.clear()
