"""Online gait-phase classification with an 8-state cyclic HMM.

Each leg of each person has its own :class:`GaitPhaseHMM`. On every
observation the belief over the eight Perry phases is propagated through
a left-to-right cyclic transition matrix (self-persistence or one step
forward, never a skip) and multiplied by a Gaussian emission likelihood
of the observed features:

    posterior(s) ∝ emission(obs | s) · Σ_prev belief(prev) · T(prev → s)

Probability mass therefore only ever moves forward through the cycle.
A single observation may shift the odds between two states by at most
``exp(MAX_LOG_RATIO)``, which keeps the belief a proper distribution for
any input and lets a wrong lock-in wash out within a few frames.

The reported phase is the arg-max of the posterior. Events fire when the
arg-max moves forward onto, or past, an event-triggering phase; a phase
that has fired is re-armed only once the arg-max has moved at least two
phases away from it, so jitter across a boundary yields a single event.

Emission means (:data:`PHASE_EMISSION_MEANS`) are expressed in the units
produced by :class:`~gaitstream.features.ObservationBuilder`, with one
spread per feature (:data:`FEATURE_SIGMAS`) shared by all states.

References
----------
Perry J, Burnfield JM. Gait Analysis: Normal and Pathological Function.
2nd ed. SLACK; 2010.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .constants import FEET, PHASE_BOUNDARIES
from .schema import GaitEvent, HMMFeatures, HMMObservation

logger = logging.getLogger(__name__)


class GaitPhase(str, Enum):
    INITIAL_CONTACT = "initial_contact"
    LOADING_RESPONSE = "loading_response"
    MID_STANCE = "mid_stance"
    TERMINAL_STANCE = "terminal_stance"
    PRE_SWING = "pre_swing"
    INITIAL_SWING = "initial_swing"
    MID_SWING = "mid_swing"
    TERMINAL_SWING = "terminal_swing"

    # Aliases
    HEEL_STRIKE = "initial_contact"
    MIDSTANCE = "mid_stance"
    MIDSWING = "mid_swing"

    @property
    def order(self) -> int:
        return PHASE_ORDER.index(self)

    def next(self) -> "GaitPhase":
        return PHASE_ORDER[(self.order + 1) % N_PHASES]

    @property
    def is_stance(self) -> bool:
        return self.order < 5


PHASE_ORDER: List[GaitPhase] = list(GaitPhase)
N_PHASES = len(PHASE_ORDER)

PHASE_CENTERS = {
    GaitPhase(name): (start + end) / 2.0 for name, start, end in PHASE_BOUNDARIES
}

EVENT_TYPES = ("heel_strike", "toe_off", "mid_stance", "mid_swing")

DEFAULT_EVENT_PHASES = {
    GaitPhase.INITIAL_CONTACT: "heel_strike",
    GaitPhase.PRE_SWING: "toe_off",
}

FEATURE_NAMES = ("ankle_velocity", "knee_flexion", "hip_flexion", "vertical_position")

# Per phase: ankle speed (leg lengths/s), knee flexion (deg),
# hip flexion (deg), ankle clearance (leg lengths).
PHASE_EMISSION_MEANS = {
    GaitPhase.INITIAL_CONTACT: (0.20, 5.0, 12.0, 0.0),
    GaitPhase.LOADING_RESPONSE: (0.10, 12.0, 8.0, 0.0),
    GaitPhase.MID_STANCE: (0.05, 8.0, 2.0, 0.0),
    GaitPhase.TERMINAL_STANCE: (0.05, 6.0, -4.0, 0.0),
    GaitPhase.PRE_SWING: (0.30, 20.0, -8.0, 0.015),
    GaitPhase.INITIAL_SWING: (1.00, 25.0, 0.0, 0.04),
    GaitPhase.MID_SWING: (1.00, 25.0, 10.0, 0.06),
    GaitPhase.TERMINAL_SWING: (0.80, 12.0, 12.0, 0.03),
}

FEATURE_SIGMAS = {
    "ankle_velocity": 0.3,
    "knee_flexion": 12.0,
    "hip_flexion": 8.0,
    "vertical_position": 0.03,
}

MAX_LOG_RATIO = 8.0


def canonical_features(cycle_fraction: float, confidence: float = 1.0) -> HMMFeatures:
    """Typical feature vector at *cycle_fraction* (0 = initial contact).

    Linear interpolation between the emission means placed at each
    phase's center, wrapping around the cycle.
    """
    x = cycle_fraction % 1.0
    centers = [PHASE_CENTERS[p] for p in PHASE_ORDER]
    means = [PHASE_EMISSION_MEANS[p] for p in PHASE_ORDER]
    xs = np.array([centers[-1] - 1.0] + centers + [centers[0] + 1.0])
    values = {}
    for k, name in enumerate(FEATURE_NAMES):
        ys = [means[-1][k]] + [m[k] for m in means] + [means[0][k]]
        values[name] = float(np.interp(x, xs, ys))
    return HMMFeatures(confidence=confidence, **values)


# ── Emission model ───────────────────────────────────────────────────

@dataclass(frozen=True)
class GaussianFeature:
    mu: float
    sigma: float
    weight: float = 1.0

    def log_prob(self, x: float) -> float:
        z = (x - self.mu) / max(self.sigma, 1e-10)
        return self.weight * (-0.5 * z * z)


@dataclass(frozen=True)
class EmissionModel:
    """Independent Gaussian per feature (unnormalized log-likelihood)."""

    ankle_velocity: GaussianFeature
    knee_flexion: GaussianFeature
    hip_flexion: GaussianFeature
    vertical_position: GaussianFeature

    def features(self) -> Tuple[GaussianFeature, ...]:
        return tuple(getattr(self, name) for name in FEATURE_NAMES)

    def log_likelihood(self, features: HMMFeatures) -> float:
        return sum(g.log_prob(x) for g, x in zip(self.features(), features.values()))


def default_emission(phase: GaitPhase) -> EmissionModel:
    means = PHASE_EMISSION_MEANS[GaitPhase(phase)]
    return EmissionModel(**{
        name: GaussianFeature(mu=mu, sigma=FEATURE_SIGMAS[name])
        for name, mu in zip(FEATURE_NAMES, means)
    })


# ── States and transitions ───────────────────────────────────────────

@dataclass(frozen=True)
class HMMState:
    phase: GaitPhase
    transitions: Mapping[GaitPhase, float]
    emission: EmissionModel


def build_transition_matrix(self_transition: float = 0.6) -> np.ndarray:
    """Cyclic left-to-right matrix: stay with *self_transition*, else advance one."""
    if not 0.0 <= self_transition < 1.0:
        raise ValueError(f"self_transition must be in [0, 1), got {self_transition}")
    matrix = np.zeros((N_PHASES, N_PHASES))
    for i in range(N_PHASES):
        matrix[i, i] = self_transition
        matrix[i, (i + 1) % N_PHASES] = 1.0 - self_transition
    return matrix


def validate_transition_matrix(matrix, tol: float = 1e-6) -> np.ndarray:
    """Check a transition matrix and return it as a float array.

    Raises
    ------
    ValueError
        If the matrix is not 8x8, has non-finite or negative entries,
        a row not summing to 1 within *tol*, or any probability mass on
        a transition other than self or the next phase.
    """
    m = np.asarray(matrix, dtype=float)
    if m.shape != (N_PHASES, N_PHASES):
        raise ValueError(f"Transition matrix must be {N_PHASES}x{N_PHASES}, got {m.shape}")
    if not np.all(np.isfinite(m)):
        raise ValueError("Transition matrix contains non-finite values")
    if np.any(m < 0):
        raise ValueError("Transition matrix contains negative probabilities")
    sums = m.sum(axis=1)
    bad = np.flatnonzero(np.abs(sums - 1.0) > tol)
    if bad.size:
        raise ValueError(
            f"Transition rows must sum to 1: row {PHASE_ORDER[bad[0]].value} sums to {sums[bad[0]]:.6f}"
        )
    allowed = np.eye(N_PHASES, dtype=bool) | np.roll(np.eye(N_PHASES, dtype=bool), 1, axis=1)
    if np.any(m[~allowed] > 0):
        i, j = np.argwhere((m > 0) & ~allowed)[0]
        raise ValueError(
            f"Transition {PHASE_ORDER[i].value} -> {PHASE_ORDER[j].value} skips a phase"
        )
    return m


def default_states(self_transition: float = 0.6) -> List[HMMState]:
    matrix = build_transition_matrix(self_transition)
    return [
        HMMState(
            phase=phase,
            transitions={PHASE_ORDER[j]: float(matrix[i, j]) for j in range(N_PHASES) if matrix[i, j] > 0},
            emission=default_emission(phase),
        )
        for i, phase in enumerate(PHASE_ORDER)
    ]


def _matrix_from_states(states: Sequence[HMMState]) -> np.ndarray:
    if len(states) != N_PHASES or [s.phase for s in states] != PHASE_ORDER:
        raise ValueError("States must list all eight phases in canonical order")
    matrix = np.zeros((N_PHASES, N_PHASES))
    for i, state in enumerate(states):
        for target, p in state.transitions.items():
            matrix[i, GaitPhase(target).order] = p
    return validate_transition_matrix(matrix)


def _parse_event_phases(event_phases) -> Dict[GaitPhase, str]:
    if event_phases is None:
        return dict(DEFAULT_EVENT_PHASES)
    parsed = {}
    for phase, event_type in dict(event_phases).items():
        try:
            phase = GaitPhase(phase)
        except ValueError:
            raise ValueError(f"Unknown gait phase in event_phases: {phase!r}")
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type {event_type!r}. Available: {EVENT_TYPES}")
        parsed[phase] = event_type
    return parsed


# ── Runtime ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PhaseEstimate:
    """Result of one HMM step.

    ``phase`` is the arg-max of the posterior and ``probability`` its
    posterior probability. ``events`` holds the events fired by this
    step, usually none or one. ``entered_at`` is the timestamp at which
    ``phase`` became the arg-max.
    """

    phase: GaitPhase
    probability: float
    belief: Tuple[float, ...]
    timestamp: int
    events: Tuple[GaitEvent, ...] = ()
    informative: bool = True
    entered_at: int = 0

    @property
    def event(self) -> Optional[GaitEvent]:
        return self.events[-1] if self.events else None


def _cyclic_distance(a: int, b: int) -> int:
    d = (a - b) % N_PHASES
    return min(d, N_PHASES - d)


class GaitPhaseHMM:
    """Forward-filter gait-phase tracker for one leg.

    Parameters
    ----------
    foot : str
        ``"left"`` or ``"right"``; copied into emitted events.
    states : list of HMMState, optional
        Custom states in canonical order. Defaults to
        :func:`default_states`.
    self_transition : float
        Self-persistence probability for the default states.
    event_phases : mapping, optional
        Phase (or phase name) to event type. Defaults to initial
        contact -> ``heel_strike`` and pre-swing -> ``toe_off``.

    Raises
    ------
    ValueError
        If the foot, transition matrix or event mapping is invalid.
    """

    def __init__(self, foot: str = "left", states: Optional[Sequence[HMMState]] = None,
                 self_transition: float = 0.6, event_phases=None):
        if foot not in FEET:
            raise ValueError(f"foot must be one of {FEET}, got {foot!r}")
        self.foot = foot
        self._states = tuple(states) if states is not None else tuple(default_states(self_transition))
        self._transitions = _matrix_from_states(self._states)
        self._event_phases = _parse_event_phases(event_phases)

        gaussians = [s.emission.features() for s in self._states]
        self._mu = np.array([[g.mu for g in row] for row in gaussians])
        self._inv_sigma = np.array([[1.0 / max(g.sigma, 1e-10) for g in row] for row in gaussians])
        self._weight = np.array([[g.weight for g in row] for row in gaussians])
        self.reset()

    @classmethod
    def from_config(cls, config: dict, foot: str = "left") -> "GaitPhaseHMM":
        section = config.get("hmm", config)
        return cls(foot=foot, self_transition=section.get("self_transition", 0.6),
                   event_phases=section.get("event_phases"))

    def reset(self) -> None:
        self._belief = np.full(N_PHASES, 1.0 / N_PHASES)
        self._phase: Optional[GaitPhase] = None
        self._armed = set(self._event_phases)
        self._last_timestamp = 0
        self._entered_at = 0

    @property
    def belief(self) -> Tuple[float, ...]:
        return tuple(float(p) for p in self._belief)

    @property
    def current_phase(self) -> Optional[GaitPhase]:
        return self._phase

    @property
    def transition_matrix(self) -> np.ndarray:
        return self._transitions.copy()

    def get_states(self) -> Tuple[HMMState, ...]:
        return self._states

    def _log_likelihood(self, observation) -> Optional[np.ndarray]:
        """Per-state log-likelihood, or ``None`` for an uninformative observation."""
        features = getattr(observation, "features", None)
        try:
            x = np.array([float(getattr(features, name)) for name in FEATURE_NAMES])
            confidence = float(getattr(features, "confidence"))
        except (AttributeError, TypeError, ValueError):
            return None
        if not (np.all(np.isfinite(x)) and math.isfinite(confidence)) or confidence <= 0:
            return None
        with np.errstate(over="ignore", invalid="ignore"):
            z = (x - self._mu) * self._inv_sigma
            ll = -0.5 * (self._weight * z * z).sum(axis=1) * min(confidence, 1.0)
        if not np.all(np.isfinite(ll)):
            return None
        return ll

    def _crossed(self, previous: int, best: int) -> List[int]:
        """Phases entered when the arg-max moves forward from *previous* to *best*."""
        ahead = (best - previous) % N_PHASES
        if ahead == 0 or ahead > N_PHASES // 2:
            return []
        return [(previous + k) % N_PHASES for k in range(1, ahead + 1)]

    def process_observation(self, observation: HMMObservation) -> PhaseEstimate:
        """Advance the filter by one observation. Never raises.

        Non-finite, missing or zero-confidence features leave the
        posterior equal to the propagated prior.
        """
        timestamp = getattr(observation, "timestamp", None)
        try:
            timestamp = int(timestamp)
        except (TypeError, ValueError, OverflowError):
            timestamp = self._last_timestamp
        self._last_timestamp = timestamp

        prior = self._belief @ self._transitions
        ll = self._log_likelihood(observation)
        if ll is None:
            logger.debug(f"Uninformative observation for {self.foot} foot at t={timestamp}")
            posterior = prior
        else:
            evidence = np.exp(np.maximum(ll - ll.max(), -MAX_LOG_RATIO))
            posterior = prior * evidence
        posterior = posterior / posterior.sum()
        self._belief = posterior

        best = int(np.argmax(posterior))
        phase = PHASE_ORDER[best]
        probability = float(posterior[best])
        previous = self._phase
        self._phase = phase
        if previous is not phase:
            self._entered_at = timestamp

        events = []
        if previous is not None:
            for i in self._crossed(previous.order, best):
                crossed = PHASE_ORDER[i]
                if crossed in self._armed:
                    self._armed.discard(crossed)
                    events.append(GaitEvent(
                        type=self._event_phases[crossed],
                        foot=self.foot,
                        timestamp=timestamp,
                        confidence=probability,
                        position=getattr(observation, "position", None),
                    ))
                    logger.debug(f"{events[-1].type} ({self.foot}) at t={timestamp} "
                                 f"p={probability:.2f}")
        for p in self._event_phases:
            if p not in self._armed and _cyclic_distance(p.order, best) >= 2:
                self._armed.add(p)

        return PhaseEstimate(
            phase=phase,
            probability=probability,
            belief=tuple(float(p) for p in posterior),
            timestamp=timestamp,
            events=tuple(events),
            informative=ll is not None,
            entered_at=self._entered_at,
        )
