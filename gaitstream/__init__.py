"""gaitstream -- Real-time gait analysis on streamed pose keypoints.

Quick start::

    from gaitstream import GaitPipeline
    pipeline = GaitPipeline()
    for pose in stream:                       # one Pose per camera frame
        result = pipeline.process_pose("p0", pose)
        for event in result.events:
            print(event.type, event.foot, event.timestamp)
    params = pipeline.gait_parameters("p0")
    if params.has_data:
        print(params.cadence, params.stride_length)

Individual stages::

    from gaitstream import KeypointSmoother, TrajectoryTracker, GaitPhaseHMM
    smoother = KeypointSmoother(method="savgol", window_size=5)
    smoothed, stats = smoother.smooth_pose("p0", pose)
    tracker = TrajectoryTracker(max_length=100)
    tracker.update("p0", smoothed)
    print(tracker.stride_length("p0", "left"))

Configuration::

    from gaitstream import load_config, GaitPipeline
    pipeline = GaitPipeline(load_config("gait.yaml"))

Tabular views::

    from gaitstream import trajectory_to_dataframe, events_to_dataframe
    df = trajectory_to_dataframe(pipeline.trajectory("p0"), person_id="p0")
"""

__version__ = "0.1.0"

from .schema import (
    Point3D,
    Keypoint,
    SmoothedKeypoint,
    Pose,
    TrajectoryPoint,
    GaitTrajectory,
    HMMFeatures,
    HMMObservation,
    GaitEvent,
    GaitParameters,
    FrameMetrics,
    to_dict,
)
from .constants import JointName, COCO_KEYPOINT_NAMES, GAIT_KEYPOINTS, COM_WEIGHTS
from .config import DEFAULT_CONFIG, load_config, save_config, merge_config, validate_config
from .geometry import (
    distance_2d,
    distance_3d,
    manhattan_distance,
    three_point_angle,
    joint_angles,
    BoundingBox,
    bounding_box,
    intersection_over_union,
    weighted_center_of_mass,
    body_measurements,
)
from .smoothing import (
    JointHistory,
    HistoryArena,
    KeypointSmoother,
    SmoothingStats,
    SMOOTHING_METHODS,
    list_smoothing_methods,
    make_algorithm,
    smooth_trajectory,
    interpolate_values,
    remove_outliers,
)
from .trajectory import TrajectoryTracker, find_heel_strikes
from .features import ObservationBuilder
from .hmm import (
    GaitPhase,
    GaitPhaseHMM,
    PhaseEstimate,
    HMMState,
    EmissionModel,
    GaussianFeature,
    build_transition_matrix,
    validate_transition_matrix,
    canonical_features,
    PHASE_EMISSION_MEANS,
)
from .analysis import Calibration, GaitMetricsAggregator, auto_calibrate, phase_summary
from .pipeline import GaitPipeline, FrameResult, PersonState
from .export import trajectory_to_dataframe, events_to_dataframe, parameters_to_dataframe

__all__ = [
    # Records
    "Point3D",
    "Keypoint",
    "SmoothedKeypoint",
    "Pose",
    "TrajectoryPoint",
    "GaitTrajectory",
    "HMMFeatures",
    "HMMObservation",
    "GaitEvent",
    "GaitParameters",
    "FrameMetrics",
    "to_dict",
    # Constants
    "JointName",
    "COCO_KEYPOINT_NAMES",
    "GAIT_KEYPOINTS",
    "COM_WEIGHTS",
    # Config
    "DEFAULT_CONFIG",
    "load_config",
    "save_config",
    "merge_config",
    "validate_config",
    # Geometry
    "distance_2d",
    "distance_3d",
    "manhattan_distance",
    "three_point_angle",
    "joint_angles",
    "BoundingBox",
    "bounding_box",
    "intersection_over_union",
    "weighted_center_of_mass",
    "body_measurements",
    # Smoothing
    "JointHistory",
    "HistoryArena",
    "KeypointSmoother",
    "SmoothingStats",
    "SMOOTHING_METHODS",
    "list_smoothing_methods",
    "make_algorithm",
    "smooth_trajectory",
    "interpolate_values",
    "remove_outliers",
    # Trajectories
    "TrajectoryTracker",
    "find_heel_strikes",
    # Phase estimation
    "ObservationBuilder",
    "GaitPhase",
    "GaitPhaseHMM",
    "PhaseEstimate",
    "HMMState",
    "EmissionModel",
    "GaussianFeature",
    "build_transition_matrix",
    "validate_transition_matrix",
    "canonical_features",
    "PHASE_EMISSION_MEANS",
    # Analysis
    "Calibration",
    "GaitMetricsAggregator",
    "auto_calibrate",
    "phase_summary",
    # Pipeline
    "GaitPipeline",
    "FrameResult",
    "PersonState",
    # Export
    "trajectory_to_dataframe",
    "events_to_dataframe",
    "parameters_to_dataframe",
]
