"""Joint definitions, body-model weights and gait-cycle constants."""

from enum import Enum

# ── COCO 17 keypoints ────────────────────────────────────────────────
# Lower-case names as produced by most browser/mobile pose models
# (MoveNet, BlazePose-lite, PoseNet).

COCO_KEYPOINT_NAMES = [
    "nose", "left_eye", "right_eye", "left_ear", "right_ear",
    "left_shoulder", "right_shoulder", "left_elbow", "right_elbow",
    "left_wrist", "right_wrist", "left_hip", "right_hip",
    "left_knee", "right_knee", "left_ankle", "right_ankle",
]


class JointName(str, Enum):
    """Named anatomical landmark. Compares equal to its string value."""

    NOSE = "nose"
    LEFT_EYE = "left_eye"
    RIGHT_EYE = "right_eye"
    LEFT_EAR = "left_ear"
    RIGHT_EAR = "right_ear"
    LEFT_SHOULDER = "left_shoulder"
    RIGHT_SHOULDER = "right_shoulder"
    LEFT_ELBOW = "left_elbow"
    RIGHT_ELBOW = "right_elbow"
    LEFT_WRIST = "left_wrist"
    RIGHT_WRIST = "right_wrist"
    LEFT_HIP = "left_hip"
    RIGHT_HIP = "right_hip"
    LEFT_KNEE = "left_knee"
    RIGHT_KNEE = "right_knee"
    LEFT_ANKLE = "left_ankle"
    RIGHT_ANKLE = "right_ankle"


GAIT_KEYPOINTS = [
    "left_shoulder", "right_shoulder",
    "left_hip", "right_hip",
    "left_knee", "right_knee",
    "left_ankle", "right_ankle",
]

FEET = ("left", "right")

# ── Center of mass ───────────────────────────────────────────────────
# Simplified segmental model: trunk top, pelvis and thighs.

COM_WEIGHTS = {
    "left_shoulder": 0.2,
    "right_shoulder": 0.2,
    "left_hip": 0.3,
    "right_hip": 0.3,
    "left_knee": 0.1,
    "right_knee": 0.1,
}

COM_MIN_CONFIDENCE = 0.3
ANKLE_MIN_CONFIDENCE = 0.5

# ── Body segments (proximal, distal, name) ───────────────────────────

BODY_SEGMENTS = [
    ("left_shoulder", "right_shoulder", "shoulder_width"),
    ("left_hip", "right_hip", "hip_width"),
    ("left_hip", "left_knee", "thigh_left"),
    ("right_hip", "right_knee", "thigh_right"),
    ("left_knee", "left_ankle", "shin_left"),
    ("right_knee", "right_ankle", "shin_right"),
    ("left_shoulder", "left_elbow", "upper_arm_left"),
    ("right_shoulder", "right_elbow", "upper_arm_right"),
    ("left_elbow", "left_wrist", "forearm_left"),
    ("right_elbow", "right_wrist", "forearm_right"),
]

# Average adult proportions used for auto-calibration (meters).
AVERAGE_SHOULDER_WIDTH_M = 0.45
AVERAGE_HIP_WIDTH_M = 0.35
AVERAGE_TORSO_HEIGHT_M = 0.6

DEFAULT_PIXELS_PER_METER = 100.0
NOMINAL_FRAME_INTERVAL_S = 1.0 / 30.0

# ── Gait cycle (Perry & Burnfield, % of stride) ──────────────────────
# Phase boundaries as fractions of the gait cycle, starting at
# initial contact.

PHASE_BOUNDARIES = [
    ("initial_contact", 0.00, 0.02),
    ("loading_response", 0.02, 0.12),
    ("mid_stance", 0.12, 0.31),
    ("terminal_stance", 0.31, 0.50),
    ("pre_swing", 0.50, 0.62),
    ("initial_swing", 0.62, 0.75),
    ("mid_swing", 0.75, 0.87),
    ("terminal_swing", 0.87, 1.00),
]
