"""Pipeline configuration management.

Supports JSON and YAML config files for reproducible deployments.
Configuration is merged against ``DEFAULT_CONFIG`` so partial
overrides work seamlessly, then validated eagerly: a bad value is
rejected when the config is loaded, never inside the per-frame path.

Functions
---------
load_config
    Load pipeline config from a JSON or YAML file.
save_config
    Save pipeline config to a JSON or YAML file.
merge_config
    Merge a partial dict against the defaults and validate it.
validate_config
    Raise ``ValueError`` on any invalid setting.

Attributes
----------
DEFAULT_CONFIG : dict
    Default configuration values for all pipeline stages.
"""

import copy
import json
import logging
import math
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    "smoothing": {
        "method": "exponential",
        "factor": 0.7,
        "window_size": 5,
        "max_movement": 50.0,
        "max_history": 30,
        "max_consecutive_outliers": 3,
        "process_noise": 0.1,
        "cutoff_hz": 3.0,
        "sample_rate_hz": 30.0,
    },
    "trajectory": {
        "max_length": 100,
        "blend_factor": 0.7,
        "ankle_min_confidence": 0.5,
        "com_min_confidence": 0.3,
        "prominence": 0.1,
        "min_peak_distance": 20,
        "debounce": "index",
        "min_peak_interval_ms": 400,
        "ground_is_min": True,
    },
    "hmm": {
        "self_transition": 0.6,
        "event_phases": {
            "initial_contact": "heel_strike",
            "pre_swing": "toe_off",
        },
    },
    "features": {
        "velocity_window": 2,
        "ground_window": 60,
    },
    "analysis": {
        "pixels_per_meter": 100.0,
        "max_event_age_s": 30.0,
        "max_events": 200,
        "min_confidence": 0.5,
        "stride_time_range": [0.5, 3.0],
        "stance_time_range": [0.2, 1.5],
        "stride_length_range": [0.3, 2.0],
        "step_width_range": [0.05, 0.5],
    },
    "pipeline": {
        "max_person_age_ms": 5000,
        "auto_calibrate": True,
    },
}

SMOOTHING_METHOD_NAMES = ("exponential", "moving_average", "kalman", "butterworth", "savgol")


def load_config(path: Union[str, Path]) -> dict:
    """Load pipeline config from a JSON or YAML file.

    The loaded configuration is merged against ``DEFAULT_CONFIG``
    so partial overrides work correctly.

    Parameters
    ----------
    path : str or Path
        Path to config file (``.json`` or ``.yaml``/``.yml``).

    Returns
    -------
    dict
        Merged and validated configuration dictionary.

    Raises
    ------
    FileNotFoundError
        If the config file does not exist.
    ImportError
        If YAML is requested but ``pyyaml`` is not installed.
    ValueError
        If the file content is not a dict or a setting is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    suffix = path.suffix.lower()

    if suffix in (".yaml", ".yml"):
        try:
            import yaml
        except ImportError:
            raise ImportError("PyYAML required for YAML configs: pip install pyyaml")
        with open(path) as f:
            cfg = yaml.safe_load(f)
    else:
        with open(path) as f:
            cfg = json.load(f)

    if not isinstance(cfg, dict):
        raise ValueError("Config must be a dict")

    merged = merge_config(cfg)
    logger.info(f"Loaded config from {path}")
    return merged


def save_config(config: dict, path: Union[str, Path]) -> str:
    """Save pipeline config to a JSON or YAML file.

    Parameters
    ----------
    config : dict
        Configuration dictionary.
    path : str or Path
        Output file path (``.json`` or ``.yaml``/``.yml``).

    Returns
    -------
    str
        Path to the saved file.

    Raises
    ------
    ImportError
        If YAML is requested but ``pyyaml`` is not installed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()

    if suffix in (".yaml", ".yml"):
        try:
            import yaml
        except ImportError:
            raise ImportError("PyYAML required for YAML configs: pip install pyyaml")
        with open(path, "w") as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    else:
        with open(path, "w") as f:
            json.dump(config, f, indent=2, ensure_ascii=False)

    logger.info(f"Saved config to {path}")
    return str(path)


def merge_config(override: Optional[dict] = None) -> dict:
    """Return ``DEFAULT_CONFIG`` deep-merged with *override*, validated."""
    merged = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), override or {})
    validate_config(merged)
    return merged


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


# ── Validation ───────────────────────────────────────────────────────

def _require_number(section: str, key: str, value, low=None, high=None,
                    low_inclusive=True, high_inclusive=True):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"{section}.{key} must be a finite number, got {value!r}")
    if low is not None:
        if (value < low) if low_inclusive else (value <= low):
            raise ValueError(f"{section}.{key} out of range: {value}")
    if high is not None:
        if (value > high) if high_inclusive else (value >= high):
            raise ValueError(f"{section}.{key} out of range: {value}")


def _require_range(section: str, key: str, value):
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError(f"{section}.{key} must be a [min, max] pair, got {value!r}")
    lo, hi = value
    _require_number(section, key, lo, low=0)
    _require_number(section, key, hi, low=0)
    if lo >= hi:
        raise ValueError(f"{section}.{key} must satisfy min < max, got {value!r}")


def validate_config(config: dict) -> None:
    """Validate a merged configuration.

    Raises
    ------
    ValueError
        If any known setting has an invalid type or value.
    """
    if not isinstance(config, dict):
        raise ValueError("Config must be a dict")

    s = config.get("smoothing", {})
    if s.get("method") not in SMOOTHING_METHOD_NAMES:
        raise ValueError(
            f"smoothing.method must be one of {SMOOTHING_METHOD_NAMES}, got {s.get('method')!r}"
        )
    _require_number("smoothing", "factor", s["factor"], low=0, high=1, low_inclusive=False)
    _require_number("smoothing", "max_movement", s["max_movement"], low=0, low_inclusive=False)
    _require_number("smoothing", "process_noise", s["process_noise"], low=0, low_inclusive=False)
    _require_number("smoothing", "sample_rate_hz", s["sample_rate_hz"], low=0, low_inclusive=False)
    _require_number("smoothing", "cutoff_hz", s["cutoff_hz"], low=0,
                    high=s["sample_rate_hz"] / 2, low_inclusive=False, high_inclusive=False)
    for key in ("window_size", "max_history", "max_consecutive_outliers"):
        if not isinstance(s[key], int) or isinstance(s[key], bool) or s[key] < 1:
            raise ValueError(f"smoothing.{key} must be a positive integer, got {s[key]!r}")
    if s["window_size"] > s["max_history"]:
        raise ValueError("smoothing.window_size cannot exceed smoothing.max_history")

    t = config.get("trajectory", {})
    if not isinstance(t["max_length"], int) or t["max_length"] < 1:
        raise ValueError(f"trajectory.max_length must be a positive integer, got {t['max_length']!r}")
    _require_number("trajectory", "blend_factor", t["blend_factor"], low=0, high=1, high_inclusive=False)
    _require_number("trajectory", "ankle_min_confidence", t["ankle_min_confidence"], low=0, high=1)
    _require_number("trajectory", "com_min_confidence", t["com_min_confidence"], low=0, high=1)
    _require_number("trajectory", "prominence", t["prominence"], low=0)
    _require_number("trajectory", "min_peak_interval_ms", t["min_peak_interval_ms"], low=0)
    if not isinstance(t["min_peak_distance"], int) or t["min_peak_distance"] < 1:
        raise ValueError("trajectory.min_peak_distance must be a positive integer")
    if t["debounce"] not in ("index", "time"):
        raise ValueError(f"trajectory.debounce must be 'index' or 'time', got {t['debounce']!r}")

    h = config.get("hmm", {})
    _require_number("hmm", "self_transition", h["self_transition"], low=0, high=1,
                    high_inclusive=False)
    if not isinstance(h.get("event_phases"), dict):
        raise ValueError("hmm.event_phases must be a mapping of phase -> event type")

    fe = config.get("features", {})
    for key in ("velocity_window", "ground_window"):
        if not isinstance(fe[key], int) or fe[key] < 1:
            raise ValueError(f"features.{key} must be a positive integer, got {fe[key]!r}")

    a = config.get("analysis", {})
    _require_number("analysis", "pixels_per_meter", a["pixels_per_meter"], low=0, low_inclusive=False)
    _require_number("analysis", "max_event_age_s", a["max_event_age_s"], low=0, low_inclusive=False)
    _require_number("analysis", "min_confidence", a["min_confidence"], low=0, high=1)
    if not isinstance(a["max_events"], int) or a["max_events"] < 1:
        raise ValueError("analysis.max_events must be a positive integer")
    for key in ("stride_time_range", "stance_time_range", "stride_length_range", "step_width_range"):
        _require_range("analysis", key, a[key])

    p = config.get("pipeline", {})
    _require_number("pipeline", "max_person_age_ms", p["max_person_age_ms"], low=0, low_inclusive=False)
    if not isinstance(p["auto_calibrate"], bool):
        raise ValueError("pipeline.auto_calibrate must be a boolean")
