"""Tabular views of pipeline outputs for analysis collaborators.

Converts trajectories, gait events and parameter snapshots to pandas
DataFrames. No file format is written here.
"""

import logging
from typing import Iterable, Mapping, Union

import pandas as pd

from .schema import GaitEvent, GaitParameters, GaitTrajectory, to_dict

logger = logging.getLogger(__name__)

TRAJECTORY_COLUMNS = ["person_id", "part", "timestamp", "x", "y", "z", "confidence"]
EVENT_COLUMNS = ["timestamp", "type", "foot", "confidence", "x", "y", "z"]


def trajectory_to_dataframe(trajectory: Union[GaitTrajectory, Mapping[str, GaitTrajectory]],
                            person_id: str = "") -> pd.DataFrame:
    """Long-format table of a trajectory (or ``{person_id: trajectory}``).

    One row per point with columns ``person_id``, ``part``
    (``left_foot``/``right_foot``/``center_of_mass``), ``timestamp``,
    ``x``, ``y``, ``z`` and ``confidence``, sorted by person, part and time.
    """
    if isinstance(trajectory, Mapping):
        frames = [trajectory_to_dataframe(t, pid) for pid, t in trajectory.items()]
        frames = [f for f in frames if not f.empty]
        if not frames:
            return pd.DataFrame(columns=TRAJECTORY_COLUMNS)
        return pd.concat(frames, ignore_index=True)

    rows = []
    for part in ("left_foot", "right_foot", "center_of_mass"):
        for p in getattr(trajectory, part):
            rows.append({
                "person_id": person_id,
                "part": part,
                "timestamp": p.timestamp,
                "x": p.position.x,
                "y": p.position.y,
                "z": p.position.z,
                "confidence": p.confidence,
            })
    if not rows:
        return pd.DataFrame(columns=TRAJECTORY_COLUMNS)
    df = pd.DataFrame(rows, columns=TRAJECTORY_COLUMNS)
    return df.sort_values(["person_id", "part", "timestamp"], kind="stable").reset_index(drop=True)


def events_to_dataframe(events: Iterable[GaitEvent]) -> pd.DataFrame:
    """Chronological table of gait events."""
    rows = []
    for ev in events:
        pos = ev.position
        rows.append({
            "timestamp": ev.timestamp,
            "type": ev.type,
            "foot": ev.foot,
            "confidence": ev.confidence,
            "x": pos.x if pos is not None else float("nan"),
            "y": pos.y if pos is not None else float("nan"),
            "z": pos.z if pos is not None else float("nan"),
        })
    if not rows:
        return pd.DataFrame(columns=EVENT_COLUMNS)
    df = pd.DataFrame(rows, columns=EVENT_COLUMNS)
    return df.sort_values("timestamp", kind="stable").reset_index(drop=True)


def parameters_to_dataframe(parameters: Mapping[str, GaitParameters]) -> pd.DataFrame:
    """One row per person id with every :class:`GaitParameters` field."""
    rows = [dict(person_id=pid, **to_dict(p)) for pid, p in parameters.items()]
    if not rows:
        return pd.DataFrame(columns=["person_id"] + list(GaitParameters.__dataclass_fields__))
    return pd.DataFrame(rows)
