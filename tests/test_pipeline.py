"""End-to-end tests for the per-frame gait pipeline."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from gaitstream import GaitPipeline
from gaitstream.hmm import N_PHASES, GaitPhase
from gaitstream.schema import GaitParameters, Pose

from conftest import make_keypoint, make_pose, make_walking_poses


class TestProcessPose:

    def test_frame_result(self, standing_pose):
        pipeline = GaitPipeline()
        result = pipeline.process_pose("p0", standing_pose)
        assert result.person_id == "p0"
        assert len(result.smoothed) == len(standing_pose.keypoints)
        assert set(result.estimates) == {"left", "right"}
        assert result.events == []
        assert result.metrics.timestamp == 1000
        assert result.metrics.n_keypoints == len(standing_pose.keypoints)
        assert result.metrics.processing_ms >= 0.0

    def test_walking_sequence(self, walking_poses):
        pipeline = GaitPipeline()
        for pose in walking_poses:
            result = pipeline.process_pose("p0", pose)
            for estimate in result.estimates.values():
                belief = np.asarray(estimate.belief)
                assert len(belief) == N_PHASES
                assert belief.sum() == pytest.approx(1.0, abs=1e-6)
            for event in result.events:
                assert 0.0 < event.confidence <= 1.0
        traj = pipeline.trajectory("p0")
        assert len(traj.left_foot) == 90
        assert len(traj.center_of_mass) == 90
        assert isinstance(pipeline.gait_parameters("p0"), GaitParameters)
        phases = pipeline.current_phases("p0")
        assert phases["left"] is not None

    def test_trajectory_bounded(self):
        pipeline = GaitPipeline({"trajectory": {"max_length": 20}})
        for pose in make_walking_poses(n_frames=60):
            pipeline.process_pose("p0", pose)
        assert len(pipeline.trajectory("p0").left_foot) == 20

    def test_iterable_pose_takes_keypoint_timestamp(self):
        pipeline = GaitPipeline()
        keypoints = list(make_pose(timestamp=700).keypoints)
        result = pipeline.process_pose("p0", keypoints)
        assert result.metrics.timestamp == 700

    def test_events_match_log(self, walking_poses):
        pipeline = GaitPipeline()
        emitted = []
        for pose in walking_poses:
            emitted.extend(pipeline.process_pose("p0", pose).events)
        assert pipeline.events("p0") == sorted(emitted, key=lambda e: e.timestamp)


class TestWalkingGait:
    """Ten cycles of the synthetic walker through the full pipeline."""

    @pytest.fixture(scope="class")
    def walked(self):
        pipeline = GaitPipeline()
        events = []
        for pose in make_walking_poses(n_frames=300):
            events.extend(pipeline.process_pose("p0", pose).events)
        return pipeline, events

    def test_both_events_for_each_foot(self, walked):
        _, events = walked
        for foot in ("left", "right"):
            types = [e.type for e in events if e.foot == foot]
            assert types.count("heel_strike") >= 1
            assert types.count("toe_off") >= 1

    def test_events_chronological_and_confident(self, walked):
        _, events = walked
        stamps = [e.timestamp for e in events]
        assert stamps == sorted(stamps)
        for e in events:
            assert 0.0 < e.confidence <= 1.0
            assert e.position is not None

    def test_gait_parameters(self, walked):
        pipeline, _ = walked
        params = pipeline.gait_parameters("p0")
        assert params.status != "no_data"
        assert params.n_heel_strikes >= 10
        assert params.stride_time == pytest.approx(1.0, abs=0.1)
        assert params.cadence == pytest.approx(120.0, rel=0.15)
        assert params.left_step_length > 0
        assert params.right_step_length > 0
        assert params.left_phase in {p.value for p in GaitPhase}
        assert params.right_phase in {p.value for p in GaitPhase}
        assert 0.0 < params.phase_confidence <= 1.0
        assert 0.0 <= params.left_phase_progress <= 1.0

    def test_events_since(self, walked):
        pipeline, events = walked
        recent = pipeline.events("p0", since_ms=5000)
        assert recent
        assert all(e.timestamp > 5000 for e in recent)
        assert recent == [e for e in pipeline.events("p0") if e.timestamp > 5000]


class TestUntrustedInput:

    def test_malformed_frames_never_raise(self):
        pipeline = GaitPipeline()
        nan = float("nan")
        frames = [
            make_pose(0),
            make_pose(33, overrides={"left_ankle": (nan, 20.0), "right_knee": (1e308, nan)}),
            make_pose(33),
            make_pose(66, score=-1.0),
            make_pose(99, overrides={"left_hip": (305.0, 200.0, 2.0)}),
            Pose((), 0.0, 132),
            Pose((make_keypoint("left_ankle", 1.0, 1.0, 0.9, nan),), nan, nan),
            make_pose(165, skip=("left_ankle", "right_ankle", "left_knee")),
        ]
        for frame in frames:
            result = pipeline.process_pose("p0", frame)
            for estimate in result.estimates.values():
                assert sum(estimate.belief) == pytest.approx(1.0, abs=1e-6)
        assert pipeline.gait_parameters("p0").status in ("no_data", "low_confidence", "ok")

    def test_invalid_counts_reported(self):
        pipeline = GaitPipeline()
        nan = float("nan")
        result = pipeline.process_pose("p0", make_pose(0, overrides={"left_ankle": (nan, 0.0)}))
        assert result.metrics.n_invalid == 1
        by_name = {sk.name: sk for sk in result.smoothed}
        assert by_name["left_ankle"].valid is False


class TestPersons:

    def test_unknown_person(self):
        pipeline = GaitPipeline()
        assert pipeline.trajectory("ghost") is None
        assert pipeline.events("ghost") == []
        assert pipeline.gait_parameters("ghost") == GaitParameters.empty()
        assert pipeline.current_phases("ghost") == {"left": None, "right": None}

    def test_drop_person(self):
        pipeline = GaitPipeline()
        pipeline.process_pose("a", make_pose(0))
        pipeline.process_pose("b", make_pose(0))
        assert pipeline.drop_person("a")
        assert not pipeline.drop_person("a")
        assert pipeline.persons == ["b"]
        assert pipeline.trajectory("a") is None
        assert pipeline.smoother.arena.persons() == ["b"]

    def test_prune_lost_persons(self):
        pipeline = GaitPipeline({"pipeline": {"max_person_age_ms": 1000}})
        pipeline.process_pose("old", make_pose(0))
        pipeline.process_pose("new", make_pose(4500))
        assert pipeline.prune(5000) == ["old"]
        assert pipeline.persons == ["new"]

    def test_reset(self):
        pipeline = GaitPipeline()
        pipeline.process_pose("a", make_pose(0))
        pipeline.reset()
        assert pipeline.persons == []
        assert pipeline.trajectory("a") is None

    def test_persons_in_parallel(self):
        pipeline = GaitPipeline()
        poses = make_walking_poses(n_frames=40)

        def run(pid):
            for pose in poses:
                pipeline.process_pose(pid, pose)
            return pid

        with ThreadPoolExecutor(max_workers=4) as pool:
            pids = list(pool.map(run, [f"p{i}" for i in range(4)]))

        reference = pipeline.trajectory(pids[0])
        for pid in pids[1:]:
            traj = pipeline.trajectory(pid)
            assert len(traj.left_foot) == 40
            assert traj.left_foot == reference.left_foot


class TestConfiguration:

    def test_invalid_config_fails_at_construction(self):
        with pytest.raises(ValueError):
            GaitPipeline({"hmm": {"self_transition": 1.5}})
        with pytest.raises(ValueError):
            GaitPipeline({"hmm": {"event_phases": {"flying": "heel_strike"}}})
        with pytest.raises(ValueError):
            GaitPipeline({"smoothing": {"method": "median"}})

    def test_smoothing_method_from_config(self):
        pipeline = GaitPipeline({"smoothing": {"method": "savgol", "window_size": 7}})
        assert pipeline.smoother.algorithm.name == "savgol"
