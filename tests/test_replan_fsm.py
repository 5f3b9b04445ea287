import numpy as np
import pytest

from kino_replan.config import ReplanConfig
from kino_replan.environment import ObstacleField, SampledCollisionChecker, SphereObstacle
from kino_replan.fsm.planning_task import InlinePlanningWorker
from kino_replan.fsm.replan_fsm import ReplanController
from kino_replan.offline.simulator import RecordingSink, SimClock
from kino_replan.planning.reference_planner import BsplineReferencePlanner, PlannerConfig
from kino_replan.types import GoalBlockedPolicy, PlanResult, ReplanState, TargetMode
from kino_replan.utils.quaternion_utils import quat_from_yaw


class FailingPlanner:
    def __init__(self):
        self.calls = 0

    def plan(self, boundary, goal, goal_velocity):
        self.calls += 1
        return PlanResult(success=False, message="no path")

    def plan_yaw(self, boundary, position_traj):
        raise AssertionError("plan_yaw must not run after a failed plan")


class RecordingPlanner:
    """Reference planner that remembers every boundary it was handed."""

    def __init__(self, inner):
        self.inner = inner
        self.boundaries = []

    def plan(self, boundary, goal, goal_velocity):
        self.boundaries.append(boundary)
        return self.inner.plan(boundary, goal, goal_velocity)

    def plan_yaw(self, boundary, position_traj):
        return self.inner.plan_yaw(boundary, position_traj)


class ConstantEnvironment:
    def __init__(self, value):
        self.value = float(value)

    def distance(self, point, time=None):
        return self.value


def _make(config=None, planner=None, environment=None, checker_environment=None):
    cfg = config or ReplanConfig()
    clock = SimClock()
    sink = RecordingSink()
    free = ObstacleField()
    planner = planner or BsplineReferencePlanner(free, PlannerConfig.from_replan_config(cfg))
    checker = SampledCollisionChecker(checker_environment or free, clearance=cfg.collision_clearance, dt=cfg.collision_check_dt)
    ctrl = ReplanController(
        cfg,
        planner,
        environment or free,
        checker,
        sink,
        worker=InlinePlanningWorker(planner, clock=clock),
        clock=clock,
    )
    return ctrl, clock, sink


def _odom(ctrl, position=(0.0, 0.0, 1.0), velocity=(0.0, 0.0, 0.0), yaw=0.0):
    ctrl.on_vehicle_state(np.asarray(position, dtype=float), np.asarray(velocity, dtype=float), quat_from_yaw(yaw))


def _drive_to_exec(ctrl, clock, goal=(5.0, 0.0, 1.0)):
    _odom(ctrl)
    assert ctrl.on_target(np.asarray(goal, dtype=float))
    for _ in range(3):
        ctrl.exec_tick()
        clock.advance(0.01)
    assert ctrl.state == ReplanState.EXEC_TRAJ


def test_not_ready_stays_in_init_until_state_and_trigger():
    ctrl, clock, sink = _make()

    for _ in range(50):
        ctrl.exec_tick()
        clock.advance(0.01)
    assert ctrl.state == ReplanState.INIT

    # Target without odometry is remembered but cannot leave INIT
    ctrl.on_target(np.array([3.0, 0.0, 1.0]))
    for _ in range(50):
        ctrl.exec_tick()
    assert ctrl.state == ReplanState.INIT
    assert ctrl.has_target

    _odom(ctrl)
    assert ctrl.exec_tick() == ReplanState.WAIT_TARGET
    assert ctrl.exec_tick() == ReplanState.GEN_NEW_TRAJ


def test_odometry_alone_does_not_leave_init():
    ctrl, clock, _ = _make()
    _odom(ctrl)
    for _ in range(20):
        ctrl.exec_tick()
    assert ctrl.state == ReplanState.INIT
    assert ctrl.has_state


def test_target_below_sentinel_is_dropped():
    ctrl, _, sink = _make()
    _odom(ctrl)
    assert not ctrl.on_target(np.array([1.0, 2.0, -0.5]))
    assert not ctrl.has_target
    assert ctrl.target is None
    assert sink.goals == []
    assert ctrl.exec_tick() == ReplanState.INIT


def test_manual_target_is_flown_at_fixed_height():
    ctrl, _, sink = _make()
    ctrl.on_target(np.array([4.0, -2.0, 7.5]))
    assert np.allclose(ctrl.target.position, [4.0, -2.0, 1.0])
    assert np.allclose(sink.goals[-1], [4.0, -2.0, 1.0])


def test_reference_path_target_keeps_altitude():
    cfg = ReplanConfig(target_mode=TargetMode.REFERENCE_PATH)
    ctrl, _, _ = _make(cfg)
    ctrl.on_target(np.array([4.0, -2.0, 2.5]))
    assert np.allclose(ctrl.target.position, [4.0, -2.0, 2.5])


def test_preset_targets_cycle_in_order():
    wps = ((1.0, 0.0, 1.0), (2.0, 0.0, 1.0), (3.0, 0.0, 1.5))
    cfg = ReplanConfig(target_mode=TargetMode.PRESET, waypoints=wps)
    ctrl, _, _ = _make(cfg)

    seen = []
    for _ in range(4):
        ctrl.on_target(np.array([9.0, 9.0, 9.0]))
        seen.append(ctrl.target.position.copy())
    assert np.allclose(seen[0], wps[0])
    assert np.allclose(seen[1], wps[1])
    assert np.allclose(seen[2], wps[2])
    assert np.allclose(seen[3], wps[0])


def test_generate_publishes_command_and_enters_exec():
    ctrl, clock, sink = _make()
    _drive_to_exec(ctrl, clock)

    assert len(sink.commands) == 1
    cmd = sink.commands[0]
    assert cmd.order == 3
    assert cmd.traj_id == 1
    assert len(cmd.knots) == len(cmd.pos_pts) + 4
    assert cmd.yaw_dt > 0.0
    active = ctrl.active_trajectory
    assert active is not None
    assert active.traj_id == 1
    assert np.allclose(active.start_position, [0.0, 0.0, 1.0], atol=0.05)


def test_target_events_force_planning_states():
    ctrl, clock, _ = _make()
    _drive_to_exec(ctrl, clock, goal=(1.5, 0.0, 1.0))
    active = ctrl.active_trajectory
    clock.t = active.start_time + active.duration
    assert ctrl.exec_tick() == ReplanState.WAIT_TARGET

    ctrl.on_target(np.array([3.0, 0.0, 1.0]))
    assert ctrl.state == ReplanState.GEN_NEW_TRAJ
    assert ctrl.exec_tick() == ReplanState.EXEC_TRAJ

    ctrl.on_target(np.array([-3.0, 0.0, 1.0]))
    assert ctrl.state == ReplanState.REPLAN_TRAJ
    assert ctrl.recorder.transitions[-1]["source"] == "TRIG"


def test_planning_failure_retries_without_mutation():
    planner = FailingPlanner()
    ctrl, clock, sink = _make(planner=planner)
    _odom(ctrl)
    ctrl.on_target(np.array([5.0, 0.0, 1.0]))
    ctrl.exec_tick()
    ctrl.exec_tick()
    for _ in range(10):
        ctrl.exec_tick()
        clock.advance(0.01)

    assert ctrl.state == ReplanState.GEN_NEW_TRAJ
    assert planner.calls == 10
    assert sink.commands == []
    assert ctrl.active_trajectory is None
    assert len(ctrl.recorder.plans) == 10
    assert not any(p["plan"]["success"] for p in ctrl.recorder.plans)


def test_planner_exception_takes_failure_path():
    class RaisingPlanner:
        def plan(self, boundary, goal, goal_velocity):
            raise RuntimeError("solver crashed")

        def plan_yaw(self, boundary, position_traj):
            raise AssertionError

    ctrl, clock, sink = _make(planner=RaisingPlanner())
    _odom(ctrl)
    ctrl.on_target(np.array([5.0, 0.0, 1.0]))
    for _ in range(4):
        ctrl.exec_tick()
    assert ctrl.state == ReplanState.GEN_NEW_TRAJ
    assert sink.commands == []
    assert "RuntimeError" in ctrl.recorder.plans[-1]["plan"]["error"]


def test_exec_holds_near_start_then_replans_with_continuity():
    cfg = ReplanConfig()
    planner = RecordingPlanner(BsplineReferencePlanner(ObstacleField(), PlannerConfig.from_replan_config(cfg)))
    ctrl, clock, sink = _make(cfg, planner=planner)
    _drive_to_exec(ctrl, clock, goal=(12.0, 0.0, 1.0))
    first = ctrl.active_trajectory

    # Walk along the trajectory until the controller asks for a replan
    replan_at = None
    for _ in range(2000):
        clock.advance(0.01)
        state = ctrl.exec_tick()
        if state == ReplanState.REPLAN_TRAJ:
            replan_at = clock()
            break
    assert replan_at is not None

    pos = first.position(first.elapsed(replan_at))
    assert np.linalg.norm(pos - first.start_position) >= cfg.replan_threshold
    assert np.linalg.norm(ctrl.target.position - pos) >= cfg.no_replan_threshold

    ctrl.exec_tick()
    assert ctrl.state == ReplanState.EXEC_TRAJ
    assert sink.replan_requests == 1

    boundary = planner.boundaries[-1]
    t = replan_at - first.start_time
    expected = first.boundary_at(t)
    assert np.allclose(boundary.position, expected.position, atol=1e-6)
    assert np.allclose(boundary.velocity, expected.velocity, atol=1e-6)
    assert np.allclose(boundary.acceleration, expected.acceleration, atol=1e-6)
    assert np.allclose(boundary.yaw, expected.yaw, atol=1e-6)

    second = ctrl.active_trajectory
    assert second.traj_id == first.traj_id + 1
    assert second.start_time == pytest.approx(replan_at)
    assert [c.traj_id for c in sink.commands] == [1, 2]


def test_completion_clears_target_and_waits():
    ctrl, clock, sink = _make()
    _drive_to_exec(ctrl, clock, goal=(1.5, 0.0, 1.0))
    active = ctrl.active_trajectory

    clock.t = active.start_time + active.duration - 0.5
    assert ctrl.exec_tick() == ReplanState.EXEC_TRAJ

    clock.t = active.start_time + active.duration - 0.005
    assert ctrl.exec_tick() == ReplanState.WAIT_TARGET
    assert not ctrl.has_target
    assert ctrl.exec_tick() == ReplanState.WAIT_TARGET
    assert len(sink.commands) == 1


def test_collision_on_active_trajectory_forces_replan():
    blocked = ObstacleField(obstacles=(SphereObstacle(center=np.array([2.5, 0.0, 1.0]), radius=0.5),))
    ctrl, clock, sink = _make(checker_environment=blocked)
    _drive_to_exec(ctrl, clock)

    ctrl.safety_tick()
    assert ctrl.state == ReplanState.REPLAN_TRAJ
    last = ctrl.recorder.transitions[-1]
    assert last["source"] == "SAFETY"
    assert last["to"] == "REPLAN_TRAJ"
    assert ctrl.recorder.events_of("trajectory_collision")


def test_collision_check_only_runs_while_executing():
    blocked = ObstacleField(obstacles=(SphereObstacle(center=np.array([2.5, 0.0, 1.0]), radius=0.5),))
    ctrl, clock, _ = _make(checker_environment=blocked)
    _odom(ctrl)
    ctrl.safety_tick()
    assert ctrl.state == ReplanState.INIT


def test_unsafe_goal_is_relocated_and_triggers_replan():
    goal = np.array([5.0, 0.0, 1.0])
    env = ObstacleField(obstacles=(SphereObstacle(center=goal, radius=0.5),))
    ctrl, clock, sink = _make(environment=env)
    _drive_to_exec(ctrl, clock, goal=goal)

    ctrl.safety_tick()
    new_goal = ctrl.target.position
    assert not np.allclose(new_goal, goal)
    assert env.distance(new_goal) > ReplanConfig().goal_clearance
    assert ctrl.state == ReplanState.REPLAN_TRAJ
    assert np.allclose(sink.goals[-1], new_goal)
    assert ctrl.recorder.log_data["goal_history"][-1]["reason"] == "relocated"


def test_blocked_goal_retry_keeps_goal_and_requests_replan():
    ctrl, clock, sink = _make(environment=ConstantEnvironment(0.1))
    _drive_to_exec(ctrl, clock)
    goal = ctrl.target.position.copy()
    before = sink.replan_requests

    ctrl.safety_tick()
    assert sink.replan_requests == before + 1
    assert np.allclose(ctrl.target.position, goal)
    assert ctrl.has_target
    assert ctrl.state == ReplanState.REPLAN_TRAJ


def test_blocked_goal_give_up_returns_to_wait_target():
    cfg = ReplanConfig(goal_blocked_policy=GoalBlockedPolicy.GIVE_UP)
    ctrl, clock, sink = _make(cfg, environment=ConstantEnvironment(0.1))
    _drive_to_exec(ctrl, clock)

    ctrl.safety_tick()
    assert ctrl.state == ReplanState.WAIT_TARGET
    assert not ctrl.has_target
    assert ctrl.target is None
    for _ in range(5):
        assert ctrl.exec_tick() == ReplanState.WAIT_TARGET


def test_transition_log_lines(caplog):
    ctrl, clock, _ = _make()
    with caplog.at_level("INFO", logger="kino_replan"):
        _drive_to_exec(ctrl, clock)
    text = caplog.text
    assert "[FSM]: from INIT to WAIT_TARGET" in text
    assert "[FSM]: from WAIT_TARGET to GEN_NEW_TRAJ" in text
    assert "[FSM]: from GEN_NEW_TRAJ to EXEC_TRAJ" in text


def test_periodic_status_report(caplog):
    cfg = ReplanConfig(status_log_period_ticks=10)
    ctrl, _, _ = _make(cfg)
    with caplog.at_level("INFO", logger="kino_replan"):
        for _ in range(10):
            ctrl.exec_tick()
    assert "[FSM]: state: INIT" in caplog.text
    assert "no odom." in caplog.text
    assert "wait for goal." in caplog.text


def test_snapshot_reports_controller_state():
    ctrl, clock, _ = _make()
    _drive_to_exec(ctrl, clock)
    snap = ctrl.snapshot()
    assert snap.state == ReplanState.EXEC_TRAJ
    assert snap.traj_id == 1
    assert snap.to_dict()["state"] == "EXEC_TRAJ"


class SwitchablePlanner(RecordingPlanner):
    def __init__(self, inner):
        super().__init__(inner)
        self.fail = False

    def plan(self, boundary, goal, goal_velocity):
        if self.fail:
            self.boundaries.append(boundary)
            return PlanResult(success=False, message="no path")
        return super().plan(boundary, goal, goal_velocity)


class TickingClock(SimClock):
    """Moves forward a little on every read, like a wall clock."""

    def __call__(self):
        self.t += 1e-3
        return self.t


def _walk_until(ctrl, clock, state, max_ticks=2000):
    for _ in range(max_ticks):
        clock.advance(0.01)
        if ctrl.exec_tick() == state:
            return True
    return False


def test_exec_holds_near_goal_even_when_far_from_start():
    cfg = ReplanConfig()
    ctrl, clock, sink = _make(cfg)
    _drive_to_exec(ctrl, clock, goal=(3.0, 0.0, 1.0))
    active = ctrl.active_trajectory
    goal = ctrl.target.position
    assert np.linalg.norm(goal - active.start_position) > cfg.replan_threshold

    near_goal_only = both_near = False
    states = []
    for _ in range(2000):
        clock.advance(0.01)
        t = min(max(active.elapsed(clock()), 0.0), active.duration)
        pos = active.position(t)
        from_start = np.linalg.norm(pos - active.start_position)
        to_goal = np.linalg.norm(goal - pos)
        state = ctrl.exec_tick()
        if state == ReplanState.WAIT_TARGET:
            break
        states.append(state)
        if to_goal < cfg.no_replan_threshold:
            near_goal_only |= from_start >= cfg.replan_threshold
            both_near |= from_start < cfg.replan_threshold

    assert near_goal_only
    assert both_near
    assert set(states) == {ReplanState.EXEC_TRAJ}
    assert ctrl.state == ReplanState.WAIT_TARGET
    assert sink.replan_requests == 0
    assert len(sink.commands) == 1


def test_failed_replan_keeps_active_trajectory():
    cfg = ReplanConfig()
    planner = SwitchablePlanner(BsplineReferencePlanner(ObstacleField(), PlannerConfig.from_replan_config(cfg)))
    ctrl, clock, sink = _make(cfg, planner=planner)
    _drive_to_exec(ctrl, clock, goal=(12.0, 0.0, 1.0))
    first = ctrl.active_trajectory
    assert _walk_until(ctrl, clock, ReplanState.REPLAN_TRAJ)

    planner.fail = True
    clock.advance(0.01)
    assert ctrl.exec_tick() == ReplanState.GEN_NEW_TRAJ
    assert ctrl.active_trajectory is first
    assert sink.replan_requests == 1
    assert len(sink.commands) == 1

    for _ in range(5):
        clock.advance(0.01)
        assert ctrl.exec_tick() == ReplanState.GEN_NEW_TRAJ
    assert ctrl.active_trajectory is first
    assert len(sink.commands) == 1


def test_replanned_start_time_matches_seed_instant():
    cfg = ReplanConfig()
    clock = TickingClock()
    free = ObstacleField()
    planner = RecordingPlanner(BsplineReferencePlanner(free, PlannerConfig.from_replan_config(cfg)))
    checker = SampledCollisionChecker(free, clearance=cfg.collision_clearance, dt=cfg.collision_check_dt)
    ctrl = ReplanController(
        cfg,
        planner,
        free,
        checker,
        RecordingSink(),
        worker=InlinePlanningWorker(planner, clock=clock),
        clock=clock,
    )
    _drive_to_exec(ctrl, clock, goal=(12.0, 0.0, 1.0))
    first = ctrl.active_trajectory
    assert _walk_until(ctrl, clock, ReplanState.REPLAN_TRAJ)

    clock.advance(0.01)
    assert ctrl.exec_tick() == ReplanState.EXEC_TRAJ
    second = ctrl.active_trajectory
    assert second.traj_id == first.traj_id + 1

    seed = first.boundary_at(first.elapsed(second.start_time))
    assert np.allclose(planner.boundaries[-1].position, seed.position, atol=1e-9)
    assert np.allclose(planner.boundaries[-1].velocity, seed.velocity, atol=1e-9)


def test_endless_plan_failures_keep_recorder_bounded():
    planner = FailingPlanner()
    ctrl, clock, _ = _make(planner=planner)
    _odom(ctrl)
    ctrl.on_target(np.array([5.0, 0.0, 1.0]))
    limit = ctrl.recorder.max_entries
    for _ in range(limit + 1000):
        ctrl.exec_tick()
        clock.advance(0.01)

    assert planner.calls > limit
    assert len(ctrl.recorder.plans) == limit
    assert ctrl.recorder.plans[-1]["timestamp"] == pytest.approx(clock() - 0.01)
