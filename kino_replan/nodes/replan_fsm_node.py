from __future__ import annotations

import json
import pathlib

import numpy as np

import rclpy
from rclpy.node import Node

from geometry_msgs.msg import PoseStamped
from nav_msgs.msg import Odometry, Path
from std_msgs.msg import Empty, String
from visualization_msgs.msg import Marker

from kino_replan.config import ReplanConfig
from kino_replan.environment import ObstacleField, SampledCollisionChecker, load_obstacles, parse_obstacles
from kino_replan.fsm.planning_task import ThreadedPlanningWorker
from kino_replan.fsm.replan_fsm import ReplanController
from kino_replan.logging.replan_logger import ReplanLogger
from kino_replan.planning.reference_planner import BsplineReferencePlanner, PlannerConfig
from kino_replan.types import TrajectoryCommand
from kino_replan.trajectory.bspline import UniformBspline


class _RosCommandSink:
    """Forwards controller commands to ROS publishers."""

    def __init__(self, node: "ReplanFsmNode") -> None:
        self._node = node

    def publish_trajectory(self, command: TrajectoryCommand) -> None:
        self._node.publish_command(command)

    def request_replan(self) -> None:
        self._node.pub_replan.publish(Empty())

    def publish_goal(self, position: np.ndarray) -> None:
        self._node.publish_goal_marker(position)


class ReplanFsmNode(Node):
    def __init__(self) -> None:
        super().__init__("kino_replan_fsm")

        # ------------------------------------------------------------------
        # Parameters
        # ------------------------------------------------------------------
        self.config = ReplanConfig.from_ros_params(self)
        # JSON-encoded list of spheres: [[x, y, z, r], [x, y, z, r, vx, vy, vz], ...]
        self.declare_parameter("environment.obstacles", "[]")
        # Optional yaml/json file with an `obstacles` list
        self.declare_parameter("environment.obstacles_file", "")
        self.declare_parameter("environment.max_distance", 10.0)
        self.declare_parameter("frame_id", "world")
        self.declare_parameter("preview_dt", 0.1)
        self.declare_parameter("log_dir", "")

        self.frame_id = str(self.get_parameter("frame_id").value)
        self.preview_dt = float(self.get_parameter("preview_dt").value)

        self.environment = ObstacleField(
            obstacles=tuple(self._load_environment()),
            max_distance=float(self.get_parameter("environment.max_distance").value),
        )

        log_dir = str(self.get_parameter("log_dir").value).strip()
        self.recorder = ReplanLogger(output_dir=pathlib.Path(log_dir) if log_dir else None, mode="ros")

        planner = BsplineReferencePlanner(self.environment, PlannerConfig.from_replan_config(self.config))
        checker = SampledCollisionChecker(
            self.environment,
            clearance=self.config.collision_clearance,
            dt=self.config.collision_check_dt,
            dynamic=self.config.dynamic_environment,
            horizon=self.config.local_segment_length,
        )
        worker = ThreadedPlanningWorker(planner, clock=self._now_sec, timeout_s=self.config.planning_timeout_s)

        # ------------------------------------------------------------------
        # Publishers / subscriptions
        # ------------------------------------------------------------------
        self.pub_bspline = self.create_publisher(String, "/planning/bspline", 10)
        self.pub_replan = self.create_publisher(Empty, "/planning/replan", 10)
        self.pub_path = self.create_publisher(Path, "/planning/trajectory", 10)
        self.pub_goal = self.create_publisher(Marker, "/planning/goal", 10)

        self.controller = ReplanController(
            self.config,
            planner,
            self.environment,
            checker,
            _RosCommandSink(self),
            worker=worker,
            clock=self._now_sec,
            logger=self.get_logger(),
            recorder=self.recorder,
        )

        self.create_subscription(Path, "/waypoints", self._on_waypoints, 10)
        self.create_subscription(Odometry, "/odom", self._on_odom, 10)

        self.exec_timer = self.create_timer(float(self.config.exec_period_s), self._on_exec_timer)
        self.safety_timer = self.create_timer(float(self.config.safety_period_s), self._on_safety_timer)

        self.get_logger().info(
            f"kino_replan_fsm ready: mode={self.config.target_mode.name}, "
            f"obstacles={len(self.environment.obstacles)}, timeout={self.config.planning_timeout_s:.2f}s"
        )

    def _now_sec(self) -> float:
        return float(self.get_clock().now().nanoseconds) * 1e-9

    def _load_environment(self) -> list:
        obstacles: list = []
        raw = str(self.get_parameter("environment.obstacles").value).strip()
        if raw and raw != "[]":
            try:
                parsed = json.loads(raw)
                obstacles.extend(parse_obstacles(parsed))
            except (ValueError, TypeError) as e:
                self.get_logger().warn(f"Failed to parse environment.obstacles='{raw}': {e}")

        path = str(self.get_parameter("environment.obstacles_file").value).strip()
        if path:
            try:
                obstacles.extend(load_obstacles(path))
            except (OSError, ValueError) as e:
                self.get_logger().warn(f"Failed to load obstacles file '{path}': {e}")
        return obstacles

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def _on_odom(self, msg: Odometry) -> None:
        p = msg.pose.pose.position
        v = msg.twist.twist.linear
        q = msg.pose.pose.orientation
        self.controller.on_vehicle_state(
            np.array([p.x, p.y, p.z], dtype=float),
            np.array([v.x, v.y, v.z], dtype=float),
            np.array([q.w, q.x, q.y, q.z], dtype=float),
        )

    def _on_waypoints(self, msg: Path) -> None:
        if not msg.poses:
            self.get_logger().warn("Received empty waypoint path")
            return
        p = msg.poses[0].pose.position
        self.controller.on_target(np.array([p.x, p.y, p.z], dtype=float))

    def _on_exec_timer(self) -> None:
        self.controller.exec_tick()

    def _on_safety_timer(self) -> None:
        self.controller.safety_tick()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------
    def publish_command(self, command: TrajectoryCommand) -> None:
        self.pub_bspline.publish(String(data=json.dumps(command.to_dict())))

        pos = UniformBspline(np.asarray(command.pos_pts, dtype=float), command.order, command.knots[1] - command.knots[0])
        n = max(int(np.ceil(pos.duration / max(self.preview_dt, 1e-3))), 1)
        path = Path()
        path.header.stamp = self.get_clock().now().to_msg()
        path.header.frame_id = self.frame_id
        for t in np.linspace(0.0, pos.duration, n + 1):
            x, y, z = (float(c) for c in pos.evaluate(float(t)))
            ps = PoseStamped()
            ps.header = path.header
            ps.pose.position.x = x
            ps.pose.position.y = y
            ps.pose.position.z = z
            ps.pose.orientation.w = 1.0
            path.poses.append(ps)
        self.pub_path.publish(path)

    def publish_goal_marker(self, position: np.ndarray) -> None:
        x, y, z = (float(c) for c in np.asarray(position, dtype=float).reshape(3))
        marker = Marker()
        marker.header.stamp = self.get_clock().now().to_msg()
        marker.header.frame_id = self.frame_id
        marker.ns = "kino_replan_goal"
        marker.id = 0
        marker.type = Marker.SPHERE
        marker.action = Marker.ADD
        marker.scale.x = 0.3
        marker.scale.y = 0.3
        marker.scale.z = 0.3
        marker.color.r = 1.0
        marker.color.g = 0.2
        marker.color.b = 0.2
        marker.color.a = 1.0
        marker.pose.position.x = x
        marker.pose.position.y = y
        marker.pose.position.z = z
        marker.pose.orientation.w = 1.0
        self.pub_goal.publish(marker)

    def shutdown(self) -> None:
        self.controller.shutdown()
        if self.recorder.output_dir is not None:
            path = self.recorder.save()
            self.get_logger().info(f"Replan log saved to {path}")


def main(args=None) -> None:
    rclpy.init(args=args)
    node = ReplanFsmNode()
    try:
        rclpy.spin(node)
    except KeyboardInterrupt:
        pass
    finally:
        node.shutdown()
        node.destroy_node()
        rclpy.shutdown()


if __name__ == "__main__":
    main()
