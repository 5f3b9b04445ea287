from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument
from launch.substitutions import LaunchConfiguration, PathJoinSubstitution, TextSubstitution
from launch_ros.actions import Node
from launch_ros.parameter_descriptions import ParameterValue
from launch_ros.substitutions import FindPackageShare


def generate_launch_description() -> LaunchDescription:
    fsm_params = LaunchConfiguration("fsm_params")
    flight_type = LaunchConfiguration("flight_type")
    obstacles = LaunchConfiguration("obstacles")

    default_params = PathJoinSubstitution([FindPackageShare("kino_replan"), "config", "replan_fsm.yaml"])

    return LaunchDescription(
        [
            DeclareLaunchArgument("fsm_params", default_value=default_params),
            DeclareLaunchArgument("flight_type", default_value=TextSubstitution(text="1")),
            DeclareLaunchArgument("obstacles", default_value=TextSubstitution(text="[]")),
            Node(
                package="kino_replan",
                executable="replan_fsm_node",
                name="kino_replan_fsm",
                output="screen",
                parameters=[
                    fsm_params,
                    {
                        "fsm.flight_type": ParameterValue(flight_type, value_type=int),
                        "environment.obstacles": ParameterValue(obstacles, value_type=str),
                    },
                ],
            ),
        ]
    )
