from .client import build_ssh_client_args, run_interactive_session
from .core import (
    build_interactive_remote_command,
    cleanup_bridge_session,
    filter_startup_env,
    prepare_bridge_session,
    stage_startup_env,
)
from .ports import BridgePorts, allocate_bridge_ports
from .relay import to_ws_url
from .session import BridgeError, BridgeSession, RemoteArtifacts, RemoteProcess

__all__ = [
    "BridgeError",
    "BridgePorts",
    "BridgeSession",
    "RemoteArtifacts",
    "RemoteProcess",
    "allocate_bridge_ports",
    "build_interactive_remote_command",
    "build_ssh_client_args",
    "cleanup_bridge_session",
    "filter_startup_env",
    "prepare_bridge_session",
    "run_interactive_session",
    "stage_startup_env",
    "to_ws_url",
]
