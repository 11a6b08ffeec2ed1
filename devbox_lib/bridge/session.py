from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import List

from devbox_lib.sandbox import SandboxHandle

LOGGER = logging.getLogger("devbox.bridge")

SSH_HOST_ALIAS = "devbox-sandbox"
SSH_USER_FALLBACK = "user"
SSH_SHORT_TIMEOUT_MS = 15_000
SSH_SETUP_TIMEOUT_MS = 8 * 60 * 1000
REMOTE_ROOT_DIRNAME = ".devbox-ssh"
STARTUP_ENV_FILENAME = "startup-env.sh"


class BridgeError(RuntimeError):
    pass


@dataclass(frozen=True)
class RemoteProcess:
    """A detached process in the sandbox, tracked through its PID file."""

    name: str
    pid_path: str
    log_path: str | None = None
    elevated: bool = False

    def terminate_command(self, *, wait_seconds: int = 5) -> str:
        pid_path = shlex.quote(self.pid_path)
        kill = "sudo kill" if self.elevated else "kill"
        probe = "sudo kill -0" if self.elevated else "kill -0"
        ticks = max(1, wait_seconds * 10)
        return (
            f"if [ -f {pid_path} ]; then pid=$(cat {pid_path}); "
            f'if [ -n "$pid" ]; then {kill} "$pid" >/dev/null 2>&1 || true; '
            f'for _ in $(seq {ticks}); do {probe} "$pid" >/dev/null 2>&1 || break; sleep 0.1; done; fi; fi'
        )

    async def terminate(self, handle: SandboxHandle) -> None:
        """Signal the process and wait briefly for it to exit. Never raises."""

        try:
            await handle.run(self.terminate_command(), timeout_ms=SSH_SHORT_TIMEOUT_MS)
        except Exception as exc:
            LOGGER.debug("Ignoring %s teardown failure in sandbox %s: %s", self.name, handle.sandbox_id, exc)


@dataclass(frozen=True)
class RemoteArtifacts:
    session_dir: str
    authorized_keys_path: str
    host_private_key_path: str
    host_public_key_path: str
    sshd_config_path: str
    sshd_port: int
    relay_port: int
    sshd_pid_path: str
    relay_pid_path: str
    relay_log_path: str

    @classmethod
    def under(cls, session_dir: str, *, sshd_port: int, relay_port: int) -> "RemoteArtifacts":
        return cls(
            session_dir=session_dir,
            authorized_keys_path=f"{session_dir}/authorized_keys",
            host_private_key_path=f"{session_dir}/host-ed25519",
            host_public_key_path=f"{session_dir}/host-ed25519.pub",
            sshd_config_path=f"{session_dir}/sshd_config",
            sshd_port=sshd_port,
            relay_port=relay_port,
            sshd_pid_path=f"{session_dir}/sshd.pid",
            relay_pid_path=f"{session_dir}/websockify.pid",
            relay_log_path=f"{session_dir}/websockify.log",
        )

    @property
    def sshd(self) -> RemoteProcess:
        return RemoteProcess(name="sshd", pid_path=self.sshd_pid_path, elevated=True)

    @property
    def relay(self) -> RemoteProcess:
        return RemoteProcess(name="websockify", pid_path=self.relay_pid_path, log_path=self.relay_log_path)

    @property
    def startup_env_path(self) -> str:
        return f"{self.session_dir}/{STARTUP_ENV_FILENAME}"

    def remove_paths(self) -> List[str]:
        return [
            self.authorized_keys_path,
            self.host_private_key_path,
            self.host_public_key_path,
            self.sshd_config_path,
            self.relay_log_path,
            self.relay_pid_path,
            self.sshd_pid_path,
            self.startup_env_path,
        ]


@dataclass
class BridgeSession:
    local_dir: Path
    private_key_path: Path
    public_key_path: Path
    known_hosts_path: Path
    ws_url: str = ""
    remote_user: str = SSH_USER_FALLBACK
    remote_home: str | None = None
    artifacts: RemoteArtifacts | None = None
    startup_env_script_path: str | None = None

    @property
    def session_id(self) -> str:
        return self.local_dir.name

    @property
    def ssh_destination(self) -> str:
        return f"{(self.remote_user or '').strip() or SSH_USER_FALLBACK}@{SSH_HOST_ALIAS}"
