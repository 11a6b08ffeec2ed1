"""Build, attach to and tear down an SSH-over-WebSocket bridge into a sandbox.

Preparation is strictly sequential: dependencies, local keys, remote
identity, ports, remote config, host key pinning, processes, public URL.
Cleanup is best-effort per action and always removes the local key
directory last.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Dict, Mapping

from devbox_lib.fileio import remove_tree, write_private
from devbox_lib.sandbox import SandboxHandle
from devbox_lib.setup.retry import SleepFn

from .deps import ensure_bridge_dependencies
from .ports import DEFAULT_MAX_ATTEMPTS, allocate_bridge_ports
from .relay import build_relay_start_command, to_ws_url, wait_for_relay
from .session import (
    REMOTE_ROOT_DIRNAME,
    SSH_HOST_ALIAS,
    SSH_SHORT_TIMEOUT_MS,
    SSH_USER_FALLBACK,
    BridgeError,
    BridgeSession,
    RemoteArtifacts,
)
from .sshd import build_sshd_config

LOGGER = logging.getLogger("devbox.bridge")

LOCAL_DIR_PREFIX = "devbox-ssh-"
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
STAGE_ENV_PREFIX = "DEVBOX_STAGE_"

KeygenFn = Callable[[Path], None]
ReadinessProbe = Callable[[str], Awaitable[bool]]


def generate_local_keypair(private_key_path: Path) -> None:
    try:
        proc = subprocess.run(
            ["ssh-keygen", "-t", "ed25519", "-N", "", "-f", str(private_key_path), "-q"],
            capture_output=True,
            text=True,
            timeout=SSH_SHORT_TIMEOUT_MS / 1000,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise BridgeError(f"ssh-keygen failed: {exc}") from exc
    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"exit code {proc.returncode}"
        raise BridgeError(f"ssh-keygen failed: {detail}")


async def _run_required(handle: SandboxHandle, command: str, label: str, **kwargs) -> str:
    outcome = await handle.run(command, timeout_ms=SSH_SHORT_TIMEOUT_MS, **kwargs)
    if outcome.exit_code != 0:
        detail = (outcome.stderr or outcome.stdout or "").strip() or "unknown error"
        raise BridgeError(
            f"SSH bridge step '{label}' failed in sandbox '{handle.sandbox_id}' "
            f"(exit code {outcome.exit_code}): {detail}"
        )
    return outcome.stdout


def _write_remote_file_command(path: str, content: str) -> str:
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    quoted = shlex.quote(path)
    script = f"umask 077 && printf %s {encoded} | base64 -d > {quoted} && chmod 600 {quoted}"
    return f"bash -lc {shlex.quote(script)}"


async def prepare_bridge_session(
    handle: SandboxHandle,
    *,
    keygen: KeygenFn = generate_local_keypair,
    readiness_probe: ReadinessProbe | None = wait_for_relay,
    install_sleep: SleepFn | None = None,
    port_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> BridgeSession:
    LOGGER.info("SSH bridge: checking/installing dependencies.")
    await ensure_bridge_dependencies(handle, sleep=install_sleep)

    local_dir = Path(tempfile.mkdtemp(prefix=LOCAL_DIR_PREFIX))
    private_key_path = local_dir / "id_ed25519"
    session = BridgeSession(
        local_dir=local_dir,
        private_key_path=private_key_path,
        public_key_path=private_key_path.with_name("id_ed25519.pub"),
        known_hosts_path=local_dir / "known_hosts",
    )
    try:
        await _provision_session(handle, session, keygen, readiness_probe, port_attempts)
    except BaseException:
        await cleanup_bridge_session(handle, session)
        raise
    LOGGER.info("SSH bridge ready: %s", session.ws_url)
    return session


async def _provision_session(
    handle: SandboxHandle,
    session: BridgeSession,
    keygen: KeygenFn,
    readiness_probe: ReadinessProbe | None,
    port_attempts: int,
) -> None:
    LOGGER.info("SSH bridge: generating local key pair.")
    await asyncio.to_thread(keygen, session.private_key_path)
    try:
        public_key = session.public_key_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        public_key = ""
    if not public_key:
        raise BridgeError(f"Generated SSH public key is empty ({session.public_key_path}).")

    whoami = await handle.run("whoami", timeout_ms=SSH_SHORT_TIMEOUT_MS)
    session.remote_user = whoami.stdout.strip() or SSH_USER_FALLBACK
    home = await handle.run("bash -lc 'printf %s \"$HOME\"'", timeout_ms=SSH_SHORT_TIMEOUT_MS)
    remote_home = home.stdout.strip()
    if not remote_home:
        raise BridgeError(f"Failed to resolve remote home directory for SSH bridge session in sandbox '{handle.sandbox_id}'.")
    session.remote_home = remote_home

    ports = await allocate_bridge_ports(handle, session.session_id, max_attempts=port_attempts)
    remote_root = f"{remote_home}/{REMOTE_ROOT_DIRNAME}"
    artifacts = RemoteArtifacts.under(
        f"{remote_root}/{session.session_id}",
        sshd_port=ports.sshd_port,
        relay_port=ports.relay_port,
    )
    session.artifacts = artifacts

    LOGGER.info("SSH bridge: configuring remote sshd/websockify (ports %d/%d).", ports.sshd_port, ports.relay_port)
    root_q = shlex.quote(remote_root)
    dir_q = shlex.quote(artifacts.session_dir)
    mkdir_script = f"mkdir -p {root_q} && chmod 700 {root_q} && rm -rf {dir_q} && mkdir -p {dir_q} && chmod 700 {dir_q}"
    await _run_required(handle, f"bash -lc {shlex.quote(mkdir_script)}", "create session directory")
    await _run_required(
        handle,
        _write_remote_file_command(artifacts.authorized_keys_path, public_key + "\n"),
        "write authorized_keys",
    )
    await _run_required(
        handle,
        f"ssh-keygen -t ed25519 -N '' -f {shlex.quote(artifacts.host_private_key_path)} -q",
        "generate host key",
    )
    host_public_key = (
        await _run_required(handle, f"cat {shlex.quote(artifacts.host_public_key_path)}", "read host key")
    ).strip()
    if not host_public_key:
        raise BridgeError(f"Failed to load SSH host public key from sandbox '{handle.sandbox_id}'.")
    if host_public_key.split()[:2] == public_key.split()[:2]:
        raise BridgeError("SSH host key must differ from the client key.")
    write_private(session.known_hosts_path, f"{SSH_HOST_ALIAS} {host_public_key}\n")

    await _run_required(
        handle,
        _write_remote_file_command(artifacts.sshd_config_path, build_sshd_config(artifacts) + "\n"),
        "write sshd_config",
    )
    await _run_required(handle, "sudo mkdir -p /run/sshd", "prepare /run/sshd")
    await _run_required(handle, f"sudo /usr/sbin/sshd -f {shlex.quote(artifacts.sshd_config_path)}", "start sshd")
    await _run_required(handle, build_relay_start_command(artifacts), "start websockify")

    session.ws_url = to_ws_url(handle.get_host(artifacts.relay_port))
    if readiness_probe is not None and not await readiness_probe(session.ws_url):
        LOGGER.warning("SSH bridge relay at %s did not answer yet; attaching anyway.", session.ws_url)


async def cleanup_bridge_session(handle: SandboxHandle, session: BridgeSession) -> None:
    """Tear down remote processes and files, then always delete the local key directory."""

    artifacts = session.artifacts
    if artifacts is not None:
        await artifacts.relay.terminate(handle)
        await artifacts.sshd.terminate(handle)
        paths = " ".join(shlex.quote(path) for path in artifacts.remove_paths())
        command = f'for path in {paths} ; do rm -f "$path"; done; rm -rf {shlex.quote(artifacts.session_dir)}'
        try:
            await handle.run(command, timeout_ms=SSH_SHORT_TIMEOUT_MS)
        except Exception as exc:
            LOGGER.debug("Ignoring remote artifact cleanup failure in sandbox %s: %s", handle.sandbox_id, exc)

    if not remove_tree(session.local_dir) and session.local_dir.exists():
        LOGGER.warning("Could not remove local SSH bridge directory %s", session.local_dir)


def filter_startup_env(env: Mapping[str, str]) -> Dict[str, str]:
    valid: Dict[str, str] = {}
    for key, value in env.items():
        if ENV_NAME_PATTERN.match(key):
            valid[key] = str(value)
        else:
            LOGGER.warning("Skipping startup env '%s': not a valid shell variable name.", key)
    return valid


async def stage_startup_env(handle: SandboxHandle, session: BridgeSession, env: Mapping[str, str]) -> str | None:
    """Write an owner-only script in the session directory exporting ``env``.

    Values travel through the command's environment under prefixed carrier
    names, never through the command text, so a login profile resetting
    variables such as ``PATH`` cannot change what is written.
    """

    valid = filter_startup_env(env)
    if not valid:
        return None
    if session.artifacts is None:
        raise BridgeError("Cannot stage startup env: SSH bridge session has no remote session directory.")

    script_path = session.artifacts.startup_env_path
    path_q = shlex.quote(script_path)
    names = " ".join(shlex.quote(key) for key in valid)
    script = (
        f"umask 077 && : > {path_q} && for key in {names}; do carrier={STAGE_ENV_PREFIX}$key; "
        f"printf 'export %s=%q\\n' \"$key\" \"${{!carrier}}\" >> {path_q}; done && chmod 600 {path_q}"
    )
    carriers = {f"{STAGE_ENV_PREFIX}{key}": value for key, value in valid.items()}
    await _run_required(handle, f"/bin/bash -c {shlex.quote(script)}", "stage startup env", envs=carriers)
    session.startup_env_script_path = script_path
    return script_path


def build_interactive_remote_command(
    command: str,
    *,
    cwd: str | None = None,
    env_script_path: str | None = None,
) -> str:
    steps = []
    if cwd and cwd.strip():
        steps.append(f"cd {shlex.quote(cwd.strip())}")
    if env_script_path:
        steps.append(f"source {shlex.quote(env_script_path)}")
    steps.append(f"exec {command}")
    return f"bash -lc {shlex.quote(' && '.join(steps))}"
