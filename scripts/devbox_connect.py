#!/usr/bin/env python3
"""Create (or reconnect to) a sandbox, bootstrap the project and attach a terminal."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from devbox_lib.bootstrap import BootstrapError, bootstrap_project_workspace  # noqa: E402
from devbox_lib.bridge import BridgeError  # noqa: E402
from devbox_lib.config import ConfigError, LauncherConfig, load_config  # noqa: E402
from devbox_lib.logs import configure_logging  # noqa: E402
from devbox_lib.modes import launch_interactive  # noqa: E402
from devbox_lib.repos import RepoError  # noqa: E402
from devbox_lib.sandbox import (  # noqa: E402
    SandboxError,
    SandboxHandle,
    build_metadata_tags,
    connect_sandbox,
    create_sandbox,
    resolve_sandbox_create_env,
)
from devbox_lib.setup import SetupPipelineError  # noqa: E402

LOGGER = logging.getLogger("devbox.cli")

LAUNCH_ERRORS = (
    BootstrapError,
    BridgeError,
    ConfigError,
    RepoError,
    SandboxError,
    SetupPipelineError,
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", type=Path, help="Path to devbox.config.toml (defaults to ./ then ~/.config/devbox)")
    parser.add_argument("--env-file", type=Path, help="Optional .env file (defaults to ./.env)")
    parser.add_argument("--sandbox-id", help="Reconnect to an existing sandbox instead of creating one")
    parser.add_argument("--command", default="bash", help="Command to run in the interactive session (default: bash)")
    parser.add_argument("--log-level", help="Log level for devbox loggers (default: $DEVBOX_LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


async def _open_sandbox(config: LauncherConfig, sandbox_id: str | None, runtime_env: dict[str, str]) -> SandboxHandle:
    if sandbox_id:
        LOGGER.info("Connecting to sandbox %s", sandbox_id)
        return await connect_sandbox(sandbox_id)
    project_name = config.project.repos[0].name if len(config.project.repos) == 1 else config.sandbox.name
    return await create_sandbox(
        config.sandbox.template,
        timeout_ms=config.sandbox.timeout_ms,
        metadata=build_metadata_tags(project=project_name, mode=config.project.mode, user=getpass.getuser()),
        envs=runtime_env,
    )


async def run(args: argparse.Namespace) -> dict[str, object]:
    config = load_config(args.config, env_path=args.env_file)
    runtime_env = resolve_sandbox_create_env(config.pass_through, config.env_values)
    handle = await _open_sandbox(config, args.sandbox_id, runtime_env)
    created = not args.sandbox_id
    try:
        result = await bootstrap_project_workspace(
            handle,
            config,
            is_connect=not created,
            runtime_env=runtime_env,
            on_progress=LOGGER.info,
        )
        launch = await launch_interactive(
            handle,
            args.command,
            working_directory=result.working_directory,
            startup_env=result.startup_env,
        )
    finally:
        if created and config.sandbox.delete_on_exit:
            LOGGER.info("Deleting sandbox %s", handle.sandbox_id)
            try:
                await handle.kill()
            except SandboxError as exc:
                LOGGER.warning("Failed to delete sandbox %s: %s", handle.sandbox_id, exc)
    return {
        "sandbox_id": handle.sandbox_id,
        "repos": result.selected_repo_names,
        "working_directory": result.working_directory,
        "setup": result.setup.to_dict() if result.setup else None,
        "mode": launch.mode,
        "message": launch.message,
        "details": launch.details,
    }


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        summary = asyncio.run(run(args))
    except LAUNCH_ERRORS as exc:
        print(f"devbox: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
