from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import jsonschema

CONFIG_FILENAME = "devbox.config.toml"
WORKING_DIR_AUTO = "auto"

_STRING_MAP = {"type": "object", "additionalProperties": {"type": "string"}}

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "sandbox": {
            "type": "object",
            "properties": {
                "template": {"type": "string", "minLength": 1},
                "name": {"type": "string"},
                "reuse": {"type": "boolean"},
                "timeout_ms": {"type": "integer", "exclusiveMinimum": 0},
                "delete_on_exit": {"type": "boolean"},
            },
        },
        "startup": {
            "type": "object",
            "properties": {"command": {"type": "string", "minLength": 1}},
        },
        "project": {
            "type": "object",
            "properties": {
                "mode": {"enum": ["single", "all"]},
                "active": {"type": "string", "minLength": 1},
                "dir": {"type": "string", "minLength": 1},
                "working_dir": {"type": "string"},
                "setup_on_connect": {"type": "boolean"},
                "setup_retries": {"type": "integer", "minimum": 0},
                "setup_delay_ms": {"type": "integer", "minimum": 0},
                "setup_continue_on_error": {"type": "boolean"},
                "repos": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["name", "url"],
                        "properties": {
                            "name": {"type": "string", "minLength": 1},
                            "url": {"type": "string", "minLength": 1},
                            "branch": {"type": "string", "minLength": 1},
                            "setup_command": {"type": "string"},
                            "setup_env": _STRING_MAP,
                            "startup_env": _STRING_MAP,
                        },
                    },
                },
            },
        },
        "env": {
            "type": "object",
            "properties": {"pass_through": {"type": "array", "items": {"type": "string"}}},
        },
    },
}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class SandboxConfig:
    template: str = "base"
    name: str = "devbox"
    reuse: bool = True
    timeout_ms: int = 60 * 60 * 1000
    delete_on_exit: bool = False


@dataclass(frozen=True)
class RepoConfig:
    name: str
    url: str
    branch: str = "main"
    setup_command: str = ""
    setup_env: Mapping[str, str] = field(default_factory=dict)
    startup_env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProjectConfig:
    mode: str = "single"
    active: str = "prompt"
    dir: str = "/home/user/workspace"
    working_dir: str = WORKING_DIR_AUTO
    setup_on_connect: bool = False
    setup_retries: int = 2
    setup_delay_ms: int = 0
    setup_continue_on_error: bool = False
    repos: Tuple[RepoConfig, ...] = ()


@dataclass(frozen=True)
class LauncherConfig:
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    project: ProjectConfig = field(default_factory=ProjectConfig)
    startup_command: str = "bash"
    pass_through: Tuple[str, ...] = ()
    env_values: Mapping[str, str] = field(default_factory=dict)
    path: Path | None = None


def config_home(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    explicit = env.get("DEVBOX_CONFIG_HOME")
    if explicit:
        return Path(explicit).expanduser()
    xdg = env.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "devbox"


def resolve_config_path(
    explicit: Path | None = None,
    *,
    cwd: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Path:
    if explicit is not None:
        return explicit
    local = (cwd or Path.cwd()) / CONFIG_FILENAME
    if local.exists():
        return local
    global_path = config_home(environ) / CONFIG_FILENAME
    if global_path.exists():
        return global_path
    raise ConfigError(
        f"Cannot load devbox config: no config file was found. Create one at '{local}' or '{global_path}'."
    )


def parse_env_file(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        values[key] = raw_value.strip().strip('"').strip("'")
    return values


def _error_path(error: jsonschema.ValidationError) -> str:
    parts: List[str] = []
    for item in error.absolute_path:
        if isinstance(item, int):
            parts[-1] = f"{parts[-1]}[{item}]" if parts else f"[{item}]"
        else:
            parts.append(str(item))
    return ".".join(parts) or "<root>"


def validate_raw_config(raw: Mapping[str, Any]) -> None:
    validator = jsonschema.Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(raw), key=lambda err: [str(part) for part in err.absolute_path])
    if errors:
        first = errors[0]
        raise ConfigError(f"Invalid {_error_path(first)}: {first.message}")


def _resolve_repos(raw_repos: List[Mapping[str, Any]]) -> Tuple[RepoConfig, ...]:
    repos: List[RepoConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_repos):
        name = str(entry["name"]).strip()
        if not name:
            raise ConfigError(f"Invalid project.repos[{index}].name: required non-empty string is missing.")
        if name in seen:
            raise ConfigError(f"Invalid project.repos[{index}].name: duplicate repo name '{name}'.")
        if "/" in name or name in {".", ".."}:
            raise ConfigError(f"Invalid project.repos[{index}].name: '{name}' must be a plain directory name.")
        seen.add(name)
        repos.append(
            RepoConfig(
                name=name,
                url=str(entry["url"]).strip(),
                branch=str(entry.get("branch") or "main"),
                setup_command=str(entry.get("setup_command") or ""),
                setup_env=dict(entry.get("setup_env") or {}),
                startup_env=dict(entry.get("startup_env") or {}),
            )
        )
    return tuple(repos)


def build_config(raw: Mapping[str, Any], *, env_values: Mapping[str, str] | None = None, path: Path | None = None) -> LauncherConfig:
    validate_raw_config(raw)
    sandbox_raw = raw.get("sandbox", {})
    project_raw = raw.get("project", {})
    defaults = ProjectConfig()

    working_dir = str(project_raw.get("working_dir", defaults.working_dir))
    if working_dir != WORKING_DIR_AUTO and not working_dir.strip():
        raise ConfigError("Invalid project.working_dir: expected 'auto' or a non-empty path string.")

    sandbox = SandboxConfig(**{key: sandbox_raw[key] for key in ("template", "name", "reuse", "timeout_ms", "delete_on_exit") if key in sandbox_raw})
    project = ProjectConfig(
        mode=project_raw.get("mode", defaults.mode),
        active=project_raw.get("active", defaults.active),
        dir=project_raw.get("dir", defaults.dir),
        working_dir=working_dir,
        setup_on_connect=project_raw.get("setup_on_connect", defaults.setup_on_connect),
        setup_retries=project_raw.get("setup_retries", defaults.setup_retries),
        setup_delay_ms=project_raw.get("setup_delay_ms", defaults.setup_delay_ms),
        setup_continue_on_error=project_raw.get("setup_continue_on_error", defaults.setup_continue_on_error),
        repos=_resolve_repos(project_raw.get("repos", [])),
    )
    return LauncherConfig(
        sandbox=sandbox,
        project=project,
        startup_command=raw.get("startup", {}).get("command", "bash"),
        pass_through=tuple(raw.get("env", {}).get("pass_through", [])),
        env_values=dict(env_values or {}),
        path=path,
    )


def load_config(
    config_path: Path | None = None,
    *,
    env_path: Path | None = None,
    cwd: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> LauncherConfig:
    """Load the TOML config plus ``.env`` values; the process environment wins over ``.env``."""

    env = dict(os.environ if environ is None else environ)
    path = resolve_config_path(config_path, cwd=cwd, environ=env)
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Cannot load devbox config at '{path}': file does not exist.") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Cannot parse devbox config at '{path}': {exc}") from exc

    env_values = parse_env_file(env_path or (cwd or Path.cwd()) / ".env")
    env_values.update(env)
    return build_config(raw, env_values=env_values, path=path)
