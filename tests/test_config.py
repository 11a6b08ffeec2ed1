from __future__ import annotations

from pathlib import Path

import pytest

from devbox_lib.config import (
    CONFIG_FILENAME,
    ConfigError,
    build_config,
    config_home,
    load_config,
    parse_env_file,
    resolve_config_path,
)

SAMPLE = """
[sandbox]
template = "devbox-node"
timeout_ms = 900000

[startup]
command = "opencode"

[project]
mode = "single"
active = "api"
setup_retries = 1

[[project.repos]]
name = "api"
url = "https://github.com/acme/api.git"
branch = "develop"
setup_command = "make setup"
startup_env = { API_MODE = "local" }

[[project.repos]]
name = "web"
url = "https://github.com/acme/web.git"

[env]
pass_through = ["NPM_TOKEN"]
"""


def test_load_config_applies_defaults_and_env_file(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text(SAMPLE, encoding="utf-8")
    (tmp_path / ".env").write_text("# comment\nNPM_TOKEN=from-dotenv\nexport GH_TOKEN='abc'\n", encoding="utf-8")

    config = load_config(cwd=tmp_path, environ={"NPM_TOKEN": "from-process"})

    assert config.path == tmp_path / CONFIG_FILENAME
    assert config.sandbox.template == "devbox-node"
    assert config.sandbox.timeout_ms == 900000
    assert config.startup_command == "opencode"
    assert config.project.dir == "/home/user/workspace"
    assert config.project.working_dir == "auto"
    assert config.project.setup_retries == 1
    assert config.project.setup_continue_on_error is False
    assert config.project.setup_on_connect is False
    api, web = config.project.repos
    assert (api.branch, api.setup_command, dict(api.startup_env)) == ("develop", "make setup", {"API_MODE": "local"})
    assert (web.branch, web.setup_command) == ("main", "")
    assert config.pass_through == ("NPM_TOKEN",)
    assert config.env_values["NPM_TOKEN"] == "from-process"
    assert config.env_values["GH_TOKEN"] == "abc"


def test_empty_config_uses_every_default() -> None:
    config = build_config({})

    assert config.sandbox.template == "base"
    assert config.sandbox.timeout_ms == 3_600_000
    assert config.project.mode == "single"
    assert config.project.active == "prompt"
    assert config.project.setup_retries == 2
    assert config.project.repos == ()
    assert config.startup_command == "bash"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ({"project": {"setup_retries": -1}}, "Invalid project.setup_retries:"),
        ({"project": {"mode": "many"}}, "Invalid project.mode:"),
        ({"sandbox": {"timeout_ms": 0}}, "Invalid sandbox.timeout_ms:"),
        ({"project": {"repos": [{"name": "api"}]}}, "Invalid project.repos[0]:"),
        ({"project": {"repos": [{"name": "api", "url": "u", "setup_env": {"A": 1}}]}}, "Invalid project.repos[0].setup_env.A:"),
    ],
)
def test_schema_errors_report_dotted_path(raw, expected: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        build_config(raw)

    assert str(excinfo.value).startswith(expected)


def test_duplicate_repo_names_are_rejected() -> None:
    raw = {"project": {"repos": [{"name": "api", "url": "a"}, {"name": "api", "url": "b"}]}}

    with pytest.raises(ConfigError, match=r"Invalid project.repos\[1\].name: duplicate repo name 'api'"):
        build_config(raw)


def test_blank_working_dir_is_rejected() -> None:
    with pytest.raises(ConfigError, match="Invalid project.working_dir"):
        build_config({"project": {"working_dir": "  "}})


def test_invalid_toml_names_the_file(tmp_path: Path) -> None:
    path = tmp_path / "broken.toml"
    path.write_text("[sandbox\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Cannot parse devbox config"):
        load_config(path, cwd=tmp_path, environ={})


def test_resolution_prefers_cwd_then_config_home(tmp_path: Path) -> None:
    home = tmp_path / "home"
    (home).mkdir()
    (home / CONFIG_FILENAME).write_text("", encoding="utf-8")
    cwd = tmp_path / "project"
    cwd.mkdir()
    environ = {"DEVBOX_CONFIG_HOME": str(home)}

    assert resolve_config_path(cwd=cwd, environ=environ) == home / CONFIG_FILENAME
    (cwd / CONFIG_FILENAME).write_text("", encoding="utf-8")
    assert resolve_config_path(cwd=cwd, environ=environ) == cwd / CONFIG_FILENAME


def test_missing_config_explains_where_to_create_it(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="no config file was found"):
        resolve_config_path(cwd=tmp_path, environ={"DEVBOX_CONFIG_HOME": str(tmp_path / "nowhere")})


def test_config_home_honours_xdg(tmp_path: Path) -> None:
    assert config_home({"XDG_CONFIG_HOME": str(tmp_path)}) == tmp_path / "devbox"
    assert config_home({"DEVBOX_CONFIG_HOME": str(tmp_path / "x")}) == tmp_path / "x"


def test_parse_env_file_missing_returns_empty(tmp_path: Path) -> None:
    assert parse_env_file(tmp_path / ".env") == {}
