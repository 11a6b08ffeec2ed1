import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def reset_devbox_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate config/logging env between tests."""

    for var in (
        "DEVBOX_CONFIG_HOME",
        "DEVBOX_LOG_LEVEL",
        "DEVBOX_LOG_FILE",
        "XDG_CONFIG_HOME",
        "GH_TOKEN",
        "GITHUB_TOKEN",
    ):
        monkeypatch.delenv(var, raising=False)
