from __future__ import annotations

import os
from pathlib import Path

from conduit import paths


def test_platform_dirs_use_xdg_homes() -> None:
    expected_config = Path(os.environ["XDG_CONFIG_HOME"]) / "conduit"
    expected_state = Path(os.environ["XDG_STATE_HOME"]) / "conduit"

    assert paths.config_dir() == expected_config
    assert paths.config_dir().is_dir()
    assert paths.log_dir().is_relative_to(expected_state)
    assert paths.log_dir().is_dir()
