from __future__ import annotations

import os
from pathlib import Path


def relay_home() -> Path:
    env = os.environ.get("RBXRELAY_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".rbxrelay").resolve()


def ensure_home() -> Path:
    home = relay_home()
    home.mkdir(parents=True, exist_ok=True)
    return home
