"""`rbxrelay gui`: run the relay with its dashboard in a Chrome app window.

The relay runs as a child process. Closing the dashboard window stops the
relay; stopping the launcher (SIGINT/SIGTERM) stops it too.
"""
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import sys
import time
import webbrowser
from pathlib import Path
from typing import Any, List, Optional

logger = logging.getLogger("rbxrelay.gui")

STARTUP_DELAY_S = 2.0
KILL_GRACE_S = 2.0
WINDOW_SIZE = "1400,900"

_CHROME_NAMES = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "chrome")


def _chrome_candidates() -> List[Path]:
    out: List[Path] = []
    for base in (os.environ.get("PROGRAMFILES"), os.environ.get("PROGRAMFILES(X86)"), os.environ.get("LOCALAPPDATA")):
        if base:
            out.append(Path(base) / "Google" / "Chrome" / "Application" / "chrome.exe")
    out.append(Path("/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"))
    return out


def find_chrome() -> Optional[str]:
    env = str(os.environ.get("RBXRELAY_CHROME") or "").strip()
    if env:
        return env
    for p in _chrome_candidates():
        if p.exists():
            return str(p)
    for name in _CHROME_NAMES:
        found = shutil.which(name)
        if found:
            return found
    return None


def start_server(host: str, port: int, log_level: str = "") -> "subprocess.Popen[Any]":
    cmd = [sys.executable, "-m", "rbxrelay.ports.web.main", "--host", host, "--port", str(port)]
    if log_level:
        cmd += ["--log-level", log_level]
    logger.info(f"Starting relay on {host}:{port}")
    return subprocess.Popen(cmd, stdin=subprocess.DEVNULL)


def stop_server(proc: "subprocess.Popen[Any]", grace_s: float = KILL_GRACE_S) -> None:
    """SIGTERM the relay, then SIGKILL it if it is still alive after `grace_s`."""
    if proc.poll() is not None:
        return
    logger.info("Stopping relay")
    proc.terminate()
    try:
        proc.wait(timeout=grace_s)
    except subprocess.TimeoutExpired:
        logger.warning("Relay did not stop in time; killing it")
        proc.kill()
        proc.wait()


def open_dashboard(url: str) -> "Optional[subprocess.Popen[Any]]":
    """Open `url` in a Chrome app window. Falls back to the default browser (returns None)."""
    chrome = find_chrome()
    if chrome:
        try:
            return subprocess.Popen(
                [chrome, f"--app={url}", f"--window-size={WINDOW_SIZE}"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"Could not start Chrome ({chrome}): {e}")
    logger.info(f"Opening dashboard in the default browser: {url}")
    webbrowser.open(url)
    return None


def run_gui(
    host: str = "127.0.0.1",
    port: int = 3000,
    *,
    log_level: str = "",
    startup_delay_s: float = STARTUP_DELAY_S,
    poll_s: float = 0.5,
) -> int:
    server = start_server(host, port, log_level)

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info(f"Launcher received signal {signum}")
        stop_server(server)
        raise SystemExit(0)

    prev_int = signal.signal(signal.SIGINT, _on_signal)
    prev_term = signal.signal(signal.SIGTERM, _on_signal)
    try:
        time.sleep(startup_delay_s)
        code = server.poll()
        if code is not None:
            logger.error(f"Relay exited during startup (code={code})")
            return int(code) or 1

        window = open_dashboard(f"http://{'localhost' if host in ('0.0.0.0', '127.0.0.1') else host}:{port}/gui")
        while True:
            code = server.poll()
            if code is not None:
                logger.info(f"Relay exited (code={code})")
                if window is not None and window.poll() is None:
                    window.terminate()
                return int(code)
            if window is not None and window.poll() is not None:
                logger.info("Dashboard window closed")
                stop_server(server)
                return 0
            time.sleep(poll_s)
    finally:
        signal.signal(signal.SIGINT, prev_int)
        signal.signal(signal.SIGTERM, prev_term)
