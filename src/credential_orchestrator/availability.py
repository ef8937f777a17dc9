# src/credential_orchestrator/availability.py
"""
Availability probing and installation of the automated browser engine.

Probing only inspects the filesystem: it never imports Playwright and never
starts a browser, so it is safe to call before every automated session.
"""

import os
import re
import sys
import shutil
import asyncio
import logging
import importlib
import importlib.util
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, List, Mapping, Optional, Sequence

lib_logger = logging.getLogger('credential_orchestrator')

SOURCE_SYSTEM = "system"
SOURCE_PLAYWRIGHT = "playwright"

SYSTEM_BROWSER_PATHS = {
    "darwin": [
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
        "/Applications/Chromium.app/Contents/MacOS/Chromium",
        "/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge",
        "~/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ],
    "win32": [
        r"C:\Program Files\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Microsoft\Edge\Application\msedge.exe",
        r"~\AppData\Local\Google\Chrome\Application\chrome.exe",
    ],
    "linux": [
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/snap/bin/chromium",
        "/usr/bin/microsoft-edge",
    ],
}

SYSTEM_BROWSER_COMMANDS = [
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "microsoft-edge",
]

# Executable location inside an ms-playwright/chromium-<rev> directory
PLAYWRIGHT_EXECUTABLES = {
    "darwin": [
        "chrome-mac/Chromium.app/Contents/MacOS/Chromium",
        "chrome-mac-arm64/Chromium.app/Contents/MacOS/Chromium",
    ],
    "win32": ["chrome-win/chrome.exe", "chrome-win64/chrome.exe"],
    "linux": ["chrome-linux/chrome", "chrome-linux64/chrome"],
}

UNAVAILABLE_REASON = (
    "No usable browser found. Install Google Chrome or run: playwright install chromium"
)


@dataclass(frozen=True)
class AvailabilityStatus:
    available: bool
    reason: Optional[str] = None
    browser_path: Optional[str] = None
    browser_source: Optional[str] = None


@dataclass(frozen=True)
class InstallProgress:
    message: str
    done: bool = False
    success: Optional[bool] = None


def _platform_key(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return "win32"
    if platform == "darwin":
        return "darwin"
    return "linux"


def find_system_browser(platform: Optional[str] = None) -> Optional[str]:
    """Returns the first Chrome / Chromium / Edge executable installed on the system."""
    key = _platform_key(platform)
    for candidate in SYSTEM_BROWSER_PATHS[key]:
        path = Path(candidate).expanduser()
        if path.is_file():
            return str(path)
    if key != "darwin":
        for command in SYSTEM_BROWSER_COMMANDS:
            found = shutil.which(command)
            if found:
                return found
    return None


def playwright_cache_dir(env: Optional[Mapping[str, str]] = None,
                         platform: Optional[str] = None) -> Path:
    env = os.environ if env is None else env
    override = env.get("PLAYWRIGHT_BROWSERS_PATH")
    if override and override != "0":
        return Path(override).expanduser()
    key = _platform_key(platform)
    home = Path.home()
    if key == "darwin":
        return home / "Library" / "Caches" / "ms-playwright"
    if key == "win32":
        return home / "AppData" / "Local" / "ms-playwright"
    return home / ".cache" / "ms-playwright"


def _revision(directory: Path) -> int:
    match = re.search(r"(\d+)$", directory.name)
    return int(match.group(1)) if match else -1


def find_playwright_chromium(cache_dir: Path, platform: Optional[str] = None) -> Optional[str]:
    """Returns the newest Playwright-managed Chromium executable in ``cache_dir``."""
    if not cache_dir.is_dir():
        return None
    key = _platform_key(platform)
    candidates = [d for d in cache_dir.glob("chromium-*") if d.is_dir()]
    for directory in sorted(candidates, key=_revision, reverse=True):
        for relative in PLAYWRIGHT_EXECUTABLES[key]:
            executable = directory / relative
            if executable.is_file():
                return str(executable)
    return None


def _playwright_package_installed() -> bool:
    return importlib.util.find_spec("playwright") is not None


class AvailabilityProber:
    """
    Reports whether the automated browser engine can run, and installs it on request.

    The engine needs the ``playwright`` Python package plus a Chromium build.
    A system Chrome / Chromium / Edge is preferred over the Playwright download.
    """

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        platform: Optional[str] = None,
        package_check: Optional[Callable[[], bool]] = None,
        install_commands: Optional[Sequence[Sequence[str]]] = None,
    ):
        self._env = env
        self._platform = platform
        self._package_check = package_check or _playwright_package_installed
        self._install_commands = install_commands

    def is_automated_browser_available(self) -> AvailabilityStatus:
        if not self._package_check():
            return AvailabilityStatus(
                available=False,
                reason="The 'playwright' package is not installed. Run: pip install playwright",
            )

        system_browser = find_system_browser(self._platform)
        if system_browser:
            return AvailabilityStatus(True, browser_path=system_browser, browser_source=SOURCE_SYSTEM)

        bundled = find_playwright_chromium(playwright_cache_dir(self._env, self._platform), self._platform)
        if bundled:
            return AvailabilityStatus(True, browser_path=bundled, browser_source=SOURCE_PLAYWRIGHT)

        return AvailabilityStatus(available=False, reason=UNAVAILABLE_REASON)

    def install_commands(self) -> List[List[str]]:
        if self._install_commands is not None:
            return [list(c) for c in self._install_commands]
        commands = []
        if not self._package_check():
            commands.append([sys.executable, "-m", "pip", "install", "playwright"])
        commands.append([sys.executable, "-m", "playwright", "install", "chromium"])
        return commands

    async def install_automated_browser(self) -> AsyncIterator[InstallProgress]:
        """
        Runs the install commands one after another, streaming their output.

        Yields one InstallProgress per output line and finishes with a single
        ``done=True`` item. Closing the generator early kills the running command.
        """
        for command in self.install_commands():
            yield InstallProgress(f"$ {' '.join(command)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as e:
                lib_logger.error(f"Failed to start installer command {command[0]}: {e}")
                yield InstallProgress(f"Failed to start installer: {e}", done=True, success=False)
                return

            try:
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").rstrip()
                    if line:
                        yield InstallProgress(line)
                returncode = await process.wait()
            finally:
                if process.returncode is None:
                    process.kill()
                    await process.wait()

            if returncode != 0:
                lib_logger.error(f"Installer command exited with code {returncode}: {' '.join(command)}")
                yield InstallProgress(f"Installation failed (exit code {returncode})", done=True, success=False)
                return

        # A freshly pip-installed package is invisible to find_spec until caches are dropped
        importlib.invalidate_caches()
        status = self.is_automated_browser_available()
        if status.available:
            lib_logger.info(f"Automated browser installed ({status.browser_source}: {status.browser_path})")
            yield InstallProgress("Automated browser is ready.", done=True, success=True)
        else:
            yield InstallProgress(
                f"Installation finished but the browser is still unavailable: {status.reason}",
                done=True,
                success=False,
            )
