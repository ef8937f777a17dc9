import sys

import pytest

from credential_orchestrator import availability
from credential_orchestrator.availability import (
    AvailabilityProber,
    find_playwright_chromium,
    playwright_cache_dir,
)
from credential_orchestrator.utils import is_headless_environment


def _fake_chromium(cache_dir, revision):
    executable = cache_dir / f"chromium-{revision}" / "chrome-linux" / "chrome"
    executable.parent.mkdir(parents=True)
    executable.write_text("")
    return executable


@pytest.fixture
def no_system_browser(monkeypatch):
    monkeypatch.setattr(availability, "find_system_browser", lambda platform=None: None)


def test_missing_package_is_unavailable() -> None:
    prober = AvailabilityProber(package_check=lambda: False)

    status = prober.is_automated_browser_available()

    assert status.available is False
    assert "pip install playwright" in status.reason


def test_system_browser_is_preferred(monkeypatch) -> None:
    monkeypatch.setattr(availability, "find_system_browser", lambda platform=None: "/usr/bin/chromium")
    prober = AvailabilityProber(package_check=lambda: True)

    status = prober.is_automated_browser_available()

    assert status.available is True
    assert status.browser_source == "system"
    assert status.browser_path == "/usr/bin/chromium"


def test_playwright_download_is_used_without_system_browser(tmp_path, no_system_browser) -> None:
    _fake_chromium(tmp_path, 1091)
    newest = _fake_chromium(tmp_path, 1140)
    prober = AvailabilityProber(
        env={"PLAYWRIGHT_BROWSERS_PATH": str(tmp_path)}, platform="linux", package_check=lambda: True
    )

    status = prober.is_automated_browser_available()

    assert status.available is True
    assert status.browser_source == "playwright"
    assert status.browser_path == str(newest)


def test_nothing_installed_is_unavailable(tmp_path, no_system_browser) -> None:
    prober = AvailabilityProber(
        env={"PLAYWRIGHT_BROWSERS_PATH": str(tmp_path / "empty")}, platform="linux", package_check=lambda: True
    )

    status = prober.is_automated_browser_available()

    assert status.available is False
    assert "playwright install chromium" in status.reason


def test_find_playwright_chromium_skips_incomplete_revisions(tmp_path) -> None:
    complete = _fake_chromium(tmp_path, 1000)
    (tmp_path / "chromium-2000").mkdir()

    assert find_playwright_chromium(tmp_path, "linux") == str(complete)
    assert find_playwright_chromium(tmp_path / "missing", "linux") is None


def test_playwright_cache_dir_per_platform(tmp_path) -> None:
    assert playwright_cache_dir({"PLAYWRIGHT_BROWSERS_PATH": str(tmp_path)}) == tmp_path
    assert playwright_cache_dir({}, "linux").parts[-2:] == (".cache", "ms-playwright")
    assert playwright_cache_dir({}, "darwin").parts[-3:] == ("Library", "Caches", "ms-playwright")
    assert playwright_cache_dir({}, "win32").parts[-3:] == ("AppData", "Local", "ms-playwright")


def test_default_install_commands() -> None:
    missing = AvailabilityProber(package_check=lambda: False).install_commands()
    present = AvailabilityProber(package_check=lambda: True).install_commands()

    assert missing == [
        [sys.executable, "-m", "pip", "install", "playwright"],
        [sys.executable, "-m", "playwright", "install", "chromium"],
    ]
    assert present == [[sys.executable, "-m", "playwright", "install", "chromium"]]


@pytest.mark.asyncio
async def test_installer_streams_output_and_reports_success(monkeypatch) -> None:
    monkeypatch.setattr(availability, "find_system_browser", lambda platform=None: "/usr/bin/chromium")
    prober = AvailabilityProber(
        package_check=lambda: True,
        install_commands=[[sys.executable, "-c", "print('hello from installer')"]],
    )

    progress = [item async for item in prober.install_automated_browser()]

    assert progress[0].message.startswith("$ ")
    assert any(item.message == "hello from installer" for item in progress)
    assert [item.done for item in progress].count(True) == 1
    assert progress[-1].done is True
    assert progress[-1].success is True


@pytest.mark.asyncio
async def test_installer_stops_at_the_first_failing_command() -> None:
    prober = AvailabilityProber(
        package_check=lambda: True,
        install_commands=[
            [sys.executable, "-c", "import sys; sys.exit(3)"],
            [sys.executable, "-c", "print('never runs')"],
        ],
    )

    progress = [item async for item in prober.install_automated_browser()]

    assert progress[-1].done is True
    assert progress[-1].success is False
    assert "exit code 3" in progress[-1].message
    assert not any(item.message == "never runs" for item in progress)


@pytest.mark.asyncio
async def test_installer_reports_commands_that_cannot_start() -> None:
    prober = AvailabilityProber(
        package_check=lambda: True,
        install_commands=[["/nonexistent/installer-binary"]],
    )

    progress = [item async for item in prober.install_automated_browser()]

    assert progress[-1].success is False
    assert progress[-1].message.startswith("Failed to start installer")


def test_headless_detection() -> None:
    assert is_headless_environment({"CI": "true", "DISPLAY": ":0"}, "linux") is True
    assert is_headless_environment({"SSH_CONNECTION": "1.2.3.4 22"}, "darwin") is True
    assert is_headless_environment({}, "linux") is True
    assert is_headless_environment({"DISPLAY": ":0"}, "linux") is False
    assert is_headless_environment({}, "darwin") is False
    assert is_headless_environment({"CAO_FORCE_HEADLESS": "1"}, "win32") is True
