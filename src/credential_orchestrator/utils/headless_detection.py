# src/credential_orchestrator/utils/headless_detection.py

import os
import sys
import logging
from typing import Mapping, Optional

lib_logger = logging.getLogger('credential_orchestrator')


def is_headless_environment(env: Optional[Mapping[str, str]] = None,
                            platform: Optional[str] = None) -> bool:
    """
    Returns True when no local browser window can be shown.

    Used to decide whether to open the consent page automatically or only
    print it, and whether the automated browser has to run headless.
    """
    env = os.environ if env is None else env
    platform = platform or sys.platform

    if env.get("CAO_FORCE_HEADLESS", "").lower() in ("1", "true", "yes"):
        return True
    if env.get("CI"):
        lib_logger.debug("Headless environment detected: CI")
        return True
    if env.get("SSH_CONNECTION") or env.get("SSH_TTY"):
        lib_logger.debug("Headless environment detected: SSH session")
        return True
    if platform.startswith("linux") and not (env.get("DISPLAY") or env.get("WAYLAND_DISPLAY")):
        lib_logger.debug("Headless environment detected: no DISPLAY or WAYLAND_DISPLAY")
        return True
    return False
