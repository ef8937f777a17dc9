# src/credential_orchestrator/utils/__init__.py

from .headless_detection import is_headless_environment
from .resilient_io import write_json_atomic

__all__ = [
    "is_headless_environment",
    "write_json_atomic",
]
