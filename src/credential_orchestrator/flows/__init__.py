# src/credential_orchestrator/flows/__init__.py

from typing import Dict, Optional

from ..availability import AvailabilityProber
from ..models import AcquisitionStrategy
from .base import FlowContext, FlowEngine
from .device_code import DeviceCodeFlow
from .callback import AuthorizationCodeCallbackFlow, OAuthCallbackServer
from .automated_browser import (
    AutomatedBrowserFlow,
    BrowserDriver,
    CompletionResult,
    DriverFactory,
    PlaywrightBrowserDriver,
)
from .manual_entry import LocalFileImportFlow, PastedSecretFlow


def default_engines(
    prober: Optional[AvailabilityProber] = None,
    driver_factory: Optional[DriverFactory] = None,
) -> Dict[AcquisitionStrategy, FlowEngine]:
    """Builds one engine per acquisition strategy."""
    engines = [
        DeviceCodeFlow(),
        AuthorizationCodeCallbackFlow(),
        AutomatedBrowserFlow(prober=prober, driver_factory=driver_factory),
        LocalFileImportFlow(),
        PastedSecretFlow(),
    ]
    return {engine.strategy: engine for engine in engines}


__all__ = [
    "FlowContext",
    "FlowEngine",
    "DeviceCodeFlow",
    "AuthorizationCodeCallbackFlow",
    "OAuthCallbackServer",
    "AutomatedBrowserFlow",
    "BrowserDriver",
    "CompletionResult",
    "PlaywrightBrowserDriver",
    "LocalFileImportFlow",
    "PastedSecretFlow",
    "default_engines",
]
