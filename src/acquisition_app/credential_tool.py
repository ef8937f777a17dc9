# src/acquisition_app/credential_tool.py

import asyncio
import logging
import webbrowser
from typing import Any, Dict, Optional

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.text import Text

from credential_orchestrator import (
    AcquisitionStrategy,
    SessionState,
    StrategyRegistry,
)
from credential_orchestrator.availability import AvailabilityProber
from credential_orchestrator.error_handler import (
    AcquisitionError,
    InvalidStrategyError,
    classify_error,
)
from credential_orchestrator.session_supervisor import SessionSupervisor
from credential_orchestrator.utils import is_headless_environment

lib_logger = logging.getLogger('acquisition_app')

console = Console()

STRATEGY_LABELS = {
    AcquisitionStrategy.DEVICE_CODE: "Device code (enter a code in your browser)",
    AcquisitionStrategy.AUTHORIZATION_CODE_CALLBACK: "Browser sign-in (system browser)",
    AcquisitionStrategy.AUTOMATED_BROWSER: "Automated browser sign-in",
    AcquisitionStrategy.LOCAL_FILE_IMPORT: "Import existing CLI credential file",
    AcquisitionStrategy.PASTED_SECRET: "Paste an API key or credential JSON",
}

STATE_MESSAGES = {
    SessionState.POLLING: "Waiting for you to approve the device code...",
    SessionState.LISTENING: "Waiting for you to complete authentication in the browser...",
    SessionState.DRIVING: "Complete the sign-in in the automated browser window...",
}


def check_browser(prober: AvailabilityProber) -> bool:
    """Prints the automated browser status. Returns True if it is usable."""
    status = prober.is_automated_browser_available()
    if status.available:
        console.print(
            Panel(
                Text.from_markup(
                    f"Automated browser is available.\n"
                    f"Source: [bold cyan]{status.browser_source}[/bold cyan]\n"
                    f"Path: {rich_escape(status.browser_path or '')}"
                ),
                title="Automated Browser",
                style="bold green",
            )
        )
    else:
        console.print(
            Panel(
                Text.from_markup(
                    f"{rich_escape(status.reason or 'Unavailable')}\n\n"
                    "Run with [bold]--install-browser[/bold] to install it."
                ),
                title="Automated Browser",
                style="bold yellow",
            )
        )
    return status.available


async def install_browser(prober: AvailabilityProber) -> bool:
    console.print(Panel("[bold cyan]Installing automated browser[/bold cyan]", expand=False))
    success = False
    async for progress in prober.install_automated_browser():
        if progress.done:
            success = bool(progress.success)
            style = "bold green" if success else "bold red"
            console.print(f"[{style}]{rich_escape(progress.message)}[/{style}]")
        else:
            console.print(f"[dim]{rich_escape(progress.message)}[/dim]")
    return success


def _show_user_action(provider_label: str, display_name: Optional[str], strategy: AcquisitionStrategy,
                      url: str, user_code: Optional[str], headless: bool) -> None:
    if user_code:
        panel_text = Text.from_markup(
            f"1. Visit the URL below and sign in.\n"
            f"2. Enter this code if asked: [bold yellow]{rich_escape(user_code)}[/bold yellow]"
        )
    elif headless:
        panel_text = Text.from_markup(
            "Running in headless environment (no GUI detected).\n"
            "Please open the URL below in a browser on this machine to authorize."
        )
    else:
        panel_text = Text.from_markup(
            "1. Your browser will now open to log in and authorize the application.\n"
            "2. If it doesn't open automatically, please open the URL below manually."
        )

    title = f"{provider_label} Sign-in"
    if display_name:
        title += f" for [bold yellow]{rich_escape(display_name)}[/bold yellow]"
    console.print(Panel(panel_text, title=title, style="bold blue"))
    # OAuth URLs contain characters Rich would read as markup
    console.print(f"[bold]URL:[/bold] [link={url}]{rich_escape(url)}[/link]\n")

    if not headless and strategy != AcquisitionStrategy.AUTOMATED_BROWSER:
        try:
            webbrowser.open(url)
            lib_logger.info("Browser opened successfully for sign-in")
        except webbrowser.Error as e:
            lib_logger.warning(f"Failed to open browser automatically: {e}. Please open the URL manually.")


async def acquire(
    supervisor: SessionSupervisor,
    provider_id: str,
    strategy: AcquisitionStrategy,
    display_name: Optional[str] = None,
    params: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Runs one acquisition session and renders its progress.
    Ctrl+C cancels the session. Returns True on success.
    """
    provider = supervisor.registry.get(provider_id)
    headless = is_headless_environment()
    try:
        session_id = await supervisor.start(provider_id, strategy, display_name, params)
    except InvalidStrategyError as e:
        console.print(Panel(str(e), style="bold red", title="Error"))
        return False
    except AcquisitionError as e:
        classified = e.classified or classify_error(e)
        _show_failure(classified.human_message, classified.remediation_suggestions)
        return False

    status = None
    try:
        async for event in supervisor.subscribe(session_id):
            if status is not None:
                status.stop()
                status = None
            if event.state == SessionState.AWAITING_USER_ACTION and event.verification_uri:
                _show_user_action(provider.label, display_name, strategy, event.verification_uri,
                                  event.user_facing_code, headless)
            elif event.state == SessionState.DRIVING and event.verification_uri:
                console.print(f"[dim]Opening {rich_escape(event.verification_uri)} in the automated browser[/dim]")
            if event.state in STATE_MESSAGES:
                status = console.status(f"[bold green]{STATE_MESSAGES[event.state]}[/bold green]", spinner="dots")
                status.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]Cancelling...[/yellow]")
        await supervisor.cancel(session_id)
        raise
    finally:
        if status is not None:
            status.stop()

    snapshot = supervisor.status(session_id)
    if snapshot.state == SessionState.SUCCEEDED:
        console.print(
            Panel(
                Text.from_markup(
                    f"Credential for [bold cyan]{rich_escape(provider.label)}[/bold cyan] "
                    f"saved as [bold yellow]'{rich_escape(snapshot.stored_id or '')}'[/bold yellow]."
                ),
                style="bold green",
                title="Success",
            )
        )
        return True
    if snapshot.state == SessionState.CANCELLED:
        console.print("[yellow]Sign-in cancelled.[/yellow]")
        return False

    error = snapshot.error
    if error is not None and error.surfaced:
        _show_failure(error.human_message, error.remediation_suggestions)
    elif error is not None:
        console.print(f"[dim]{rich_escape(error.human_message)}[/dim]")
    return False


def _show_failure(message: str, suggestions) -> None:
    text = Text(message)
    for suggestion in suggestions:
        text.append(f"\n  • {suggestion}")
    console.print(Panel(text, style="bold red", title="Error"))


def _ask_params(registry: StrategyRegistry, provider_id: str, strategy: AcquisitionStrategy) -> Dict[str, Any]:
    provider = registry.get(provider_id)
    params: Dict[str, Any] = {}
    if strategy == AcquisitionStrategy.LOCAL_FILE_IMPORT:
        default_path = registry.default_path_for(provider_id)
        params["path"] = Prompt.ask("Credential file path", default=str(default_path) if default_path else None)
        if provider.requires_project_id:
            params["project_id"] = Prompt.ask("Project ID (leave empty to read it from the file)", default="") or None
    elif strategy == AcquisitionStrategy.PASTED_SECRET:
        params["secret"] = Prompt.ask("Paste the API key or credential JSON", password=True)
        base_url = Prompt.ask("Base URL (optional)", default=provider.default_base_url or "")
        if base_url:
            params["base_url"] = base_url
    return params


def _choose(title: str, options, prompt: str) -> Optional[int]:
    text = Text()
    for i, label in enumerate(options):
        text.append(f"  {i + 1}. {label}\n")
    console.print(Panel(text, title=title, style="bold blue"))
    choice = Prompt.ask(
        Text.from_markup(f"[bold]{prompt} or type [red]'b'[/red] to go back[/bold]"),
        choices=[str(i + 1) for i in range(len(options))] + ["b"],
        show_choices=False,
    )
    if choice.lower() == "b":
        return None
    return int(choice) - 1


async def interactive(supervisor: SessionSupervisor) -> None:
    """The interactive menu: pick a provider, a strategy, then sign in."""
    registry = supervisor.registry
    providers = registry.providers()

    while True:
        console.print(
            Panel(
                "[bold cyan]Interactive Credential Acquisition[/bold cyan]",
                title="--- Credential Orchestrator ---",
                expand=False,
            )
        )
        index = _choose("Available Providers", [p.label for p in providers], "Please select a provider")
        if index is None:
            break
        provider = providers[index]

        strategies = sorted(provider.strategies, key=lambda s: list(AcquisitionStrategy).index(s))
        index = _choose(
            f"Sign-in methods for {provider.label}",
            [STRATEGY_LABELS[s] for s in strategies],
            "Please select a method",
        )
        if index is None:
            continue
        strategy = strategies[index]

        display_name = Prompt.ask("Display name for this credential (optional)", default="") or None
        params = _ask_params(registry, provider.id, strategy)
        console.print(f"\nStarting sign-in for [bold cyan]{rich_escape(provider.label)}[/bold cyan]...")
        await acquire(supervisor, provider.id, strategy, display_name, params)

        console.print("\n[dim]Press Enter to return to main menu...[/dim]")
        await asyncio.get_running_loop().run_in_executor(None, input)


async def run(args, supervisor: SessionSupervisor) -> int:
    async with supervisor:
        if args.provider:
            strategy = AcquisitionStrategy(args.strategy)
            params: Dict[str, Any] = {}
            if args.file:
                params["path"] = args.file
            if args.project_id:
                params["project_id"] = args.project_id
            if args.secret:
                params["secret"] = args.secret
            if args.base_url:
                params["base_url"] = args.base_url
            ok = await acquire(supervisor, args.provider, strategy, args.name, params)
            return 0 if ok else 1
        await interactive(supervisor)
        return 0
