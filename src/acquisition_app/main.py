# src/acquisition_app/main.py

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import colorlog
from dotenv import load_dotenv

from credential_orchestrator import AcquisitionStrategy


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Interactive credential acquisition tool")
    parser.add_argument(
        "--check-browser",
        action="store_true",
        help="Report whether the automated browser can run, then exit.",
    )
    parser.add_argument(
        "--install-browser",
        action="store_true",
        help="Install the automated browser (Playwright + Chromium), then exit.",
    )
    parser.add_argument("--provider", type=str, help="Provider id to sign in to (skips the menu).")
    parser.add_argument(
        "--strategy",
        type=str,
        default=AcquisitionStrategy.DEVICE_CODE.value,
        choices=[s.value for s in AcquisitionStrategy],
        help="Acquisition strategy to use with --provider.",
    )
    parser.add_argument("--name", type=str, help="Display name for the new credential.")
    parser.add_argument("--file", type=str, help="Credential file for local_file_import.")
    parser.add_argument("--project-id", type=str, help="Project id for providers that need one.")
    parser.add_argument("--secret", type=str, help="API key or credential JSON for pasted_secret.")
    parser.add_argument("--base-url", type=str, help="Base URL override for pasted_secret.")
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Directory credentials are saved to (default: ./oauth_creds).",
    )
    parser.add_argument("--verbose", action="store_true", help="Show debug logs on the console.")
    return parser.parse_args(argv)


def load_env_files(root_dir: Path) -> list:
    """Loads .env first, then any additional *.env files without overriding."""
    load_dotenv(root_dir / ".env")
    env_files = sorted(root_dir.glob("*.env"))
    for env_file in env_files:
        if env_file.name != ".env":
            load_dotenv(env_file, override=False)
    return env_files


# Ensures the debug handler ONLY gets DEBUG messages from the orchestrator library
class OrchestratorDebugFilter(logging.Filter):
    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith(
            "credential_orchestrator"
        )


def configure_logging(log_dir: Path, verbose: bool = False) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)

    # Configure a console handler with color (INFO and above unless verbose)
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    file_format = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    info_file_handler = logging.FileHandler(log_dir / "orchestrator.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(file_format)

    debug_file_handler = logging.FileHandler(log_dir / "orchestrator_debug.log", encoding="utf-8")
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(file_format)
    debug_file_handler.addFilter(OrchestratorDebugFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(info_file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(debug_file_handler)

    # Silence other noisy loggers by setting their level higher than root
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def main(argv=None) -> None:
    args = parse_args(argv)

    root_dir = Path.cwd()
    load_env_files(root_dir)

    # Heavy imports (aiohttp, httpx, engines) deferred until after argument parsing
    from credential_orchestrator import OrchestratorSettings, StrategyRegistry
    from credential_orchestrator.availability import AvailabilityProber
    from credential_orchestrator.session_supervisor import SessionSupervisor
    from acquisition_app.credential_tool import check_browser, install_browser, run
    from acquisition_app.file_store import FileCredentialStore

    settings = OrchestratorSettings.from_env()
    configure_logging(Path(settings.failure_log_dir), verbose=args.verbose)
    prober = AvailabilityProber()

    if args.check_browser:
        sys.exit(0 if check_browser(prober) else 1)
    if args.install_browser:
        sys.exit(0 if asyncio.run(install_browser(prober)) else 1)

    supervisor = SessionSupervisor(
        store=FileCredentialStore(args.output_dir),
        registry=StrategyRegistry.from_env(),
        settings=settings,
        prober=prober,
    )
    try:
        exit_code = asyncio.run(run(args, supervisor))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
