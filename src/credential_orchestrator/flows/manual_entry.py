# src/credential_orchestrator/flows/manual_entry.py
"""
Strategies that need no provider round-trip: importing an existing CLI
credential file and accepting a pasted API key or credential JSON.

Both finish straight from CREATED to a terminal state.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from ..error_handler import InvalidInputError, mask_credential
from ..models import (
    AcquisitionStrategy,
    AuthMethod,
    CredentialRecord,
    CredentialSource,
)
from .base import FlowContext, FlowEngine

lib_logger = logging.getLogger('credential_orchestrator')

# At least one of these must be present in an imported credential
TOKEN_KEYS = ("access_token", "refresh_token", "accessToken", "refreshToken", "api_key", "apiKey")


def parse_expiry(data: Dict[str, Any]) -> Optional[datetime]:
    """
    Reads the expiry of a CLI credential file.

    ``expiry_date`` is milliseconds since the epoch (Google / Qwen CLIs);
    ``expires_at`` / ``expiresAt`` / ``expiry`` are ISO 8601 or epoch seconds.
    """
    raw = data.get("expiry_date")
    if raw not in (None, ""):
        try:
            return datetime.fromtimestamp(float(raw) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            raise InvalidInputError(f"Invalid expiry_date: {raw!r}")

    for key in ("expires_at", "expiresAt", "expiry"):
        raw = data.get(key)
        if raw in (None, ""):
            continue
        if isinstance(raw, (int, float)):
            try:
                return datetime.fromtimestamp(float(raw), tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                raise InvalidInputError(f"Invalid {key}: {raw!r}")
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            raise InvalidInputError(f"Invalid {key}: {raw!r}")
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def validate_credential_json(data: Any, origin: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise InvalidInputError(f"{origin} must contain a JSON object")
    if not any(data.get(k) for k in TOKEN_KEYS):
        raise InvalidInputError(f"{origin} contains no access token, refresh token or API key")
    return data


class LocalFileImportFlow(FlowEngine):
    """
    Imports a credential file written by a provider's own CLI.

    Parameters: ``path`` (defaults to the provider's registered location) and
    ``project_id`` for providers that need one. The file is only ever read.
    """

    strategy = AcquisitionStrategy.LOCAL_FILE_IMPORT

    async def run(self, ctx: FlowContext) -> CredentialRecord:
        raw_path = ctx.params.get("path") or ctx.provider.default_credential_path
        if not raw_path:
            raise InvalidInputError(f"No credential file path given for provider '{ctx.provider.id}'")
        path = Path(raw_path).expanduser()

        content = await ctx.token.wait_for(self._read(path))
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"{path.name} is not valid JSON: {e.msg}")
        data = validate_credential_json(data, path.name)

        metadata: Dict[str, Any] = {"path": str(path)}
        project_id = ctx.params.get("project_id") or data.get("project_id")
        if project_id:
            metadata["project_id"] = project_id
        elif ctx.provider.requires_project_id:
            raise InvalidInputError(f"Provider '{ctx.provider.id}' requires a project_id")

        lib_logger.info(f"Imported credential file '{path.name}' for provider '{ctx.provider.id}'.")
        return CredentialRecord(
            provider_id=ctx.provider.id,
            auth_method=AuthMethod.IMPORTED_FILE,
            secret_material=data,
            source=CredentialSource.LOCAL_FILE,
            expiry=parse_expiry(data),
            display_name=ctx.session.display_name,
            metadata=metadata,
        )

    @staticmethod
    async def _read(path: Path) -> str:
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                return await f.read()
        except FileNotFoundError:
            raise InvalidInputError(f"Credential file not found: {path}")
        except IsADirectoryError:
            raise InvalidInputError(f"Credential path is a directory: {path}")
        except (OSError, UnicodeDecodeError) as e:
            raise InvalidInputError(f"Could not read credential file {path}: {e}")


class PastedSecretFlow(FlowEngine):
    """
    Accepts a pasted ``secret``: an API key, or a credential JSON blob.
    An optional ``base_url`` overrides the provider's default endpoint.
    """

    strategy = AcquisitionStrategy.PASTED_SECRET

    async def run(self, ctx: FlowContext) -> CredentialRecord:
        secret = (ctx.params.get("secret") or "").strip()
        if not secret:
            raise InvalidInputError("No secret was provided")

        metadata: Dict[str, Any] = {}
        base_url = (ctx.params.get("base_url") or "").strip() or ctx.provider.default_base_url
        if base_url:
            if not base_url.startswith(("http://", "https://")):
                raise InvalidInputError(f"base_url must be an http(s) URL, got '{base_url}'")
            metadata["base_url"] = base_url.rstrip("/")

        if secret.startswith("{"):
            try:
                data = json.loads(secret)
            except json.JSONDecodeError as e:
                raise InvalidInputError(f"Pasted JSON is invalid: {e.msg}")
            data = validate_credential_json(data, "Pasted JSON")
            lib_logger.info(f"Accepted pasted credential JSON for provider '{ctx.provider.id}'.")
            return CredentialRecord(
                provider_id=ctx.provider.id,
                auth_method=AuthMethod.IMPORTED_FILE,
                secret_material=data,
                source=CredentialSource.PASTED,
                expiry=parse_expiry(data),
                display_name=ctx.session.display_name,
                metadata=metadata,
            )

        if any(c.isspace() for c in secret):
            raise InvalidInputError("API keys cannot contain whitespace")

        lib_logger.info(f"Accepted pasted API key {mask_credential(secret)} for provider '{ctx.provider.id}'.")
        return CredentialRecord(
            provider_id=ctx.provider.id,
            auth_method=AuthMethod.API_KEY,
            secret_material={"api_key": secret},
            source=CredentialSource.PASTED,
            display_name=ctx.session.display_name,
            metadata=metadata,
        )
