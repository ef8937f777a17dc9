# src/acquisition_app/file_store.py

import re
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from credential_orchestrator.credential_store import CredentialStoreWriter
from credential_orchestrator.error_handler import CredentialStoreError
from credential_orchestrator.models import CredentialRecord
from credential_orchestrator.utils import write_json_atomic

lib_logger = logging.getLogger('acquisition_app')


class FileCredentialStore(CredentialStoreWriter):
    """
    Writes each acquired credential to its own JSON file under ``base_dir``.

    Files are named ``<provider>_<auth_method>_<n>.json`` and carry the record's
    non-secret fields under ``_proxy_metadata``. Writes are atomic and owner-only.
    """

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        self.base_dir = Path(base_dir) if base_dir else Path.cwd() / "oauth_creds"
        self._lock = asyncio.Lock()

    def _next_path(self, record: CredentialRecord) -> Path:
        prefix = f"{record.provider_id}_{record.auth_method.value}"
        pattern = re.compile(rf"^{re.escape(prefix)}_(\d+)\.json$")
        taken = [
            int(m.group(1))
            for m in (pattern.match(p.name) for p in self.base_dir.glob(f"{prefix}_*.json"))
            if m
        ]
        return self.base_dir / f"{prefix}_{max(taken, default=0) + 1}.json"

    @staticmethod
    def _serialize(record: CredentialRecord) -> Dict[str, Any]:
        data = dict(record.secret_material)
        data["_proxy_metadata"] = {
            "provider_id": record.provider_id,
            "auth_method": record.auth_method.value,
            "source": record.source.value,
            "display_name": record.display_name,
            "expiry": record.expiry.isoformat() if record.expiry else None,
            **record.metadata,
        }
        return data

    async def save(self, record: CredentialRecord) -> str:
        async with self._lock:
            try:
                self.base_dir.mkdir(parents=True, exist_ok=True)
                path = self._next_path(record)
                write_json_atomic(path, self._serialize(record))
            except (OSError, TypeError, ValueError) as e:
                raise CredentialStoreError(f"Failed to write credential to {self.base_dir}: {e}") from e
        lib_logger.info(f"Saved credential for '{record.provider_id}' to {path.name}")
        return path.name
