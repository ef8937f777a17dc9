# src/credential_orchestrator/credential_store.py

import uuid
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List

from .models import CredentialRecord

lib_logger = logging.getLogger('credential_orchestrator')


class CredentialStoreWriter(ABC):
    """
    The receiving end of a successful acquisition.

    ``save`` is called exactly once per succeeded session and never on failure
    or cancellation. It owns the record from then on. Any exception it raises
    fails the session with a storage error.
    """

    @abstractmethod
    async def save(self, record: CredentialRecord) -> str:
        """Persists the record and returns its stored id."""
        pass


class InMemoryCredentialStore(CredentialStoreWriter):
    """Keeps records in a dict. Used by tests and dry runs."""

    def __init__(self):
        self.records: Dict[str, CredentialRecord] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: CredentialRecord) -> str:
        async with self._lock:
            stored_id = f"{record.provider_id}-{uuid.uuid4().hex[:12]}"
            self.records[stored_id] = record
        lib_logger.debug(f"Stored credential {stored_id} in memory")
        return stored_id

    def list_records(self) -> List[CredentialRecord]:
        return list(self.records.values())
