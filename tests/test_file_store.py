import json
import os
from datetime import datetime, timezone

import pytest

from acquisition_app.file_store import FileCredentialStore
from credential_orchestrator.error_handler import CredentialStoreError, ErrorKind, UserDeniedError, classify_error
from credential_orchestrator.failure_logger import log_failure
from credential_orchestrator.models import (
    AcquisitionSession,
    AcquisitionStrategy,
    AuthMethod,
    CredentialRecord,
    CredentialSource,
)
from credential_orchestrator.utils import write_json_atomic


def _record(**overrides):
    fields = dict(
        provider_id="qwen",
        auth_method=AuthMethod.DEVICE,
        secret_material={"access_token": "a-token", "refresh_token": "r-token"},
        source=CredentialSource.DEVICE_CODE,
        expiry=datetime(2026, 1, 1, tzinfo=timezone.utc),
        display_name="laptop",
    )
    fields.update(overrides)
    return CredentialRecord(**fields)


@pytest.mark.asyncio
async def test_file_store_numbers_files_per_provider_and_method(tmp_path) -> None:
    store = FileCredentialStore(tmp_path / "creds")

    first = await store.save(_record())
    second = await store.save(_record())
    other = await store.save(_record(auth_method=AuthMethod.API_KEY, secret_material={"api_key": "k"}))

    assert first == "qwen_device_1.json"
    assert second == "qwen_device_2.json"
    assert other == "qwen_api_key_1.json"


@pytest.mark.asyncio
async def test_file_store_writes_metadata_alongside_secret(tmp_path) -> None:
    store = FileCredentialStore(tmp_path)

    name = await store.save(_record(metadata={"project_id": "proj-1"}))
    data = json.loads((tmp_path / name).read_text(encoding="utf-8"))

    assert data["access_token"] == "a-token"
    assert data["_proxy_metadata"] == {
        "provider_id": "qwen",
        "auth_method": "device",
        "source": "device_code",
        "display_name": "laptop",
        "expiry": "2026-01-01T00:00:00+00:00",
        "project_id": "proj-1",
    }
    assert not list(tmp_path.glob(".tmp_*"))


@pytest.mark.asyncio
@pytest.mark.skipif(os.name != "posix", reason="permission bits are POSIX only")
async def test_file_store_files_are_owner_only(tmp_path) -> None:
    store = FileCredentialStore(tmp_path)

    name = await store.save(_record())

    assert (tmp_path / name).stat().st_mode & 0o777 == 0o600


@pytest.mark.asyncio
async def test_file_store_reports_unwritable_directory(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store = FileCredentialStore(blocker)

    with pytest.raises(CredentialStoreError):
        await store.save(_record())


def test_write_json_atomic_stringifies_values_and_replaces_existing(tmp_path) -> None:
    target = tmp_path / "dated.json"
    target.write_text("stale")

    write_json_atomic(target, {"when": datetime(2026, 1, 1)})

    assert json.loads(target.read_text()) == {"when": "2026-01-01 00:00:00"}
    assert not list(tmp_path.glob(".tmp_*"))


def test_write_json_atomic_raises_when_directory_is_missing(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        write_json_atomic(tmp_path / "missing" / "x.json", {"a": 1})


def test_log_failure_writes_masked_json_line(tmp_path) -> None:
    session = AcquisitionSession(
        id="session-1",
        provider_id="qwen",
        strategy=AcquisitionStrategy.DEVICE_CODE,
        user_facing_code="ABCD-1234",
    )
    try:
        try:
            raise UserDeniedError("denied on the consent page")
        except UserDeniedError as e:
            raise CredentialStoreError("wrapped") from e
    except CredentialStoreError as e:
        classified = classify_error(e)

    log_failure(session, classified, str(tmp_path))

    entry = json.loads((tmp_path / "failures.log").read_text(encoding="utf-8").splitlines()[-1])
    assert entry["session_id"] == "session-1"
    assert entry["strategy"] == "device_code"
    assert entry["kind"] == ErrorKind.STORAGE_FAILED.value
    assert entry["user_code_ending"] == "...D-1234"
    assert [link["type"] for link in entry["error_chain"]] == ["CredentialStoreError", "UserDeniedError"]
