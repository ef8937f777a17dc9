# src/credential_orchestrator/utils/resilient_io.py
"""
Atomic JSON writes for credential files.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union


def write_json_atomic(
    path: Union[str, Path],
    data: Dict[str, Any],
    indent: int = 2,
    mode: Optional[int] = 0o600,
) -> None:
    """
    Writes ``data`` to ``path`` through a temp file in the same directory, so a
    reader never sees a half-written credential.

    ``mode`` is applied to the temp file before it is moved into place (skipped
    on Windows). Raises OSError, TypeError or ValueError on failure; the temp
    file never survives a failed write.
    """
    path = Path(path)
    content = json.dumps(data, indent=indent, default=str)

    tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json", text=True)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None and os.name != "nt":
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise
