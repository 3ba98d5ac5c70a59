"""Filesystem helpers shared across clawgate modules."""

import json
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, returning it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the clawgate data directory (~/.clawgate)."""
    return ensure_dir(Path.home() / ".clawgate")


def get_workspace_path(workspace: str | None = None) -> Path:
    """
    Resolve and create the agent workspace.

    Args:
        workspace: Optional workspace path. Defaults to ~/.clawgate/workspace.

    Returns:
        Expanded workspace path.
    """
    if workspace:
        path = Path(workspace).expanduser()
    else:
        path = get_data_path() / "workspace"
    return ensure_dir(path)


def today_date() -> str:
    """Today's date as YYYY-MM-DD."""
    return datetime.now().strftime("%Y-%m-%d")


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to path via a temp file in the same directory and a rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, ensure_ascii=False, indent=2)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=str(path.parent),
        prefix=f"{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as tmp:
        tmp.write(payload)
        tmp_path = Path(tmp.name)
    tmp_path.replace(path)
