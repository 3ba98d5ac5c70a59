"""Utility functions for clawgate."""

from clawgate.utils.helpers import atomic_write_json, ensure_dir, get_data_path, get_workspace_path

__all__ = ["atomic_write_json", "ensure_dir", "get_data_path", "get_workspace_path"]
