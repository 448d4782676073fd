from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

import yaml


def load_yaml_dict(path: str | Path, *, error_message: str | None = None) -> dict[str, Any]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if isinstance(payload, dict):
        return payload
    raise ValueError(error_message or f"Expected YAML object in '{resolved}'.")


class YamlFileStore:
    """YAML document on disk, rewritten atomically through a sibling temp file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        return default if payload is None else payload

    def write(self, payload: Any, *, sort_keys: bool = False) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=sort_keys)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise

    def update(self, mutate: Callable[[dict[str, Any]], bool]) -> bool:
        """Load the document, apply ``mutate`` and write it back when it reports a change."""
        document = self.load(default={})
        if not isinstance(document, dict):
            raise ValueError(f"Expected YAML object in '{self.path}'.")
        changed = mutate(document)
        if changed:
            self.write(document)
        return changed
