"""External state stores.

External state holds the work an agent has produced (sections written,
issues logged, rendered items). It lives outside the conversation, so
compressing the conversation can never lose it. Stores only grow: keys
are added or overwritten, never deleted.

Two backings share the same narrow interface: ``InMemoryState`` for a
single run and ``JsonFileState``, which writes through to a JSON
checkpoint file so a host can inspect partial work.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

from realm.exceptions import StateError

logger = logging.getLogger(__name__)


class ExternalState(Protocol):
    """Key-indexed store owned by one tool executor."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...

    def append_to_array(self, key: str, items: list) -> int: ...

    def has(self, key: str) -> bool: ...

    def keys(self) -> list[str]: ...

    def items(self) -> Iterator[tuple[str, Any]]: ...

    def snapshot(self) -> dict[str, Any]: ...

    def summarize(self) -> str: ...


def _describe(value: Any) -> str:
    size = len(json.dumps(value, ensure_ascii=False, default=str))
    if isinstance(value, list):
        return f"{len(value)} items, ~{size / 1024:.1f}KB"
    if isinstance(value, dict):
        return f"object, ~{size / 1024:.1f}KB"
    if isinstance(value, str):
        return f"text, ~{len(value) / 1024:.1f}KB"
    return str(value)[:40]


class InMemoryState:
    """Insertion-ordered in-memory store."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def put(self, key: str, value: Any) -> None:
        if not key:
            raise StateError("State key must be a non-empty string")
        updated = dict(self._data)
        updated[key] = value
        self._commit(updated)

    def append_to_array(self, key: str, items: list) -> int:
        """Append items to the list at ``key``, creating it when missing.

        Returns the new length. Raises ``StateError`` when the key already
        holds a non-list value.
        """
        if not key:
            raise StateError("State key must be a non-empty string")
        existing = self._data.get(key)
        if existing is None:
            existing = []
        elif not isinstance(existing, list):
            raise StateError(
                f"'{key}' already holds a {type(existing).__name__}, not an array"
            )
        updated = dict(self._data)
        updated[key] = [*existing, *items]
        self._commit(updated)
        return len(updated[key])

    def has(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        return list(self._data)

    def items(self) -> Iterator[tuple[str, Any]]:
        return iter(list(self._data.items()))

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def summarize(self) -> str:
        if not self._data:
            return "Nothing stored yet."
        return "\n".join(
            f"- {key} ({_describe(value)})" for key, value in self._data.items()
        )

    def __len__(self) -> int:
        return len(self._data)

    def _commit(self, updated: dict[str, Any]) -> None:
        # Memory only changes once the write-through succeeded.
        self._persist(updated)
        self._data = updated

    def _persist(self, data: dict[str, Any]) -> None:
        """Hook for write-through backings. Raise ``StateError`` to reject the write."""


class JsonFileState(InMemoryState):
    """In-memory store that checkpoints every write to a JSON file.

    A run starts empty: an existing checkpoint is overwritten unless
    ``resume`` is set, in which case its contents become the starting state.
    """

    def __init__(self, path: Path, *, resume: bool = False) -> None:
        self._path = Path(path)
        initial: dict[str, Any] = {}
        if self._path.exists():
            if resume:
                initial = self._load()
                logger.info("Resuming %d key(s) from %s", len(initial), self._path)
            else:
                logger.info("Overwriting existing state checkpoint %s", self._path)
                self._persist({})
        super().__init__(initial)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            loaded = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Cannot load state checkpoint {self._path}: {e}") from e
        if not isinstance(loaded, dict):
            raise StateError(f"State checkpoint {self._path} is not a JSON object")
        return loaded

    def _persist(self, data: dict[str, Any]) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(data, ensure_ascii=False, indent=2, default=str),
                encoding="utf-8",
            )
            tmp_path.replace(self._path)
        except OSError as e:
            raise StateError(f"Cannot write state checkpoint {self._path}: {e}") from e
