from __future__ import annotations

import logging
import os
from pathlib import Path
import tempfile
import threading

from pydantic import ValidationError

from ..errors import GroupCorrupt, GroupNotFound
from ..types import EmbeddingRecord, Group

logger = logging.getLogger(__name__)

GROUP_SUFFIX = ".json"


class GroupStore:
    """One JSON file per RAG group under ``root``.

    Writes to the same group are serialized through a per-group lock held by
    this store instance. Saves rewrite the whole file atomically.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, group_name: str) -> Path:
        return self.root / f"{validate_group_name(group_name)}{GROUP_SUFFIX}"

    def exists(self, group_name: str) -> bool:
        return self.path_for(group_name).is_file()

    def load(self, group_name: str) -> Group:
        path = self.path_for(group_name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise GroupNotFound(group_name) from exc
        try:
            return Group.model_validate_json(raw)
        except ValidationError as exc:
            raise GroupCorrupt(group_name, f"{exc.error_count()} validation error(s)") from exc

    def save(self, group: Group, group_name: str) -> None:
        path = self.path_for(group_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = group.model_dump_json(by_alias=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def append(group: Group, record: EmbeddingRecord) -> Group:
        return group.model_copy(update={"embeddings": [*group.embeddings, record]})

    def lock(self, group_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(validate_group_name(group_name), threading.Lock())

    def ensure_group(self, group_name: str, part_size: int) -> Group:
        """Return the stored group, creating it empty with ``part_size`` if absent.

        The first caller fixes the group's part size; later callers get the
        stored value back whatever they asked for.
        """
        with self.lock(group_name):
            return self._load_or_create(group_name, part_size, persist=True)

    def add_record(self, group_name: str, record: EmbeddingRecord, part_size: int) -> Group:
        with self.lock(group_name):
            group = self._load_or_create(group_name, part_size, persist=False)
            updated = self.append(group, record)
            self.save(updated, group_name)
            return updated

    def _load_or_create(self, group_name: str, part_size: int, *, persist: bool) -> Group:
        try:
            group = self.load(group_name)
        except GroupNotFound:
            logger.info("Creating RAG group %s with part size %d", group_name, part_size)
            group = Group(part_size=part_size)
            if persist:
                self.save(group, group_name)
            return group

        if group.part_size != part_size:
            logger.warning(
                "Group %s was built with part size %d; ignoring requested %d",
                group_name,
                group.part_size,
                part_size,
            )
        return group

    def list_groups(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            path.stem for path in self.root.glob(f"*{GROUP_SUFFIX}") if path.is_file()
        )

    def delete_group(self, group_name: str) -> None:
        with self.lock(group_name):
            path = self.path_for(group_name)
            try:
                path.unlink()
            except FileNotFoundError as exc:
                raise GroupNotFound(group_name) from exc


def validate_group_name(group_name: str) -> str:
    name = group_name.strip()
    if not name or name in {".", ".."}:
        raise ValueError("Group name must be non-empty")
    if "/" in name or "\\" in name or "\x00" in name:
        raise ValueError(f"Group name may not contain path separators: {group_name!r}")
    return name
