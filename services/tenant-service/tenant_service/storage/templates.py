"""Template sources used to seed tenant sites."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..errors import TemplateNotFound

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TemplateFile:
    path: str
    content: bytes


class TemplateRepository(Protocol):
    def resolve(self, name: str) -> Sequence[TemplateFile]: ...


class InMemoryTemplateRepository:
    """Templates held as ``{name: {path: content}}``."""

    def __init__(self, templates: Mapping[str, Mapping[str, bytes | str]] | None = None) -> None:
        self._templates: dict[str, dict[str, bytes]] = {}
        for name, files in (templates or {}).items():
            self.register(name, files)

    def register(self, name: str, files: Mapping[str, bytes | str]) -> None:
        self._templates[name] = {
            path: content.encode("utf-8") if isinstance(content, str) else content
            for path, content in files.items()
        }

    def resolve(self, name: str) -> list[TemplateFile]:
        files = self._templates.get(name)
        if files is None:
            raise TemplateNotFound("template not found", {"template": name})
        return [TemplateFile(path=path, content=files[path]) for path in sorted(files)]


class DirectoryTemplateRepository:
    """Templates stored as sub-directories of ``root``; every file is part of the template."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def resolve(self, name: str) -> list[TemplateFile]:
        if not name or name in {".", ".."} or "/" in name or "\\" in name:
            raise TemplateNotFound("template not found", {"template": name})
        base = self._root / name
        if not base.is_dir():
            raise TemplateNotFound("template not found", {"template": name})

        files = [
            TemplateFile(path=path.relative_to(base).as_posix(), content=path.read_bytes())
            for path in sorted(base.rglob("*"))
            if path.is_file()
        ]
        logger.debug("resolved template %s with %d files", name, len(files))
        return files
