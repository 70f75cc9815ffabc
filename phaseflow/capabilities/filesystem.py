"""
Project-scoped filesystem.

All paths are interpreted relative to the project root; any path that
resolves outside it is refused with ``PathViolation``.
"""

from typing import List
from pathlib import Path
import logging
import os
import shutil

from phaseflow.engine.errors import PathViolation


logger = logging.getLogger(__name__)


class ProjectFileSystem:
    """
    Filesystem capability confined to a root directory.

    Usage:
        fs = ProjectFileSystem("/srv/projects/novel")
        fs.write("chapters/01.md", "# Chapter 1")
        fs.read("chapters/01.md")
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def resolve(self, path: str) -> Path:
        """Absolute path inside the root, or PathViolation."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        relative = os.path.relpath(resolved, self.root)
        if relative == ".." or relative.startswith(".." + os.sep) or os.path.isabs(relative):
            raise PathViolation(f"Path '{path}' is outside the project folder")
        return resolved

    def resolve_entry(self, path: str) -> Path:
        """Like resolve, but the root itself is refused."""
        resolved = self.resolve(path)
        if resolved == self.root:
            raise PathViolation(f"Path '{path}' is the project folder itself")
        return resolved

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def read(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    def write(self, path: str, content: str, overwrite: bool = True) -> str:
        """
        Write a text file, creating parent directories.

        With ``overwrite=False`` an existing file is kept and the content
        goes to the first free ``name-N.ext`` instead.

        Returns:
            The path written, relative to the root
        """
        target = self.resolve(path)
        if not overwrite:
            target = self._next_free(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.debug(f"Wrote {len(content)} chars to {target}")
        return self.relative(target)

    def list(self, path: str = ".") -> List[str]:
        directory = self.resolve(path)
        return sorted(self.relative(p) for p in directory.iterdir())

    def delete(self, path: str) -> bool:
        """Delete a file; returns whether it existed."""
        target = self.resolve_entry(path)
        if not target.exists():
            return False
        if target.is_dir():
            shutil.rmtree(target)
        else:
            target.unlink()
        return True

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def copy(self, source: str, destination: str, overwrite: bool = True) -> str:
        src = self.resolve(source)
        dst = self.resolve(destination)
        if not overwrite:
            dst = self._next_free(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        return self.relative(dst)

    def move(self, source: str, destination: str, overwrite: bool = True) -> str:
        src = self.resolve_entry(source)
        dst = self.resolve(destination)
        if not overwrite:
            dst = self._next_free(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dst))
        return self.relative(dst)

    @staticmethod
    def _next_free(target: Path) -> Path:
        if not target.exists():
            return target
        counter = 1
        while True:
            candidate = target.with_name(f"{target.stem}-{counter}{target.suffix}")
            if not candidate.exists():
                return candidate
            counter += 1
