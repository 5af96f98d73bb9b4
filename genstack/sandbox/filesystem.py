"""
Session Sandbox Filesystem
==========================

Every generation session owns one directory under the generated root. All
model-authored paths are resolved relative to it and may never leave it.
"""

import re
import shutil
from pathlib import Path
from typing import List, Optional

from genstack.utils.errors import PathValidationError
from genstack.utils.logging import get_logger

logger = get_logger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_DRIVE_LETTER = re.compile(r"^[a-zA-Z]:")

# Never listed back to the model or copied out of a template
IGNORED_NAMES = {"node_modules", ".git", "dist", ".vite", "coverage"}


class SandboxFilesystem:
    """Per-session working directories rooted at ``generated_dir``."""

    def __init__(self, generated_dir: Path, templates_dir: Optional[Path] = None):
        self.generated_dir = Path(generated_dir).resolve()
        self.templates_dir = Path(templates_dir).resolve() if templates_dir else None

    def get_sandbox_path(self, session_id: str) -> Path:
        safe_id = _UNSAFE_ID_CHARS.sub("_", session_id)
        return self.generated_dir / safe_id

    def initialize_sandbox(self, session_id: str) -> Path:
        sandbox = self.get_sandbox_path(session_id)
        sandbox.mkdir(parents=True, exist_ok=True)
        logger.info("Sandbox initialized", extra={"session_id": session_id, "path": sandbox})
        return sandbox

    def validate_path(self, session_id: str, relative_path: str) -> Path:
        """
        Resolve ``relative_path`` inside the session sandbox.

        Raises:
            PathValidationError: path is absolute, uses Windows syntax, or
                resolves outside the sandbox
        """
        if not isinstance(relative_path, str):
            raise PathValidationError("Path must be a string", path=repr(relative_path))
        if not relative_path.strip():
            raise PathValidationError("Path must not be empty", path=relative_path)
        if "\\" in relative_path:
            raise PathValidationError("Backslashes are not allowed in paths", path=relative_path)
        if _DRIVE_LETTER.match(relative_path):
            raise PathValidationError("Drive letters are not allowed in paths", path=relative_path)
        if relative_path.startswith("/"):
            raise PathValidationError("Absolute paths are not allowed", path=relative_path)

        sandbox = self.get_sandbox_path(session_id).resolve()
        target = (sandbox / relative_path).resolve()
        if target != sandbox and sandbox not in target.parents:
            raise PathValidationError(
                f"Path escapes sandbox directory: {relative_path}", path=relative_path
            )
        return target

    def write_file(self, session_id: str, relative_path: str, content: str) -> str:
        target = self.validate_path(session_id, relative_path)
        if target.is_dir():
            raise IsADirectoryError(f"Cannot write to {relative_path}: it is a directory")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return f"Successfully wrote {len(content)} characters to {relative_path}"

    def read_file(self, session_id: str, relative_path: str) -> str:
        target = self.validate_path(session_id, relative_path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {relative_path}")
        return target.read_text(encoding="utf-8")

    def list_files(self, session_id: str) -> List[str]:
        """Relative POSIX paths of every file in the sandbox, sorted."""
        sandbox = self.get_sandbox_path(session_id)
        if not sandbox.exists():
            return []
        return sorted(
            path.relative_to(sandbox).as_posix()
            for path in sandbox.rglob("*")
            if path.is_file() and not IGNORED_NAMES.intersection(path.relative_to(sandbox).parts)
        )

    def get_file_tree(self, session_id: str) -> str:
        sandbox = self.get_sandbox_path(session_id)
        if not sandbox.exists():
            return "(empty)"
        lines: List[str] = []
        self._render_tree(sandbox, "", lines)
        return "\n".join(lines) if lines else "(empty)"

    def _render_tree(self, directory: Path, prefix: str, lines: List[str]) -> None:
        entries = sorted(
            (p for p in directory.iterdir() if p.name not in IGNORED_NAMES),
            key=lambda p: (not p.is_dir(), p.name),
        )
        for index, entry in enumerate(entries):
            last = index == len(entries) - 1
            connector = "└── " if last else "├── "
            lines.append(f"{prefix}{connector}{entry.name}{'/' if entry.is_dir() else ''}")
            if entry.is_dir():
                self._render_tree(entry, prefix + ("    " if last else "│   "), lines)

    def copy_template(self, template_name: str, session_id: str) -> List[str]:
        """
        Copy a template tree into the sandbox.

        Returns:
            Relative paths of the copied files
        """
        if self.templates_dir is None:
            raise FileNotFoundError("No templates directory configured")
        if _UNSAFE_ID_CHARS.search(template_name):
            raise PathValidationError(f"Invalid template name: {template_name}", path=template_name)

        source = self.templates_dir / template_name
        if not source.is_dir():
            raise FileNotFoundError(f"Template not found: {template_name}")

        sandbox = self.initialize_sandbox(session_id)
        shutil.copytree(
            source,
            sandbox,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(*IGNORED_NAMES),
        )
        copied = self.list_files(session_id)
        logger.info(
            "Template copied to sandbox",
            extra={"template": template_name, "file_count": len(copied)},
        )
        return copied

    def cleanup_sandbox(self, session_id: str) -> None:
        sandbox = self.get_sandbox_path(session_id)
        if sandbox.exists():
            shutil.rmtree(sandbox)
            logger.info("Sandbox removed", extra={"path": sandbox})
