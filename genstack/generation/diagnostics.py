"""
Compiler Diagnostics
====================

Parses TypeScript compiler (tsc) and Prisma CLI output into structured
errors, buckets them by kind, and renders a bounded report that is fed back
to the model during the compiler-check loop.

Both common tsc output formats are supported:

    file(line,col): error TSxxxx: message
    file:line:col - error TSxxxx: message
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

# Shown in the model report
MAX_DEPENDENCY_ERRORS = 5
MAX_REPORTED_ERRORS = 10

DEPENDENCY_CODES = {"TS2307", "TS7016"}
CONFIG_CODES = {
    "TS6046", "TS6053", "TS6059", "TS6231", "TS6304", "TS6305",
    "TS6306", "TS6307", "TS6310", "TS18002", "TS18003",
}

# Each match is confined to one line.
_PAREN_FORMAT = re.compile(
    r"^[ \t]*([^:(\n]+?)\((\d+),(\d+)\):[ \t]*error[ \t]+(TS\d+):[ \t]*([^\n]+)",
    re.MULTILINE,
)
_COLON_FORMAT = re.compile(
    r"^[ \t]*([^:(\n]+?):(\d+):(\d+)[ \t]*-[ \t]*error[ \t]+(TS\d+):[ \t]*([^\n]+)",
    re.MULTILINE,
)
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


class DiagnosticCategory(str, Enum):
    DEPENDENCY = "dependency"
    TYPE = "type"
    CONFIG = "config"


@dataclass(frozen=True)
class DiagnosticError:
    file: str
    line: int
    column: int
    code: str
    message: str

    @property
    def category(self) -> DiagnosticCategory:
        return categorize_code(self.code)

    def render(self) -> str:
        return f"{self.file}:{self.line}:{self.column} - {self.code}: {self.message}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
        }


def _with_workspace(path: str, workspace: str) -> str:
    path = path.strip()
    if not workspace:
        return path
    workspace = workspace.rstrip("/")
    if path == workspace or path.startswith(f"{workspace}/"):
        return path
    return f"{workspace}/{path}"


def parse_typescript_errors(output: str, workspace: str) -> List[DiagnosticError]:
    """
    Extract every tsc error from ``output``, in output order.

    Args:
        output: Raw stdout (or stderr) of a tsc run
        workspace: Workspace label (``server``/``client``) prefixed to each
            file unless the path already starts with it

    Returns:
        Structured errors
    """
    text = _ANSI_ESCAPE.sub("", output)
    matches = sorted(
        list(_PAREN_FORMAT.finditer(text)) + list(_COLON_FORMAT.finditer(text)),
        key=lambda m: m.start(),
    )
    return [
        DiagnosticError(
            file=_with_workspace(m.group(1), workspace),
            line=int(m.group(2)),
            column=int(m.group(3)),
            code=m.group(4),
            message=m.group(5).strip(),
        )
        for m in matches
    ]


def categorize_code(code: str) -> DiagnosticCategory:
    if code in DEPENDENCY_CODES:
        return DiagnosticCategory.DEPENDENCY
    # TS5xxx are compiler-option errors
    if code in CONFIG_CODES or re.fullmatch(r"TS5\d{3}", code):
        return DiagnosticCategory.CONFIG
    return DiagnosticCategory.TYPE


def categorize(errors: List[DiagnosticError]) -> Dict[DiagnosticCategory, List[DiagnosticError]]:
    """Bucket errors by category, keeping their relative order."""
    groups: Dict[DiagnosticCategory, List[DiagnosticError]] = {
        category: [] for category in DiagnosticCategory
    }
    for error in errors:
        groups[error.category].append(error)
    return groups


def format_for_model(errors: List[DiagnosticError]) -> str:
    """
    Render a bounded report for the model.

    Dependency errors come first (at most five, with an install hint), then
    type errors fill the remaining slots up to ten in total, then every
    config error. Each truncated section states how many were left out.
    """
    count = len(errors)
    if count == 0:
        return "TypeScript found no errors."

    groups = categorize(errors)
    lines = [f"TypeScript found {count} type error{'' if count == 1 else 's'}:", ""]
    number = 0

    def add(section: List[DiagnosticError]) -> None:
        nonlocal number
        for error in section:
            number += 1
            lines.append(f"{number}. {error.render()}")

    dependency = groups[DiagnosticCategory.DEPENDENCY]
    if dependency:
        lines.append(f"Missing modules ({len(dependency)}):")
        add(dependency[:MAX_DEPENDENCY_ERRORS])
        hidden = len(dependency) - MAX_DEPENDENCY_ERRORS
        if hidden > 0:
            lines.append(f"... and {hidden} more dependency errors")
        lines.append(
            "Install missing packages with executeCommand "
            "(npm install <package> --workspace <client|server>) or fix the import path."
        )
        lines.append("")

    type_errors = groups[DiagnosticCategory.TYPE]
    if type_errors:
        slots = max(0, MAX_REPORTED_ERRORS - number)
        add(type_errors[:slots])
        hidden = len(type_errors) - slots
        if hidden > 0:
            lines.append(f"\n... and {hidden} more errors")
        lines.append("")

    config = groups[DiagnosticCategory.CONFIG]
    if config:
        lines.append(f"Configuration errors ({len(config)}):")
        add(config)
        lines.append("")

    lines.append("Fix these errors by updating the relevant files.")
    return "\n".join(lines)


def parse_prisma_errors(stderr: str) -> List[str]:
    """
    Split Prisma CLI stderr into error blocks.

    A block starts at a line containing "error" (any case) and continues
    through the indented lines that follow it. When nothing matches, the
    whole stderr is returned as a single block.
    """
    errors: List[str] = []
    current: List[str] = []
    in_block = False

    for line in stderr.split("\n"):
        trimmed = line.strip()
        if trimmed.startswith("Error:") or "error" in trimmed.lower():
            if current:
                errors.append("\n".join(current))
            current = [trimmed]
            in_block = True
        elif in_block and line.startswith(" ") and trimmed:
            current.append(trimmed)
        elif in_block and not line.startswith(" "):
            if current:
                errors.append("\n".join(current))
            current = []
            in_block = False

    if current:
        errors.append("\n".join(current))

    if not errors and stderr.strip():
        errors.append(stderr.strip())
    return errors


def format_prisma_errors_for_model(errors: List[str]) -> str:
    lines = [f"Prisma schema validation found {len(errors)} error{'' if len(errors) == 1 else 's'}:", ""]
    for index, error in enumerate(errors, start=1):
        lines.append(f"{index}. {error}")
    lines.append("")
    lines.append("Fix prisma/schema.prisma, then run npx prisma generate.")
    return "\n".join(lines)
