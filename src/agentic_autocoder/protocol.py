"""Response protocol parser.

Turns a model-authored response written in the marker language into an
ordered list of FileOperation values:

    $$$ FOLDER_CREATE <path> %%%
    $$$ FILE_CREATE <path> ... $$$ FILE_END %%%
    $$$ FILE_MODIFY <path> ... $$$ FILE_END %%%
    $$$ COMMAND_EXEC <json> $$$ COMMAND_END %%%

Parsing is fail-open: a block that is unterminated, interrupted by another
directive, or missing its %%% terminator yields no operation. Every skip
is logged and, if the caller passes a list, appended to ``warnings``.
Parsing never raises and has no side effects.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

TERMINATOR = "%%%"


class OperationKind(str, Enum):
    CREATE_FOLDER = "createFolder"
    CREATE_FILE = "createFile"
    MODIFY_FILE = "modifyFile"
    EXEC_COMMAND = "execCommand"


class EditAction(str, Enum):
    REPLACE = "replace"
    INSERT_AFTER = "insert_after"
    INSERT_BEFORE = "insert_before"


@dataclass
class EditDirective:
    """One patch directive inside a FILE_MODIFY block.

    For REPLACE, ``target`` is the verbatim old code; for inserts it is the
    literal substring that identifies the anchor line.
    """
    action: EditAction
    target: str
    code: str
    identifier: Optional[str] = None


@dataclass
class CommandSpec:
    command: str
    cwd: Optional[str] = None
    is_background: bool = False
    description: str = ""

    @staticmethod
    def background_value(data: dict):
        return data.get("isBackground", data.get("is_background"))

    @classmethod
    def from_dict(cls, data: dict) -> "CommandSpec":
        """Build from COMMAND_EXEC JSON; only a JSON true runs in the background."""
        command = data["command"].strip()
        background = cls.background_value(data)
        cwd = data.get("cwd")
        return cls(
            command=command,
            cwd=cwd if isinstance(cwd, str) and cwd.strip() else None,
            is_background=background is True,
            description=str(data.get("description") or command),
        )

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "cwd": self.cwd,
            "isBackground": self.is_background,
            "description": self.description,
        }


@dataclass
class FileOperation:
    kind: OperationKind
    path: Optional[str] = None
    content: Optional[str] = None
    edits: List[EditDirective] = field(default_factory=list)
    commands: List[CommandSpec] = field(default_factory=list)

    def describe(self) -> str:
        if self.kind == OperationKind.CREATE_FOLDER:
            return f"Create folder {self.path}"
        if self.kind == OperationKind.CREATE_FILE:
            return f"Create file {self.path}"
        if self.kind == OperationKind.MODIFY_FILE:
            return f"Modify file {self.path} ({len(self.edits)} edit(s))"
        return "Run " + ", ".join(c.command for c in self.commands)


@dataclass
class CodeBlock:
    language: str
    code: str


# =============================================================================
# MARKERS
# =============================================================================

_COMMAND_START = re.compile(r"^[ \t]*\$\$\$ COMMAND_EXEC[ \t]*$", re.MULTILINE)
_FILE_CREATE_START = re.compile(
    r"^[ \t]*\$\$\$ FILE_CREATE[ \t]+(?P<path>\S[^\n]*?)[ \t]*$", re.MULTILINE
)
_FILE_MODIFY_START = re.compile(
    r"^[ \t]*\$\$\$ FILE_MODIFY[ \t]+(?P<path>\S[^\n]*?)[ \t]*$", re.MULTILINE
)
_COMMAND_END = re.compile(r"^[ \t]*\$\$\$ COMMAND_END(?P<rest>[^\n]*)$", re.MULTILINE)
_FILE_END = re.compile(r"^[ \t]*\$\$\$ FILE_END(?P<rest>[^\n]*)$", re.MULTILINE)

# Any directive opening line; a block body containing one was never closed
_DIRECTIVE_START = re.compile(
    r"^[ \t]*\$\$\$ (?:FILE_CREATE|FILE_MODIFY|COMMAND_EXEC|FOLDER_CREATE)\b",
    re.MULTILINE,
)

_FOLDER = re.compile(r"\$\$\$ FOLDER_CREATE(?P<rest>[^\n]*?)(?=\$\$\$|\n|\Z)")

_CODE_BLOCK = re.compile(
    r"&&&[ \t]*CODE_BLOCK_START[ \t]*(?P<language>[^\n]*)\n(?P<code>[\s\S]*?)\n?[ \t]*&&&[ \t]*CODE_BLOCK_END"
)

_REPLACE_START = "### REPLACE_BLOCK_START"
_REPLACE_END = "### REPLACE_BLOCK_END"
_NEW_START = "### NEW_BLOCK_START"
_NEW_END = "### NEW_BLOCK_END"
_INSERT_END = "### INSERT_END"
_INSERT_HEADER = re.compile(r'^### (?P<kind>INSERT_AFTER|INSERT_BEFORE) line:"(?P<literal>[^"]*)"$')


def _warn(warnings: Optional[List[str]], message: str) -> None:
    logger.warning("Protocol: %s", message)
    if warnings is not None:
        warnings.append(message)


def _line_no(text: str, index: int) -> int:
    return text.count("\n", 0, index) + 1


# =============================================================================
# BLOCK SCANNING
# =============================================================================

def _scan_blocks(
    text: str,
    start_re: "re.Pattern",
    end_re: "re.Pattern",
    label: str,
    warnings: Optional[List[str]],
) -> Iterator[Tuple["re.Match", str, Tuple[int, int]]]:
    """Yield (start match, body, span) for every properly terminated block."""
    pos = 0
    while True:
        start = start_re.search(text, pos)
        if start is None:
            return
        line = _line_no(text, start.start())
        body_start = start.end() + 1
        end = end_re.search(text, body_start) if body_start <= len(text) else None
        if end is None:
            _warn(warnings, f"{label} at line {line} has no end marker; skipped")
            pos = start.end()
            continue

        body = text[body_start:end.start()]
        if _DIRECTIVE_START.search(body):
            _warn(warnings, f"{label} at line {line} is interrupted by another directive; skipped")
            pos = start.end()
            continue

        if TERMINATOR not in end.group("rest"):
            _warn(warnings, f"{label} at line {line} is missing the {TERMINATOR} terminator; skipped")
            pos = end.end()
            continue

        if body.endswith("\n"):
            body = body[:-1]
        yield start, body, (start.start(), end.end())
        pos = end.end()


def _parse_commands(
    body: str, line: int, warnings: Optional[List[str]]
) -> List[CommandSpec]:
    try:
        payload = json.loads(body.strip())
    except json.JSONDecodeError as e:
        _warn(warnings, f"COMMAND_EXEC at line {line} is not valid JSON ({e.msg}); skipped")
        return []

    items = payload if isinstance(payload, list) else [payload]
    specs: List[CommandSpec] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            _warn(warnings, f"COMMAND_EXEC at line {line}: entry {i + 1} is not an object; skipped")
            continue
        command = item.get("command")
        if not isinstance(command, str) or not command.strip():
            _warn(warnings, f"COMMAND_EXEC at line {line}: entry {i + 1} has no command; skipped")
            continue
        background = CommandSpec.background_value(item)
        if background is not None and not isinstance(background, bool):
            _warn(
                warnings,
                f"COMMAND_EXEC at line {line}: entry {i + 1} isBackground is not a boolean "
                f"({background!r}); running in the foreground",
            )
        specs.append(CommandSpec.from_dict(item))
    return specs


def _collect_until(lines: List[str], i: int, marker: str) -> Tuple[Optional[List[str]], int]:
    """Collect lines from i until a line equal to marker; returns (lines, index after marker)."""
    collected = []
    while i < len(lines):
        if lines[i].strip() == marker:
            return collected, i + 1
        collected.append(lines[i])
        i += 1
    return None, i


def _parse_edits(
    body: str, path: str, warnings: Optional[List[str]]
) -> List[EditDirective]:
    """Parse a FILE_MODIFY body: replace blocks, then insert-after, then insert-before."""
    replaces: List[EditDirective] = []
    afters: List[EditDirective] = []
    befores: List[EditDirective] = []

    lines = body.split("\n")
    i = 0
    while i < len(lines):
        stripped = lines[i].strip()

        if stripped.startswith(_REPLACE_START):
            identifier = stripped[len(_REPLACE_START):].strip()
            old, j = _collect_until(lines, i + 1, _REPLACE_END)
            if old is None:
                _warn(warnings, f"{path}: REPLACE_BLOCK_START {identifier} has no REPLACE_BLOCK_END; skipped")
                i += 1
                continue
            while j < len(lines) and not lines[j].strip():
                j += 1
            header = lines[j].strip() if j < len(lines) else ""
            if not header.startswith(_NEW_START):
                _warn(warnings, f"{path}: replace block {identifier} has no NEW_BLOCK_START; skipped")
                i = j
                continue
            new_id = header[len(_NEW_START):].strip()
            if new_id != identifier:
                _warn(
                    warnings,
                    f"{path}: replace block identifiers disagree ({identifier!r} vs {new_id!r}); skipped",
                )
                i = j + 1
                continue
            new, k = _collect_until(lines, j + 1, _NEW_END)
            if new is None:
                _warn(warnings, f"{path}: NEW_BLOCK_START {identifier} has no NEW_BLOCK_END; skipped")
                i = j + 1
                continue
            replaces.append(EditDirective(
                action=EditAction.REPLACE,
                target="\n".join(old).strip(),
                code="\n".join(new).strip(),
                identifier=identifier,
            ))
            i = k
            continue

        header = _INSERT_HEADER.match(stripped)
        if header:
            code, j = _collect_until(lines, i + 1, _INSERT_END)
            if code is None:
                _warn(warnings, f"{path}: {header.group('kind')} has no INSERT_END; skipped")
                i += 1
                continue
            directive = EditDirective(
                action=EditAction.INSERT_AFTER if header.group("kind") == "INSERT_AFTER"
                else EditAction.INSERT_BEFORE,
                target=header.group("literal"),
                code="\n".join(code).strip("\n"),
            )
            (afters if directive.action == EditAction.INSERT_AFTER else befores).append(directive)
            i = j
            continue

        i += 1

    return replaces + afters + befores


# =============================================================================
# PUBLIC API
# =============================================================================

def parse_response(text: str, warnings: Optional[List[str]] = None) -> List[FileOperation]:
    """
    Extract file operations from a model response.

    Passes run in a fixed order (commands, folders, file creation, file
    modification), each over the whole text, so the result is grouped by
    kind and order-preserving within a kind.

    Args:
        text: Raw response text.
        warnings: Optional list that receives one message per skipped block.

    Returns:
        Ordered list of FileOperation values (possibly empty).
    """
    if not text:
        return []
    text = text.replace("\r\n", "\n")

    commands: List[FileOperation] = []
    creates: List[FileOperation] = []
    modifies: List[FileOperation] = []
    block_spans: List[Tuple[int, int]] = []

    for start, body, span in _scan_blocks(text, _COMMAND_START, _COMMAND_END, "COMMAND_EXEC", warnings):
        block_spans.append(span)
        specs = _parse_commands(body, _line_no(text, start.start()), warnings)
        if specs:
            commands.append(FileOperation(kind=OperationKind.EXEC_COMMAND, commands=specs))

    for start, body, span in _scan_blocks(text, _FILE_CREATE_START, _FILE_END, "FILE_CREATE", warnings):
        block_spans.append(span)
        creates.append(FileOperation(
            kind=OperationKind.CREATE_FILE,
            path=start.group("path"),
            content=body,
        ))

    for start, body, span in _scan_blocks(text, _FILE_MODIFY_START, _FILE_END, "FILE_MODIFY", warnings):
        block_spans.append(span)
        path = start.group("path")
        edits = _parse_edits(body, path, warnings)
        if not edits:
            _warn(warnings, f"FILE_MODIFY {path} contains no complete edit directives; skipped")
            continue
        modifies.append(FileOperation(kind=OperationKind.MODIFY_FILE, path=path, edits=edits))

    folders: List[FileOperation] = []
    for match in _FOLDER.finditer(text):
        if any(s <= match.start() < e for s, e in block_spans):
            continue
        rest = match.group("rest")
        line = _line_no(text, match.start())
        if TERMINATOR not in rest:
            _warn(warnings, f"FOLDER_CREATE at line {line} is missing the {TERMINATOR} terminator; skipped")
            continue
        path = rest.split(TERMINATOR, 1)[0].strip()
        if not path:
            _warn(warnings, f"FOLDER_CREATE at line {line} has no path; skipped")
            continue
        folders.append(FileOperation(kind=OperationKind.CREATE_FOLDER, path=path))

    return commands + folders + creates + modifies


def apply_edits(
    content: str,
    edits: List[EditDirective],
    warnings: Optional[List[str]] = None,
) -> str:
    """
    Apply edit directives to file content, in order.

    REPLACE is exact substring replacement of the first occurrence, not a
    diff: when the old code is not present verbatim the directive has no
    effect. Inserts go after/before the first line containing the literal.
    Every directive that could not be applied is reported as a warning.
    """
    for edit in edits:
        if edit.action == EditAction.REPLACE:
            if edit.target and edit.target in content:
                content = content.replace(edit.target, edit.code, 1)
            else:
                _warn(warnings, f"replace block {edit.identifier!r} did not match the file content verbatim")
            continue

        lines = content.split("\n")
        index = next((n for n, line in enumerate(lines) if edit.target in line), None)
        if index is None:
            _warn(warnings, f"{edit.action.value} anchor {edit.target!r} not found")
            continue
        position = index + 1 if edit.action == EditAction.INSERT_AFTER else index
        lines[position:position] = [edit.code]
        content = "\n".join(lines)

    return content


def extract_code_blocks(text: str) -> List[CodeBlock]:
    """Return the display-only &&& CODE_BLOCK sections of a response."""
    return [
        CodeBlock(language=m.group("language").strip(), code=m.group("code").strip("\n"))
        for m in _CODE_BLOCK.finditer(text.replace("\r\n", "\n"))
    ]
