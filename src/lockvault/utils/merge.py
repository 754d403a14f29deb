"""Conflict handling when a local file and its vault copy differ."""
import codecs
import difflib
import logging
import os
import shlex
import shutil
import subprocess
import tempfile

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, Sequence

from lockvault.crypto.aead import clear_bytes
from lockvault.crypto.hash import sha256_hex
from lockvault.utils.config import get_editor

logger = logging.getLogger(__name__)

BINARY_SAMPLE_SIZE = 8192
BINARY_THRESHOLD_PCT = 10

MARKER_LOCAL = "<<<<<<< local\n"
MARKER_SPLIT = "=======\n"
MARKER_VAULT = ">>>>>>> vault\n"


class MergeStrategy(Enum):
    ASK = "ask"
    KEEP_LOCAL = "keep-local"
    USE_VAULT = "use-vault"
    KEEP_BOTH = "keep-both"
    ABORT = "abort"


class Resolution(Enum):
    KEEP_LOCAL = "keep-local"
    USE_VAULT = "use-vault"
    EDIT_MERGED = "edit-merged"
    KEEP_BOTH = "keep-both"
    SKIP = "skip"


@dataclass
class ConflictResult:
    resolution: Resolution
    merged: bytearray | None = None


class ConflictError(Exception):
    """The conflict for one file could not be resolved; the file is left alone."""


class EditorError(Exception):
    pass


class Prompter(Protocol):
    """Interactive capability injected into the resolver (a terminal, or a script in tests)."""

    def choose(self, prompt: str, choices: Sequence[str]) -> str: ...

    def confirm(self, prompt: str) -> bool: ...

    def notify(self, message: str) -> None: ...


def detect_text(data: bytes | bytearray) -> bool:
    """True if `data` looks like text.

    Empty is text; any NUL byte or invalid UTF-8 is binary; otherwise the
    first 8 KiB are sampled and more than 10% control characters (other than
    tab, newline and carriage return) means binary.
    """
    if not data:
        return True
    if b"\x00" in data:
        return False

    decoder = codecs.getincrementaldecoder("utf-8")()
    view = memoryview(data)
    try:
        for start in range(0, len(view), 65536):
            decoder.decode(view[start:start + 65536])
        decoder.decode(b"", final=True)
    except UnicodeDecodeError:
        return False

    sample = view[:BINARY_SAMPLE_SIZE]
    non_printable = 0
    for b in sample:
        if (b < 32 and b not in (9, 10, 13)) or b == 127:
            non_printable += 1
    threshold = len(sample) * BINARY_THRESHOLD_PCT // 100
    return non_printable <= threshold


def contents_identical(local: bytes | bytearray, vault: bytes | bytearray) -> bool:
    return sha256_hex(local) == sha256_hex(vault)


def has_conflict_markers(data: bytes | bytearray) -> bool:
    return b"<<<<<<<" in data or b"=======" in data or b">>>>>>>" in data


def _terminated(lines):
    for line in lines:
        yield line if line.endswith("\n") else line + "\n"


def build_conflict_text(local: bytes | bytearray, vault: bytes | bytearray) -> bytearray:
    """Line-level merge skeleton: shared lines once, differing runs wrapped in conflict markers."""
    a = bytes(local).decode("utf-8").splitlines(keepends=True)
    b = bytes(vault).decode("utf-8").splitlines(keepends=True)
    out = []
    matcher = difflib.SequenceMatcher(None, a, b, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            out.extend(a[i1:i2])
            continue
        out.append(MARKER_LOCAL)
        out.extend(_terminated(a[i1:i2]))
        out.append(MARKER_SPLIT)
        out.extend(_terminated(b[j1:j2]))
        out.append(MARKER_VAULT)
    return bytearray("".join(out).encode("utf-8"))


def unified_diff(path: str, vault: bytes | bytearray, local: bytes | bytearray) -> str:
    """Unified diff from the vault copy (a/) to the local copy (b/); empty when identical."""
    if contents_identical(vault, local):
        return ""
    if not detect_text(vault) or not detect_text(local):
        return f"Binary file {path} has changed\n"
    a = bytes(vault).decode("utf-8").splitlines(keepends=True)
    b = bytes(local).decode("utf-8").splitlines(keepends=True)
    lines = difflib.unified_diff(a, b, fromfile=f"a/{path}", tofile=f"b/{path}")
    return "".join(_terminated(lines))


def create_conflict_file(path: str, local: bytes | bytearray, vault: bytes | bytearray) -> str:
    """Write the conflict-marked merge skeleton to an owner-only temp file; returns its name."""
    _, ext = os.path.splitext(path)
    fd, name = tempfile.mkstemp(prefix="lockvault-merge-", suffix=ext)
    content = build_conflict_text(local, vault)
    try:
        os.chmod(name, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
    except OSError:
        os.remove(name)
        raise
    finally:
        clear_bytes(content)
    return name


def invoke_editor(filename: str) -> None:
    editor = get_editor()
    argv = shlex.split(editor, posix=os.name != "nt")
    if not argv or shutil.which(argv[0]) is None:
        raise EditorError(f"editor '{editor}' not found; set VISUAL or EDITOR")
    proc = subprocess.run(argv + [filename])
    if proc.returncode != 0:
        raise EditorError(f"editor exited with code {proc.returncode}")


def edit_merge(path: str, local: bytes | bytearray, vault: bytes | bytearray, prompter: Prompter,
               editor: Callable[[str], None] = invoke_editor) -> bytearray:
    """Let the user merge in an editor. The temp file is removed whatever happens."""
    tmp = create_conflict_file(path, local, vault)
    try:
        prompter.notify("opening editor for merge...")
        editor(tmp)
        with open(tmp, "rb") as fh:
            merged = bytearray(fh.read())

        if not merged and not prompter.confirm("warning: edited file is empty. Use this empty content?"):
            raise ConflictError("merge aborted by user")
        if has_conflict_markers(merged) and not prompter.confirm(
            "warning: conflict markers still present in file. Continue anyway?"
        ):
            clear_bytes(merged)
            raise ConflictError("merge aborted by user")
        return merged
    finally:
        os.remove(tmp)


def handle_conflict(path: str, local: bytes | bytearray, vault: bytes | bytearray, strategy: MergeStrategy,
                    prompter: Prompter | None = None,
                    editor: Callable[[str], None] = invoke_editor) -> ConflictResult:
    """Decide what to do with one conflicting file.

    Non-interactive strategies map straight to a resolution. ABORT raises
    ConflictError so the caller records the file as failed. ASK shows the
    menu through `prompter` until a valid choice is made.
    """
    if strategy is MergeStrategy.KEEP_LOCAL:
        return ConflictResult(Resolution.KEEP_LOCAL)
    if strategy is MergeStrategy.USE_VAULT:
        return ConflictResult(Resolution.USE_VAULT)
    if strategy is MergeStrategy.KEEP_BOTH:
        return ConflictResult(Resolution.KEEP_BOTH)
    if strategy is MergeStrategy.ABORT:
        raise ConflictError(f"conflict detected for {path} (aborting)")

    if prompter is None:
        raise ConflictError(f"conflict detected for {path} and no interactive prompt is available")

    is_text = detect_text(local) and detect_text(vault)
    lines = [
        f"warning: conflict detected: {path}",
        "   Local file exists and differs from vault version",
        f"   File type: {'text' if is_text else 'binary'}",
        "",
        "Options:",
        "  [l] Keep local version",
        "  [v] Use vault version (overwrite local)",
    ]
    if is_text:
        lines.append("  [e] Edit merged (opens in $EDITOR)")
    lines += [
        "  [b] Keep both (save vault as .from-vault)",
        "  [x] Skip this file",
    ]
    choices = ["l", "v", "e", "b", "x"] if is_text else ["l", "v", "b", "x"]
    prompter.notify("\n".join(lines))

    while True:
        try:
            choice = prompter.choose("Your choice: ", choices).strip().lower()
        except (EOFError, OSError) as e:
            raise ConflictError(f"{path}: cannot read choice: {e}") from e

        if choice == "l":
            return ConflictResult(Resolution.KEEP_LOCAL)
        if choice == "v":
            return ConflictResult(Resolution.USE_VAULT)
        if choice == "b":
            return ConflictResult(Resolution.KEEP_BOTH)
        if choice == "x":
            return ConflictResult(Resolution.SKIP)
        if choice == "e":
            if not is_text:
                prompter.notify("Cannot edit merge for binary files")
                continue
            try:
                merged = edit_merge(path, local, vault, prompter, editor=editor)
            except (ConflictError, EditorError, OSError) as e:
                prompter.notify(f"Error during merge: {e}")
                continue
            return ConflictResult(Resolution.EDIT_MERGED, merged)
        prompter.notify(f"Invalid choice. Please enter {', '.join(choices)}")
