"""
================================================================================
CONTENT PACKER
================================================================================
Reduces a file set to a context string that fits a token budget.

1. Each file is transformed according to the documentation mode:
   - tutorial:      truncation (first 80% / last 20% of the line budget,
                    with an "N lines omitted" marker in between)
   - architecture:  signature extraction (imports, exports, type/interface
                    declarations, function/class/method signatures only)
2. Tokens are estimated as characters / 3.5.
3. Files are ordered by FILE_PRIORITY_PATTERNS (entry points first).
4. Files are added greedily until the next one would exceed the budget.
   Everything after it is dropped.
================================================================================
"""

import re
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from constants.defaults import (
    MODE_ARCHITECTURE,
    HEAD_LINES_RATIO,
    FILE_PRIORITY_PATTERNS,
    DEFAULT_MAX_LINES_PER_FILE,
)
from constants.llm import CHARS_PER_TOKEN, CONTEXT_USAGE_RATIO
from utils.models import SourceFile
from utils.log import get_logger

logger = get_logger("tutorial.pipeline")

_PRIORITY_REGEXES = [re.compile(p) for p in FILE_PRIORITY_PATTERNS]

_PYTHON_EXTENSIONS = (".py", ".pyi", ".pyx")

_FILE_TYPE_LABELS = {
    "tsx": "React Component/Page",
    "ts": "TypeScript Module",
    "jsx": "React Component",
    "js": "JavaScript Module",
    "py": "Python Module",
    "java": "Java Class",
    "cs": "C# Class",
    "go": "Go Package",
    "rs": "Rust Module",
    "md": "Documentation",
    "json": "Configuration",
    "yaml": "Configuration",
    "yml": "Configuration",
}

# -----------------------------------------------------------------------------
# Signature patterns (matched against the stripped line)
# -----------------------------------------------------------------------------
_COMMENT = re.compile(r"^(//|/\*|\*|#(?!include))")
_IMPORT = re.compile(r"^(import\s|from\s+\S+\s+import\s|#include\s|using\s+[\w.]+;|package\s|use\s)")
_EXPORT = re.compile(r"^export\s+(\{|\*|default\s+(?!(async\s+)?(function|class)\b)|(const|let|var)\s+\w+\s*(:[^=]+)?=\s*(?!(async\s+)?(\(|function\b)))")
_TYPE_BLOCK = re.compile(r"^(export\s+)?(declare\s+)?(interface|type|enum)\s+\w+")
_CLASS = re.compile(r"^(export\s+)?(default\s+)?(abstract\s+)?(pub\s+)?(class|struct|trait|impl)\b")
_FUNCTION = re.compile(
    r"^((export\s+)?(default\s+)?(async\s+)?function\b"
    r"|(async\s+)?def\s+\w+"
    r"|(pub(\(\w+\))?\s+)?(async\s+)?fn\s+\w+"
    r"|func\s+"
    r"|(export\s+)?const\s+\w+\s*(:[^=]+)?=\s*(async\s+)?(\(|function\b|\w+\s*=>))"
)
_METHOD = re.compile(r"^(async\s+)?((private|public|protected|static|readonly|override)\s+)*(constructor|\w+)\s*\(")
_CONTROL_KEYWORDS = ("if", "for", "while", "switch", "catch", "return", "else")


@dataclass
class PackedContext:
    context: str
    included_indices: List[int] = field(default_factory=list)
    skipped_indices: List[int] = field(default_factory=list)
    file_listing: str = ""
    original_tokens: int = 0
    packed_tokens: int = 0


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def context_budget(context_window: int) -> int:
    """Tokens available for file context in a prompt for this context window."""
    return int(context_window * CONTEXT_USAGE_RATIO)


def file_priority(path: str) -> int:
    """Lower is more important. Paths matching no pattern rank last."""
    for rank, regex in enumerate(_PRIORITY_REGEXES):
        if regex.search(path):
            return rank
    return len(_PRIORITY_REGEXES)


def truncate_file_content(content: str, max_lines: int = DEFAULT_MAX_LINES_PER_FILE) -> str:
    """Keep the head and tail of a file within max_lines, marking the cut."""
    lines = content.split("\n")
    total_lines = len(lines)
    if total_lines <= max_lines:
        return content

    head_count = int(max_lines * HEAD_LINES_RATIO)
    tail_count = max_lines - head_count
    omitted = total_lines - head_count - tail_count
    marker = f"\n... [{omitted} lines omitted for brevity - file has {total_lines} total lines] ...\n"

    kept = lines[:head_count] + [marker]
    if tail_count:
        kept += lines[-tail_count:]
    return "\n".join(kept)


def _file_type_label(path: str) -> str:
    extension = path.rsplit(".", 1)[-1] if "." in path else ""
    return _FILE_TYPE_LABELS.get(extension, "Source File")


def _brace_delta(text: str) -> int:
    return text.count("{") - text.count("}")


def extract_file_signatures(content: str, path: str) -> str:
    """
    Keep only the structural lines of a file: imports, exports, type and
    interface declarations, and function/class/method signatures. Bodies are
    replaced by a placeholder.
    """
    python_like = path.endswith(_PYTHON_EXTENSIONS)
    comment = "#" if python_like else "//"
    signatures: List[str] = []

    open_block: List[str] = []   # interface/type/enum body being captured
    block_depth = 0
    class_depth = 0              # brace languages only
    in_import = False

    for line in content.split("\n"):
        stripped = line.strip()

        if open_block:
            open_block.append(line)
            block_depth += _brace_delta(stripped)
            if block_depth <= 0:
                signatures.append("\n".join(open_block))
                open_block = []
            continue

        if in_import:
            signatures.append(line)
            if ")" in stripped or "}" in stripped or stripped.endswith(";"):
                in_import = False
            continue

        if not stripped or _COMMENT.match(stripped):
            continue

        if class_depth > 0:
            is_method = _METHOD.match(stripped) and not stripped.startswith(_CONTROL_KEYWORDS)
            if is_method:
                indent = line[:len(line) - len(line.lstrip())]
                signatures.append(f"{indent}{stripped.split('{')[0].rstrip()} {{ /* ... */ }}")
            class_depth += _brace_delta(stripped)
            if class_depth <= 0:
                signatures.append("}")
            continue

        if _IMPORT.match(stripped):
            signatures.append(line)
            opens = ("(" in stripped and ")" not in stripped) or ("{" in stripped and "}" not in stripped)
            in_import = opens
            continue

        if _TYPE_BLOCK.match(stripped):
            depth = _brace_delta(stripped)
            if depth > 0:
                open_block, block_depth = [line], depth
            else:
                signatures.append(line)
            continue

        if _EXPORT.match(stripped):
            signatures.append(line)
            continue

        if _CLASS.match(stripped):
            if python_like:
                signatures.append(line.rstrip())
            else:
                signatures.append(f"{stripped.split('{')[0].rstrip()} {{")
                class_depth = _brace_delta(stripped)
                if class_depth <= 0:
                    class_depth = 0
                    signatures.append("}")
            continue

        if _FUNCTION.match(stripped):
            if python_like:
                signature = line.rstrip()
                signatures.append(f"{signature} ..." if signature.endswith(":") else signature)
            else:
                indent = line[:len(line) - len(line.lstrip())]
                signatures.append(f"{indent}{stripped.split('{')[0].rstrip()} {{ /* ... */ }}")
            continue

    if open_block:
        signatures.append("\n".join(open_block))

    return f"{comment} {_file_type_label(path)}: {path}\n" + "\n".join(signatures)


def transform_file(source: SourceFile, mode: str, max_lines_per_file: int) -> str:
    if mode == MODE_ARCHITECTURE:
        return extract_file_signatures(source.content, source.path)
    return truncate_file_content(source.content, max_lines_per_file)


def pack_files(
    files: Sequence[SourceFile],
    budget_tokens: int,
    mode: str,
    max_lines_per_file: int = DEFAULT_MAX_LINES_PER_FILE,
    indices: Optional[Sequence[int]] = None,
) -> PackedContext:
    """
    Build a budget-bounded context string from files (or the subset given by
    indices). Each entry is headed "--- File Index i: path ---" so the model
    can refer back to files by index.
    """
    if indices is None:
        indices = range(len(files))
    candidates = [i for i in indices if 0 <= i < len(files)]

    original_tokens = 0
    entries = []
    for i in candidates:
        source = files[i]
        original_tokens += estimate_tokens(source.content)
        body = transform_file(source, mode, max_lines_per_file)
        entries.append((i, f"--- File Index {i}: {source.path} ---\n{body}\n\n"))

    entries.sort(key=lambda item: (file_priority(files[item[0]].path), item[0]))

    parts: List[str] = []
    included: List[int] = []
    used_tokens = 0
    for position, (i, entry) in enumerate(entries):
        entry_tokens = estimate_tokens(entry)
        if used_tokens + entry_tokens > budget_tokens:
            skipped = [j for j, _ in entries[position:]]
            break
        parts.append(entry)
        included.append(i)
        used_tokens += entry_tokens
    else:
        skipped = []

    reduction = (1 - used_tokens / original_tokens) * 100 if original_tokens else 0.0
    logger.info(
        f"Packed {len(included)}/{len(candidates)} files ({mode} mode): "
        f"~{used_tokens:,} tokens (was ~{original_tokens:,}, {reduction:.1f}% reduction)"
    )
    if skipped:
        logger.warning(
            f"Context limit: {len(skipped)} files skipped to stay under {budget_tokens:,} tokens"
        )

    return PackedContext(
        context="".join(parts),
        included_indices=included,
        skipped_indices=skipped,
        file_listing="\n".join(f"- {i} # {files[i].path}" for i in sorted(included)),
        original_tokens=original_tokens,
        packed_tokens=used_tokens,
    )
