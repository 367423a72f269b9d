"""
Local Directory Crawler - Cross-platform compatible (Windows, macOS, Linux)

Produces the path -> content map the pipeline consumes, honouring
include/exclude glob patterns, the directory's .gitignore and a size limit.
"""

import os
import fnmatch
from pathlib import Path

import pathspec

from utils.log import get_logger

logger = get_logger("tutorial.pipeline")


def _matches_any(patterns, *candidates) -> bool:
    return any(
        fnmatch.fnmatch(candidate, pattern)
        for pattern in patterns
        for candidate in candidates
    )


def _load_gitignore(directory: Path):
    gitignore_path = directory / ".gitignore"
    if not gitignore_path.exists():
        return None
    try:
        with open(gitignore_path, "r", encoding="utf-8-sig") as f:
            spec = pathspec.PathSpec.from_lines("gitwildmatch", f.readlines())
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read .gitignore file {gitignore_path}: {e}")
        return None
    print(f"Loaded .gitignore patterns from {gitignore_path}")
    return spec


def crawl_local_files(
    directory,
    include_patterns=None,
    exclude_patterns=None,
    max_file_size=None,
):
    """
    Crawl files in a local directory.

    Args:
        directory (str): Path to local directory
        include_patterns (set): File patterns to include (e.g. {"*.py", "*.js"})
        exclude_patterns (set): File patterns to exclude (e.g. {"tests/*"})
        max_file_size (int): Maximum file size in bytes

    Returns:
        dict: {"files": {relative_path: content}, "stats": {...}}
              Paths use "/" separators on every platform.
    """
    directory = Path(directory).resolve()
    if not directory.is_dir():
        raise ValueError(f"Directory does not exist: {directory}")

    gitignore_spec = _load_gitignore(directory)
    exclude_patterns = exclude_patterns or set()

    candidates = []
    for root, dirs, filenames in os.walk(directory):
        root_path = Path(root)

        # Prune excluded directories before descending into them
        kept_dirs = []
        for d in dirs:
            dir_rel = (root_path / d).relative_to(directory).as_posix()
            if gitignore_spec and gitignore_spec.match_file(dir_rel + "/"):
                continue
            if _matches_any(exclude_patterns, dir_rel, d):
                continue
            kept_dirs.append(d)
        dirs[:] = sorted(kept_dirs)

        for filename in sorted(filenames):
            candidates.append(root_path / filename)

    stats = {"total": len(candidates), "included": 0, "excluded": 0, "too_large": 0, "unreadable": 0}
    files = {}

    for filepath in candidates:
        relpath = filepath.relative_to(directory).as_posix()

        excluded = bool(gitignore_spec and gitignore_spec.match_file(relpath))
        excluded = excluded or _matches_any(exclude_patterns, relpath)
        included = not include_patterns or _matches_any(include_patterns, relpath, filepath.name)
        if excluded or not included:
            stats["excluded"] += 1
            continue

        if max_file_size and filepath.stat().st_size > max_file_size:
            stats["too_large"] += 1
            logger.info(f"Skipped {relpath} (size limit)")
            continue

        try:
            with open(filepath, "r", encoding="utf-8-sig") as f:
                files[relpath] = f.read()
        except (OSError, UnicodeDecodeError) as e:
            stats["unreadable"] += 1
            logger.warning(f"Could not read file {filepath}: {e}")
            continue
        stats["included"] += 1

    logger.info(
        f"Crawled {directory}: {stats['included']} included, {stats['excluded']} excluded, "
        f"{stats['too_large']} too large, {stats['unreadable']} unreadable"
    )
    return {"files": files, "stats": stats}


if __name__ == "__main__":
    import sys

    test_dir = sys.argv[1] if len(sys.argv) > 1 else "."

    print(f"--- Crawling directory: {test_dir} ---")
    files_data = crawl_local_files(
        test_dir,
        include_patterns={"*.py", "*.md"},
        exclude_patterns={"*.pyc", "__pycache__/*", ".venv/*", ".git/*"},
    )
    print(f"\nFound {len(files_data['files'])} files:")
    for path in files_data["files"]:
        print(f"  {path}")
