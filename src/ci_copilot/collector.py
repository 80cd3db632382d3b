"""
collector.py — read source files in, write generated artefacts out
===================================================================
The two filesystem edges of every stage: glob the repository for the files a
stage should look at, and write the text the stage produced to disk where the
CI runner picks it up as a build artefact.
"""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

from ci_copilot.models import Artifact, SourceFile, language_for

logger = logging.getLogger(__name__)


def matches_pattern(rel_path: str, pattern: str) -> bool:
    """fnmatch where a leading ``**/`` also matches at the repository root."""
    if fnmatch.fnmatch(rel_path, pattern):
        return True
    return pattern.startswith("**/") and fnmatch.fnmatch(rel_path, pattern[3:])


def is_excluded(rel_path: str, exclude: Iterable[str]) -> bool:
    return any(matches_pattern(rel_path, p) for p in exclude)


def collect_source_files(
    root: Path,
    include: Sequence[str] = ("**/*.py",),
    exclude: Sequence[str] = (),
    max_files: int = 25,
    max_file_bytes: int = 40_000,
    only: Optional[Iterable[str]] = None,
) -> list[SourceFile]:
    """
    Glob *root* for files matching *include* and not matching *exclude*.

    Files over *max_file_bytes* or not valid UTF-8 are skipped with a debug
    log. Results are sorted by path and capped at *max_files*. When *only*
    is given (e.g. the paths changed on this branch) the result is further
    restricted to those paths.
    """
    root = Path(root)
    only_set = {p.replace("\\", "/") for p in only} if only is not None else None
    seen: set[str] = set()
    files: list[SourceFile] = []

    for pattern in include:
        for path in root.glob(pattern):
            if not path.is_file():
                continue
            rel = path.relative_to(root).as_posix()
            if rel in seen or is_excluded(rel, exclude):
                continue
            if only_set is not None and rel not in only_set:
                continue
            seen.add(rel)

            size = path.stat().st_size
            if size > max_file_bytes:
                logger.debug("Skipping %s (%d bytes > %d)", rel, size, max_file_bytes)
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.debug("Skipping %s (not UTF-8)", rel)
                continue
            files.append(SourceFile(path=rel, language=language_for(rel), content=content))

    files.sort(key=lambda f: f.path)
    if len(files) > max_files:
        logger.info("Collected %d files; keeping the first %d", len(files), max_files)
        files = files[:max_files]
    return files


def write_artifacts(output_dir: Path, artifacts: Iterable[Artifact]) -> list[Path]:
    """
    Write each artifact under *output_dir*, creating parent directories.

    Raises:
        ValueError – an artifact path resolves outside *output_dir*.
    """
    output_dir = Path(output_dir).resolve()
    written: list[Path] = []
    for art in artifacts:
        target = (output_dir / art.relative_path).resolve()
        if output_dir != target and output_dir not in target.parents:
            raise ValueError(f"Artifact path escapes output directory: {art.relative_path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        if art.binary is not None:
            target.write_bytes(art.binary)
        else:
            target.write_text(art.content, encoding="utf-8")
        written.append(target)
        logger.debug("Wrote %s", target)
    return written
