"""
Rewrites file paths in a coverage report so they point into the local source tree.

A binary built inside a container records the paths it was compiled from
(e.g. `/app/pkg/handler.go`). Those do not exist on the machine that renders
the report, so we infer a single prefix substitution by matching file names
against the local tree:

    /app/pkg/handler.go  ->  /home/dev/project/pkg/handler.go
    remote root "/app/"      local root "/home/dev/project/"

The inference is best effort. Whenever there is not enough evidence the
report is returned untouched; this module never raises.
"""

import os
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from opentelemetry import trace

from lib.base_logger import logger
from lib.podcov.report import CoverageReport, block_path

TRACER = trace.get_tracer("podcov")

# version control metadata and vendored dependencies never hold the sources we are looking for
SKIP_DIRS = frozenset([".git", ".hg", ".svn", "vendor", "node_modules"])

SEPARATORS = "/\\"


@dataclass(frozen=True)
class PathMapping:
    remote_root: str
    local_root: str

    def matches(self, path: str) -> bool:
        return path.startswith(self.remote_root)

    def apply(self, path: str) -> str:
        return self.local_root + path[len(self.remote_root) :]


@dataclass(frozen=True)
class _Match:
    remote_path: str
    local_path: str
    score: int


def split_segments(path: str) -> List[str]:
    segments = [path]
    for sep in SEPARATORS:
        segments = [part for segment in segments for part in segment.split(sep)]
    return [s for s in segments if s]


def suffix_score(remote_segments: List[str], local_segments: List[str]) -> int:
    """Number of identical trailing segments, counted backwards from the file name."""
    score = 0
    for remote, local in zip(reversed(remote_segments), reversed(local_segments)):
        if remote != local:
            break
        score += 1
    return score


def strip_segments(path: str, count: int) -> str:
    """Removes `count` trailing segments, keeping the separator in front of them.

    >>> strip_segments("/app/pkg/a.go", 2)
    '/app/'
    >>> strip_segments("pkg/a.go", 2)
    ''
    """
    root = path
    for _ in range(count):
        trimmed = root.rstrip(SEPARATORS)
        idx = max(trimmed.rfind(sep) for sep in SEPARATORS)
        root = trimmed[: idx + 1]
    return root


def with_separator(root: str, sep: str) -> str:
    if root and root[-1] not in SEPARATORS:
        return root + sep
    return root


def index_source_tree(source_root: str) -> Dict[str, List[Tuple[List[str], str]]]:
    """Maps each file name under `source_root` to (root-relative segments, absolute path) pairs.

    The walk is sorted so that "first encountered" is stable between runs.
    """
    index: Dict[str, List[Tuple[List[str], str]]] = {}
    source_root = os.path.abspath(source_root)
    for dirpath, dirnames, filenames in os.walk(source_root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for filename in sorted(filenames):
            abs_path = os.path.join(dirpath, filename)
            rel_path = os.path.relpath(abs_path, source_root)
            index.setdefault(filename, []).append((split_segments(rel_path), abs_path))
    return index


def _best_match(remote_path: str, index: Dict[str, List[Tuple[List[str], str]]]) -> Optional[_Match]:
    remote_segments = split_segments(remote_path)
    if not remote_segments:
        return None

    best = None
    for local_segments, abs_path in index.get(remote_segments[-1], []):
        score = suffix_score(remote_segments, local_segments)
        # strictly greater: on a tie the first candidate wins
        if score > 0 and (best is None or score > best.score):
            best = _Match(remote_path=remote_path, local_path=abs_path, score=score)
    return best


def _root_pair(match: _Match) -> Tuple[str, str]:
    remote_root = strip_segments(match.remote_path, match.score)
    local_root = with_separator(strip_segments(match.local_path, match.score), os.sep)
    return remote_root, local_root


def infer_mapping(remote_paths: List[str], source_root: str) -> Optional[PathMapping]:
    """Infers the single (remote root, local root) pair best supported by `remote_paths`."""
    if not remote_paths:
        return None

    index = index_source_tree(source_root)
    matches = [m for m in (_best_match(p, index) for p in remote_paths) if m is not None]
    if not matches:
        logger.info(f"None of the {len(remote_paths)} remote paths matched a file under {source_root}")
        return None

    pairs = [(m, *_root_pair(m)) for m in matches]

    # Counter keeps insertion order, so on equal frequency the first seen root wins
    remote_root, votes = Counter(remote for _, remote, _ in pairs).most_common(1)[0]

    local_root = None
    for match, _, candidate in pairs:
        if not match.remote_path.startswith(remote_root):
            continue
        # prefer the root closest to the filesystem root, that is usually the project root
        if local_root is None or len(candidate) < len(local_root):
            local_root = candidate

    logger.debug(
        f"Remote root {remote_root!r} supported by {votes} of {len(matches)} matched files, local root {local_root!r}"
    )
    return PathMapping(remote_root=remote_root, local_root=local_root)


@TRACER.start_as_current_span("remap")
def remap(report: CoverageReport, source_root: str) -> CoverageReport:
    """Returns `report` with remote paths rewritten into `source_root`, or `report` itself if nothing applies."""
    paths = report.paths()
    remote = [p for p in paths if not os.path.exists(p)]
    span = trace.get_current_span()
    span.set_attribute("podcov.remap.paths", len(paths))
    span.set_attribute("podcov.remap.remote_paths", len(remote))

    if not remote:
        logger.debug("All coverage paths exist locally, no remapping needed")
        return report

    mapping = infer_mapping(remote, source_root)
    if mapping is None:
        logger.info("Could not infer a path mapping, coverage paths are left unchanged")
        return report

    remote_set = set(remote)
    rewritten = 0
    lines = []
    for line in report.lines:
        path = block_path(line)
        # paths that exist locally are never rewritten, even when a root like "/" or "" matches them
        if path in remote_set and mapping.matches(path):
            line = mapping.apply(line)
            rewritten += 1
        lines.append(line)

    logger.info(f"Remapped {rewritten} coverage lines: {mapping.remote_root!r} -> {mapping.local_root!r}")
    span.set_attribute("podcov.remap.rewritten", rewritten)
    return CoverageReport(mode=report.mode, lines=lines)
