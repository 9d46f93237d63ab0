"""
Text coverage reports as produced by `go tool covdata textfmt`.

The first line is always the mode marker (`mode: atomic`), every other line
describes one block:

    <path>:<startLine>.<startCol>,<endLine>.<endCol> <numStatements> <execCount>
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

MODE_PREFIX = "mode:"
DEFAULT_MODE = "set"

BLOCK_RE = re.compile(r"^(?P<path>.+):(\d+)\.(\d+),(\d+)\.(\d+) (\d+) (\d+)$")


@dataclass(frozen=True)
class CoverageBlock:
    path: str
    start_line: int
    start_col: int
    end_line: int
    end_col: int
    statements: int
    count: int

    @classmethod
    def parse(cls, line: str) -> Optional["CoverageBlock"]:
        match = BLOCK_RE.match(line.strip())
        if match is None:
            return None
        path = match.group("path")
        numbers = [int(g) for g in match.groups()[1:]]
        return cls(path, *numbers)

    @property
    def span(self) -> Tuple[int, int, int, int]:
        return self.start_line, self.start_col, self.end_line, self.end_col


def block_path(line: str) -> Optional[str]:
    block = CoverageBlock.parse(line)
    return block.path if block else None


@dataclass
class CoverageReport:
    mode: str = DEFAULT_MODE
    lines: List[str] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "CoverageReport":
        """Parses report text. Blank lines are dropped, a missing mode line falls back to the default mode."""
        lines = [line.rstrip("\r") for line in text.split("\n")]
        lines = [line for line in lines if line.strip()]
        mode = DEFAULT_MODE
        if lines and lines[0].startswith(MODE_PREFIX):
            mode = lines[0][len(MODE_PREFIX) :].strip()
            lines = lines[1:]
        # a merged report may repeat the mode line, only the first one counts
        lines = [line for line in lines if not line.startswith(MODE_PREFIX)]
        return cls(mode=mode, lines=lines)

    @classmethod
    def read(cls, path: str) -> "CoverageReport":
        with open(path, "r") as f:
            return cls.parse(f.read())

    @property
    def mode_line(self) -> str:
        return f"{MODE_PREFIX} {self.mode}"

    def dumps(self) -> str:
        return "\n".join([self.mode_line] + self.lines) + "\n"

    def write(self, path: str):
        with open(path, "w") as f:
            f.write(self.dumps())

    def blocks(self) -> Iterator[CoverageBlock]:
        for line in self.lines:
            block = CoverageBlock.parse(line)
            if block is not None:
                yield block

    def paths(self) -> List[str]:
        """Distinct block paths in first-seen order."""
        seen = {}
        for block in self.blocks():
            seen.setdefault(block.path, None)
        return list(seen)


def filter_report(report: CoverageReport, patterns: List[str]) -> CoverageReport:
    """Drops every block line that contains any of `patterns` as a literal substring.

    An empty pattern list is an explicit opt-out and returns the report unchanged.
    """
    if not patterns:
        return report
    kept = [line for line in report.lines if not any(p in line for p in patterns)]
    return CoverageReport(mode=report.mode, lines=kept)


@dataclass
class FileCoverage:
    statements: int = 0
    covered: int = 0

    @property
    def percent(self) -> float:
        if self.statements == 0:
            return 0.0
        return 100.0 * self.covered / self.statements


@dataclass
class CoverageSummary:
    files: Dict[str, FileCoverage] = field(default_factory=dict)

    @property
    def statements(self) -> int:
        return sum(f.statements for f in self.files.values())

    @property
    def covered(self) -> int:
        return sum(f.covered for f in self.files.values())

    @property
    def percent(self) -> float:
        if self.statements == 0:
            return 0.0
        return 100.0 * self.covered / self.statements


def summarize(report: CoverageReport) -> CoverageSummary:
    """Statement coverage per file.

    The same block can be listed more than once when counters from several
    processes are merged; it is counted once, using its highest execution count.
    """
    merged: Dict[Tuple[str, Tuple[int, int, int, int]], CoverageBlock] = {}
    for block in report.blocks():
        key = (block.path, block.span)
        previous = merged.get(key)
        if previous is None or block.count > previous.count:
            merged[key] = block

    summary = CoverageSummary()
    for (path, _), block in merged.items():
        file_coverage = summary.files.setdefault(path, FileCoverage())
        file_coverage.statements += block.statements
        if block.count > 0:
            file_coverage.covered += block.statements
    return summary
