import os
from typing import Dict, List

from _pytest.fixtures import fixture

from lib.podcov.config import ClientConfig
from lib.podcov.report import CoverageReport


def write_files(root: str, files: Dict[str, str]) -> str:
    for rel_path, content in files.items():
        full_path = os.path.join(root, rel_path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "w") as f:
            f.write(content)
    return root


def make_report(paths: List[str], mode: str = "atomic") -> CoverageReport:
    lines = [f"{path}:{10 * (i + 1)}.1,{10 * (i + 1) + 2}.2 2 1" for i, path in enumerate(paths)]
    return CoverageReport(mode=mode, lines=lines)


@fixture
def source_tree(tmp_path):
    """A checkout of a small Go project under <tmp>/proj."""
    root = str(tmp_path)
    write_files(
        root,
        {
            "proj/go.mod": "module github.com/example/proj\n",
            "proj/main.go": "package main\n",
            "proj/pkg/a.go": "package pkg\n",
            "proj/pkg/b.go": "package pkg\n",
        },
    )
    return root


@fixture
def client_config(tmp_path) -> ClientConfig:
    return ClientConfig(
        namespace="default",
        output_dir=str(tmp_path / "coverage-output"),
        source_dir=str(tmp_path),
    )
