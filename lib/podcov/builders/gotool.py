import shutil
import subprocess
from typing import List

from opentelemetry import trace

from lib.base_logger import logger
from lib.podcov import ToolError
from lib.podcov.config import DEFAULT_TOOL_TIMEOUT
from lib.podcov.report import CoverageReport

TRACER = trace.get_tracer("podcov")


def go_executable() -> str:
    go_cmd = shutil.which("go")
    if go_cmd is None:
        raise ToolError("go executable not found in PATH")
    return go_cmd


def run_go_tool(args: List[str], timeout: float = DEFAULT_TOOL_TIMEOUT) -> str:
    """Runs `go tool <args>` and returns its combined output."""
    cmd = [go_executable(), "tool"] + args
    logger.debug(f"executing: {' '.join(cmd)}")
    try:
        cp = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise ToolError(f"go tool {args[0]} timed out after {timeout}s", e.output or "") from e

    if cp.returncode != 0:
        raise ToolError(f"go tool {args[0]} failed with exit code {cp.returncode}", cp.stdout)
    return cp.stdout


@TRACER.start_as_current_span("synthesize")
def synthesize(artifact_dir: str, report_path: str, timeout: float = DEFAULT_TOOL_TIMEOUT) -> CoverageReport:
    """Merges the binary meta/counter files in `artifact_dir` into a text report at `report_path`."""
    logger.info(f"Generating coverage report from {artifact_dir}")
    run_go_tool(["covdata", "textfmt", f"-i={artifact_dir}", f"-o={report_path}"], timeout)

    report = CoverageReport.read(report_path)
    trace.get_current_span().set_attribute("podcov.report.lines", len(report.lines))
    logger.info(f"Coverage report generated: {report_path}")
    return report


@TRACER.start_as_current_span("render")
def render(report_path: str, html_path: str, timeout: float = DEFAULT_TOOL_TIMEOUT):
    """Renders the text report at `report_path` as HTML. Source files must be reachable under the report's paths."""
    run_go_tool(["cover", f"-html={report_path}", f"-o={html_path}"], timeout)
    logger.info(f"HTML report generated: {html_path}")
