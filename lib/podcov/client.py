import json
import os
import time
from datetime import datetime, timezone
from typing import List, Optional

from kubernetes import client
from opentelemetry import trace

from lib.base_logger import logger
from lib.podcov import CoverageError, DiscoveryError, PublishError, ToolError
from lib.podcov.builders import FILTERED_REPORT_FILENAME, HTML_REPORT_FILENAME, REPORT_FILENAME
from lib.podcov.builders.gotool import render, synthesize
from lib.podcov.builders.oras import PushOptions, oras_push
from lib.podcov.collector import ArtifactCollector, CoverageArtifactBundle
from lib.podcov.config import DEFAULT_COVERAGE_PORT, ClientConfig, load_kube_api_client
from lib.podcov.locator import PodLocator, wait_for_running_pod
from lib.podcov.remap import remap
from lib.podcov.report import CoverageReport, CoverageSummary, filter_report, summarize
from lib.podcov.transport import Connector, open_tunnel

TRACER = trace.get_tracer("podcov")

METADATA_FILENAME = "metadata.json"
DEFAULT_TIMEOUT = 60


def find_coverage_container(pod: client.V1Pod, port: int) -> Optional[client.V1Container]:
    """The container declaring `port`, falling back to the first container of the pod."""
    containers = (pod.spec.containers if pod.spec else None) or []
    for container in containers:
        for container_port in container.ports or []:
            if container_port.container_port == port:
                return container
    return containers[0] if containers else None


class CoverageClient:
    """
    Collects coverage from pods and post-processes it into reports:

        discover pod -> port forward -> fetch blobs -> covdata textfmt -> filter -> remap paths -> html

    Everything for one test lives in `<output_dir>/<test_name>/`, so collections for
    different test names can run side by side.
    """

    def __init__(
        self,
        config: ClientConfig,
        api_client: Optional[client.ApiClient] = None,
        connector: Optional[Connector] = None,
    ):
        self.config = config
        self.locator = PodLocator(config.namespace, api_client=api_client)
        self.collector = ArtifactCollector(config.output_dir, timeout=config.request_timeout)
        self.connector = connector
        try:
            os.makedirs(config.output_dir, exist_ok=True)
        except OSError as e:
            raise CoverageError(f"failed to create output directory {config.output_dir}: {e}") from e

    @classmethod
    def from_env(cls) -> "CoverageClient":
        return cls(ClientConfig.from_env(), api_client=load_kube_api_client())

    @property
    def namespace(self) -> str:
        return self.config.namespace

    def test_dir(self, test_name: str) -> str:
        return os.path.join(self.config.output_dir, test_name)

    def set_default_filters(self, patterns: List[str]) -> List[str]:
        previous = self.config.default_filters
        self.config.default_filters = list(patterns)
        return previous

    def add_default_filter(self, pattern: str) -> List[str]:
        previous = list(self.config.default_filters)
        self.config.default_filters.append(pattern)
        return previous

    def set_source_directory(self, source_dir: str) -> str:
        previous = self.config.source_dir
        self.config.source_dir = source_dir
        return previous

    def set_path_remapping(self, enabled: bool) -> bool:
        previous = self.config.remap_enabled
        self.config.remap_enabled = enabled
        return previous

    def get_pod_name(self, selector: str, timeout: Optional[float] = None) -> str:
        return self.locator.resolve(selector, timeout)

    def wait_for_pod(self, selector: str, timeout: float = DEFAULT_TIMEOUT) -> str:
        return wait_for_running_pod(self.locator, selector, timeout)

    @TRACER.start_as_current_span("collect_coverage_from_pod")
    def collect_coverage_from_pod(
        self,
        pod_name: str,
        test_name: str,
        target_port: int = DEFAULT_COVERAGE_PORT,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> CoverageArtifactBundle:
        span = trace.get_current_span()
        span.set_attribute("podcov.pod", pod_name)
        span.set_attribute("podcov.test_name", test_name)
        logger.info(f"Collecting coverage from pod {pod_name} for test: {test_name}")

        local_port, session = open_tunnel(
            self.locator.core_v1, self.namespace, pod_name, target_port, timeout, connector=self.connector
        )
        with session:
            bundle = self.collector.collect(f"http://localhost:{local_port}", test_name)

        self.write_pod_metadata(pod_name, test_name, target_port)
        logger.info(f"Coverage collected successfully for test: {test_name}")
        return bundle

    def collect_coverage_from_url(self, url: str, test_name: str) -> CoverageArtifactBundle:
        """Collects from an endpoint that is directly reachable, no port forward involved."""
        return self.collector.collect(url, test_name)

    def write_pod_metadata(self, pod_name: str, test_name: str, port: int) -> Optional[str]:
        """Records where the coverage came from. The blobs are valid without it, so failures are only logged."""
        metadata = {
            "pod_name": pod_name,
            "namespace": self.namespace,
            "coverage_port": port,
            "collected_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            container = find_coverage_container(self.locator.read_pod(pod_name), port)
        except DiscoveryError as e:
            logger.warning(f"Could not read pod {pod_name} for metadata: {e}")
            container = None
        if container is not None:
            metadata["container"] = {"name": container.name, "image": container.image}

        path = os.path.join(self.test_dir(test_name), METADATA_FILENAME)
        try:
            os.makedirs(self.test_dir(test_name), exist_ok=True)
            with open(path, "w") as f:
                json.dump(metadata, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to write pod metadata to {path}: {e}")
            return None
        return path

    @TRACER.start_as_current_span("process_coverage_reports")
    def process_coverage_reports(self, test_name: str, filters: Optional[List[str]] = None) -> CoverageReport:
        """
        Turns the collected binary data into `coverage.out`, `coverage_filtered.out` and `coverage.html`.

        `filters=None` applies the configured default filters, an empty list disables filtering.
        Returns the filtered (and possibly remapped) report.
        """
        test_dir = self.test_dir(test_name)
        report_path = os.path.join(test_dir, REPORT_FILENAME)
        filtered_path = os.path.join(test_dir, FILTERED_REPORT_FILENAME)
        html_path = os.path.join(test_dir, HTML_REPORT_FILENAME)

        report = synthesize(test_dir, report_path, timeout=self.config.tool_timeout)

        patterns = self.config.default_filters if filters is None else filters
        filtered = filter_report(report, patterns)
        logger.info(f"Filtered {len(report.lines) - len(filtered.lines)} lines using patterns {patterns}")

        if self.config.remap_enabled:
            filtered = remap(filtered, self.config.source_dir)

        try:
            filtered.write(filtered_path)
        except OSError as e:
            raise CoverageError(f"failed to write filtered report {filtered_path}: {e}") from e
        logger.info(f"Filtered coverage report: {filtered_path}")

        try:
            render(filtered_path, html_path, timeout=self.config.tool_timeout)
        except ToolError as e:
            logger.warning(f"Failed to generate HTML report for test {test_name}: {e}")

        trace.get_current_span().set_attribute("podcov.report.files", len(filtered.paths()))
        return filtered

    def print_coverage_summary(self, test_name: str) -> CoverageSummary:
        test_dir = self.test_dir(test_name)
        report_path = os.path.join(test_dir, FILTERED_REPORT_FILENAME)
        if not os.path.exists(report_path):
            report_path = os.path.join(test_dir, REPORT_FILENAME)
        try:
            report = CoverageReport.read(report_path)
        except OSError as e:
            raise CoverageError(f"failed to read coverage report for test {test_name}: {e}") from e

        summary = summarize(report)
        logger.info(f"Coverage Summary for test: {test_name}")
        logger.info("=" * 60)
        for path, file_coverage in summary.files.items():
            logger.info(f"{path:<50} {file_coverage.percent:6.1f}%")
        logger.info("=" * 60)
        logger.info(f"total: {summary.covered}/{summary.statements} statements, {summary.percent:.1f}%")
        return summary

    def push_coverage_artifact(self, test_name: str, options: PushOptions) -> str:
        return oras_push(self.test_dir(test_name), options)

    @TRACER.start_as_current_span("run")
    def run(
        self,
        selector: str,
        test_name: str,
        target_port: int = DEFAULT_COVERAGE_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        push: Optional[PushOptions] = None,
        artifact_ref_file: Optional[str] = None,
    ) -> CoverageReport:
        """Full pipeline for one test. Publishing is optional and its failures never fail the run."""
        deadline = time.monotonic() + timeout
        pod_name = self.wait_for_pod(selector, timeout)
        # discovery and the tunnel share one deadline, later stages have their own timeouts
        self.collect_coverage_from_pod(pod_name, test_name, target_port, max(deadline - time.monotonic(), 1))
        report = self.process_coverage_reports(test_name)

        if push is None:
            logger.info("Coverage artifacts saved locally (OCI push disabled)")
            return report

        try:
            reference = self.push_coverage_artifact(test_name, push)
        except PublishError as e:
            logger.warning(f"Failed to push coverage artifact (coverage data is still saved locally): {e}")
            return report

        if artifact_ref_file:
            try:
                with open(artifact_ref_file, "w") as f:
                    f.write(reference)
                logger.info(f"Artifact reference saved to: {artifact_ref_file}")
            except OSError as e:
                logger.warning(f"Failed to write artifact ref to {artifact_ref_file}: {e}")
        return report
