import time
from typing import List, Optional

from kubernetes import client
from opentelemetry import trace

from lib.base_logger import logger
from lib.podcov import DiscoveryError, NoRunningPodError, PodNotFoundError

TRACER = trace.get_tracer("podcov")

POD_PHASE_RUNNING = "Running"
SLEEP_TIME = 2


class PodLocator:
    """Resolves a label selector to the name of one running pod in a namespace."""

    def __init__(self, namespace: str, api_client: Optional[client.ApiClient] = None):
        self.namespace = namespace
        self.core_v1 = client.CoreV1Api(api_client=api_client)

    def list_pods(self, selector: str, timeout: Optional[float] = None) -> List[client.V1Pod]:
        kwargs = {"label_selector": selector}
        if timeout is not None:
            kwargs["_request_timeout"] = timeout
        try:
            return self.core_v1.list_namespaced_pod(self.namespace, **kwargs).items
        except client.ApiException as e:
            raise DiscoveryError(f"failed to list pods in namespace {self.namespace}: {e.reason}") from e

    def resolve(self, selector: str, timeout: Optional[float] = None) -> str:
        """Returns the first pod in listing order that is in the Running phase."""
        pods = self.list_pods(selector, timeout)
        if not pods:
            raise PodNotFoundError(self.namespace, selector)

        for pod in pods:
            if pod.status is not None and pod.status.phase == POD_PHASE_RUNNING:
                logger.debug(f"Selector {selector} resolved to pod {pod.metadata.name}")
                return pod.metadata.name

        first = pods[0]
        raise NoRunningPodError(selector, first.metadata.name, first.status.phase if first.status else None)

    def read_pod(self, name: str) -> client.V1Pod:
        try:
            return self.core_v1.read_namespaced_pod(name, self.namespace)
        except client.ApiException as e:
            raise DiscoveryError(f"failed to read pod {self.namespace}/{name}: {e.reason}") from e


@TRACER.start_as_current_span("wait_for_running_pod")
def wait_for_running_pod(locator: PodLocator, selector: str, timeout: float, sleep_time: float = SLEEP_TIME) -> str:
    """
    Calls `locator.resolve` every `sleep_time` seconds until a running pod shows up or `timeout` is reached.
    The last discovery error is re-raised once the deadline has passed.
    """
    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        attempts += 1
        remaining = deadline - time.monotonic()
        try:
            pod_name = locator.resolve(selector, timeout=max(remaining, 1))
            logger.info(f"Found running pod {pod_name} after {attempts} attempts")
            trace.get_current_span().set_attribute("podcov.pod", pod_name)
            return pod_name
        except DiscoveryError as e:
            if time.monotonic() + sleep_time > deadline:
                logger.error(f"Gave up waiting for a running pod with selector {selector} after {timeout}s")
                raise
            logger.debug(f"{e}, retrying in {sleep_time}s")
        time.sleep(sleep_time)
