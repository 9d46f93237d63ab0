"""Collects Go coverage data from pods and turns it into locally usable reports."""

from typing import Optional


class CoverageError(Exception):
    pass


class DiscoveryError(CoverageError):
    pass


class PodNotFoundError(DiscoveryError):
    def __init__(self, namespace: str, selector: str):
        super().__init__(f"no pods found in namespace {namespace} with selector {selector}")
        self.namespace = namespace
        self.selector = selector


class NoRunningPodError(DiscoveryError):
    """None of the pods matching the selector is in the Running phase.

    `pod_name` and `phase` describe the first pod in listing order.
    """

    def __init__(self, selector: str, pod_name: str, phase: Optional[str]):
        super().__init__(f"no running pod found for selector {selector} (pod {pod_name} is in phase {phase})")
        self.selector = selector
        self.pod_name = pod_name
        self.phase = phase


class TransportError(CoverageError):
    pass


class CollectionError(CoverageError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.field = field


class ToolError(CoverageError):
    def __init__(self, message: str, output: str = ""):
        super().__init__(f"{message}\nOutput: {output}" if output else message)
        self.output = output


class PublishError(CoverageError):
    pass
