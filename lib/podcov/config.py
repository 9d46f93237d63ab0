import os
from dataclasses import dataclass, field
from typing import List, Optional

from kubernetes import client, config

DEFAULT_NAMESPACE = "default"
DEFAULT_OUTPUT_DIR = "./coverage-output"
DEFAULT_COVERAGE_PORT = 9095
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_TOOL_TIMEOUT = 120

# The embedded coverage endpoint is compiled into the monitored binary, so it always shows up in the report.
DEFAULT_FILTERS = ["coverage_server.go"]


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_filters(name: str) -> Optional[List[str]]:
    """Unset means "use the defaults", an empty string means "no filters"."""
    value = os.environ.get(name)
    if value is None:
        return None
    return [p.strip() for p in value.split(",") if p.strip()]


@dataclass
class ClientConfig:
    namespace: str = DEFAULT_NAMESPACE
    output_dir: str = DEFAULT_OUTPUT_DIR
    default_filters: List[str] = field(default_factory=lambda: list(DEFAULT_FILTERS))
    source_dir: str = field(default_factory=os.getcwd)
    remap_enabled: bool = True
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT

    @classmethod
    def from_env(cls) -> "ClientConfig":
        filters = _env_filters("COVERAGE_FILTERS")
        return cls(
            namespace=os.environ.get("APP_NAMESPACE") or DEFAULT_NAMESPACE,
            output_dir=os.environ.get("COVERAGE_OUTPUT_DIR") or DEFAULT_OUTPUT_DIR,
            default_filters=list(DEFAULT_FILTERS) if filters is None else filters,
            source_dir=os.environ.get("COVERAGE_SOURCE_DIR") or os.getcwd(),
            remap_enabled=_env_bool("COVERAGE_REMAP_PATHS", True),
        )


def load_kube_api_client() -> client.ApiClient:
    "Loads kubernetes client configuration from kubectl config or incluster."
    try:
        config.load_kube_config()
    except Exception:
        config.load_incluster_config()
    return client.ApiClient()
