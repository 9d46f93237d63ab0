import base64
import binascii
import os
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import requests
from opentelemetry import trace

from lib.base_logger import logger
from lib.podcov import CollectionError
from lib.podcov.config import DEFAULT_REQUEST_TIMEOUT

TRACER = trace.get_tracer("podcov")

COVERAGE_PATH = "/coverage"
# 5000-01-01T00:00:00Z
MAX_EPOCH_SECONDS = 95_617_584_000


@dataclass
class CoverageArtifactBundle:
    meta_name: str
    meta_blob: bytes = field(repr=False)
    counters_name: str
    counters_blob: bytes = field(repr=False)
    test_name: str
    collected_at: int


def coverage_url(base_url: str) -> str:
    """Accepts either the server root (`http://localhost:9095`) or the full endpoint URL."""
    base_url = base_url.rstrip("/")
    if base_url.endswith(COVERAGE_PATH):
        return base_url
    return base_url + COVERAGE_PATH


def _decode(payload: Dict, name_field: str, data_field: str):
    name = payload.get(name_field)
    if not isinstance(name, str) or not name:
        raise CollectionError(f"coverage response is missing {name_field}", field=name_field)
    if os.path.basename(name) != name or name in (".", ".."):
        raise CollectionError(f"refusing to write coverage file with unsafe name {name!r}", field=name_field)

    data = payload.get(data_field)
    if not isinstance(data, str):
        raise CollectionError(f"coverage response is missing {data_field}", field=data_field)
    try:
        return name, base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CollectionError(f"failed to decode {data_field}: {e}", field=data_field) from e


def _collected_at(timestamp) -> int:
    """Epoch seconds. Values past the year 5000 are read as milli, micro or nanoseconds."""
    if timestamp is None:
        return int(time.time())
    if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp < 0:
        raise CollectionError(f"invalid timestamp {timestamp!r} in coverage response", field="timestamp")
    while timestamp > MAX_EPOCH_SECONDS:
        timestamp //= 1000
    return timestamp


class ArtifactCollector:
    """Fetches the meta and counters blobs from a coverage endpoint and stores them under `<output_dir>/<test_name>`.

    Without an explicit `session` every request gets its own `requests.Session`, so one collector
    can serve collections running on several threads.
    """

    def __init__(
        self, output_dir: str, timeout: float = DEFAULT_REQUEST_TIMEOUT, session: Optional[requests.Session] = None
    ):
        self.output_dir = output_dir
        self.timeout = timeout
        self.session = session

    def test_dir(self, test_name: str) -> str:
        return os.path.join(self.output_dir, test_name)

    def _post(self, url: str, body: Dict) -> requests.Response:
        if self.session is not None:
            return self.session.post(url, json=body, timeout=self.timeout)
        with requests.Session() as session:
            return session.post(url, json=body, timeout=self.timeout)

    def fetch(self, base_url: str, test_name: str) -> CoverageArtifactBundle:
        url = coverage_url(base_url)
        logger.debug(f"Requesting coverage for test {test_name} from {url}")
        try:
            response = self._post(url, {"test_name": test_name})
        except requests.RequestException as e:
            raise CollectionError(f"failed to send coverage request to {url}: {e}") from e

        if not response.ok:
            raise CollectionError(
                f"coverage endpoint returned {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise CollectionError(f"failed to decode coverage response: {e}") from e
        if not isinstance(payload, dict):
            raise CollectionError("coverage response is not a JSON object")

        meta_name, meta_blob = _decode(payload, "meta_filename", "meta_data")
        counters_name, counters_blob = _decode(payload, "counters_filename", "counters_data")

        return CoverageArtifactBundle(
            meta_name=meta_name,
            meta_blob=meta_blob,
            counters_name=counters_name,
            counters_blob=counters_blob,
            test_name=test_name,
            collected_at=_collected_at(payload.get("timestamp")),
        )

    def persist(self, bundle: CoverageArtifactBundle) -> Dict[str, str]:
        """Writes both blobs, one after the other. A failure on the second leaves the first in place."""
        test_dir = self.test_dir(bundle.test_name)
        written = {}
        try:
            os.makedirs(test_dir, exist_ok=True)
            for name, blob in ((bundle.meta_name, bundle.meta_blob), (bundle.counters_name, bundle.counters_blob)):
                path = os.path.join(test_dir, name)
                with open(path, "wb") as f:
                    f.write(blob)
                written[name] = path
                logger.info(f"Saved: {path}")
        except OSError as e:
            raise CollectionError(f"failed to write coverage data to {test_dir}: {e}") from e
        return written

    @TRACER.start_as_current_span("collect")
    def collect(self, base_url: str, test_name: str) -> CoverageArtifactBundle:
        span = trace.get_current_span()
        span.set_attribute("podcov.test_name", test_name)

        bundle = self.fetch(base_url, test_name)
        self.persist(bundle)

        span.set_attribute("podcov.meta_size", len(bundle.meta_blob))
        span.set_attribute("podcov.counters_size", len(bundle.counters_blob))
        return bundle
