import base64
import os
from unittest.mock import MagicMock, patch

import pytest
import requests
from pytest_mock import MockerFixture

from lib.podcov import CollectionError
from lib.podcov.collector import ArtifactCollector, coverage_url


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def coverage_response(**overrides) -> dict:
    payload = {
        "meta_filename": "covmeta.X",
        "meta_data": b64(b"hello"),
        "counters_filename": "covcounters.X.1234.1700000000",
        "counters_data": b64(b"counter content"),
        "test_name": "test-case",
        "timestamp": 1700000000,
    }
    payload.update(overrides)
    return payload


def http_response(status_code: int = 200, payload=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.text = text
    response.json.return_value = payload
    return response


@pytest.fixture
def collector(tmp_path) -> ArtifactCollector:
    return ArtifactCollector(str(tmp_path), timeout=10, session=MagicMock())


class TestCoverageUrl:
    def test_appends_endpoint_path(self):
        assert coverage_url("http://localhost:9095") == "http://localhost:9095/coverage"
        assert coverage_url("http://localhost:9095/") == "http://localhost:9095/coverage"

    def test_keeps_full_endpoint_url(self):
        assert coverage_url("http://localhost:9095/coverage") == "http://localhost:9095/coverage"


class TestCollect:
    def test_writes_blobs_under_test_dir(self, collector, tmp_path):
        collector.session.post.return_value = http_response(payload=coverage_response())

        bundle = collector.collect("http://localhost:9095", "test-case")

        test_dir = tmp_path / "test-case"
        assert (test_dir / "covmeta.X").read_bytes() == b"hello"
        assert (test_dir / "covcounters.X.1234.1700000000").read_bytes() == b"counter content"
        assert bundle.meta_name == "covmeta.X"
        assert bundle.test_name == "test-case"
        assert bundle.collected_at == 1700000000

    def test_sends_test_name(self, collector):
        collector.session.post.return_value = http_response(payload=coverage_response())

        collector.collect("http://localhost:9095", "test-case")

        collector.session.post.assert_called_once_with(
            "http://localhost:9095/coverage", json={"test_name": "test-case"}, timeout=10
        )

    def test_overwrites_existing_files(self, collector, tmp_path):
        collector.session.post.return_value = http_response(payload=coverage_response())
        collector.collect("http://localhost:9095", "test-case")
        collector.session.post.return_value = http_response(payload=coverage_response(meta_data=b64(b"again")))

        collector.collect("http://localhost:9095", "test-case")

        assert (tmp_path / "test-case" / "covmeta.X").read_bytes() == b"again"

    def test_server_error_mentions_status_code(self, collector):
        collector.session.post.return_value = http_response(status_code=500, text="server error")

        with pytest.raises(CollectionError) as e:
            collector.collect("http://localhost:9095", "test-case")

        assert "500" in str(e.value)
        assert e.value.status_code == 500
        assert e.value.body == "server error"

    def test_connection_error(self, collector):
        collector.session.post.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(CollectionError, match="connection refused"):
            collector.collect("http://localhost:9095", "test-case")

    def test_invalid_base64_names_the_field(self, collector, tmp_path):
        collector.session.post.return_value = http_response(payload=coverage_response(counters_data="not base64!!"))

        with pytest.raises(CollectionError) as e:
            collector.collect("http://localhost:9095", "test-case")

        assert e.value.field == "counters_data"
        assert not (tmp_path / "test-case").exists()

    def test_missing_field(self, collector):
        payload = coverage_response()
        del payload["meta_data"]
        collector.session.post.return_value = http_response(payload=payload)

        with pytest.raises(CollectionError) as e:
            collector.collect("http://localhost:9095", "test-case")

        assert e.value.field == "meta_data"

    def test_invalid_json(self, collector):
        response = http_response()
        response.json.side_effect = ValueError("Expecting value")
        collector.session.post.return_value = response

        with pytest.raises(CollectionError, match="decode"):
            collector.collect("http://localhost:9095", "test-case")

    @pytest.mark.parametrize("name", ["../covmeta.X", "/etc/covmeta.X", "sub/covmeta.X", ".."])
    def test_rejects_unsafe_filenames(self, collector, name):
        collector.session.post.return_value = http_response(payload=coverage_response(meta_filename=name))

        with pytest.raises(CollectionError) as e:
            collector.collect("http://localhost:9095", "test-case")

        assert e.value.field == "meta_filename"

    def test_failed_second_write_keeps_first_blob(self, collector, tmp_path):
        collector.session.post.return_value = http_response(payload=coverage_response())
        # a directory in place of the counters file makes the second write fail
        os.makedirs(tmp_path / "test-case" / "covcounters.X.1234.1700000000")

        with pytest.raises(CollectionError, match="failed to write"):
            collector.collect("http://localhost:9095", "test-case")

        assert (tmp_path / "test-case" / "covmeta.X").read_bytes() == b"hello"

    @pytest.mark.parametrize("timestamp", ["not-a-number", 1.5, True, -1])
    def test_invalid_timestamp_names_the_field(self, collector, timestamp):
        collector.session.post.return_value = http_response(payload=coverage_response(timestamp=timestamp))

        with pytest.raises(CollectionError) as e:
            collector.collect("http://localhost:9095", "test-case")

        assert e.value.field == "timestamp"

    @pytest.mark.parametrize(
        "timestamp", [1700000000, 1700000000123, 1700000000123456, 1700000000123456789], ids=["s", "ms", "us", "ns"]
    )
    def test_timestamp_is_stored_in_seconds(self, collector, timestamp):
        collector.session.post.return_value = http_response(payload=coverage_response(timestamp=timestamp))

        assert collector.collect("http://localhost:9095", "test-case").collected_at == 1700000000

    def test_missing_timestamp_uses_collection_time(self, collector):
        payload = coverage_response()
        del payload["timestamp"]
        collector.session.post.return_value = http_response(payload=payload)

        with patch("lib.podcov.collector.time.time", return_value=1700000042.7):
            assert collector.collect("http://localhost:9095", "test-case").collected_at == 1700000042


class TestSessionPerRequest:
    def test_each_collection_uses_its_own_session(self, tmp_path, mocker: MockerFixture):
        session_class = mocker.patch("lib.podcov.collector.requests.Session")
        session = session_class.return_value.__enter__.return_value
        session.post.return_value = http_response(payload=coverage_response())
        collector = ArtifactCollector(str(tmp_path), timeout=10)

        collector.collect("http://localhost:9095", "test-a")
        collector.collect("http://localhost:9095", "test-b")

        assert session_class.call_count == 2
        assert session_class.return_value.__exit__.call_count == 2
        assert (tmp_path / "test-b" / "covmeta.X").read_bytes() == b"hello"
