"""Unit tests for worker entrypoint helpers."""

import threading
import urllib.error
import urllib.request
from http.server import HTTPServer
from unittest.mock import MagicMock, patch

import pytest

import main
from utils.job_errors import ConfigurationError


@pytest.fixture
def health_server():
    server = HTTPServer(("127.0.0.1", 0), main.HealthCheckHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


class TestHealthCheckHandler:
    @pytest.mark.parametrize("path", ["/", "/health"])
    def test_health_paths_return_ok(self, health_server, path):
        with urllib.request.urlopen(f"{health_server}{path}", timeout=5) as response:
            assert response.status == 200
            assert response.read() == b"OK"

    def test_other_paths_are_not_found(self, health_server):
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(f"{health_server}/metrics", timeout=5)
        assert exc_info.value.code == 404


class TestConnectWithRetry:
    def test_succeeds_after_transient_failures(self):
        attempts = MagicMock(side_effect=[ConnectionError("refused"), None])

        with patch("main.time.sleep") as sleep:
            assert main.connect_with_retry(attempts, max_retries=3, base_delay=1.0) is True

        assert attempts.call_count == 2
        sleep.assert_called_once_with(1.0)

    def test_raises_after_max_attempts(self):
        attempts = MagicMock(side_effect=ConnectionError("refused"))

        with patch("main.time.sleep") as sleep, pytest.raises(ConnectionError):
            main.connect_with_retry(attempts, max_retries=3, base_delay=1.0)

        assert attempts.call_count == 3
        assert [call.args[0] for call in sleep.call_args_list] == [1.0, 2.0]

    def test_configuration_errors_are_not_retried(self):
        attempts = MagicMock(side_effect=ConfigurationError("Missing DATABASE_URL"))

        with patch("main.time.sleep") as sleep, pytest.raises(ConfigurationError):
            main.connect_with_retry(attempts, max_retries=3)

        attempts.assert_called_once()
        sleep.assert_not_called()


class TestBuildWorkerDeps:
    def test_builds_both_namespaces_on_one_client(self):
        with patch("clients.storage.boto3.client"):
            deps = main.build_worker_deps()

        assert deps.tiles_store.prefix == "drawings-tiles"
        assert deps.pdfs_store.prefix == "drawings-pdfs"
        assert deps.tiles_store.client is deps.pdfs_store.client
        assert deps.tiles_store.public_base_url == "https://tiles.example.com"

    def test_missing_base_url_is_fatal(self):
        with patch.object(main, "config") as cfg:
            cfg.drawings_tiles_base_url = None
            with pytest.raises(ConfigurationError):
                main.build_worker_deps()


class TestSignalHandler:
    def test_sets_stop_event(self):
        main.stop_event.clear()
        try:
            main.signal_handler(15, None)
            assert main.stop_event.is_set()
        finally:
            main.stop_event.clear()
