"""Tests for the dashboard app (tails/dashboard/app.py)."""

import asyncio
import time
from typing import Any, Dict, List, Optional

import anyio
import pytest
from fastapi.testclient import TestClient

from helpers import ScriptedSource, barrier, wait_for_condition
from tails.config import TailsConfig
from tails.dashboard.app import create_app
from tails.exceptions import SourceExitedError
from tails.streaming.broker import EventBroker


class RawClient:
    """Drive the ASGI app directly so an endless stream can be read.

    The client stays connected until disconnect() is called. With
    broken_pipe every send fails the way a dead socket does.
    """

    def __init__(
        self,
        app,
        path: str = "/sse",
        http_version: str = "1.1",
        spec_version: Optional[str] = None,
        broken_pipe: bool = False
    ):
        self.app = app
        self.path = path
        self.http_version = http_version
        self.spec_version = spec_version
        self.broken_pipe = broken_pipe
        self.messages: List[Dict[str, Any]] = []
        self._disconnected = asyncio.Event()

    def start(self) -> asyncio.Task:
        asgi = {"version": "3.0"}
        if self.spec_version is not None:
            asgi["spec_version"] = self.spec_version
        scope = {
            "type": "http",
            "asgi": asgi,
            "http_version": self.http_version,
            "method": "GET",
            "scheme": "http",
            "path": self.path,
            "raw_path": self.path.encode(),
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"testserver"), (b"accept", b"text/event-stream")],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        return asyncio.create_task(self.app(scope, self._receive, self._send))

    def disconnect(self) -> None:
        self._disconnected.set()

    async def _receive(self) -> Dict[str, Any]:
        await self._disconnected.wait()
        return {"type": "http.disconnect"}

    async def _send(self, message: Dict[str, Any]) -> None:
        if self.broken_pipe:
            raise OSError("Broken pipe")
        self.messages.append(message)

    @property
    def status(self) -> int:
        return next(m["status"] for m in self.messages if m["type"] == "http.response.start")

    @property
    def headers(self) -> Dict[str, str]:
        start = next(m for m in self.messages if m["type"] == "http.response.start")
        return {k.decode(): v.decode() for k, v in start["headers"]}

    @property
    def text(self) -> str:
        return b"".join(
            m.get("body", b"") for m in self.messages if m["type"] == "http.response.body"
        ).decode()


def _stream_config(**kwargs) -> TailsConfig:
    kwargs.setdefault("retry_ms", None)
    kwargs.setdefault("disconnect_poll_interval", 0.05)
    return TailsConfig(**kwargs)


class TestSseEndpoint:
    """Tests for the /sse endpoint."""

    def test_streams_published_lines(self, sample_lines):
        """Test the basic fan-out scenario over HTTP."""
        async def run_test():
            broker = EventBroker()
            app = create_app(_stream_config(), broker=broker)
            async with broker:
                client = RawClient(app)
                task = client.start()
                await wait_for_condition(lambda: ": connected" in client.text)

                for line in sample_lines:
                    await broker.publish(line)

                expected = "".join(f"event: message\ndata: {line}\n\n" for line in sample_lines)
                await wait_for_condition(lambda: client.text.endswith(expected))

                assert client.status == 200
                assert client.headers["content-type"] == "text/event-stream"
                assert client.headers["cache-control"] == "no-cache"
                assert client.headers["connection"] == "keep-alive"
                assert client.headers["access-control-allow-origin"] == "*"

                client.disconnect()
                await asyncio.wait_for(task, timeout=2.0)
                await barrier(broker)
                assert broker.subscriber_count == 0

        anyio.run(run_test)

    def test_retry_field_sent_first(self):
        async def run_test():
            broker = EventBroker()
            app = create_app(_stream_config(retry_ms=1500), broker=broker)
            async with broker:
                client = RawClient(app)
                task = client.start()
                await wait_for_condition(lambda: ": connected" in client.text)
                assert client.text.startswith("retry: 1500\n\n")

                client.disconnect()
                await asyncio.wait_for(task, timeout=2.0)

        anyio.run(run_test)

    def test_capacity_reject(self):
        """Test a join past max_subscribers is answered with 503."""
        async def run_test():
            broker = EventBroker(max_subscribers=1)
            app = create_app(_stream_config(), broker=broker)
            async with broker:
                first = RawClient(app)
                first_task = first.start()
                await wait_for_condition(lambda: broker.subscriber_count == 1)

                second = RawClient(app)
                await asyncio.wait_for(second.start(), timeout=2.0)
                assert second.status == 503
                assert "Maximum client connections reached (1)" in second.text

                first.disconnect()
                await asyncio.wait_for(first_task, timeout=2.0)

        anyio.run(run_test)

    @pytest.mark.parametrize("spec_version", [None, "2.4"])
    def test_dead_connection_before_first_frame_leaves(self, spec_version):
        """Test a client gone before the first chunk does not keep its slot."""
        async def run_test():
            broker = EventBroker(max_subscribers=1)
            app = create_app(_stream_config(), broker=broker)
            async with broker:
                client = RawClient(app, spec_version=spec_version, broken_pipe=True)
                client.disconnect()
                await asyncio.wait_for(
                    asyncio.gather(client.start(), return_exceptions=True), timeout=2.0
                )
                await barrier(broker)
                assert broker.subscriber_count == 0

                await broker.publish("x")
                await barrier(broker)
                assert broker.stats()["delivered"] == 0

                # The slot is free for the next client.
                second = RawClient(app)
                second_task = second.start()
                await wait_for_condition(lambda: ": connected" in second.text)
                assert second.status == 200

                second.disconnect()
                await asyncio.wait_for(second_task, timeout=2.0)

        anyio.run(run_test)

    def test_http_1_0_unsupported(self):
        """Test a transport without incremental flush gets a 500."""
        async def run_test():
            broker = EventBroker()
            app = create_app(_stream_config(), broker=broker)
            async with broker:
                client = RawClient(app, http_version="1.0")
                await asyncio.wait_for(client.start(), timeout=2.0)

                assert client.status == 500
                assert client.text == "Streaming unsupported!"
                await barrier(broker)
                assert broker.subscriber_count == 0

        anyio.run(run_test)

    def test_broker_not_running(self):
        """Test /sse answers 503 when the broker is stopped."""
        client = TestClient(create_app(TailsConfig()))
        response = client.get("/sse")
        assert response.status_code == 503
        assert response.json() == {"detail": "Event broker is not running"}

    def test_connect_rate_limit(self):
        """Test connection attempts are rate limited per client."""
        client = TestClient(create_app(TailsConfig(connect_rate_limit="1/minute")))
        assert client.get("/sse").status_code == 503
        assert client.get("/sse").status_code == 429


class TestHealthEndpoints:
    """Tests for /api/health and /api/status."""

    def test_health(self):
        with TestClient(create_app(TailsConfig())) as client:
            response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["streaming"] is True
        assert "version" in data

    def test_health_without_lifespan(self):
        client = TestClient(create_app(TailsConfig()))
        assert client.get("/api/health").json()["streaming"] is False

    def test_status_reports_source(self, log_file):
        """Test the status endpoint shows broker counters and source state."""
        source = ScriptedSource([(["a"], SourceExitedError("tail exited", returncode=0))])
        app = create_app(TailsConfig(path=log_file, restart=False), source=source)

        with TestClient(app) as client:
            data = None
            for _ in range(100):
                data = client.get("/api/status").json()
                if data["source"]["state"] == "finished" and data["broker"]["published"] == 1:
                    break
                time.sleep(0.02)

        assert data["path"] == str(log_file)
        assert data["source"]["state"] == "finished"
        assert data["source"]["lines"] == 1
        assert data["broker"]["published"] == 1
        assert data["broker"]["policy"] == "drop"

    def test_status_without_source(self):
        with TestClient(create_app(TailsConfig())) as client:
            data = client.get("/api/status").json()
        assert data["path"] is None
        assert data["source"] is None
        assert data["broker"]["running"] is True


class TestStaticEndpoints:
    """Tests for the viewer page and its assets."""

    @pytest.mark.parametrize("path,marker", [
        ("/", "id=\"log\""),
        ("/html/app.js", "EventSource"),
        ("/html/styles.css", ".line"),
        ("/html/app.js", "hl-error"),
        ("/html/app.js", "hl-search"),
        ("/html/styles.css", ".hl-error"),
        ("/html/styles.css", ".hl-search"),
    ])
    def test_bundled_files(self, path, marker):
        client = TestClient(create_app(TailsConfig()))
        response = client.get(path)
        assert response.status_code == 200
        assert marker in response.text

    def test_viewer_builds_lines_from_text_nodes(self):
        """Test log lines are rendered as text, never parsed as markup."""
        client = TestClient(create_app(TailsConfig()))
        script = client.get("/html/app.js").text
        assert "textContent" in script
        assert "innerHTML" not in script

    def test_missing_static_dir_files(self, tmp_path):
        client = TestClient(create_app(TailsConfig(static_dir=tmp_path)))
        assert client.get("/").status_code == 404
        assert client.get("/html/app.js").status_code == 404
