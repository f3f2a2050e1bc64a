import json
import threading
import time

import pytest
from flask import Flask, request
from werkzeug.serving import make_server


class IngestRecorder:
    """Collects requests received by the fake ingest endpoint."""

    def __init__(self):
        self.base_url = ""
        self.requests: list[dict] = []
        self.status = 200
        self.statuses: list[int] = []   # consumed first, then ``status``
        self._lock = threading.Lock()

    def record(self, path: str, headers: dict, body: str) -> int:
        with self._lock:
            self.requests.append({"path": path, "headers": headers, "body": body})
            if self.statuses:
                return self.statuses.pop(0)
            return self.status

    def bodies(self, path: str | None = None) -> list[str]:
        with self._lock:
            return [r["body"] for r in self.requests if path is None or r["path"] == path]

    def events(self, path: str | None = None) -> list:
        """Decode every NDJSON line received (optionally for one path)."""
        decoded = []
        for body in self.bodies(path):
            decoded.extend(json.loads(line) for line in body.splitlines() if line)
        return decoded

    def wait_for_events(self, count: int, path: str | None = None, timeout: float = 5.0) -> list:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            events = self.events(path)
            if len(events) >= count:
                return events
            time.sleep(0.05)
        return self.events(path)


def create_ingest_app(recorder: IngestRecorder) -> Flask:
    app = Flask(__name__)

    @app.route("/<path:path>", methods=["POST"])
    def ingest(path):
        body = request.get_data(as_text=True)
        status = recorder.record("/" + path, dict(request.headers), body)
        if status >= 300:
            return {"error": "rejected"}, status
        return {"accepted": len(body.splitlines())}, status

    return app


@pytest.fixture
def ingest_server():
    recorder = IngestRecorder()
    server = make_server("127.0.0.1", 0, create_ingest_app(recorder), threaded=True)
    recorder.base_url = f"http://127.0.0.1:{server.server_port}"
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    yield recorder
    server.shutdown()
    t.join(timeout=5)
