"""
Test helper functions and factory methods for the Spark Cloud SDK.
"""

import asyncio
import json
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from spark_cloud.shared.config import SparkCloudConfig

BASE_URL = "https://api.spark.test"


def make_config(**overrides) -> SparkCloudConfig:
    """Config pointing at the fake cloud, with fast reconnects."""
    values = {
        "api_base_url": BASE_URL,
        "reconnect_base_delay": 1.0,
        "reconnect_max_delay": 30.0,
        "reconnect_jitter": False,
        "dispatch_workers": 2,
        "device_snapshot_ttl": 300.0,
    }
    values.update(overrides)
    return SparkCloudConfig(**values)


def sse_frame(
    name: Optional[str],
    data: Optional[str] = "payload",
    device_id: Optional[str] = "abc123",
    ttl: Any = 60,
    published_at: str = "2015-04-01T10:00:00.000Z",
    public: Optional[bool] = None,
    envelope: bool = True
) -> bytes:
    """Encode one event frame the way the cloud does."""
    lines = []
    if name is not None:
        lines.append(f"event: {name}")
    if envelope:
        body: Dict[str, Any] = {"ttl": ttl, "published_at": published_at, "coreid": device_id}
        if data is not None:
            body["data"] = data
        if public is not None:
            body["public"] = public
        lines.append(f"data: {json.dumps(body)}")
    else:
        if data is not None:
            lines.append(f"data: {data}")
        lines.append(f"ttl: {ttl}")
        lines.append(f"published_at: {published_at}")
        if device_id is not None:
            lines.append(f"coreid: {device_id}")
        if public is not None:
            lines.append(f"public: {'true' if public else 'false'}")
    return ("\n".join(lines) + "\n\n").encode("utf-8")


@dataclass
class StreamScript:
    """One scripted response for one request."""
    status_code: int = 200
    chunks: List[bytes] = field(default_factory=list)
    # Raise a read error after the chunks instead of ending the stream.
    drop: bool = False
    # Keep the stream open after the chunks until the reader goes away.
    hold: bool = False
    body: str = ""


class FakeCloud:
    """httpx.MockTransport handler serving scripted responses per path.

    Stream paths without remaining scripts stay open and silent. JSON
    routes are registered with ``route``.
    """

    def __init__(self):
        self.scripts: Dict[str, List[StreamScript]] = defaultdict(list)
        self.routes: Dict[tuple, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handler)

    def add_stream(self, path: str, *scripts: StreamScript):
        self.scripts[path].extend(scripts)

    def route(self, method: str, path: str, status_code: int = 200, json_body: Any = None,
              responder: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        if responder is None:
            def responder(request, _status=status_code, _body=json_body):
                return httpx.Response(_status, json=_body if _body is not None else {})
        self.routes[(method, path)] = responder

    def requests_to(self, path: str, method: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path == path and (method is None or r.method == method)
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key in self.routes:
            return self.routes[key](request)

        if request.method == "GET" and request.url.path.endswith("/events"):
            scripts = self.scripts.get(request.url.path)
            script = scripts.pop(0) if scripts else StreamScript(hold=True)
            if script.status_code >= 400:
                return httpx.Response(script.status_code, text=script.body or "error")
            return httpx.Response(
                script.status_code,
                headers={"Content-Type": "text/event-stream"},
                content=self._stream(script)
            )

        return httpx.Response(404, json={"error": "not found"})

    @staticmethod
    async def _stream(script: StreamScript):
        for chunk in script.chunks:
            yield chunk
            await asyncio.sleep(0)
        if script.drop:
            raise httpx.ReadError("connection reset by peer")
        if script.hold:
            await asyncio.Event().wait()


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


class Collector:
    """Subscription handler recording every (record, error) it gets."""

    def __init__(self):
        self.records = []
        self.errors = []
        self.calls = []

    def __call__(self, record, error):
        self.calls.append((record, error))
        if error is not None:
            self.errors.append(error)
        else:
            self.records.append(record)

    @property
    def names(self) -> List[str]:
        return [r.name for r in self.records]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0):
    """Poll ``predicate`` until true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
