import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

import pytest
import requests

from provisioning.common.config import Settings
from provisioning.common.management import ManagementClient


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None):
        self.status_code = status_code
        self._payload = payload
        self.text = "" if payload is None else json.dumps(payload)

    def json(self):
        return self._payload


def topic_matches(pattern: str, key: str) -> bool:
    def _m(pw: List[str], kw: List[str]) -> bool:
        if not pw:
            return not kw
        if pw[0] == "#":
            return _m(pw[1:], kw) or (bool(kw) and _m(pw, kw[1:]))
        if not kw:
            return False
        if pw[0] in ("*", kw[0]):
            return _m(pw[1:], kw[1:])
        return False

    return _m(pattern.split("."), key.split("."))


class FakeBroker:
    """
    In-memory stand-in for a requests.Session pointed at the RabbitMQ
    management API. Keeps per-vhost state, answers like the real API
    (404 for missing, 400 for redeclaring with other properties) and can
    route messages through exchanges, alternate exchanges and dead-letter
    exchanges.
    """

    def __init__(self, report_queue_type: bool = True):
        self.auth = None
        self.headers: Dict[str, str] = {}
        self.report_queue_type = report_queue_type
        self.vhosts: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Tuple[str, Tuple[str, ...]]] = []
        self.down = False
        self.faults: Dict[Tuple[str, str, str], List[Any]] = {}

    # ---------- test helpers ----------

    def fail(self, method: str, kind: str, name: str, *outcomes: Any) -> None:
        """Queue answers (status codes or exceptions) for METHOD on kind/.../name."""
        self.faults.setdefault((method, kind, name), []).extend(outcomes)

    def writes(self) -> List[Tuple[str, Tuple[str, ...]]]:
        return [r for r in self.requests if r[0] in ("PUT", "POST", "DELETE")]

    def state(self, vhost: str) -> Dict[str, Any]:
        return self.vhosts[vhost]

    # ---------- requests.Session surface ----------

    def mount(self, *_a, **_k):
        pass

    def close(self):
        pass

    def get(self, url, timeout=None):
        return self.request("GET", url, timeout=timeout)

    def request(self, method, url, json=None, timeout=None):
        if self.down:
            raise requests.ConnectionError("connection refused")
        parts = tuple(unquote(p) for p in urlsplit(url).path.split("/")[2:])
        self.requests.append((method, parts))

        queued = self.faults.get((method, parts[0], parts[-1]))
        if queued:
            outcome = queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return FakeResponse(outcome, {"error": "injected"})

        handler = getattr(self, f"_{parts[0]}", None)
        if handler is None:
            return FakeResponse(404, {"error": "Object Not Found"})
        return handler(method, parts[1:], json)

    # ---------- endpoints ----------

    def _overview(self, method, parts, body):
        return FakeResponse(200, {"rabbitmq_version": "3.12.0"})

    def _vhosts(self, method, parts, body):
        (vh,) = parts
        if method == "GET":
            return FakeResponse(200, {"name": vh}) if vh in self.vhosts else FakeResponse(404)
        self.vhosts.setdefault(
            vh,
            {"permissions": {}, "exchanges": {}, "queues": {}, "bindings": [], "policies": {}, "messages": {}},
        )
        return FakeResponse(201)

    def _vhost(self, vh) -> Optional[Dict[str, Any]]:
        return self.vhosts.get(vh)

    def _permissions(self, method, parts, body):
        vh, user = parts
        state = self._vhost(vh)
        if state is None:
            return FakeResponse(404)
        if method == "GET":
            current = state["permissions"].get(user)
            return FakeResponse(200, current) if current else FakeResponse(404)
        state["permissions"][user] = {"user": user, "vhost": vh, **body}
        return FakeResponse(201)

    def _exchanges(self, method, parts, body):
        vh, name = parts
        state = self._vhost(vh)
        if state is None:
            return FakeResponse(404)
        current = state["exchanges"].get(name)
        if method == "GET":
            return FakeResponse(200, current) if current else FakeResponse(404)
        wanted = {"name": name, "vhost": vh, **body}
        if current is not None and current != wanted:
            return FakeResponse(400, {"error": "bad_request", "reason": "inequivalent arg"})
        state["exchanges"][name] = wanted
        return FakeResponse(201 if current is None else 204)

    def _queues(self, method, parts, body):
        vh, name = parts
        state = self._vhost(vh)
        if state is None:
            return FakeResponse(404)
        current = state["queues"].get(name)
        if method == "GET":
            return FakeResponse(200, current) if current else FakeResponse(404)
        arguments = dict(body.get("arguments") or {})
        if self.report_queue_type:
            arguments.setdefault("x-queue-type", "classic")
        wanted = {"name": name, "vhost": vh, "messages": 0, **body, "arguments": arguments}
        if current is not None and {k: current[k] for k in ("durable", "auto_delete", "arguments")} != {
            k: wanted[k] for k in ("durable", "auto_delete", "arguments")
        }:
            return FakeResponse(400, {"error": "bad_request", "reason": "inequivalent arg"})
        state["queues"][name] = wanted
        state["messages"].setdefault(name, [])
        return FakeResponse(201 if current is None else 204)

    def _bindings(self, method, parts, body):
        vh, _e, src, _q, dst = parts
        state = self._vhost(vh)
        if state is None or src not in state["exchanges"] or dst not in state["queues"]:
            return FakeResponse(404)
        if method == "GET":
            return FakeResponse(
                200, [b for b in state["bindings"] if b["source"] == src and b["destination"] == dst]
            )
        binding = {
            "source": src,
            "destination": dst,
            "destination_type": "queue",
            "routing_key": body.get("routing_key", ""),
            "arguments": body.get("arguments") or {},
            "vhost": vh,
        }
        if binding not in state["bindings"]:
            state["bindings"].append(binding)
        return FakeResponse(201)

    def _policies(self, method, parts, body):
        vh, name = parts
        state = self._vhost(vh)
        if state is None:
            return FakeResponse(404)
        if method == "GET":
            current = state["policies"].get(name)
            return FakeResponse(200, current) if current else FakeResponse(404)
        state["policies"][name] = {"vhost": vh, "name": name, **body}
        return FakeResponse(201)

    # ---------- message routing ----------

    def _route(self, vh: str, exchange: str, key: str, seen: Tuple[str, ...] = ()) -> List[str]:
        state = self.vhosts[vh]
        ex = state["exchanges"][exchange]
        kind = ex["type"]
        matched = []
        for b in state["bindings"]:
            if b["source"] != exchange:
                continue
            if kind == "fanout" or (kind == "direct" and b["routing_key"] == key) or (
                kind == "topic" and topic_matches(b["routing_key"], key)
            ):
                matched.append(b["destination"])
        ae = (ex.get("arguments") or {}).get("alternate-exchange")
        if not matched and ae and ae not in seen and ae in state["exchanges"]:
            return self._route(vh, ae, key, seen + (exchange,))
        return list(dict.fromkeys(matched))

    def publish(self, vh: str, exchange: str, routing_key: str, body: str = "") -> List[str]:
        queues = self._route(vh, exchange, routing_key)
        for q in queues:
            self.vhosts[vh]["messages"][q].append({"routing_key": routing_key, "body": body})
        return queues

    def reject(self, vh: str, queue: str) -> List[str]:
        """Reject the head message of ``queue`` without requeue (dead-letters it)."""
        state = self.vhosts[vh]
        msg = state["messages"][queue].pop(0)
        args = state["queues"][queue]["arguments"]
        dlx = args.get("x-dead-letter-exchange")
        if not dlx:
            return []
        key = args.get("x-dead-letter-routing-key") or msg["routing_key"]
        return self.publish(vh, dlx, key, msg["body"])

    def messages(self, vh: str, queue: str) -> List[Dict[str, Any]]:
        return self.vhosts[vh]["messages"].get(queue, [])


class RecordingClient:
    """Wraps a ManagementClient and records every ensure_* call."""

    def __init__(self, inner, on_call=None):
        self.inner = inner
        self.on_call = on_call
        self.calls: List[Tuple[str, Any]] = []

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not name.startswith("ensure_"):
            return attr

        def _wrapped(*args):
            self.calls.append((name, args[-1]))
            if self.on_call is not None:
                self.on_call(name, args[-1])
            return attr(*args)

        return _wrapped


@pytest.fixture
def settings():
    return Settings(
        RABBITMQ_HOST="broker.test",
        RABBITMQ_PORT=15672,
        RABBITMQ_USER="admin",
        RABBITMQ_PASS="secret",
        RABBITMQ_VHOST="/gasolinera",
        HTTP_RETRIES=2,
        HTTP_BACKOFF=0.0,
        READY_TIMEOUT=1.0,
        READY_POLL_INTERVAL=0.01,
        APPLY_WORKERS=1,
    )


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def client(settings, broker):
    return ManagementClient(settings, session=broker)


@pytest.fixture
def no_sleep(monkeypatch):
    slept: List[float] = []
    monkeypatch.setattr("provisioning.common.management.time.sleep", slept.append)
    return slept
