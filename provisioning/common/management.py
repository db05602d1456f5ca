"""RabbitMQ management API client.

Every ``ensure_*`` call reads the current definition first and only writes
when the resource is missing:

- missing   -> PUT/POST the exact definition, returns "created"
- identical -> no write, returns "unchanged"
- different -> ConflictError; the broker refuses such changes without a
  delete, and this tool never deletes.

Transport policy: connection errors, timeouts and 5xx are retried with
exponential backoff; 4xx (other than the 404 of an existence check) is
raised immediately as BrokerRequestError.
"""
from __future__ import annotations
import logging
import threading
import time
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter

from .config import Settings
from .errors import BrokerRequestError, ConflictError, ConnectivityError
from .readiness import ReadinessPoller
from .resources import Binding, Exchange, Permission, Policy, Queue

log = logging.getLogger("management")

CREATED = "created"
UNCHANGED = "unchanged"

# Reported by newer brokers even when never declared.
_SERVER_ARGUMENTS = {"x-queue-type"}


def _segment(value: str) -> str:
    return quote(value, safe="")


def _subset(actual: Dict[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    return {k: actual.get(k) for k in keys}


class ManagementClient:

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.base_url = settings.management_url.rstrip("/")
        self.timeout = settings.HTTP_TIMEOUT
        self.retries = max(settings.HTTP_RETRIES, 0)
        self.backoff = settings.HTTP_BACKOFF

        if session is None:
            session = requests.Session()
            pool = max(settings.APPLY_WORKERS, 1)
            adapter = HTTPAdapter(pool_connections=pool, pool_maxsize=pool)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        session.auth = (settings.RABBITMQ_USER, settings.RABBITMQ_PASS)
        session.headers.update({"Content-Type": "application/json"})
        self.session = session

    # ---------- transport ----------

    def _url(self, *segments: str) -> str:
        return "/".join([self.base_url, *(_segment(s) for s in segments)])

    def _request(
        self,
        method: str,
        *segments: str,
        json: Optional[Dict[str, Any]] = None,
        missing_ok: bool = False,
    ) -> Optional[requests.Response]:
        url = self._url(*segments)
        attempts = self.retries + 1
        backoff = self.backoff
        for i in range(attempts):
            try:
                resp = self.session.request(method, url, json=json, timeout=self.timeout)
            except requests.RequestException as e:
                if i == attempts - 1:
                    raise ConnectivityError(f"{method} {url} failed after {attempts} attempt(s): {e}") from e
                log.warning("%s %s: %s (try %s/%s); retrying...", method, url, e, i + 1, attempts)
            else:
                if 200 <= resp.status_code < 300:
                    return resp
                if resp.status_code == 404 and missing_ok:
                    return None
                if 400 <= resp.status_code < 500:
                    raise BrokerRequestError(resp.status_code, url, resp.text)
                if i == attempts - 1:
                    raise ConnectivityError(
                        f"{method} {url} answered HTTP {resp.status_code} after {attempts} attempt(s)"
                    )
                log.warning("HTTP %s from %s %s (try %s/%s); retrying...", resp.status_code, method, url, i + 1, attempts)
            time.sleep(backoff)
            backoff *= 2
        raise RuntimeError("unreachable")

    def _get(self, *segments: str) -> Optional[Any]:
        resp = self._request("GET", *segments, missing_ok=True)
        if resp is None:
            return None
        return resp.json()

    # ---------- readiness ----------

    def is_ready(self, timeout: Optional[float] = None) -> bool:
        """Single probe of /api/overview. Never raises, never retries."""
        try:
            resp = self.session.get(self._url("overview"), timeout=timeout or self.timeout)
        except requests.RequestException as e:
            log.debug("readiness probe failed: %s", e)
            return False
        return 200 <= resp.status_code < 300

    def wait_until_ready(
        self,
        timeout: float,
        poll_interval: float,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        # a single probe must not outlive the polling cadence
        probe_timeout = min(self.timeout, poll_interval)
        return ReadinessPoller(
            lambda: self.is_ready(probe_timeout), timeout, poll_interval, cancel=cancel
        ).wait()

    # ---------- ensure_* ----------

    def _compare(self, name: str, expected: Dict[str, Any], actual: Dict[str, Any]) -> str:
        found = _subset(actual, expected.keys())
        if "arguments" in found:
            found["arguments"] = {
                k: v
                for k, v in (found["arguments"] or {}).items()
                if k not in _SERVER_ARGUMENTS or k in expected["arguments"]
            }
        if found != expected:
            raise ConflictError(name, expected, found)
        return UNCHANGED

    def ensure_virtual_host(self, name: str) -> str:
        if self._get("vhosts", name) is not None:
            return UNCHANGED
        self._request("PUT", "vhosts", name, json={})
        return CREATED

    def ensure_permission(self, vhost: str, permission: Permission) -> str:
        expected = permission.body()
        current = self._get("permissions", vhost, permission.user)
        if current is None:
            self._request("PUT", "permissions", vhost, permission.user, json=expected)
            return CREATED
        return self._compare(permission.user, expected, current)

    def ensure_exchange(self, vhost: str, exchange: Exchange) -> str:
        expected = exchange.body()
        current = self._get("exchanges", vhost, exchange.name)
        if current is None:
            self._request("PUT", "exchanges", vhost, exchange.name, json=expected)
            return CREATED
        return self._compare(exchange.name, expected, current)

    def ensure_queue(self, vhost: str, queue: Queue) -> str:
        expected = queue.body()
        current = self._get("queues", vhost, queue.name)
        if current is None:
            self._request("PUT", "queues", vhost, queue.name, json=expected)
            return CREATED
        return self._compare(queue.name, expected, current)

    def ensure_binding(self, vhost: str, binding: Binding) -> str:
        # Bindings are identified by their key, so there is nothing to conflict with.
        path = ("bindings", vhost, "e", binding.source, "q", binding.destination)
        existing = self._get(*path) or []
        for b in existing:
            if b.get("routing_key") == binding.routing_key and not b.get("arguments"):
                return UNCHANGED
        self._request("POST", *path, json=binding.body())
        return CREATED

    def ensure_policy(self, vhost: str, policy: Policy) -> str:
        expected = policy.body()
        current = self._get("policies", vhost, policy.name)
        if current is None:
            self._request("PUT", "policies", vhost, policy.name, json=expected)
            return CREATED
        return self._compare(policy.name, expected, current)

    def close(self) -> None:
        self.session.close()
