"""Declarative model of a broker topology.

Resources are frozen dataclasses; a topology is applied tier by tier in the
order returned by ``Topology.tiers()``:

    vhost -> permissions -> exchanges -> queues -> bindings -> policies

Within a tier, resources keep their declaration order so runs and logs are
reproducible.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import ValidationError

VHOST = "vhost"
PERMISSION = "permission"
EXCHANGE = "exchange"
QUEUE = "queue"
BINDING = "binding"
POLICY = "policy"

EXCHANGE_KINDS = ("topic", "direct", "fanout")
POLICY_TARGETS = ("queues", "exchanges")


@dataclass(frozen=True)
class ResourceRef:
    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.name}"


@dataclass(frozen=True)
class VirtualHost:
    name: str

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(VHOST, self.name)


@dataclass(frozen=True)
class Permission:
    user: str
    configure: str = ".*"
    write: str = ".*"
    read: str = ".*"

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(PERMISSION, self.user)

    def body(self) -> Dict[str, Any]:
        return {"configure": self.configure, "write": self.write, "read": self.read}


@dataclass(frozen=True)
class Exchange:
    name: str
    kind: str = "topic"
    durable: bool = True
    auto_delete: bool = False
    alternate_exchange: Optional[str] = None

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(EXCHANGE, self.name)

    def body(self) -> Dict[str, Any]:
        arguments: Dict[str, Any] = {}
        if self.alternate_exchange:
            arguments["alternate-exchange"] = self.alternate_exchange
        return {
            "type": self.kind,
            "durable": self.durable,
            "auto_delete": self.auto_delete,
            "internal": False,
            "arguments": arguments,
        }


@dataclass(frozen=True)
class DeadLetter:
    exchange: str
    routing_key: str = ""  # empty: the broker keeps the message's own key


@dataclass(frozen=True)
class Queue:
    name: str
    durable: bool = True
    auto_delete: bool = False
    message_ttl_ms: Optional[int] = None
    max_length: Optional[int] = None
    dead_letter: Optional[DeadLetter] = None

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(QUEUE, self.name)

    def body(self) -> Dict[str, Any]:
        arguments: Dict[str, Any] = {}
        if self.message_ttl_ms is not None:
            arguments["x-message-ttl"] = self.message_ttl_ms
        if self.max_length is not None:
            arguments["x-max-length"] = self.max_length
        if self.dead_letter is not None:
            arguments["x-dead-letter-exchange"] = self.dead_letter.exchange
            if self.dead_letter.routing_key:
                arguments["x-dead-letter-routing-key"] = self.dead_letter.routing_key
        return {"durable": self.durable, "auto_delete": self.auto_delete, "arguments": arguments}


@dataclass(frozen=True)
class Binding:
    source: str
    destination: str
    routing_key: str = ""

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(BINDING, f"{self.source} -> {self.destination} [{self.routing_key}]")

    def body(self) -> Dict[str, Any]:
        return {"routing_key": self.routing_key, "arguments": {}}


@dataclass(frozen=True)
class Policy:
    name: str
    pattern: str
    definition: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    apply_to: str = "queues"

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(POLICY, self.name)

    def body(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern,
            "definition": dict(self.definition),
            "priority": self.priority,
            "apply-to": self.apply_to,
        }


Resource = Union[VirtualHost, Permission, Exchange, Queue, Binding, Policy]


@dataclass
class Topology:
    vhost: VirtualHost
    permissions: List[Permission] = field(default_factory=list)
    exchanges: List[Exchange] = field(default_factory=list)
    queues: List[Queue] = field(default_factory=list)
    bindings: List[Binding] = field(default_factory=list)
    policies: List[Policy] = field(default_factory=list)
    dead_letter_exchange: Optional[str] = None
    dead_letter_queue: Optional[str] = None

    def tiers(self) -> List[Tuple[str, List[Resource]]]:
        return [
            (VHOST, [self.vhost]),
            (PERMISSION, list(self.permissions)),
            (EXCHANGE, list(self.exchanges)),
            (QUEUE, list(self.queues)),
            (BINDING, list(self.bindings)),
            (POLICY, list(self.policies)),
        ]

    def resources(self) -> Iterable[Resource]:
        for _, items in self.tiers():
            yield from items

    def dependencies(self, resource: Resource) -> List[ResourceRef]:
        """Resources that must be applied before ``resource`` is attempted."""
        if isinstance(resource, VirtualHost):
            return []
        deps = [self.vhost.ref]
        if isinstance(resource, Binding):
            deps.append(ResourceRef(EXCHANGE, resource.source))
            deps.append(ResourceRef(QUEUE, resource.destination))
        return deps

    def resolved(self) -> "Topology":
        """
        Return a copy with the platform dead-letter defaults filled in:
        queues without a dead-letter clause dead-letter into the DLX, and
        topic exchanges without an alternate exchange fall back to the DLX.
        The DLX and DLQ themselves are left alone.
        """
        dlx = self.dead_letter_exchange
        if not dlx:
            return replace(self)

        exchanges = [
            replace(ex, alternate_exchange=dlx)
            if ex.kind == "topic" and ex.alternate_exchange is None and ex.name != dlx
            else ex
            for ex in self.exchanges
        ]
        queues = [
            replace(q, dead_letter=DeadLetter(dlx))
            if q.dead_letter is None and q.name != self.dead_letter_queue
            else q
            for q in self.queues
        ]
        return replace(self, exchanges=exchanges, queues=queues)

    # ---------- (de)serialization ----------

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Topology":
        if not isinstance(data, dict):
            raise ValidationError("topology", "<document>", "top level must be an object")
        if not data.get("vhost"):
            raise ValidationError("topology", "<document>", "missing 'vhost'")
        if not isinstance(data["vhost"], str):
            raise ValidationError("topology", "<document>", f"'vhost' must be a string, got {data['vhost']!r}")

        def _items(key: str) -> List[Dict[str, Any]]:
            items = data.get(key) or []
            if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
                raise ValidationError("topology", key, "must be a list of objects")
            return items

        try:
            queues = []
            for q in _items("queues"):
                q = dict(q)
                dl = q.pop("dead_letter", None)
                queues.append(Queue(dead_letter=DeadLetter(**dl) if dl else None, **q))
            return Topology(
                vhost=VirtualHost(data["vhost"]),
                permissions=[Permission(**p) for p in _items("permissions")],
                exchanges=[Exchange(**e) for e in _items("exchanges")],
                queues=queues,
                bindings=[Binding(**b) for b in _items("bindings")],
                policies=[Policy(**p) for p in _items("policies")],
                dead_letter_exchange=data.get("dead_letter_exchange"),
                dead_letter_queue=data.get("dead_letter_queue"),
            )
        except TypeError as e:
            # unknown or missing dataclass fields
            raise ValidationError("topology", "<document>", str(e)) from e

    def to_dict(self) -> Dict[str, Any]:
        def _queue(q: Queue) -> Dict[str, Any]:
            d: Dict[str, Any] = {
                "name": q.name,
                "durable": q.durable,
                "auto_delete": q.auto_delete,
                "message_ttl_ms": q.message_ttl_ms,
                "max_length": q.max_length,
            }
            if q.dead_letter is not None:
                d["dead_letter"] = {"exchange": q.dead_letter.exchange, "routing_key": q.dead_letter.routing_key}
            return d

        return {
            "vhost": self.vhost.name,
            "dead_letter_exchange": self.dead_letter_exchange,
            "dead_letter_queue": self.dead_letter_queue,
            "permissions": [
                {"user": p.user, "configure": p.configure, "write": p.write, "read": p.read}
                for p in self.permissions
            ],
            "exchanges": [
                {
                    "name": e.name,
                    "kind": e.kind,
                    "durable": e.durable,
                    "auto_delete": e.auto_delete,
                    "alternate_exchange": e.alternate_exchange,
                }
                for e in self.exchanges
            ],
            "queues": [_queue(q) for q in self.queues],
            "bindings": [
                {"source": b.source, "destination": b.destination, "routing_key": b.routing_key}
                for b in self.bindings
            ],
            "policies": [
                {
                    "name": p.name,
                    "pattern": p.pattern,
                    "definition": dict(p.definition),
                    "priority": p.priority,
                    "apply_to": p.apply_to,
                }
                for p in self.policies
            ],
        }


def load_topology(path: str) -> Topology:
    with open(path, "r", encoding="utf-8") as f:
        try:
            doc = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError("topology", path, f"not valid JSON: {e}") from e
    return Topology.from_dict(doc)
