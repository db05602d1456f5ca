from __future__ import annotations
import re
from typing import Any, Iterable, Optional, Set

from .errors import ValidationError
from .resources import (
    BINDING,
    EXCHANGE,
    EXCHANGE_KINDS,
    PERMISSION,
    POLICY,
    POLICY_TARGETS,
    QUEUE,
    VHOST,
    Topology,
)

_UNSAFE_NAME = re.compile(r"[\s\x00-\x1f\x7f]")


def _unique(kind: str, names: Iterable[str]) -> Set[str]:
    seen: Set[str] = set()
    for name in names:
        if not name or not str(name).strip():
            raise ValidationError(kind, str(name), "name missing or empty")
        if name in seen:
            raise ValidationError(kind, name, "declared more than once")
        seen.add(name)
    return seen


def _positive(kind: str, name: str, field_name: str, value: Any) -> None:
    if value is None:
        return
    # bool is an int subclass; True is not a TTL
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(kind, name, f"{field_name} must be a positive integer, got {value!r}")


def _text(kind: str, name: Any, field_name: str, value: Any, optional: bool = False) -> None:
    if value is None and optional:
        return
    if not isinstance(value, str):
        raise ValidationError(kind, str(name), f"{field_name} must be a string, got {value!r}")


def _flag(kind: str, name: str, field_name: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise ValidationError(kind, name, f"{field_name} must be true or false, got {value!r}")


def _check_types(topology: Topology) -> None:
    # JSON documents can carry anything; everything below assumes these types
    _text(VHOST, topology.vhost.name, "name", topology.vhost.name)
    _text("topology", "<document>", "dead_letter_exchange", topology.dead_letter_exchange, optional=True)
    _text("topology", "<document>", "dead_letter_queue", topology.dead_letter_queue, optional=True)

    for p in topology.permissions:
        _text(PERMISSION, p.user, "user", p.user)
        for field_name in ("configure", "write", "read"):
            _text(PERMISSION, p.user, field_name, getattr(p, field_name))

    for ex in topology.exchanges:
        _text(EXCHANGE, ex.name, "name", ex.name)
        _text(EXCHANGE, ex.name, "kind", ex.kind)
        _flag(EXCHANGE, ex.name, "durable", ex.durable)
        _flag(EXCHANGE, ex.name, "auto_delete", ex.auto_delete)
        _text(EXCHANGE, ex.name, "alternate_exchange", ex.alternate_exchange, optional=True)

    for q in topology.queues:
        _text(QUEUE, q.name, "name", q.name)
        _flag(QUEUE, q.name, "durable", q.durable)
        _flag(QUEUE, q.name, "auto_delete", q.auto_delete)
        if q.dead_letter is not None:
            _text(QUEUE, q.name, "dead_letter.exchange", q.dead_letter.exchange)
            _text(QUEUE, q.name, "dead_letter.routing_key", q.dead_letter.routing_key)

    for b in topology.bindings:
        for field_name in ("source", "destination", "routing_key"):
            _text(BINDING, f"{b.source!s} -> {b.destination!s}", field_name, getattr(b, field_name))

    for p in topology.policies:
        _text(POLICY, p.name, "name", p.name)
        _text(POLICY, p.name, "pattern", p.pattern)
        _text(POLICY, p.name, "apply_to", p.apply_to)
        if not isinstance(p.definition, dict):
            raise ValidationError(POLICY, p.name, f"definition must be an object, got {p.definition!r}")


def _require(kind: str, name: str, what: str, target: Optional[str], declared: Set[str]) -> None:
    if target is not None and target not in declared:
        raise ValidationError(kind, name, f"{what} '{target}' is not declared")


def validate_topology(topology: Topology) -> None:
    """
    Checks the whole topology before anything is sent to the broker and
    raises ValidationError on the first violation. Returns None when valid.
    """
    _check_types(topology)

    vhost = topology.vhost.name
    if not vhost or _UNSAFE_NAME.search(vhost):
        raise ValidationError(VHOST, vhost, "name must be non-empty without whitespace or control characters")

    _unique(PERMISSION, [p.user for p in topology.permissions])
    exchanges = _unique(EXCHANGE, [e.name for e in topology.exchanges])
    queues = _unique(QUEUE, [q.name for q in topology.queues])
    _unique(POLICY, [p.name for p in topology.policies])

    dlx = topology.dead_letter_exchange
    dlq = topology.dead_letter_queue
    if dlx is not None:
        _require(EXCHANGE, dlx, "dead-letter exchange", dlx, exchanges)
    if dlq is not None:
        _require(QUEUE, dlq, "dead-letter queue", dlq, queues)

    for ex in topology.exchanges:
        if ex.kind not in EXCHANGE_KINDS:
            raise ValidationError(EXCHANGE, ex.name, f"kind must be one of {EXCHANGE_KINDS}, got {ex.kind!r}")
        _require(EXCHANGE, ex.name, "alternate exchange", ex.alternate_exchange, exchanges)

    for q in topology.queues:
        _positive(QUEUE, q.name, "message_ttl_ms", q.message_ttl_ms)
        _positive(QUEUE, q.name, "max_length", q.max_length)
        if q.dead_letter is None:
            continue
        if q.name == dlq:
            raise ValidationError(QUEUE, q.name, "the dead-letter queue must not dead-letter itself")
        _require(QUEUE, q.name, "dead-letter exchange", q.dead_letter.exchange, exchanges)

    seen_bindings: Set[tuple] = set()
    for b in topology.bindings:
        name = b.ref.name
        _require(BINDING, name, "source exchange", b.source, exchanges)
        _require(BINDING, name, "destination queue", b.destination, queues)
        key = (b.source, b.destination, b.routing_key)
        if key in seen_bindings:
            raise ValidationError(BINDING, name, "declared more than once")
        seen_bindings.add(key)

    for p in topology.policies:
        if p.apply_to not in POLICY_TARGETS:
            raise ValidationError(POLICY, p.name, f"apply_to must be one of {POLICY_TARGETS}, got {p.apply_to!r}")
        if isinstance(p.priority, bool) or not isinstance(p.priority, int):
            raise ValidationError(POLICY, p.name, f"priority must be an integer, got {p.priority!r}")
        if not p.definition:
            raise ValidationError(POLICY, p.name, "definition is empty")
        try:
            re.compile(p.pattern)
        except re.error as e:
            raise ValidationError(POLICY, p.name, f"pattern {p.pattern!r} does not compile: {e}") from e
