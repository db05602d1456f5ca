"""Default topology of the gasolinera platform.

One topic DLX with a catch-all DLQ, one topic exchange per service (each
falling back to the DLX for unroutable messages), the service queues with a
one hour TTL that dead-letter into the DLX, audit queues with longer
retention, and the HA / temporary-queue TTL policies.
"""
from __future__ import annotations
from typing import Optional

from .resources import Binding, DeadLetter, Exchange, Permission, Policy, Queue, Topology, VirtualHost

DLX = "gasolinera.dlx"
DLQ = "gasolinera.dlq"
EVENTS_EXCHANGE = "gasolinera.events"

HOUR_MS = 3_600_000
DAY_MS = 24 * HOUR_MS

# exchange -> [(queue, routing key)]
SERVICE_ROUTES = {
    "redemption.exchange": [
        ("redemption.created.queue", "redemption.created"),
        ("redemption.completed.queue", "redemption.completed"),
        ("redemption.voided.queue", "redemption.voided"),
        ("raffle.tickets.generated.queue", "raffle.tickets.generated"),
    ],
    "ad.exchange": [
        ("ad.engagement.completed.queue", "ad.engagement.completed"),
        ("ad.tickets.multiplied.queue", "ad.tickets.multiplied"),
        ("raffle.tickets.generated.queue", "raffle.tickets.generated"),
    ],
    "raffle.exchange": [
        ("raffle.entry.created.queue", "raffle.entry.created"),
        ("raffle.winner.selected.queue", "raffle.winner.selected"),
    ],
    "coupon.exchange": [
        ("coupon.validated.queue", "coupon.validated"),
        ("coupon.redeemed.queue", "coupon.redeemed"),
    ],
}


def _service_queue(name: str) -> Queue:
    # "coupon.redeemed.queue" dead-letters as "coupon.redeemed.failed"
    key = name[: -len(".queue")] if name.endswith(".queue") else name
    return Queue(name, message_ttl_ms=HOUR_MS, dead_letter=DeadLetter(DLX, f"{key}.failed"))


def default_topology(vhost: str = "/gasolinera", user: Optional[str] = None) -> Topology:
    exchanges = [
        Exchange(DLX, kind="topic"),
        Exchange(EVENTS_EXCHANGE, kind="topic"),
        *(Exchange(name, kind="topic") for name in SERVICE_ROUTES),
        Exchange("audit.exchange", kind="topic"),
    ]

    queues = [Queue(DLQ, message_ttl_ms=DAY_MS, max_length=10_000)]
    bindings = []
    seen = {DLQ}
    for exchange, routes in SERVICE_ROUTES.items():
        for queue, key in routes:
            if queue not in seen:
                queues.append(_service_queue(queue))
                seen.add(queue)
            bindings.append(Binding(exchange, queue, key))

    queues += [
        Queue("audit.events.queue", message_ttl_ms=7 * DAY_MS, max_length=100_000),
        Queue("audit.security.queue", message_ttl_ms=30 * DAY_MS, max_length=50_000),
    ]
    bindings += [
        Binding("audit.exchange", "audit.events.queue", "audit.#"),
        Binding("audit.exchange", "audit.security.queue", "audit.security.#"),
        Binding(DLX, DLQ, "#"),
    ]

    policies = [
        Policy("ha-all", ".*", {"ha-mode": "all", "ha-sync-mode": "automatic"}, priority=0, apply_to="queues"),
        Policy("ttl-policy", r".*\.temp\..*", {"message-ttl": 300_000, "expires": 600_000}, priority=1, apply_to="queues"),
    ]

    return Topology(
        vhost=VirtualHost(vhost),
        permissions=[Permission(user)] if user else [],
        exchanges=exchanges,
        queues=queues,
        bindings=bindings,
        policies=policies,
        dead_letter_exchange=DLX,
        dead_letter_queue=DLQ,
    )
