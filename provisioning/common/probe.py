import logging
import time
import uuid
from typing import Dict, List

import pika

from .config import Settings
from .resources import Topology

log = logging.getLogger("probe")

PROBE_KEY_PREFIX = "provisioning.probe.unroutable"


# ---------- low-level helpers ----------

def _conn_params(amqp_url: str) -> pika.URLParameters:
    params = pika.URLParameters(amqp_url)
    params.heartbeat = 30
    params.blocked_connection_timeout = 300
    return params


# ---------- dead-letter routing check ----------

def verify_dead_letter_routing(settings: Settings, topology: Topology, wait: float = 5.0) -> Dict[str, bool]:
    """
    Publish one message with a routing key nobody binds to on every exchange
    that falls back to the DLX, then look for those messages in the DLQ.

    Only the probe messages are acked; anything else found in the DLQ is
    requeued untouched. Returns {exchange name: probe reached the DLQ}.
    """
    topology = topology.resolved()
    dlx, dlq = topology.dead_letter_exchange, topology.dead_letter_queue
    if not dlx or not dlq:
        log.info("No dead-letter exchange/queue declared; nothing to probe")
        return {}
    targets = [ex.name for ex in topology.exchanges if ex.alternate_exchange == dlx]
    if not targets:
        return {}

    conn = pika.BlockingConnection(_conn_params(settings.amqp_url))
    try:
        ch = conn.channel()

        sent: Dict[str, str] = {}
        for name in targets:
            probe_id = str(uuid.uuid4())
            props = pika.BasicProperties(
                content_type="application/json",
                delivery_mode=1,  # transient
                message_id=probe_id,
            )
            ch.basic_publish(exchange=name, routing_key=f"{PROBE_KEY_PREFIX}.{probe_id}", body=b"{}", properties=props)
            sent[probe_id] = name
            log.info("Probe -> exchange=%s id=%s", name, probe_id)

        delivered = {name: False for name in targets}
        foreign: List[int] = []
        deadline = time.monotonic() + wait
        while not all(delivered.values()):
            method, props, _body = ch.basic_get(queue=dlq, auto_ack=False)
            if method is None:
                if time.monotonic() >= deadline:
                    break
                conn.sleep(0.1)
                continue
            probe_id = getattr(props, "message_id", None)
            if probe_id in sent:
                ch.basic_ack(delivery_tag=method.delivery_tag)
                delivered[sent[probe_id]] = True
            else:
                # held unacked until the end so basic_get does not hand it back
                foreign.append(method.delivery_tag)

        for tag in foreign:
            ch.basic_nack(delivery_tag=tag, requeue=True)
    finally:
        conn.close()

    for name, ok in delivered.items():
        if ok:
            log.info("Unroutable message on %s reached %s", name, dlq)
        else:
            log.error("Unroutable message on %s never reached %s", name, dlq)
    return delivered
