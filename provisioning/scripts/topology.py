# scripts/topology.py
"""
Bring a RabbitMQ virtual host into the declared topology.

Order: validate (no network) -> wait for the management API -> apply tiers
vhost, permissions, exchanges, queues, bindings, policies -> print summary.
Nothing is ever deleted; re-running against an unchanged broker is a no-op.

Examples:
    broker-topology
    broker-topology --file topology.json --workers 4
    broker-topology --dry-run
    broker-topology --verify-dead-letter
"""
import argparse
import logging
import sys
import threading
from typing import Optional, Sequence

import pika.exceptions
import pydantic

from provisioning.common.applier import ApplyReport, TopologyApplier
from provisioning.common.config import Settings
from provisioning.common.errors import ProvisioningCancelled, ReadinessTimeoutError, ValidationError
from provisioning.common.logging_conf import setup_logging
from provisioning.common.management import ManagementClient
from provisioning.common.platform import default_topology
from provisioning.common.probe import verify_dead_letter_routing
from provisioning.common.resources import Topology, load_topology
from provisioning.common.validation import validate_topology

log = logging.getLogger("topology")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_NOT_READY = 3
EXIT_PROBE_FAILED = 4
EXIT_INTERRUPTED = 130


def provision(
    settings: Settings,
    topology: Topology,
    client: Optional[ManagementClient] = None,
    skip_wait: bool = False,
    cancel: Optional[threading.Event] = None,
) -> ApplyReport:
    """
    Validate, wait for the broker, apply. ValidationError and
    ReadinessTimeoutError abort the run before any resource is touched.
    """
    validate_topology(topology)
    client = client or ManagementClient(settings)
    if not skip_wait:
        client.wait_until_ready(settings.READY_TIMEOUT, settings.READY_POLL_INTERVAL, cancel=cancel)
    return TopologyApplier(client, max_workers=settings.APPLY_WORKERS).apply(topology)


def _print_plan(topology: Topology) -> None:
    print(f"Plan for vhost '{topology.vhost.name}':")
    for tier, resources in topology.tiers():
        for res in resources:
            print(f"  {tier:<11} {res.ref.name}")


def _positive(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, got {value}")
    return number


def _non_negative(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return number


def _workers(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision RabbitMQ exchanges, queues, bindings and policies")
    parser.add_argument("--file", help="JSON topology file (default: TOPOLOGY_FILE or the built-in platform topology)")
    parser.add_argument("--timeout", type=_non_negative, help="seconds to wait for the broker (READY_TIMEOUT)")
    parser.add_argument("--poll-interval", type=_positive, help="seconds between readiness probes (READY_POLL_INTERVAL)")
    parser.add_argument("--workers", type=_workers, help="concurrent requests within a tier (APPLY_WORKERS)")
    parser.add_argument("--skip-wait", action="store_true", help="do not wait for the management API")
    parser.add_argument("--dry-run", action="store_true", help="validate and print the plan only")
    parser.add_argument("--verify-dead-letter", action="store_true", help="check over AMQP that unroutable messages reach the DLQ")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING... (LOG_LEVEL)")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)

    overrides = {}
    if args.timeout is not None:
        overrides["READY_TIMEOUT"] = args.timeout
    if args.poll_interval is not None:
        overrides["READY_POLL_INTERVAL"] = args.poll_interval
    if args.workers is not None:
        overrides["APPLY_WORKERS"] = args.workers
    try:
        settings = Settings().model_copy(update=overrides)
    except pydantic.ValidationError as e:
        setup_logging(args.log_level)
        log.error("Invalid configuration: %s", e)
        return EXIT_INVALID
    setup_logging(args.log_level or settings.LOG_LEVEL)

    path = args.file or settings.TOPOLOGY_FILE
    try:
        if path:
            try:
                topology = load_topology(path)
            except OSError as e:
                log.error("Cannot read topology file %s: %s", path, e)
                return EXIT_INVALID
        else:
            topology = default_topology(settings.RABBITMQ_VHOST, settings.RABBITMQ_USER)

        if args.dry_run:
            validate_topology(topology)
            _print_plan(topology.resolved())
            return EXIT_OK

        log.info("Provisioning %s vhost=%s", settings.management_url, topology.vhost.name)
        report = provision(settings, topology, skip_wait=args.skip_wait)
    except ValidationError as e:
        log.error("Invalid topology: %s", e)
        return EXIT_INVALID
    except ReadinessTimeoutError as e:
        log.error("Aborting, nothing was provisioned: %s", e)
        return EXIT_NOT_READY
    except (KeyboardInterrupt, ProvisioningCancelled):
        log.warning("Interrupted")
        return EXIT_INTERRUPTED

    print(report.summary())
    if not report.ok:
        return EXIT_FAILED

    if args.verify_dead_letter:
        try:
            results = verify_dead_letter_routing(settings, topology)
        except pika.exceptions.AMQPError as e:
            log.error("Dead-letter probe could not run: %r", e)
            return EXIT_PROBE_FAILED
        if not all(results.values()):
            return EXIT_PROBE_FAILED
        print(f"Dead-letter routing verified on {len(results)} exchange(s)")

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
