"""Tier-by-tier application of a Topology through a ManagementClient.

Each resource moves PENDING -> APPLYING -> APPLIED | FAILED. Tiers are
barriers: a tier starts only after every resource of the previous tier has
resolved. A resource whose dependency is not APPLIED is never attempted and
is reported FAILED with a DependencyError; its siblings still run, so one run
surfaces every error it can.
"""
from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import DependencyError, ProvisioningError
from .management import CREATED, ManagementClient
from .resources import (
    BINDING,
    EXCHANGE,
    PERMISSION,
    POLICY,
    QUEUE,
    VHOST,
    Binding,
    Exchange,
    Permission,
    Policy,
    Queue,
    Resource,
    ResourceRef,
    Topology,
    VirtualHost,
)
from .validation import validate_topology

log = logging.getLogger("applier")

_KINDS = (VHOST, PERMISSION, EXCHANGE, QUEUE, BINDING, POLICY)
_PLURAL = {POLICY: "policies"}


class ResourceState(Enum):
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class ApplyReport:
    vhost: str = ""
    applied: List[ResourceRef] = field(default_factory=list)
    created: List[ResourceRef] = field(default_factory=list)
    failed: List[Tuple[ResourceRef, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def count(self, kind: str) -> Dict[str, int]:
        applied = sum(1 for r in self.applied if r.kind == kind)
        created = sum(1 for r in self.created if r.kind == kind)
        failed = sum(1 for r, _ in self.failed if r.kind == kind)
        return {"total": applied + failed, "created": created, "unchanged": applied - created, "failed": failed}

    def summary(self) -> str:
        status = "OK" if self.ok else "FAILED"
        lines = [f"Topology for vhost '{self.vhost}': {status}"]
        for kind in _KINDS:
            c = self.count(kind)
            if not c["total"]:
                continue
            lines.append(
                f"  {_PLURAL.get(kind, kind + 's'):<12} {c['total']:>3} "
                f"({c['created']} created, {c['unchanged']} unchanged, {c['failed']} failed)"
            )
        if self.failed:
            lines.append("Failed resources:")
            for ref, err in self.failed:
                lines.append(f"  - {ref}: {type(err).__name__}: {err}")
        return "\n".join(lines)


class TopologyApplier:

    def __init__(self, client: ManagementClient, max_workers: int = 1):
        self.client = client
        self.max_workers = max(max_workers, 1)
        self._states: Dict[ResourceRef, ResourceState] = {}

    def state_of(self, ref: ResourceRef) -> ResourceState:
        return self._states.get(ref, ResourceState.PENDING)

    def _ensure(self, vhost: str, res: Resource) -> str:
        if isinstance(res, VirtualHost):
            return self.client.ensure_virtual_host(res.name)
        if isinstance(res, Permission):
            return self.client.ensure_permission(vhost, res)
        if isinstance(res, Exchange):
            return self.client.ensure_exchange(vhost, res)
        if isinstance(res, Queue):
            return self.client.ensure_queue(vhost, res)
        if isinstance(res, Binding):
            return self.client.ensure_binding(vhost, res)
        if isinstance(res, Policy):
            return self.client.ensure_policy(vhost, res)
        raise TypeError(f"not a topology resource: {res!r}")

    def _apply_one(self, vhost: str, res: Resource) -> Tuple[Optional[str], Optional[ProvisioningError]]:
        ref = res.ref
        self._states[ref] = ResourceState.APPLYING
        try:
            outcome = self._ensure(vhost, res)
        except ProvisioningError as e:
            self._states[ref] = ResourceState.FAILED
            log.error("%s failed: %s", ref, e)
            return None, e
        self._states[ref] = ResourceState.APPLIED
        if outcome == CREATED:
            log.info("%s created", ref)
        else:
            log.debug("%s unchanged", ref)
        return outcome, None

    def apply(self, topology: Topology) -> ApplyReport:
        """
        Validate, fill in dead-letter defaults and apply ``topology``.

        Raises ValidationError before any broker call when the topology is
        invalid. Every other per-resource error ends up in the report.
        """
        validate_topology(topology)
        topology = topology.resolved()
        vhost = topology.vhost.name
        self._states = {res.ref: ResourceState.PENDING for res in topology.resources()}
        report = ApplyReport(vhost=vhost)

        executor = ThreadPoolExecutor(max_workers=self.max_workers) if self.max_workers > 1 else None
        try:
            for tier, resources in topology.tiers():
                if not resources:
                    continue
                log.info("Applying %d %s resource(s)", len(resources), tier)

                blocked: Dict[ResourceRef, ResourceRef] = {}
                runnable: List[Resource] = []
                for res in resources:
                    dep = next(
                        (d for d in topology.dependencies(res) if self.state_of(d) is not ResourceState.APPLIED),
                        None,
                    )
                    if dep is None:
                        runnable.append(res)
                    else:
                        blocked[res.ref] = dep

                if executor is not None:
                    outcomes = list(executor.map(lambda r: self._apply_one(vhost, r), runnable))
                else:
                    outcomes = [self._apply_one(vhost, r) for r in runnable]
                results = {res.ref: out for res, out in zip(runnable, outcomes)}
                causes = dict(report.failed)

                # report in declaration order
                for res in resources:
                    ref = res.ref
                    if ref in blocked:
                        self._states[ref] = ResourceState.FAILED
                        dep = blocked[ref]
                        cause = causes.get(dep)
                        reason = f"failed with {type(cause).__name__}" if cause is not None else None
                        err = DependencyError(ref, dep, reason)
                        log.error("%s %s", ref, err)
                        report.failed.append((ref, err))
                        continue
                    outcome, error = results[ref]
                    if error is not None:
                        report.failed.append((ref, error))
                        continue
                    report.applied.append(ref)
                    if outcome == CREATED:
                        report.created.append(ref)
        finally:
            if executor is not None:
                executor.shutdown(wait=True)
        return report
