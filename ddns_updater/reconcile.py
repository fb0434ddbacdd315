"""
Reconciliation engine.

Compares the records currently published for this host against its desired
identity and produces, per record relationship ("quadrant"), the deletes and
adds needed to bring DNS in line:

    A     fqdn -> IPv4 addresses
    AAAA  fqdn -> IPv6 addresses
    PTR4  IPv4 reverse names -> fqdn
    PTR6  IPv6 reverse names -> fqdn

Planning is a pure fold over query answers; applying the plan hands each
operation to an update executor, one at a time. Nothing is locked: two runs
racing on the same host must be serialized by the caller.
"""

import logging
import ipaddress
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import dns.exception

from .errors import DDNSError
from .executor import Target, TRANSPORT_UDP
from .query import DNSQueryClient, reverse_name
from .records import (DELETE, Address, DNSRecord, Identity, Operation, Policy,
                      canonical_name)
from .soa import SOAResolver

log = logging.getLogger(__name__)

QUADRANTS = ('A', 'AAAA', 'PTR4', 'PTR6')


def address_key(value: str):
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


class Decision(NamedTuple):
    kept: List[DNSRecord]
    deletes: List[Operation]
    adds: List[Operation]


@dataclass
class ReconciliationPlan:
    """Ordered operations for one quadrant; deletes always precede adds"""
    quadrant: str
    operations: List[Operation] = field(default_factory=list)


@dataclass
class RunOutcome:
    """Operations that were applied and those that failed"""
    applied: List[Operation] = field(default_factory=list)
    failed: List[Operation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def reconcile_records(observed: Iterable[DNSRecord],
                      desired: Sequence[Tuple[str, Optional[int]]],
                      rdtype: str, policy: Policy, owner: str,
                      key: Callable = address_key) -> Decision:
    """
    Decide which observed records to keep or delete and which desired
    values to add.

    desired is an ordered sequence of (value, lease_ttl). Values are compared
    through key, so addresses match regardless of notation and PTR targets
    regardless of case. Records of another type or owner (CNAMEs and the
    records behind them) are left alone.
    """
    wanted = OrderedDict()
    for value, lease_ttl in desired:
        wanted.setdefault(key(value), (value, lease_ttl))

    owner_key = canonical_name(owner)
    kept_keys = set()
    fallback_ttl = {}
    kept: List[DNSRecord] = []
    deletes: List[Operation] = []

    for record in observed:
        if record.rdtype != rdtype or canonical_name(record.name) != owner_key:
            log.debug(f"Skipping unrelated {record}")
            continue

        record_key = key(record.value)
        if record_key is not None and record_key in wanted:
            fallback_ttl.setdefault(record_key, record.ttl)
            if policy.force:
                log.debug(f"Forcing refresh of {record}")
            elif policy.is_stale(record.ttl):
                log.debug(f"Refreshing {record}: TTL below {policy.min_ttl}")
            else:
                log.debug(f"Keeping {record}")
                kept_keys.add(record_key)
                kept.append(record)
                continue
        else:
            log.debug(f"Stale {record}")
        deletes.append(Operation.delete(record))

    adds = []
    for value_key, (value, lease_ttl) in wanted.items():
        if value_key in kept_keys:
            continue
        ttl = policy.ttl_for(lease_ttl, fallback_ttl.get(value_key))
        operation = Operation.add(owner, ttl, rdtype, value)
        log.debug(f"Adding {operation}")
        adds.append(operation)

    return Decision(kept, deletes, adds)


def _unique(addresses: Iterable[Address]) -> List[Address]:
    seen = set()
    result = []
    for address in addresses:
        ip = address_key(address.ip)
        if ip not in seen:
            seen.add(ip)
            result.append(address)
    return result


def _released(operations: Iterable[Operation], addresses: Iterable[Address]) -> List[str]:
    """Addresses whose forward records are deleted and not re-added"""
    wanted = {address_key(address.ip) for address in addresses}
    released = OrderedDict()
    for operation in operations:
        ip = address_key(operation.value)
        if operation.op == DELETE and ip is not None and ip not in wanted:
            released.setdefault(ip, operation.value)
    return list(released.values())


class Reconciler:
    """Plans and applies the DNS changes for one identity"""

    def __init__(self, client: DNSQueryClient, executor, policy: Policy,
                 server: Optional[str] = None, source: Optional[str] = None,
                 transport: str = TRANSPORT_UDP, soa: Optional[SOAResolver] = None,
                 ipv4: bool = True, ipv6: bool = True, ptr: bool = True):
        self.client = client
        self.executor = executor
        self.policy = policy
        self.server = server
        self.source = source
        self.transport = transport
        self.soa = soa or SOAResolver(client)
        self.ipv4 = ipv4
        self.ipv6 = ipv6
        self.ptr = ptr

    def _families(self, identity: Identity):
        if self.ipv4:
            yield 'A', 'PTR4', _unique(identity.ipv4)
        if self.ipv6:
            yield 'AAAA', 'PTR6', _unique(identity.ipv6)

    def plan_forward(self, identity: Identity, rdtype: str,
                     addresses: List[Address]) -> ReconciliationPlan:
        observed = self.client.query(identity.fqdn, rdtype)
        desired = [(address.ip, address.ttl) for address in addresses]
        decision = reconcile_records(observed, desired, rdtype, self.policy, identity.fqdn)
        return ReconciliationPlan(rdtype, decision.deletes + decision.adds)

    def plan_reverse(self, identity: Identity, quadrant: str, addresses: List[Address],
                     released: Iterable[str] = ()) -> ReconciliationPlan:
        """
        PTR changes for the desired addresses, plus deletes for PTRs of
        released addresses that still point at this host.
        """
        deletes, adds = [], []
        for address in addresses:
            observed = self.client.query(address.ip)
            decision = reconcile_records(
                observed, [(identity.fqdn, address.ttl)], 'PTR', self.policy,
                reverse_name(address.ip), key=canonical_name)
            deletes.extend(decision.deletes)
            adds.extend(decision.adds)

        fqdn = canonical_name(identity.fqdn)
        for ip in released:
            for record in self.client.query(ip):
                if record.rdtype == 'PTR' and canonical_name(record.value) == fqdn:
                    log.debug(f"Releasing {record}")
                    deletes.append(Operation.delete(record))
        return ReconciliationPlan(quadrant, deletes + adds)

    def plan(self, identity: Identity) -> List[ReconciliationPlan]:
        """Compute the operations for every enabled quadrant"""
        plans = []
        for rdtype, quadrant, addresses in self._families(identity):
            forward = self.plan_forward(identity, rdtype, addresses)
            plans.append(forward)
            if self.ptr:
                released = _released(forward.operations, addresses)
                plans.append(self.plan_reverse(identity, quadrant, addresses, released))

        if not any(plan.operations for plan in plans):
            log.info(f"DNS for {identity.fqdn} is up to date")
        return plans

    def target_for(self, operation: Operation) -> Target:
        """Where to send an update: pinned server, zone master, or default"""
        if self.server:
            return Target(self.server, None, self.source, self.transport)
        authority = self.soa.resolve_authority(operation.name)
        if authority is None:
            return Target(None, None, self.source, self.transport)
        return Target(authority.master, authority.zone, self.source, self.transport)

    def apply(self, plans: List[ReconciliationPlan]) -> RunOutcome:
        """Apply operations in order; a failed update never stops the run"""
        outcome = RunOutcome()
        for plan in plans:
            for operation in plan.operations:
                log.info(f"{plan.quadrant}: {operation}")
                try:
                    applied = self.executor.apply(operation, self.target_for(operation))
                except (DDNSError, dns.exception.DNSException, OSError) as e:
                    log.warning(f"Update failed: {operation}: {e}")
                    applied = False

                if applied:
                    outcome.applied.append(operation)
                else:
                    outcome.failed.append(operation)

        if outcome.failed:
            log.warning(f"{len(outcome.failed)} of "
                        f"{len(outcome.applied) + len(outcome.failed)} updates failed")
        return outcome

    def run(self, identity: Identity) -> RunOutcome:
        return self.apply(self.plan(identity))
