"""
Forward and reverse lookups, normalized into DNSRecord values.

A failed lookup is not an error here: NXDOMAIN, an empty answer, SERVFAIL and
timeouts all come back as an empty list, which the reconciler reads as
"nothing published yet".
"""

import socket
import logging
from typing import List, Optional

import dns.exception
import dns.rdataclass
import dns.rdatatype
import dns.resolver
import dns.reversename

from .errors import ConfigError
from .records import DNSRecord, LOCAL_SUFFIXES, canonical_name, is_address

log = logging.getLogger(__name__)


def reverse_name(ip: str) -> str:
    """in-addr.arpa / ip6.arpa owner name for an address"""
    return dns.reversename.from_address(ip).to_text(omit_final_dot=True)


def resolve_server_address(server: str) -> str:
    """Return an IP address for a server given by name or address"""
    if is_address(server):
        return server
    try:
        address = socket.gethostbyname(server)
    except OSError as e:
        raise ConfigError(f"Could not resolve DNS server {server}: {e}")
    log.debug(f"Resolved DNS server {server} to {address}")
    return address


def _rdata_value(rdata) -> str:
    if rdata.rdtype == dns.rdatatype.SOA:
        return rdata.mname.to_text(omit_final_dot=True)
    target = getattr(rdata, 'target', None)
    if target is not None:
        return target.to_text(omit_final_dot=True)
    return rdata.to_text()


def _is_local_target(value: str) -> bool:
    return canonical_name(value).rsplit('.', 1)[-1] in LOCAL_SUFFIXES


class DNSQueryClient:
    """Runs lookups against the system resolver or a pinned server"""

    def __init__(self, server: Optional[str] = None, timeout: float = 10.0,
                 resolver: Optional[dns.resolver.Resolver] = None):
        self.server = server
        if resolver is None:
            resolver = dns.resolver.Resolver()
            resolver.lifetime = timeout
            if server:
                resolver.nameservers = [resolve_server_address(server)]
        self.resolver = resolver

    def query(self, name: str, rdtype: Optional[str] = None) -> List[DNSRecord]:
        """Look up name; address literals become PTR lookups of their reverse name"""
        if is_address(name):
            name = reverse_name(name)
            rdtype = rdtype or 'PTR'

        if rdtype is None:
            return self._lookup(name, 'A') + self._lookup(name, 'AAAA')
        return self._lookup(name, rdtype.upper())

    def _lookup(self, name: str, rdtype: str) -> List[DNSRecord]:
        try:
            answer = self.resolver.resolve(name, rdtype, raise_on_no_answer=False)
        except dns.exception.DNSException as e:
            log.debug(f"No {rdtype} records for {name}: {e.__class__.__name__}")
            return []

        records = []
        for rrset in answer.response.answer:
            owner = rrset.name.to_text(omit_final_dot=True)
            type_text = dns.rdatatype.to_text(rrset.rdtype)
            class_text = dns.rdataclass.to_text(rrset.rdclass)
            for rdata in rrset:
                value = _rdata_value(rdata)
                if type_text == 'PTR' and _is_local_target(value):
                    log.debug(f"Ignoring bogus PTR {owner} -> {value}")
                    continue
                records.append(DNSRecord(owner, rrset.ttl, class_text, type_text, value))

        for record in records:
            log.debug(f"Found {record}")
        return records
