"""
Value objects shared by the query client, the reconciler and the executors.

Everything here is immutable and owned by a single run.
"""

import re
import ipaddress
from typing import Optional, Tuple
from dataclasses import dataclass

from .errors import ConfigError, IdentityError

DEFAULT_TTL = 3600
MAX_TTL = 2**31 - 1

# mDNS / link-local domains never get published
LOCAL_SUFFIXES = ('local',)

ADD = 'add'
DELETE = 'delete'

SOURCE_STATIC = 'static'
SOURCE_DHCP = 'dhcp'
SOURCE_DHCPV6 = 'dhcpv6'
SOURCE_SLAAC = 'slaac'

_TTL_UNITS = {'': 1, 's': 1, 'm': 60, 'h': 3600, 'd': 86400, 'w': 604800}
_TTL_RE = re.compile(r'^\s*(\d+)\s*([smhdw]?)\s*$', re.IGNORECASE)


def parse_ttl(text) -> int:
    """Parse a TTL given as seconds or with an s/m/h/d/w suffix"""
    if isinstance(text, int):
        seconds = text
    else:
        match = _TTL_RE.match(str(text))
        if not match:
            raise ConfigError(f"Invalid TTL specification: {text!r}")
        seconds = int(match.group(1)) * _TTL_UNITS[match.group(2).lower()]
    if seconds < 0 or seconds > MAX_TTL:
        raise ConfigError(f"TTL out of range: {text!r}")
    return seconds


def is_address(text: str) -> bool:
    """True for dotted-quad and colon-hex literals"""
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


def canonical_name(name: str) -> str:
    """Lower-case a domain name and drop the trailing dot"""
    return name.rstrip('.').lower()


@dataclass(frozen=True)
class DNSRecord:
    """A resource record as observed in a query answer"""
    name: str
    ttl: int
    rdclass: str
    rdtype: str
    value: str

    def __str__(self) -> str:
        return f"{self.name} {self.ttl} {self.rdclass} {self.rdtype} {self.value}"


@dataclass(frozen=True)
class Operation:
    """A single add or delete directive for the update executor"""
    op: str
    name: str
    rdtype: str
    value: str
    ttl: Optional[int] = None
    rdclass: str = 'IN'

    @classmethod
    def add(cls, name: str, ttl: int, rdtype: str, value: str) -> 'Operation':
        return cls(ADD, name, rdtype, value, ttl)

    @classmethod
    def delete(cls, record: DNSRecord) -> 'Operation':
        return cls(DELETE, record.name, record.rdtype, record.value, rdclass=record.rdclass)

    def directive(self) -> str:
        """nsupdate(1) form of this operation"""
        if self.op == ADD:
            return f"update add {self.name} {self.ttl} {self.rdclass} {self.rdtype} {self.value}"
        return f"update delete {self.name} {self.rdclass} {self.rdtype} {self.value}"

    def __str__(self) -> str:
        if self.op == ADD:
            return f"ADD {self.name} {self.ttl} {self.rdtype} {self.value}"
        return f"DELETE {self.name} {self.rdtype} {self.value}"


@dataclass(frozen=True)
class Policy:
    """Flags that influence reconciliation decisions"""
    force: bool = False
    min_ttl: Optional[int] = None
    explicit_ttl: Optional[int] = None
    dry_run: bool = False
    default_ttl: int = DEFAULT_TTL

    def is_stale(self, ttl: int) -> bool:
        """A record below the minimum TTL must be refreshed"""
        return self.min_ttl is not None and ttl < self.min_ttl

    def ttl_for(self, lease_ttl: Optional[int], observed_ttl: Optional[int] = None) -> int:
        if self.explicit_ttl is not None:
            return self.explicit_ttl
        if lease_ttl is not None:
            return lease_ttl
        if observed_ttl is not None:
            return observed_ttl
        return self.default_ttl


@dataclass(frozen=True)
class Address:
    """An interface address and the lease lifetime it was handed out with"""
    ip: str
    ttl: Optional[int] = None
    source: str = SOURCE_STATIC

    @property
    def version(self) -> int:
        return ipaddress.ip_address(self.ip).version


@dataclass(frozen=True)
class Identity:
    """The name and addresses this host should be published under"""
    fqdn: str
    ipv4: Tuple[Address, ...] = ()
    ipv6: Tuple[Address, ...] = ()

    def __post_init__(self):
        fqdn = canonical_name(self.fqdn or '')
        labels = [label for label in fqdn.split('.') if label]
        if len(labels) < 2 or len(labels) != len(fqdn.split('.')):
            raise IdentityError(f"Not a fully-qualified domain name: {self.fqdn!r}")
        if labels[-1] in LOCAL_SUFFIXES:
            raise IdentityError(f"Refusing to publish link-local name {self.fqdn!r}")
        object.__setattr__(self, 'fqdn', fqdn)

    @property
    def short_name(self) -> str:
        return self.fqdn.split('.', 1)[0]

    @property
    def domain(self) -> str:
        return self.fqdn.split('.', 1)[1]

    def primary_ipv6(self) -> Optional[Address]:
        """DHCPv6 addresses win over SLAAC, which wins over anything else"""
        for source in (SOURCE_DHCPV6, SOURCE_SLAAC):
            for address in self.ipv6:
                if address.source == source:
                    return address
        return self.ipv6[0] if self.ipv6 else None


@dataclass(frozen=True)
class ZoneAuthority:
    """Zone apex and its primary master as named by the SOA"""
    zone: str
    master: str
