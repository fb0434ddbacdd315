"""
Platform address discovery.

Finds the default-route interface and the addresses configured on it by
running the platform's own tools and parsing their output. Only globally
usable addresses are returned: loopback, link-local, temporary (privacy),
deprecated and tentative addresses are skipped.
"""

import re
import logging
import platform
import ipaddress
import subprocess
from typing import List, Optional
from dataclasses import dataclass, field

from .errors import DiscoveryError
from .records import Address, SOURCE_DHCP, SOURCE_DHCPV6, SOURCE_SLAAC, SOURCE_STATIC

log = logging.getLogger(__name__)

SKIP_FLAGS = ('temporary', 'deprecated', 'tentative', 'dadfailed')

_IP_DEV_RE = re.compile(r'\bdev\s+(\S+)')
_IP_ADDR_RE = re.compile(r'\binet(6?)\s+([0-9a-fA-F:.]+)/(\d+)(.*)$')
_IP_LIFETIME_RE = re.compile(r'preferred_lft\s+(\d+)sec')
_ROUTE_IFACE_RE = re.compile(r'^\s*interface:\s*(\S+)', re.MULTILINE)
_IFCONFIG_INET_RE = re.compile(r'^\s*inet\s+(?:addr:)?([0-9.]+)')
_IFCONFIG_INET6_RE = re.compile(r'^\s*inet6\s+(?:addr:\s*)?([0-9a-fA-F:]+)(?:%\S+)?(?:/(\d+))?(.*)$')
_PREFIXLEN_RE = re.compile(r'prefixlen\s+(\d+)')


@dataclass
class InterfaceAddresses:
    """Addresses found on one interface"""
    interface: str
    ipv4: List[Address] = field(default_factory=list)
    ipv6: List[Address] = field(default_factory=list)


def _usable(ip: str) -> bool:
    address = ipaddress.ip_address(ip)
    return not (address.is_loopback or address.is_link_local
                or address.is_unspecified or address.is_multicast)


class AddressDiscovery:
    """Base class; subclasses wrap one platform's tooling"""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def _run(self, *cmd: str) -> str:
        log.debug(f"Running {' '.join(cmd)}")
        try:
            result = subprocess.run(list(cmd), capture_output=True, text=True,
                                    check=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            raise DiscoveryError(f"{cmd[0]} failed: {e}")
        return result.stdout

    def default_interface(self) -> Optional[str]:
        raise NotImplementedError

    def addresses(self, interface: str) -> InterfaceAddresses:
        raise NotImplementedError


class IpRouteDiscovery(AddressDiscovery):
    """Linux iproute2"""

    def default_interface(self) -> Optional[str]:
        for family in ('-4', '-6'):
            match = _IP_DEV_RE.search(self._run('ip', family, 'route', 'show', 'default'))
            if match:
                return match.group(1)
        return None

    def addresses(self, interface: str) -> InterfaceAddresses:
        found = InterfaceAddresses(interface)
        for line in self._run('ip', '-o', 'addr', 'show', 'dev', interface).splitlines():
            match = _IP_ADDR_RE.search(line)
            if not match:
                continue
            v6, ip, prefixlen, rest = match.group(1), match.group(2), int(match.group(3)), match.group(4)
            flags = rest.split()
            if 'global' not in flags or any(flag in flags for flag in SKIP_FLAGS) or not _usable(ip):
                log.debug(f"Skipping {ip} on {interface}")
                continue

            ttl = None
            if 'dynamic' in flags:
                lifetime = _IP_LIFETIME_RE.search(rest)
                ttl = int(lifetime.group(1)) if lifetime else None

            if not v6:
                source = SOURCE_DHCP if 'dynamic' in flags else SOURCE_STATIC
                found.ipv4.append(Address(ip, ttl, source))
            elif prefixlen == 128:
                found.ipv6.append(Address(ip, ttl, SOURCE_DHCPV6))
            elif 'mngtmpaddr' in flags or 'dynamic' in flags:
                found.ipv6.append(Address(ip, ttl, SOURCE_SLAAC))
            else:
                found.ipv6.append(Address(ip, ttl, SOURCE_STATIC))
        return found


class IfconfigDiscovery(AddressDiscovery):
    """BSD, Darwin and Solaris ifconfig/route"""

    def default_interface(self) -> Optional[str]:
        match = _ROUTE_IFACE_RE.search(self._run('route', '-n', 'get', 'default'))
        return match.group(1) if match else None

    def addresses(self, interface: str) -> InterfaceAddresses:
        found = InterfaceAddresses(interface)
        for line in self._run('ifconfig', interface).splitlines():
            match = _IFCONFIG_INET_RE.match(line)
            if match:
                if _usable(match.group(1)):
                    found.ipv4.append(Address(match.group(1)))
                continue

            match = _IFCONFIG_INET6_RE.match(line)
            if not match:
                continue
            ip, rest = match.group(1), match.group(3)
            flags = rest.split()
            if any(flag in flags for flag in SKIP_FLAGS) or not _usable(ip):
                log.debug(f"Skipping {ip} on {interface}")
                continue

            prefixlen = match.group(2)
            if prefixlen is None:
                prefix = _PREFIXLEN_RE.search(rest)
                prefixlen = prefix.group(1) if prefix else None

            if 'autoconf' in flags:
                source = SOURCE_SLAAC
            elif prefixlen == '128':
                source = SOURCE_DHCPV6
            else:
                source = SOURCE_STATIC
            found.ipv6.append(Address(ip, None, source))
        return found


PLATFORMS = {
    'Linux': IpRouteDiscovery,
    'Darwin': IfconfigDiscovery,
    'FreeBSD': IfconfigDiscovery,
    'OpenBSD': IfconfigDiscovery,
    'NetBSD': IfconfigDiscovery,
    'DragonFly': IfconfigDiscovery,
    'SunOS': IfconfigDiscovery,
}


def discovery_for_platform(system: Optional[str] = None, timeout: float = 10.0) -> AddressDiscovery:
    """Return the discovery variant for this (or the named) platform"""
    system = system or platform.system()
    try:
        return PLATFORMS[system](timeout)
    except KeyError:
        raise DiscoveryError(f"Address discovery is not supported on {system}")
