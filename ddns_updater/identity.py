"""
Work out who this host is: its FQDN and the addresses to publish.

Inputs, in order of precedence: explicit flags, the DHCP hook environment
(dhclient exit hooks or the NetworkManager dispatcher), and finally the
platform's own view of the default interface.
"""

import socket
import logging
import ipaddress
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from .discovery import AddressDiscovery
from .errors import ConfigError, DiscoveryError, IdentityError
from .records import Address, Identity, SOURCE_DHCP, SOURCE_DHCPV6, SOURCE_STATIC

log = logging.getLogger(__name__)

# dhclient reasons and NetworkManager dispatcher actions that mean "addresses may have changed"
UPDATE_REASONS = frozenset({
    'BOUND', 'RENEW', 'REBIND', 'REBOOT',
    'BOUND6', 'RENEW6', 'REBIND6',
    'up', 'dhcp4-change', 'dhcp6-change',
})


def _first(environ: Mapping[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        value = (environ.get(key) or '').strip()
        if value:
            return value
    return None


def _lifetime(environ: Mapping[str, str], *keys: str) -> Optional[int]:
    value = _first(environ, *keys)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        log.warning(f"Ignoring unparseable lease time {value!r}")
        return None


@dataclass(frozen=True)
class HookEvent:
    """What a DHCP client hook told us about the triggering event"""
    reason: Optional[str] = None
    interface: Optional[str] = None
    ipv4: Optional[str] = None
    ipv4_ttl: Optional[int] = None
    ipv6: Optional[str] = None
    ipv6_ttl: Optional[int] = None
    host_name: Optional[str] = None
    domain_name: Optional[str] = None

    @property
    def triggers_update(self) -> bool:
        return self.reason in UPDATE_REASONS

    @classmethod
    def from_environ(cls, environ: Mapping[str, str], interface: Optional[str] = None,
                     reason: Optional[str] = None) -> 'HookEvent':
        """Read dhclient (lower-case) or NetworkManager (DHCP4_/DHCP6_) variables"""
        domain = _first(environ, 'new_domain_name', 'DHCP4_DOMAIN_NAME')
        if domain:
            # may be a search list; the first entry is our domain
            domain = domain.split()[0]

        ipv6 = _first(environ, 'new_ip6_address', 'DHCP6_IP6_ADDRESS')
        if ipv6:
            ipv6 = ipv6.split('/')[0]

        return cls(
            reason=reason or _first(environ, 'reason', 'NM_DISPATCHER_ACTION'),
            interface=interface or _first(environ, 'interface', 'DEVICE_IP_IFACE', 'DEVICE_IFACE'),
            ipv4=_first(environ, 'new_ip_address', 'DHCP4_IP_ADDRESS'),
            ipv4_ttl=_lifetime(environ, 'new_dhcp_lease_time', 'DHCP4_DHCP_LEASE_TIME'),
            ipv6=ipv6,
            ipv6_ttl=_lifetime(environ, 'new_preferred_life', 'DHCP6_PREFERRED_LIFE',
                               'new_max_life', 'DHCP6_MAX_LIFE'),
            host_name=_first(environ, 'new_host_name', 'DHCP4_HOST_NAME'),
            domain_name=domain,
        )


def _parse_addresses(values: Sequence[str], version: int) -> List[Address]:
    addresses = []
    for value in values:
        try:
            ip = ipaddress.ip_address(value.strip())
        except ValueError:
            raise ConfigError(f"Invalid IPv{version} address: {value!r}")
        if ip.version != version:
            raise ConfigError(f"Not an IPv{version} address: {value!r}")
        addresses.append(Address(str(ip), None, SOURCE_STATIC))
    return addresses


def _merge_lease(addresses: List[Address], ip: Optional[str], ttl: Optional[int],
                 source: str) -> List[Address]:
    """Put the leased address first, carrying its lease lifetime"""
    if not ip:
        return addresses
    try:
        leased = ipaddress.ip_address(ip)
    except ValueError:
        log.warning(f"Ignoring invalid leased address {ip!r}")
        return addresses
    rest = [a for a in addresses if ipaddress.ip_address(a.ip) != leased]
    return [Address(str(leased), ttl, source)] + rest


class IdentityResolver:
    """Builds the Identity for a run"""

    def __init__(self, discovery: Optional[AddressDiscovery] = None, single_ipv6: bool = False):
        self.discovery = discovery
        self.single_ipv6 = single_ipv6

    def resolve_fqdn(self, name: Optional[str] = None, domain: Optional[str] = None,
                     event: Optional[HookEvent] = None) -> str:
        host = name or (event.host_name if event else None) or socket.getfqdn()
        host = host.rstrip('.')

        if domain:
            return f"{host.split('.', 1)[0]}.{domain.strip('.')}"
        if '.' in host:
            return host

        hint = event.domain_name if event else None
        if not hint:
            raise IdentityError(f"Cannot determine a domain for {host!r}; use --domain")
        return f"{host}.{hint.strip('.')}"

    def resolve_addresses(self, event: Optional[HookEvent] = None, interface: Optional[str] = None,
                          ipv4: Sequence[str] = (), ipv6: Sequence[str] = ()
                          ) -> Tuple[List[Address], List[Address]]:
        if ipv4 or ipv6:
            return _parse_addresses(ipv4, 4), _parse_addresses(ipv6, 6)

        if self.discovery is None:
            raise DiscoveryError("No addresses given and no address discovery available")

        interface = interface or (event.interface if event else None) or self.discovery.default_interface()
        if not interface:
            raise DiscoveryError("Could not determine the default network interface")

        found = self.discovery.addresses(interface)
        log.info(f"Found {len(found.ipv4)} IPv4 and {len(found.ipv6)} IPv6 addresses on {interface}")

        v4, v6 = found.ipv4, found.ipv6
        if event:
            v4 = _merge_lease(v4, event.ipv4, event.ipv4_ttl, SOURCE_DHCP)
            v6 = _merge_lease(v6, event.ipv6, event.ipv6_ttl, SOURCE_DHCPV6)
        return v4, v6

    def resolve(self, name: Optional[str] = None, domain: Optional[str] = None,
                event: Optional[HookEvent] = None, interface: Optional[str] = None,
                ipv4: Sequence[str] = (), ipv6: Sequence[str] = ()) -> Identity:
        fqdn = self.resolve_fqdn(name, domain, event)
        v4, v6 = self.resolve_addresses(event, interface, ipv4, ipv6)
        identity = Identity(fqdn, tuple(v4), tuple(v6))

        if self.single_ipv6 and len(identity.ipv6) > 1:
            primary = identity.primary_ipv6()
            log.warning(f"Multiple public IPv6 addresses "
                        f"({', '.join(a.ip for a in identity.ipv6)}), using {primary.ip}")
            identity = Identity(identity.fqdn, identity.ipv4, (primary,))

        log.info(f"Identity: {identity.fqdn} IPv4={[a.ip for a in identity.ipv4]} "
                 f"IPv6={[a.ip for a in identity.ipv6]}")
        return identity
