"""
ddns-updater - keep a host's A, AAAA and PTR records in step with its addresses

Run by hand, from a dhclient exit hook, or from a NetworkManager dispatcher
script (which passes INTERFACE and ACTION as arguments). Hook reasons that
do not mean "addresses may have changed" exit quietly without any lookup.

Environment Variables (flags take precedence):
    DNS_SERVER: Send lookups and updates to this server instead of the zone masters
    DNS_AUTH: none, tsig, gss-tsig or gss-tsig-legacy (default: none, or tsig if a key is set)
    DNS_TTL: TTL for added records (default: lease time, then 3600)
    DNS_MIN_TTL: Refresh records whose TTL has dropped below this
    DNS_TRANSPORT: udp or tcp (default: udp)
    DNS_TIMEOUT: Seconds before a lookup or update is abandoned (default: 10)
    DNS_SOURCE: Source address for update transactions

    # TSIG (BIND/PowerDNS) specific:
    TSIG_KEY_NAME: TSIG key name
    TSIG_KEY_SECRET: Base64-encoded TSIG key
    TSIG_ALGORITHM: TSIG algorithm (default: hmac-sha256)

    # GSS-TSIG (Active Directory) specific:
    KRB_PRINCIPAL: Kerberos principal (default: SHORTNAME$)
    KRB_PASSWORD: Kerberos password (OR use keytab)
    KRB_KEYTAB: Keytab path (default: /etc/krb5.keytab)
    KRB_KEYTAB_BASE64: Base64-encoded keytab written to KRB_KEYTAB if missing

Concurrent runs for the same host are not serialized; wrap the hook in
flock(1) if DHCP renewals can overlap a manual run.
"""

import os
import sys
import logging
import argparse
from typing import Mapping, Optional

from .config import Settings
from .discovery import AddressDiscovery, discovery_for_platform
from .errors import ConfigError, CredentialError, DDNSError
from .executor import AUTH_MODES, GSS_AUTH_MODES, UpdateExecutor, make_executor
from .identity import HookEvent, IdentityResolver
from .kerberos import KerberosAuth, machine_principal
from .query import DNSQueryClient
from .reconcile import Reconciler
from .records import Identity

log = logging.getLogger('ddns_updater')


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='ddns-updater',
        description="Update A/AAAA and PTR records for this host",
    )
    parser.add_argument('hook_interface', nargs='?', metavar='INTERFACE',
                        help="Interface the hook fired for")
    parser.add_argument('reason', nargs='?', metavar='REASON',
                        help="Hook reason or dispatcher action (e.g. BOUND, up, dhcp4-change)")

    ident = parser.add_argument_group("identity")
    ident.add_argument('-n', '--name', help="Host name or FQDN to publish")
    ident.add_argument('-d', '--domain', help="Domain to publish the host name under")
    ident.add_argument('-i', '--interface', help="Interface to take addresses from")
    ident.add_argument('-4', '--ipv4', action='append', metavar='ADDR',
                       help="IPv4 address to publish (repeatable, skips discovery)")
    ident.add_argument('-6', '--ipv6', action='append', metavar='ADDR',
                       help="IPv6 address to publish (repeatable, skips discovery)")
    ident.add_argument('--no-ipv4', action='store_true', help="Leave A and IPv4 PTR records alone")
    ident.add_argument('--no-ipv6', action='store_true', help="Leave AAAA and IPv6 PTR records alone")
    ident.add_argument('--no-ptr', action='store_true', help="Leave PTR records alone")
    ident.add_argument('--single-ipv6', action='store_true',
                       help="Publish only one IPv6 address (DHCPv6 preferred over SLAAC)")

    policy = parser.add_argument_group("policy")
    policy.add_argument('-t', '--ttl', help="TTL for added records (e.g. 3600, 1h)")
    policy.add_argument('-m', '--min-ttl', help="Refresh records whose TTL is below this")
    policy.add_argument('-f', '--force', action='store_true',
                        help="Delete and re-add records even if they are current")
    policy.add_argument('-N', '--dry-run', action='store_true',
                        help="Print the nsupdate transactions instead of sending them")

    server = parser.add_argument_group("server")
    server.add_argument('-s', '--server', help="Use this server instead of the zone masters")
    server.add_argument('-l', '--source', help="Source address for updates")
    server.add_argument('-T', '--tcp', action='store_true', help="Send updates over TCP")
    server.add_argument('-a', '--auth', choices=AUTH_MODES, help="Update authentication")
    server.add_argument('-k', '--tsig-key', metavar='[ALG:]NAME:SECRET', help="TSIG key")
    server.add_argument('--principal', help="Kerberos principal for GSS-TSIG")
    server.add_argument('--keytab', help="Keytab for GSS-TSIG")
    server.add_argument('--nsupdate', action='store_true', help="Send updates through nsupdate(1)")
    server.add_argument('--timeout', help="Seconds before a lookup or update is abandoned")

    output = parser.add_argument_group("output")
    output.add_argument('-v', '--verbose', action='store_true', help="Log each change")
    output.add_argument('-D', '--debug', action='store_true', help="Log every decision")
    output.add_argument('-L', '--logfile', help="Append log output to this file")

    args = parser.parse_args(argv)
    args.interface = args.interface or args.hook_interface
    return args


def setup_logging(verbose: bool = False, debug: bool = False, logfile: Optional[str] = None):
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    try:
        logging.basicConfig(
            level=level,
            format='%(asctime)s [%(levelname)s] %(message)s',
            filename=logfile,
        )
    except OSError as e:
        raise ConfigError(f"Cannot open log file {logfile}: {e}")


def acquire_credentials(settings: Settings, identity: Identity):
    """Get a Kerberos ticket; only fatal when authenticated updates will be sent"""
    if settings.auth not in GSS_AUTH_MODES:
        return

    principal = settings.principal or machine_principal(identity.short_name)
    try:
        kerberos = KerberosAuth(principal, settings.password, settings.keytab,
                                settings.keytab_base64, settings.timeout)
        kerberos.ensure_valid_ticket()
    except CredentialError as e:
        if settings.credentials_required:
            raise
        log.warning(f"{e}; continuing without credentials")


def run(settings: Settings, environ: Mapping[str, str],
        discovery: Optional[AddressDiscovery] = None,
        client: Optional[DNSQueryClient] = None,
        executor: Optional[UpdateExecutor] = None) -> int:
    """One reconciliation run; returns the process exit status"""
    event = HookEvent.from_environ(environ, settings.interface, settings.reason)
    if event.reason is None:
        event = None
    elif not event.triggers_update:
        log.info(f"Nothing to do for {event.reason} on {event.interface}")
        return 0
    else:
        log.info(f"Triggered by {event.reason} on {event.interface}")

    explicit = bool(settings.ipv4 or settings.ipv6)
    if discovery is None and not explicit:
        discovery = discovery_for_platform(timeout=settings.timeout)

    resolver = IdentityResolver(discovery, settings.single_ipv6)
    identity = resolver.resolve(settings.name, settings.domain, event,
                                settings.interface, settings.ipv4, settings.ipv6)

    acquire_credentials(settings, identity)
    executor = executor or make_executor(settings)
    client = client or DNSQueryClient(settings.server, settings.timeout)

    reconciler = Reconciler(
        client, executor, settings.policy,
        server=settings.server,
        source=settings.source,
        transport=settings.transport,
        ipv4=settings.use_ipv4 and (not explicit or bool(settings.ipv4)),
        ipv6=settings.use_ipv6 and (not explicit or bool(settings.ipv6)),
        ptr=settings.ptr,
    )
    outcome = reconciler.run(identity)
    log.info(f"Done: {len(outcome.applied)} applied, {len(outcome.failed)} failed")
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        setup_logging(args.verbose, args.debug, args.logfile)
        settings = Settings.from_args(args)
        return run(settings, os.environ)
    except DDNSError as e:
        log.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())
