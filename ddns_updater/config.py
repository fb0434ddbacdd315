"""
Run settings, merged from command-line flags and environment variables.
Flags win over the environment.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from .errors import ConfigError
from .executor import (AUTH_MODES, AUTH_NONE, AUTH_TSIG, GSS_AUTH_MODES,
                       TRANSPORT_TCP, TRANSPORT_UDP)
from .kerberos import DEFAULT_KEYTAB
from .records import DEFAULT_TTL, Policy, parse_ttl

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def parse_tsig_key(text: str) -> Tuple[str, str, Optional[str]]:
    """Parse NAME:SECRET or ALGORITHM:NAME:SECRET (nsupdate -y syntax)"""
    parts = text.split(':')
    if len(parts) == 2:
        return parts[0], parts[1], None
    if len(parts) == 3:
        return parts[1], parts[2], parts[0]
    raise ConfigError("TSIG key must be NAME:SECRET or ALGORITHM:NAME:SECRET")


@dataclass
class Settings:
    """Everything a run needs to know"""
    name: Optional[str] = None
    domain: Optional[str] = None
    ttl: Optional[int] = None
    min_ttl: Optional[int] = None
    default_ttl: int = DEFAULT_TTL
    force: bool = False
    dry_run: bool = False

    server: Optional[str] = None
    source: Optional[str] = None
    transport: str = TRANSPORT_UDP
    timeout: float = DEFAULT_TIMEOUT

    auth: str = AUTH_NONE
    tsig_key: Optional[Tuple[str, str]] = None
    tsig_algorithm: str = 'hmac-sha256'
    principal: Optional[str] = None
    password: Optional[str] = None
    keytab: str = DEFAULT_KEYTAB
    keytab_base64: Optional[str] = None
    use_nsupdate: bool = False
    nsupdate_command: str = 'nsupdate'

    interface: Optional[str] = None
    ipv4: List[str] = field(default_factory=list)
    ipv6: List[str] = field(default_factory=list)
    use_ipv4: bool = True
    use_ipv6: bool = True
    ptr: bool = True
    single_ipv6: bool = False

    reason: Optional[str] = None

    @property
    def policy(self) -> Policy:
        return Policy(force=self.force, min_ttl=self.min_ttl, explicit_ttl=self.ttl,
                      dry_run=self.dry_run, default_ttl=self.default_ttl)

    @property
    def credentials_required(self) -> bool:
        """Authenticated updates will actually be sent"""
        return self.auth in GSS_AUTH_MODES and not self.dry_run

    @classmethod
    def from_args(cls, args, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        environ = os.environ if environ is None else environ

        def pick(flag, env_key, default=None):
            if flag is not None:
                return flag
            return environ.get(env_key) or default

        ttl = pick(args.ttl, 'DNS_TTL')
        min_ttl = pick(args.min_ttl, 'DNS_MIN_TTL')

        tsig_key = None
        algorithm = environ.get('TSIG_ALGORITHM', 'hmac-sha256')
        if args.tsig_key:
            key_name, secret, key_algorithm = parse_tsig_key(args.tsig_key)
            tsig_key = (key_name, secret)
            algorithm = key_algorithm or algorithm
        elif environ.get('TSIG_KEY_NAME') and environ.get('TSIG_KEY_SECRET'):
            tsig_key = (environ['TSIG_KEY_NAME'], environ['TSIG_KEY_SECRET'])

        auth = pick(args.auth, 'DNS_AUTH', AUTH_TSIG if tsig_key else AUTH_NONE).lower()
        if auth not in AUTH_MODES:
            raise ConfigError(f"Authentication must be one of {', '.join(AUTH_MODES)}")
        if auth == AUTH_TSIG and not tsig_key:
            raise ConfigError("TSIG authentication needs --tsig-key or TSIG_KEY_NAME/TSIG_KEY_SECRET")

        transport = TRANSPORT_TCP if args.tcp else pick(None, 'DNS_TRANSPORT', TRANSPORT_UDP).lower()
        if transport not in (TRANSPORT_UDP, TRANSPORT_TCP):
            raise ConfigError(f"Transport must be udp or tcp, not {transport!r}")

        try:
            timeout = float(pick(args.timeout, 'DNS_TIMEOUT', DEFAULT_TIMEOUT))
        except ValueError:
            raise ConfigError("Timeout must be a number of seconds")
        if timeout <= 0:
            raise ConfigError("Timeout must be positive")

        return cls(
            name=args.name,
            domain=args.domain,
            ttl=parse_ttl(ttl) if ttl is not None else None,
            min_ttl=parse_ttl(min_ttl) if min_ttl is not None else None,
            force=args.force,
            dry_run=args.dry_run,
            server=pick(args.server, 'DNS_SERVER'),
            source=pick(args.source, 'DNS_SOURCE'),
            transport=transport,
            timeout=timeout,
            auth=auth,
            tsig_key=tsig_key,
            tsig_algorithm=algorithm,
            principal=pick(args.principal, 'KRB_PRINCIPAL'),
            password=environ.get('KRB_PASSWORD'),
            keytab=pick(args.keytab, 'KRB_KEYTAB', DEFAULT_KEYTAB),
            keytab_base64=environ.get('KRB_KEYTAB_BASE64'),
            use_nsupdate=args.nsupdate,
            interface=args.interface,
            ipv4=list(args.ipv4 or []),
            ipv6=list(args.ipv6 or []),
            use_ipv4=not args.no_ipv4,
            use_ipv6=not args.no_ipv6,
            ptr=not args.no_ptr,
            single_ipv6=args.single_ipv6,
            reason=args.reason,
        )
