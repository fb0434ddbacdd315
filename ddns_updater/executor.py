"""
Update executors: turn one Operation into one DNS UPDATE transaction.

    DryRunExecutor     echo the nsupdate script, contact nobody
    DnsUpdateExecutor  send with dnspython (no auth, TSIG or GSS-TSIG)
    NsupdateExecutor   pipe the script into nsupdate(1), which also covers
                       the legacy Microsoft GSS-TSIG dialect (-o)
"""

import sys
import time
import uuid
import socket
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import dns.message
import dns.name
import dns.query
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.TKEY
import dns.resolver
import dns.tsig
import dns.tsigkeyring
import dns.update

# GSS-TSIG imports (optional)
try:
    import gssapi
    import gssapi.exceptions
    GSSAPI_AVAILABLE = True
except ImportError:
    GSSAPI_AVAILABLE = False

from .errors import ConfigError, UpdateError
from .query import resolve_server_address
from .records import ADD, Operation, is_address

log = logging.getLogger(__name__)

TRANSPORT_UDP = 'udp'
TRANSPORT_TCP = 'tcp'

AUTH_NONE = 'none'
AUTH_TSIG = 'tsig'
AUTH_GSS_TSIG = 'gss-tsig'
AUTH_GSS_TSIG_LEGACY = 'gss-tsig-legacy'
AUTH_MODES = (AUTH_NONE, AUTH_TSIG, AUTH_GSS_TSIG, AUTH_GSS_TSIG_LEGACY)
GSS_AUTH_MODES = (AUTH_GSS_TSIG, AUTH_GSS_TSIG_LEGACY)

# rdata types whose value is a domain name
NAME_TYPES = ('PTR', 'CNAME')


@dataclass(frozen=True)
class Target:
    """Where and how an update transaction is sent"""
    server: Optional[str] = None
    zone: Optional[str] = None
    source: Optional[str] = None
    transport: str = TRANSPORT_UDP


def render_script(operation: Operation, target: Target, key_line: Optional[str] = None) -> str:
    """nsupdate(1) input for a single operation"""
    lines = []
    if target.server:
        lines.append(f"server {target.server}")
    if target.source:
        lines.append(f"local {target.source}")
    if key_line:
        lines.append(key_line)
    if target.zone:
        lines.append(f"zone {target.zone}")
    lines.append(operation.directive())
    lines.append("send")
    return "\n".join(lines) + "\n"


class UpdateExecutor:
    """Applies operations; returns True on success, raises or returns False on failure"""

    def apply(self, operation: Operation, target: Target) -> bool:
        raise NotImplementedError


class DryRunExecutor(UpdateExecutor):
    """Records and echoes transactions without sending them"""

    def __init__(self, stream=None):
        self.stream = stream
        self.transactions: List[str] = []

    def apply(self, operation: Operation, target: Target) -> bool:
        script = render_script(operation, target)
        self.transactions.append(script)
        log.info(f"Dry run, not sending: {operation}")
        stream = self.stream or sys.stdout
        stream.write(script)
        return True


class GssTsigContext:
    """
    GSS-TSIG security context negotiated with one server.

    The TKEY exchange runs over TCP until gssapi reports the context
    complete. A refused or malformed reply and any GSS failure raise
    UpdateError.
    """

    max_rounds = 10

    def __init__(self, server_fqdn: str, server_ip: str, timeout: float = 10.0):
        if not GSSAPI_AVAILABLE:
            raise ConfigError("GSS-TSIG requires gssapi library (pip install gssapi)")

        self.server_fqdn = server_fqdn
        self.server_ip = server_ip
        self.timeout = timeout
        self.keyring = None
        self.keyname = None

    def _build_tkey_query(self, token: bytes, keyring, keyname) -> dns.message.Message:
        now = int(time.time())
        tkey = dns.rdtypes.ANY.TKEY.TKEY(
            dns.rdataclass.ANY, dns.rdatatype.TKEY,
            dns.name.from_text('gss-tsig.'),
            now, now,
            3,  # GSS-API negotiation
            dns.rcode.NOERROR,
            token,
            b''
        )

        query = dns.message.make_query(keyname, dns.rdatatype.TKEY, dns.rdataclass.ANY)
        rrset = query.find_rrset(query.additional, keyname, dns.rdataclass.ANY,
                                 dns.rdatatype.TKEY, create=True)
        rrset.add(tkey)
        query.keyring = keyring
        return query

    def _server_token(self, response: dns.message.Message) -> bytes:
        """The server's GSS token from a TKEY reply"""
        rcode = response.rcode()
        if rcode != dns.rcode.NOERROR:
            raise UpdateError(f"TKEY negotiation with {self.server_fqdn} refused: "
                              f"{dns.rcode.to_text(rcode)}")

        for rrset in response.answer:
            if rrset.rdtype == dns.rdatatype.TKEY and len(rrset):
                tkey = rrset[0]
                if tkey.error != dns.rcode.NOERROR:
                    raise UpdateError(f"TKEY negotiation with {self.server_fqdn} failed: "
                                      f"error {tkey.error}")
                return tkey.key
        raise UpdateError(f"No TKEY answer from {self.server_fqdn}")

    def initialize(self):
        """Run the TKEY exchange until the security context is complete"""
        log.info(f"Initializing GSS-TSIG context with {self.server_fqdn}")
        keyname = dns.name.from_text(f"{uuid.uuid4()}")

        try:
            spn = gssapi.Name(f'DNS@{self.server_fqdn}', gssapi.NameType.hostbased_service)
            client_ctx = gssapi.SecurityContext(name=spn, usage='initiate')

            keyring = dns.tsigkeyring.from_text({})
            keyring[keyname] = dns.tsig.Key(keyname, client_ctx, 'gss-tsig.')
            keyring = dns.tsig.GSSTSigAdapter(keyring)

            token = client_ctx.step()
            rounds = 0
            while not client_ctx.complete:
                rounds += 1
                if rounds > self.max_rounds:
                    raise UpdateError(f"GSS-TSIG negotiation with {self.server_fqdn} "
                                      f"did not complete after {self.max_rounds} rounds")
                query = self._build_tkey_query(token, keyring, keyname)
                # parsing the reply may already step the context through the adapter
                response = dns.query.tcp(query, self.server_ip, timeout=self.timeout)
                server_token = self._server_token(response)
                if not client_ctx.complete:
                    token = client_ctx.step(server_token)
        except gssapi.exceptions.GSSError as e:
            raise UpdateError(f"GSS-TSIG negotiation with {self.server_fqdn} failed: {e}")

        self.keyring = keyring
        self.keyname = keyname
        log.info(f"GSS-TSIG context with {self.server_fqdn} established")


class DnsUpdateExecutor(UpdateExecutor):
    """Sends updates directly with dnspython"""

    def __init__(self, auth: str = AUTH_NONE, tsig_key: Optional[Tuple[str, str]] = None,
                 tsig_algorithm: str = 'hmac-sha256', timeout: float = 10.0,
                 resolver: Optional[dns.resolver.Resolver] = None):
        if auth == AUTH_GSS_TSIG_LEGACY:
            raise ConfigError("Legacy GSS-TSIG is only supported through nsupdate")
        if auth == AUTH_GSS_TSIG and not GSSAPI_AVAILABLE:
            raise ConfigError("GSS-TSIG requires gssapi library (pip install gssapi)")
        if auth == AUTH_TSIG and not tsig_key:
            raise ConfigError("TSIG authentication needs a key name and secret")

        self.auth = auth
        self.timeout = timeout
        if resolver is None:
            resolver = dns.resolver.Resolver()
            resolver.lifetime = timeout
        self.resolver = resolver
        self.keyring = None
        self.keyname = None
        self.algorithm = tsig_algorithm
        if auth == AUTH_TSIG:
            self.keyring = dns.tsigkeyring.from_text({tsig_key[0]: tsig_key[1]})
            self.keyname = tsig_key[0]
            log.info(f"Initialized TSIG client with key {tsig_key[0]}")
        self._contexts: Dict[str, GssTsigContext] = {}
        self._resolvers: Dict[str, dns.resolver.Resolver] = {}

    def _server_names(self, server: Optional[str]) -> Tuple[str, str]:
        """(name, ip) for the target server, defaulting to the first resolver"""
        if not server:
            nameserver = self.resolver.nameservers[0]
            server = getattr(nameserver, 'address', nameserver)
        return server, resolve_server_address(server)

    def _resolver_for(self, server_ip: str) -> dns.resolver.Resolver:
        """A resolver that only asks the given server"""
        if server_ip not in self._resolvers:
            resolver = dns.resolver.Resolver(configure=False)
            resolver.nameservers = [server_ip]
            resolver.lifetime = self.timeout
            self._resolvers[server_ip] = resolver
        return self._resolvers[server_ip]

    def _zone_for(self, operation: Operation, target: Target, server_ip: str) -> str:
        if target.zone:
            return target.zone
        # a pinned server may serve zones the system resolver cannot see
        resolver = self._resolver_for(server_ip) if target.server else self.resolver
        zone = dns.resolver.zone_for_name(operation.name, resolver=resolver)
        return zone.to_text(omit_final_dot=True)

    def _context(self, server_name: str, server_ip: str) -> GssTsigContext:
        if server_ip not in self._contexts:
            # the service principal needs a host name, not an address
            server_fqdn = socket.getfqdn(server_name) if is_address(server_name) else server_name
            context = GssTsigContext(server_fqdn, server_ip, self.timeout)
            context.initialize()
            self._contexts[server_ip] = context
        return self._contexts[server_ip]

    def build_message(self, operation: Operation, zone: str,
                      server_name: str = None, server_ip: str = None) -> dns.update.UpdateMessage:
        if self.auth == AUTH_TSIG:
            update = dns.update.UpdateMessage(zone, keyring=self.keyring,
                                              keyname=self.keyname,
                                              keyalgorithm=self.algorithm)
        elif self.auth == AUTH_GSS_TSIG:
            context = self._context(server_name, server_ip)
            update = dns.update.UpdateMessage(zone, keyring=context.keyring,
                                              keyname=context.keyname,
                                              keyalgorithm='gss-tsig.')
        else:
            update = dns.update.UpdateMessage(zone)

        owner = dns.name.from_text(operation.name)
        value = operation.value
        if operation.rdtype in NAME_TYPES and not value.endswith('.'):
            value += '.'

        if operation.op == ADD:
            update.add(owner, operation.ttl, operation.rdtype, value)
        else:
            update.delete(owner, operation.rdtype, value)
        return update

    def apply(self, operation: Operation, target: Target) -> bool:
        server_name, server_ip = self._server_names(target.server)
        zone = self._zone_for(operation, target, server_ip)
        update = self.build_message(operation, zone, server_name, server_ip)

        send = dns.query.tcp if target.transport == TRANSPORT_TCP else dns.query.udp
        response = send(update, server_ip, timeout=self.timeout, source=target.source)

        if response.rcode() != dns.rcode.NOERROR:
            error = dns.rcode.to_text(response.rcode())
            raise UpdateError(f"DNS update failed for zone {zone}: {error}")

        log.info(f"Sent {operation} to {server_name} (zone {zone})")
        return True


class NsupdateExecutor(UpdateExecutor):
    """Pipes each transaction into nsupdate(1)"""

    def __init__(self, auth: str = AUTH_NONE, tsig_key: Optional[Tuple[str, str]] = None,
                 tsig_algorithm: str = 'hmac-sha256', timeout: float = 10.0,
                 command: str = 'nsupdate'):
        if auth == AUTH_TSIG and not tsig_key:
            raise ConfigError("TSIG authentication needs a key name and secret")
        self.auth = auth
        self.tsig_key = tsig_key
        self.algorithm = tsig_algorithm
        self.timeout = timeout
        self.command = command

    def command_line(self, target: Target) -> List[str]:
        cmd = [self.command]
        if self.auth == AUTH_GSS_TSIG:
            cmd.append('-g')
        elif self.auth == AUTH_GSS_TSIG_LEGACY:
            cmd.append('-o')
        if target.transport == TRANSPORT_TCP:
            cmd.append('-v')
        cmd.extend(['-t', str(int(self.timeout))])
        return cmd

    def script(self, operation: Operation, target: Target) -> str:
        key_line = None
        if self.auth == AUTH_TSIG:
            # keep the secret off the command line
            key_line = f"key {self.algorithm}:{self.tsig_key[0]} {self.tsig_key[1]}"
        return render_script(operation, target, key_line)

    def apply(self, operation: Operation, target: Target) -> bool:
        cmd = self.command_line(target)
        log.debug(f"Running {' '.join(cmd)} for {operation}")
        try:
            result = subprocess.run(
                cmd,
                input=self.script(operation, target),
                capture_output=True,
                text=True,
                timeout=self.timeout * 2
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise UpdateError(f"Could not run {self.command}: {e}")

        if result.returncode != 0:
            raise UpdateError(f"{self.command} failed: {result.stderr.strip() or result.returncode}")
        return True


def make_executor(settings) -> UpdateExecutor:
    """Pick the executor for a run; dry-run always wins"""
    if settings.dry_run:
        return DryRunExecutor()
    if settings.use_nsupdate or settings.auth == AUTH_GSS_TSIG_LEGACY:
        return NsupdateExecutor(settings.auth, settings.tsig_key, settings.tsig_algorithm,
                                settings.timeout, settings.nsupdate_command)
    return DnsUpdateExecutor(settings.auth, settings.tsig_key, settings.tsig_algorithm,
                             settings.timeout)
