"""
Shared fakes: an in-memory resolver standing in for dns.resolver.Resolver and
an executor that records what it was asked to do.
"""

from types import SimpleNamespace

import pytest
import dns.exception
import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.TKEY
import dns.resolver
import dns.rrset

from ddns_updater.errors import UpdateError
from ddns_updater.query import DNSQueryClient


def rrset(name, ttl, rdtype, *values):
    """Build a real dnspython RRset from text"""
    return dns.rrset.from_text(name.rstrip('.') + '.', ttl, 'IN', rdtype, *values)


class FakeResolver:
    """
    Answers from a dict keyed by (name, rdtype). Missing keys raise NXDOMAIN;
    a value that is an exception instance is raised instead of answered.
    """

    def __init__(self, data=None):
        self.data = dict(data or {})
        self.calls = []

    def add(self, name, rdtype, *rrsets):
        self.data[(name.rstrip('.').lower(), rdtype)] = list(rrsets)

    def resolve(self, name, rdtype, raise_on_no_answer=True):
        key = (str(name).rstrip('.').lower(), rdtype)
        self.calls.append(key)
        if key not in self.data:
            raise dns.resolver.NXDOMAIN()
        answer = self.data[key]
        if isinstance(answer, Exception):
            raise answer
        return SimpleNamespace(response=SimpleNamespace(answer=answer))


class RecordingExecutor:
    """Remembers (operation, target) pairs; can be told to fail some"""

    def __init__(self, fail=()):
        self.applied = []
        self.fail = set(fail)

    def apply(self, operation, target):
        if operation in self.fail:
            raise UpdateError(f"refused {operation}")
        self.applied.append((operation, target))
        return True


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def client(resolver):
    return DNSQueryClient(resolver=resolver)


@pytest.fixture
def executor():
    return RecordingExecutor()


def offline_resolver(nameserver="192.0.2.53"):
    """A dnspython resolver that never reads /etc/resolv.conf"""
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    return resolver


class FakeGSSError(Exception):
    pass


class FakeSecurityContext:
    """Completes after one server token; the token b'bad' is rejected"""

    def __init__(self, name=None, usage=None):
        self.name = name
        self.complete = False
        self.received = []

    def step(self, token=None):
        if token == b'bad':
            raise FakeGSSError("defective token")
        if token is not None:
            self.received.append(token)
            self.complete = True
        return b'client-token'


@pytest.fixture
def gssapi_stub(monkeypatch):
    """Stand-in for the gssapi module so TKEY negotiation runs without a KDC"""
    from ddns_updater import executor

    contexts = []

    def security_context(**kwargs):
        context = FakeSecurityContext(**kwargs)
        contexts.append(context)
        return context

    stub = SimpleNamespace(
        Name=lambda name, name_type: name,
        NameType=SimpleNamespace(hostbased_service='hostbased_service'),
        SecurityContext=security_context,
        exceptions=SimpleNamespace(GSSError=FakeGSSError),
        contexts=contexts,
    )
    monkeypatch.setattr(executor, 'gssapi', stub, raising=False)
    monkeypatch.setattr(executor, 'GSSAPI_AVAILABLE', True)
    return stub


def tkey_reply(query, token=b'server-token', rcode=0, error=0):
    """Answer a TKEY query the way a DNS server would"""
    response = dns.message.make_response(query)
    response.set_rcode(rcode)
    if token is not None:
        keyname = query.question[0].name
        rrset = response.find_rrset(response.answer, keyname, dns.rdataclass.ANY,
                                    dns.rdatatype.TKEY, create=True)
        rrset.add(dns.rdtypes.ANY.TKEY.TKEY(
            dns.rdataclass.ANY, dns.rdatatype.TKEY, dns.name.from_text('gss-tsig.'),
            0, 0, 3, error, token, b''))
    return response
