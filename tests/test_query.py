import dns.exception
import dns.resolver

from conftest import rrset
from ddns_updater.query import DNSQueryClient, resolve_server_address, reverse_name
from ddns_updater.records import DNSRecord


def test_forward_lookup_normalizes_records(resolver, client):
    resolver.add("h.example.com", "A", rrset("h.example.com", 300, "A", "198.51.100.9"))

    assert client.query("h.example.com", "A") == [
        DNSRecord("h.example.com", 300, "IN", "A", "198.51.100.9"),
    ]


def test_untyped_hostname_queries_a_then_aaaa(resolver, client):
    resolver.add("h.example.com", "AAAA", rrset("h.example.com", 600, "AAAA", "2001:db8::9"))
    resolver.add("h.example.com", "A", rrset("h.example.com", 300, "A", "198.51.100.9"))

    records = client.query("h.example.com")

    assert [r.rdtype for r in records] == ["A", "AAAA"]
    assert records[1].value == "2001:db8::9"
    assert resolver.calls == [("h.example.com", "A"), ("h.example.com", "AAAA")]


def test_address_literal_becomes_ptr_lookup(resolver, client):
    resolver.add("9.100.51.198.in-addr.arpa", "PTR",
                 rrset("9.100.51.198.in-addr.arpa", 3600, "PTR", "h.example.com."))

    assert client.query("198.51.100.9") == client.query("9.100.51.198.in-addr.arpa", "PTR")
    assert client.query("198.51.100.9")[0].value == "h.example.com"


def test_ipv6_literal_reverse_name():
    assert reverse_name("2001:db8::1") == (
        "1.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.8.b.d.0.1.0.0.2.ip6.arpa")


def test_lookup_failures_are_empty(resolver, client):
    resolver.data[("timeout.example.com", "A")] = dns.exception.Timeout()
    resolver.data[("servfail.example.com", "A")] = dns.resolver.NoNameservers()

    assert client.query("missing.example.com", "A") == []
    assert client.query("timeout.example.com", "A") == []
    assert client.query("servfail.example.com", "A") == []


def test_empty_answer_is_empty(resolver, client):
    resolver.add("h.example.com", "AAAA")
    assert client.query("h.example.com", "AAAA") == []


def test_local_ptr_targets_are_dropped(resolver, client):
    resolver.add("9.100.51.198.in-addr.arpa", "PTR",
                 rrset("9.100.51.198.in-addr.arpa", 3600, "PTR", "h.local.", "h.example.com."))

    records = client.query("198.51.100.9")

    assert [r.value for r in records] == ["h.example.com"]


def test_cname_chain_is_reported(resolver, client):
    resolver.add("www.example.com", "A",
                 rrset("www.example.com", 300, "CNAME", "h.example.com."),
                 rrset("h.example.com", 300, "A", "198.51.100.9"))

    records = client.query("www.example.com", "A")

    assert records[0] == DNSRecord("www.example.com", 300, "IN", "CNAME", "h.example.com")
    assert records[1].name == "h.example.com"


def test_soa_value_is_primary_master(resolver, client):
    resolver.add("example.com", "SOA",
                 rrset("example.com", 3600, "SOA",
                       "ns1.example.com. hostmaster.example.com. 1 7200 900 1209600 300"))

    assert client.query("example.com", "SOA")[0].value == "ns1.example.com"


def test_server_address_passthrough():
    assert resolve_server_address("192.0.2.53") == "192.0.2.53"
    assert resolve_server_address("2001:db8::53") == "2001:db8::53"


def test_pinned_client_keeps_given_resolver(resolver):
    client = DNSQueryClient(server="192.0.2.53", resolver=resolver)
    assert client.server == "192.0.2.53"
    assert client.resolver is resolver
