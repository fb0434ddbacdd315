import io
import socket
import subprocess
from types import SimpleNamespace

import dns.name
import dns.query
import dns.rcode
import dns.resolver
import pytest

from conftest import offline_resolver, tkey_reply
from ddns_updater.errors import ConfigError, UpdateError
from ddns_updater.executor import (AUTH_GSS_TSIG, AUTH_GSS_TSIG_LEGACY, AUTH_NONE, AUTH_TSIG,
                                   DnsUpdateExecutor, DryRunExecutor, GssTsigContext,
                                   NsupdateExecutor, Target, TRANSPORT_TCP, make_executor, render_script)
from ddns_updater.records import DNSRecord, Operation

ADD_A = Operation.add("h.example.com", 3600, "A", "198.51.100.9")
DELETE_A = Operation.delete(DNSRecord("h.example.com", 300, "IN", "A", "198.51.100.1"))
ADD_PTR = Operation.add("9.100.51.198.in-addr.arpa", 3600, "PTR", "h.example.com")
TSIG_KEY = ("ddns-key", "c2VjcmV0c2VjcmV0c2VjcmV0")


def test_render_script_full_target():
    script = render_script(ADD_A, Target("ns1.example.com", "example.com", "192.0.2.10"))

    assert script == (
        "server ns1.example.com\n"
        "local 192.0.2.10\n"
        "zone example.com\n"
        "update add h.example.com 3600 IN A 198.51.100.9\n"
        "send\n"
    )


def test_render_script_default_server():
    assert render_script(DELETE_A, Target()) == (
        "update delete h.example.com IN A 198.51.100.1\nsend\n")


def test_dry_run_records_and_echoes():
    stream = io.StringIO()
    executor = DryRunExecutor(stream)

    assert executor.apply(ADD_A, Target()) is True
    assert executor.transactions == [stream.getvalue()]
    assert "update add h.example.com 3600 IN A 198.51.100.9" in stream.getvalue()


def test_update_message_add_and_delete():
    executor = DnsUpdateExecutor(resolver=offline_resolver())

    add = executor.build_message(ADD_A, "example.com").to_text()
    delete = executor.build_message(DELETE_A, "example.com").to_text()

    assert "h.example.com. 3600 IN A 198.51.100.9" in add
    assert "h.example.com. 0 NONE A 198.51.100.1" in delete


def test_update_message_ptr_target_is_absolute():
    executor = DnsUpdateExecutor(resolver=offline_resolver())

    text = executor.build_message(ADD_PTR, "100.51.198.in-addr.arpa").to_text()

    assert "9.100.51.198.in-addr.arpa. 3600 IN PTR h.example.com." in text


def test_tsig_signed_message():
    executor = DnsUpdateExecutor(AUTH_TSIG, TSIG_KEY, resolver=offline_resolver())

    message = executor.build_message(ADD_A, "example.com")

    assert message.keyname == dns.name.from_text("ddns-key")


def test_apply_sends_to_target(monkeypatch):
    sent = []

    def fake_tcp(message, where, timeout=None, source=None):
        sent.append((where, timeout, source))
        return SimpleNamespace(rcode=lambda: dns.rcode.NOERROR)

    monkeypatch.setattr(dns.query, "tcp", fake_tcp)
    executor = DnsUpdateExecutor(timeout=5.0, resolver=offline_resolver())

    target = Target("192.0.2.1", "example.com", "192.0.2.10", TRANSPORT_TCP)
    assert executor.apply(ADD_A, target) is True
    assert sent == [("192.0.2.1", 5.0, "192.0.2.10")]


def test_apply_defaults_to_resolver_nameserver(monkeypatch):
    sent = []

    def fake_udp(message, where, timeout=None, source=None):
        sent.append(where)
        return SimpleNamespace(rcode=lambda: dns.rcode.NOERROR)

    monkeypatch.setattr(dns.query, "udp", fake_udp)
    executor = DnsUpdateExecutor(resolver=offline_resolver())

    executor.apply(ADD_A, Target(zone="example.com"))
    assert sent == ["192.0.2.53"]


def test_refused_update_raises(monkeypatch):
    monkeypatch.setattr(dns.query, "udp",
                        lambda *a, **kw: SimpleNamespace(rcode=lambda: dns.rcode.REFUSED))
    executor = DnsUpdateExecutor(resolver=offline_resolver())

    with pytest.raises(UpdateError, match="REFUSED"):
        executor.apply(ADD_A, Target("192.0.2.1", "example.com"))


def test_dnspython_executor_rejects_unusable_auth():
    with pytest.raises(ConfigError):
        DnsUpdateExecutor(AUTH_GSS_TSIG_LEGACY, resolver=offline_resolver())
    with pytest.raises(ConfigError):
        DnsUpdateExecutor(AUTH_TSIG, None, resolver=offline_resolver())


def test_pinned_server_is_asked_for_the_zone(monkeypatch):
    asked = []

    def zone_for_name(name, resolver=None):
        asked.append(list(resolver.nameservers))
        return dns.name.from_text("example.com")

    monkeypatch.setattr(dns.resolver, "zone_for_name", zone_for_name)
    monkeypatch.setattr(dns.query, "udp",
                        lambda *a, **kw: SimpleNamespace(rcode=lambda: dns.rcode.NOERROR))
    executor = DnsUpdateExecutor(resolver=offline_resolver())

    executor.apply(ADD_A, Target("192.0.2.1"))
    executor.apply(ADD_A, Target())

    assert asked == [["192.0.2.1"], ["192.0.2.53"]]


def test_gss_context_completes_tkey_exchange(monkeypatch, gssapi_stub):
    sent = []

    def fake_tcp(query, where, timeout=None):
        sent.append(where)
        return tkey_reply(query)

    monkeypatch.setattr(dns.query, "tcp", fake_tcp)
    context = GssTsigContext("ns1.example.com", "192.0.2.1")

    context.initialize()

    assert sent == ["192.0.2.1"]
    assert gssapi_stub.contexts[0].received == [b"server-token"]
    assert context.keyname is not None and context.keyring is not None


@pytest.mark.parametrize("reply, message", [
    (dict(rcode=dns.rcode.REFUSED, token=None), "REFUSED"),
    (dict(error=17), "error 17"),
    (dict(token=None), "No TKEY answer"),
    (dict(token=b"bad"), "defective token"),
])
def test_gss_negotiation_failures_raise_update_error(monkeypatch, gssapi_stub, reply, message):
    monkeypatch.setattr(dns.query, "tcp", lambda query, where, timeout=None: tkey_reply(query, **reply))
    context = GssTsigContext("ns1.example.com", "192.0.2.1")

    with pytest.raises(UpdateError, match=message):
        context.initialize()
    assert context.keyring is None


def test_gss_update_refused_during_negotiation(monkeypatch, gssapi_stub):
    monkeypatch.setattr(dns.query, "tcp",
                        lambda query, where, timeout=None: tkey_reply(query, rcode=dns.rcode.REFUSED))
    monkeypatch.setattr(socket, "getfqdn", lambda name: "ns1.example.com")
    executor = DnsUpdateExecutor(AUTH_GSS_TSIG, resolver=offline_resolver())

    with pytest.raises(UpdateError, match="REFUSED"):
        executor.apply(ADD_A, Target("192.0.2.1", "example.com"))


@pytest.mark.parametrize("auth, transport, expected", [
    (AUTH_NONE, "udp", ["nsupdate", "-t", "10"]),
    (AUTH_GSS_TSIG, "udp", ["nsupdate", "-g", "-t", "10"]),
    (AUTH_GSS_TSIG_LEGACY, TRANSPORT_TCP, ["nsupdate", "-o", "-v", "-t", "10"]),
])
def test_nsupdate_command_line(auth, transport, expected):
    executor = NsupdateExecutor(auth)
    assert executor.command_line(Target(transport=transport)) == expected


def test_nsupdate_tsig_key_stays_in_script():
    executor = NsupdateExecutor(AUTH_TSIG, TSIG_KEY)

    assert "-y" not in executor.command_line(Target())
    assert f"key hmac-sha256:ddns-key {TSIG_KEY[1]}" in executor.script(ADD_A, Target())


def test_nsupdate_pipes_script(monkeypatch):
    calls = []

    def fake_run(cmd, input=None, **kwargs):
        calls.append((cmd, input))
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert NsupdateExecutor().apply(ADD_A, Target("ns1.example.com")) is True
    assert calls[0][1].startswith("server ns1.example.com\n")


def test_nsupdate_failure_raises(monkeypatch):
    monkeypatch.setattr(subprocess, "run",
                        lambda cmd, **kw: subprocess.CompletedProcess(cmd, 2, "", "update failed: REFUSED"))

    with pytest.raises(UpdateError, match="REFUSED"):
        NsupdateExecutor().apply(ADD_A, Target())


def test_nsupdate_missing_binary(monkeypatch):
    def missing(*args, **kwargs):
        raise FileNotFoundError("nsupdate")

    monkeypatch.setattr(subprocess, "run", missing)
    with pytest.raises(UpdateError):
        NsupdateExecutor().apply(ADD_A, Target())


def settings(**overrides):
    values = dict(dry_run=False, use_nsupdate=False, auth=AUTH_NONE, tsig_key=None,
                  tsig_algorithm="hmac-sha256", timeout=10.0, nsupdate_command="nsupdate")
    values.update(overrides)
    return SimpleNamespace(**values)


def test_make_executor_selection(monkeypatch):
    real = dns.resolver.Resolver
    monkeypatch.setattr(dns.resolver, "Resolver", lambda *a, **kw: real(configure=False))

    assert isinstance(make_executor(settings(dry_run=True, use_nsupdate=True)), DryRunExecutor)
    assert isinstance(make_executor(settings(use_nsupdate=True)), NsupdateExecutor)
    assert isinstance(make_executor(settings(auth=AUTH_GSS_TSIG_LEGACY)), NsupdateExecutor)
    assert isinstance(make_executor(settings()), DnsUpdateExecutor)
