import errno
import socket
import threading
from datetime import timedelta

import pytest

import echo
import runconfig
from echo import EchoProbe, ProbeStatus
from errors import ProbeCancelled, ResolutionError
from fakes import FakeIcmpSocket, echo_reply, factory_for, icmp_error


@pytest.fixture
def config():
    return runconfig.build(address="127.0.0.1", ttl=64, timeout="100ms", delay="5s", num_bytes=32)


def replies_with(*builders):
    """A responder answering every request with each builder applied to it, in order."""
    return lambda packet: [(build(packet), ("127.0.0.1", 0)) for build in builders]


def test_checksum_of_a_checksummed_packet_is_zero():
    packet = echo.build_echo_request(socket.AF_INET, 0x1234, 7, echo.make_payload(33))
    assert len(packet) == 8 + 33
    assert echo.checksum(packet) == 0


def test_request_carries_identifier_and_sequence():
    packet = echo.build_echo_request(socket.AF_INET, 0xBEEF, 42, b"")
    icmp_type, code, _, identifier, sequence = echo.ICMP_HEADER.unpack(packet)
    assert (icmp_type, code, identifier, sequence) == (echo.ICMP_ECHO_REQUEST, 0, 0xBEEF, 42)


def test_parse_strips_ipv4_header():
    request = echo.build_echo_request(socket.AF_INET, 1, 2, b"abc")
    message = echo.parse_icmp(echo_reply(request), socket.AF_INET, has_ip_header=True)
    assert message == echo.IcmpMessage(echo.ICMP_ECHO_REPLY, 0, 1, 2)


def test_parse_reads_quoted_request_from_errors():
    request = echo.build_echo_request(socket.AF_INET, 9, 10, b"")
    message = echo.parse_icmp(icmp_error(request, echo.ICMP_TIME_EXCEEDED, 0), socket.AF_INET, True)
    assert message.quoted
    assert (message.type, message.identifier, message.sequence) == (echo.ICMP_TIME_EXCEEDED, 9, 10)


def test_parse_ipv6_echo_reply():
    packet = echo.ICMP_HEADER.pack(echo.ICMP6_ECHO_REPLY, 0, 0, 5, 6) + b"payload"
    message = echo.parse_icmp(packet, socket.AF_INET6, has_ip_header=False)
    assert message == echo.IcmpMessage(echo.ICMP6_ECHO_REPLY, 0, 5, 6)


def test_parse_rejects_truncated_packets():
    assert echo.parse_icmp(b"\x45" + bytes(10), socket.AF_INET, True) is None
    assert echo.parse_icmp(b"\x00\x00", socket.AF_INET, False) is None


def test_matching_reply_gives_latency(config):
    fake = FakeIcmpSocket(responder=replies_with(echo_reply))
    probe = EchoProbe("127.0.0.1", identifier=0x4242, socket_factory=factory_for(fake))

    outcome = probe.probe(config, 1)

    assert outcome.status == ProbeStatus.SUCCESS
    assert timedelta(0) <= outcome.latency < config.timeout
    assert outcome.responder == "127.0.0.1"
    assert outcome.sequence == 1
    packet, address = fake.sent[0]
    assert address[0] == "127.0.0.1"
    assert len(packet) == 8 + 32


def test_ttl_is_set_on_the_socket(config):
    fake = FakeIcmpSocket(responder=replies_with(echo_reply))
    probe = EchoProbe("127.0.0.1", socket_factory=factory_for(fake))
    probe.probe(config, 1)
    assert fake.options[(socket.IPPROTO_IP, socket.IP_TTL)] == 64


def test_stale_and_foreign_replies_are_discarded(config):
    fake = FakeIcmpSocket(responder=replies_with(
        lambda request: echo_reply(request, sequence=0),          # late reply to the previous probe
        lambda request: echo_reply(request, identifier=0x0001),  # someone else's ping
        echo_reply,
    ))
    probe = EchoProbe("127.0.0.1", identifier=0x4242, socket_factory=factory_for(fake))

    outcome = probe.probe(config, 1)
    assert outcome.status == ProbeStatus.SUCCESS


def test_only_mismatched_replies_time_out(config):
    fake = FakeIcmpSocket(responder=replies_with(
        lambda request: echo_reply(request, sequence=0),
        lambda request: echo_reply(request, identifier=0x0001),
    ))
    probe = EchoProbe("127.0.0.1", identifier=0x4242, socket_factory=factory_for(fake))

    outcome = probe.probe(config, 1)
    assert outcome.status == ProbeStatus.TIMEOUT
    assert outcome.latency is None


def test_own_request_looped_back_is_not_a_reply(config):
    fake = FakeIcmpSocket(responder=replies_with(lambda request: echo_reply(request, icmp_type=echo.ICMP_ECHO_REQUEST)))
    probe = EchoProbe("127.0.0.1", socket_factory=factory_for(fake))
    assert probe.probe(config, 1).status == ProbeStatus.TIMEOUT


def test_silent_target_times_out_every_cycle(config):
    fake = FakeIcmpSocket()
    probe = EchoProbe("127.0.0.1", socket_factory=factory_for(fake))
    outcomes = [probe.probe(config, sequence) for sequence in range(1, 4)]
    assert [o.status for o in outcomes] == [ProbeStatus.TIMEOUT] * 3
    assert [o.sequence for o in outcomes] == [1, 2, 3]


def test_unreachable_error_fails_the_probe(config):
    fake = FakeIcmpSocket(responder=replies_with(
        lambda request: icmp_error(request, echo.ICMP_DEST_UNREACHABLE, 1),
    ))
    probe = EchoProbe("127.0.0.1", socket_factory=factory_for(fake))

    outcome = probe.probe(config, 1)
    assert outcome.status == ProbeStatus.FAILED
    assert "host unreachable" in outcome.reason


def test_send_error_fails_the_probe(config):
    fake = FakeIcmpSocket(send_error=PermissionError(errno.EACCES, "Permission denied"))
    probe = EchoProbe("127.0.0.1", socket_factory=factory_for(fake))

    outcome = probe.probe(config, 1)
    assert outcome.status == ProbeStatus.FAILED
    assert outcome.reason == "send failed: permission denied"


def test_socket_that_cannot_be_opened_fails_the_probe(config):
    def refuse(family):
        raise PermissionError(errno.EPERM, "Operation not permitted")

    probe = EchoProbe("127.0.0.1", socket_factory=refuse)
    outcome = probe.probe(config, 1)
    assert outcome.status == ProbeStatus.FAILED
    assert "could not open an ICMP socket" in outcome.reason


def test_datagram_socket_matches_kernel_identifier(config):
    # The kernel rewrites the identifier of datagram ICMP sockets and strips the IP header
    fake = FakeIcmpSocket(
        responder=replies_with(lambda request: echo_reply(request, identifier=777, ip_header=False)),
        port=777,
    )
    probe = EchoProbe("127.0.0.1", identifier=1, socket_factory=factory_for(fake, raw=False))
    assert probe.probe(config, 1).status == ProbeStatus.SUCCESS


def test_sequence_wraps_on_the_wire(config):
    fake = FakeIcmpSocket(responder=replies_with(echo_reply))
    probe = EchoProbe("127.0.0.1", socket_factory=factory_for(fake))

    outcome = probe.probe(config, 0x10001)
    assert outcome.status == ProbeStatus.SUCCESS
    assert outcome.sequence == 0x10001
    assert echo.ICMP_HEADER.unpack_from(fake.sent[0][0])[4] == 1


def test_stop_event_abandons_the_wait(config):
    fake = FakeIcmpSocket()
    probe = EchoProbe("127.0.0.1", socket_factory=factory_for(fake))
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ProbeCancelled):
        probe.probe(config, 1, cancel)


def test_close_closes_the_socket(config):
    fake = FakeIcmpSocket(responder=replies_with(echo_reply))
    with EchoProbe("127.0.0.1", socket_factory=factory_for(fake)) as probe:
        probe.probe(config, 1)
    assert fake.closed


def test_unresolvable_address(monkeypatch):
    def fail(*args, **kwargs):
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    monkeypatch.setattr(echo.socket, "getaddrinfo", fail)
    with pytest.raises(ResolutionError, match="no-such-host.invalid"):
        EchoProbe("no-such-host.invalid")


def test_ipv6_target_sets_hop_limit_and_matches_reply(config, monkeypatch):
    monkeypatch.setattr(
        echo.socket, "getaddrinfo",
        lambda *args, **kwargs: [(socket.AF_INET6, socket.SOCK_DGRAM, 17, "", ("::1", 0, 0, 0))],
    )
    fake = FakeIcmpSocket(responder=lambda packet: [
        (echo_reply(packet, icmp_type=echo.ICMP6_ECHO_REPLY, ip_header=False), ("::1", 0, 0, 0)),
    ])
    probe = EchoProbe("localhost6", identifier=0x4242, socket_factory=factory_for(fake))

    outcome = probe.probe(config, 1)

    assert probe.family == socket.AF_INET6
    assert outcome.status == ProbeStatus.SUCCESS
    assert outcome.responder == "::1"
    assert fake.options[(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS)] == 64
    packet, address = fake.sent[0]
    assert packet[0] == echo.ICMP6_ECHO_REQUEST
    assert address == ("::1", 0, 0, 0)


def icmp_sockets_available():
    try:
        sock, _ = echo.open_icmp_socket(socket.AF_INET)
    except OSError:
        return False
    sock.close()
    return True


@pytest.mark.skipif(not icmp_sockets_available(), reason="ICMP sockets are not permitted here")
def test_loopback_replies_within_timeout():
    config = runconfig.build(address="127.0.0.1", ttl=64, timeout="500ms", delay="5s", num_bytes=32)
    with EchoProbe(config.address) as probe:
        for sequence in range(1, 4):
            outcome = probe.probe(config, sequence)
            assert outcome.status == ProbeStatus.SUCCESS
            assert timedelta(0) <= outcome.latency < timedelta(milliseconds=500)
