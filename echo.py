# Standard library
import logging
import os
import socket
import struct
import time

# Standard library "from" statements
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, NamedTuple, Optional, Tuple

# 3rd party library "from" statements
from pydantic import BaseModel, Field, model_validator

from errors import ProbeCancelled, ProbeError, ResolutionError
from runconfig import RunConfig


LOGGER = logging.getLogger("uptime.echo")

ICMP_ECHO_REPLY = 0
ICMP_DEST_UNREACHABLE = 3
ICMP_ECHO_REQUEST = 8
ICMP_TIME_EXCEEDED = 11
ICMP_PARAMETER_PROBLEM = 12

ICMP6_DEST_UNREACHABLE = 1
ICMP6_PACKET_TOO_BIG = 2
ICMP6_TIME_EXCEEDED = 3
ICMP6_PARAMETER_PROBLEM = 4
ICMP6_ECHO_REQUEST = 128
ICMP6_ECHO_REPLY = 129

# type, code, checksum, identifier, sequence
ICMP_HEADER = struct.Struct("!BBHHH")
IPV6_HEADER_LENGTH = 40

# How long a single receive may block before the stop event is checked again, in seconds
WAIT_SLICE = 0.1
RECEIVE_BUFFER = 65535

UNREACHABLE_REASONS = {
    0: "network unreachable",
    1: "host unreachable",
    2: "protocol unreachable",
    3: "port unreachable",
    4: "fragmentation needed",
    9: "network administratively prohibited",
    10: "host administratively prohibited",
    13: "communication administratively prohibited",
}
UNREACHABLE6_REASONS = {
    0: "no route to destination",
    1: "communication administratively prohibited",
    3: "address unreachable",
    4: "port unreachable",
}


# The result of a single attempt to ping the target
class ProbeStatus(Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILED = "failed"

# One probe cycle, as reported by the engine and consumed by the sample log
class ProbeOutcome(BaseModel):
    timestamp: datetime
    sequence: int = Field(ge=0)
    status: ProbeStatus
    latency: Optional[timedelta] = None
    reason: Optional[str] = None
    responder: Optional[str] = None

    @model_validator(mode="after")
    def _check_latency(self) -> "ProbeOutcome":
        if self.status == ProbeStatus.SUCCESS:
            if self.latency is None or self.latency < timedelta(0):
                raise ValueError("a successful probe needs a non-negative latency")
        elif self.latency is not None:
            raise ValueError(f"a {self.status.value} probe has no latency")
        return self

    @property
    def latency_ms(self) -> Optional[int]:
        if self.latency is None:
            return None
        return round(self.latency.total_seconds() * 1000)


# The fields of an ICMP message needed to match it against the request we sent.
# quoted is set for error messages, whose identifier and sequence come from the request they quote.
class IcmpMessage(NamedTuple):
    type: int
    code: int
    identifier: int
    sequence: int
    quoted: bool = False


def echo_request_type(family: int) -> int:
    return ICMP_ECHO_REQUEST if family == socket.AF_INET else ICMP6_ECHO_REQUEST

def echo_reply_type(family: int) -> int:
    return ICMP_ECHO_REPLY if family == socket.AF_INET else ICMP6_ECHO_REPLY

def is_error_type(family: int, icmp_type: int) -> bool:
    if family == socket.AF_INET:
        return icmp_type in (ICMP_DEST_UNREACHABLE, ICMP_TIME_EXCEEDED, ICMP_PARAMETER_PROBLEM)
    return icmp_type in (ICMP6_DEST_UNREACHABLE, ICMP6_PACKET_TOO_BIG, ICMP6_TIME_EXCEEDED, ICMP6_PARAMETER_PROBLEM)

# Standard Internet checksum (RFC 1071)
def checksum(data: bytes) -> int:
    if len(data) % 2:
        data += b"\x00"
    total = 0
    for i in range(0, len(data), 2):
        total += (data[i] << 8) | data[i + 1]
    # Fold the carries back in until it fits in 16 bits
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF

# The payload carried by each request: num_bytes of a repeating 0x00..0xff pattern
def make_payload(num_bytes: int) -> bytes:
    return bytes(i & 0xFF for i in range(num_bytes))

def build_echo_request(family: int, identifier: int, sequence: int, payload: bytes) -> bytes:
    request_type = echo_request_type(family)
    header = ICMP_HEADER.pack(request_type, 0, 0, identifier, sequence)
    # The kernel fills in the ICMPv6 checksum, as it covers an IPv6 pseudo-header we never see
    if family == socket.AF_INET:
        header = ICMP_HEADER.pack(request_type, 0, checksum(header + payload), identifier, sequence)
    return header + payload

# Strips an IPv4 header, using its IHL field for the length
def strip_ipv4_header(packet: bytes) -> Optional[bytes]:
    if len(packet) < 20:
        return None
    return packet[(packet[0] & 0x0F) * 4:]

# Extracts type, code, identifier and sequence from a received packet. Errors carry those of the quoted request.
def parse_icmp(packet: bytes, family: int, has_ip_header: bool) -> Optional[IcmpMessage]:
    if family == socket.AF_INET and has_ip_header:
        packet = strip_ipv4_header(packet)
        if packet is None:
            return None

    if len(packet) < ICMP_HEADER.size:
        return None
    icmp_type, code, _, identifier, sequence = ICMP_HEADER.unpack_from(packet)
    if not is_error_type(family, icmp_type):
        return IcmpMessage(icmp_type, code, identifier, sequence)

    # Errors carry the offending IP header and at least 8 bytes of what followed it
    quoted = packet[ICMP_HEADER.size:]
    if family == socket.AF_INET:
        quoted = strip_ipv4_header(quoted)
    else:
        quoted = quoted[IPV6_HEADER_LENGTH:]
    if quoted is None or len(quoted) < ICMP_HEADER.size:
        return None

    quoted_type, _, _, identifier, sequence = ICMP_HEADER.unpack_from(quoted)
    if quoted_type != echo_request_type(family):
        return None
    return IcmpMessage(icmp_type, code, identifier, sequence, quoted=True)

# A short, human readable account of an ICMP error
def describe_icmp_error(family: int, message: IcmpMessage) -> str:
    if family == socket.AF_INET:
        if message.type == ICMP_TIME_EXCEEDED:
            return "ttl exceeded in transit"
        if message.type == ICMP_DEST_UNREACHABLE:
            return f"destination unreachable ({UNREACHABLE_REASONS.get(message.code, f'code {message.code}')})"
    else:
        if message.type == ICMP6_TIME_EXCEEDED:
            return "hop limit exceeded in transit"
        if message.type == ICMP6_DEST_UNREACHABLE:
            return f"destination unreachable ({UNREACHABLE6_REASONS.get(message.code, f'code {message.code}')})"
        if message.type == ICMP6_PACKET_TOO_BIG:
            return "packet too big"
    return f"icmp error type {message.type} code {message.code}"

def describe_os_error(error: OSError) -> str:
    return (error.strerror or str(error)).lower()


# Resolves an IP address or hostname to the address family and socket address to probe
def resolve_address(address: str) -> Tuple[int, tuple]:
    try:
        candidates = socket.getaddrinfo(address, None, type=socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as e:
        raise ResolutionError(f"Could not resolve {address}: {e}") from e

    for family, _, _, _, sockaddr in candidates:
        if family in (socket.AF_INET, socket.AF_INET6):
            return family, sockaddr

    raise ResolutionError(f"{address} did not resolve to an IPv4 or IPv6 address")

# Opens an ICMP socket, returning it and whether it is raw.
# Raw sockets need privileges; without them Linux still allows datagram ICMP sockets.
def open_icmp_socket(family: int) -> Tuple[socket.socket, bool]:
    protocol = socket.IPPROTO_ICMP if family == socket.AF_INET else socket.IPPROTO_ICMPV6
    try:
        return socket.socket(family, socket.SOCK_RAW, protocol), True
    except PermissionError:
        LOGGER.debug("Raw ICMP sockets are not permitted, falling back to a datagram ICMP socket")
        return socket.socket(family, socket.SOCK_DGRAM, protocol), False

def set_ttl(sock: socket.socket, family: int, ttl: int) -> None:
    if family == socket.AF_INET:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, ttl)
    else:
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, ttl)


# Sends echo requests to one target, resolved once. Only a reply to the request sent last counts.
class EchoProbe:
    def __init__(
        self,
        address: str,
        identifier: Optional[int] = None,
        socket_factory: Callable[[int], Tuple[socket.socket, bool]] = open_icmp_socket,
    ):
        self.address = address
        self.family, self.sockaddr = resolve_address(address)
        self.identifier = (os.getpid() if identifier is None else identifier) & 0xFFFF
        self._socket_factory = socket_factory
        self._sock: Optional[socket.socket] = None
        self._has_ip_header = False
        self._kernel_identifier = False

    @property
    def ip(self) -> str:
        return self.sockaddr[0]

    def __enter__(self) -> "EchoProbe":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _ensure_socket(self) -> socket.socket:
        if self._sock is None:
            try:
                self._sock, raw = self._socket_factory(self.family)
            except OSError as e:
                raise ProbeError(f"could not open an ICMP socket: {describe_os_error(e)}") from e
            self._has_ip_header = raw and self.family == socket.AF_INET
            self._kernel_identifier = not raw
        return self._sock

    # Datagram ICMP sockets overwrite the identifier with the socket's own "port"
    def _expected_identifier(self, sock: socket.socket) -> int:
        if self._kernel_identifier:
            return sock.getsockname()[1]
        return self.identifier

    # Sends one request and returns the perf_counter time it left at
    def _send(self, config: RunConfig, wire_sequence: int) -> float:
        sock = self._ensure_socket()
        packet = build_echo_request(self.family, self.identifier, wire_sequence, make_payload(config.num_bytes))
        try:
            set_ttl(sock, self.family, config.ttl)
            sent_at = time.perf_counter()
            sock.sendto(packet, self.sockaddr)
        except OSError as e:
            raise ProbeError(f"send failed: {describe_os_error(e)}") from e
        return sent_at

    def probe(self, config: RunConfig, sequence: int, cancel=None) -> ProbeOutcome:
        timestamp = datetime.now().astimezone()
        wire_sequence = sequence & 0xFFFF
        try:
            sent_at = self._send(config, wire_sequence)
            deadline = sent_at + config.timeout.total_seconds()
            return self._await_reply(timestamp, sequence, wire_sequence, sent_at, deadline, cancel)
        except ProbeError as e:
            return ProbeOutcome(timestamp=timestamp, sequence=sequence, status=ProbeStatus.FAILED, reason=str(e))

    def _await_reply(
        self,
        timestamp: datetime,
        sequence: int,
        wire_sequence: int,
        sent_at: float,
        deadline: float,
        cancel,
    ) -> ProbeOutcome:
        sock = self._sock
        expected_identifier = self._expected_identifier(sock)

        while True:
            if cancel is not None and cancel.is_set():
                raise ProbeCancelled(f"Stopped waiting for a reply to icmp_seq={wire_sequence}")

            remaining = deadline - time.perf_counter()
            if remaining <= 0:
                return ProbeOutcome(timestamp=timestamp, sequence=sequence, status=ProbeStatus.TIMEOUT)

            sock.settimeout(min(remaining, WAIT_SLICE))
            try:
                packet, source = sock.recvfrom(RECEIVE_BUFFER)
            except socket.timeout:
                continue
            except OSError as e:
                raise ProbeError(f"receive failed: {describe_os_error(e)}") from e
            received_at = time.perf_counter()

            message = parse_icmp(packet, self.family, self._has_ip_header)
            if message is None or message.identifier != expected_identifier or message.sequence != wire_sequence:
                LOGGER.debug(f"Discarding unrelated ICMP packet from {source[0]}")
                continue

            if message.quoted:
                return ProbeOutcome(
                    timestamp=timestamp,
                    sequence=sequence,
                    status=ProbeStatus.FAILED,
                    reason=f"{describe_icmp_error(self.family, message)} from {source[0]}",
                )

            # Raw sockets also see our own request when probing the local host
            if message.type != echo_reply_type(self.family):
                continue

            return ProbeOutcome(
                timestamp=timestamp,
                sequence=sequence,
                status=ProbeStatus.SUCCESS,
                latency=timedelta(seconds=max(received_at - sent_at, 0.0)),
                responder=source[0],
            )
