"""
Socket setup and multicast group membership.

Turns a TransportEndpoint (plus an optional IGMPv3 source filter) into a
ready SocketSession: buffers negotiated, bound or connected, and joined to
the group with the requested source filtering. Every OS failure raises
TransportError; nothing is retried.
"""

import logging
import socket
import struct
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from ..core.config import FramingMode, SourceFilter, TransportEndpoint
from ..core.errors import ConfigurationError, TransportError
from ..core.logger import get_report_logger
from ..protocol.framing import Framing, get_framing

logger = logging.getLogger(__name__)

SocketFactory = Callable[..., socket.socket]

# Option numbers for interpreters that do not export them
if sys.platform.startswith('linux'):
    _SOURCE_OPTS = (39, 38)
elif sys.platform == 'win32':
    _SOURCE_OPTS = (15, 17)
else:
    _SOURCE_OPTS = (70, 72)

IP_ADD_SOURCE_MEMBERSHIP = getattr(socket, 'IP_ADD_SOURCE_MEMBERSHIP', _SOURCE_OPTS[0])
IP_BLOCK_SOURCE = getattr(socket, 'IP_BLOCK_SOURCE', _SOURCE_OPTS[1])

WILDCARD = '0.0.0.0'


class JoinPlan(Enum):
    """Which membership operations a receive socket needs."""
    NONE = "none"
    ANY_SOURCE = "any-source"
    ANY_SOURCE_EXCLUDE = "any-source-exclude"
    SOURCE_SPECIFIC = "source-specific"


def plan_group_join(source_filter: Optional[SourceFilter]) -> JoinPlan:
    """Decide how to join a multicast group.

    Rules, in order: no filter or an EXCLUDE filter gives a plain join
    (refined by blocking the excluded sources, if any); INCLUDE with sources
    gives source-specific joins only; INCLUDE without sources is invalid.
    """
    if source_filter is None or not source_filter.is_include:
        if source_filter is not None and source_filter.sources:
            return JoinPlan.ANY_SOURCE_EXCLUDE
        return JoinPlan.ANY_SOURCE

    if source_filter.sources:
        return JoinPlan.SOURCE_SPECIFIC

    raise ConfigurationError(
        "Invalid udp settings: inclusive multicast but no sources given"
    )


def pack_mreq(group: str, interface: str) -> bytes:
    return struct.pack('4s4s', socket.inet_aton(group), socket.inet_aton(interface))


def pack_mreq_source(group: str, source: str, interface: str) -> bytes:
    """Build struct ip_mreq_source, whose field order differs by platform."""
    if sys.platform.startswith('linux'):
        return struct.pack('4s4s4s', socket.inet_aton(group),
                           socket.inet_aton(interface), socket.inet_aton(source))
    return struct.pack('4s4s4s', socket.inet_aton(group),
                       socket.inet_aton(source), socket.inet_aton(interface))


@dataclass
class SocketSession:
    """A configured socket plus what was negotiated while setting it up."""
    sock: socket.socket
    endpoint: TransportEndpoint
    framing: Framing
    requested_buffer: int
    granted_buffer: int
    local_address: Tuple[str, int]
    join_plan: JoinPlan = JoinPlan.NONE
    listen_sock: Optional[socket.socket] = None
    peer_address: Optional[Tuple[str, int]] = None

    @property
    def destination(self) -> Tuple[str, int]:
        return self.endpoint.address, self.endpoint.port

    def send(self, data: bytes) -> int:
        try:
            return self.framing.write(self.sock, data, self.destination)
        except OSError as e:
            raise TransportError('send', e)

    def receive(self) -> Optional[bytes]:
        """Next message, or None when a stream transport reaches end of stream."""
        try:
            return self.framing.read(self.sock)
        except OSError as e:
            raise TransportError('recv', e)

    def close(self) -> None:
        self.sock.close()
        if self.listen_sock is not None:
            self.listen_sock.close()

    def __enter__(self) -> 'SocketSession':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _create_socket(socket_factory: SocketFactory, sock_type: int) -> socket.socket:
    try:
        return socket_factory(socket.AF_INET, sock_type)
    except OSError as e:
        raise TransportError('socket', e)


def _setsockopt(sock: socket.socket, level: int, option: int, value, what: str) -> None:
    try:
        sock.setsockopt(level, option, value)
    except OSError as e:
        raise TransportError(f"setsockopt - {what}", e)


def negotiate_buffer_size(sock: socket.socket, option: int, requested: int, label: str) -> int:
    """Request a socket buffer size and return what the OS granted.

    A requested size of 0 keeps the OS default. Getting less than requested
    is reported as a warning and is not an error.
    """
    report = get_report_logger()

    if requested > 0:
        try:
            sock.setsockopt(socket.SOL_SOCKET, option, requested)
        except OSError as e:
            report.warning(f"WARNING: setsockopt - {label}: {e}")

    try:
        granted = sock.getsockopt(socket.SOL_SOCKET, option)
    except OSError as e:
        raise TransportError(f"getsockopt - {label}", e)

    if granted < requested:
        report.warning(f"WARNING: tried to set {label} to {requested}, only got {granted}")
    else:
        logger.debug(f"{label}: requested {requested}, got {granted}")

    return granted


def default_buffer_size(option: int, socket_factory: SocketFactory = socket.socket) -> int:
    """The system default size of a UDP socket buffer."""
    probe = _create_socket(socket_factory, socket.SOCK_DGRAM)
    try:
        return probe.getsockopt(socket.SOL_SOCKET, option)
    except OSError as e:
        raise TransportError(f"getsockopt - {option}", e)
    finally:
        probe.close()


def _bind_udp(sock: socket.socket, endpoint: TransportEndpoint) -> Tuple[str, int]:
    try:
        sock.bind((endpoint.address, endpoint.port))
    except OSError as e:
        # Some OSes refuse to bind to a multicast group
        logger.debug(f"bind to {endpoint} failed ({e}), binding wildcard address")
        try:
            sock.bind((WILDCARD, endpoint.port))
        except OSError as err:
            raise TransportError('bind', err)
    return sock.getsockname()


def join_group(sock: socket.socket, endpoint: TransportEndpoint,
               source_filter: Optional[SourceFilter], plan: JoinPlan) -> None:
    """Apply a join plan to a bound UDP socket."""
    group = endpoint.address
    interface = endpoint.interface or WILDCARD
    sources = source_filter.sources if source_filter else ()

    if plan in (JoinPlan.ANY_SOURCE, JoinPlan.ANY_SOURCE_EXCLUDE):
        _setsockopt(sock, socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP,
                    pack_mreq(group, interface), 'IP_ADD_MEMBERSHIP')
        logger.info(f"Joined multicast {group} on {interface}")

        if plan == JoinPlan.ANY_SOURCE_EXCLUDE:
            for source in sources:
                _setsockopt(sock, socket.IPPROTO_IP, IP_BLOCK_SOURCE,
                            pack_mreq_source(group, source, interface), 'IP_BLOCK_SOURCE')
            logger.info(f"Excluding sources {', '.join(sources)}")

    elif plan == JoinPlan.SOURCE_SPECIFIC:
        for source in sources:
            _setsockopt(sock, socket.IPPROTO_IP, IP_ADD_SOURCE_MEMBERSHIP,
                        pack_mreq_source(group, source, interface), 'IP_ADD_SOURCE_MEMBERSHIP')
        logger.info(f"Joined multicast {group} on {interface} for sources {', '.join(sources)}")


def open_receiver_session(endpoint: TransportEndpoint,
                          source_filter: Optional[SourceFilter] = None,
                          rcvbuf_size: int = 0,
                          framing_mode: FramingMode = FramingMode.SINGLE_READ,
                          socket_factory: SocketFactory = socket.socket) -> SocketSession:
    """Create the receive side socket for an endpoint.

    The join plan and endpoint rules are checked before any socket exists.
    """
    framing = get_framing(endpoint.kind, framing_mode)

    if endpoint.is_tcp and endpoint.address != WILDCARD:
        raise ConfigurationError("TCP receive requires group address 0.0.0.0")

    plan = JoinPlan.NONE
    if endpoint.is_multicast:
        plan = plan_group_join(source_filter)
    elif source_filter is not None:
        logger.info(f"Source filter {source_filter} ignored for {endpoint.kind.value} transport")

    if endpoint.is_tcp:
        return _open_tcp_receiver(endpoint, rcvbuf_size, framing, socket_factory)

    sock = _create_socket(socket_factory, socket.SOCK_DGRAM)
    try:
        granted = negotiate_buffer_size(sock, socket.SO_RCVBUF, rcvbuf_size, 'SO_RCVBUF')
        _setsockopt(sock, socket.SOL_SOCKET, socket.SO_REUSEADDR, 1, 'SO_REUSEADDR')
        local_address = _bind_udp(sock, endpoint)
        if plan != JoinPlan.NONE:
            join_group(sock, endpoint, source_filter, plan)
    except Exception:
        sock.close()
        raise

    return SocketSession(
        sock=sock,
        endpoint=endpoint,
        framing=framing,
        requested_buffer=rcvbuf_size,
        granted_buffer=granted,
        local_address=local_address,
        join_plan=plan
    )


def _open_tcp_receiver(endpoint: TransportEndpoint, rcvbuf_size: int,
                       framing: Framing, socket_factory: SocketFactory) -> SocketSession:
    listen_sock = _create_socket(socket_factory, socket.SOCK_STREAM)
    try:
        _setsockopt(listen_sock, socket.SOL_SOCKET, socket.SO_REUSEADDR, 1, 'SO_REUSEADDR')
        try:
            listen_sock.bind((endpoint.address, endpoint.port))
        except OSError as e:
            raise TransportError('bind', e)
        try:
            listen_sock.listen(1)
        except OSError as e:
            raise TransportError('listen', e)

        logger.info(f"Waiting for TCP connection on {endpoint}")
        try:
            sock, peer_address = listen_sock.accept()
        except OSError as e:
            raise TransportError('accept', e)
    except Exception:
        listen_sock.close()
        raise

    try:
        granted = negotiate_buffer_size(sock, socket.SO_RCVBUF, rcvbuf_size, 'SO_RCVBUF')
        _setsockopt(sock, socket.SOL_SOCKET, socket.SO_REUSEADDR, 1, 'SO_REUSEADDR')
        local_address = sock.getsockname()
    except Exception:
        sock.close()
        listen_sock.close()
        raise

    logger.info(f"Accepted TCP connection from {peer_address[0]}:{peer_address[1]}")
    return SocketSession(
        sock=sock,
        endpoint=endpoint,
        framing=framing,
        requested_buffer=rcvbuf_size,
        granted_buffer=granted,
        local_address=local_address,
        listen_sock=listen_sock,
        peer_address=peer_address
    )


def open_sender_session(endpoint: TransportEndpoint,
                        sndbuf_size: int = 0,
                        framing_mode: FramingMode = FramingMode.SINGLE_READ,
                        socket_factory: SocketFactory = socket.socket) -> SocketSession:
    """Create the send side socket: TTL and interface for multicast, connect for TCP."""
    framing = get_framing(endpoint.kind, framing_mode)
    sock_type = socket.SOCK_STREAM if endpoint.is_tcp else socket.SOCK_DGRAM
    sock = _create_socket(socket_factory, sock_type)

    try:
        granted = negotiate_buffer_size(sock, socket.SO_SNDBUF, sndbuf_size, 'SO_SNDBUF')

        if endpoint.is_multicast:
            _setsockopt(sock, socket.IPPROTO_IP, socket.IP_MULTICAST_TTL,
                        endpoint.ttl, 'TTL')

        if endpoint.interface:
            _setsockopt(sock, socket.IPPROTO_IP, socket.IP_MULTICAST_IF,
                        socket.inet_aton(endpoint.interface), 'IP_MULTICAST_IF')

        if endpoint.is_tcp:
            try:
                sock.connect((endpoint.address, endpoint.port))
            except OSError as e:
                raise TransportError('connect', e)

        local_address = sock.getsockname()
    except Exception:
        sock.close()
        raise

    return SocketSession(
        sock=sock,
        endpoint=endpoint,
        framing=framing,
        requested_buffer=sndbuf_size,
        granted_buffer=granted,
        local_address=local_address
    )
