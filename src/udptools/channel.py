"""
Datagram Channel
Thin wrapper around a bound or connected UDP (or raw IP) socket.
Transfer errors come back as values; only setup errors raise.
"""

import logging
import selectors
import socket
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

Address = Tuple

MSG_TRUNC = getattr(socket, "MSG_TRUNC", 0)
MSG_DONTWAIT = getattr(socket, "MSG_DONTWAIT", 0)
HAS_RECVMSG = hasattr(socket.socket, "recvmsg")


class ChannelError(OSError):
    """Socket setup (resolve, bind, connect) failed"""


class Readiness(Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True)
class Datagram:
    """One received datagram and where it came from"""
    data: bytes
    address: Optional[Address] = None
    truncated: bool = False


@dataclass(frozen=True)
class SendResult:
    sent: int = 0
    error: Optional[OSError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ReceiveResult:
    """A datagram, an error, or neither (nothing pending)"""
    datagram: Optional[Datagram] = None
    error: Optional[OSError] = None

    @property
    def would_block(self) -> bool:
        return self.datagram is None and self.error is None


def resolve(host: Optional[str], port: Union[int, str, None], passive: bool = False,
            family: int = socket.AF_UNSPEC, socktype: int = socket.SOCK_DGRAM,
            proto: int = 0) -> tuple:
    """Resolve host/port to the first getaddrinfo() suggestion"""
    if host in ("", "*"):
        host = None
    flags = socket.AI_CANONNAME if host is not None else 0
    if passive:
        flags |= socket.AI_PASSIVE
    try:
        suggestions = socket.getaddrinfo(host, port, family, socktype, proto, flags)
    except socket.gaierror as e:
        raise ChannelError(f"{host or '*'}:{port}: {e}") from e
    if not suggestions:
        raise ChannelError(f"{host or '*'}:{port}: no addresses")
    return suggestions[0]


def protocol_number(name: Union[int, str]) -> int:
    """IP protocol number from a number or a protocol name ('udp', '253', ...)"""
    if isinstance(name, int):
        return name
    try:
        return int(name, 0)
    except ValueError:
        pass
    try:
        return socket.getprotobyname(name)
    except OSError as e:
        raise ChannelError(f'"{name}": not a protocol name') from e


class DatagramChannel:
    """A datagram socket with send, truncation-aware receive and readiness wait"""

    def __init__(self, sock: socket.socket, peer: Optional[Address] = None,
                 connected: bool = False, name: Optional[str] = None):
        self.sock = sock
        self.peer = peer
        self.connected = connected
        self.name = name or self._default_name()
        self._selector: Optional[selectors.BaseSelector] = None

    def _default_name(self) -> str:
        try:
            address = self.sock.getsockname()
            return f"{address[0]}:{address[1]}"
        except (OSError, IndexError, TypeError):
            return f"fd{self.sock.fileno()}"

    # --- construction ---

    @classmethod
    def bind(cls, host: Optional[str], port: Union[int, str], name: Optional[str] = None,
             nonblocking: bool = True) -> "DatagramChannel":
        """Open a listening channel on host:port"""
        family, socktype, proto, canonname, sockaddr = resolve(host, port, passive=True)
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as e:
            raise ChannelError(f"cannot open socket: {e}") from e
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            sock.setblocking(not nonblocking)
        except OSError as e:
            sock.close()
            raise ChannelError(f"cannot bind {host or '*'}:{port}: {e}") from e

        channel = cls(sock, name=name)
        logger.info(f"binding to: {canonname or host or '*'}:{port} ({channel.name})")
        return channel

    @classmethod
    def connect(cls, host: str, port: Union[int, str], source: Optional[str] = None,
                connected: bool = True, name: Optional[str] = None) -> "DatagramChannel":
        """Open a client channel towards host:port, optionally bound to a source address"""
        family, socktype, proto, canonname, sockaddr = resolve(host, port)
        return cls._open(family, socktype, proto, sockaddr, source, connected,
                         name or f"{host}:{port}", canonname)

    @classmethod
    def raw(cls, host: str, protocol: Union[int, str], source: Optional[str] = None,
            name: Optional[str] = None) -> "DatagramChannel":
        """Open a raw IP channel carrying 'protocol' towards host (needs CAP_NET_RAW)"""
        pn = protocol_number(protocol)
        if not pn:
            raise ChannelError(f'"{protocol}": not a protocol name')
        family, socktype, proto, canonname, sockaddr = resolve(
            host, None, socktype=socket.SOCK_RAW, proto=pn)
        return cls._open(family, socktype, proto, sockaddr, source, False,
                         name or f"{host}/{protocol}", canonname)

    @classmethod
    def _open(cls, family, socktype, proto, sockaddr, source, connected, name, canonname):
        try:
            sock = socket.socket(family, socktype, proto)
        except PermissionError as e:
            raise ChannelError(f"cannot open socket (no CAP_NET_RAW?): {e}") from e
        except OSError as e:
            raise ChannelError(f"cannot open socket: {e}") from e

        try:
            if source:
                local = resolve(source, 0, passive=True, family=family,
                                socktype=socktype, proto=proto)
                sock.bind(local[4])
            if connected:
                sock.connect(sockaddr)
        except OSError as e:
            sock.close()
            raise ChannelError(f"cannot {'connect' if connected else 'bind'}: {e}") from e

        logger.info(f"connecting to: {canonname or sockaddr[0]} ({name})")
        return cls(sock, peer=sockaddr, connected=connected, name=name)

    # --- transfer ---

    @property
    def supports_batch(self) -> bool:
        """True if several datagrams can be drained per call without blocking"""
        return HAS_RECVMSG and MSG_DONTWAIT != 0

    def fileno(self) -> int:
        return self.sock.fileno()

    @property
    def local_address(self) -> Address:
        return self.sock.getsockname()

    def send(self, data: bytes, address: Optional[Address] = None) -> SendResult:
        """Send to 'address', or to the connected/pre-resolved peer"""
        try:
            if address is not None:
                sent = self.sock.sendto(data, address)
            elif self.connected:
                sent = self.sock.send(data)
            elif self.peer is not None:
                sent = self.sock.sendto(data, self.peer)
            else:
                raise ValueError(f"{self.name}: no destination for unconnected channel")
        except OSError as e:
            return SendResult(error=e)
        return SendResult(sent=sent)

    def _receive(self, max_len: int, flags: int) -> ReceiveResult:
        try:
            if HAS_RECVMSG:
                data, _ancdata, msg_flags, address = self.sock.recvmsg(max_len, 0, flags)
                truncated = bool(msg_flags & MSG_TRUNC)
            else:
                # one spare octet tells an oversize datagram from an exact fit
                data, address = self.sock.recvfrom(max_len + 1, flags)
                truncated = len(data) > max_len
                data = data[:max_len]
        except BlockingIOError:
            return ReceiveResult()
        except OSError as e:
            return ReceiveResult(error=e)
        return ReceiveResult(datagram=Datagram(data, address or self.peer, truncated))

    def receive(self, max_len: int, nonblocking: bool = False) -> ReceiveResult:
        """Receive one datagram of at most max_len octets; nonblocking never waits"""
        return self._receive(max_len, MSG_DONTWAIT if nonblocking else 0)

    def set_nonblocking(self):
        """Make every receive return 'would block' instead of waiting"""
        self.sock.setblocking(False)

    def receive_batch(self, max_datagrams: int, max_len: int) -> List[ReceiveResult]:
        """
        Drain up to max_datagrams pending datagrams without blocking

        The list holds datagrams, possibly followed by one error; it is
        shorter than max_datagrams when the socket ran dry or failed.
        """
        if not self.supports_batch:
            raise NotImplementedError("batch receive not supported on this platform")

        results = []
        while len(results) < max_datagrams:
            result = self._receive(max_len, MSG_DONTWAIT)
            if result.would_block:
                break
            results.append(result)
            if result.error is not None:
                break
        return results

    def readiness(self, timeout: Optional[float]) -> Readiness:
        """Wait until readable or timeout (None waits forever)"""
        if self._selector is None:
            self._selector = selectors.DefaultSelector()
            self._selector.register(self.sock, selectors.EVENT_READ)

        while True:
            try:
                events = self._selector.select(timeout)
            except InterruptedError:
                continue
            except OSError as e:
                logger.debug(f"{self.name}: readiness wait failed: {e}")
                return Readiness.ERROR
            return Readiness.READY if events else Readiness.TIMEOUT

    # --- teardown ---

    def close(self):
        if self._selector is not None:
            self._selector.close()
            self._selector = None
        self.sock.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"DatagramChannel({self.name!r}, connected={self.connected})"
