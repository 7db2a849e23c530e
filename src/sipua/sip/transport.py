"""SIP over UDP datagrams or a single TCP connection.

Transports know nothing about transactions: they frame inbound bytes into
messages, parse the start line, and put each ``InboundMessage`` on the
client's inbound queue.  ``send`` never raises for socket problems; the
outcome is reported to the optional ``on_sent`` callback instead.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Callable

from sipua.config import TransportKind
from sipua.sip.errors import ProtocolParseError, TransportClosedError, TransportError
from sipua.sip.message import InboundMessage, parse_message

logger = logging.getLogger(__name__)

SentCallback = Callable[[Exception | None], None]

_HEADER_END = b"\r\n\r\n"


def _content_length(header_block: bytes) -> int:
    """Content-Length from a header block; 0 when absent or unreadable."""
    for line in header_block.split(b"\r\n")[1:]:
        name, sep, value = line.partition(b":")
        if not sep:
            continue
        # RFC 3261 §7.3.3: "l" is the compact form of Content-Length
        if name.strip().lower() in (b"content-length", b"l"):
            try:
                return max(0, int(value.strip()))
            except ValueError:
                logger.warning("Bad Content-Length %r, assuming 0", value)
                return 0
    return 0


class StreamFramer:
    """Splits a TCP byte stream into complete SIP messages.

    RFC 3261 §18.3: over stream transports Content-Length MUST be used to
    find the end of each message.  One ``feed`` may yield several messages
    (pipelining) or none (message still partial).
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Bytes buffered towards an incomplete message."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        messages: list[bytes] = []
        while True:
            # RFC 5626 §4.4.1: CRLF keepalives may appear between messages
            while self._buffer.startswith(b"\r\n"):
                del self._buffer[:2]
            header_end = self._buffer.find(_HEADER_END)
            if header_end == -1:
                break
            body_start = header_end + len(_HEADER_END)
            total = body_start + _content_length(bytes(self._buffer[:header_end]))
            if len(self._buffer) < total:
                break
            messages.append(bytes(self._buffer[:total]))
            del self._buffer[:total]
        return messages


class SipTransport(abc.ABC):
    """Shared send/close bookkeeping for the UDP and TCP transports."""

    kind: TransportKind

    def __init__(
        self,
        inbound: asyncio.Queue[InboundMessage],
        *,
        local_ip: str,
        local_port: int,
    ) -> None:
        self._inbound = inbound
        self._local_ip = local_ip
        self._local_port = local_port
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abc.abstractmethod
    async def start(self, server_host: str, server_port: int) -> tuple[str, int]:
        raise NotImplementedError

    def send(
        self,
        data: bytes,
        addr: tuple[str, int],
        on_sent: SentCallback | None = None,
    ) -> None:
        if self._closed:
            logger.error("Cannot send: %s transport is closed", self.kind)
            _notify(on_sent, TransportClosedError(f"{self.kind} transport is closed"))
            return
        logger.debug(
            "=== OUTBOUND SIP (%s) to %s ===\n%s",
            self.kind,
            addr,
            data.decode("utf-8", errors="replace"),
        )
        try:
            self._write(data, addr)
        except (OSError, RuntimeError) as exc:
            logger.error("%s send error: %s", self.kind, exc)
            _notify(on_sent, TransportError(str(exc)))
            return
        _notify(on_sent, None)

    def close(self) -> None:
        if self._closed:
            logger.debug("%s transport already closed", self.kind)
            return
        logger.warning("Closing %s transport", self.kind)
        self._closed = True
        self._close_socket()

    @abc.abstractmethod
    def _write(self, data: bytes, addr: tuple[str, int]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _close_socket(self) -> None:
        raise NotImplementedError

    def _deliver(self, data: bytes, addr: tuple[str, int]) -> None:
        """Parse one framed message and queue it for the client."""
        logger.debug(
            "=== INBOUND SIP (%s) from %s ===\n%s",
            self.kind,
            addr,
            data.decode("utf-8", errors="replace"),
        )
        try:
            msg = parse_message(data, addr)
        except ProtocolParseError as exc:
            logger.debug("Dropping unparseable message from %s: %s", addr, exc)
            return
        self._inbound.put_nowait(msg)


def _notify(on_sent: SentCallback | None, exc: Exception | None) -> None:
    if on_sent is not None:
        on_sent(exc)


class UdpTransport(SipTransport, asyncio.DatagramProtocol):
    """One bound datagram endpoint; each datagram is one SIP message."""

    kind = TransportKind.UDP

    def __init__(
        self,
        inbound: asyncio.Queue[InboundMessage],
        *,
        local_ip: str,
        local_port: int,
    ) -> None:
        super().__init__(inbound, local_ip=local_ip, local_port=local_port)
        self._transport: asyncio.DatagramTransport | None = None

    async def start(self, server_host: str, server_port: int) -> tuple[str, int]:
        loop = asyncio.get_running_loop()
        try:
            await loop.create_datagram_endpoint(
                lambda: self, local_addr=(self._local_ip, self._local_port)
            )
        except OSError as exc:
            self._closed = True
            raise TransportError(
                f"Cannot bind UDP {self._local_ip}:{self._local_port}: {exc}"
            ) from exc
        assert self._transport is not None
        host, port = self._transport.get_extra_info("sockname")[:2]
        logger.info("UDP transport bound to %s:%d", host, port)
        return host, port

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("UDP socket lost: %s", exc)
        self._closed = True

    def error_received(self, exc: Exception) -> None:
        logger.error("UDP socket error: %s", exc)
        self.close()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        # CRLF keepalive (RFC 5626 §4.4.1) carries no message
        if not data.strip(b"\r\n "):
            logger.debug("Keepalive CRLF from %s", addr)
            return
        self._deliver(data, (addr[0], addr[1]))

    def _write(self, data: bytes, addr: tuple[str, int]) -> None:
        assert self._transport is not None
        self._transport.sendto(data, addr)

    def _close_socket(self) -> None:
        if self._transport is not None:
            self._transport.close()


class TcpTransport(SipTransport, asyncio.Protocol):
    """One outbound connection to the SIP server.

    Every send goes down that connection regardless of the destination
    passed in; this client only ever talks to its server.
    """

    kind = TransportKind.TCP

    def __init__(
        self,
        inbound: asyncio.Queue[InboundMessage],
        *,
        local_ip: str,
        local_port: int,
    ) -> None:
        super().__init__(inbound, local_ip=local_ip, local_port=local_port)
        self._transport: asyncio.Transport | None = None
        self._framer = StreamFramer()
        self._peer: tuple[str, int] = ("", 0)

    async def start(self, server_host: str, server_port: int) -> tuple[str, int]:
        loop = asyncio.get_running_loop()
        try:
            await loop.create_connection(lambda: self, server_host, server_port)
        except OSError as exc:
            self._closed = True
            raise TransportError(
                f"Cannot connect TCP to {server_host}:{server_port}: {exc}"
            ) from exc
        assert self._transport is not None
        host, port = self._transport.get_extra_info("sockname")[:2]
        logger.info(
            "TCP transport connected to %s:%d from %s:%d",
            server_host,
            server_port,
            host,
            port,
        )
        return host, port

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        peer = transport.get_extra_info("peername")
        if isinstance(peer, tuple) and len(peer) >= 2:
            self._peer = (peer[0], peer[1])

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.error("TCP connection error: %s", exc)
        elif not self._closed:
            logger.warning("TCP connection closed by peer")
        self._closed = True
        if self._framer.pending:
            logger.debug("Discarding %d unframed bytes", self._framer.pending)

    def data_received(self, data: bytes) -> None:
        for message in self._framer.feed(data):
            self._deliver(message, self._peer)

    def _write(self, data: bytes, addr: tuple[str, int]) -> None:
        assert self._transport is not None
        if self._transport.is_closing():
            raise ConnectionResetError("TCP connection is closing")
        self._transport.write(data)

    def _close_socket(self) -> None:
        # Transport.close() flushes buffered writes before closing
        if self._transport is not None:
            self._transport.close()


def create_transport(
    kind: TransportKind,
    inbound: asyncio.Queue[InboundMessage],
    *,
    local_ip: str,
    local_port: int,
) -> SipTransport:
    cls = TcpTransport if kind == TransportKind.TCP else UdpTransport
    return cls(inbound, local_ip=local_ip, local_port=local_port)
