"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable, Sequence
from typing import Any

import pytest

from sipua.config import ClientConfig, ClientIdentity, Mode, TransportKind
from sipua.sip.client import SipClient
from sipua.sip.errors import TransportClosedError, TransportError
from sipua.sip.message import InboundMessage, parse_message

SERVER_ADDR = ("192.0.2.10", 5060)


class FakeTransport:
    """Captures send() and close() calls for test assertions."""

    def __init__(
        self,
        kind: TransportKind = TransportKind.UDP,
        inbound: asyncio.Queue[InboundMessage] | None = None,
        *,
        local_ip: str = "10.0.0.1",
        local_port: int = 55090,
    ) -> None:
        self.kind = kind
        self.inbound = inbound
        self.local_addr = (local_ip, local_port)
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.close_calls = 0
        self.closed = False
        self.start_error: Exception | None = None

    async def start(self, server_host: str, server_port: int) -> tuple[str, int]:
        if self.start_error is not None:
            self.closed = True
            raise self.start_error
        return self.local_addr

    def send(
        self,
        data: bytes,
        addr: tuple[str, int],
        on_sent: Callable[[Exception | None], None] | None = None,
    ) -> None:
        error: Exception | None = None
        if self.closed:
            error = TransportClosedError("closed")
        else:
            self.sent.append((bytes(data), addr))
        if on_sent is not None:
            on_sent(error)

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def requests(self, method: str) -> list[bytes]:
        """Sent requests whose request line starts with ``method``."""
        prefix = f"{method} ".encode()
        return [data for data, _addr in self.sent if data.startswith(prefix)]


def extract_branch(data: bytes) -> str | None:
    """Branch parameter of the first Via in raw outbound bytes."""
    via = parse_message(data, SERVER_ADDR).header("Via")
    if via is None:
        return None
    for param in via.split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key == "branch":
            return value
    return None


def make_response(
    request: bytes,
    status_code: int,
    reason: str,
    *,
    extra_headers: Sequence[str] = (),
    call_id: str | None = None,
) -> InboundMessage:
    """Build the server's response to a request the client sent."""
    req = parse_message(request, ("10.0.0.1", 55090))
    lines = [f"SIP/2.0 {status_code} {reason}"]
    lines += req.header_lines("Via")
    lines.append(req.header_lines("From")[0])
    lines.append(req.header_lines("To")[0])
    lines.append(f"Call-ID: {call_id or req.header('Call-ID')}")
    lines.append(req.header_lines("CSeq")[0])
    lines += list(extra_headers)
    lines += ["Content-Length: 0", "", ""]
    return parse_message("\r\n".join(lines).encode(), SERVER_ADDR)


@pytest.fixture
def respond() -> Callable[..., InboundMessage]:
    return make_response


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(
        server_host="sip.example.com",
        server_port=5060,
        local_ip="10.0.0.1",
        register_expires=600,
        reregister_period=60.0,
        send_delay=0.05,
        max_auth_attempts=3,
    )


@pytest.fixture
def make_client(config: ClientConfig) -> Callable[..., tuple[SipClient, FakeTransport]]:
    """Factory for a client wired to a FakeTransport."""

    def _make(
        mode: Mode = Mode.RECEIVE,
        *,
        send_method: str = "MESSAGE",
        start_error: TransportError | None = None,
        **config_overrides: Any,
    ) -> tuple[SipClient, FakeTransport]:
        transports: list[FakeTransport] = []

        def factory(kind, inbound, **kwargs):
            transport = FakeTransport(kind, inbound, **kwargs)
            transport.start_error = start_error
            transports.append(transport)
            return transport

        identity = ClientIdentity(
            from_user="alice",
            password="secret",
            local_port=55090,
            to_user="bob" if mode == Mode.SEND else "",
            message_body="Hello Bob" if mode == Mode.SEND else "",
            mode=mode,
            send_method=send_method,
        )
        cfg = dataclasses.replace(config, **config_overrides)
        client = SipClient(identity, cfg, transport_factory=factory)
        return client, transports[0]

    return _make
