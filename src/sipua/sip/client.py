"""SIP user agent client: registration, MESSAGE/INVITE and Digest retries."""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
from collections.abc import Callable

from sipua.config import ClientConfig, ClientIdentity, Mode
from sipua.sip.auth import DigestChallenge, build_authorization, parse_challenge
from sipua.sip.errors import (
    AuthChallengeError,
    ProtocolParseError,
    RequestBuildError,
    TransportError,
)
from sipua.sip.message import (
    InboundMessage,
    RequestSpec,
    build_ok_reply,
    build_request,
    generate_branch,
)
from sipua.sip.transaction import (
    PendingInvite,
    RegState,
    TransactionContext,
    TxnState,
)
from sipua.sip.transport import SipTransport, create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[..., SipTransport]


class SipClient:
    """Registers with one SIP server and sends at most one MESSAGE or INVITE.

    All state lives in per-family ``TransactionContext`` values keyed by
    request method and is only touched from the event loop thread: the
    dispatch task, timer callbacks, and transport completion callbacks.
    """

    def __init__(
        self,
        identity: ClientIdentity,
        config: ClientConfig,
        *,
        transport_factory: TransportFactory = create_transport,
    ) -> None:
        self._identity = identity
        self._config = config
        self._inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._transport = transport_factory(
            identity.transport,
            self._inbound,
            local_ip=config.local_ip,
            local_port=identity.local_port,
        )
        self._families: dict[str, TransactionContext] = {
            "REGISTER": TransactionContext.new("REGISTER"),
        }
        self._reg_state = RegState.UNREGISTERED
        self._pending_invite: PendingInvite | None = None
        self._keepalive: asyncio.TimerHandle | None = None
        self._send_timer: asyncio.TimerHandle | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def transport(self) -> SipTransport:
        return self._transport

    @property
    def registration_state(self) -> RegState:
        return self._reg_state

    @property
    def is_registered(self) -> bool:
        return self._reg_state == RegState.REGISTERED

    @property
    def pending_invite(self) -> PendingInvite | None:
        return self._pending_invite

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def family(self, method: str) -> TransactionContext | None:
        """Current context of a transaction family, if one was started."""
        return self._families.get(method)

    @property
    def _server_addr(self) -> tuple[str, int]:
        return (self._config.server_host, self._config.server_port)

    @property
    def _contact_uri(self) -> str:
        return (
            f"sip:{self._identity.from_user}@{self._config.local_ip}"
            f":{self._identity.local_port}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the transport, send the initial REGISTER, arm the mode timer.

        Raises:
            TransportError: the socket could not be bound or connected.  The
                client is closed before the error propagates.
        """
        loop = asyncio.get_running_loop()
        try:
            await self._transport.start(
                self._config.server_host, self._config.server_port
            )
        except TransportError as exc:
            logger.error("Transport failed to start: %s", exc)
            self.close()
            raise
        logger.info(
            "SipClient started: mode=%s user=%s transport=%s",
            self._identity.mode,
            self._identity.from_user,
            self._identity.transport,
        )
        self._dispatch_task = loop.create_task(self._dispatch_loop())
        self.send_register()
        if self.closed:
            logger.warning("Initial REGISTER failed, client closed")
            return

        if self._identity.mode == Mode.RECEIVE:
            self._schedule_keepalive()
        else:
            self._send_timer = loop.call_later(
                self._config.send_delay, self._send_outgoing
            )

    def close(self) -> None:
        """Stop timers and the dispatch task, then close the transport.

        Safe to call repeatedly and from a signal handler on the loop.
        """
        if self._closed.is_set():
            logger.debug("SipClient already closed")
            return
        logger.info("Closing SipClient")
        self._closed.set()
        for timer in (self._keepalive, self._send_timer):
            if timer is not None:
                timer.cancel()
        self._keepalive = None
        self._send_timer = None
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
        self._transport.close()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _schedule_keepalive(self) -> None:
        loop = asyncio.get_running_loop()
        self._keepalive = loop.call_later(
            self._config.reregister_period, self._keepalive_tick
        )

    def _keepalive_tick(self) -> None:
        if self.closed:
            return
        logger.debug("Re-REGISTER keep-alive")
        self.send_register()
        self._schedule_keepalive()

    def _send_outgoing(self) -> None:
        # The delay timer may outlive close(); never send on a dead client
        self._send_timer = None
        if self.closed or self._transport.closed:
            logger.debug("Client closed before the send delay elapsed")
            return
        if not self.is_registered:
            logger.warning("REGISTER not yet confirmed, sending request anyway")
        if self._identity.send_method.upper() == "INVITE":
            self.send_invite()
        else:
            self.send_message()

    # ------------------------------------------------------------------
    # Outbound requests
    # ------------------------------------------------------------------

    def send_register(self) -> None:
        ctx = self._families["REGISTER"].advance()
        self._send_family(ctx)

    def send_message(self) -> None:
        # Each MESSAGE starts a new family with its own Call-ID
        ctx = TransactionContext.new("MESSAGE").advance()
        logger.info(
            'Sending MESSAGE to %s: "%s"',
            self._identity.to_user,
            self._identity.message_body,
        )
        self._send_family(ctx)

    def send_invite(self) -> None:
        ctx = TransactionContext.new("INVITE").advance()
        logger.info("Sending INVITE to %s", self._identity.to_user)
        self._send_family(ctx)

    def _request_spec(self, ctx: TransactionContext) -> RequestSpec:
        spec = RequestSpec(
            method=ctx.method,
            from_user=self._identity.from_user,
            domain=self._config.server_host,
            local_ip=self._config.local_ip,
            local_port=self._identity.local_port,
            call_id=ctx.call_id,
            branch=ctx.branch,
            from_tag=ctx.from_tag,
            cseq=ctx.cseq,
            transport=self._identity.transport,
        )
        if ctx.method == "REGISTER":
            return dataclasses.replace(
                spec,
                contact_uri=self._contact_uri,
                expires=self._config.register_expires,
            )
        body = self._identity.message_body if ctx.method == "MESSAGE" else ""
        return dataclasses.replace(spec, to_user=self._identity.to_user, body=body)

    def _send_family(
        self, ctx: TransactionContext, challenge: DigestChallenge | None = None
    ) -> None:
        """Record ``ctx`` as the family's current context and transmit it."""
        self._families[ctx.method] = ctx
        if ctx.method == "INVITE":
            self._pending_invite = PendingInvite.from_context(ctx)

        spec = self._request_spec(ctx)
        if challenge is not None:
            spec = dataclasses.replace(
                spec,
                auth_header=build_authorization(
                    challenge,
                    username=self._identity.from_user,
                    password=self._identity.password,
                    method=spec.method,
                    uri=spec.request_uri,
                ),
            )
        try:
            data = build_request(spec)
        except RequestBuildError as exc:
            logger.error("Cannot build %s: %s", ctx.method, exc)
            self._fail(ctx)
            return

        logger.info("Sending %s (cseq=%d)", ctx.method, ctx.cseq)
        self._transport.send(
            data,
            self._server_addr,
            on_sent=functools.partial(self._on_request_sent, ctx.method),
        )

    def _on_request_sent(self, method: str, exc: Exception | None) -> None:
        if exc is None:
            return
        logger.error("Failed to send %s: %s", method, exc)
        self._fail(self._families[method])

    def _send_ack(self) -> None:
        invite = self._pending_invite
        if invite is None:
            logger.warning("2xx for INVITE but no INVITE is pending")
            return
        # RFC 3261 §13.2.2.4: ACK for a 2xx is a new transaction with the
        # INVITE's Call-ID, From tag and CSeq number
        spec = dataclasses.replace(
            self._request_spec(self._families["INVITE"]),
            method="ACK",
            call_id=invite.call_id,
            from_tag=invite.from_tag,
            cseq=invite.cseq,
            branch=generate_branch(),
        )
        logger.info("Sending ACK for INVITE 2xx")
        self._transport.send(build_request(spec), self._server_addr, self._on_ack_sent)

    def _on_ack_sent(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.error("Failed to send ACK: %s", exc)
            self._fail(self._families["INVITE"])
            return
        self._families["INVITE"] = self._families["INVITE"].with_state(
            TxnState.ACK_SENT
        )
        self._pending_invite = None
        if self._identity.mode == Mode.SEND:
            logger.info("INVITE => 200 OK => ACK complete, closing")
            self.close()

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            msg = await self._inbound.get()
            try:
                self.dispatch(msg)
            except Exception:
                logger.exception("Failed to handle message from %s", msg.addr)

    def dispatch(self, msg: InboundMessage) -> None:
        if msg.is_response:
            self.handle_response(msg)
        else:
            self.handle_request(msg)

    def handle_response(self, msg: InboundMessage) -> None:
        """Route a response to its family by CSeq method."""
        method = msg.cseq_method
        logger.debug("Response %d %s for %s", msg.status_code, msg.reason, method)
        ctx = self._families.get(method)
        if ctx is None:
            logger.warning(
                "Response %d for unknown CSeq method %r", msg.status_code, method
            )
            return
        if msg.header("Call-ID") != ctx.call_id:
            logger.warning(
                "Ignoring stale %d for %s (Call-ID %s)",
                msg.status_code,
                method,
                msg.header("Call-ID"),
            )
            return

        if msg.status_code < 200:
            logger.info("%s => %d %s", method, msg.status_code, msg.reason)
        elif msg.status_code in (401, 407):
            self._handle_challenge(ctx, msg)
        elif msg.status_code < 300:
            self._handle_success(ctx, msg)
        else:
            logger.warning("%s failed: %d %s", method, msg.status_code, msg.reason)
            self._fail(ctx)

    def _handle_success(self, ctx: TransactionContext, msg: InboundMessage) -> None:
        self._families[ctx.method] = ctx.with_state(TxnState.COMPLETED)
        if ctx.method == "REGISTER":
            logger.info("REGISTER => %d => registered", msg.status_code)
            self._reg_state = RegState.REGISTERED
        elif ctx.method == "MESSAGE":
            logger.info("MESSAGE => %d => accepted", msg.status_code)
            if self._identity.mode == Mode.SEND:
                self.close()
        elif ctx.method == "INVITE":
            logger.info("INVITE => %d => sending ACK", msg.status_code)
            self._send_ack()

    def _handle_challenge(self, ctx: TransactionContext, msg: InboundMessage) -> None:
        """Answer a 401/407 by resending the family's request with credentials.

        At most ``max_auth_attempts`` consecutive challenges are answered per
        family; the next one fails the transaction.
        """
        logger.warning(
            "%s => %d, attempting Digest authentication", ctx.method, msg.status_code
        )
        if not ctx.can_retry(self._config.max_auth_attempts):
            logger.error(
                "%s still challenged after %d attempts, giving up",
                ctx.method,
                ctx.challenges,
            )
            self._fail(ctx)
            return
        ctx = ctx.challenged()
        self._families[ctx.method] = ctx
        try:
            challenge = parse_challenge(msg)
        except AuthChallengeError as exc:
            logger.error("Cannot authenticate %s: %s", ctx.method, exc)
            return
        self._send_family(ctx.advance(retry=True), challenge)

    def _fail(self, ctx: TransactionContext) -> None:
        """Mark the family failed; a send-mode run ends on any failure."""
        self._families[ctx.method] = ctx.with_state(TxnState.FAILED)
        if ctx.method == "REGISTER" and self._reg_state == RegState.REGISTERED:
            logger.warning("Registration lost")
            self._reg_state = RegState.REGISTRATION_LOST
        if self._identity.mode == Mode.SEND:
            logger.warning("Closing after %s failure in send mode", ctx.method)
            self.close()

    def handle_request(self, msg: InboundMessage) -> None:
        """Answer any inbound request with a stateless 200 OK."""
        logger.info("Inbound %s from %s:%d", msg.method, msg.addr[0], msg.addr[1])
        try:
            reply = build_ok_reply(msg)
        except ProtocolParseError as exc:
            logger.debug("Dropping inbound %s: %s", msg.method, exc)
            return
        self._transport.send(
            reply, msg.addr, functools.partial(self._on_reply_sent, msg.method)
        )

    @staticmethod
    def _on_reply_sent(method: str, exc: Exception | None) -> None:
        if exc is None:
            logger.info("Sent 200 OK for inbound %s", method)
