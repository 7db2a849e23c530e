"""Per-family client transaction state.

A transaction family is the set of requests sharing one Call-ID and purpose:
the registration, the outgoing MESSAGE, or the outgoing INVITE.  Each family
is a frozen ``TransactionContext``; every transition returns a new context so
the client owns exactly one current value per family.

Request lifecycle:
    Idle → RequestSent → (AuthChallenged → RequestSent)* → Completed | Failed
INVITE additionally moves Completed → AckSent once the ACK is written.
"""

from __future__ import annotations

import dataclasses
from enum import StrEnum

from sipua.sip.message import generate_branch, generate_call_id, generate_tag


class TxnState(StrEnum):
    IDLE = "idle"
    REQUEST_SENT = "request_sent"
    AUTH_CHALLENGED = "auth_challenged"  # 401/407 received, retry pending
    COMPLETED = "completed"  # 2xx received
    FAILED = "failed"  # final non-2xx, or challenge budget exhausted
    ACK_SENT = "ack_sent"  # INVITE only


class RegState(StrEnum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    # Final failure on a REGISTER refresh after having been registered
    REGISTRATION_LOST = "registration_lost"


_CALL_ID_PREFIXES = {"REGISTER": "reg", "MESSAGE": "msg", "INVITE": "invite"}


@dataclasses.dataclass(frozen=True)
class TransactionContext:
    method: str
    call_id: str
    from_tag: str
    cseq: int = 0
    branch: str = ""
    state: TxnState = TxnState.IDLE
    challenges: int = 0

    @classmethod
    def new(cls, method: str) -> TransactionContext:
        """Fresh family with its own Call-ID and From tag."""
        prefix = _CALL_ID_PREFIXES.get(method, method.lower())
        return cls(
            method=method, call_id=generate_call_id(prefix), from_tag=generate_tag()
        )

    def advance(self, *, retry: bool = False) -> TransactionContext:
        """Context for the next transmitted request in this family.

        CSeq strictly increases and the Via branch is regenerated (RFC 3261
        §8.1.1.7).  A fresh (non-retry) send resets the challenge counter.
        """
        return dataclasses.replace(
            self,
            cseq=self.cseq + 1,
            branch=generate_branch(),
            state=TxnState.REQUEST_SENT,
            challenges=self.challenges if retry else 0,
        )

    def challenged(self) -> TransactionContext:
        return dataclasses.replace(
            self, state=TxnState.AUTH_CHALLENGED, challenges=self.challenges + 1
        )

    def with_state(self, state: TxnState) -> TransactionContext:
        return dataclasses.replace(self, state=state)

    def can_retry(self, max_attempts: int) -> bool:
        """Whether another challenge may still be answered automatically."""
        return self.challenges < max_attempts


@dataclasses.dataclass(frozen=True)
class PendingInvite:
    """INVITE values the ACK for its 2xx must reuse (RFC 3261 §13.2.2.4)."""

    call_id: str
    from_tag: str
    cseq: int
    branch: str

    @classmethod
    def from_context(cls, ctx: TransactionContext) -> PendingInvite:
        return cls(
            call_id=ctx.call_id, from_tag=ctx.from_tag, cseq=ctx.cseq, branch=ctx.branch
        )
