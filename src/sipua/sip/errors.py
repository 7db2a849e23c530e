"""SIP user agent exception hierarchy."""

from __future__ import annotations


class SipError(Exception):
    """Base class for all sipua errors."""


class TransportError(SipError):
    """Bind, connect, send or socket failure."""


class TransportClosedError(TransportError):
    """Send attempted on a transport that is already closed."""


class ProtocolParseError(SipError, ValueError):
    """Inbound text could not be classified or is missing a required header."""


class AuthChallengeError(SipError):
    """A 401/407 challenge could not be answered."""


class MissingChallengeHeaderError(AuthChallengeError):
    """No WWW-Authenticate / Proxy-Authenticate header in the challenge."""


class MalformedChallengeError(AuthChallengeError):
    """Challenge header lacks a quoted realm or nonce."""


class RequestBuildError(SipError, ValueError):
    """A request could not be built from the supplied fields."""


class UnsupportedMethodError(RequestBuildError):
    """The codec was asked to build a method it does not support."""

    def __init__(self, method: str) -> None:
        super().__init__(f"Unsupported SIP method: {method}")
        self.method = method
