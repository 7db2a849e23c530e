"""SIP request builder, inbound message parser and 200 OK reply builder."""

from __future__ import annotations

import dataclasses
import random
import string
import time

from sipua.config import TransportKind
from sipua.sip.errors import (
    ProtocolParseError,
    RequestBuildError,
    UnsupportedMethodError,
)

SUPPORTED_METHODS = ("REGISTER", "MESSAGE", "INVITE", "ACK")
USER_AGENT = "sipua"
SERVER_NAME = "sipua"

# RFC 3261 §7.3.3: compact header forms; implementations MUST accept
# both long and short forms of each header name (§20 defines the mappings)
_COMPACT_HEADERS = {
    "v": "Via",
    "f": "From",
    "t": "To",
    "i": "Call-ID",
    "m": "Contact",
    "l": "Content-Length",
    "c": "Content-Type",
}

# Headers mirrored from a request into its 200 OK (RFC 3261 §8.2.6.2)
_MIRRORED_HEADERS = ("Via", "From", "To", "Call-ID", "CSeq")


@dataclasses.dataclass(frozen=True)
class RequestSpec:
    """Everything needed to render one outbound request."""

    method: str
    from_user: str
    domain: str
    local_ip: str
    local_port: int
    call_id: str
    branch: str
    from_tag: str
    cseq: int
    to_user: str = ""
    body: str = ""
    contact_uri: str = ""
    expires: int | None = None
    content_type: str = "text/plain"
    auth_header: str | None = None
    transport: TransportKind = TransportKind.UDP

    @property
    def request_uri(self) -> str:
        if self.method.upper() == "REGISTER":
            return f"sip:{self.domain}"
        return f"sip:{self.to_user}@{self.domain}"


def build_request(spec: RequestSpec) -> bytes:
    """Render a REGISTER, MESSAGE, INVITE or ACK request.

    The output depends only on ``spec``: tags, branches and sequence
    numbers are the caller's responsibility.

    Raises:
        UnsupportedMethodError: ``spec.method`` is not one of
            ``SUPPORTED_METHODS``.
        RequestBuildError: a field required by the method is missing.
    """
    method = spec.method.upper()
    if method not in SUPPORTED_METHODS:
        raise UnsupportedMethodError(spec.method)
    if method != "REGISTER" and not spec.to_user:
        raise RequestBuildError(f"{method} requires a destination user")
    if method == "REGISTER" and (not spec.contact_uri or spec.expires is None):
        raise RequestBuildError("REGISTER requires a contact URI and expiry")

    body = "" if method == "ACK" else spec.body
    content_type = "application/sdp" if method == "INVITE" else spec.content_type

    # RFC 3261 §7.1: Request-Line = Method SP Request-URI SP SIP-Version CRLF
    lines = [f"{method} {spec.request_uri} SIP/2.0"]
    # RFC 3581 §3: empty rport asks the server to answer the source port
    lines.append(
        f"Via: SIP/2.0/{spec.transport} {spec.local_ip}:{spec.local_port}"
        f";branch={spec.branch};rport"
    )
    # RFC 3261 §8.1.1.6: Max-Forwards SHOULD start at 70
    lines.append("Max-Forwards: 70")
    if method == "REGISTER":
        # RFC 3261 §10.2: To names the address-of-record being registered
        lines.append(f"To: <sip:{spec.from_user}@{spec.domain}>")
    else:
        lines.append(f"To: <sip:{spec.to_user}@{spec.domain}>")
    lines.append(f"From: <sip:{spec.from_user}@{spec.domain}>;tag={spec.from_tag}")
    lines.append(f"Call-ID: {spec.call_id}")
    lines.append(f"CSeq: {spec.cseq} {method}")
    if spec.auth_header:
        lines.append(spec.auth_header)

    if method == "REGISTER":
        lines.append(f"Contact: <{spec.contact_uri}>")
        lines.append(f"Expires: {spec.expires}")
        lines.append(f"User-Agent: {USER_AGENT}")
    elif method == "MESSAGE":
        lines.append(f"Content-Type: {content_type}")
    elif method == "INVITE":
        contact = f"sip:{spec.from_user}@{spec.local_ip}:{spec.local_port}"
        lines.append(f"Contact: <{contact}>")
        lines.append(f"Content-Type: {content_type}")

    body_bytes = body.encode("utf-8")
    # RFC 3261 §7.4.2: Content-Length is the body size in bytes
    lines.append(f"Content-Length: {len(body_bytes)}")
    # RFC 3261 §7: the empty line separating headers from body MUST be
    # present even if the body is empty
    lines.append("")
    return ("\r\n".join(lines) + "\r\n").encode("utf-8") + body_bytes


# ---------------------------------------------------------------------------
# Inbound messages
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class FirstLine:
    is_response: bool
    status_code: int = 0
    reason: str = ""
    method: str = ""


def parse_first_line(line: str) -> FirstLine:
    """Classify a start line as a response status line or a request line.

    Request methods are upper-cased but not validated.
    """
    # RFC 3261 §7.2: Status-Line = SIP-Version SP Status-Code SP Reason-Phrase
    if line.startswith("SIP/2.0 "):
        parts = line.split()
        try:
            status_code = int(parts[1])
        except (IndexError, ValueError):
            raise ProtocolParseError(f"Bad status line: {line!r}") from None
        return FirstLine(
            is_response=True, status_code=status_code, reason=" ".join(parts[2:])
        )
    parts = line.split()
    if not parts:
        raise ProtocolParseError("Empty start line")
    return FirstLine(is_response=False, method=parts[0].upper())


@dataclasses.dataclass(frozen=True)
class InboundMessage:
    """Parsed view over one framed inbound SIP message."""

    is_response: bool
    lines: tuple[str, ...]
    addr: tuple[str, int]
    status_code: int = 0
    reason: str = ""
    method: str = ""
    body: str = ""

    def header_lines(self, name: str) -> list[str]:
        """All raw lines for header ``name`` (compact forms included)."""
        lower = name.lower()
        found = []
        for line in self.lines[1:]:
            key, sep, _ = line.partition(":")
            if not sep:
                continue
            key = key.strip()
            key = _COMPACT_HEADERS.get(key, key)
            if key.lower() == lower:
                found.append(line)
        return found

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup (returns first match).

        RFC 3261 §7.3.1: header field names are always case-insensitive.
        """
        found = self.header_lines(name)
        if not found:
            return None
        return found[0].partition(":")[2].strip()

    @property
    def cseq_method(self) -> str:
        """Method token of the CSeq header, upper-cased ("" if absent)."""
        cseq = self.header("CSeq") or ""
        parts = cseq.split()
        return parts[1].upper() if len(parts) > 1 else ""


def parse_message(data: bytes, addr: tuple[str, int]) -> InboundMessage:
    """Parse one complete SIP message received from ``addr``.

    ``lines`` holds the start line and headers only; the body is kept apart
    so header lookups never see it.
    """
    # RFC 3261 §7: SIP is UTF-8 text; messages use CRLF line endings
    text = data.decode("utf-8", errors="replace")
    # RFC 3261 §7: an empty line separates the headers from the body
    head, _, body = text.lstrip("\r\n").partition("\r\n\r\n")
    lines = tuple(line for line in head.split("\r\n") if line)
    if not lines:
        raise ProtocolParseError("Empty message")
    first = parse_first_line(lines[0])
    return InboundMessage(
        is_response=first.is_response,
        lines=lines,
        addr=addr,
        status_code=first.status_code,
        reason=first.reason,
        method=first.method,
        body=body,
    )


def build_ok_reply(request: InboundMessage) -> bytes:
    """Build a stateless 200 OK mirroring the request's dialog headers.

    Raises:
        ProtocolParseError: the request lacks one of the mirrored headers.
    """
    lines = ["SIP/2.0 200 OK"]
    for name in _MIRRORED_HEADERS:
        found = request.header_lines(name)
        if not found:
            raise ProtocolParseError(f"{request.method} has no {name} header")
        # RFC 3261 §8.2.6.2: Via values in the response MUST equal those
        # in the request and MUST maintain the same ordering
        lines.extend(found if name == "Via" else found[:1])
    lines.append(f"Server: {SERVER_NAME}")
    lines.append("Content-Length: 0")
    lines.append("")
    return ("\r\n".join(lines) + "\r\n").encode("utf-8")


# ---------------------------------------------------------------------------
# SIP header/parameter utilities
# ---------------------------------------------------------------------------

_TAG_CHARS = string.ascii_lowercase + string.digits


def generate_tag() -> str:
    """Generate a random SIP tag value.

    RFC 3261 §19.3: tags MUST be globally unique and cryptographically random
    with at least 32 bits of randomness.
    """
    return "".join(random.choices(_TAG_CHARS, k=8))


def generate_branch() -> str:
    """Generate a random Via branch parameter.

    RFC 3261 §8.1.1.7: the branch parameter MUST be unique across space and
    time for all requests.  It MUST begin with the magic cookie "z9hG4bK" so
    receivers can identify RFC 3261-compliant transaction IDs (§17.1.3).
    """
    return "z9hG4bK" + "".join(random.choices(_TAG_CHARS, k=12))


def generate_call_id(prefix: str) -> str:
    """Generate a Call-ID such as ``reg-1700000000000-k3j9x2ab``."""
    return f"{prefix}-{int(time.time() * 1000)}-{generate_tag()}"

