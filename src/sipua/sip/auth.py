"""Digest authentication (RFC 2617 MD5, no qop) for 401/407 challenges."""

from __future__ import annotations

import dataclasses
import hashlib
import re

from sipua.sip.errors import MalformedChallengeError, MissingChallengeHeaderError
from sipua.sip.message import InboundMessage

_REALM_RE = re.compile(r'realm="([^"]+)"', re.IGNORECASE)
_NONCE_RE = re.compile(r'nonce="([^"]+)"', re.IGNORECASE)


@dataclasses.dataclass(frozen=True)
class DigestChallenge:
    realm: str
    nonce: str
    proxy: bool = False

    @property
    def authorization_name(self) -> str:
        # RFC 3261 §22.3: proxies challenge with 407 / Proxy-Authenticate
        return "Proxy-Authorization" if self.proxy else "Authorization"


def _md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def parse_challenge(response: InboundMessage) -> DigestChallenge:
    """Extract realm and nonce from a 401 or 407 response.

    Raises:
        MissingChallengeHeaderError: no challenge header for the status code.
        MalformedChallengeError: the header lacks a quoted realm or nonce.
    """
    proxy = response.status_code == 407
    header_name = "Proxy-Authenticate" if proxy else "WWW-Authenticate"
    value = response.header(header_name)
    if value is None:
        raise MissingChallengeHeaderError(
            f"{response.status_code} response has no {header_name} header"
        )
    realm = _REALM_RE.search(value)
    nonce = _NONCE_RE.search(value)
    if realm is None or nonce is None:
        raise MalformedChallengeError(f"Cannot parse realm/nonce from: {value}")
    return DigestChallenge(realm=realm.group(1), nonce=nonce.group(1), proxy=proxy)


def compute_response(
    *,
    username: str,
    realm: str,
    password: str,
    nonce: str,
    method: str,
    uri: str,
) -> str:
    """MD5(MD5(user:realm:password):nonce:MD5(METHOD:uri))."""
    ha1 = _md5_hex(f"{username}:{realm}:{password}")
    ha2 = _md5_hex(f"{method.upper()}:{uri}")
    return _md5_hex(f"{ha1}:{nonce}:{ha2}")


def build_authorization(
    challenge: DigestChallenge,
    *,
    username: str,
    password: str,
    method: str,
    uri: str,
) -> str:
    """Render a complete ``Authorization`` or ``Proxy-Authorization`` line."""
    response = compute_response(
        username=username,
        realm=challenge.realm,
        password=password,
        nonce=challenge.nonce,
        method=method,
        uri=uri,
    )
    return (
        f"{challenge.authorization_name}: Digest "
        f'username="{username}", realm="{challenge.realm}", '
        f'nonce="{challenge.nonce}", uri="{uri}", response="{response}"'
    )
