"""Static client configuration and per-run identity."""

from __future__ import annotations

import dataclasses
import os
import socket
from collections.abc import Mapping
from enum import StrEnum

DEFAULT_LOCAL_PORT = 55090


class Mode(StrEnum):
    RECEIVE = "rcv"
    SEND = "send"


class TransportKind(StrEnum):
    UDP = "UDP"
    TCP = "TCP"


def get_local_ip() -> str:
    """Detect the local IP address by opening a UDP socket."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


@dataclasses.dataclass(frozen=True)
class ClientConfig:
    """Server location and timer settings shared by every run."""

    server_host: str = "127.0.0.1"
    server_port: int = 5060
    local_ip: str = "127.0.0.1"
    register_expires: int = 3600
    reregister_period: float = 300.0
    # Lets the initial REGISTER round-trip finish before sending in send mode
    send_delay: float = 3.0
    max_auth_attempts: int = 3

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """Build a config from ``SIP_*`` environment variables.

        Call ``dotenv.load_dotenv()`` first to pick up a ``.env`` file.
        """
        env = os.environ if environ is None else environ
        local_ip = env.get("SIP_LOCAL_IP") or get_local_ip()
        return cls(
            server_host=env.get("SIP_SERVER_HOST", cls.server_host),
            server_port=int(env.get("SIP_SERVER_PORT", cls.server_port)),
            local_ip=local_ip,
            register_expires=int(
                env.get("SIP_REGISTER_EXPIRES", cls.register_expires)
            ),
            reregister_period=float(
                env.get("SIP_REREGISTER_PERIOD", cls.reregister_period)
            ),
            send_delay=float(env.get("SIP_SEND_DELAY", cls.send_delay)),
            max_auth_attempts=int(
                env.get("SIP_MAX_AUTH_ATTEMPTS", cls.max_auth_attempts)
            ),
        )


@dataclasses.dataclass(frozen=True)
class ClientIdentity:
    """Who this process registers as, and what it does once registered."""

    from_user: str
    password: str
    local_port: int = DEFAULT_LOCAL_PORT
    to_user: str = ""
    message_body: str = ""
    mode: Mode = Mode.RECEIVE
    transport: TransportKind = TransportKind.UDP
    send_method: str = "MESSAGE"
