"""Command-line parsing for the sipua entrypoint."""

from __future__ import annotations

import argparse
from collections.abc import Sequence

from sipua.config import ClientIdentity, Mode, TransportKind

USAGE_EXAMPLES = """\
examples:
  %(prog)s rcv 55090 alice secret
  %(prog)s send 55091 bob alice Hello there secret
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sipua",
        description="Minimal SIP user agent: register, send MESSAGE/INVITE.",
        epilog=USAGE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--transport",
        choices=[kind.value.lower() for kind in TransportKind],
        default="udp",
        help="signalling transport (default: udp)",
    )
    common.add_argument(
        "-v", "--verbose", action="store_true", help="log raw SIP at DEBUG"
    )

    sub = parser.add_subparsers(dest="mode", required=True)

    rcv = sub.add_parser(Mode.RECEIVE.value, parents=[common], help="stay registered")
    rcv.add_argument("port", type=int)
    rcv.add_argument("from_user")
    rcv.add_argument("password")

    send = sub.add_parser(Mode.SEND.value, parents=[common], help="send one request")
    send.add_argument("port", type=int)
    send.add_argument("from_user")
    send.add_argument("to_user")
    send.add_argument(
        "words",
        nargs="+",
        metavar="WORD",
        help="message body words, then the password",
    )
    send.add_argument(
        "--invite", action="store_true", help="send INVITE/ACK instead of MESSAGE"
    )
    return parser


def parse_args(argv: Sequence[str] | None = None) -> tuple[ClientIdentity, bool]:
    """Parse ``argv`` into a client identity and the verbose flag.

    In send mode the last word is the password and the words before it form
    the message body.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    transport = TransportKind(args.transport.upper())

    if args.mode == Mode.RECEIVE.value:
        identity = ClientIdentity(
            from_user=args.from_user,
            password=args.password,
            local_port=args.port,
            mode=Mode.RECEIVE,
            transport=transport,
        )
        return identity, args.verbose

    if len(args.words) < 2:
        parser.error("send mode requires a message body followed by <password>")
    identity = ClientIdentity(
        from_user=args.from_user,
        password=args.words[-1],
        local_port=args.port,
        to_user=args.to_user,
        message_body=" ".join(args.words[:-1]),
        mode=Mode.SEND,
        transport=transport,
        send_method="INVITE" if args.invite else "MESSAGE",
    )
    return identity, args.verbose
