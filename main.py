"""sipua SIP user agent entrypoint."""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from sipua.cli import parse_args
from sipua.config import ClientConfig, ClientIdentity
from sipua.sip.client import SipClient
from sipua.sip.errors import TransportError

logger = logging.getLogger(__name__)


async def main(identity: ClientIdentity) -> int:
    load_dotenv()
    config = ClientConfig.from_env()
    logger.info(
        "Using SIP server %s:%d, local IP %s",
        config.server_host,
        config.server_port,
        config.local_ip,
    )

    client = SipClient(identity, config)
    try:
        await client.start()
    except TransportError:
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, client.close)
    try:
        await client.wait_closed()
        logger.info("Shutting down...")
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    identity, verbose = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(main(identity)))
