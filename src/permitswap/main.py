"""Main entry point - runs one router swap or one gas-sponsored permit swap."""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from permitswap.chain.web3_client import Web3ChainClient
from permitswap.config import Settings, get_settings
from permitswap.errors import SwapError
from permitswap.models import HandleKind, TaskHandle
from permitswap.relay.gelato import GelatoRelayClient
from permitswap.signing.local import LocalSigner
from permitswap.swap.orchestrator import (
    PermitSwapRequest,
    RouterSwapRequest,
    SwapOrchestrator,
    SwapOutcome,
    SwapState,
)
from permitswap.utils.locks import LockTimeoutError, OwnerTokenLock

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_EXPIRED = 2


def print_submitted(handle: TaskHandle) -> None:
    if handle.kind == HandleKind.RELAY_TASK:
        print(f"Relay task submitted: {handle.id}")
    else:
        print(f"Swap tx sent: {handle.id}")


class Application:
    """Wires settings, signer, chain client and relay into an orchestrator."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.signer = None
        self.client = None
        self.relay = None

    def configure_logging(self) -> None:
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

    def build(self) -> SwapOrchestrator:
        if not self.settings.private_key:
            raise ValueError("PRIVATE_KEY is not set")

        self.signer = LocalSigner(self.settings.private_key)
        self.client = Web3ChainClient(self.settings.rpc_url, self.signer)
        self.relay = GelatoRelayClient(
            base_url=self.settings.relay_base_url,
            api_key=self.settings.relay_api_key,
        )
        logger.info(f"Owner account: {self.signer.address}")
        return SwapOrchestrator(self.settings, self.client, self.signer, relay=self.relay)

    async def run(self, mode: str) -> SwapOutcome:
        orchestrator = self.build()
        token = self.settings.token_address

        async with OwnerTokenLock(self.signer.address, token, operation=f"{mode} swap"):
            if mode == "router":
                request = RouterSwapRequest.from_settings(self.settings)
                return await orchestrator.run_router_swap(request, on_submitted=print_submitted)
            request = PermitSwapRequest.from_settings(self.settings)
            return await orchestrator.run_permit_swap(request, on_submitted=print_submitted)


def report(outcome: SwapOutcome) -> int:
    """Print the outcome and map it to an exit code."""
    if outcome.state == SwapState.CONFIRMED:
        print(f"Swap confirmed in block {outcome.block_number}")
        return EXIT_OK

    if outcome.state == SwapState.EXPIRED:
        print(
            f"Swap outcome unknown: {outcome.error}. "
            f"Check {outcome.tx_hash or 'the owner account'} on-chain before retrying.",
            file=sys.stderr,
        )
        return EXIT_EXPIRED

    kind = outcome.error_kind.value if outcome.error_kind else "Error"
    print(f"{kind}: {outcome.error}", file=sys.stderr)
    return EXIT_FAILED


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="permitswap",
        description="Swap tokens through the universal router or a gas-sponsored permit swap.",
    )
    parser.add_argument(
        "mode",
        nargs="?",
        choices=["router", "permit"],
        default="permit",
        help="router: direct swap paying gas; permit: signed permit relayed without gas",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    settings = get_settings()
    if args.debug:
        settings = settings.model_copy(update={"debug": True})

    app = Application(settings)
    app.configure_logging()
    logger.info(f"Starting permitswap ({args.mode}) on chain {settings.chain_id}")
    logger.debug(f"Settings: {settings.get_safe_dict()}")

    try:
        outcome = asyncio.run(app.run(args.mode))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        return EXIT_FAILED
    except (ValueError, LockTimeoutError, SwapError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    return report(outcome)


if __name__ == "__main__":
    sys.exit(main())
