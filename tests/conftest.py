"""Pytest configuration and fixtures."""

import json
from dataclasses import dataclass, field
from typing import Optional

import httpx
import pytest
from eth_abi import encode
from eth_utils import to_checksum_address
from web3.exceptions import ContractLogicError

from permitswap.chain import abi
from permitswap.chain.base import ChainClient, TxReceipt
from permitswap.config import Settings
from permitswap.relay.gelato import GelatoRelayClient
from permitswap.signing.local import LocalSigner

# Well-known development key (hardhat account #0); never holds real funds
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

USDC = to_checksum_address("0x833589fcd6edb6e08f4c7c32d4f71b54bda02913")
USDT = to_checksum_address("0xfde4c96c8593536e31f229ea8f37b2ada2699bb2")
PERMIT2 = to_checksum_address("0x000000000022d473030f116ddee9f6b43ac78ba3")
ROUTER = to_checksum_address("0x6ff5693b99212da76ad316178a184ab56d299b43")
TARGET = to_checksum_address("0xfb990a2edc7811223b737cc25ac68aeccec97d5f")

START_TIME = 1_700_000_000


@dataclass
class FakeToken:
    """ERC-20 / EIP-2612 state held by FakeChain."""
    name: str = "USD Coin"
    version: Optional[str] = "2"
    decimals: int = 6
    balances: dict = field(default_factory=dict)
    allowances: dict = field(default_factory=dict)
    nonces: dict = field(default_factory=dict)


@dataclass
class SentTx:
    to: str
    fn: abi.AbiFunction
    args: tuple
    value: int
    gas: Optional[int]
    tx_hash: str


class FakeChain(ChainClient):
    """In-memory chain that understands the calls the pipeline makes.

    Reads are answered from state; writes are decoded by selector, applied,
    recorded in `sent` and given a receipt (unless `mine` is False).
    """

    def __init__(self, owner: str, permit2: str = PERMIT2, chain: int = 8453):
        self.owner = owner
        self.permit2 = permit2.lower()
        self.chain = chain
        self.timestamp = START_TIME
        self.block = 100
        self.tokens: dict[str, FakeToken] = {}
        self.permit2_allowances: dict[tuple, tuple[int, int, int]] = {}
        self.sent: list[SentTx] = []
        self.receipts: dict[str, TxReceipt] = {}
        self.gas_estimate = 150_000
        self.mine = True
        self.revert_writes = False
        self.approvals_take_effect = True
        self.reads: list[str] = []

    def add_token(self, address: str, **kwargs) -> FakeToken:
        token = FakeToken(**kwargs)
        self.tokens[address.lower()] = token
        return token

    def token(self, address: str) -> FakeToken:
        return self.tokens[address.lower()]

    def set_permit2_allowance(self, owner, token, spender, amount, expiration, nonce=0):
        self.permit2_allowances[(owner.lower(), token.lower(), spender.lower())] = (amount, expiration, nonce)

    @property
    def account(self) -> str:
        return self.owner

    async def chain_id(self) -> int:
        return self.chain

    async def now(self) -> int:
        return self.timestamp

    async def call(self, to: str, data: bytes) -> bytes:
        fn = abi.FUNCTIONS_BY_SELECTOR[data[:4]]
        args = fn.decode_call(data)
        self.reads.append(fn.name)

        if fn is abi.PERMIT2_ALLOWANCE:
            owner, token, spender = args
            key = (owner.lower(), token.lower(), spender.lower())
            return encode(list(fn.outputs), list(self.permit2_allowances.get(key, (0, 0, 0))))

        token = self.token(to)
        if fn is abi.ERC20_DECIMALS:
            value = token.decimals
        elif fn is abi.ERC20_NAME:
            value = token.name
        elif fn is abi.ERC20_VERSION:
            if token.version is None:
                raise ContractLogicError("execution reverted")
            value = token.version
        elif fn is abi.ERC20_BALANCE_OF:
            value = token.balances.get(args[0].lower(), 0)
        elif fn is abi.ERC20_NONCES:
            value = token.nonces.get(args[0].lower(), 0)
        elif fn is abi.ERC20_ALLOWANCE:
            value = token.allowances.get((args[0].lower(), args[1].lower()), 0)
        else:
            raise AssertionError(f"unexpected read {fn.signature}")
        return encode(list(fn.outputs), [value])

    async def estimate_gas(self, to: str, data: bytes, value: int = 0) -> int:
        return self.gas_estimate

    async def send_transaction(self, to: str, data: bytes, value: int = 0, gas: Optional[int] = None) -> str:
        fn = abi.FUNCTIONS_BY_SELECTOR[data[:4]]
        args = fn.decode_call(data)
        tx_hash = "0x" + f"{len(self.sent) + 1:064x}"
        self.sent.append(SentTx(to=to, fn=fn, args=args, value=value, gas=gas, tx_hash=tx_hash))

        if not self.revert_writes and self.approvals_take_effect:
            if fn is abi.ERC20_APPROVE:
                spender, amount = args
                self.token(to).allowances[(self.owner.lower(), spender.lower())] = amount
            elif fn is abi.PERMIT2_APPROVE:
                token, spender, amount, expiration = args
                key = (self.owner.lower(), token.lower(), spender.lower())
                nonce = self.permit2_allowances.get(key, (0, 0, 0))[2]
                self.permit2_allowances[key] = (amount, expiration, nonce)

        if self.mine:
            self.block += 1
            self.receipts[tx_hash] = TxReceipt(
                tx_hash=tx_hash, block_number=self.block, success=not self.revert_writes, gas_used=21_000
            )
        return tx_hash

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        return self.receipts.get(tx_hash)

    def writes(self, fn: abi.AbiFunction) -> list[SentTx]:
        return [tx for tx in self.sent if tx.fn is fn]


class FakeRelay:
    """httpx.MockTransport handler emulating the relay REST API."""

    def __init__(self, quotes=(10**12,), task_states=("ExecSuccess",)):
        self.quotes = list(quotes)
        self.task_states = list(task_states)
        self.submissions: list[dict] = []
        self.status_queries = 0
        self.submit_status_code = 201

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/oracles/"):
            fee = self.quotes.pop(0) if len(self.quotes) > 1 else self.quotes[0]
            return httpx.Response(200, json={"estimatedFee": str(fee)})
        if path == "/relays/v2/call-with-sync-fee":
            if self.submit_status_code >= 400:
                return httpx.Response(self.submit_status_code, json={"message": "rejected"})
            self.submissions.append(json.loads(request.content))
            return httpx.Response(201, json={"taskId": f"0xtask{len(self.submissions)}"})
        if path.startswith("/tasks/status/"):
            self.status_queries += 1
            state = self.task_states.pop(0) if len(self.task_states) > 1 else self.task_states[0]
            task = {"taskId": path.rsplit("/", 1)[-1], "taskState": state}
            if state in ("ExecSuccess", "ExecReverted"):
                task["transactionHash"] = "0x" + "ab" * 32
                task["blockNumber"] = 1234
            return httpx.Response(200, json={"task": task})
        return httpx.Response(404)


@pytest.fixture
def signer() -> LocalSigner:
    """Deterministic local signer."""
    return LocalSigner(TEST_PRIVATE_KEY)


@pytest.fixture
def owner(signer) -> str:
    return signer.address


@pytest.fixture
def chain(owner) -> FakeChain:
    """Fake chain with USDC (permit token, funded) and USDT."""
    fake = FakeChain(owner)
    usdc = fake.add_token(USDC, name="USD Coin", version="2", decimals=6)
    usdc.balances[owner.lower()] = 1_000 * 10**6
    fake.add_token(USDT, name="Tether USD", version="1", decimals=6)
    return fake


@pytest.fixture
def fake_relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def relay_client(fake_relay) -> GelatoRelayClient:
    return GelatoRelayClient(
        base_url="https://relay.test",
        api_key="test-key",
        transport=httpx.MockTransport(fake_relay),
    )


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        private_key=TEST_PRIVATE_KEY,
        relay_base_url="https://relay.test",
        relay_api_key="test-key",
        token_address=USDC,
        token_out_address=USDT,
        target_contract=TARGET,
        router_address=ROUTER,
        permit2_address=PERMIT2,
        swap_amount="1.5",
        status_poll_max_attempts=3,
        status_poll_interval_ms=10,
    )


@pytest.fixture
def no_sleep():
    """Records requested sleeps instead of sleeping."""
    calls: list[float] = []

    async def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep
