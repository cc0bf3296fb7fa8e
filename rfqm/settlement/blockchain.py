from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_bytes, to_checksum_address
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound
from web3.providers import AsyncHTTPProvider

from rfqm.common import log_event

from .gas import submission_gas_estimate
from .types import GasFees, TransactionReceipt

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]

EXCHANGE_PROXY_ABI = [
    {
        "inputs": [
            {"name": "maker", "type": "address"},
            {"name": "signer", "type": "address"},
        ],
        "name": "isValidOrderSigner",
        "outputs": [{"name": "isAllowed", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def hd_path_for_index(index: int) -> str:
    if index < 0:
        raise ValueError(f"invalid worker index: {index}")
    return f"m/44'/60'/0'/0/{index}"


def load_worker_account(*, private_key: str, mnemonic: str, worker_index: int) -> LocalAccount:
    if private_key:
        return Account.from_key(private_key)
    if mnemonic:
        Account.enable_unaudited_hdwallet_features()
        return Account.from_mnemonic(mnemonic, account_path=hd_path_for_index(worker_index))
    raise RuntimeError("WORKER_PRIVATE_KEY or WORKER_MNEMONIC is required.")


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return "0x" + bytes(value).hex()


@dataclass(slots=True, frozen=True)
class SignedTransaction:
    raw_transaction: str
    transaction_hash: str


class RfqBlockchainClient:
    """EVM access for settlement: simulation, signing, broadcast and receipts."""

    def __init__(
        self,
        *,
        rpc_url: str,
        chain_id: int,
        exchange_proxy_address: str,
        logger: logging.Logger,
        account: LocalAccount | None = None,
        request_timeout_seconds: float = 10.0,
        web3: AsyncWeb3 | None = None,
    ) -> None:
        self._chain_id = chain_id
        self._exchange_proxy_address = to_checksum_address(exchange_proxy_address)
        self._logger = logger
        self._account = account
        self._w3 = web3 or AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout_seconds})
        )
        self._exchange_proxy = self._w3.eth.contract(
            address=self._exchange_proxy_address,
            abi=EXCHANGE_PROXY_ABI,
        )

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def exchange_proxy_address(self) -> str:
        return self._exchange_proxy_address

    @property
    def worker_address(self) -> str:
        if self._account is None:
            raise RuntimeError("Blockchain client has no worker account.")
        return self._account.address

    async def connect(self) -> None:
        remote_chain_id = int(await self._w3.eth.chain_id)
        if remote_chain_id != self._chain_id:
            raise RuntimeError(f"RPC chain id {remote_chain_id} does not match configured chain id {self._chain_id}")
        log_event(
            self._logger,
            level="info",
            event="rpc_connected",
            message="Connected to EVM RPC",
            chain_id=self._chain_id,
        )

    async def close(self) -> None:
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    async def healthcheck(self) -> None:
        await self._w3.eth.block_number

    def _erc20(self, token: str) -> Any:
        return self._w3.eth.contract(address=to_checksum_address(token), abi=ERC20_ABI)

    def _call_request(self, calldata: str, from_address: str) -> dict[str, Any]:
        return {
            "to": self._exchange_proxy_address,
            "from": to_checksum_address(from_address),
            "data": calldata,
        }

    async def estimate_gas(self, calldata: str, from_address: str) -> int:
        raw_estimate = await self._w3.eth.estimate_gas(self._call_request(calldata, from_address))
        return submission_gas_estimate(int(raw_estimate))

    async def simulate_call(self, calldata: str, from_address: str) -> str:
        result = await self._w3.eth.call(self._call_request(calldata, from_address))
        return _to_hex(result)

    async def get_nonce(self, address: str, block_identifier: str = "pending") -> int:
        return int(await self._w3.eth.get_transaction_count(to_checksum_address(address), block_identifier))

    async def get_gas_price_estimate(self) -> int:
        return int(await self._w3.eth.gas_price)

    def build_transaction(
        self,
        *,
        calldata: str,
        gas_fees: GasFees,
        nonce: int,
        gas_estimate: int,
    ) -> dict[str, Any]:
        return {
            "type": 2,
            "chainId": self._chain_id,
            "to": self._exchange_proxy_address,
            "data": calldata,
            "value": 0,
            "nonce": nonce,
            "gas": gas_estimate,
            "maxFeePerGas": gas_fees.max_fee_per_gas,
            "maxPriorityFeePerGas": gas_fees.max_priority_fee_per_gas,
        }

    async def sign_transaction(self, transaction: dict[str, Any]) -> SignedTransaction:
        if self._account is None:
            raise RuntimeError("Blockchain client must hold a worker account to sign transactions.")
        signed = self._account.sign_transaction(transaction)
        return SignedTransaction(
            raw_transaction=_to_hex(signed.raw_transaction),
            transaction_hash=_to_hex(signed.hash),
        )

    async def broadcast(self, raw_transaction: str) -> str:
        transaction_hash = await self._w3.eth.send_raw_transaction(to_bytes(hexstr=raw_transaction))
        return _to_hex(transaction_hash)

    async def get_transaction(self, transaction_hash: str) -> dict[str, Any] | None:
        try:
            transaction = await self._w3.eth.get_transaction(transaction_hash)
        except TransactionNotFound:
            return None
        return dict(transaction) if transaction else None

    async def get_receipt(self, transaction_hash: str) -> TransactionReceipt | None:
        try:
            receipt = await self._w3.eth.get_transaction_receipt(transaction_hash)
        except TransactionNotFound:
            return None
        if not receipt or receipt.get("blockNumber") is None:
            return None
        effective_gas_price = receipt.get("effectiveGasPrice")
        return TransactionReceipt(
            transaction_hash=_to_hex(receipt["transactionHash"]),
            block_hash=_to_hex(receipt["blockHash"]),
            block_number=int(receipt["blockNumber"]),
            status=int(receipt["status"]),
            gas_used=int(receipt["gasUsed"]),
            effective_gas_price=None if effective_gas_price is None else int(effective_gas_price),
        )

    async def get_receipts(self, transaction_hashes: list[str]) -> list[TransactionReceipt | None]:
        return list(await asyncio.gather(*(self.get_receipt(tx_hash) for tx_hash in transaction_hashes)))

    async def get_block(self, block_identifier: str | int) -> dict[str, Any]:
        return dict(await self._w3.eth.get_block(block_identifier))

    async def get_current_block(self) -> int:
        return int(await self._w3.eth.block_number)

    async def get_balance(self, address: str) -> int:
        return int(await self._w3.eth.get_balance(to_checksum_address(address)))

    async def get_token_balances(self, addresses: list[str], tokens: list[str]) -> list[int]:
        """Spendable amount per (address, token): the lesser of balance and exchange allowance."""
        if len(addresses) != len(tokens):
            raise ValueError("addresses and tokens must have the same length")

        async def spendable(address: str, token: str) -> int:
            contract = self._erc20(token)
            owner = to_checksum_address(address)
            balance, allowance = await asyncio.gather(
                contract.functions.balanceOf(owner).call(),
                contract.functions.allowance(owner, self._exchange_proxy_address).call(),
            )
            return min(int(balance), int(allowance))

        return list(await asyncio.gather(*(spendable(a, t) for a, t in zip(addresses, tokens))))

    async def is_valid_order_signer(self, maker_address: str, signer_address: str) -> bool:
        return bool(
            await self._exchange_proxy.functions.isValidOrderSigner(
                to_checksum_address(maker_address),
                to_checksum_address(signer_address),
            ).call()
        )

    async def get_token_decimals(self, token: str) -> int:
        decimals = await self._erc20(token).functions.decimals().call()
        return int(decimals)

    async def is_worker_ready(
        self,
        worker_address: str,
        *,
        balance: int,
        gas_price: int,
        min_balance_gas_units: int,
    ) -> bool:
        if balance < gas_price * min_balance_gas_units:
            return False
        pending_nonce, latest_nonce = await asyncio.gather(
            self.get_nonce(worker_address, "pending"),
            self.get_nonce(worker_address, "latest"),
        )
        return pending_nonce == latest_nonce
