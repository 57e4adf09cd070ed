"""web3.py adapter for the FairVRF contract.

Reads go through ``AsyncWeb3``; writes are built, signed locally with
eth-account and sent as raw transactions, then awaited to a receipt.
Contract custom errors are decoded by selector so that ``AlreadyFulfilled``
can be told apart from a stale proof or a network problem.
"""

import asyncio
from typing import Any, Dict, List, Optional

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from fairvrf.chain.hashing import normalize_hex
from fairvrf.config.base import OracleSettings
from fairvrf.core.types import RequestRecord
from fairvrf.errors import AlreadyFulfilled, ConfigurationError, SubmissionFailed
from fairvrf.ledger.base import Ledger

logger = structlog.get_logger()

FAIRVRF_ABI: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": "RandomWordsRequested",
        "anonymous": False,
        "inputs": [
            {"name": "keyHash", "type": "bytes32", "indexed": True},
            {"name": "requestId", "type": "uint256", "indexed": False},
            {"name": "preSeed", "type": "uint256", "indexed": False},
            {"name": "subId", "type": "uint64", "indexed": True},
            {"name": "minimumRequestConfirmations", "type": "uint16", "indexed": False},
            {"name": "callbackGasLimit", "type": "uint32", "indexed": False},
            {"name": "numWords", "type": "uint32", "indexed": False},
            {"name": "sender", "type": "address", "indexed": True},
        ],
    },
    {
        "type": "function",
        "name": "currentAnchor",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
    {
        "type": "function",
        "name": "fulfillRandomness",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "requestId", "type": "uint256"},
            {"name": "nextServerSeed", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "setAnchor",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_newAnchor", "type": "bytes32"}],
        "outputs": [],
    },
]

CUSTOM_ERRORS = ("AlreadyFulfilled", "InvalidSeedProof", "RequestNotFound")
ERROR_SELECTORS: Dict[str, str] = {
    Web3.to_hex(Web3.keccak(text=f"{name}()")[:4]): name for name in CUSTOM_ERRORS
}
ZERO_SEED = "0x" + "00" * 32


def decode_revert(error: Exception) -> Optional[str]:
    """Map a contract revert to its custom error name, if known."""
    data = getattr(error, "data", None)
    candidates = [data] if isinstance(data, str) else []
    candidates.extend(str(arg) for arg in getattr(error, "args", ()))
    for candidate in candidates:
        lowered = candidate.lower()
        for selector, name in ERROR_SELECTORS.items():
            if selector in lowered or name.lower() in lowered:
                return name
    return None


class Web3Ledger(Ledger):
    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        chain_id: Optional[int] = None,
        receipt_timeout: float = 120,
        w3: Optional[AsyncWeb3] = None,
    ):
        if not contract_address:
            raise ConfigurationError("CONTRACT_ADDRESS not provided")
        if not private_key:
            raise ConfigurationError("PRIVATE_KEY not provided")

        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=FAIRVRF_ABI)
        self.receipt_timeout = receipt_timeout
        self._chain_id = chain_id
        # Nonce assignment must not interleave between concurrent writers
        self._send_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: OracleSettings) -> "Web3Ledger":
        return cls(
            rpc_url=settings.rpc_url,
            contract_address=settings.contract_address,
            private_key=settings.private_key,
            chain_id=settings.chain_id,
            receipt_timeout=settings.receipt_timeout,
        )

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self.w3.eth.chain_id
            logger.info("chain_id_detected", chain_id=self._chain_id, rpc=self.rpc_url)
        return self._chain_id

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_request_events(self, from_block: int, to_block: int) -> List[RequestRecord]:
        logs = await self.contract.events.RandomWordsRequested.get_logs(
            from_block=from_block, to_block=to_block
        )
        records = []
        for log in logs:
            args = log["args"]
            records.append(RequestRecord(
                request_id=int(args["requestId"]),
                block_number=int(log["blockNumber"]),
                min_confirmations=int(args["minimumRequestConfirmations"]),
                sender=args["sender"],
                pre_seed=int(args["preSeed"]),
                callback_gas_limit=int(args["callbackGasLimit"]),
                num_words=int(args["numWords"]),
                tx_hash=Web3.to_hex(log["transactionHash"]),
            ))
        return records

    async def current_anchor(self) -> str:
        anchor = await self.contract.functions.currentAnchor().call()
        return normalize_hex(anchor)

    async def is_fulfilled(self, request_id: int) -> bool:
        fn = self.contract.functions.fulfillRandomness(request_id, Web3.to_bytes(hexstr=ZERO_SEED))
        try:
            await fn.call({"from": self.account.address})
        except ContractLogicError as e:
            return decode_revert(e) == "AlreadyFulfilled"
        return False

    async def fulfill_randomness(self, request_id: int, reveal: str) -> str:
        fn = self.contract.functions.fulfillRandomness(request_id, Web3.to_bytes(hexstr=reveal))
        try:
            return await self._send(fn, "fulfillRandomness")
        except SubmissionFailed as e:
            if e.revert_reason == "AlreadyFulfilled":
                raise AlreadyFulfilled(request_id) from e
            raise

    async def set_anchor(self, new_anchor: str) -> str:
        fn = self.contract.functions.setAnchor(Web3.to_bytes(hexstr=normalize_hex(new_anchor)))
        return await self._send(fn, "setAnchor")

    async def _send(self, fn, label: str) -> str:
        async with self._send_lock:
            try:
                chain_id = await self.chain_id()
                nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
                tx = await fn.build_transaction({
                    "from": self.account.address,
                    "nonce": nonce,
                    "chainId": chain_id,
                })
                signed = self.account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as e:
                reason = decode_revert(e)
                raise SubmissionFailed(f"{label} reverted: {reason or e}", revert_reason=reason) from e
            except Exception as e:
                raise SubmissionFailed(f"{label} submission failed: {e}") from e

        tx_hex = Web3.to_hex(tx_hash)
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as e:
            raise SubmissionFailed(f"{label} receipt timed out: {tx_hex}") from e

        if receipt["status"] != 1:
            raise SubmissionFailed(f"{label} transaction failed: {tx_hex}")
        logger.info("transaction_confirmed",
                    function=label,
                    tx_hash=tx_hex,
                    block_number=receipt["blockNumber"],
                    gas_used=receipt["gasUsed"])
        return tx_hex
