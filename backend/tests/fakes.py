"""
Test doubles: an in-memory chain node and a deterministic banking provider.
"""

from typing import Any, Dict, List, Optional

from web3 import Web3

from chain.client import ChainClient, ReceiptTimeoutError
from services.banking_provider import BankingProvider, VirtualAccount
from utils.identifiers import to_hex

ADMIN_KEY = "0x" + "11" * 32
CONTRACT_ADDRESS = "0x" + "22" * 20
USER_ADDRESS = Web3.to_checksum_address("0x" + "aa" * 20)
OTHER_ADDRESS = Web3.to_checksum_address("0x" + "bb" * 20)


class FakeChainClient(ChainClient):
    """In-memory node: records builds and broadcasts, returns canned receipts."""

    def __init__(self, decimals: int = 6, head: int = 100):
        self.decimals = decimals
        self.head = head
        self.nonce = 0
        self.logs: Dict[str, List[Dict[str, Any]]] = {"Withdrawal": [], "Bridge": []}
        self.log_requests: List[tuple] = []
        self.built: List[Dict[str, Any]] = []
        self.sent: List[str] = []
        self.send_errors: List[Exception] = []
        self.receipt_status = 1
        self.receipt_timeout = False
        self.closed = False

    async def chain_id(self) -> int:
        return 31337

    async def block_number(self) -> int:
        return self.head

    async def token_decimals(self) -> int:
        return self.decimals

    async def get_event_logs(self, event_name: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        self.log_requests.append((event_name, from_block, to_block))
        return [
            log for log in self.logs[event_name]
            if from_block <= log["blockNumber"] <= to_block
        ]

    async def get_transaction_count(self, address: str) -> int:
        return self.nonce

    async def build_deposit_transaction(self, sender, to, amount, onramp_id, nonce):
        self.built.append({"sender": sender, "to": to, "amount": amount, "onramp_id": onramp_id, "nonce": nonce})
        return {
            "to": CONTRACT_ADDRESS,
            "value": 0,
            "gas": 200000,
            "gasPrice": 1_000_000_000,
            "nonce": nonce,
            "chainId": 31337,
            "data": "0x" + onramp_id.hex(),
        }

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        tx_hash = to_hex(Web3.keccak(raw_transaction))
        self.sent.append(tx_hash)
        self.nonce += 1
        return tx_hash

    async def transaction_exists(self, tx_hash: str) -> bool:
        return tx_hash in self.sent

    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_interval: float) -> Dict[str, Any]:
        if self.receipt_timeout:
            raise ReceiptTimeoutError(f"Transaction {tx_hash} not in the chain after {timeout} seconds")
        return {"transactionHash": tx_hash, "status": self.receipt_status, "blockNumber": self.head}

    async def close(self):
        self.closed = True


class FakeBankingProvider(BankingProvider):

    def __init__(self):
        self.calls: List[str] = []

    async def obtain_virtual_account(self, user_address: str) -> VirtualAccount:
        self.calls.append(user_address)
        return VirtualAccount(
            virtual_account=f"VA{len(self.calls):06d}",
            bank_name="TEST BANK",
            account_name="John Doe",
        )


def make_log(tx_byte: int, log_index: int, block: int, args: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "args": args,
        "transactionHash": "0x" + f"{tx_byte:02x}" * 32,
        "logIndex": log_index,
        "blockNumber": block,
    }


def settlement_calls(chain: FakeChainClient, onramp_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Deposit transactions built, optionally filtered by onramp id."""
    if onramp_id is None:
        return chain.built
    return [b for b in chain.built if "0x" + b["onramp_id"].hex() == onramp_id]
