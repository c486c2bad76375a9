"""
Broadcaster - Submits signed transactions to an Ethereum node.

The daemon only signs; broadcasting (and any chain lookups) goes through a
Broadcaster so the signing path stays independent of the network.
"""

import logging
from typing import Optional, Protocol

from web3 import Web3
from web3.exceptions import Web3Exception

logger = logging.getLogger(__name__)


class BroadcastError(Exception):
    """The node rejected the transaction or could not be reached."""

    code = "broadcast_failed"


class Broadcaster(Protocol):
    def complete_transaction(self, tx: dict, sender: str) -> dict: ...

    def send_raw_transaction(self, raw_tx: str) -> str: ...


class Web3Broadcaster:
    """Broadcaster backed by a web3 HTTP provider."""

    def __init__(self, rpc_url: str, chain_id: Optional[int] = None):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))

    @property
    def is_connected(self) -> bool:
        """Check if connected to the network."""
        try:
            return self.w3.is_connected()
        except Web3Exception:
            return False

    def complete_transaction(self, tx: dict, sender: str) -> dict:
        """Fill chainId and nonce when the caller left them out."""
        completed = dict(tx)
        try:
            if completed.get("chainId") is None:
                completed["chainId"] = self.chain_id if self.chain_id is not None else self.w3.eth.chain_id
            if completed.get("nonce") is None:
                completed["nonce"] = self.w3.eth.get_transaction_count(
                    Web3.to_checksum_address(sender), "pending"
                )
        except (Web3Exception, OSError) as e:
            raise BroadcastError(f"Failed to prepare transaction: {e}") from e
        return completed

    def send_raw_transaction(self, raw_tx: str) -> str:
        """Submit a signed transaction. Returns the 0x transaction hash."""
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
        except (Web3Exception, ValueError, OSError) as e:
            raise BroadcastError(f"Broadcast failed: {e}") from e
        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"Transaction broadcast: {tx_hash_hex}")
        return tx_hash_hex
