"""FeeCollector contract event parser."""

from typing import Dict, Any

import structlog
from eth_abi import decode
from eth_abi.exceptions import DecodingError
from pydantic import ValidationError
from web3 import Web3

from models.fee_event import FeeCollectedEvent
from utils.exceptions import DecodeError

logger = structlog.get_logger(__name__)

# event FeesCollected(address indexed _token, address indexed _integrator, uint256 _integratorFee, uint256 _lifiFee)
FEES_COLLECTED_SIGNATURE = "FeesCollected(address,address,uint256,uint256)"
FEES_COLLECTED_TOPIC = Web3.to_hex(Web3.keccak(text=FEES_COLLECTED_SIGNATURE))


class FeeCollectorParser:
    """Turns raw ``eth_getLogs`` entries into ``FeeCollectedEvent`` models."""

    topic = FEES_COLLECTED_TOPIC

    def __init__(self, chain_id: int):
        self.chain_id = chain_id

    def parse_fees_collected(self, log: Dict[str, Any], block_timestamp: int) -> FeeCollectedEvent:
        """Parse a FeesCollected log.

        Raises:
            DecodeError: the log is not a well-formed FeesCollected entry.
        """
        try:
            topics = log["topics"]
            if len(topics) < 3 or topics[0].lower() != self.topic:
                raise DecodeError(f"Not a FeesCollected log: topics={topics}")

            # Indexed addresses are left-padded to 32 bytes
            token = "0x" + topics[1][-40:]
            integrator = "0x" + topics[2][-40:]

            data = log["data"]
            integrator_fee, lifi_fee = decode(["uint256", "uint256"], bytes.fromhex(data[2:]))

            return FeeCollectedEvent(
                chain_id=self.chain_id,
                block_number=int(log["blockNumber"], 16),
                tx_hash=log["transactionHash"],
                log_index=int(log["logIndex"], 16),
                block_timestamp=block_timestamp,
                token=token,
                integrator=integrator,
                integrator_fee=integrator_fee,
                lifi_fee=lifi_fee,
            )

        except DecodeError:
            raise
        except (KeyError, IndexError, TypeError, ValueError, ValidationError, DecodingError) as e:
            logger.error("Failed to parse FeesCollected event",
                         chain_id=self.chain_id,
                         tx_hash=log.get("transactionHash") if isinstance(log, dict) else None,
                         error=str(e))
            raise DecodeError(f"Malformed FeesCollected log: {e}") from e
