"""
Token Claim Gateway - SWAG token claims through the Thirdweb contract-write API
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

import httpx

from swagly.config import Settings, settings as default_settings
from swagly.errors import GatewayError, InvalidInput

logger = logging.getLogger(__name__)


CLAIM_METHOD_SIGNATURE = (
    "function claim(address _receiver, uint256 _quantity, address _currency, "
    "uint256 _pricePerToken, (bytes32[] proof, uint256 quantityLimitPerWallet, "
    "uint256 pricePerToken, address currency) _allowlistProof, bytes _data) payable"
)

# Locations where the API may report the broadcast transaction hash
TRANSACTION_HASH_PATHS = (
    ("transactionHash",),
    ("result", "transactionHash"),
    ("receipt", "transactionHash"),
    ("result", "receipt", "transactionHash"),
)

# One lock per backend wallet: claims from the same signer are serialised so
# nonce allocation never races inside this process.
_wallet_locks: Dict[str, threading.Lock] = {}
_wallet_locks_guard = threading.Lock()


def _wallet_lock(address: str) -> threading.Lock:
    key = (address or "").lower()
    with _wallet_locks_guard:
        lock = _wallet_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _wallet_locks[key] = lock
        return lock


def to_smallest_unit(quantity: int, decimals: int) -> int:
    """Whole tokens to the token's smallest unit"""
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidInput("quantity must be an integer number of tokens")
    if quantity <= 0:
        raise InvalidInput("quantity must be positive")
    return quantity * (10 ** decimals)


def extract_transaction_hash(body: Any) -> Optional[str]:
    """Find the transaction hash in a success payload, None if absent"""
    for path in TRANSACTION_HASH_PATHS:
        node = body
        for key in path:
            if not isinstance(node, dict):
                node = None
                break
            node = node.get(key)
        if isinstance(node, str) and node:
            return node
    return None


def extract_error_message(payload: Any, status_code: int) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"Thirdweb API request failed with status {status_code}"


@dataclass
class ClaimResult:
    transaction_hash: Optional[str]
    quantity: int
    quantity_in_wei: int
    response: Any = field(default=None, repr=False)


class ClaimGateway:
    """
    Client for claiming SWAG tokens on behalf of a user.

    The transaction is signed by the backend creator wallet, so the user
    never pays gas. Calls are never retried here: a timeout or transport
    failure may still land on-chain and has to be reconciled first.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.config = config or default_settings
        self._transport = transport

    def _ensure_configured(self) -> None:
        secret = (self.config.THIRDWEB_SECRET_KEY or "").strip()
        if not secret:
            raise GatewayError(
                GatewayError.UNCONFIGURED,
                "THIRDWEB_SECRET_KEY is not configured"
            )

        wallet = (self.config.CREATOR_WALLET_ADDRESS or "").strip()
        if not wallet or "<YOUR" in wallet:
            raise GatewayError(
                GatewayError.UNCONFIGURED,
                "CREATOR_WALLET_ADDRESS is not configured"
            )

    def build_payload(self, receiver_address: str, quantity_in_wei: int) -> Dict[str, Any]:
        currency = self.config.NATIVE_TOKEN_ADDRESS
        return {
            "chainId": self.config.CHAIN_ID,
            "from": self.config.CREATOR_WALLET_ADDRESS,
            "calls": [
                {
                    "contractAddress": self.config.SWAG_TOKEN_ADDRESS,
                    "method": CLAIM_METHOD_SIGNATURE,
                    "params": [
                        receiver_address,
                        str(quantity_in_wei),
                        currency,
                        "0",
                        # allowlist proof struct as array: proof, limit per wallet, price, currency
                        [[], "0", "0", currency],
                        "0x",
                    ],
                }
            ],
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.config.CLAIM_TIMEOUT_SEC,
            transport=self._transport
        )

    def claim(
        self,
        receiver_address: str,
        quantity: int,
        idempotency_key: Optional[str] = None
    ) -> ClaimResult:
        """
        Claim ``quantity`` whole tokens for ``receiver_address``.

        Returns the transaction hash (None when the API succeeded without
        reporting one) or raises GatewayError. ``idempotency_key`` is sent as
        the x-idempotency-key header so the API can drop a duplicate request.
        """
        self._ensure_configured()

        if not receiver_address:
            raise InvalidInput("Receiver wallet address is required")

        quantity_in_wei = to_smallest_unit(quantity, self.config.TOKEN_DECIMALS)
        payload = self.build_payload(receiver_address, quantity_in_wei)
        headers = {
            "Content-Type": "application/json",
            "x-secret-key": self.config.THIRDWEB_SECRET_KEY,
        }
        if idempotency_key:
            headers["x-idempotency-key"] = idempotency_key

        logger.info(
            f"Claiming {quantity} tokens ({quantity_in_wei} wei) for {receiver_address} "
            f"on chain {self.config.CHAIN_ID} from {self.config.CREATOR_WALLET_ADDRESS}"
        )

        with _wallet_lock(self.config.CREATOR_WALLET_ADDRESS):
            try:
                with self._client() as client:
                    response = client.post(
                        self.config.THIRDWEB_API_URL,
                        json=payload,
                        headers=headers
                    )
            except httpx.TimeoutException as e:
                logger.error(f"Claim for {receiver_address} timed out: {e}")
                raise GatewayError(
                    GatewayError.TIMEOUT,
                    f"Thirdweb API did not answer within {self.config.CLAIM_TIMEOUT_SEC}s",
                    payload={"error": str(e)}
                )
            except httpx.TransportError as e:
                logger.error(f"Claim for {receiver_address} failed in transport: {e}")
                raise GatewayError(
                    GatewayError.NETWORK,
                    f"Could not reach Thirdweb API: {e}",
                    payload={"error": str(e)}
                )

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if not response.is_success:
            message = extract_error_message(body, response.status_code)
            logger.error(f"Thirdweb API rejected claim ({response.status_code}): {body}")
            raise GatewayError(
                GatewayError.REJECTED,
                message,
                upstream_status=response.status_code,
                payload=body
            )

        transaction_hash = extract_transaction_hash(body)
        if transaction_hash:
            logger.info(f"Claim broadcast, tx {transaction_hash}")
        else:
            logger.warning(f"Claim accepted without a transaction hash: {body}")

        return ClaimResult(
            transaction_hash=transaction_hash,
            quantity=quantity,
            quantity_in_wei=quantity_in_wei,
            response=body
        )


# Singleton instance
claim_gateway = ClaimGateway()
