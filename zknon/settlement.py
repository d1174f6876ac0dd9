"""
Settlement client for paying out from the custodial pool.

The ledger only needs ``SettlementClient``: pay ``amount`` to ``recipient``
and return the network's transaction reference, or raise
``SettlementError``. ``PoolSettlementClient`` implements it against a Solana
JSON-RPC endpoint with a native SOL transfer signed by the pool keypair.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import struct
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Protocol

import base58
import httpx
from nacl.signing import SigningKey

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = Decimal(1_000_000_000)
SYSTEM_PROGRAM_ID = bytes(32)
SYSTEM_TRANSFER_INSTRUCTION = 2


class SettlementError(Exception):
    """The payout did not happen."""


class SettlementTimeoutError(SettlementError):
    """A payout was broadcast but its outcome could not be confirmed in time."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class SolanaRPCError(SettlementError):
    def __init__(self, message: str, error_data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_data = error_data or {}


class SettlementClient(Protocol):
    pool_address: str

    def is_valid_recipient(self, address: str) -> bool: ...

    async def transfer(self, recipient: str, amount: Decimal) -> str: ...

    async def close(self) -> None: ...


def to_lamports(amount: Decimal) -> int:
    return int((amount * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_HALF_UP))


def decode_address(address: str) -> Optional[bytes]:
    try:
        raw = base58.b58decode(address)
    except ValueError:
        return None
    return raw if len(raw) == 32 else None


@dataclass
class PoolKeypair:
    signing_key: SigningKey

    @classmethod
    def from_base58(cls, secret: str) -> "PoolKeypair":
        """Accepts a 64-byte secret key (seed + public key) or a bare 32-byte seed."""
        raw = base58.b58decode(secret.strip())
        if len(raw) not in (32, 64):
            raise ValueError(f"Pool secret key must decode to 32 or 64 bytes, got {len(raw)}")
        signing_key = SigningKey(raw[:32])
        if len(raw) == 64 and bytes(signing_key.verify_key) != raw[32:]:
            raise ValueError("Pool secret key does not match its embedded public key")
        return cls(signing_key=signing_key)

    @property
    def public_key(self) -> bytes:
        return bytes(self.signing_key.verify_key)

    @property
    def address(self) -> str:
        return base58.b58encode(self.public_key).decode()

    def sign(self, message: bytes) -> bytes:
        return self.signing_key.sign(message).signature


def encode_length(value: int) -> bytes:
    """Solana compact-u16 length prefix."""
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def build_transfer_message(sender: bytes, recipient: bytes, lamports: int, blockhash: bytes) -> bytes:
    # header: 1 signer, 0 read-only signers, 1 read-only non-signer (system program)
    header = bytes([1, 0, 1])
    keys = encode_length(3) + sender + recipient + SYSTEM_PROGRAM_ID
    data = struct.pack("<IQ", SYSTEM_TRANSFER_INSTRUCTION, lamports)
    instruction = bytes([2]) + encode_length(2) + bytes([0, 1]) + encode_length(len(data)) + data
    return header + keys + blockhash + encode_length(1) + instruction


def build_transfer_transaction(
    keypair: PoolKeypair, recipient: bytes, lamports: int, blockhash: str
) -> tuple[str, bytes]:
    """Returns (signature, serialized transaction)."""
    message = build_transfer_message(keypair.public_key, recipient, lamports, base58.b58decode(blockhash))
    signature = keypair.sign(message)
    wire = encode_length(1) + signature + message
    return base58.b58encode(signature).decode(), wire


class SolanaRPC:
    """Async Solana JSON-RPC client."""

    def __init__(
        self,
        rpc_url: str,
        api_key: Optional[str] = None,
        commitment: str = "confirmed",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        headers = {"x-api-key": api_key} if api_key else None
        self._client = http_client or httpx.AsyncClient(timeout=timeout, headers=headers)
        self._request_id = 0

    async def _rpc(self, method: str, params: Optional[list[Any]] = None) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise SolanaRPCError(f"{method} failed: {e}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise SolanaRPCError(f"{method} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise SolanaRPCError(f"{method} returned a malformed envelope")
        if "error" in data:
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            raise SolanaRPCError(error.get("message", "Unknown RPC error"), error)
        return data.get("result")

    async def get_latest_blockhash(self) -> tuple[str, int]:
        result = await self._rpc("getLatestBlockhash", [{"commitment": "finalized"}])
        value = result["value"]
        return value["blockhash"], value["lastValidBlockHeight"]

    async def get_block_height(self) -> int:
        return await self._rpc("getBlockHeight", [{"commitment": self.commitment}])

    async def send_transaction(self, wire: bytes) -> str:
        return await self._rpc(
            "sendTransaction",
            [
                base64.b64encode(wire).decode(),
                {"encoding": "base64", "skipPreflight": False, "preflightCommitment": self.commitment},
            ],
        )

    async def get_signature_status(
        self, signature: str, search_history: bool = False
    ) -> Optional[dict[str, Any]]:
        params: list[Any] = [[signature]]
        if search_history:
            params.append({"searchTransactionHistory": True})
        result = await self._rpc("getSignatureStatuses", params)
        if not isinstance(result, dict):
            raise SolanaRPCError(f"getSignatureStatuses returned a malformed result: {result!r}")
        statuses = result.get("value") or []
        return statuses[0] if statuses else None

    async def close(self) -> None:
        await self._client.aclose()


class PoolSettlementClient:
    """Pays out from the pool keypair with a System Program transfer."""

    def __init__(
        self,
        keypair: PoolKeypair,
        rpc: SolanaRPC,
        confirm_timeout: float = 60.0,
        poll_interval: float = 1.0,
    ):
        self.keypair = keypair
        self.rpc = rpc
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval

    @property
    def pool_address(self) -> str:
        return self.keypair.address

    def is_valid_recipient(self, address: str) -> bool:
        raw = decode_address(address)
        return raw is not None and raw != self.keypair.public_key

    async def transfer(self, recipient: str, amount: Decimal) -> str:
        raw_recipient = decode_address(recipient)
        if raw_recipient is None:
            raise SettlementError(f"Invalid recipient address: {recipient}")
        lamports = to_lamports(amount)
        if lamports <= 0:
            raise SettlementError(f"Amount {amount} is below the smallest transferable unit")

        blockhash, last_valid_height = await self.rpc.get_latest_blockhash()
        signature, wire = build_transfer_transaction(self.keypair, raw_recipient, lamports, blockhash)
        logger.info("Sending %s lamports from pool %s to %s", lamports, self.pool_address, recipient)
        # Once the transaction has been handed to the node it may land, so any
        # unexpected error from here on is reported with its signature.
        try:
            await self.rpc.send_transaction(wire)
        except SolanaRPCError as e:
            if e.error_data:
                raise
            logger.warning("Broadcast of %s did not get a response: %s", signature, e)
        except Exception as e:
            raise SettlementTimeoutError(
                f"Outcome of transaction {signature} unknown: {e!r}", signature=signature
            ) from e

        try:
            await self._await_confirmation(signature, last_valid_height)
        except SettlementError:
            raise
        except Exception as e:
            raise SettlementTimeoutError(
                f"Outcome of transaction {signature} unknown: {e!r}", signature=signature
            ) from e
        logger.info("Payout confirmed: %s", signature)
        return signature

    def _is_confirmed(self, signature: str, status: Optional[dict[str, Any]]) -> bool:
        if status is None:
            return False
        if status.get("err"):
            raise SettlementError(f"Transaction {signature} failed: {status['err']}")
        return status.get("confirmationStatus") in ("confirmed", "finalized")

    async def _await_confirmation(self, signature: str, last_valid_height: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout
        while True:
            try:
                status = await self.rpc.get_signature_status(signature)
                if status is None and await self.rpc.get_block_height() > last_valid_height:
                    # height and status can come from different nodes; recheck with full history
                    status = await self.rpc.get_signature_status(signature, search_history=True)
                    if status is None:
                        raise SettlementError(f"Transaction {signature} expired before confirmation")
                if self._is_confirmed(signature, status):
                    return
            except SolanaRPCError as e:
                logger.warning("Confirmation poll for %s failed: %s", signature, e)

            if loop.time() >= deadline:
                raise SettlementTimeoutError(
                    f"Transaction {signature} not confirmed within {self.confirm_timeout}s",
                    signature=signature,
                )
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        await self.rpc.close()
