"""
ledger/evm.py - SpiceRegistry adapter using web3.py.

Connects to an EVM node via JSON-RPC (Sepolia through Infura, a local
Hardhat/Besu node, ...), loads the deployed registry and calls
addBatch(batchId, spice, cid).

Environment variables:
  LEDGER_RPC_URL          - JSON-RPC endpoint (default: http://127.0.0.1:8545)
  LEDGER_PRIVATE_KEY      - hex private key of the submitting account
  CONTRACT_ADDRESS        - deployed registry address (optional if deployed.json exists)
  CONTRACT_DEPLOYED_PATH  - deployed.json written by contracts/deploy.py
  LEDGER_POA              - "true" to inject the POA extra-data middleware (Besu/Clique)
  LEDGER_CONFIRM_TIMEOUT  - seconds to wait for a receipt before ConfirmationTimeout
  LEDGER_FROM_BLOCK       - first block scanned when rebuilding the batch list

web3.py is synchronous, so every node call runs in the default executor.
"""
import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Optional

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from ..errors import AnchorError, ConfirmationTimeout, ResolveTransportError
from ..hashing import epoch_to_iso
from .adapter import LedgerClient
from .registry import (
    EVENT_NAME, REGISTRY_ABI, AnchorReceipt, BatchRecord, RegistryEvent,
    decode_event, decode_state, load_deployment, to_hex,
)

log = logging.getLogger("spice.evm")

RPC_URL = os.getenv("LEDGER_RPC_URL", "http://127.0.0.1:8545")
PRIVATE_KEY = os.getenv("LEDGER_PRIVATE_KEY", "")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "")
CONTRACT_DEPLOYED_PATH = Path(os.getenv("CONTRACT_DEPLOYED_PATH", "contracts/deployed.json"))
USE_POA = os.getenv("LEDGER_POA", "false").lower() == "true"
CONFIRM_TIMEOUT = float(os.getenv("LEDGER_CONFIRM_TIMEOUT", "120"))
FROM_BLOCK = int(os.getenv("LEDGER_FROM_BLOCK", "0"))

FALLBACK_GAS = 500_000


async def _in_executor(fn, *args):
    return await asyncio.get_running_loop().run_in_executor(None, lambda: fn(*args))


class EvmLedger(LedgerClient):
    backend = "evm"

    def __init__(self, w3=None, contract=None, private_key: str = PRIVATE_KEY,
                 confirm_timeout: float = CONFIRM_TIMEOUT, from_block: int = FROM_BLOCK,
                 **kwargs):
        super().__init__(**kwargs)
        self._w3 = w3
        self._contract = contract
        self._private_key = private_key
        self._confirm_timeout = confirm_timeout
        self._from_block = from_block
        self._send_lock = threading.Lock()

    def _load(self):
        if self._contract is not None:
            return

        w3 = Web3(Web3.HTTPProvider(RPC_URL, request_kwargs={"timeout": 30}))
        if USE_POA:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        addr = CONTRACT_ADDRESS
        if CONTRACT_DEPLOYED_PATH.exists():
            deployed = load_deployment(CONTRACT_DEPLOYED_PATH)
            if not addr:
                addr = deployed.get("address", "")

        if not addr:
            raise RuntimeError("CONTRACT_ADDRESS not configured (missing deployed.json?)")

        self._w3 = w3
        self._contract = w3.eth.contract(address=Web3.to_checksum_address(addr), abi=REGISTRY_ABI)
        log.info("registry connected: rpc=%s contract=%s", RPC_URL, addr)

    #  Write path

    async def anchor(self, batch_id: str, spice_kind: str, content_id: str) -> AnchorReceipt:
        try:
            self._load()
        except Exception as exc:
            raise AnchorError(f"ledger not configured: {exc}") from exc
        return await _in_executor(self._anchor_blocking, batch_id, spice_kind, content_id)

    def _anchor_blocking(self, batch_id: str, spice_kind: str, content_id: str) -> AnchorReceipt:
        fn = self._contract.functions.addBatch(batch_id, spice_kind, content_id)

        try:
            account = self._w3.eth.account.from_key(self._private_key)
        except Exception as exc:
            raise AnchorError(f"invalid LEDGER_PRIVATE_KEY: {exc}") from exc

        # preflight: simulate the call so reverts surface with a reason
        try:
            fn.call({"from": account.address})
        except Exception as exc:
            raise AnchorError(f"preflight revert: {exc}") from exc

        # nonce read and send are serialised; the receipt wait below is not
        try:
            with self._send_lock:
                base_tx = {
                    "from": account.address,
                    "nonce": self._w3.eth.get_transaction_count(account.address, "pending"),
                }
                try:
                    est = fn.estimate_gas(base_tx)
                    gas_limit = int(est * 1.30) + 50_000
                except Exception as exc:
                    log.warning("estimate_gas failed batch_id=%s, using %d: %s", batch_id, FALLBACK_GAS, exc)
                    gas_limit = FALLBACK_GAS

                tx = fn.build_transaction({**base_tx, "gas": gas_limit})
                signed = account.sign_transaction(tx)
                tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            log.error("anchor submission failed batch_id=%s: %s", batch_id, exc)
            raise AnchorError(f"submission failed: {exc}") from exc

        tx_ref = to_hex(tx_hash)
        log.info("anchor sent batch_id=%s tx=%s, waiting up to %.0fs",
                 batch_id, tx_ref, self._confirm_timeout)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._confirm_timeout)
        except TimeExhausted as exc:
            log.error("anchor unconfirmed batch_id=%s tx=%s after %.0fs",
                      batch_id, tx_ref, self._confirm_timeout)
            raise ConfirmationTimeout(
                f"tx {tx_ref} not confirmed within {self._confirm_timeout:.0f}s"
            ) from exc
        except Exception as exc:
            raise AnchorError(f"confirmation failed for {tx_ref}: {exc}") from exc

        if int(receipt["status"]) != 1:
            log.warning("anchor reverted batch_id=%s tx=%s gasUsed=%s gasLimit=%s",
                        batch_id, tx_ref, receipt.get("gasUsed"), gas_limit)
            raise AnchorError(f"tx reverted: {tx_ref}")

        block_number = receipt["blockNumber"]
        try:
            anchored_at = epoch_to_iso(self._w3.eth.get_block(block_number)["timestamp"])
        except Exception as exc:
            log.warning("could not read block %s timestamp: %s", block_number, exc)
            anchored_at = None

        log.info("anchored batch_id=%s tx=%s block=%s gasUsed=%s",
                 batch_id, tx_ref, block_number, receipt.get("gasUsed"))
        return AnchorReceipt(transaction_ref=tx_ref, block_ref=block_number, anchored_at=anchored_at)

    #  Read path

    async def resolve(self, batch_id: str) -> Optional[BatchRecord]:
        try:
            self._load()
            result = await _in_executor(self._contract.functions.getBatch(batch_id).call)
        except ContractLogicError as exc:
            log.debug("getBatch(%s) reverted, treating as not found: %s", batch_id, exc)
            return None
        except Exception as exc:
            raise ResolveTransportError(f"getBatch({batch_id}) failed: {exc}") from exc
        return decode_state(batch_id, result)

    async def fetch_events(self) -> list[RegistryEvent]:
        self._load()
        event = getattr(self._contract.events, EVENT_NAME)
        entries = await _in_executor(
            lambda: event.get_logs(from_block=self._from_block, to_block="latest")
        )
        events = []
        for entry in entries:
            try:
                events.append(decode_event(entry))
            except (KeyError, TypeError) as exc:
                log.warning("skipping malformed %s log tx=%s: %s",
                            EVENT_NAME, to_hex(entry.get("transactionHash")), exc)
        return events

    async def is_connected(self) -> bool:
        try:
            self._load()
            return bool(await _in_executor(self._w3.is_connected))
        except Exception as exc:
            log.warning("ledger health check failed: %s", exc)
            return False
