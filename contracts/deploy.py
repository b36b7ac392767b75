#!/usr/bin/env python3
"""
Deploy SpiceRegistry.sol and record the deployment for the gateway.

Writes address, ABI, deploy tx and registry schema version to
contracts/deployed.json, which spice_gateway.app.ledger.evm loads when
CONTRACT_ADDRESS is not set.

Usage:
    LEDGER_RPC_URL=https://sepolia.infura.io/v3/<key> LEDGER_PRIVATE_KEY=0x... \
        python contracts/deploy.py
    python contracts/deploy.py --rpc http://127.0.0.1:8545 --poa --out /tmp/deployed.json
"""
import argparse
import json
import os
import subprocess
import sys
import time
from pathlib import Path

from dotenv import load_dotenv
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from spice_gateway.app.ledger.registry import (  # noqa: E402
    EVENT_NAME, READ_FUNCTION, REGISTRY_ABI, REGISTRY_SCHEMA_VERSION, WRITE_FUNCTION,
)

load_dotenv()

CONTRACT_DIR = Path(__file__).parent
SOURCE = CONTRACT_DIR / "SpiceRegistry.sol"
CONTRACT_NAME = "SpiceRegistry"
SOLC_VERSION = "0.8.19"


def _pick(contracts: dict) -> dict:
    key = next(k for k in contracts if k.endswith(f":{CONTRACT_NAME}"))
    return contracts[key]


def _compile_with_solc() -> tuple[list, str]:
    out = subprocess.run(
        ["solc", "--combined-json", "abi,bin", "--optimize", str(SOURCE)],
        capture_output=True, text=True, check=True,
    )
    compiled = _pick(json.loads(out.stdout)["contracts"])
    abi = compiled["abi"]
    # older solc releases emit the ABI as a JSON string
    return (json.loads(abi) if isinstance(abi, str) else abi), compiled["bin"]


def _compile_with_solcx() -> tuple[list, str]:
    from solcx import compile_source, install_solc

    install_solc(SOLC_VERSION, show_progress=False)
    compiled = _pick(compile_source(SOURCE.read_text(), output_values=["abi", "bin"],
                                    solc_version=SOLC_VERSION, optimize=True))
    return compiled["abi"], compiled["bin"]


def compile_contract() -> tuple[list, str]:
    """solc from PATH first, then py-solc-x (pip install .[deploy])."""
    try:
        return _compile_with_solc()
    except (subprocess.CalledProcessError, FileNotFoundError, StopIteration) as exc:
        print(f"solc unavailable ({exc.__class__.__name__}), trying py-solc-x ...")
    try:
        return _compile_with_solcx()
    except ImportError as exc:
        raise RuntimeError("no Solidity compiler: install solc or py-solc-x") from exc


def _signature(entry: dict) -> tuple:
    return entry["type"], entry.get("name"), tuple(i["type"] for i in entry.get("inputs", []))


def check_abi(abi: list) -> None:
    """Refuse to deploy a contract the gateway cannot talk to."""
    wanted = {_signature(e) for e in REGISTRY_ABI}
    have = {_signature(e) for e in abi if e["type"] in ("function", "event")}
    missing = wanted - have
    if missing:
        sys.exit(f"{SOURCE.name} does not implement registry schema "
                 f"{REGISTRY_SCHEMA_VERSION}, missing: {sorted(missing)}")


def connect(rpc_url: str, poa: bool, attempts: int = 30) -> Web3:
    w3 = Web3(Web3.HTTPProvider(rpc_url))
    if poa:
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    for _ in range(attempts):
        if w3.is_connected():
            return w3
        time.sleep(1)
    sys.exit(f"cannot reach {rpc_url} after {attempts}s")


def deploy(rpc_url: str, private_key: str, poa: bool, out_path: Path) -> str:
    w3 = connect(rpc_url, poa)
    account = w3.eth.account.from_key(private_key)
    balance = w3.from_wei(w3.eth.get_balance(account.address), "ether")
    print(f"chain_id={w3.eth.chain_id} deployer={account.address} balance={balance} ETH")

    abi, bytecode = compile_contract()
    check_abi(abi)

    factory = w3.eth.contract(abi=abi, bytecode=bytecode)
    tx = factory.constructor().build_transaction({
        "from": account.address,
        "nonce": w3.eth.get_transaction_count(account.address),
    })
    tx_hash = w3.eth.send_raw_transaction(account.sign_transaction(tx).raw_transaction)
    print(f"deploy tx {Web3.to_hex(tx_hash)}, waiting for receipt ...")

    receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=300)
    if receipt["status"] != 1 or not receipt["contractAddress"]:
        sys.exit(f"deployment reverted in block {receipt['blockNumber']}")
    address = receipt["contractAddress"]

    # smoke read: an unknown batch resolves to an empty record
    registry = w3.eth.contract(address=address, abi=abi)
    _, cid, _ = getattr(registry.functions, READ_FUNCTION)("__deploy_check__").call()
    if cid:
        sys.exit("fresh registry returned data for an unknown batch")

    out_path.write_text(json.dumps({
        "address": address,
        "abi": abi,
        "tx_hash": Web3.to_hex(tx_hash),
        "block_number": receipt["blockNumber"],
        "schema_version": REGISTRY_SCHEMA_VERSION,
    }, indent=2))
    print(f"{CONTRACT_NAME} at {address} ({WRITE_FUNCTION}/{READ_FUNCTION}/{EVENT_NAME})")
    print(f"saved {out_path}")
    print(f"set LEDGER_FROM_BLOCK={receipt['blockNumber']} to skip older blocks when listing")
    return address


def main():
    parser = argparse.ArgumentParser(description=f"Deploy {CONTRACT_NAME}")
    parser.add_argument("--rpc", default=os.getenv("LEDGER_RPC_URL", "http://127.0.0.1:8545"))
    parser.add_argument("--poa", action="store_true",
                        default=os.getenv("LEDGER_POA", "false").lower() == "true")
    parser.add_argument("--out", type=Path, default=CONTRACT_DIR / "deployed.json")
    args = parser.parse_args()

    private_key = os.getenv("LEDGER_PRIVATE_KEY", "")
    if not private_key:
        sys.exit("LEDGER_PRIVATE_KEY is not set")
    deploy(args.rpc, private_key, args.poa, args.out)


if __name__ == "__main__":
    main()
