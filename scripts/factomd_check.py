# flake8: noqa E402
# Run via uv so project deps are loaded, e.g.:
# uv run scripts/factomd_check.py --height 200000 --address FA2jK2HcLnRdS94dEcU27rF3meoJfpUcZPSinpb7AwQvPRY6RL1Q
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

# Ensure the src directory is importable when the script is invoked via uv/python directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from config import config
from domain.classifier import classify
from domain.income import AddressConfig
from main import build_client


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch one factoid block and show what would be recorded.")
    parser.add_argument("--height", type=int, help="Block height to fetch (default: current tip).")
    parser.add_argument("--address", help="Public FCT address to classify the block for.")
    parser.add_argument("--currency", default="USD", help="Fiat currency stored on the records (default: USD).")
    parser.add_argument(
        "--non-coinbase",
        action="store_true",
        help="Also accept non-coinbase receipts (coinbase receipts are always accepted).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    client = build_client(config())
    tip = client.get_tip_height()
    block = client.get_block(args.height if args.height is not None else tip)
    payload: dict[str, Any] = {
        "tip": tip,
        "height": block.height,
        "transactions": [
            {
                "id": tx.id,
                "coinbase": tx.is_coinbase,
                "total_inputs": tx.total_inputs,
                "outputs": [{"address": output.address, "amount": output.amount} for output in tx.outputs],
            }
            for tx in block.transactions
        ],
    }
    if args.address:
        conf = AddressConfig(
            address=args.address,
            name="check",
            currency=args.currency,
            coinbase=True,
            non_coinbase=args.non_coinbase,
        )
        payload["records"] = [record.model_dump(mode="json") for record in classify(block, [conf])]
    print(json.dumps(payload, indent=2))


if __name__ == "__main__":
    main()
