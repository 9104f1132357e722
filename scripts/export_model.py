"""
Split a TorchScript model file into `model.json` plus weight shards, ready to
be uploaded under the artifact prefix of the bucket.
"""

from __future__ import annotations

import argparse
from pathlib import Path

import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cancer_service.artifacts import DEFAULT_SHARD_SIZE, export_artifact


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Shard a TorchScript model for upload")
    parser.add_argument("--model", required=True, help="Path to the TorchScript .pt file")
    parser.add_argument("--output", required=True, help="Directory to write model.json and shards to")
    parser.add_argument("--shard-size", type=int, default=DEFAULT_SHARD_SIZE, help="Shard size in bytes")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    model_path = Path(args.model)
    if not model_path.exists():
        raise FileNotFoundError(f"Model file not found: {model_path}")
    topology = export_artifact(model_path, Path(args.output), shard_size=args.shard_size)
    print(f"Wrote artifact descriptor to {topology}")


if __name__ == "__main__":
    main()
