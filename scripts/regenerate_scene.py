"""
Regenerate one scene illustration of a finished book, spending one regeneration credit.

Usage:
    python scripts/regenerate_scene.py --job JOB_ID --scene 3
    python scripts/regenerate_scene.py --job JOB_ID --credits

Environment variables:
    REPLICATE_API_TOKEN  - required unless you pass --api-token
    PICTUREBOOK_DB_PATH  - job database (default data/picturebook.db)
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from picturebook import RegenerationService, SQLiteJobStore
from picturebook.ai_generation import LocalObjectStore, ReplicateImageGenerator
from picturebook.common import PictureBookError


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Regenerate a single illustration of a completed picture book."
    )
    parser.add_argument("--job", required=True, help="Job id of the completed book.")
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--scene", type=int, help="1-based scene number to regenerate.")
    action.add_argument("--credits", action="store_true", help="Only print the remaining credits.")
    parser.add_argument("--db-path", default=None, help="Override the job database path.")
    parser.add_argument("--storage-dir", default=None, help="Copy the new image into this directory.")
    parser.add_argument(
        "--api-token",
        default=None,
        help="Optional Replicate API token override (otherwise uses environment variable).",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Optional Replicate model identifier override (owner/model:version).",
    )
    return parser.parse_args(argv)


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    store = SQLiteJobStore(args.db_path)
    service = RegenerationService(
        store,
        ReplicateImageGenerator(api_token=args.api_token, model_identifier=args.model),
        object_store=LocalObjectStore(args.storage_dir) if args.storage_dir else None,
    )

    try:
        if args.credits:
            print(f"Remaining regeneration credits: {service.regeneration_credits(args.job)}")
            return 0
        result = service.regenerate_scene(args.job, args.scene)
    except PictureBookError as exc:
        print(f"{exc.code}: {exc.user_message}", file=sys.stderr)
        return 1

    print(f"Scene {result['sceneNumber']} regenerated:")
    print(f"  URL    : {result['illustrationUrl']}")
    print(f"  Seed   : {result['seed']}")
    print(f"  Credits: {result['remainingCredits']} left")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
