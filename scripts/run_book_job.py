"""
CLI to create a picture-book job from an intake file and run every stage to completion.

Usage:
    python scripts/run_book_job.py \
        --intake book_intake.yaml \
        --output book.yaml

    python scripts/run_book_job.py --resume JOB_ID --output book.yaml
    python scripts/run_book_job.py --worker --max-parallel-jobs 2
    python scripts/run_book_job.py --worker --poll 10

Environment variables:
    OPENAI_API_KEY / LITELLM_API_KEY  - text and vision model credentials
    REPLICATE_API_TOKEN               - image generation credentials
    PICTUREBOOK_DB_PATH               - job database (default data/picturebook.db)
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict

import yaml

from tqdm.auto import tqdm

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from picturebook import (
    BookGenerationWorker,
    BookJobRunner,
    PipelineController,
    PipelineSettings,
    SQLiteJobStore,
)
from picturebook.ai_generation import LocalObjectStore
from picturebook.common import PictureBookError
from picturebook.pipeline import JobStatus, build_default_services, load_intake_file


class ProgressTracker:
    """
    Command-line progress updates for a single book job.
    """

    def __init__(self) -> None:
        self._stage_bar: tqdm | None = None

    def __call__(self, stage: str, payload: Dict[str, Any]) -> None:
        match stage:
            case "job:resume":
                self._write(f"Resuming job {payload.get('job_id')}; finished stages will be skipped.")
            case "job:start":
                total = payload.get("total_stages", 0)
                self._write(f"Generating book {payload.get('job_id')} ({total} stages)...")
                self._stage_bar = tqdm(total=total, desc="Stages", unit="stage")
            case "stage:start":
                if self._stage_bar is not None:
                    label = payload.get("stage", "")
                    if "sceneIndex" in payload:
                        label += f" (scene {int(payload['sceneIndex']) + 1})"
                    self._stage_bar.set_description(label)
            case "stage:retry":
                self._write(
                    f"  {payload.get('stage')} failed ({payload.get('error')}); "
                    f"retry {payload.get('attempt')} in {payload.get('delay', 0):.1f}s"
                )
            case "stage:done":
                if self._stage_bar is not None:
                    self._stage_bar.update(1)
            case "job:complete":
                self._write("Book complete.")
                self.close()

    def close(self) -> None:
        if self._stage_bar is not None:
            self._stage_bar.close()
            self._stage_bar = None

    @staticmethod
    def _write(message: str) -> None:
        tqdm.write(message)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the picture-book generation pipeline.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--intake", help="Path to the book intake YAML/JSON file.")
    source.add_argument("--resume", metavar="JOB_ID", help="Resume an existing job by id.")
    source.add_argument(
        "--worker",
        action="store_true",
        help="Process every paid job waiting in the database, then exit.",
    )
    parser.add_argument(
        "--output",
        default="book.yaml",
        help="Output YAML file for the finished book.",
    )
    parser.add_argument("--db-path", default=None, help="Override the job database path.")
    parser.add_argument(
        "--storage-dir",
        default=None,
        help="Copy generated images into this directory instead of keeping provider URLs.",
    )
    parser.add_argument("--scenes", type=int, default=None, help="Override the number of scenes.")
    parser.add_argument("--max-parallel-jobs", type=int, default=1, help="Worker concurrency.")
    parser.add_argument(
        "--poll",
        type=float,
        default=None,
        metavar="SECONDS",
        help="With --worker, keep polling for new paid jobs until interrupted.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = SQLiteJobStore(args.db_path)
    object_store = LocalObjectStore(args.storage_dir) if args.storage_dir else None
    controller = PipelineController(
        store,
        services=build_default_services(object_store=object_store),
        settings=PipelineSettings.from_env(),
    )
    runner = BookJobRunner(controller)

    if args.worker:
        worker = BookGenerationWorker(
            runner,
            max_parallel_jobs=args.max_parallel_jobs,
            poll_interval=args.poll or 5.0,
        )
        if args.poll is not None:
            stop_event = threading.Event()
            try:
                worker.run_forever(stop_event)
            except KeyboardInterrupt:
                stop_event.set()
            return 0
        processed = worker.run_until_idle()
        print(f"Processed {len(processed)} job(s).")
        return 0

    if args.intake:
        intake = load_intake_file(args.intake)
        if args.scenes is not None:
            intake = intake.with_scene_count(args.scenes)
        job = store.create_job(intake, status=JobStatus.PAID)
        job_id = job.id
        print(f"Created job {job_id}")
    else:
        job_id = args.resume

    tracker = ProgressTracker()
    try:
        book = runner.run(job_id, progress_callback=tracker)
    except PictureBookError as exc:
        print(f"Generation failed: {exc.user_message}", file=sys.stderr)
        print(f"Resume with: python scripts/run_book_job.py --resume {job_id}", file=sys.stderr)
        return 1
    finally:
        tracker.close()

    output_path = Path(args.output)
    output_path.write_text(
        yaml.safe_dump(book, sort_keys=False, allow_unicode=True), encoding="utf-8"
    )
    print(f"Saved book to {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
