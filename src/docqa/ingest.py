from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys

from docqa.config import get_settings
from docqa.db import get_engine, init_db
from docqa.services.rag.embedding_client import build_embedding_client
from docqa.services.rag.index_store import IndexStore
from docqa.services.rag.ingest import pipeline_factory_from_settings
from docqa.services.rag.jobs import (
    IngestionAlreadyRunning,
    create_ingestion_job,
    run_ingestion_job,
)

EXIT_FAILED = 1
EXIT_ALREADY_RUNNING = 2


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="docqa-ingest",
        description="Rebuild the document index from the corpus directory",
    )
    parser.add_argument(
        "--docs-dir",
        default=settings.docs_dir,
        help="Corpus directory containing .pdf/.docx/.md/.txt documents",
    )
    parser.add_argument(
        "--index-path",
        default=settings.index_path,
        help="Output path of the persisted JSON index",
    )
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s [%(name)s] %(message)s")

    engine = get_engine()
    init_db()
    source_dir = Path(args.docs_dir)

    try:
        factory = pipeline_factory_from_settings(
            settings,
            index_store=IndexStore(Path(args.index_path), default_dim=settings.embedding_dim),
            embedding_client=build_embedding_client(settings),
        )
    except ValueError as exc:
        print(f"[docqa-ingest] invalid configuration: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(EXIT_FAILED) from exc

    try:
        job_id = create_ingestion_job(
            engine,
            source_dir=source_dir,
            stale_seconds=settings.ingest_stale_seconds,
        )
    except IngestionAlreadyRunning as exc:
        print(
            f"[docqa-ingest] ingestion already running (job {exc.existing_job_id})",
            file=sys.stderr,
            flush=True,
        )
        raise SystemExit(EXIT_ALREADY_RUNNING) from exc

    try:
        metrics = run_ingestion_job(
            engine,
            job_id,
            source_dir=source_dir,
            pipeline_factory=factory,
            progress_every=settings.ingest_progress_every,
        )
    except Exception as exc:
        print(f"[docqa-ingest] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(EXIT_FAILED) from exc

    print(json.dumps({"job_id": job_id, **metrics}), flush=True)


if __name__ == "__main__":
    main()
