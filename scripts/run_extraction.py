#!/usr/bin/env python3
"""Extraction CLI script.

Runs a schema-driven extraction over text documents and writes the rolled-up
object tree as JSON. Pages within a document are separated by form feeds.

Usage:
    python scripts/run_extraction.py --schema schema.json claim.txt
    python scripts/run_extraction.py --schema schema.json --directory data/raw/ -o out.json
    python scripts/run_extraction.py --schema schema.json --task-definition 3 notes.txt

Options:
    --schema, -s: JSON schema describing the objects to extract
    --directory, -d: Process all .txt/.md files in directory
    --task-definition: Reuse an existing task definition (and its cached plan)
    --output, -o: Where to write the rollup JSON (default: stdout)
    --config, -c: Path to config file (default: config/config.yaml)
    --verbose, -v: Enable verbose logging
"""

import argparse
import json
import sys
from pathlib import Path

from loguru import logger

from docgraph.pipeline.extraction_runner import ExtractionRunner, SourceDocument
from docgraph.utils.config import load_config

TEXT_SUFFIXES = {".txt", ".md", ".markdown"}


def find_text_files(paths: list[Path]) -> list[Path]:
    """Find all text documents in the given files and directories."""
    found: list[Path] = []
    for path in paths:
        if path.is_file():
            if path.suffix.lower() in TEXT_SUFFIXES:
                found.append(path)
            else:
                logger.warning(f"Skipping unsupported file: {path}")
        elif path.is_dir():
            for suffix in sorted(TEXT_SUFFIXES):
                found.extend(path.rglob(f"*{suffix}"))
        else:
            logger.warning(f"Path does not exist: {path}")
    return sorted({p.resolve() for p in found})


def main():
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Extract structured objects from documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("paths", nargs="*", type=Path, help="Text documents to process")
    parser.add_argument("--schema", "-s", type=Path, help="JSON schema file")
    parser.add_argument("--directory", "-d", type=Path, help="Directory containing documents")
    parser.add_argument(
        "--task-definition", type=int, help="Existing task definition id to run again"
    )
    parser.add_argument("--name", default=None, help="Task definition name (default: schema title)")
    parser.add_argument("--output", "-o", type=Path, help="Write the rollup JSON to this file")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    paths = list(args.paths or [])
    if args.directory:
        paths.append(args.directory)
    if not paths:
        parser.error("No documents specified. Use --help for usage.")
    if args.schema is None and args.task_definition is None:
        parser.error("Either --schema or --task-definition is required.")

    log_level = "DEBUG" if args.verbose else "INFO"
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=log_level,
    )

    try:
        logger.info(f"Loading configuration from {args.config}")
        config = load_config(args.config)

        log_file = Path(config.logging.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation=f"{config.logging.max_size_mb} MB",
            retention=config.logging.backup_count,
            level="DEBUG",
            serialize=config.logging.format == "json",
        )

        files = find_text_files(paths)
        if not files:
            logger.error("No supported documents found to process")
            return 1

        documents = [
            SourceDocument.from_text(path.name, path.read_text(encoding="utf-8")) for path in files
        ]
        logger.info(f"Loaded {len(documents)} documents ({sum(len(d.pages) for d in documents)} pages)")

        with ExtractionRunner(config) as runner:
            definition_id = args.task_definition
            if definition_id is None:
                schema = json.loads(args.schema.read_text(encoding="utf-8"))
                name = args.name or schema.get("title") or args.schema.stem
                definition_id = runner.create_task_definition(name, schema, schema_name=name)

            run_id = runner.start_run(definition_id, documents)
            result = runner.run_until_idle(run_id)

        if not result.completed:
            logger.error(f"Run {run_id} stopped in phase '{result.phase}'")
            return 1

        rollup = json.dumps(result.rollup, indent=2, default=str)
        if args.output:
            args.output.write_text(rollup, encoding="utf-8")
            logger.info(f"Wrote rollup to {args.output}")
        else:
            print(rollup)

        logger.info(
            f"Run {run_id} complete: {result.processes_run} processes, "
            f"{result.rollup['summary']['total_objects']} objects"
        )
        return 0

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Extraction failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
