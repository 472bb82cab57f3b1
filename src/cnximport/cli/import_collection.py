"""CLI command that imports one collection archive into a media directory."""

from __future__ import annotations

import argparse
from dataclasses import replace
import json
import logging
import sys

from dotenv import load_dotenv

from cnximport.config import ImportSettings
from cnximport.errors import FatalImportError, HostRejected, RecoverableImportError
from cnximport.host import DirectoryMediaStore
from cnximport.pipeline import run_import

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import an OpenStax collection archive and print its entities")
    parser.add_argument("--source", required=True, help="Local archive path or remote URL")
    parser.add_argument("--media-dir", required=True, help="Directory that receives persisted media files")
    parser.add_argument("--timeout", type=float, default=None, help="Fetch and persistence timeout in seconds")
    parser.add_argument("--strict", action="store_true", help="Fail on the first recoverable warning")
    parser.add_argument(
        "--collapse-single-child-parts",
        action="store_true",
        help="Do not emit part markers for parts with a single child",
    )
    parser.add_argument("--workers", type=int, default=None, help="Maximum concurrent module workers")
    parser.add_argument("--log-level", default="WARNING", help="Logging level written to stderr")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        stream=sys.stderr,
    )

    try:
        settings = ImportSettings.from_env()
    except ValueError as exc:
        print(json.dumps({"source": args.source, "error": str(exc), "kind": "ConfigError"}, indent=2))
        return 1

    if args.collapse_single_child_parts:
        settings = replace(settings, collapse_single_child_parts=True)
    if args.workers is not None:
        if args.workers < 1:
            print(json.dumps({"source": args.source, "error": "--workers must be >= 1", "kind": "ConfigError"}, indent=2))
            return 1
        settings = replace(settings, max_module_workers=args.workers)

    try:
        result = run_import(
            args.source,
            timeout=args.timeout,
            strict=True if args.strict else None,
            media_store=DirectoryMediaStore(args.media_dir),
            settings=settings,
        )
    except (FatalImportError, RecoverableImportError, HostRejected) as exc:
        logger.error("Import failed: %s", exc)
        payload = {"source": args.source, "error": exc.message, "kind": exc.kind, "subject": exc.subject}
        print(json.dumps(payload, ensure_ascii=True, indent=2))
        return 1

    print(json.dumps(result.to_dict(), ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
