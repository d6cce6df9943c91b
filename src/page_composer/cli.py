"""
Command-line interface for page-composer.

This file focuses on parsing arguments and dispatching to the real work in
compose.py. Keeping this separate makes the code easier to read and test.
"""

from __future__ import annotations

import argparse
import asyncio
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List

from . import __version__
from .config import dump_default_engine_yaml, load_engine_settings
from .utils import UserError, normalize_path


TOP_LEVEL_EXAMPLES = """Examples:
  python -m page_composer compose --inputs "scan1.png" "book.pdf" --out "out/composed.pdf"
  python -m page_composer compose --inputs "a.png" "b.png" "c.png" --out "out.pdf" --order "3,1,2"
  python -m page_composer merge --pdfs "part1.pdf" "part2.pdf" --out "whole.pdf"
  python -m page_composer resize --pdf "slides.pdf" --steps "portrait" --out "slides_portrait.pdf"
  python -m page_composer config --dump-default
"""

COMPOSE_EXAMPLES = """Examples:
  python -m page_composer compose --inputs "scan.png" --out "scan.pdf" --rotate "1:90"
  python -m page_composer compose --inputs "long.png" --out "pages.pdf" --split "1:1200,1:2400"
  python -m page_composer compose --inputs "book.pdf" "cover.png" --out "book2.pdf" --order "2,1" --overwrite
  python -m page_composer compose --inputs "a.png" --out "a.pdf" --config "configs/engine.yaml" --dry-run
"""

MERGE_EXAMPLES = """Examples:
  python -m page_composer merge --pdfs "part1.pdf" "part2.pdf" --out "whole.pdf"
  python -m page_composer merge --pdfs "a.pdf" "b.pdf" "c.pdf" --out "abc.pdf" --overwrite --manifest "logs/merge.json"
"""

RESIZE_EXAMPLES = """Examples:
  python -m page_composer resize --pdf "scan.pdf" --steps "top:36,left:18" --out "scan_margins.pdf"
  python -m page_composer resize --pdf "deck.pdf" --steps "portrait" --page 3 --out "deck2.pdf"
  python -m page_composer resize --pdf "book.pdf" --steps "landscape,reset,bottom:20" --out "book2.pdf" --overwrite
"""


def _verbosity_from_args(args: argparse.Namespace) -> str:
    """Resolve global verbosity mode from top-level flags."""

    if getattr(args, "quiet", False):
        return "quiet"
    if getattr(args, "verbose", False):
        return "verbose"
    return "normal"


def _add_output_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--out", required=True, help="Output PDF path.")
    parser.add_argument("--config", help="Optional YAML config for engine settings.")
    parser.add_argument("--overwrite", action="store_true", help="Overwrite an existing output PDF.")
    parser.add_argument("--dry-run", action="store_true", help="Show actions without writing files.")
    parser.add_argument(
        "--manifest",
        help="Manifest path (default: next to the output, <out stem>.manifest.json).",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="page-composer",
        description="Compose images and PDF pages into edited PDFs (rotate, split, reorder, merge, resize).",
        epilog=TOP_LEVEL_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=__version__)
    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress non-error console logs.",
    )
    verbosity_group.add_argument(
        "--verbose",
        action="store_true",
        help="Show debug-level console logs.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    compose_parser = subparsers.add_parser(
        "compose",
        help="Build one PDF from images and PDF pages.",
        epilog=COMPOSE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    compose_parser.add_argument(
        "--inputs",
        nargs="+",
        required=True,
        help="Images and/or PDFs, in page order.",
    )
    compose_parser.add_argument(
        "--rotate",
        help='Clockwise rotations like "1:90,3:270" (1-based page numbers).',
    )
    compose_parser.add_argument(
        "--split",
        help='Horizontal cut lines like "1:400,1:800" (page:y in raster pixels).',
    )
    compose_parser.add_argument(
        "--order",
        help='Final page order like "3,1,2"; must list every page exactly once.',
    )
    compose_parser.add_argument(
        "--state-dir",
        help="Optional folder where the session index is saved after each edit.",
    )
    _add_output_flags(compose_parser)

    merge_parser = subparsers.add_parser(
        "merge",
        help="Concatenate whole PDFs.",
        epilog=MERGE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    merge_parser.add_argument("--pdfs", nargs="+", required=True, help="Input PDFs, in order.")
    _add_output_flags(merge_parser)

    resize_parser = subparsers.add_parser(
        "resize",
        help="Add margins to or change the orientation of PDF pages.",
        epilog=RESIZE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    resize_parser.add_argument("--pdf", required=True, help="Input PDF.")
    resize_parser.add_argument(
        "--steps",
        required=True,
        help='Steps applied in order, like "top:20,left:10,portrait" (margins in PDF points); '
        '"landscape" and "reset" are also accepted.',
    )
    resize_parser.add_argument(
        "--page",
        type=int,
        help="Only resize this page (1-based; default: every page).",
    )
    _add_output_flags(resize_parser)

    config_parser = subparsers.add_parser("config", help="Inspect engine configuration.")
    config_parser.add_argument(
        "--dump-default",
        action="store_true",
        help="Print the default engine YAML config and exit.",
    )

    return parser


def _command_string(argv: list[str]) -> str:
    """Reconstruct a command string for the manifest."""

    return subprocess.list2cmdline(argv)


def _command_argv_for_manifest(argv: list[str] | None) -> list[str]:
    """Choose argv used to record manifest command faithfully."""

    if argv is None:
        return list(sys.argv)
    return [sys.argv[0], *argv]


def _options_for_manifest(args: argparse.Namespace) -> Dict[str, Any]:
    """Build a JSON-friendly options dict from the parsed arguments."""

    options: Dict[str, Any] = {}
    for key, value in vars(args).items():
        if isinstance(value, Path):
            options[key] = str(value)
        else:
            options[key] = value
    options["version"] = __version__
    return options


def _manifest_path(args: argparse.Namespace, out_pdf: Path) -> Path:
    if args.manifest:
        return normalize_path(args.manifest)
    return out_pdf.with_name(f"{out_pdf.stem}.manifest.json")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "config":
            if not args.dump_default:
                raise UserError("config needs --dump-default.")
            print(dump_default_engine_yaml())
            return 0

        command_string = _command_string(_command_argv_for_manifest(argv))
        options = _options_for_manifest(args)
        options["verbosity"] = _verbosity_from_args(args)

        config_path = normalize_path(args.config) if args.config else None
        settings = load_engine_settings(config_path)
        out_pdf = normalize_path(args.out)
        manifest_path = _manifest_path(args, out_pdf)

        if args.command == "compose":
            from .compose import compose_document

            inputs: List[Path] = [normalize_path(value) for value in args.inputs]
            asyncio.run(
                compose_document(
                    inputs=inputs,
                    out_pdf=out_pdf,
                    settings=settings,
                    rotations_spec=args.rotate,
                    split_spec=args.split,
                    order_spec=args.order,
                    overwrite=args.overwrite,
                    dry_run=args.dry_run,
                    manifest_path=manifest_path,
                    command_string=command_string,
                    options=options,
                    state_dir=normalize_path(args.state_dir) if args.state_dir else None,
                )
            )
            return 0

        if args.command == "merge":
            from .compose import merge_pdfs

            asyncio.run(
                merge_pdfs(
                    pdfs=[normalize_path(value) for value in args.pdfs],
                    out_pdf=out_pdf,
                    settings=settings,
                    overwrite=args.overwrite,
                    dry_run=args.dry_run,
                    manifest_path=manifest_path,
                    command_string=command_string,
                    options=options,
                )
            )
            return 0

        if args.command == "resize":
            from .compose import resize_pdf

            asyncio.run(
                resize_pdf(
                    pdf=normalize_path(args.pdf),
                    out_pdf=out_pdf,
                    settings=settings,
                    steps_spec=args.steps,
                    page=args.page,
                    overwrite=args.overwrite,
                    dry_run=args.dry_run,
                    manifest_path=manifest_path,
                    command_string=command_string,
                    options=options,
                )
            )
            return 0

        raise UserError("Unknown command. Use --help for usage.")
    except UserError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
