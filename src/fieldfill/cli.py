"""Command-line interface for the field classification core."""

import json
import sys
from pathlib import Path
from urllib.parse import urlparse

from fieldfill.config import CoreConfig, settings
from fieldfill.core import AutofillCore
from fieldfill.logging_config import setup_logging
from fieldfill.snapshot import snapshots_from_html
from fieldfill.storage import MemoryBackend, get_backend


def _build_core(args) -> AutofillCore:
    config = CoreConfig.from_file(args.config) if getattr(args, "config", None) else CoreConfig.from_env()
    if getattr(args, "storage", None):
        backend = get_backend("sqlite", db_path=args.storage)
    else:
        backend = MemoryBackend()
    return AutofillCore(
        config=config,
        backend=backend,
        load_default_rules=getattr(args, "defaults", False),
    )


def _write_output(output: str, output_file: str | None) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        print(f"Results written to {output_file}")
    else:
        print(output)


def print_detections(hostname: str, rows: list[dict]) -> None:
    """Print detections as a table.

    Args:
        hostname: Page hostname
        rows: Per-element dicts with element and detection data
    """
    print(f"\n{'=' * 72}")
    print(f"Form fields on: {hostname or '(no host)'}")
    print(f"{'=' * 72}")
    if not rows:
        print("\nNo fillable form controls found.")
    for row in rows:
        field = row["field"]
        label = row["name"] or row["id"] or row["label"] or f"#{row['position']}"
        print(
            f"  {label[:28]:<28} {field['type']:<12} {field['confidence']:<8} "
            f"{field['method']:<12} {field['score']:.2f}"
        )
    print(f"{'=' * 72}\n")


def classify_command(args):
    """Classify every form control in an HTML file."""
    html_path = Path(args.file)
    if not html_path.exists():
        print(f"Error: {html_path} does not exist")
        sys.exit(1)

    core = _build_core(args)
    rules_path = args.rules or settings.SITE_RULES_PATH
    if rules_path:
        result = core.load_site_rules_file(rules_path)
        for error in result.errors:
            print(f"⚠️  Rule discarded: {error.message}")

    hostname = args.host or (urlparse(args.url).hostname if args.url else "") or ""
    session_id = args.session or ("cli" if args.url else None)
    _, snapshots = snapshots_from_html(
        html_path.read_text(encoding="utf-8"),
        hostname=hostname,
        session_id=session_id,
        step_marker=args.url,
    )

    rows = []
    for snapshot in snapshots:
        detected = core.classify(snapshot)
        if detected is None:
            continue
        row = {
            "name": snapshot.name,
            "id": snapshot.id,
            "label": snapshot.label,
            "position": snapshot.position,
            "field": detected.to_dict(),
        }
        if args.explain:
            row["explain"] = core.explain(snapshot)
        rows.append(row)

    if args.output == "json":
        _write_output(json.dumps(rows, indent=2, default=str), args.output_file)
    else:
        print_detections(hostname, rows)

    core.close()


def rules_command(args):
    """Validate a site rules file."""
    core = _build_core(args)
    result = core.load_site_rules_file(args.file)

    if args.output == "json":
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"\n✅ Loaded {len(result.loaded)} rules")
        for hostname in result.loaded:
            print(f"  • {hostname}")
        if result.errors:
            print(f"\n❌ Discarded {len(result.errors)} rules")
            for error in result.errors:
                print(f"  • {error.pattern}: {error.message}")
    core.close()

    if result.errors:
        sys.exit(1)


def stats_command(args):
    """Show cache and storage statistics."""
    core = _build_core(args)
    stats = {
        "caches": core.get_cache_stats(),
        "storage": core.storage_stats(),
        "config": core.config.to_dict(),
    }
    print(json.dumps(stats, indent=2, default=str))
    core.close()


def main():
    """Main CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="fieldfill - Classify web form fields and inspect the classification core"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL.upper(),
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=settings.LOG_FILE,
        help="Write logs to file in addition to console",
    )
    parser.add_argument(
        "--config",
        help="JSON file with core settings (default: environment variables)",
    )
    parser.add_argument(
        "--storage",
        help="SQLite file for learned corrections and profile (default: in-memory)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    classify_parser = subparsers.add_parser(
        "classify", help="Classify the form controls of an HTML file."
    )
    classify_parser.add_argument("file", help="HTML file to classify")
    classify_parser.add_argument("--host", default="", help="Hostname the page was served from")
    classify_parser.add_argument("--session", help="Page session id for multi-step rules")
    classify_parser.add_argument(
        "--url",
        help="Page URL; picks the matching step of a multi-step rule (and the host if --host is omitted)",
    )
    classify_parser.add_argument("--rules", help="YAML site rules file")
    classify_parser.add_argument(
        "--defaults",
        action="store_true",
        help="Load the bundled site rules",
    )
    classify_parser.add_argument(
        "--explain",
        action="store_true",
        help="Include per-type pattern scores (json output)",
    )
    classify_parser.add_argument(
        "--output",
        "-o",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    classify_parser.add_argument(
        "--output-file",
        "-f",
        help="Write output to file (only for json format)",
    )
    classify_parser.set_defaults(func=classify_command)

    rules_parser = subparsers.add_parser("rules", help="Validate a YAML site rules file.")
    rules_parser.add_argument("file", help="YAML site rules file")
    rules_parser.add_argument(
        "--output",
        "-o",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    rules_parser.set_defaults(func=rules_command)

    stats_parser = subparsers.add_parser("stats", help="Show cache and storage statistics.")
    stats_parser.set_defaults(func=stats_command)

    args = parser.parse_args()

    # Configure logging based on flags
    setup_logging(
        level=args.log_level,
        log_file=getattr(args, 'log_file', None),
    )

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
