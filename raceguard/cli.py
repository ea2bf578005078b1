"""
Command-line driver for RaceGuard.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from raceguard.analyzer import AnalysisResult, RaceAnalyzer, __version__
from raceguard.config import AnalysisConfig
from raceguard.model import Confidence
from raceguard.report import build_json_report, format_analysis_report

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TOO_MANY_HIGH = 1
EXIT_ANALYSIS_ERROR = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="raceguard",
        description="RaceGuard: compositional static data-race analyzer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  raceguard methods.json
  raceguard --output report.txt a.json b.json
  raceguard --json results.json --ci-mode methods.json
  raceguard --strict --min-confidence HIGH --max-high 3 --ci-mode methods.json

Exit Codes:
  0: Success
  1: More HIGH confidence races than --max-high (CI mode)
  3: Analysis error
""",
    )

    parser.add_argument("files", nargs="*", help="JSON files with method records")
    parser.add_argument("--output", "-o", help="Output file for the report")
    parser.add_argument("--json", help="Output JSON report to file")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Treat methods without thread evidence as not concurrently reachable",
    )
    parser.add_argument(
        "--budget", type=int, default=None, help="Per-method lock-set step budget"
    )
    parser.add_argument(
        "--min-confidence",
        choices=[c.value for c in Confidence],
        default=Confidence.LOW.value,
        help="Drop findings below this confidence",
    )
    parser.add_argument(
        "--workers", type=int, default=None, help="Thread pool size for the analysis"
    )
    parser.add_argument(
        "--ci-mode",
        action="store_true",
        help="Run in CI mode with non-zero exit on issues",
    )
    parser.add_argument(
        "--max-high",
        type=int,
        default=0,
        help="Maximum allowed HIGH confidence races (CI mode)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging and stack traces"
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="Suppress non-essential output"
    )
    parser.add_argument("--version", action="version", version=f"RaceGuard {__version__}")
    return parser


def configure_logging(debug: bool = False, quiet: bool = False) -> None:
    if debug:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.files:
        parser.print_help()
        return EXIT_ANALYSIS_ERROR

    configure_logging(args.debug, args.quiet)

    try:
        config = AnalysisConfig(
            strict_thread_context=args.strict,
            per_method_budget=args.budget,
            min_confidence=Confidence(args.min_confidence),
            workers=args.workers,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ANALYSIS_ERROR

    logger.debug("Running with %s", config)
    analyzer = RaceAnalyzer(config)
    all_results: List[Tuple[str, AnalysisResult]] = []
    reports: List[str] = []
    total_high = 0
    failed = False

    for filepath in args.files:
        path = Path(filepath)
        if not args.quiet:
            print(f"Analyzing {path}...")

        result = analyzer.analyze_file(path)
        all_results.append((str(path), result))
        total_high += result.metrics.get("high_confidence_races", 0)
        reports.append(format_analysis_report(result, str(path)))

        if result.errors:
            failed = True
            for error in result.errors:
                print(f"Error: {error}", file=sys.stderr)

    report = "\n\n".join(reports)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(report)
        if not args.quiet:
            print(f"Report saved to {args.output}")
    else:
        print(report)

    if args.json and all_results:
        with open(args.json, "w", encoding="utf-8") as f:
            json.dump(build_json_report(all_results), f, indent=2)
        if not args.quiet:
            print(f"JSON report saved to {args.json}")

    if failed:
        return EXIT_ANALYSIS_ERROR

    if args.ci_mode:
        if total_high > args.max_high:
            print(
                f"⚠️  CI FAILURE: {total_high} high confidence races found "
                f"(max allowed: {args.max_high})"
            )
            return EXIT_TOO_MANY_HIGH
        print("✅ CI PASSED: No blocking data races found")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
