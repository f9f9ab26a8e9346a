#!/usr/bin/env python3
"""CLI entry point for running Intent Specs."""
import argparse
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

from intentflow.errors import IntentSpecValidationError
from intentflow.executor.browser import PlaywrightBrowser
from intentflow.executor.orchestrator import ExecutionOrchestrator
from intentflow.executor.reasoning import LLMReasoningEngine
from intentflow.models.intent_spec import IntentSpec, validate_spec
from intentflow.recovery.solution_library import SolutionLibrary, SQLiteSolutionStore
from intentflow.reporting.reporter import FORMATS, render
from intentflow.utils.config import config


def _parse_params(parser: argparse.ArgumentParser, pairs: List[str]) -> Dict[str, str]:
    """KEY=VALUE pairs to a dict; later pairs win."""
    params = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            parser.error(f"--param expects KEY=VALUE, got '{pair}'")
        params[key.strip()] = value
    return params


class CancelOnInterrupt:
    """
    Routes Ctrl-C to a cooperative cancel so the report and audit log are finalized.

    A second Ctrl-C raises KeyboardInterrupt as usual.
    """

    def __init__(self, orchestrator: ExecutionOrchestrator):
        self.orchestrator = orchestrator
        self.interrupted = False
        self._previous = None

    def _handle(self, signum, frame):
        if self.interrupted or not self.orchestrator.cancel("interrupted"):
            raise KeyboardInterrupt
        self.interrupted = True
        print("\n\nInterrupted by user, stopping after the current action (Ctrl-C again to abort)")

    def __enter__(self):
        self._previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)
        return False


def _print_validation(spec: IntentSpec) -> bool:
    result = validate_spec(spec)
    for warning in result.warnings:
        print(f"  ⚠️  {warning}")
    for error in result.errors:
        print(f"  ❌ {error}")
    return result.is_valid


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="intentflow-run",
        description="Run an Intent Spec against a browser",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with parameters
  intentflow-run specs/login.json --param USERNAME=alice --param PASSWORD=secret

  # JSON report to a file, headless
  intentflow-run specs/login.json --format json --output report.json --headless

  # Only check the spec
  intentflow-run specs/login.json --validate-only
        """
    )

    parser.add_argument("spec", type=Path, help="Path to Intent Spec JSON file")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Parameter value (repeatable)"
    )
    parser.add_argument("--format", choices=FORMATS, default="text", help="Report format")
    parser.add_argument("--output", type=Path, help="Write the report to this file instead of stdout")
    parser.add_argument("--headless", action="store_true", help="Run browser in headless mode")
    parser.add_argument(
        "--halt-on-failure",
        action="store_true",
        help="Stop at the first failed step; remaining steps are skipped"
    )
    parser.add_argument(
        "--library",
        type=Path,
        help=f"Solution library database (default: {config.solution_db_path})"
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Print validation errors and warnings, then exit"
    )
    return parser


def main(argv: Optional[List[str]] = None):
    """Run an Intent Spec and print or save the report."""
    parser = build_parser()
    args = parser.parse_args(argv)
    parameters = _parse_params(parser, args.param)

    if not args.spec.exists():
        print(f"❌ Spec not found: {args.spec}")
        sys.exit(1)

    print(f"\nLoading spec: {args.spec}")
    try:
        spec = IntentSpec.load(args.spec)
    except IntentSpecValidationError as e:
        print("❌ Invalid Intent Spec:")
        for error in e.errors:
            print(f"  ❌ {error}")
        sys.exit(2)

    print(f"  Name: {spec.name}")
    print(f"  Steps: {len(spec.steps)}")
    print(f"  Parameters: {', '.join(spec.params) or '(none)'}")
    _print_validation(spec)

    if args.validate_only:
        print("✓ Spec is valid")
        return

    missing = spec.check_variables(parameters)
    if missing:
        print(f"\n❌ Missing required parameters: {missing}")
        for name in missing:
            print(f"  • --param {name}=<value>")
        sys.exit(1)

    library = SolutionLibrary(SQLiteSolutionStore(args.library))

    try:
        with PlaywrightBrowser(headless=args.headless) as browser:
            browser.launch()
            orchestrator = ExecutionOrchestrator(
                browser,
                engine=LLMReasoningEngine(),
                library=library,
                halt_on_failure=args.halt_on_failure or None,
            )
            with CancelOnInterrupt(orchestrator) as interrupt:
                report = orchestrator.execute(spec, parameters)

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)

    output = render(report, args.format)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(output)
        print(f"\n📄 Report written to {args.output}")
    else:
        print(output)

    if interrupt.interrupted:
        sys.exit(130)
    sys.exit(0 if report.overall_success else 1)


if __name__ == "__main__":
    main()
