"""Command-line entry point for ``firestarter``.

Flags use a single dash (``-c``, ``-tests-only``), as operators type them on
the bench; the double-dash spellings are accepted too.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from firestarter import __version__
from firestarter.config import load_config
from firestarter.console import OutputManager
from firestarter.decisions import ConsoleDecisionProvider, NonInteractiveDecisionProvider
from firestarter.errors import FirestarterError
from firestarter.flash_data import parse_presets
from firestarter.orchestrator import MODE_FLASH_ONLY, MODE_FULL, MODE_TESTS_ONLY, Orchestrator

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="firestarter",
        description="Hardware validation and provisioning: run diagnostic tests, then flash identity data.",
    )
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to configuration file")
    parser.add_argument("-V", "--version", action="store_true", help="Show version")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-tests-only", "--tests-only", dest="tests_only", action="store_true",
                      help="Run only tests (skip flashing)")
    mode.add_argument("-flash-only", "--flash-only", dest="flash_only", action="store_true",
                      help="Run only flashing (skip tests)")
    parser.add_argument("-non-interactive", "--non-interactive", dest="non_interactive", action="store_true",
                        help="Never prompt: failed tests are kept, failed flash operations abort, "
                             "confirmations are declined")
    parser.add_argument("-value", "--value", dest="values", action="append", default=[], metavar="ID=VALUE",
                        help="Preset a flash field value (repeatable)")
    parser.add_argument("-debug", "--debug", dest="debug", action="store_true", help="Verbose logging")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the ``firestarter`` CLI.

    Returns:
        Exit code: 0 on success, 1 on a failed required test, a failed flash
        operation, or a precondition/config error.
    """
    if argv is None:
        argv = sys.argv[1:]
    args = _build_parser().parse_args(argv)

    if args.version:
        print(__version__)
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    output = OutputManager()
    output.header("Session")
    if args.tests_only:
        mode = MODE_TESTS_ONLY
    elif args.flash_only:
        mode = MODE_FLASH_ONLY
    else:
        mode = MODE_FULL

    try:
        config = load_config(args.config)
        presets = parse_presets(args.values)
    except FirestarterError as exc:
        output.error(f"Failed to load configuration: {exc}")
        return 1

    decisions = NonInteractiveDecisionProvider() if args.non_interactive else ConsoleDecisionProvider()
    orchestrator = Orchestrator(config, decisions=decisions, output=output, mode=mode, presets=presets)
    try:
        return orchestrator.run()
    except FirestarterError as exc:
        logger.debug("session stopped", exc_info=True)
        output.error(str(exc))
        return 1
    except KeyboardInterrupt:
        output.error("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
