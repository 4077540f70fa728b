#!/usr/bin/env python3
"""
Analyze a single evidence file from the command line.

Usage:
    python scripts/analyze_file.py ./auth.log --json
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from evidex.analysis import LoggingProgressNotifier
from evidex.config import load_config
from evidex.services import create_services


async def analyze(args) -> int:
    settings = load_config(args.config)
    services = await create_services(settings)
    services.orchestrator.notifier = LoggingProgressNotifier()

    try:
        evidence = Path(args.path)
        upload_id = await services.storage.save_file(evidence.name, evidence.read_bytes())

        options = services.default_options(
            preferred_parser_id=args.parser,
            map_to_mitre=False if args.no_mitre else None,
            generate_timeline=False if args.no_timeline else None,
        )
        outcome = await services.orchestrator.run(upload_id, options)
    finally:
        await services.close()

    analysis = outcome.analysis
    if args.json:
        print(json.dumps(analysis.model_dump(mode="json"), indent=2))
    elif outcome.succeeded:
        print(analysis.summary)
        if analysis.mitre and analysis.mitre.kill_chain_phases:
            print(f"Kill chain: {' -> '.join(analysis.mitre.kill_chain_phases)}")
    else:
        print(f"Analysis {analysis.status.value}: {outcome.message}")

    return 0 if outcome.succeeded else 1


def main():
    parser = argparse.ArgumentParser(description="Analyze an evidence file with Evidex")

    parser.add_argument("path", help="Evidence file to analyze")
    parser.add_argument(
        "--parser",
        help="Preferred parser id (json_lines, text_log)",
        default=None,
    )
    parser.add_argument(
        "--no-mitre",
        help="Skip MITRE ATT&CK mapping",
        action="store_true",
    )
    parser.add_argument(
        "--no-timeline",
        help="Skip timeline generation",
        action="store_true",
    )
    parser.add_argument(
        "--json",
        help="Print the full analysis as JSON",
        action="store_true",
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to config.yml",
        default="config.yml",
    )

    args = parser.parse_args()

    if not Path(args.path).is_file():
        print(f"Error: file not found: {args.path}")
        sys.exit(1)

    logging.basicConfig(
        level=logging.WARNING if args.json else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        stream=sys.stderr,
    )

    sys.exit(asyncio.run(analyze(args)))


if __name__ == "__main__":
    main()
