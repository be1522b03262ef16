"""
Command-line interface for chromatrial.

Provides commands for:
- Running the experiment server
- Regenerating the trial sequence of a session seed
- Exporting the results log
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Colour discrimination experiment server",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run experiment server")
    serve_parser.add_argument(
        "--host",
        default=None,
        help="Host address (default: HOST setting)"
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port number (default: PORT setting)"
    )
    serve_parser.add_argument(
        "--debug",
        action="store_true",
        help="Run in debug mode"
    )

    # Stimuli command
    stimuli_parser = subparsers.add_parser(
        "stimuli", help="Regenerate the trial sequence for a seed"
    )
    seed_group = stimuli_parser.add_mutually_exclusive_group(required=True)
    seed_group.add_argument(
        "--seed",
        help="Session seed as a hex string"
    )
    seed_group.add_argument(
        "--session",
        help="Session token, or its logged 8-character prefix, to look up in the results log"
    )
    stimuli_parser.add_argument(
        "--log",
        type=Path,
        default=None,
        help="Results log for --session (default: RESULTS_LOG_PATH setting)"
    )
    stimuli_parser.add_argument(
        "--n-trials",
        type=int,
        default=None,
        help="Number of trials (default: TRIAL_COUNT setting)"
    )
    stimuli_parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/stimuli/trial_sequence.json"),
        help="Output file"
    )

    # Export command
    export_parser = subparsers.add_parser("export", help="Export the results log")
    export_parser.add_argument(
        "--log",
        type=Path,
        default=None,
        help="Results log (default: RESULTS_LOG_PATH setting)"
    )
    export_parser.add_argument(
        "--format",
        choices=["csv", "json"],
        default="csv",
        help="Export format"
    )
    export_parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output file (default: data/exports/results_<timestamp>.<format>)"
    )

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    # Route to appropriate handler
    if args.command == "serve":
        run_server(args)
    elif args.command == "stimuli":
        run_stimuli(args)
    elif args.command == "export":
        run_export(args)


def run_server(args):
    """Run the experiment server with the session janitor."""
    from config.settings import get_config
    from experiment.backend.app import create_app

    config = get_config()
    host = args.host or config.host
    port = args.port or config.port

    logger.info(f"Starting experiment server on {host}:{port} ({config.base_url})")

    app = create_app(config, start_janitor=True)
    app.run(host=host, port=port, debug=args.debug or config.debug, threaded=True)


def find_session_record(log_path: Path, token: str):
    """Return the SessionRecord logged for a session token or token prefix."""
    from chromatrial.data.models import SessionRecord
    from chromatrial.data.result_log import ResultLog

    if not token:
        raise LookupError("Session token must not be empty")

    matches = [
        SessionRecord.from_dict(data)
        for data in ResultLog(log_path).iter_records(kind=SessionRecord.KIND)
        if data.get("session_token", "").startswith(token)
    ]
    if not matches:
        raise LookupError(f"No session record for {token!r} in {log_path}")
    if len({m.session_token for m in matches}) > 1:
        raise LookupError(f"Session prefix {token!r} is ambiguous in {log_path}")
    return matches[0]


def run_stimuli(args):
    """
    Write the deterministic trial sequence of a seed to JSON.

    With ``--session`` the seed and sampling policy are taken from the
    session record in the results log, so the output matches what the
    participant was shown.
    """
    from config.settings import get_config
    from chromatrial.experiment.stimuli import (
        StimulusGenerator,
        policy_from_config,
        policy_from_description,
        seed_from_hex,
    )
    from chromatrial.utils.helpers import save_json

    app_config = get_config()
    exp_config = app_config.experiment
    n_trials = args.n_trials or exp_config.trial_count

    seed_hex = args.seed
    policy = policy_from_config(exp_config)
    if args.session:
        log_path = args.log or app_config.results.path
        try:
            record = find_session_record(log_path, args.session)
            policy = policy_from_description(record.policy)
        except (LookupError, ValueError) as e:
            logger.error(str(e))
            sys.exit(2)
        seed_hex = record.seed_hex

    try:
        seed = seed_from_hex(seed_hex)
    except ValueError:
        logger.error(f"Seed must be a non-negative hex string, got {seed_hex!r}")
        sys.exit(2)

    generator = StimulusGenerator(
        policy=policy,
        size_px=exp_config.stimulus_size_px,
        shape=exp_config.stimulus_shape,
    )
    logger.info(f"Generating {n_trials} trials with {generator.policy.describe()}")

    save_json(
        {
            "seed": seed_hex,
            "session": args.session,
            "policy": generator.policy.describe(),
            "trials": generator.generate_sequence(seed, n_trials),
        },
        args.output,
    )


def run_export(args):
    """Export the results log."""
    from config.settings import EXPORTS_DIR, get_config
    from chromatrial.data.export import export_results
    from chromatrial.utils.helpers import get_timestamp

    log_path = args.log or get_config().results.path
    output = args.output or EXPORTS_DIR / f"results_{get_timestamp()}.{args.format}"

    logger.info(f"Exporting {log_path} in {args.format} format...")
    export_results(log_path, output, fmt=args.format)


if __name__ == "__main__":
    main()
