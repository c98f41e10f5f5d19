import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from ceremony.errors import InputValidationError, SetupError
from ceremony.pipeline import PipelineReport, SetupPipeline
from config.config import ConfigurationError, SetupConfig, load_config, save_config
from utils.utils import create_performance_report, format_duration, setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Groth16 trusted setup: compile a circom circuit and run both ceremonies')
    parser.add_argument('--circom', type=str,
                        help='Path to the circuit source (e.g. circuits/Pinacle.circom)')
    parser.add_argument('--power', type=str,
                        help='Powers of tau exponent (e.g. 17, 18, 19...)')
    parser.add_argument('--config', type=str, default=None,
                        help='Config file path (default: config.yaml if present)')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    parser.add_argument('--log-file', type=str, default=None,
                        help='Log file (default: <log_dir>/zk_setup_<timestamp>.log)')
    parser.add_argument('--external-response', action='store_true',
                        help='Wait for an external contributor to supply the challenge response')
    parser.add_argument('--keep-intermediates', action='store_true',
                        help='Keep intermediate ceremony files after verification')
    parser.add_argument('--timeout', type=float, default=None,
                        help='Per-tool wall-clock timeout in seconds')
    parser.add_argument('--write-config', type=str, default=None, metavar='FILE',
                        help='Write the effective configuration to FILE and exit')
    return parser


def apply_overrides(config: SetupConfig, args: argparse.Namespace) -> SetupConfig:
    """Command line flags take precedence over the config file"""
    if args.log_level:
        config.log_level = args.log_level
    if args.external_response:
        config.ceremony.response_mode = "external"
    if args.keep_intermediates:
        config.keep_intermediates = True
    if args.timeout is not None:
        if args.timeout <= 0:
            raise ConfigurationError(f"--timeout must be positive, got {args.timeout}")
        config.tools.tool_timeout = args.timeout
    return config


def print_report(report: PipelineReport):
    print("\n" + "=" * 60)
    print("TRUSTED SETUP COMPLETED")
    print("=" * 60)
    for outcome in report.outcomes:
        status = "reused" if outcome.skipped else f"done in {format_duration(outcome.duration)}"
        print(f"  {outcome.stage.value:<8} {status}")

    print("\nGenerated files:")
    for role, path in report.artifact_paths().items():
        print(f"  {role}: {path}")
    if report.manifest:
        print(f"\nManifest: {report.manifest}")


def run(argv: Optional[List[str]] = None,
        pipeline_factory: Callable[[SetupConfig], SetupPipeline] = SetupPipeline) -> int:
    """Parse arguments, run the pipeline and return the process exit status"""
    args = build_parser().parse_args(argv)

    try:
        config = apply_overrides(load_config(args.config), args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.write_config:
        path = save_config(config, Path(args.write_config))
        print(f"Configuration written to {path}")
        return EXIT_OK

    setup_logging(config.log_level, Path(args.log_file) if args.log_file else None,
                  log_dir=config.log_path)

    try:
        pipeline = pipeline_factory(config)
        report = asyncio.run(pipeline.run(args.circom, args.power))
    except KeyboardInterrupt:
        logger.error("Interrupted; partial outputs are left for inspection")
        return EXIT_INTERRUPTED
    except (ConfigurationError, InputValidationError) as e:
        logger.error(f"Invalid input: {e}")
        print(f"\n Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except SetupError as e:
        logger.error(f"Setup failed: {e}")
        print(f"\n Setup failed: {e}", file=sys.stderr)
        return EXIT_FAILURE

    print_report(report)
    if report.executed:
        logger.info("\n" + create_performance_report(pipeline.monitor))
    return EXIT_OK


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
