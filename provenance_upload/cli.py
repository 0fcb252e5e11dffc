"""
Command-line interface for the upload pipeline.
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import aiohttp

from .coordinator import UploadCoordinator
from .models import ConfirmationState, DEFAULT_ESPLORA_URL, UploadConfig, UploadSummary
from .timestamps import OpenTimestampsAgent

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: Whether to enable debug logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def load_config(config_file: Optional[Path] = None) -> dict:
    """Load configuration from a JSON file.

    Args:
        config_file: Path to config file

    Returns:
        Dictionary of configuration values
    """
    if not config_file:
        return {}

    try:
        with open(config_file) as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading config file: {e}")
        return {}


def create_config(args: argparse.Namespace) -> UploadConfig:
    """Build the upload configuration from the config file and flags.

    Command-line flags win over values from the config file.

    Args:
        args: Command line arguments

    Returns:
        Validated UploadConfig
    """
    config = load_config(args.config)

    overrides = {
        'base_url': args.base_url,
        'max_active': args.concurrency,
        'retry_attempts': args.attempts,
        'log_dir': args.log_dir,
    }
    config.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_proof:
        config['proofs'] = False
    if args.no_auth_check:
        config['check_auth'] = False
    if args.calendar:
        config['calendar_urls'] = args.calendar

    return UploadConfig(**config)


def print_summary(summary: UploadSummary) -> None:
    for result in summary.results:
        mark = "✓" if result.success else "✗"
        line = f"{mark} {result.name}  {result.fingerprint[:12] or '-'}  proof={result.proof_phase.value}"
        if result.error:
            line += f"  ({result.error})"
        print(line)
    print(f"{summary.successful_uploads}/{summary.total_files} files uploaded")


async def run_upload(args: argparse.Namespace) -> UploadSummary:
    config = create_config(args)
    async with UploadCoordinator(config) as coordinator:
        summary = await coordinator.upload_paths(
            [Path(p) for p in args.paths],
            pattern=args.pattern,
            upload_id=args.upload_id,
        )
        for attempt in range(args.retries):
            if not coordinator.tracker.failed_entities():
                break
            logger.info(f"Retry round {attempt + 1} of {args.retries}")
            await coordinator.retry_failed()
            summary = coordinator.tracker.summary(summary.upload_id)
    return summary


def handle_upload(args: argparse.Namespace) -> None:
    """Handle the upload command.

    Args:
        args: Command line arguments
    """
    try:
        summary = asyncio.run(run_upload(args))
    except KeyboardInterrupt:
        logger.info("Upload interrupted by user")
        sys.exit(130)

    print_summary(summary)
    if summary.failed_uploads:
        sys.exit(1)


async def run_status(args: argparse.Namespace):
    artifact = Path(args.proof).read_bytes()
    config = load_config(args.config)
    async with aiohttp.ClientSession() as session:
        agent = OpenTimestampsAgent(
            session,
            calendar_urls=config.get('calendar_urls'),
            esplora_url=args.esplora or config.get('esplora_url', DEFAULT_ESPLORA_URL),
        )
        status = await agent.query_status(artifact)

    if status.upgraded_artifact is not None and args.upgrade:
        Path(args.proof).write_bytes(status.upgraded_artifact)
        logger.info(f"Wrote upgraded proof to {args.proof}")
    return status


def handle_status(args: argparse.Namespace) -> None:
    """Handle the status command.

    Args:
        args: Command line arguments
    """
    status = asyncio.run(run_status(args))
    if status.state is ConfirmationState.CONFIRMED:
        print(f"confirmed on {status.chain} at block {status.block_height}"
              + (f" (time {status.block_time})" if status.block_time else ""))
    elif status.state is ConfirmationState.PENDING:
        print("pending confirmation")
    else:
        print(f"indeterminate: {status.detail}")
        sys.exit(1)


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Upload files with timestamp proofs")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="Enable verbose logging")
    parser.add_argument('-c', '--config', type=Path,
                        help="Path to config file")

    subparsers = parser.add_subparsers(dest='command', required=True)

    # Upload command
    upload_parser = subparsers.add_parser('upload',
                                          help="Upload files and folders")
    upload_parser.add_argument('base_url', type=str,
                               help="URL of the destination folder")
    upload_parser.add_argument('paths', nargs='+',
                               help="Files or folders to upload")
    upload_parser.add_argument('-i', '--upload-id', type=str,
                               help="Label for the run log")
    upload_parser.add_argument('-p', '--pattern', type=str,
                               default="*", help="File pattern to match inside folders")
    upload_parser.add_argument('-k', '--concurrency', type=int,
                               help="Maximum simultaneous transfers")
    upload_parser.add_argument('-r', '--retries', type=int, default=0,
                               help="Rounds of resuming failed transfers")
    upload_parser.add_argument('--attempts', type=int,
                               help="Attempts per proof request on network errors")
    upload_parser.add_argument('--calendar', action='append',
                               help="Calendar URL (repeatable)")
    upload_parser.add_argument('--no-proof', action='store_true',
                               help="Skip timestamp proofs")
    upload_parser.add_argument('--no-auth-check', action='store_true',
                               help="Skip the authentication probe")
    upload_parser.add_argument('--log-dir', type=Path,
                               help="Directory for run logs")

    # Status command
    status_parser = subparsers.add_parser('status',
                                          help="Check a saved timestamp proof")
    status_parser.add_argument('proof', type=str,
                               help="Path to an .ots file")
    status_parser.add_argument('--esplora', type=str,
                               default=None, help="Block explorer API URL")
    status_parser.add_argument('--upgrade', action='store_true',
                               help="Write calendar upgrades back to the file")

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        if args.command == 'upload':
            handle_upload(args)
        elif args.command == 'status':
            handle_status(args)

    except (ValueError, OSError) as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
