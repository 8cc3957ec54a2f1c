"""Command-line entry point for the data-move engine."""

import argparse
import asyncio
import json
import logging
import sys

from . import constants
from .models.config import DataMoveConfig, EndpointConfig, EngineSettings
from .models.job import ReportLevel
from .models.run import RunStatus
from .orchestrator import DataMoveOrchestrator

logger = logging.getLogger(__name__)


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Data Move Engine - Move related records between Salesforce orgs and CSV files"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run a data move
    run_parser = subparsers.add_parser("data-move", help="Run the data move described by a script file")
    run_parser.add_argument(
        "--config-path", "-p", default=constants.DEFAULT_CONFIG_PATH, help="Path to the script file"
    )
    run_parser.add_argument("--work-dir", help="Working directory (default: datamove next to the script)")
    run_parser.add_argument("--source-instance-url", help="Source org instance URL")
    run_parser.add_argument("--source-access-token", help="Source org access token")
    run_parser.add_argument("--target-instance-url", help="Target org instance URL")
    run_parser.add_argument("--target-access-token", help="Target org access token")
    run_parser.add_argument("--csv-source", metavar="DIR", help="Read source records from CSV files in DIR")
    run_parser.add_argument("--csv-target", metavar="DIR", help="Write target records to CSV files in DIR")
    run_parser.add_argument("--api-version", default=constants.DEFAULT_API_VERSION, help="Salesforce API version")
    run_parser.add_argument("--settings", help="JSON file overriding engine settings")
    run_parser.add_argument(
        "--child-query-rounds",
        type=int,
        default=constants.CHILD_QUERY_RETRY_ROUNDS,
        help="Rounds of child object queries",
    )
    run_parser.add_argument(
        "--report-level",
        choices=[level.value for level in ReportLevel],
        default=ReportLevel.ERRORS.value,
        help="Which record results go to the status files",
    )
    run_parser.add_argument(
        "--continue-on-error", action="store_true", help="Keep going when a transfer fails"
    )
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "data-move":
        sys.exit(run_data_move(args))
    else:
        parser.print_help()


def build_config(args) -> DataMoveConfig:
    """Build the run configuration from parsed arguments and the environment."""
    source = EndpointConfig.from_dict(
        {
            "instance_url": args.source_instance_url,
            "access_token": args.source_access_token,
            "csv_dir": args.csv_source,
            "api_version": args.api_version,
        },
        "source",
        "SOURCE",
    )
    target = EndpointConfig.from_dict(
        {
            "instance_url": args.target_instance_url,
            "access_token": args.target_access_token,
            "csv_dir": args.csv_target,
            "api_version": args.api_version,
        },
        "target",
        "TARGET",
    )

    engine = EngineSettings()
    if args.settings:
        with open(args.settings) as f:
            engine = EngineSettings.from_dict(json.load(f))

    return DataMoveConfig(
        config_path=args.config_path,
        work_dir=args.work_dir,
        source=source,
        target=target,
        child_query_rounds=args.child_query_rounds,
        report_level=ReportLevel(args.report_level),
        continue_on_error=args.continue_on_error,
        engine=engine,
    )


def run_data_move(args) -> int:
    """Run a data move and print its summary. Returns the process exit code."""
    config = build_config(args)
    orchestrator = DataMoveOrchestrator(config)
    result = asyncio.run(orchestrator.run_data_move())

    print("\n" + "=" * 60)
    print("DATA MOVE COMPLETE" if result.status == RunStatus.COMPLETED else "DATA MOVE FAILED")
    print("=" * 60)
    print(f"Status: {result.status.value}")
    print(f"Records Processed: {result.total_records_processed}")
    print(f"Succeeded: {result.total_records_succeeded}")
    print(f"Failed: {result.total_records_failed}")
    if result.duration_seconds:
        print(f"Duration: {result.duration_seconds:.2f} seconds")
    for error in result.errors:
        print(f"Error: {error['error']}")
    if result.report_path:
        print(f"Report: {result.report_path}")

    return 0 if result.status == RunStatus.COMPLETED else 1


if __name__ == "__main__":
    main()
