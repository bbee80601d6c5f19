"""
Roster Sync Tool

Synchronises the membership roster into the hosted directory with support for:
- Snapshot-based change detection
- Rate-limited, batched directory writes
- Dry-run mode writing an intended-actions report
- Status, error reporting and alert rule generation

Usage:
    rostersync sync --config config.yaml
    rostersync sync --config config.yaml --dry-run
    rostersync status --config config.yaml
    rostersync report --config config.yaml
    rostersync alerts --output alerts.yml
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from rostersync.config import SyncConfig, load_group_specs, resolve_access_token
from rostersync.directory.client import DirectoryClient
from rostersync.errors import SetupError, SnapshotSchemaError
from rostersync.monitoring.alerts import AlertRuleGenerator
from rostersync.monitoring.metrics import SyncMetrics
from rostersync.runner import SyncRunner, build_snapshot_store
from rostersync.utils.run_context import setup_run_logging
from rostersync.utils.vault_client import VaultClient

logger = logging.getLogger("rostersync")


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter carrying the run id."""

    def format(self, record):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", "N/A"),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def configure_logging(verbose: bool = False, environ: Optional[Dict[str, str]] = None) -> logging.Handler:
    """
    Attach one handler to the package logger.

    JSON lines are emitted when ``JSON_LOGGING=true``; otherwise a
    human-readable console format is used.
    """
    environ = os.environ if environ is None else environ

    handler = logging.StreamHandler()
    if environ.get("JSON_LOGGING", "false").lower() == "true":
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "[%(asctime)s] %(levelname)s [%(run_id)s] %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
    setup_run_logging(handler)

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
    return handler


def load_config(path: Optional[str], dry_run: bool = False) -> SyncConfig:
    config = SyncConfig.from_file(path)
    if dry_run:
        config.dry_run = True
    config.validate()
    return config


def run_sync(config: SyncConfig) -> Dict[str, Any]:
    """Build the run's collaborators from configuration and execute one run."""
    group_specs = load_group_specs(config.group_specs_path)
    token = resolve_access_token(config)
    snapshot_store = build_snapshot_store(config, vault_factory=VaultClient)
    metrics = SyncMetrics()

    with DirectoryClient(token, base_url=config.directory_base_url) as client:
        runner = SyncRunner(config, client, snapshot_store, group_specs, metrics=metrics)
        summary = runner.run()

    return summary.as_dict()


def get_status(config: SyncConfig) -> Dict[str, Any]:
    """Summarise the stored snapshot and the pending error report."""
    status: Dict[str, Any] = {
        "dry_run_default": config.dry_run,
        "snapshot_backend": config.snapshot_backend,
    }

    try:
        snapshot = build_snapshot_store(config, vault_factory=VaultClient).load()
        status["snapshot"] = (
            {"members": len(snapshot), "written_at": snapshot.written_at}
            if snapshot is not None else None
        )
    except SnapshotSchemaError as e:
        status["snapshot"] = {"error": str(e)}

    status["error_report"] = _read_json(config.error_report_path, summary_only=True)
    return status


def get_report(config: SyncConfig) -> Dict[str, Any]:
    report = _read_json(config.error_report_path)
    return report if report is not None else {"error_count": 0, "entries": []}


def _read_json(path: str, summary_only: bool = False) -> Optional[Dict[str, Any]]:
    report_path = Path(path)
    if not report_path.exists():
        return None
    with open(report_path, "r") as f:
        document = json.load(f)
    if summary_only:
        return {"generated_at": document.get("generated_at"), "error_count": document.get("error_count", 0)}
    return document


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Roster to directory synchronisation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one synchronisation")
    sync_parser.add_argument("--config", "-c", help="Path to the YAML configuration")
    sync_parser.add_argument("--dry-run", action="store_true", help="Record intended actions without writing")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show snapshot and error report status")
    status_parser.add_argument("--config", "-c", help="Path to the YAML configuration")

    # Report command
    report_parser = subparsers.add_parser("report", help="Print the accumulated error report")
    report_parser.add_argument("--config", "-c", help="Path to the YAML configuration")

    # Alerts command
    alerts_parser = subparsers.add_parser("alerts", help="Generate Prometheus alert rules")
    alerts_parser.add_argument("--output", "-o", help="Write rules to this file instead of stdout")
    alerts_parser.add_argument("--stale-after-hours", type=int, default=36, help="Hours before a run is stale")

    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "sync":
            config = load_config(args.config, dry_run=args.dry_run)
            print(json.dumps(run_sync(config), indent=2))

        elif args.command == "status":
            print(json.dumps(get_status(load_config(args.config)), indent=2))

        elif args.command == "report":
            print(json.dumps(get_report(load_config(args.config)), indent=2))

        elif args.command == "alerts":
            generator = AlertRuleGenerator(stale_after_hours=args.stale_after_hours)
            if args.output:
                generator.write(args.output)
            else:
                print(generator.to_yaml())

        return 0

    except SetupError as e:
        logger.error(f"Setup failed: {e}", exc_info=args.verbose)
        return 2

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        return 1


if __name__ == "__main__":
    sys.exit(main())
