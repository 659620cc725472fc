#!/usr/bin/env python3
"""
Index Tool

Builds secondary index rows for existing data and verifies them against
their data rows, with support for:
- Verification before and/or after the rebuild, or verification only
- Tenant-scoped runs over tenant views
- Incremental rebuilds bounded by a time window or lookback
- Snapshot reads and foreground/background execution
- Pre-split provisioning of new index tables

Usage:
    ./scripts/index_tool.py -s SALES -dt ORDERS -it ORDERS_BY_CUSTOMER --catalog catalog.yaml
    ./scripts/index_tool.py -s SALES -dt ORDERS -it ORDERS_BY_CUSTOMER -v BEFORE -runfg
    ./scripts/index_tool.py -dt ACME_EVENTS -it ACME_EVENTS_BY_KIND -tenant acme -v ONLY
    ./scripts/index_tool.py --config index_tool.yaml --catalog catalog.yaml -op ./out
"""

import sys
import os
import argparse
import logging
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import yaml
from hvac.exceptions import VaultError

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.indexing import Catalog, DisableLoggingType, IndexTool, IndexToolConfig, SetupError, VerifyType
from src.monitoring import AlertRuleGenerator, IndexToolMetrics
from src.storage import open_storage
from src.utils.correlation import get_correlation_id, setup_correlation_logging
from src.utils.vault_client import VaultClient


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with correlation ID support."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', None) or get_correlation_id() or 'N/A',
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


logger = logging.getLogger("index_tool")


def configure_logging(verbose: bool = False) -> None:
    """Console logging for the whole tool, JSON lines when JSON_LOGGING=true."""
    handler = logging.StreamHandler()
    if os.getenv('JSON_LOGGING', 'false').lower() == 'true':
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(correlation_id)s] %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
    setup_correlation_logging(handler)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build and verify secondary index tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument("-s", "--schema", dest="schema", help="Schema of the data and index tables")
    parser.add_argument("-dt", "--data-table", dest="data_table", help="Data table or tenant view name")
    parser.add_argument("-it", "--index-table", dest="index_table", help="Index table name")
    parser.add_argument("-tenant", "--tenant-id", dest="tenant_id",
                        help="Run against the tenant's view and row prefix")
    parser.add_argument("-direct", "--direct-api", dest="direct_api", action="store_true", default=None,
                        help="Build through the client API instead of server-pushed builds")
    parser.add_argument("-v", "--verify", dest="verify_type",
                        choices=[v.value for v in VerifyType], type=str.upper,
                        help="Verification mode (default: NONE)")
    parser.add_argument("-snap", "--snapshot", dest="use_snapshot", action="store_true", default=None,
                        help="Read data rows from a snapshot taken at job start")
    parser.add_argument("-runfg", "--run-foreground", dest="run_foreground", action="store_true",
                        default=None, help="Wait for the job to finish (default)")
    parser.add_argument("-runbg", "--run-background", dest="run_foreground", action="store_false",
                        help="Return right after the job is submitted")
    parser.add_argument("-st", "--start-time", dest="start_time", type=int,
                        help="Only rebuild data row versions at or after this epoch ms")
    parser.add_argument("-et", "--end-time", dest="end_time", type=int,
                        help="Read timestamp in epoch ms (default: now)")
    parser.add_argument("-dl", "--disable-logging", dest="disable_logging_type",
                        choices=[d.value for d in DisableLoggingType], type=str.upper,
                        help="Verification phases not written to the output table")
    parser.add_argument("-sp", "--sampling-rate", dest="sampling_rate", type=int,
                        help="Percent of data rows sampled to pre-split a new index table")
    parser.add_argument("-spa", "--split-above", dest="split_above_regions", type=int,
                        help="Only pre-split when the data table has more regions than this")
    parser.add_argument("-rv", "--incremental-lookback", dest="incremental_lookback_ms", type=int,
                        help="Rebuild versions newer than end time minus this many ms")
    parser.add_argument("-op", "--output-path", dest="output_path",
                        help="Directory for <job id>.json job results")
    parser.add_argument("--page-size", dest="page_size", type=int, help="Data rows per page")
    parser.add_argument("--workers", dest="max_workers", type=int, help="Concurrent split workers")

    parser.add_argument("--storage-url", default=os.getenv("INDEX_TOOL_STORAGE_URL", "memory://"),
                        help="Storage cluster URL (env: INDEX_TOOL_STORAGE_URL)")
    parser.add_argument("--catalog", help="YAML file with table, view and index definitions")
    parser.add_argument("--config", help="YAML file with index tool options")
    parser.add_argument("--vault-path", default=os.getenv("INDEX_TOOL_VAULT_PATH"),
                        help="Vault secret path holding storage credentials (env: INDEX_TOOL_VAULT_PATH)")
    parser.add_argument("--pushgateway", default=os.getenv("PUSHGATEWAY_URL"),
                        help="Prometheus Pushgateway to push run metrics to (env: PUSHGATEWAY_URL)")
    parser.add_argument("--metrics-port", type=int, default=os.getenv("METRICS_PORT"),
                        help="Serve run metrics over HTTP on this port (env: METRICS_PORT)")
    parser.add_argument("--export-alert-rules", metavar="PATH",
                        help="Write the Prometheus alert rules for index tool metrics and exit")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    return parser


def load_config(args: argparse.Namespace) -> IndexToolConfig:
    if args.config:
        overrides = {
            name: getattr(args, name, None)
            for name in IndexToolConfig.__dataclass_fields__
        }
        return IndexToolConfig.from_yaml(args.config, **overrides)
    if not args.data_table or not args.index_table:
        raise SetupError("Both --data-table and --index-table are required without --config")
    return IndexToolConfig.from_args(args)


def load_catalog(path: Optional[str]) -> Catalog:
    if not path:
        logger.warning("No catalog file given; the catalog is empty")
        return Catalog()
    with open(path, 'r') as f:
        return Catalog.from_dict(yaml.safe_load(f) or {})


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    if args.export_alert_rules:
        AlertRuleGenerator().export_to_yaml(args.export_alert_rules)
        return 0

    try:
        config = load_config(args)
        catalog = load_catalog(args.catalog)
    except (OSError, yaml.YAMLError, SetupError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    credentials = None
    if args.vault_path:
        try:
            with VaultClient() as vault:
                vault_status = vault.status()
                if not vault_status:
                    logger.error(f"Vault is not usable: {vault_status.error}")
                    return 1
                credentials = vault.get_storage_credentials(args.vault_path).as_dict()
        except (ValueError, VaultError) as e:
            logger.error(f"Failed to read storage credentials: {e}")
            return 1

    metrics = IndexToolMetrics()
    if args.metrics_port:
        metrics.start_server(args.metrics_port)
    storage = open_storage(args.storage_url, credentials)
    try:
        tool = IndexTool(storage, catalog, metrics=metrics)
        status = tool.run(config)
        if tool.job is not None:
            logger.info(f"Job {tool.job.job_id} status={status} counters={tool.job.counters()}")
            if not config.run_foreground:
                # the process owns the worker threads, so wait before exiting
                tool.wait()
    finally:
        storage.close()

    if args.pushgateway:
        try:
            metrics.push(args.pushgateway)
        except OSError as e:
            logger.warning(f"Failed to push metrics to {args.pushgateway}: {e}")

    return status


if __name__ == "__main__":
    sys.exit(main())
