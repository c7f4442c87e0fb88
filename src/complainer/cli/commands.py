"""
Command handlers for complainer CLI.

This module contains the implementation of each CLI command.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from tabulate import tabulate

from complainer.config import Config, ConfigError, init_config, split_list, to_positive_float
from complainer.health import HealthServer, resolve_listen_address
from complainer.labels import Labels
from complainer.matcher import build_matcher
from complainer.mesos import Cluster, ClusterError
from complainer.monitor import Monitor
from complainer.reporters import ReporterConfigError, build_reporters
from complainer.uploaders import build_uploader


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# =============================================================================
# Helper Functions
# =============================================================================

def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure the root logger for CLI use."""
    level_name = str(level or "INFO").upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handlers: List[logging.Handler]
    if log_file:
        handlers = [logging.FileHandler(log_file)]
    else:
        handlers = [logging.StreamHandler(sys.stderr)]

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, handlers=handlers, force=True)


def get_configured_config(args: Any) -> Config:
    """Get Config instance with CLI overrides applied and logging configured."""
    config = Config(config_path=getattr(args, "config", None))

    overrides = {
        "masters": getattr(args, "masters", None),
        "name": getattr(args, "name", None),
        "enabled_reporters": getattr(args, "reporters", None),
        "uploader.type": getattr(args, "uploader", None),
        "listen": getattr(args, "listen", None),
        "interval_seconds": getattr(args, "interval", None),
        "filter.allow": getattr(args, "allow", None),
        "filter.deny": getattr(args, "deny", None),
        "logging.level": getattr(args, "log_level", None),
        "logging.file": getattr(args, "log_file", None),
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)

    if getattr(args, "no_default", False):
        config.set("implicit_defaults", False)

    configure_logging(config.get("logging.level"), config.get("logging.file"))
    return config


def build_cluster(config: Config) -> Cluster:
    """Create the cluster reader from configuration."""
    return Cluster(
        config.get_masters(),
        timeout=to_positive_float(config.get("timeout_seconds"), 30.0),
    )


def build_monitor(config: Config) -> Monitor:
    """
    Assemble the monitor and its collaborators from configuration.

    Raises:
        ConfigError, ReporterConfigError, ValueError: On invalid settings.
    """
    reporter_settings = config.get_reporter_settings()
    if not reporter_settings:
        raise ConfigError("No reporters configured. Add a 'reporters' section or pass --reporters.")

    return Monitor(
        cluster=build_cluster(config),
        uploader=build_uploader(config.get_uploader_settings()),
        reporters=build_reporters(reporter_settings),
        name=str(config.get("name") or "default"),
        matcher=build_matcher(
            split_list(config.get("filter.allow")),
            split_list(config.get("filter.deny")),
        ),
        implicit_defaults=bool(config.get("implicit_defaults", True)),
    )


def _parse_labels(raw: List[str]) -> Dict[str, str]:
    """Parse KEY=VALUE label arguments. Values may be empty."""
    parsed: Dict[str, str] = {}
    for item in raw:
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        key = key.strip()
        if key:
            parsed[key] = value
    return parsed


# =============================================================================
# Commands
# =============================================================================

def cmd_init(args: Any) -> int:
    """Write a starter configuration file."""
    config_path = Path(args.config) if getattr(args, "config", None) else None
    try:
        path = init_config(
            path=config_path,
            overwrite=args.force,
            reporters={
                "file": {"path": "/dev/stderr"},
            },
        )
    except FileExistsError as exc:
        print(f"Error: {exc}")
        return 1

    print(f"Configuration written to {path}")
    return 0


def cmd_run(args: Any) -> int:
    """Poll the cluster and report failures until interrupted."""
    config = get_configured_config(args)

    try:
        monitor = build_monitor(config)
    except (ConfigError, ReporterConfigError, ValueError) as exc:
        logger.error("Cannot create monitor: %s", exc)
        return 1

    interval = to_positive_float(config.get("interval_seconds"), 5.0)

    listen = resolve_listen_address(config.get("listen"))
    server = None
    if listen and not args.once:
        try:
            server = HealthServer(monitor, listen)
            server.start()
        except (OSError, ValueError) as exc:
            logger.error("Error serving: %s", exc)
            return 1

    logger.info(
        "Watching %s as %r with reporters: %s",
        ", ".join(monitor.cluster.masters),
        monitor.name,
        ", ".join(monitor.reporters),
    )

    try:
        while True:
            try:
                summary = monitor.run()
            except ClusterError as exc:
                logger.error("Error running monitor: %s", exc)
                if args.once:
                    return 1
            else:
                logger.debug(
                    "Run complete: %d failures, %d reported, %d skipped, %d errors",
                    summary.failures,
                    len(summary.reported),
                    len(summary.skipped),
                    len(summary.errors),
                )
                if args.once:
                    return 0

            time.sleep(interval)
    finally:
        if server is not None:
            server.stop()


def cmd_failures(args: Any) -> int:
    """List failed tasks known to the leading master."""
    config = get_configured_config(args)

    try:
        cluster = build_cluster(config)
        matcher = build_matcher(
            split_list(config.get("filter.allow")),
            split_list(config.get("filter.deny")),
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    try:
        failures = cluster.failures()
    except ClusterError as exc:
        print(f"Error: {exc}")
        return 1

    failures = [failure for failure in failures if matcher.match(failure.framework)]
    failures.sort(key=lambda failure: failure.finished, reverse=True)

    if args.format == "json":
        print(json.dumps([failure.to_dict() for failure in failures], indent=2))
        return 0

    if not failures:
        print("No failed tasks found.")
        return 0

    rows = [
        [
            failure.name,
            failure.id,
            failure.framework,
            failure.slave,
            failure.state,
            failure.finished.strftime("%Y-%m-%d %H:%M:%S"),
        ]
        for failure in failures
    ]
    print(tabulate(rows, headers=["Task", "ID", "Framework", "Agent", "State", "Finished"], tablefmt="simple"))
    print(f"\nTotal: {len(failures)} failed tasks")
    return 0


def cmd_resolve(args: Any) -> int:
    """Print reporter instances and settings resolved from labels."""
    config = get_configured_config(args)
    name = str(args.name or config.get("name") or "default")
    implicit_defaults = bool(config.get("implicit_defaults", True))
    labels = Labels(name, _parse_labels(args.label), implicit_defaults=implicit_defaults)

    rows = []
    for reporter in args.reporter:
        instances = labels.instances(reporter)
        if not instances:
            rows.append([reporter, "(none)", "", ""])
            continue
        for instance in instances:
            if not args.key:
                rows.append([reporter, instance, "", ""])
            for key in args.key:
                rows.append([reporter, instance, key, labels.instance_value(reporter, instance, key)])

    print(f"Complainer name: {name}")
    print(tabulate(rows, headers=["Reporter", "Instance", "Key", "Value"], tablefmt="simple"))
    return 0
