#!/usr/bin/env python3
"""
usage-telemetry CLI entry point.
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from usage_telemetry import __version__
from usage_telemetry.logging_config import setup_logging
from usage_telemetry.preferences import TelemetryPreferences
from usage_telemetry.settings import SETTINGS_FILE_ENV_VAR, TelemetrySettings


def load_settings(config_path: Optional[str]) -> TelemetrySettings:
    """Settings from a YAML file (argument or USAGE_TELEMETRY_SETTINGS_FILE), else the environment."""
    config_path = config_path or os.environ.get(SETTINGS_FILE_ENV_VAR)
    if config_path:
        return TelemetrySettings.from_file(config_path)
    return TelemetrySettings.from_env()


def print_status(preferences: TelemetryPreferences, as_json: bool = False) -> None:
    status = preferences.get_status()

    if as_json:
        print(json.dumps(status, indent=2))
        return

    print(f"Telemetry Status: {status['status']}")
    print(f"Anonymous ID:     {status['user_id']}")
    print(f"First Run:        {status['first_run'] or 'Unknown'}")
    print(f"Config Path:      {status['config_path']}")
    print()
    print("To opt out: usage-telemetry disable")
    print("To opt in:  usage-telemetry enable")
    print("Or set USAGE_TELEMETRY_DISABLED=true")


def handle_config_command(args: argparse.Namespace) -> int:
    if args.generate:
        if not args.config:
            print("Error: --generate requires --config PATH", file=sys.stderr)
            return 1
        TelemetrySettings().save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return 0

    settings = load_settings(args.config)
    shown = settings.model_dump()
    if shown.get("backend_key"):
        shown["backend_key"] = "***"
    print(yaml.dump({"telemetry": shown}, default_flow_style=False), end="")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="usage-telemetry",
        description="Manage anonymous usage telemetry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show whether telemetry is enabled and the anonymous ID
  usage-telemetry status

  # Opt out
  usage-telemetry disable

  # Write a default settings file
  usage-telemetry config --generate --config ~/.usage-telemetry/config.yml

  # Use it for the pipeline
  export USAGE_TELEMETRY_SETTINGS_FILE=~/.usage-telemetry/config.yml
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config-dir",
        help="Directory holding telemetry.json (default: ~/.usage-telemetry)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("status", help="Show telemetry status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    subparsers.add_parser("enable", help="Enable anonymous telemetry")
    subparsers.add_parser("disable", help="Disable anonymous telemetry")

    config_parser = subparsers.add_parser("config", help="Show or generate pipeline settings")
    config_parser.add_argument(
        "--config",
        help="Path to a YAML settings file (the pipeline reads it from USAGE_TELEMETRY_SETTINGS_FILE)",
    )
    config_parser.add_argument(
        "--generate",
        action="store_true",
        help="Write default settings to --config and exit",
    )

    args = parser.parse_args(argv)
    setup_logging(console_level="DEBUG" if args.verbose else "INFO", verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "config":
        return handle_config_command(args)

    preferences = TelemetryPreferences(Path(args.config_dir) if args.config_dir else None)

    if args.command == "enable":
        preferences.enable()
    elif args.command == "disable":
        preferences.disable()
    else:
        print_status(preferences, as_json=args.json)

    return 0


if __name__ == "__main__":
    sys.exit(main())
