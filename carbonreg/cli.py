#!/usr/bin/env python3
"""
Carbon Credit Registry CLI

Command-line access to the registry's pure operations and to an in-memory
registry driven by an operation batch.

Usage:
    carbonreg <command> [subcommand] [options]

Commands:
    fingerprint   Derive the uniqueness fingerprint of a credit key
    describe      Render or parse a canonical credit descriptor
    replay        Apply a YAML/JSON operation batch to a fresh registry
    config        Configuration management

Exit codes:
    0   success
    1   unexpected failure
    2   invalid input (bad arguments, malformed batch, registry error)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from carbonreg import __version__
from carbonreg import descriptor as descriptors
from carbonreg.auth import SingleAdministrator
from carbonreg.config import ConfigError, get_config, get_config_manager
from carbonreg.events import RegistryEventSink
from carbonreg.fingerprint import derive, encode_key_fields
from carbonreg.hardening import RegistryError
from carbonreg.ledger import InMemoryAssetLedger
from carbonreg.lifecycle import LifecycleController, RegistryState
from carbonreg.observability import (
    RegistryLayer,
    configure_logging,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from carbonreg.schema import REPLAY_SCHEMA, validate_against_schema
from carbonreg.store import CreditAttributes, CreditCategory, CreditRecord

logger = get_logger("cli", RegistryLayer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return _format_text(data)


def _format_text(data: Any, indent: int = 0) -> str:
    pad = "  " * indent
    if isinstance(data, dict):
        lines = []
        for key, value in data.items():
            if isinstance(value, (dict, list)) and value:
                lines.append(f"{pad}{key}:")
                lines.append(_format_text(value, indent + 1))
            else:
                lines.append(f"{pad}{key}: {value}")
        return "\n".join(lines)
    elif isinstance(data, list):
        return "\n".join(
            f"{pad}- {json.dumps(item, default=str) if isinstance(item, (dict, list)) else item}"
            for item in data
        )
    return f"{pad}{data}"


def _load_document(path: Path) -> Any:
    """Load a YAML or JSON document (JSON is a subset of YAML)."""
    if not path.exists():
        raise CLIError(f"File not found: {path}", exit_code=2)
    with open(path, encoding="utf-8") as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise CLIError(f"Invalid YAML/JSON in {path}: {e}", exit_code=2) from e


class RegistryCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="carbonreg",
            description="Carbon credit registry CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"carbonreg {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=[f.value for f in OutputFormat],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--log-level",
            choices=["debug", "info", "warning", "error", "critical"],
            help="Override observability.log_level",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        self._register_fingerprint_command()
        self._register_describe_command()
        self._register_replay_command()
        self._register_config_commands()

    def _register_fingerprint_command(self) -> None:
        fp = self.subparsers.add_parser("fingerprint", help="Derive a uniqueness fingerprint")
        fp.add_argument("--category", required=True, help="Fixation, ReducedEmission or Other")
        fp.add_argument("--longitude", type=int, required=True, help="Signed fixed-point longitude")
        fp.add_argument("--latitude", type=int, required=True, help="Signed fixed-point latitude")
        fp.add_argument("--start", type=int, required=True, help="Start timestamp")
        fp.add_argument("--end", type=int, required=True, help="End timestamp")
        fp.add_argument("--preimage", action="store_true", help="Include the encoded preimage")

    def _register_describe_command(self) -> None:
        describe = self.subparsers.add_parser("describe", help="Render or parse a descriptor")
        mode = describe.add_mutually_exclusive_group(required=True)
        mode.add_argument("--decode", "-d", metavar="DESCRIPTOR", help="Parse a descriptor string")
        mode.add_argument("--attributes", "-a", metavar="FILE", help="Render attributes from a YAML/JSON file")
        describe.add_argument("--verified", action="store_true", help="Render as verified")

    def _register_replay_command(self) -> None:
        replay = self.subparsers.add_parser("replay", help="Apply an operation batch")
        replay.add_argument("file", help="YAML or JSON batch file")
        replay.add_argument("--events", action="store_true", help="Include the emitted event log")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., registry.administrator)")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        token = set_correlation_id(generate_correlation_id())
        try:
            self._configure(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (RegistryError, ConfigError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 2

        except Exception as e:
            logger.error("Command failed", error_code="CLI_FAILURE", exc_info=True, command=parsed.command)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

        finally:
            token.var.reset(token)

    def _configure(self, args: argparse.Namespace) -> None:
        manager = get_config_manager()
        if args.config:
            manager.load_from_file(args.config)
        else:
            manager.load_defaults()

        observability = manager.config.observability
        configure_logging(
            level=args.log_level or observability.log_level.get(),
            fmt=observability.log_format.get(),
        )

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip(), exit_code=2)

        return handler(args)

    # Fingerprint / descriptor handlers
    def _handle_fingerprint(self, args: argparse.Namespace) -> Any:
        category = CreditCategory.parse(args.category)
        fingerprint = derive(category, args.longitude, args.latitude, args.start, args.end)
        result: Dict[str, Any] = {
            "category": category.value,
            "longitude": args.longitude,
            "latitude": args.latitude,
            "start_date": args.start,
            "end_date": args.end,
            "fingerprint": fingerprint.hex(),
        }
        if args.preimage:
            result["preimage"] = encode_key_fields(
                category, args.longitude, args.latitude, args.start, args.end,
            ).hex()
        return result

    def _handle_describe(self, args: argparse.Namespace) -> Any:
        if args.decode is not None:
            try:
                parsed = descriptors.decode(args.decode)
            except descriptors.DescriptorError as e:
                raise CLIError(f"Invalid descriptor: {e}", exit_code=2) from e
            return {
                "verified": parsed.verified,
                "category": parsed.category.value,
                "longitude": parsed.longitude,
                "latitude": parsed.latitude,
                "start_date": parsed.start_date,
                "end_date": parsed.end_date,
                "co2_equivalent": parsed.co2_equivalent,
            }

        data = _load_document(Path(args.attributes))
        if not isinstance(data, dict):
            raise CLIError("Attributes file must contain a mapping", exit_code=2)
        attributes = CreditAttributes.from_dict(data)
        attributes.validate(get_config().registry.max_species_length.get()).raise_if_invalid()
        record = CreditRecord(credit_id=0, attributes=attributes, verified=args.verified)
        return {"descriptor": descriptors.encode(record)}

    # Replay handler
    def _handle_replay(self, args: argparse.Namespace) -> Any:
        batch = _load_document(Path(args.file))
        errors = validate_against_schema(batch, REPLAY_SCHEMA)
        if errors:
            raise CLIError("Invalid operation batch:\n  " + "\n  ".join(errors), exit_code=2)

        section = get_config().registry
        administrator = batch.get("administrator") or section.administrator.get()
        start_paused = batch.get("start_paused", section.start_paused.get())

        ledger = InMemoryAssetLedger()
        sink = RegistryEventSink()
        registry = LifecycleController(
            SingleAdministrator(administrator),
            ledger,
            sink,
            name=section.name.get(),
            symbol=section.symbol.get(),
            state=RegistryState.PAUSED if start_paused else RegistryState.ACTIVE,
            max_species_length=section.max_species_length.get(),
        )

        outcomes = [
            self._apply_operation(registry, ledger, administrator, index, operation)
            for index, operation in enumerate(batch["operations"])
        ]
        failed = sum(1 for o in outcomes if o["status"] == "error")
        logger.info(
            "Batch replayed",
            operation="replay",
            path=args.file,
            operations=len(outcomes),
            failed=failed,
        )

        credits = []
        for record in registry.records():
            credits.append({
                "credit_id": record.credit_id,
                "owner": ledger.owner_of(record.credit_id) if ledger.exists(record.credit_id) else None,
                "verified": record.verified,
                "transfer_locked": record.transfer_locked,
                "descriptor": registry.descriptor(record.credit_id),
            })

        result: Dict[str, Any] = {
            "operations": outcomes,
            "summary": {"applied": len(outcomes) - failed, "failed": failed},
            "registry": registry.statistics(),
            "credits": credits,
        }
        if args.events:
            result["events"] = [
                {
                    "sequence": r.sequence_number,
                    "stream": r.stream_id,
                    "version": r.version,
                    "event_type": r.event.event_type,
                    "payload": r.event.payload(),
                }
                for r in sink.store.read_all(max_count=sink.store.total_events)
            ]
        return result

    def _apply_operation(
        self,
        registry: LifecycleController,
        ledger: InMemoryAssetLedger,
        administrator: str,
        index: int,
        operation: Dict[str, Any],
    ) -> Dict[str, Any]:
        op = operation["op"]
        caller = operation.get("caller", administrator)
        outcome: Dict[str, Any] = {"index": index, "op": op}

        try:
            if op == "issue":
                outcome["credit_id"] = registry.issue(operation["owner"], operation["attributes"])
            elif op == "verify":
                registry.set_verification(operation["credit_id"], operation["status"], caller)
            elif op == "lock":
                registry.lock_transfer(operation["credit_id"], caller)
            elif op == "pause":
                registry.pause(caller)
            elif op == "unpause":
                registry.unpause(caller)
            elif op == "transfer":
                ledger.transfer(operation["from"], operation["to"], operation["credit_id"])
            elif op == "burn":
                ledger.burn(operation["holder"], operation["credit_id"])
        except RegistryError as e:
            outcome.update(status="error", error_code=e.code, message=str(e))
            return outcome

        outcome["status"] = "ok"
        return outcome

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return mgr.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        errors = mgr.validate()
        if errors:
            raise CLIError("Invalid configuration:\n  " + "\n  ".join(errors), exit_code=2)
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return mgr.export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = RegistryCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
