#!/usr/bin/env python3
"""
branchbox - Port Doctor for running many Docker Compose worktrees side by side

Finds hardcoded host ports in a Compose file and gives every Git worktree
its own deterministic set of host ports through a generated
docker-compose.override.yml.

Exit status (scan check and doctor --check share it):
    0   no hardcoded ports, or the requested action succeeded
    1   hardcoded ports found
    2   usage or runtime error
    130 aborted by user
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from branchbox_compose import ComposeScanner, find_compose_file
from branchbox_config import DoctorConfig
from branchbox_doctor import PortDoctor, PortDoctorError, format_report
from branchbox_ports import (
    PortAllocationError,
    PortAllocator,
    buckets_from_config,
    format_assignments,
    format_preview,
    render_override,
)
from branchbox_security import SecurityError, validate_worktree_name

# Setup logging
logger = logging.getLogger("branchbox")
handler = logging.StreamHandler()
formatter = logging.Formatter("%(levelname)s: %(message)s")
handler.setFormatter(formatter)
logger.addHandler(handler)
logger.setLevel(logging.INFO)

EXIT_OK = 0
EXIT_CONFLICT = 1
EXIT_ERROR = 2
EXIT_INTERRUPTED = 130


class BranchboxCLI:
    """Command line interface for the Port Doctor"""

    def __init__(self, input_func=input):
        self.input_func = input_func
        self.json_output = False

    def create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser"""
        parser = argparse.ArgumentParser(
            prog="branchbox",
            description="BranchBox Port Doctor - per-worktree host ports for Docker Compose",
        )
        parser.add_argument("--verbose", action="store_true", help="Verbose output")
        parser.add_argument("--json", action="store_true", help="JSON output")
        parser.add_argument(
            "--log-level",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            default="INFO",
            help="Set logging level (default: INFO)",
        )

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # scan command
        scan_parser = subparsers.add_parser(
            "scan", help="Find hardcoded ports in a Compose file"
        )
        scan_parser.add_argument("file", type=Path, help="Compose file")
        scan_parser.add_argument(
            "action",
            nargs="?",
            default="detect",
            choices=["detect", "services", "check"],
            help="detect: list mappings, services: list services, "
            "check: exit 1 if hardcoded ports exist",
        )

        # allocate command
        allocate_parser = subparsers.add_parser(
            "allocate", help="Show or generate port assignments for a worktree"
        )
        allocate_parser.add_argument("worktree", help="Worktree name")
        allocate_parser.add_argument(
            "action",
            nargs="?",
            default="preview",
            choices=["assignments", "preview", "generate"],
            help="assignments: service:host:container:bucket lines, "
            "preview: readable summary, generate: print override file",
        )
        allocate_parser.add_argument(
            "--compose-file",
            type=Path,
            help="Compose file (default: docker-compose.yml or compose.yml in current directory)",
        )

        # doctor command
        doctor_parser = subparsers.add_parser(
            "doctor", help="Port Doctor - detect and fix port conflicts between worktrees"
        )
        mode = doctor_parser.add_mutually_exclusive_group()
        mode.add_argument(
            "--check",
            action="store_true",
            help="Report hardcoded ports; exit 1 if any are found (no writes)",
        )
        mode.add_argument(
            "--fix",
            action="store_true",
            help="Write docker-compose.override.yml without prompting",
        )
        doctor_parser.add_argument(
            "--worktree", help="Worktree name (default: directory name)"
        )
        doctor_parser.add_argument("--yes", action="store_true", help="Skip confirmations")
        doctor_parser.add_argument(
            "directory", nargs="?", type=Path, default=Path("."), help="Worktree directory"
        )

        return parser

    def run(self, args: Optional[List[str]] = None) -> int:
        """Main entry point; returns the process exit status"""
        parser = self.create_parser()
        parsed_args = parser.parse_args(args)

        # Set logging level based on command-line argument
        logger.setLevel(getattr(logging, parsed_args.log_level))
        if parsed_args.verbose:
            logger.setLevel(logging.DEBUG)

        self.json_output = parsed_args.json

        try:
            if parsed_args.command == "scan":
                return self.cmd_scan(parsed_args)
            elif parsed_args.command == "allocate":
                return self.cmd_allocate(parsed_args)
            elif parsed_args.command == "doctor":
                return self.cmd_doctor(parsed_args)
            else:
                parser.print_help()
                return EXIT_OK

        except (PortDoctorError, PortAllocationError, SecurityError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        except KeyboardInterrupt:
            print("\nAborted by user", file=sys.stderr)
            return EXIT_INTERRUPTED

    def _emit_json(self, data) -> None:
        print(json.dumps(data, indent=2))

    def cmd_scan(self, args) -> int:
        """Scan a Compose file for hardcoded ports"""
        config = DoctorConfig(Path(os.path.abspath(args.file)).parent)
        scanner = ComposeScanner(
            service_indent=config.service_indent,
            property_indent=config.property_indent,
        )
        result = scanner.scan(args.file)

        if args.action == "detect":
            if self.json_output:
                self._emit_json([str(m) for m in result.mappings])
            else:
                for mapping in result.mappings:
                    print(mapping)
            return EXIT_OK

        if args.action == "services":
            if self.json_output:
                self._emit_json(result.services)
            else:
                for service in result.services:
                    print(service)
            return EXIT_OK

        # check
        if self.json_output:
            self._emit_json({"has_hardcoded_ports": result.has_hardcoded_ports})
        elif result.has_hardcoded_ports:
            print("Hardcoded ports detected")
        else:
            print("No hardcoded ports found")
        return EXIT_CONFLICT if result.has_hardcoded_ports else EXIT_OK

    def cmd_allocate(self, args) -> int:
        """Allocate ports for a worktree from the Compose file"""
        worktree = validate_worktree_name(args.worktree)

        compose_file = args.compose_file or find_compose_file(Path.cwd())
        if compose_file is None:
            logger.debug("No compose file found in current directory")
            compose_file = Path.cwd() / "docker-compose.yml"

        config = DoctorConfig(Path(os.path.abspath(compose_file)).parent)
        scanner = ComposeScanner(
            service_indent=config.service_indent,
            property_indent=config.property_indent,
        )
        allocator = PortAllocator(
            extra_buckets=buckets_from_config(config.buckets),
            reserved_ports=config.reserved_ports,
        )
        assignments = allocator.allocate(worktree, scanner.scan(compose_file).bindings)

        if args.action == "assignments":
            if self.json_output:
                self._emit_json([a.to_dict() for a in assignments])
            elif assignments:
                print(format_assignments(assignments))
        elif args.action == "preview":
            print(format_preview(worktree, assignments))
        else:
            print(render_override(worktree, assignments), end="")
        return EXIT_OK

    def cmd_doctor(self, args) -> int:
        """Check or fix port conflicts in a worktree directory"""
        doctor = PortDoctor(args.directory, worktree=args.worktree, input_func=self.input_func)
        report = doctor.check()

        # JSON output never prompts: without --fix or --yes it only reports
        report_only = args.check or (self.json_output and not (args.fix or args.yes))
        if report_only or not report.has_conflicts:
            if self.json_output:
                self._emit_json(report.to_dict())
            elif report.has_conflicts:
                print(f"⚠️  {format_report(report)}")
            else:
                print(f"✅ {format_report(report)}")
            return EXIT_CONFLICT if report.has_conflicts else EXIT_OK

        if not args.fix and not self.json_output:
            print(f"⚠️  {format_report(report)}")
            print()
            if not args.yes:
                response = self.input_func("Fix now? [Y/n]: ").strip().lower()
                if response not in ("", "y", "yes"):
                    print("No changes made.")
                    return EXIT_CONFLICT

        result = doctor.fix(assume_yes=args.fix or args.yes)

        if self.json_output:
            self._emit_json({
                "worktree": result.worktree,
                "override_file": str(result.override_path),
                "backup_file": str(result.backup_path) if result.backup_path else None,
                "written": result.written,
                "assignments": [a.to_dict() for a in result.assignments],
            })
            return self._fix_status(result)

        if result.backup_path:
            print(f"📁 Backup created: {result.backup_path.name}")
        if not result.written:
            print(f"Keeping existing override file {result.override_path.name}")
            return self._fix_status(result)

        print(f"✅ Wrote {result.override_path.name}")
        print()
        print(format_preview(result.worktree, result.assignments))
        return EXIT_OK

    @staticmethod
    def _fix_status(result) -> int:
        # A kept Port Doctor override still resolves the conflicts
        if result.written or result.override_path.exists():
            return EXIT_OK
        return EXIT_CONFLICT


def main():
    """Entry point for CLI"""
    cli = BranchboxCLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
