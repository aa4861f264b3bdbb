#!/usr/bin/env python3
"""
Port Doctor orchestration for branchbox

Combines the Compose scanner and the port allocator for one worktree
directory:

* ``check`` reports hardcoded ports and never writes.
* ``fix`` writes a signed ``docker-compose.override.yml`` that remaps
  every hardcoded port to the worktree's own port. A hand-written
  override file is moved to a timestamped backup first, never
  overwritten.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

import yaml

from branchbox_compose import ComposeScanner, ScanResult, find_compose_file
from branchbox_config import DoctorConfig
from branchbox_ports import (
    PortAllocator,
    PortAssignment,
    buckets_from_config,
    is_signed_override,
    override_ports,
    render_override,
)
from branchbox_security import (
    SecurityError,
    safe_file_read,
    safe_file_write,
    safe_rename,
    validate_worktree_name,
)

logger = logging.getLogger("branchbox.doctor")


class PortDoctorError(Exception):
    """Base exception for Port Doctor failures"""
    pass


@dataclass
class DoctorReport:
    """Result of checking a directory for hardcoded ports"""

    directory: Path
    compose_file: Optional[Path]
    scan: ScanResult

    @property
    def has_conflicts(self) -> bool:
        return self.scan.has_hardcoded_ports

    def to_dict(self) -> dict:
        return {
            "directory": str(self.directory),
            "compose_file": str(self.compose_file) if self.compose_file else None,
            "has_conflicts": self.has_conflicts,
            "services": {
                name: [str(m) for m in mappings] for name, mappings in self.scan.bindings.items()
            },
        }


@dataclass
class FixResult:
    """Outcome of a fix run"""

    override_path: Path
    worktree: str
    assignments: List[PortAssignment] = field(default_factory=list)
    backup_path: Optional[Path] = None
    written: bool = False


class PortDoctor:
    """Check and fix port conflicts for one worktree directory"""

    def __init__(
        self,
        directory: Path,
        worktree: Optional[str] = None,
        config: Optional[DoctorConfig] = None,
        input_func: Callable[[str], str] = input,
    ):
        self.directory = Path(os.path.abspath(directory))
        if not self.directory.is_dir():
            raise PortDoctorError(f"Not a directory: {self.directory}")

        self.config = config or DoctorConfig(self.directory)
        self.worktree = validate_worktree_name(worktree or self.directory.name)
        self.input_func = input_func
        self.scanner = ComposeScanner(
            service_indent=self.config.service_indent,
            property_indent=self.config.property_indent,
        )
        self.allocator = PortAllocator(
            extra_buckets=buckets_from_config(self.config.buckets),
            reserved_ports=self.config.reserved_ports,
        )

    @property
    def override_path(self) -> Path:
        return self.directory / self.config.override_file

    def check(self) -> DoctorReport:
        """Scan the directory's Compose file; performs no writes"""
        compose_file = find_compose_file(self.directory)
        if compose_file is None:
            logger.debug(f"No compose file found in {self.directory}")
            return DoctorReport(self.directory, None, ScanResult())

        return DoctorReport(self.directory, compose_file, self.scanner.scan(compose_file))

    def plan(self, report: Optional[DoctorReport] = None) -> List[PortAssignment]:
        """Allocate this worktree's ports for the hardcoded mappings"""
        report = report or self.check()
        return self.allocator.allocate(self.worktree, report.scan.bindings)

    def render(self, assignments: List[PortAssignment]) -> str:
        """Render the override and verify it parses back to the same ports"""
        content = render_override(self.worktree, assignments)

        expected = {}
        for a in assignments:
            expected.setdefault(a.service, []).append(f"{a.host_port}:{a.container_port}")
        try:
            actual = override_ports(content)
        except yaml.YAMLError as e:
            raise PortDoctorError(f"Generated override is not valid YAML: {e}")
        if actual != expected:
            raise PortDoctorError("Generated override does not match the port assignments")

        return content

    def fix(self, assume_yes: bool = False) -> FixResult:
        """Write the override file for this worktree

        Args:
            assume_yes: Overwrite an existing Port Doctor override without asking

        Returns:
            FixResult describing what was written and any backup made
        """
        result = FixResult(override_path=self.override_path, worktree=self.worktree)

        report = self.check()
        if not report.has_conflicts:
            logger.debug("No hardcoded ports found; nothing to fix")
            return result

        result.assignments = self.plan(report)
        content = self.render(result.assignments)

        if self.override_path.exists():
            if self._is_signed(self.override_path):
                if not assume_yes and not self._confirm_regenerate():
                    logger.debug(f"Keeping existing {self.override_path.name}")
                    return result
            else:
                result.backup_path = self.backup_override()

        try:
            safe_file_write(self.override_path, content)
        except (SecurityError, OSError) as e:
            raise PortDoctorError(f"Could not write {self.override_path.name}: {e}")

        result.written = True
        logger.debug(f"Wrote {self.override_path}")
        return result

    def backup_override(self) -> Path:
        """Move a hand-written override file aside to a timestamped backup"""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        base = self.override_path.with_name(f"{self.override_path.name}.backup-{timestamp}")
        backup_path = base
        counter = 1
        while backup_path.exists():
            backup_path = base.with_name(f"{base.name}-{counter}")
            counter += 1

        try:
            safe_rename(self.override_path, backup_path)
        except (SecurityError, OSError) as e:
            raise PortDoctorError(f"Could not back up {self.override_path.name}: {e}")

        logger.debug(f"Backed up existing override to {backup_path.name}")
        return backup_path

    @staticmethod
    def _is_signed(path: Path) -> bool:
        try:
            return is_signed_override(safe_file_read(path))
        except SecurityError as e:
            logger.warning(f"Could not read existing override: {e}")
            return False

    def _confirm_regenerate(self) -> bool:
        response = self.input_func(
            f"BranchBox override file {self.override_path.name} already exists. Regenerate it? [Y/n]: "
        ).strip().lower()
        return response in ("", "y", "yes")


def format_report(report: DoctorReport) -> str:
    """Human-readable conflict listing for check mode"""
    if report.compose_file is None:
        return "No compose file found - no hardcoded ports"
    if not report.has_conflicts:
        return f"No hardcoded ports in {report.compose_file.name}"

    lines = [f"Hardcoded ports in {report.compose_file.name}:"]
    for service, mappings in report.scan.bindings.items():
        lines.append(f"  {service}: {', '.join(str(m) for m in mappings)}")
    lines.append("")
    lines.append("These ports will collide between worktrees. Run with --fix to remap them.")
    return "\n".join(lines)
