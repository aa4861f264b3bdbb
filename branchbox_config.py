#!/usr/bin/env python3
"""
Project configuration for the branchbox Port Doctor

Settings live in ``<project>/.branchbox/project.yaml`` under the
``port_doctor`` key. Every setting is optional.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from branchbox_security import SecurityError, safe_file_read, safe_file_write

logger = logging.getLogger("branchbox.config")

DEFAULT_SERVICE_INDENT = 2
DEFAULT_PROPERTY_INDENT = 4
DEFAULT_OVERRIDE_FILE = "docker-compose.override.yml"


class DoctorConfig:
    """Port Doctor settings for one project directory"""

    def __init__(self, project_path: Optional[Path] = None, config_path: Optional[Path] = None):
        if config_path:
            self.config_path = Path(config_path)
        elif project_path:
            self.config_path = Path(project_path) / ".branchbox" / "project.yaml"
        else:
            self.config_path = None
        self._config: Dict[str, Any] = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load port_doctor settings from project.yaml"""
        defaults = self._get_default_config()
        if self.config_path is None or not self.config_path.exists():
            return defaults

        try:
            data = yaml.safe_load(safe_file_read(os.path.abspath(self.config_path))) or {}
        except (yaml.YAMLError, SecurityError) as e:
            logger.warning(f"Failed to load project config: {e}")
            return defaults

        if not isinstance(data, dict):
            logger.warning(f"Ignoring project config {self.config_path}: not a mapping")
            return defaults

        section = data.get("port_doctor") or {}
        if not isinstance(section, dict):
            logger.warning("Ignoring port_doctor settings: not a mapping")
            return defaults

        config = defaults.copy()
        for key in ("service_indent", "property_indent"):
            if key in section:
                value = section[key]
                if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                    config[key] = value
                else:
                    logger.warning(f"Invalid {key} {value!r}, using {defaults[key]}")

        # Services must sit deeper than top-level keys and shallower than their properties
        if not 0 < config["service_indent"] < config["property_indent"]:
            logger.warning(
                f"service_indent {config['service_indent']} must be greater than 0 and less than "
                f"property_indent {config['property_indent']}, using "
                f"{DEFAULT_SERVICE_INDENT} and {DEFAULT_PROPERTY_INDENT}"
            )
            config["service_indent"] = DEFAULT_SERVICE_INDENT
            config["property_indent"] = DEFAULT_PROPERTY_INDENT

        if "override_file" in section:
            name = section["override_file"]
            if isinstance(name, str) and name and "/" not in name:
                config["override_file"] = name
            else:
                logger.warning(f"Invalid override_file {name!r}, using {DEFAULT_OVERRIDE_FILE}")

        config["reserved_ports"] = self._parse_reserved_ports(section.get("reserved_ports", []))
        config["buckets"] = self._parse_buckets(section.get("buckets", []))
        return config

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration for projects without config"""
        return {
            "service_indent": DEFAULT_SERVICE_INDENT,
            "property_indent": DEFAULT_PROPERTY_INDENT,
            "override_file": DEFAULT_OVERRIDE_FILE,
            "reserved_ports": [],
            "buckets": [],
        }

    @staticmethod
    def _parse_reserved_ports(raw: Any) -> List[int]:
        if not isinstance(raw, list):
            logger.warning("reserved_ports must be a list of port numbers")
            return []
        ports = []
        for item in raw:
            if isinstance(item, int) and not isinstance(item, bool) and 0 < item <= 65535:
                ports.append(item)
            else:
                logger.warning(f"Skipping invalid reserved port {item!r}")
        return sorted(set(ports))

    @staticmethod
    def _parse_buckets(raw: Any) -> List[Dict[str, Any]]:
        """Validate bucket entries of the form {name, match: [lo, hi], range: [lo, hi]}"""
        if not isinstance(raw, list):
            logger.warning("buckets must be a list")
            return []

        buckets = []
        for entry in raw:
            if not isinstance(entry, dict):
                logger.warning(f"Skipping invalid bucket {entry!r}")
                continue
            name = entry.get("name")
            match = entry.get("match")
            port_range = entry.get("range")
            if not isinstance(name, str) or not _is_port_pair(match) or not _is_port_pair(port_range):
                logger.warning(f"Skipping invalid bucket {entry!r}")
                continue
            buckets.append({
                "name": name,
                "match": [int(match[0]), int(match[1])],
                "range": [int(port_range[0]), int(port_range[1])],
            })
        return buckets

    def save(self):
        """Save port_doctor settings back to project.yaml, keeping other keys"""
        if self.config_path is None:
            raise SecurityError("No project path configured")

        data: Dict[str, Any] = {}
        if self.config_path.exists():
            try:
                data = yaml.safe_load(safe_file_read(os.path.abspath(self.config_path))) or {}
            except (yaml.YAMLError, SecurityError) as e:
                logger.warning(f"Replacing unreadable project config: {e}")
                data = {}

        data["port_doctor"] = self._config
        safe_file_write(
            os.path.abspath(self.config_path),
            yaml.dump(data, default_flow_style=False, sort_keys=False),
        )

    @property
    def service_indent(self) -> int:
        return self._config["service_indent"]

    @property
    def property_indent(self) -> int:
        return self._config["property_indent"]

    @property
    def override_file(self) -> str:
        return self._config["override_file"]

    @property
    def reserved_ports(self) -> List[int]:
        return list(self._config["reserved_ports"])

    @property
    def buckets(self) -> List[Dict[str, Any]]:
        return list(self._config["buckets"])

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value"""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value"""
        self._config[key] = value


def _is_port_pair(value: Any) -> bool:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return False
    lo, hi = value
    if not all(isinstance(v, int) and not isinstance(v, bool) for v in (lo, hi)):
        return False
    return 0 < lo <= hi <= 65535
