#!/usr/bin/env python3
"""
Security utilities for branchbox - worktree name validation and safe file I/O
"""

import re
from pathlib import Path
from typing import Union


class SecurityError(Exception):
    """Security-related exceptions"""
    pass


UNSAFE_LOCATIONS = ['/etc', '/usr', '/bin', '/sbin', '/var/log']


def validate_worktree_name(name: str) -> str:
    """
    Validate a worktree name used as the port allocation key

    Args:
        name: Worktree (or branch) name to validate

    Returns:
        Stripped worktree name

    Raises:
        SecurityError: If the name is empty or potentially dangerous
    """
    if not name or not isinstance(name, str):
        raise SecurityError("Worktree name must be a non-empty string")

    name = name.strip()
    if not name:
        raise SecurityError("Worktree name must be a non-empty string")

    if len(name) > 250:
        raise SecurityError("Worktree name too long (max 250 characters)")

    dangerous_patterns = [
        r'\.\./',          # Path traversal
        r'^-',             # Starting with dash (command option)
        r'[;&|`$()]',      # Shell metacharacters
        r'[\x00-\x1f]',    # Control characters
        r'\\',             # Backslashes
    ]

    for pattern in dangerous_patterns:
        if re.search(pattern, name):
            raise SecurityError(f"Worktree name contains invalid characters: {name!r}")

    return name


def validate_file_path(path: Union[str, Path], allow_relative: bool = False) -> Path:
    """
    Validate file path for security issues

    Args:
        path: File path to validate
        allow_relative: Whether to allow relative paths

    Returns:
        Validated Path object

    Raises:
        SecurityError: If path is potentially dangerous
    """
    if not path:
        raise SecurityError("Path cannot be empty")

    path_obj = Path(path)

    if '..' in path_obj.parts:
        raise SecurityError("Path traversal detected")

    if not allow_relative and not path_obj.is_absolute():
        raise SecurityError("Relative paths not allowed")

    if re.search(r'[\x00-\x1f]', str(path_obj)):
        raise SecurityError("Path contains control characters")

    return path_obj


def _check_writable_location(path: Path) -> None:
    path_str = str(path)
    for unsafe in UNSAFE_LOCATIONS:
        if path_str.startswith(unsafe + '/') or path_str == unsafe:
            raise SecurityError(f"Cannot write to system location: {path_str}")


def safe_file_write(file_path: Union[str, Path], content: str,
                    create_dirs: bool = True) -> None:
    """
    Safely write content to a file with validation

    Args:
        file_path: Absolute path to write to
        content: Content to write
        create_dirs: Whether to create parent directories

    Raises:
        SecurityError: If path is invalid or operation is unsafe
    """
    validated_path = validate_file_path(file_path, allow_relative=False)
    _check_writable_location(validated_path)

    if not isinstance(content, str):
        raise SecurityError("Content must be a string")

    if len(content) > 10_000_000:  # 10MB limit
        raise SecurityError("Content too large")

    if create_dirs:
        validated_path.parent.mkdir(parents=True, exist_ok=True)

    validated_path.write_text(content, encoding='utf-8')


def safe_file_read(file_path: Union[str, Path]) -> str:
    """
    Safely read file content with validation

    Args:
        file_path: Absolute path to read from

    Returns:
        File content as string

    Raises:
        SecurityError: If path is invalid or the file is unreadable
    """
    validated_path = validate_file_path(file_path, allow_relative=False)

    if not validated_path.exists():
        raise SecurityError(f"File does not exist: {validated_path}")

    if not validated_path.is_file():
        raise SecurityError(f"Path is not a file: {validated_path}")

    if validated_path.stat().st_size > 50_000_000:  # 50MB limit
        raise SecurityError("File too large to read safely")

    try:
        return validated_path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise SecurityError(f"Could not read {validated_path}: {e}")


def safe_rename(source: Union[str, Path], destination: Union[str, Path]) -> Path:
    """
    Move a file aside, refusing to clobber an existing destination

    Returns:
        The destination path
    """
    source_path = validate_file_path(source, allow_relative=False)
    dest_path = validate_file_path(destination, allow_relative=False)
    _check_writable_location(dest_path)

    if dest_path.exists():
        raise SecurityError(f"Refusing to overwrite existing file: {dest_path}")

    source_path.rename(dest_path)
    return dest_path
