#!/usr/bin/env python3
"""
Setup script for branchbox
"""

from setuptools import setup
from pathlib import Path

# Read README for long description
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="branchbox",
    version="1.0.0",
    description="Port Doctor: per-worktree host ports for Docker Compose projects",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="branchbox",
    author_email="",
    py_modules=[
        "branchbox",
        "branchbox_compose",
        "branchbox_config",
        "branchbox_doctor",
        "branchbox_ports",
        "branchbox_security",
    ],
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "branchbox=branchbox:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Tools",
        "Topic :: System :: Systems Administration",
    ],
    keywords="git worktree docker compose ports development workflow cli",
    install_requires=[
        "PyYAML",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
        "dev": [
            "pytest",
            "black",
            "flake8",
            "mypy",
        ],
    },
)
