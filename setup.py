#!/usr/bin/env python3
# =============================================================================
#  taskgraph-static: setup.py
#
#  The version lives in taskgraph_static/__init__.py and runtime
#  dependencies in requirements.txt; this file reads both so there is a
#  single source of truth for each.
#
#  Typical usage:
#      pip install -e ".[dev]"
#      pip install -e ".[viz]"      # Graphviz rendering (analyze --render)
#      python -m pytest
# =============================================================================

from __future__ import annotations

import re
from pathlib import Path

from setuptools import setup, find_packages

# ---------------------------------------------------------------------------
#  Read version from the package so we have a single source of truth.
# ---------------------------------------------------------------------------
_HERE = Path(__file__).resolve().parent


def _read_version() -> str:
    """Extract ``__version__`` from taskgraph_static/__init__.py."""
    init = _HERE / "taskgraph_static" / "__init__.py"
    text = init.read_text(encoding="utf-8")
    match = re.search(r'^__version__\s*=\s*"([^"]+)"', text, re.MULTILINE)
    if match:
        return match.group(1)
    return "0.0.0"


def _read_long_description() -> str:
    """Read README.md for the long description."""
    readme = _HERE / "README.md"
    if readme.exists():
        return readme.read_text(encoding="utf-8")
    return ""


def _read_requirements() -> list[str]:
    """Read requirements.txt if it exists."""
    req_file = _HERE / "requirements.txt"
    if req_file.exists():
        lines = req_file.read_text(encoding="utf-8").splitlines()
        return [
            ln.strip()
            for ln in lines
            if ln.strip() and not ln.strip().startswith("#")
        ]
    return []


setup(
    name="taskgraph-static",
    version=_read_version(),
    description=(
        "Static call graphs between task functions, with per-edge "
        "execution multiplicity (1, 0..1, 0..*)."
    ),
    long_description=_read_long_description(),
    long_description_content_type="text/markdown",
    license="MIT",
    author="taskgraph-static contributors",
    python_requires=">=3.10",
    packages=find_packages(
        include=[
            "taskgraph_static",
            "taskgraph_static.*",
        ],
        exclude=[
            "tests",
            "tests.*",
        ],
    ),
    package_data={
        "taskgraph_static": ["py.typed"],
    },
    install_requires=_read_requirements(),
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
            "ruff>=0.4",
            "mypy>=1.10",
            "black>=24.0",
            "isort>=5.13",
        ],
        "viz": [
            "graphviz>=0.20",
        ],
    },

    entry_points={
        "console_scripts": [
            "taskgraph-static=taskgraph_static.main:main",
        ],
    },

    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Software Development :: Quality Assurance",
        "Topic :: System :: Distributed Computing",
        "Typing :: Typed",
    ],
    keywords=[
        "static-analysis",
        "call-graph",
        "celery",
        "tasks",
        "multiplicity",
        "language-server",
        "program-analysis",
    ],
    zip_safe=False,
)
