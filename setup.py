#!/usr/bin/env python3
# =============================================================================
#  memsafety — setup.py
#
#  Installs two packages:
#
#    memsafety   the memory and alias rule engine (library)
#    memtrace    the trace notation, interpreter and `memtrace` CLI
#
#  Typical use:
#      pip install -e ".[dev]"
#      python -m pytest
# =============================================================================

from __future__ import annotations

import re
from pathlib import Path

from setuptools import setup, find_packages

# ---------------------------------------------------------------------------
#  Read version from memsafety/__init__.py so we have a single source of truth.
# ---------------------------------------------------------------------------
_HERE = Path(__file__).resolve().parent


def _read_version() -> str:
    """Extract the version string from memsafety/__init__.py."""
    init = _HERE / "memsafety" / "__init__.py"
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
    name="memsafety",
    version=_read_version(),
    description=(
        "A memory and alias rule engine: simulated stack frames and heap "
        "objects with classification of dangling accesses, double frees, "
        "mismatched releases, invalid reference bindings and leaks."
    ),
    long_description=_read_long_description(),
    long_description_content_type="text/markdown",
    license="MIT",
    author="memsafety contributors",
    python_requires=">=3.10",
    packages=find_packages(
        include=[
            "memsafety",
            "memsafety.*",
            "memtrace",
            "memtrace.*",
        ],
        exclude=[
            "tests",
            "tests.*",
        ],
    ),
    install_requires=_read_requirements(),
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
        ],
    },

    # setuptools generates the `memtrace` wrapper around memtrace.__main__:main
    entry_points={
        "console_scripts": [
            "memtrace=memtrace.__main__:main",
        ],
    },

    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Software Development :: Quality Assurance",
        "Topic :: Software Development :: Testing",
    ],
    keywords=[
        "memory-safety",
        "static-analysis",
        "aliasing",
        "dangling-pointer",
        "double-free",
        "simulation",
    ],
    zip_safe=False,
)
