#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
memtrace/__main__.py
====================

Entry point for ``python -m memtrace`` and the ``memtrace`` console script.

Pipeline
--------
::

    .mt trace
        │
        ▼
    ┌──────────┐
    │  Parser   │   parsimonious grammar → Statement records
    └────┬─────┘
         │
         ▼
    ┌──────────────┐
    │  Interpreter  │   names → binding ids, statements → operations
    └────┬─────────┘
         │
         ▼
    ┌──────────────┐
    │  Simulation   │   memsafety rule engine → diagnostics
    └──────────────┘
"""

from __future__ import annotations

import sys

from memtrace.main import main

if __name__ == "__main__":
    sys.exit(main())
