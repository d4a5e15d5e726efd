#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Application entrypoint for TimeCapsule.

This file is intentionally minimal. It only boots the command line.
"""
from __future__ import annotations

import sys

from timecapsule.cli import main


if __name__ == "__main__":
    sys.exit(main())
