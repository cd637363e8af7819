"""Version of the scheduler."""

from __future__ import annotations

import argparse
from typing import Optional

_VERSION = "v0.0.1"


def version() -> str:
    """The version string of this build."""
    return _VERSION


def main(argv: Optional[list] = None) -> int:
    """Print the version."""
    parser = argparse.ArgumentParser(prog="version", description="print version")
    parser.parse_args(argv)
    print(version())
    return 0