"""Module entrypoint for `python -m conduit`."""

from __future__ import annotations

from conduit.cli import run

if __name__ == "__main__":
    run()
