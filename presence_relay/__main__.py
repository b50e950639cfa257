#!/usr/bin/env python3
"""Presence relay - entry point for ``python -m presence_relay``."""

from .cli import main

if __name__ == "__main__":
    main()
