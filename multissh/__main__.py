#!/usr/bin/env python3
"""
multissh - Main entry point for module execution.
"""

from multissh.cli import cli

if __name__ == '__main__':
    cli()
