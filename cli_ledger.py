#!/usr/bin/env python3
"""
CLI entry point for ledger management.
Usage: python cli_ledger.py [command] [options]
"""

from app.cli.ledger import ledger

if __name__ == '__main__':
    ledger()
