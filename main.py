#!/usr/bin/env python3
"""
Main entry point for the termirc console client
"""

from termirc.main import run

if __name__ == "__main__":
    run()
