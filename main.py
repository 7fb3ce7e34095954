#!/usr/bin/env python3
"""
daybook — your voice-first day at a glance.

Entry point. Adds the project directory to sys.path so the daybook
package resolves correctly whether run directly or via an alias.

Usage:
  python main.py timeline
  python main.py tasks --filter overdue
  python main.py doctor
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from daybook.cli.app import app

if __name__ == "__main__":
    app()
