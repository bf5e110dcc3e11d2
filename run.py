#!/usr/bin/env python3
"""
Lending Payments Engine Entry Point

Starts the admin API and the periodic reconciliation sweep.
"""

import sys

from core_lending.api import run_server
from core_lending.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Lending Payments Engine...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print(f"Reconciliation sweep every {config.sync_interval_seconds}s")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Lending Payments Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
