#!/usr/bin/env python3
"""
Dues Ledger Entry Point

Starts the FastAPI server with the dues ledger.
"""

import sys

from dues_ledger.api import run_server
from dues_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Dues Ledger...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Dues Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
