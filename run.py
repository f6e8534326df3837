#!/usr/bin/env python3
"""
Banking Ledger Entry Point

Starts the FastAPI server with settings from LEDGER_* environment variables.
"""

import sys

import uvicorn

from banking_ledger.config import get_config


def run_server(host: str, port: int, debug: bool = False) -> None:
    """Run the FastAPI server"""
    uvicorn.run(
        "banking_ledger.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    print("Starting Banking Ledger...")
    print(f"Storage: {config.database_url}")
    print(f"Transfers of {config.approval_threshold} {config.base_currency} or more need admin approval")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Banking Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
