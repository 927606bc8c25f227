#!/usr/bin/env python3
"""
Index Notifier Service Entry Point

This script starts the Index Notifier service.
"""

import asyncio

from services.index_notifier.main import main as run_service


def main():
    """Start the Index Notifier service."""
    asyncio.run(run_service())


if __name__ == "__main__":
    main()
