#!/usr/bin/env python3
"""
SecureBank Core Entry Point

Opens the banking core against the configured store and runs the expired
session sweeper until SIGINT or SIGTERM.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from secure_banking.config import get_config
from secure_banking.logging_config import setup_logging
from secure_banking.system import BankingCore


def main() -> int:
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)

    print("🏦 Starting SecureBank core...")
    print(f"💾 Store: {config.database_url}")
    print(f"🔒 Sessions per owner: {config.max_sessions_per_user}")
    print(f"🧹 Expired session sweep every {config.session_cleanup_interval_seconds}s")
    print()

    try:
        with BankingCore(config) as core:
            core.install_signal_handlers()
            core.start_sweeper()
            core.wait_for_shutdown()
    except Exception as e:
        print(f"❌ Error running SecureBank core: {e}")
        return 1

    print("\n👋 SecureBank core stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
