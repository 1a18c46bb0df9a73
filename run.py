#!/usr/bin/env python3
"""
Core Lending Entry Point

Starts the FastAPI server with the loan lifecycle engine.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from core_lending.api import run_server
from core_lending.config import get_config


if __name__ == "__main__":
    cfg = get_config()
    print("🏦 Starting Core Lending Engine...")
    print("💰 All financial calculations use Decimal precision")
    print("🔒 Audit trail active" if cfg.enable_audit_logging else "⚠️  Audit trail disabled")
    print(f"🌐 API available at: http://localhost:{cfg.api_port}")
    print(f"📚 Documentation at: http://localhost:{cfg.api_port}/docs")
    print()

    try:
        run_server(
            host=cfg.api_host,
            port=cfg.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down Core Lending Engine...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
