#!/usr/bin/env python3
"""
Runner script for the EventSub webhook ingress.

Usage:
    python run_webhook.py

Listens on WEBHOOK_HOST:WEBHOOK_PORT (default 127.0.0.1:18081) and forwards
verified chat notifications to INTAKE_URL. Put a TLS reverse proxy in front
of it for the public callback.
"""

import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent / "src"
sys.path.insert(0, str(src_path))

from relaybot.webhook import main

if __name__ == "__main__":
    main()
