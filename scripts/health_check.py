#!/usr/bin/env python3
"""
Health check script for Docker HEALTHCHECK.
"""

import os
import sys
import httpx

RELAY_URL = os.environ.get("RELAY_URL", f"http://localhost:{os.environ.get('PORT', '3000')}")

try:
    response = httpx.get(f"{RELAY_URL}/health", timeout=3.0)
    if response.status_code == 200:
        sys.exit(0)
    else:
        sys.exit(1)
except Exception:
    sys.exit(1)
