#!/usr/bin/env python
"""
Persistent backend runner for Planwise.
Keeps uvicorn running even if it crashes.
"""
import os
import subprocess
import sys
import time

PORT = os.getenv("PORT", "8000")

# Run from the repository root so `planwise.main:app` imports
os.chdir(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

while True:
    print(f"\n[INFO] Starting backend server on port {PORT}...")
    try:
        subprocess.run(
            [sys.executable, "-m", "uvicorn", "planwise.main:app", "--port", PORT],
            check=False,
        )
    except KeyboardInterrupt:
        print("\n[INFO] Shutting down backend...")
        break

    print("[INFO] Backend stopped, will restart in 2 seconds...")
    time.sleep(2)
