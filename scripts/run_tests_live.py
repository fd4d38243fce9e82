#!/usr/bin/env python3
"""
Start the API server on the in-memory store, run the live smoke tests against it, then stop the server.
Usage: python scripts/run_tests_live.py
(Run from project root with venv activated.)
"""

import os
import subprocess
import sys
import time
import urllib.error

# Add project root for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.http_client import get

BASE_URL = "http://127.0.0.1:8765"


def wait_for_server(timeout=10):
    for _ in range(timeout):
        try:
            r = get(f"{BASE_URL}/health")
            if r.status_code == 200:
                return True
        except (urllib.error.URLError, OSError):
            pass
        time.sleep(1)
    return False


def main():
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    os.chdir(root)
    server_env = os.environ.copy()
    server_env["STORE_BACKEND"] = "memory"
    proc = subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "queue_engine.main:app", "--host", "127.0.0.1", "--port", "8765"],
        cwd=root,
        env=server_env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    try:
        if not wait_for_server():
            print("Server did not start in time.")
            sys.exit(1)
        env = os.environ.copy()
        env["BASE_URL"] = BASE_URL
        result = subprocess.run(
            [sys.executable, "-m", "pytest", "tests/test_live_server.py", "-v"],
            env=env,
        )
        sys.exit(result.returncode)
    finally:
        proc.terminate()
        proc.wait(timeout=5)


if __name__ == "__main__":
    main()
