#!/usr/bin/env python3
"""
Run the live API suite against a freshly started uvicorn server.
Usage: python scripts/run_tests_live.py [extra pytest args]
The server uses whatever STORE_BACKEND / REDIS_URL the environment sets (memory by default).
"""

import os
import subprocess
import sys
import time

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)
from tests.http_client import is_up

HOST = "127.0.0.1"
PORT = 8765
BASE_URL = f"http://{HOST}:{PORT}"
STARTUP_DEADLINE_SECONDS = 10.0


def start_server() -> subprocess.Popen:
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "visitor_queue.main:app", "--host", HOST, "--port", str(PORT)],
        cwd=ROOT,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )


def server_ready(proc: subprocess.Popen) -> bool:
    """Poll /health until it answers, the process exits, or the deadline passes."""
    deadline = time.monotonic() + STARTUP_DEADLINE_SECONDS
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            return False
        if is_up(f"{BASE_URL}/health"):
            return True
        time.sleep(0.2)
    return False


def main() -> int:
    proc = start_server()
    try:
        if not server_ready(proc):
            print(f"uvicorn did not answer on {BASE_URL} within {STARTUP_DEADLINE_SECONDS:.0f}s", file=sys.stderr)
            return 1
        return subprocess.call(
            [sys.executable, "-m", "pytest", "tests/test_live_api.py", "-v", *sys.argv[1:]],
            cwd=ROOT,
            env={**os.environ, "BASE_URL": BASE_URL},
        )
    finally:
        proc.terminate()
        proc.wait(timeout=5)


if __name__ == "__main__":
    sys.exit(main())
