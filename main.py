"""Character Tools — dev launcher. Starts the API server in watch mode."""

import argparse
import os
import signal
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Character Tools dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Settings and history directory (default: ./data)")
    parser.add_argument("--provider-url", default=None,
                        help="OpenAI-compatible LLM base URL (overrides LLM_PROVIDER_URL)")
    parser.add_argument("--debug", action="store_true",
                        help="Log at DEBUG level")
    args = parser.parse_args()

    # Build env for the server process so it picks up the same data dir
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())
    if args.provider_url:
        env["LLM_PROVIDER_URL"] = args.provider_url

    cmd = ["uv", "run", "uvicorn", "character_tools.app:app", "--reload",
           "--host", HOST, "--port", PORT]
    if args.debug:
        cmd += ["--log-level", "debug"]

    print(f"Starting API on http://localhost:{PORT} ...")
    proc = subprocess.Popen(cmd, cwd=ROOT, env=env)

    def shutdown(*_):
        print("\nShutting down...")
        proc.terminate()
        proc.wait()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    proc.wait()


if __name__ == "__main__":
    main()
