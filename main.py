"""Child Sim — dev launcher. Starts the backend API in watch mode."""

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
BACKEND_PORT = os.getenv("BACKEND_PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Child Sim dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Checkpoint directory (default: ./data)")
    parser.add_argument("--demo", action="store_true",
                        help="Use canned model replies instead of a provider")
    parser.add_argument("--fresh", action="store_true",
                        help="Delete the saved game before starting")
    args = parser.parse_args()

    # Build env for the subprocess so the backend picks up the same settings
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())
    if args.demo:
        env["CHILDSIM_DEMO"] = "1"

    if args.fresh:
        from childsim.storage import CheckpointStore
        CheckpointStore(Path(env.get("DATA_DIR", ROOT / "data"))).clear()

    procs: list[subprocess.Popen] = []

    def shutdown(*_):
        print("\nShutting down...")
        for p in procs:
            p.terminate()
        for p in procs:
            p.wait()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    print(f"Starting backend on http://localhost:{BACKEND_PORT} ...")
    procs.append(subprocess.Popen(
        ["uv", "run", "uvicorn", "backend.app:app", "--reload", "--host", HOST, "--port", BACKEND_PORT],
        cwd=ROOT, env=env,
    ))

    for p in procs:
        p.wait()


if __name__ == "__main__":
    main()
