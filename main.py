"""Therabot dev launcher. Starts the API server in watch mode."""

import argparse
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "13013"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def main():
    parser = argparse.ArgumentParser(description="Therabot dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--demo", action="store_true",
                        help="Seed demo conditions and a published scenario")
    args = parser.parse_args()

    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    data_dir = args.data_dir or ROOT / "data"
    if args.demo:
        from therabot.demo import create_demo_data
        from therabot.storage import Storage
        create_demo_data(Storage(data_dir))

    # The reloader imports therabot.app in a child process; pass the data dir via env
    os.environ["DATA_DIR"] = str(data_dir.resolve())

    print(f"Starting Therabot API on http://localhost:{PORT} ...")
    uvicorn.run("therabot.app:app", host=HOST, port=PORT, reload=True, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
