from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

load_dotenv()

from flipper.locks import JobLockManager, pid_alive  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect or force-remove job lock files.")
    parser.add_argument("--release", metavar="NAME", help="force-remove the named lock")
    parser.add_argument("--lock-dir", default=os.getenv("LOCK_DIR", ".locks"))
    args = parser.parse_args()

    manager = JobLockManager(args.lock_dir)
    if args.release:
        removed = manager.force_release(args.release)
        print(f"{args.release}: {'removed' if removed else 'not present'}")
        return 0

    locks = manager.list_locks()
    if not locks:
        print("no locks held")
        return 0
    for info in locks:
        state = "alive" if pid_alive(info.pid) else "stale"
        print(f"{info.name:<16} pid={info.pid} owner={info.owner} age={int(info.age_seconds())}s {state}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
