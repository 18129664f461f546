"""
Manual recovery for jobs a crashed process left in 'processing'.

Those jobs are never resumed automatically. The browser session they were
driving died with the process. This marks them failed so they stop showing
up as in-flight. Ask the requester to mention the bot again to retry.

Usage:
    python scripts/recover_jobs.py            # list stuck jobs
    python scripts/recover_jobs.py --fail     # mark them failed
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

from db.database import JobStore
from models.job import FAILED, PROCESSING

RECOVERY_MESSAGE = "Interrupted by a process restart; marked failed by operator"


async def main(mark_failed: bool) -> None:
    store = JobStore()
    await store.init()

    stuck = await store.list_by_status(PROCESSING)
    if not stuck:
        print("No jobs stuck in processing.")
        return

    for job in stuck:
        print(f"#{job.id}  {job.progress:3d}%  {job.current_step or '-':<30}  {job.url}")
        if mark_failed:
            await store.update_status(job.id, FAILED, error_message=RECOVERY_MESSAGE)

    if mark_failed:
        print(f"\nMarked {len(stuck)} job(s) failed.")
    else:
        print("\nRe-run with --fail to mark them failed.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--fail", action="store_true", help="mark stuck jobs failed")
    asyncio.run(main(parser.parse_args().fail))
