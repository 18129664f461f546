"""
One-time NotebookLM login helper.

The dispatcher runs headless and cannot get through Google's sign-in, so the
login has to be done once by hand into the persistent browser profile.

Usage:
    python scripts/notebooklm_login.py

A headed browser window opens. Sign into Google, wait for the NotebookLM
home page, then press ENTER in this terminal. No passwords are stored.
"""

import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

from agent.notebooklm import USER_DATA_DIR, NotebookLMLinker


async def main() -> None:
    if Path(USER_DATA_DIR).exists():
        answer = input(
            f"A browser profile already exists at {USER_DATA_DIR}. Reuse it and re-login? [y/N] "
        ).strip().lower()
        if answer != "y":
            print("Aborted.")
            return

    print("Opening NotebookLM in a visible browser...")
    linker = NotebookLMLinker()
    await linker.start()

    print("\nSign into your Google account in the browser window.")
    input("Press ENTER here once the NotebookLM home page is showing... ")

    if await linker.is_logged_in():
        print(f"Login saved in {USER_DATA_DIR} ✅")
    else:
        print(
            "Could not confirm login: the 'new notebook' button is not visible.\n"
            "Make sure you completed the sign-in, then try again."
        )

    await linker.close()


if __name__ == "__main__":
    asyncio.run(main())
