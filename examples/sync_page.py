"""
Example: the blocking facade.

Same bridge, no asyncio in user code: the worker runs on a background
event loop thread.

python examples/sync_page.py
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from ghostwire import ParentWorker


def main():
    worker = ParentWorker(parameters={"load-images": "no"})
    with worker.handle_sync() as h:
        h.on("onPageCreated", lambda page: print(f"page created: {page.handle}"))

        page = h.create_page()
        page.set_content("<title>sync demo</title>")
        print("title:", page.get("title"))

        child = page.evaluate("lambda: window.open()")
        print("window.open() ->", child)

        print("exit code:", h.exit(3))


if __name__ == "__main__":
    main()
