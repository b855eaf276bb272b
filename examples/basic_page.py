"""
Example: drive a page in a spawned worker.

Spawns a worker, opens a page, listens to its notifications, runs a few
scripts and shuts the worker down with an exit code.

python examples/basic_page.py
"""

import asyncio
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from ghostwire import ParentWorker, RemoteCallError, default_pretty_handler

HTML = (
    "data:text/html,<html><head><title>ghostwire demo</title></head>"
    "<body><ul><li>one</li><li>two</li></ul></body></html>"
)


async def main():
    async with ParentWorker(log_handler=default_pretty_handler) as worker:
        page = await worker.create_page()

        @page.on("onConsoleMessage")
        def console(payload):
            message, _line, _source = payload
            print(f"[page console] {message}")

        @page.on("onLoadFinished")
        def finished(status):
            print(f"[page] load finished: {status}")

        status = await page.open(HTML)
        print(f"open() -> {status}")

        title = await page.evaluate(lambda: document.title)
        print(f"title: {title}")

        count = await page.evaluate(lambda: document.content.count("<li>"))
        await page.evaluate("lambda n: console.log('found', n, 'items')", count)

        # Install a helper on the page and call it as an operation
        await page.set_fn("double", lambda x: x * 2)
        print(f"double(21) = {await page.double(21)}")

        try:
            await page.evaluate(lambda: missing_function())
        except RemoteCallError as e:
            print(f"fault: {e.fault_type}")

        snapshot = worker.metrics.snapshot()
        print(f"{snapshot.calls_total} calls, avg {snapshot.latency_avg_ms:.1f}ms, {snapshot.polls_total} polls")

        code = await worker.exit(0)
        print(f"worker exited with {code}")


if __name__ == "__main__":
    asyncio.run(main())
