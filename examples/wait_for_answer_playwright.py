"""
Example: wait for a chat reply (and confirm an attachment) in an already-open
Chromium tab.

Start Chrome with remote debugging, open the chat page and sign in, then:

  python examples/wait_for_answer_playwright.py notes.txt "Summarize the attached notes"
"""

import asyncio
import logging
import sys

from playwright.async_api import async_playwright

from turnwatch import ConvergenceTimeout, ConversationRuntime, FileSessionLog, ResponseWaitOptions

PROMPT_SELECTOR = "#prompt-textarea"


async def main(attachment: str | None, prompt: str) -> None:
    logging.basicConfig(level=logging.INFO)

    async with async_playwright() as p:
        browser = await p.chromium.connect_over_cdp("http://127.0.0.1:9222")
        page = browser.contexts[0].pages[0]

        runtime = await ConversationRuntime.from_playwright_page(
            page,
            verbose=True,
            session_log=FileSessionLog("traces/turnwatch-session.log"),
            echo=print,
            response_options=ResponseWaitOptions(timeout_ms=180_000, capture_markdown=True),
        )

        if attachment:
            await runtime.confirm_attachment(attachment)
            await runtime.wait_for_attachment_completion([attachment.rsplit("/", 1)[-1]])

        turns = await runtime.current_turn_count()
        await page.fill(PROMPT_SELECTOR, prompt)
        await page.keyboard.press("Enter")

        try:
            outcome = await runtime.wait_for_response(min_turn_index=turns)
        except ConvergenceTimeout as e:
            # The tab is left as-is so the answer can still be collected later.
            print(f"Timed out ({e.stage}); partial: {e.partial.text if e.partial else None!r}")
            return

        print(f"--- reply via {outcome.kind} in {outcome.elapsed_ms:.0f}ms ---")
        print(outcome.markdown or outcome.text)


if __name__ == "__main__":
    if len(sys.argv) == 3:
        asyncio.run(main(sys.argv[1], sys.argv[2]))
    else:
        asyncio.run(main(None, " ".join(sys.argv[1:]) or "Say hi"))
