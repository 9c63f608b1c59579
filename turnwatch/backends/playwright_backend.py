"""
Playwright adapter: a CDPBackend over a Chromium page's CDP session.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .cdp_backend import CDPBackend

if TYPE_CHECKING:
    from playwright.async_api import CDPSession, Page


class PlaywrightCDPTransport:
    """Exposes a Playwright `CDPSession` as a CDPTransport."""

    def __init__(self, session: CDPSession) -> None:
        self.session = session

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.session.send(method, params or {})

    def on(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None:
        self.session.on(event, handler)

    def off(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None:
        self.session.remove_listener(event, handler)


class PlaywrightBackend(CDPBackend):
    """CDPBackend bound to a Playwright page (Chromium only)."""

    def __init__(self, page: Page, session: CDPSession) -> None:
        super().__init__(PlaywrightCDPTransport(session))
        self.page = page

    @classmethod
    async def from_page(cls, page: Page) -> PlaywrightBackend:
        session = await page.context.new_cdp_session(page)
        return cls(page, session)

    async def detach(self) -> None:
        session = self.transport.session
        await session.detach()
