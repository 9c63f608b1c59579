"""
Browser instrumentation backends for turnwatch.

- BrowserBackend: protocol every wait is written against
- CDPBackend: CDP commands over any `send`/`on`/`off` transport
- PlaywrightBackend: CDPBackend over a Playwright Chromium page
"""

from .cdp_backend import CDPBackend, CDPMutationSubscription, CDPTransport
from .playwright_backend import PlaywrightBackend, PlaywrightCDPTransport
from .protocol import BrowserBackend, MutationSubscription, evaluate_value

__all__ = [
    "BrowserBackend",
    "CDPBackend",
    "CDPMutationSubscription",
    "CDPTransport",
    "MutationSubscription",
    "PlaywrightBackend",
    "PlaywrightCDPTransport",
    "evaluate_value",
]
