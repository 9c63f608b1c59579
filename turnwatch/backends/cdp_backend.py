"""
CDP backend: BrowserBackend over a raw Chrome DevTools Protocol transport.

The transport only needs `send(method, params)` (async) plus `on`/`off`
event registration, which maps directly onto a Playwright `CDPSession` or any
websocket CDP client.
"""

from __future__ import annotations

import itertools
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

from ..exceptions import InstrumentationError

logger = logging.getLogger(__name__)

_binding_ids = itertools.count(1)

OBSERVER_REGISTRY = "__turnwatchObservers"


class CDPTransport(Protocol):
    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def on(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None: ...

    def off(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None: ...


def build_observer_install_script(binding: str, burst_ms: int) -> str:
    """MutationObserver that calls `binding` once per burst of mutations."""
    name = json.dumps(binding)
    registry = json.dumps(OBSERVER_REGISTRY)
    return f"""
    (() => {{
        const name = {name};
        const registry = window[{registry}] || (window[{registry}] = {{}});
        if (registry[name]) return true;
        let pending = null;
        const observer = new MutationObserver(() => {{
            if (pending !== null) return;
            pending = setTimeout(() => {{
                pending = null;
                try {{ window[name]('mutation'); }} catch (e) {{}}
            }}, {int(burst_ms)});
        }});
        observer.observe(document.documentElement || document.body, {{
            subtree: true, childList: true, characterData: true, attributes: true
        }});
        registry[name] = observer;
        return true;
    }})()
    """


def build_observer_remove_script(binding: str) -> str:
    name = json.dumps(binding)
    registry = json.dumps(OBSERVER_REGISTRY)
    return f"""
    (() => {{
        const registry = window[{registry}];
        if (!registry || !registry[{name}]) return false;
        registry[{name}].disconnect();
        delete registry[{name}];
        return true;
    }})()
    """


class CDPMutationSubscription:
    """Handle returned by `CDPBackend.subscribe_mutations`."""

    def __init__(self, backend: CDPBackend, binding: str, handler: Callable[[dict[str, Any]], None]):
        self._backend = backend
        self.binding = binding
        self._handler = handler
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        transport = self._backend.transport
        transport.off("Runtime.bindingCalled", self._handler)
        try:
            await transport.send(
                "Runtime.evaluate",
                {"expression": build_observer_remove_script(self.binding), "returnByValue": True},
            )
            await transport.send("Runtime.removeBinding", {"name": self.binding})
        except Exception as e:
            # Page may already be gone.
            logger.debug(f"mutation unsubscribe cleanup failed for {self.binding}: {e}")


class CDPBackend:
    """
    BrowserBackend implemented with CDP commands.

    Example:
        session = await page.context.new_cdp_session(page)
        backend = CDPBackend(PlaywrightCDPTransport(session))
        value = await evaluate_value(backend, "document.title")
    """

    def __init__(self, transport: CDPTransport) -> None:
        self.transport = transport
        self._runtime_enabled = False

    async def _send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self.transport.send(method, params or {})
        except InstrumentationError:
            raise
        except Exception as e:
            raise InstrumentationError(f"CDP {method} failed: {e}", operation=method) from e
        return response or {}

    async def evaluate(
        self, expression: str, *, return_by_value: bool = True, await_promise: bool = False
    ) -> dict[str, Any]:
        return await self._send(
            "Runtime.evaluate",
            {
                "expression": expression,
                "returnByValue": return_by_value,
                "awaitPromise": await_promise,
            },
        )

    async def query_dom(self, selector: str) -> int | None:
        doc = await self._send("DOM.getDocument", {"depth": 0})
        root_id = (doc.get("root") or {}).get("nodeId")
        if not root_id:
            raise InstrumentationError("DOM.getDocument returned no root node", operation="query_dom")
        found = await self._send("DOM.querySelector", {"nodeId": root_id, "selector": selector})
        node_id = found.get("nodeId")
        return node_id or None

    async def set_file_input_files(self, node_id: int, paths: list[str]) -> None:
        await self._send("DOM.setFileInputFiles", {"nodeId": node_id, "files": list(paths)})

    async def terminate_execution(self) -> None:
        await self._send("Runtime.terminateExecution")

    async def subscribe_mutations(
        self, callback: Callable[[], None], *, burst_ms: int = 100
    ) -> CDPMutationSubscription:
        if not self._runtime_enabled:
            await self._send("Runtime.enable")
            self._runtime_enabled = True

        binding = f"__turnwatchMutation{next(_binding_ids)}"

        def handler(params: dict[str, Any]) -> None:
            if params.get("name") == binding:
                callback()

        await self._send("Runtime.addBinding", {"name": binding})
        self.transport.on("Runtime.bindingCalled", handler)
        subscription = CDPMutationSubscription(self, binding, handler)
        try:
            response = await self.evaluate(build_observer_install_script(binding, burst_ms))
            if response.get("exceptionDetails"):
                raise InstrumentationError.from_exception_details(
                    response["exceptionDetails"], operation="subscribe_mutations"
                )
        except InstrumentationError:
            await subscription.unsubscribe()
            raise
        return subscription
