from __future__ import annotations

import asyncio
from types import SimpleNamespace

from cartwatch import playwright_env


class _Route:
    def __init__(self, resource_type: str) -> None:
        self.request = SimpleNamespace(resource_type=resource_type)
        self.action: str | None = None

    async def abort(self) -> None:
        self.action = "abort"

    async def continue_(self) -> None:
        self.action = "continue"


def test_heavy_resources_are_aborted() -> None:
    for resource_type, expected in (("image", "abort"), ("font", "abort"), ("document", "continue"), ("xhr", "continue")):
        route = _Route(resource_type)
        asyncio.run(playwright_env.block_heavy_resources(route))
        assert route.action == expected


def test_launch_kwargs_include_proxy_and_extra_args(monkeypatch) -> None:
    monkeypatch.setenv("CARTWATCH_PROXY", "proxy.local:8080")
    monkeypatch.setenv("CARTWATCH_CHROMIUM_ARGS", "--foo --bar=1")
    kwargs = playwright_env.launch_kwargs()
    assert kwargs["proxy"] == {"server": "http://proxy.local:8080"}
    assert "--foo" in kwargs["args"]
    assert "--bar=1" in kwargs["args"]
    assert "--disable-blink-features=AutomationControlled" in kwargs["args"]


def test_context_kwargs_use_user_agent_override(monkeypatch) -> None:
    monkeypatch.setenv("CARTWATCH_USER_AGENT", "TestAgent/1.0")
    kwargs = playwright_env.context_kwargs()
    assert kwargs["user_agent"] == "TestAgent/1.0"
    assert kwargs["viewport"] == {"width": 1920, "height": 1080}


def test_close_browser_swallows_close_errors() -> None:
    class _Browser:
        async def close(self) -> None:
            raise RuntimeError("already closed")

    asyncio.run(playwright_env.close_browser(_Browser()))
    asyncio.run(playwright_env.close_browser(None))
