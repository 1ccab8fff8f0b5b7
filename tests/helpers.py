"""Test doubles for time and HTTP transport."""

import asyncio

import httpx


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays instead of waiting."""

    def __init__(self, clock: FakeClock = None):
        self.delays = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


class ScriptedTransport(httpx.AsyncBaseTransport):
    """
    Transport answering from a list of responses in order.

    Each entry is an ``httpx.Response``, an exception to raise, or a callable
    taking the request. The last entry repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(request)
        return httpx.Response(
            step.status_code,
            headers=step.headers,
            content=step.content,
        )


class GatedTransport(httpx.AsyncBaseTransport):
    """Transport that holds every request until its gate is opened."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.started = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        gate = asyncio.Event()
        self.started.append((request, gate))
        await gate.wait()
        return httpx.Response(self.status_code, json={"path": request.url.path})

    def open(self, index: int) -> None:
        self.started[index][1].set()

    def paths(self):
        return [request.url.path for request, _ in self.started]


async def settle(rounds: int = 50) -> None:
    """Let pending tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)
