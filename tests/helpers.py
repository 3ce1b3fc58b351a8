import asyncio
import os
import sys

STUB_PATH = os.path.join(os.path.dirname(__file__), "stub_extractor.py")
STUB_COMMAND = [sys.executable, STUB_PATH]

SOURCE_URL = "https://video.example.com/watch?v=abc123"


class FakeClock:
    """Manually advanced wall clock for token lifetimes"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def pid_alive(pid: int) -> bool:
    """True while the process exists and is not a zombie"""
    try:
        with open(f"/proc/{pid}/stat") as f:
            stat = f.read()
    except FileNotFoundError:
        return False
    # State follows the parenthesised command name
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def read_pid(path) -> int:
    with open(path) as f:
        return int(f.read().strip())


def payload(size: int) -> bytes:
    """Same bytes the stub extractor writes"""
    pattern = bytes(range(256))
    return (pattern * (size // 256 + 1))[:size]


def has_pid(path):
    """Predicate for wait_until: pid file exists and is fully written"""
    return lambda: path.exists() and path.read_text().strip() != ""
