"""Stand-in for ``machine`` used while developing with Pymakr.

Everything is forwarded to the real ``machine`` module except sleeping, which
would drop the connection to the host; it's simulated instead.
"""

try:
    from machine import *  # noqa: F401,F403
    import machine as _machine
except ImportError:
    _machine = None

import time


def _sleep_ms(ms):
    if hasattr(time, "sleep_ms"):
        time.sleep_ms(ms)
    else:
        time.sleep(ms / 1000)


def soft_reset():
    if _machine is not None and hasattr(_machine, "soft_reset"):
        _machine.soft_reset()
    raise SystemExit


def lightsleep(ms=0):
    print("[pymakr] simulating lightsleep for", ms, "ms")
    _sleep_ms(ms)


def deepsleep(ms=0):
    print("[pymakr] simulating deepsleep for", ms, "ms")
    _sleep_ms(ms)
    soft_reset()


sleep = lightsleep
