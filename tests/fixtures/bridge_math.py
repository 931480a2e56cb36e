"""Worker-side functions used by the integration tests."""

import asyncio
import os
import time

from procbridge.dispatcher import current_session
from procbridge.worker import call_host, cast_host


def add(a, b):
    return a + b


def sleep_then(delay, value):
    time.sleep(delay)
    return value


async def async_sleep_then(delay, value):
    await asyncio.sleep(delay)
    return value


def fail(message):
    raise ValueError(message)


def get_env(name):
    return os.environ.get(name)


def get_pid():
    return os.getpid()


def noisy(value):
    # Must not corrupt the frame stream on stdout
    print("stray output", flush=True)
    return value


def unencodable():
    return object()


def double_via_host(x):
    return call_host("host", "double", [x])


async def async_double_via_host(x):
    return await current_session().call("host", "double", [x])


def notify_host(message):
    cast_host("host", "record", [message])
    return "sent"


def exit_now(code):
    # Ends the worker without answering
    os._exit(code)


def _private():
    return "hidden"
