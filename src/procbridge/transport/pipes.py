"""asyncio stream wrappers for raw pipe file objects."""

from __future__ import annotations

import asyncio
from typing import BinaryIO


async def connect_pipes(
    read_file: BinaryIO,
    write_file: BinaryIO,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter, asyncio.BaseTransport]:
    """Wrap a pair of pipe files in asyncio streams.

    Used by the worker for its stdin/stdout (or inherited descriptors) and by
    the host when standard-io is disabled.

    Args:
        read_file: Binary file object to read frames from
        write_file: Binary file object to write frames to

    Returns:
        (reader, writer, read_transport); the read transport must be closed
        by the owner once reading is finished
    """
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader()
    read_transport, _ = await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), read_file
    )

    # StreamReaderProtocol provides the close waiter StreamWriter.wait_closed needs
    write_transport, write_protocol = await loop.connect_write_pipe(
        lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader()), write_file
    )
    writer = asyncio.StreamWriter(write_transport, write_protocol, None, loop)
    return reader, writer, read_transport
