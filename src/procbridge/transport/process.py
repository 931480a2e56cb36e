"""Worker subprocess transport.

Launches `python -m procbridge.worker` and exchanges frames with it.

Two modes, chosen by BridgeOptions.use_stdio:
- standard-io enabled: frames travel over the worker's stdin/stdout; the
  worker's stderr is relayed to this module's logger at debug level
- standard-io disabled: frames travel over a dedicated pipe pair handed to
  the worker with pass_fds; the worker inherits the host's stdio untouched
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os

from ..config import BridgeOptions
from ..errors import BridgeStartError
from .base import FrameTransport
from .pipes import connect_pipes

logger = logging.getLogger(__name__)


class SubprocessTransport(FrameTransport):
    """FrameTransport bound to a worker subprocess it owns."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        process: asyncio.subprocess.Process,
        options: BridgeOptions,
        read_transport: asyncio.BaseTransport | None = None,
    ) -> None:
        super().__init__(reader, writer, options.packet, read_transport=read_transport)
        self._process = process
        self._options = options
        self._stderr_task: asyncio.Task[None] | None = None
        if process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._read_stderr())

    @property
    def pid(self) -> int:
        """Process id of the worker."""
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        """Exit status of the worker, None while it is running."""
        return self._process.returncode

    @classmethod
    async def spawn(cls, options: BridgeOptions) -> SubprocessTransport:
        """Launch the worker and connect to it.

        Raises:
            BridgeStartError: If the worker cannot be launched in time
        """
        try:
            return await asyncio.wait_for(cls._spawn(options), timeout=options.start_timeout)
        except TimeoutError as e:
            raise BridgeStartError(
                f"Worker did not start within {options.start_timeout}s"
            ) from e
        except OSError as e:
            raise BridgeStartError(f"Cannot launch worker with {options.python!r}: {e}") from e

    @classmethod
    async def _spawn(cls, options: BridgeOptions) -> SubprocessTransport:
        env = options.environment()

        if options.use_stdio:
            cmd = options.command()
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.working_directory,
                env=env,
            )
            logger.info(f"Launched worker: {' '.join(cmd)} (pid={process.pid})")
            assert process.stdout is not None and process.stdin is not None
            return cls(process.stdout, process.stdin, process, options)

        # Worker reads from child_in, writes to child_out
        child_in, host_out = os.pipe()
        host_in, child_out = os.pipe()
        try:
            cmd = options.command(in_fd=child_in, out_fd=child_out)
            process = await asyncio.create_subprocess_exec(
                *cmd,
                pass_fds=(child_in, child_out),
                cwd=options.working_directory,
                env=env,
            )
        except BaseException:
            os.close(host_out)
            os.close(host_in)
            raise
        finally:
            os.close(child_in)
            os.close(child_out)

        logger.info(f"Launched worker: {' '.join(cmd)} (pid={process.pid})")
        reader, writer, read_transport = await connect_pipes(
            os.fdopen(host_in, "rb", buffering=0),
            os.fdopen(host_out, "wb", buffering=0),
        )
        return cls(reader, writer, process, options, read_transport=read_transport)

    async def close(self) -> None:
        """Close the worker's input and wait for it to exit.

        The worker exits on its own once its input closes; if it does not do
        so within the shutdown timeout it is terminated, then killed.
        """
        await super().close()

        timeout = self._options.shutdown_timeout
        if self._process.returncode is None:
            try:
                await asyncio.wait_for(self._process.wait(), timeout=timeout)
            except TimeoutError:
                logger.warning(f"Worker {self.pid} did not exit in {timeout}s, terminating")
                with contextlib.suppress(ProcessLookupError):
                    self._process.terminate()
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=timeout)
                except TimeoutError:
                    with contextlib.suppress(ProcessLookupError):
                        self._process.kill()
                    await self._process.wait()

        if self._stderr_task:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stderr_task, timeout=timeout)
            self._stderr_task = None

        logger.info(f"Worker exited (pid={self.pid}, returncode={self._process.returncode})")

    async def _read_stderr(self) -> None:
        """Relay worker stderr lines to the log."""
        stream = self._process.stderr
        if stream is None:
            return

        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                logger.debug(f"[worker stderr] {line.decode('utf-8', errors='replace').rstrip()}")
        except asyncio.CancelledError:
            pass
