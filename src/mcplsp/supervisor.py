"""
Analyzer process supervision.

One :class:`ProcessSupervisor` owns exactly one analyzer child process: it
spawns it with piped stdio, hands out the :class:`~mcplsp.transport.Transport`
bound to those pipes, forwards the child's stderr into the log, and reports
the exit status through :meth:`ProcessSupervisor.wait`.  It never restarts
a dead analyzer; that decision belongs to whoever asked for the tool call.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from mcplsp.errors import AnalyzerStartError
from mcplsp.transport import Transport

logger = logging.getLogger(__name__)

# Bigger than asyncio's 64 KiB default: analyzers send long header-less lines on stderr.
_STREAM_LIMIT = 4 * 1024 * 1024


class ProcessSupervisor:
    def __init__(self, *, max_parse_failures: int = 3):
        self._max_parse_failures = max_parse_failures
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._exit_status: int | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self, command: str, args: list[str] | tuple[str, ...] = (),
                    working_dir: str | Path | None = None,
                    env: dict[str, str] | None = None) -> Transport:
        """Launch ``command args...`` in *working_dir* and return its transport."""
        if self._process is not None:
            raise AnalyzerStartError('analyzer already started')
        child_env = os.environ.copy()
        if env:
            child_env.update(env)
        logger.info('starting analyzer: %s %s', command, ' '.join(args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                command, *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(working_dir) if working_dir is not None else None,
                env=child_env,
                limit=_STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise AnalyzerStartError(f'cannot start analyzer {command!r}: {e}') from e

        self._stderr_task = asyncio.create_task(self._pump_stderr(), name='mcplsp-stderr')
        logger.debug('analyzer pid=%s', self._process.pid)
        return Transport(self._process.stdout, self._process.stdin,
                         max_parse_failures=self._max_parse_failures)

    async def wait(self) -> int:
        """Wait for the analyzer to exit and return its exit status."""
        if self._process is None:
            raise AnalyzerStartError('analyzer was never started')
        status = await self._process.wait()
        if self._exit_status is None:
            self._exit_status = status
            logger.info('analyzer pid=%s exited with status %s', self._process.pid, status)
        return status

    async def terminate(self, grace: float = 2.0) -> int | None:
        """Terminate the analyzer, killing it if it outlives *grace* seconds."""
        if self._process is None:
            return None
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self._process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning('analyzer pid=%s ignored SIGTERM; killing', self._process.pid)
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
                await self._process.wait()
        if self._stderr_task is not None:
            await self._stderr_task
            self._stderr_task = None
        return self._process.returncode

    async def _pump_stderr(self) -> None:
        stream = self._process.stderr
        while True:
            try:
                line = await stream.readline()
            except (ValueError, ConnectionError) as e:
                logger.debug('stopped reading analyzer stderr: %s', e)
                return
            if not line:
                return
            logger.debug('analyzer stderr: %s', line.decode('utf-8', errors='replace').rstrip())
