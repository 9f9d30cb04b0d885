"""Child process with concurrently captured stdout and stderr."""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable, Sequence
from typing import IO

from remote_tasks.taskqueue.models import LogStream

logger = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024

OutputCallback = Callable[[LogStream, bytes], None]


class CapturedProcess:
    """Spawn ``argv`` and hand every chunk it writes to ``on_output``."""

    def __init__(self, argv: Sequence[str], *, on_output: OutputCallback) -> None:
        self.argv = list(argv)
        self._on_output = on_output
        self._process: subprocess.Popen[bytes] | None = None
        self._readers: list[threading.Thread] = []

    def start(self) -> None:
        """Start the child; ``OSError`` propagates when it cannot be spawned."""

        self._process = subprocess.Popen(  # noqa: S603
            self.argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        for stream, pipe in (
            (LogStream.STDOUT, self._process.stdout),
            (LogStream.STDERR, self._process.stderr),
        ):
            if pipe is None:
                continue
            reader = threading.Thread(
                target=self._pump,
                args=(stream, pipe),
                daemon=True,
                name=f"capture-{stream.value}",
            )
            reader.start()
            self._readers.append(reader)

    def wait(self) -> int:
        """Wait for exit and for both pipes to drain; return a shell-style exit code."""

        if self._process is None:
            raise RuntimeError("Process was not started.")
        returncode = self._process.wait()
        for reader in self._readers:
            reader.join()
        return normalize_exit_code(returncode)

    def _pump(self, stream: LogStream, pipe: IO[bytes]) -> None:
        try:
            while True:
                data = pipe.read1(_READ_SIZE)  # type: ignore[attr-defined]
                if not data:
                    return
                self._on_output(stream, data)
        finally:
            pipe.close()


def normalize_exit_code(returncode: int) -> int:
    """Map a signal death (negative return code) to ``128 + signum``."""

    if returncode < 0:
        return 128 + abs(returncode)
    return returncode


def spawn_failure_exit_code(error: OSError) -> int:
    return 127 if isinstance(error, FileNotFoundError) else 126


def run_preparation_command(argv: Sequence[str]) -> int:
    """Run one preparation command with inherited stdio and return its exit code."""

    try:
        completed = subprocess.run(list(argv), check=False)  # noqa: S603
    except OSError as error:
        logger.error("Preparation command %s failed to start: %s", list(argv), error)
        return spawn_failure_exit_code(error)
    return normalize_exit_code(completed.returncode)
