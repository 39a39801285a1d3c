from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import signal
import subprocess
import time
from threading import Lock, Thread

from ticket_pilot.errors import VerificationExecutionError
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.verification.executor')

_READ_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True)
class CommandOutcome:
    command: str
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    output_exceeded: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.output_exceeded


class BoundedCommandExecutor:
    """Run a command with a wall-clock deadline and a cap on captured output.

    Crossing either bound kills the process (and its process group on POSIX) and
    is reported on the outcome rather than raised.
    """

    def run(
        self,
        argv: list[str] | tuple[str, ...],
        *,
        cwd: Path,
        timeout_seconds: float,
        max_output_bytes: int,
    ) -> CommandOutcome:
        command = ' '.join(str(part) for part in argv)
        started = time.monotonic()
        popen_kwargs: dict[str, object] = {}
        if os.name == 'posix':
            popen_kwargs['start_new_session'] = True
        try:
            process = subprocess.Popen(
                [str(part) for part in argv],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(cwd),
                **popen_kwargs,
            )
        except FileNotFoundError as exc:
            raise VerificationExecutionError(f'command_not_found command={command}') from exc
        except OSError as exc:
            raise VerificationExecutionError(f'command_start_failed command={command} error={exc}') from exc

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        captured = [0]
        counter_lock = Lock()

        def _pump(pipe, sink: list[bytes]) -> None:
            if pipe is None:
                return
            try:
                while True:
                    chunk = pipe.read1(_READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    with counter_lock:
                        captured[0] += len(chunk)
                    sink.append(chunk)
            finally:
                try:
                    pipe.close()
                except OSError:
                    pass

        workers = [
            Thread(target=_pump, args=(process.stdout, stdout_chunks), daemon=True),
            Thread(target=_pump, args=(process.stderr, stderr_chunks), daemon=True),
        ]
        for worker in workers:
            worker.start()

        deadline = started + max(0.05, float(timeout_seconds))
        timed_out = False
        output_exceeded = False
        while process.poll() is None:
            with counter_lock:
                exceeded_now = captured[0] > max_output_bytes
            if exceeded_now:
                output_exceeded = True
                self._kill(process)
                break
            if time.monotonic() >= deadline:
                timed_out = True
                self._kill(process)
                break
            time.sleep(0.05)

        for worker in workers:
            worker.join(timeout=2)
        if not output_exceeded and captured[0] > max_output_bytes:
            output_exceeded = True

        elapsed = time.monotonic() - started
        returncode = process.returncode if process.returncode is not None else -1
        _log.info(
            'test_command_finished command=%s returncode=%s timed_out=%s output_exceeded=%s duration=%.2fs',
            command, returncode, timed_out, output_exceeded, elapsed,
        )
        return CommandOutcome(
            command=command,
            returncode=returncode,
            stdout=b''.join(stdout_chunks).decode('utf-8', errors='replace'),
            stderr=b''.join(stderr_chunks).decode('utf-8', errors='replace'),
            duration_seconds=elapsed,
            timed_out=timed_out,
            output_exceeded=output_exceeded,
        )

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        if os.name == 'posix':
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                process.kill()
        else:
            process.kill()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            _log.warning('test_command_kill_timeout pid=%s', process.pid)
