"""
Pseudo-terminal process adapter.

One PtyProcess wraps one interactive process attached to a PTY. Output is
read from the master fd on the event loop (``loop.add_reader``) and delivered
to ``on_data`` callbacks as decoded text; process exit is awaited in the
default executor and reported once to ``on_exit`` callbacks after the final
drain of the master fd.
"""

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import shutil
import signal
import struct
import subprocess
import termios
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import SpawnError
from .keys import key_sequence

logger = logging.getLogger(__name__)

READ_SIZE = 65536

# Seconds a hung-up session may take to exit before it is SIGKILLed.
KILL_TIMEOUT = 2.0

DataCallback = Callable[[str], None]
ExitCallback = Callable[[Optional[int], Optional[int]], None]


def set_terminal_size(fd: int, cols: int, rows: int, child_pid: Optional[int] = None) -> None:
    """
    Set terminal size using TIOCSWINSZ ioctl.

    Args:
        fd: File descriptor of the pty (master or slave).
        cols: Number of columns.
        rows: Number of rows.
        child_pid: Optional child process ID to send SIGWINCH for redraw.
    """
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)

    if child_pid:
        try:
            os.kill(child_pid, signal.SIGWINCH)
        except ProcessLookupError:
            pass


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _split_returncode(returncode: int) -> Tuple[int, Optional[int]]:
    """Map a Popen returncode to (exit_code, signal), shell style."""
    if returncode < 0:
        sig = -returncode
        return 128 + sig, sig
    return returncode, None


class PtyProcess:
    """A live process attached to a PTY master fd."""

    def __init__(
        self,
        process: subprocess.Popen,
        master_fd: int,
        loop: asyncio.AbstractEventLoop,
        cols: int,
        rows: int,
    ):
        self._process = process
        self.master_fd = master_fd
        self.pid = process.pid
        self.cols = cols
        self.rows = rows
        self._loop = loop
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._data_callbacks: List[DataCallback] = []
        self._exit_callbacks: List[ExitCallback] = []
        self._pending = bytearray()
        self._reading = True
        self._killed = False
        self._kill_groups: List[int] = []
        self._escalation: Optional[asyncio.TimerHandle] = None
        self._exited = False
        self.exit_code: Optional[int] = None
        self.signal: Optional[int] = None

        loop.add_reader(master_fd, self._on_readable)
        self._wait_task = loop.create_task(self._wait_for_exit())

    @property
    def alive(self) -> bool:
        return not self._exited and not self._killed

    def on_data(self, callback: DataCallback) -> None:
        self._data_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    # -- Reading -----------------------------------------------------------

    def _on_readable(self) -> None:
        try:
            data = os.read(self.master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is closed; stop before the loop spins.
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self._emit_data(data)

    def _stop_reading(self) -> None:
        if self._reading:
            self._reading = False
            self._loop.remove_reader(self.master_fd)

    def _emit_data(self, data: bytes, final: bool = False) -> None:
        text = self._decoder.decode(data, final=final)
        if not text:
            return
        for callback in list(self._data_callbacks):
            try:
                callback(text)
            except Exception:
                logger.exception(f"PTY data handler failed (pid={self.pid})")

    def _drain(self) -> None:
        """Read whatever is left in the master fd after the process exited."""
        while True:
            try:
                data = os.read(self.master_fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._emit_data(data)
        self._emit_data(b"", final=True)

    async def _wait_for_exit(self) -> None:
        returncode = await self._loop.run_in_executor(None, self._process.wait)
        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None
        self._drain()
        self._close_fd()

        self.exit_code, self.signal = _split_returncode(returncode)
        self._exited = True
        logger.info(f"PTY process {self.pid} exited: code={self.exit_code}, signal={self.signal}")

        callbacks, self._exit_callbacks = self._exit_callbacks, []
        self._data_callbacks = []
        for callback in callbacks:
            try:
                callback(self.exit_code, self.signal)
            except Exception:
                logger.exception(f"PTY exit handler failed (pid={self.pid})")

    def _close_fd(self) -> None:
        self._stop_reading()
        if self._pending:
            self._pending.clear()
            self._loop.remove_writer(self.master_fd)
        try:
            os.close(self.master_fd)
        except OSError:
            pass

    # -- Writing -----------------------------------------------------------

    def write(self, data) -> None:
        """Write input to the PTY. A no-op once the process is gone."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not self.alive:
            logger.debug(f"Ignoring write of {len(data)} bytes to dead PTY {self.pid}")
            return
        if not data:
            return

        if self._pending:
            self._pending.extend(data)
            return

        try:
            written = os.write(self.master_fd, data)
        except BlockingIOError:
            written = 0
        except OSError as e:
            logger.debug(f"Write to PTY {self.pid} failed: {e}")
            return

        if written < len(data):
            self._pending.extend(data[written:])
            self._loop.add_writer(self.master_fd, self._flush_pending)

    def _flush_pending(self) -> None:
        try:
            written = os.write(self.master_fd, self._pending)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug(f"Flushing input to PTY {self.pid} failed: {e}")
            written = len(self._pending)
        del self._pending[:written]
        if not self._pending:
            self._loop.remove_writer(self.master_fd)

    def resize(self, cols: int, rows: int) -> None:
        if not self.alive:
            logger.debug(f"Ignoring resize of dead PTY {self.pid}")
            return
        try:
            set_terminal_size(self.master_fd, cols, rows, self.pid)
        except (OSError, struct.error) as e:
            logger.debug(f"Resize of PTY {self.pid} to {cols}x{rows} failed: {e}")
            return
        self.cols = cols
        self.rows = rows

    def send_key(self, name: str) -> bool:
        """Write the control sequence for a named key. False if unknown."""
        sequence = key_sequence(name)
        if sequence is None:
            logger.warning(f"Unknown key: {name}")
            return False
        self.write(sequence)
        return True

    def kill(self, sig: int = signal.SIGHUP, timeout: float = KILL_TIMEOUT) -> None:
        """
        Hang up the session. Safe to call on a dead process.

        ``sig`` goes to the shell's process group and to the terminal's
        foreground job, which a job-control shell runs in a group of its own.
        Whatever is still alive after ``timeout`` seconds gets SIGKILL.
        """
        if self._exited:
            logger.debug(f"PTY {self.pid} already exited, not signalling")
            return

        first = not self._killed
        self._killed = True
        if self._pending:
            self._pending.clear()
            self._loop.remove_writer(self.master_fd)

        if first:
            self._kill_groups = self._process_groups()
        for pgid in self._kill_groups:
            self._signal_group(pgid, sig)

        if first:
            self._escalation = self._loop.call_later(timeout, self._escalate)

    async def wait_closed(self) -> None:
        """Wait until the exit callbacks have run."""
        await asyncio.shield(self._wait_task)

    def _process_groups(self) -> List[int]:
        groups = [self.pid]
        try:
            foreground = os.tcgetpgrp(self.master_fd)
        except OSError:
            foreground = None
        if foreground and foreground not in groups:
            groups.append(foreground)
        return groups

    def _signal_group(self, pgid: int, sig: int) -> None:
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            logger.debug(f"PTY process group {pgid} already gone")
        except PermissionError:
            if pgid == self.pid:
                try:
                    self._process.send_signal(sig)
                except ProcessLookupError:
                    pass

    def _escalate(self) -> None:
        self._escalation = None
        if self._exited:
            return
        logger.warning(f"PTY {self.pid} still running after hangup, sending SIGKILL")
        for pgid in self._kill_groups:
            self._signal_group(pgid, signal.SIGKILL)


def spawn(
    command: str,
    args: Sequence[str] = (),
    cols: int = 80,
    rows: int = 24,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> PtyProcess:
    """
    Start ``command`` on a fresh PTY as a new session leader.

    Must be called from a running event loop.

    Raises:
        SpawnError: the binary cannot be resolved or started.
    """
    executable = shutil.which(command)
    if executable is None:
        raise SpawnError(f"Command not found: {command}")

    loop = asyncio.get_running_loop()
    master_fd, slave_fd = pty.openpty()
    try:
        set_terminal_size(slave_fd, cols, rows)
        process = subprocess.Popen(
            [executable, *args],
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            env=env,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
        )
    except (OSError, subprocess.SubprocessError) as e:
        os.close(master_fd)
        raise SpawnError(f"Failed to start {command}: {e}") from e
    finally:
        os.close(slave_fd)

    os.set_blocking(master_fd, False)
    logger.info(f"Spawned {executable} (pid={process.pid}, {cols}x{rows})")
    return PtyProcess(process, master_fd, loop, cols, rows)
