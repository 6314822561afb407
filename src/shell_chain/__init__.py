"""
Composable shell pipelines with fail-fast error handling.

Usage:
    from shell_chain import Cmd, run, start

    # Simple command, output with one trailing newline trimmed
    print(run("echo", "foobar").text)

    # Object piping: each stage's output becomes the next stage's stdin
    p = Cmd("echo", "foobar").pipe("wc", "-c").run()

    # Same thing, passing the input command as the last argument
    p = Cmd("wc", "-c", Cmd("echo", "foobar")).run()

    # Inline piping: the shell runs the whole pipeline
    p = run("echo foobar | wc -c")

    # Non-zero exits raise CommandError unless disabled in the Config
    try:
        run("exit", "2")
    except CommandError as e:
        print(e.process.exit_status)

    # Background processes
    p = start("sleep 30")
    p.kill()
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import os
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from typing import IO, Callable, Iterator, Optional, Union

__version__ = "0.1.0"

__all__ = [
    "Cmd",
    "cmd",
    "Config",
    "DEFAULT_CONFIG",
    "Executor",
    "Process",
    "CommandError",
    "LaunchError",
    "KillError",
    "quote",
    "path",
    "path_template",
    "exit_on_error",
    "run",
    "start",
    "run_async",
    "__version__",
]

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 8192

# Serializes tee writes so stdout and stderr chunks interleave whole.
_tee_lock = threading.Lock()


@dataclass(frozen=True)
class Config:
    """
    Execution options shared by a command and everything it runs.

    Attributes:
        shell: Shell executable and flags. The rendered command line is
               appended as the final argument.
        raise_on_error: If True, a non-zero exit raises CommandError.
        trace: If True, write each command line to trace_stream before running it.
        trace_prefix: Marker written in front of traced command lines.
        trace_stream: Text stream for trace output. None means sys.stderr.
        tee: Binary stream that receives a live copy of stdout and stderr.
    """
    shell: tuple[str, ...] = ("/bin/sh", "-c")
    raise_on_error: bool = True
    trace: bool = False
    trace_prefix: str = "+"
    trace_stream: Optional[IO[str]] = None
    tee: Optional[IO[bytes]] = None

    def __post_init__(self):
        object.__setattr__(self, "shell", tuple(self.shell))

    def replace(self, **changes) -> "Config":
        """Return a copy of this config with the given fields changed."""
        return dataclasses.replace(self, **changes)


DEFAULT_CONFIG = Config()


class CommandError(Exception):
    """Raised when a command exits with a non-zero status."""
    def __init__(self, process: "Process"):
        self.process = process
        super().__init__(process._error_message())


class LaunchError(RuntimeError):
    """Raised when the shell itself cannot be started."""


class KillError(RuntimeError):
    """Raised when a process could not be killed by a signal."""


def quote(arg: str) -> str:
    """Wrap arg in single quotes, escaping embedded single quotes."""
    return "'" + arg.replace("'", "'\\''") + "'"


def path(*parts: str) -> str:
    """Join path components."""
    return os.path.join(*parts)


def path_template(*parts: str) -> Callable[..., str]:
    """
    Return a function that fills %-style placeholders in a joined path.

    Usage:
        log_file = path_template("/var/log", "%s.log")
        log_file("app")  # "/var/log/app.log"
    """
    template = path(*parts)

    def fill(*values) -> str:
        return template % values

    return fill


def _resolve_args(args: tuple) -> tuple[list[str], Optional["Cmd"]]:
    """Flatten args into shell tokens plus an optional input command.

    A Cmd is only accepted as the last argument, where it becomes the
    input source instead of a token.
    """
    tokens: list[str] = []
    source = None
    for i, arg in enumerate(args):
        if isinstance(arg, str):
            tokens.append(arg)
        elif isinstance(arg, Process):
            tokens.append(arg.text)
        elif isinstance(arg, os.PathLike):
            tokens.append(os.fspath(arg))
        elif isinstance(arg, (int, float)) and not isinstance(arg, bool):
            tokens.append(str(arg))
        elif isinstance(arg, Cmd):
            if i != len(args) - 1:
                raise TypeError(
                    "a Cmd argument is only allowed in the last position, "
                    f"got one at position {i}"
                )
            source = arg
        else:
            raise TypeError(f"invalid type for argument: {type(arg).__name__}")
    return tokens, source


class Cmd:
    """
    A shell invocation that has not been run yet.

    Examples:
        Cmd("ls -la").run()
        Cmd("echo", "hello").pipe("tr a-z A-Z").run()
        (Cmd("cat file.txt") | Cmd("grep pattern")).run()
    """

    def __init__(
        self,
        *args: Union[str, int, float, os.PathLike, "Process", "Cmd"],
        cwd: Optional[Union[str, os.PathLike]] = None,
        config: Optional[Config] = None,
    ):
        """
        Create a command.

        Args:
            *args: Words of the command line. Strings are used verbatim, so
                   one string may hold several shell words or a whole
                   inline pipeline. A finished Process contributes its
                   output text. A Cmd as the last argument is run first
                   and its output is fed to this command's stdin.
            cwd: Optional working directory.
            config: Execution options. Defaults to DEFAULT_CONFIG.

        Raises:
            TypeError: If an argument has an unsupported type, or a Cmd
                       appears anywhere but last.
        """
        self._args, self._input = _resolve_args(args)
        self._cwd = cwd
        self._config = DEFAULT_CONFIG if config is None else config

    @property
    def args(self) -> list[str]:
        """A copy of the command tokens."""
        return list(self._args)

    @property
    def input(self) -> Optional["Cmd"]:
        """The command whose output feeds this one, if any."""
        return self._input

    @property
    def cwd(self) -> Optional[Union[str, os.PathLike]]:
        """Working directory, or None to inherit the caller's."""
        return self._cwd

    @property
    def config(self) -> Config:
        """Options used when this command runs."""
        return self._config

    def pipe(self, *args) -> "Cmd":
        """
        Return a new command that reads this command's output.

        cmd_a.pipe("wc", "-c") is the same as Cmd("wc", "-c", cmd_a).
        """
        return Cmd(*args, self, config=self._config)

    def __or__(self, other: "Cmd") -> "Cmd":
        """
        Pipe this command's stdout to another command's stdin.

        Usage: Cmd("ls") | Cmd("grep foo")
        """
        if not isinstance(other, Cmd):
            return NotImplemented
        if other._input is not None:
            raise ValueError(f"{other!r} already reads from {other._input!r}")

        result = other._copy()
        result._input = self
        return result

    def set_work_dir(self, directory: Union[str, os.PathLike]) -> "Cmd":
        """Set the working directory in place and return this command."""
        self._cwd = directory
        return self

    def render(self, quoted: bool = False) -> str:
        """
        Render the command line passed to the shell.

        Args:
            quoted: If True, quote every token. Only used for display; the
                   executed line is never quoted.
        """
        if not quoted:
            return " ".join(self._args)
        return " ".join(quote(a) for a in self._args)

    def run(self) -> "Process":
        """
        Execute the command synchronously.

        Returns:
            A finished Process with exit status and captured output.

        Raises:
            CommandError: On non-zero exit, if the config raises on error.
            LaunchError: If the shell could not be started.
        """
        return Executor(self._config).run(self)

    def start(self) -> "Process":
        """
        Start the command and return without waiting.

        The caller must wait() or kill() the returned Process.
        """
        return Executor(self._config).start(self)

    async def run_async(self) -> "Process":
        """Execute the command in a worker thread without blocking the event loop."""
        return await asyncio.to_thread(self.run)

    def proc_fn(self) -> Callable[..., "Process"]:
        """
        Return a function that runs this command with extra arguments.

        Usage:
            echo = Cmd("echo").proc_fn()
            echo("foobar").text  # "foobar"
        """
        def run_with(*args) -> Process:
            return self._extend(args).run()

        return run_with

    def output_fn(self) -> Callable[..., tuple[str, Optional[CommandError]]]:
        """Like proc_fn(), but the function returns (text, error) instead of raising."""
        def output(*args) -> tuple[str, Optional[CommandError]]:
            try:
                return self._extend(args).run().text, None
            except CommandError as e:
                return "", e

        return output

    def err_fn(self) -> Callable[..., Optional[CommandError]]:
        """Like output_fn(), but the function only returns the error."""
        def check(*args) -> Optional[CommandError]:
            try:
                self._extend(args).run()
            except CommandError as e:
                return e
            return None

        return check

    def _copy(self) -> "Cmd":
        result = Cmd.__new__(Cmd)
        result._args = list(self._args)
        result._input = self._input
        result._cwd = self._cwd
        result._config = self._config
        return result

    def _extend(self, args: tuple) -> "Cmd":
        """Return a copy of this command with args appended."""
        tokens, source = _resolve_args(args)
        result = self._copy()
        result._args.extend(tokens)
        if source is not None:
            result._input = source
        return result

    def __repr__(self) -> str:
        own = f"Cmd({self.render(quoted=True)!r})"
        if self._input is None:
            return own
        return f"{self._input!r} | {own}"


class Executor:
    """Launches commands through the configured shell."""

    def __init__(self, config: Optional[Config] = None):
        self.config = DEFAULT_CONFIG if config is None else config

    def run(self, command: Cmd) -> "Process":
        """Run command to completion and return the finished Process."""
        process = self._execute(command, background=False)
        process.wait()
        return process

    def start(self, command: Cmd) -> "Process":
        """Spawn command and return the running Process."""
        return self._execute(command, background=True)

    def _execute(self, command: Cmd, background: bool) -> "Process":
        line = command.render()
        argv = [*self.config.shell, line]

        if self.config.trace:
            stream = self.config.trace_stream or sys.stderr
            print(self.config.trace_prefix, line, file=stream, flush=True)

        # The input stage runs to completion, under the same config, before this one is spawned.
        stdin_data = None
        if command.input is not None:
            stdin_data = bytes(self.run(command.input).stdout)

        logger.debug("exec %s (cwd=%s)", argv, command.cwd)
        try:
            popen = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=command.cwd,
                # Own process group, so kill() reaches the whole shell pipeline
                start_new_session=background,
            )
        except OSError as e:
            logger.debug("failed to launch %s: %s", argv, e)
            raise LaunchError(f"failed to launch {argv[0]!r}: {e}") from e

        process = Process(popen, self.config, own_group=background)
        if stdin_data is not None:
            process._feed(stdin_data)
        elif not background:
            popen.stdin.close()
        else:
            process.stdin = popen.stdin
        return process


class Process:
    """
    Handle for a spawned shell process.

    exit_status is None while the process runs. After wait() it holds the
    exit code, or minus the signal number if a signal ended the process.
    stdout and stderr grow while the process runs and are complete once
    wait() returns.
    """

    def __init__(self, popen: subprocess.Popen, config: Config, own_group: bool = False):
        self._popen = popen
        self._config = config
        self._own_group = own_group
        self._threads: list[threading.Thread] = []

        self.exit_status: Optional[int] = None
        self.killed = False
        self.stdin: Optional[IO[bytes]] = None
        self.stdout = bytearray()
        self.stderr = bytearray()
        self._read_pos = 0

        self._spawn(_drain, popen.stdout, self.stdout, config.tee)
        self._spawn(_drain, popen.stderr, self.stderr, config.tee)

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def ok(self) -> bool:
        """True if the process exited with status 0."""
        return self.exit_status == 0

    @property
    def text(self) -> str:
        """Decoded stdout with one trailing newline removed."""
        out = self.stdout.decode("utf-8", errors="replace")
        if out.endswith("\n"):
            out = out[:-1]
        return out

    def __str__(self) -> str:
        return self.text

    def __bytes__(self) -> bytes:
        return bytes(self.stdout)

    def read(self, n: int = -1) -> bytes:
        """
        Read captured stdout from the current position.

        Successive calls continue where the last one stopped, without
        changing stdout itself. Returns b"" once everything has been read.
        """
        end = len(self.stdout) if n < 0 else min(self._read_pos + n, len(self.stdout))
        data = bytes(self.stdout[self._read_pos:end])
        self._read_pos = end
        return data

    def write(self, data: bytes) -> int:
        """Write to the process's stdin. Only valid for started processes."""
        if self.stdin is None:
            raise ValueError("process has no stdin pipe")
        n = self.stdin.write(data)
        self.stdin.flush()
        return n

    def close_stdin(self):
        """Close stdin so the process sees EOF."""
        if self.stdin is not None:
            self.stdin.close()

    def wait(self) -> "Process":
        """
        Block until the process exits and its output is collected.

        Returns:
            This Process.

        Raises:
            CommandError: If the exit status is non-zero, the config raises
                          on error, and the process was not killed.
        """
        returncode = self._popen.wait()
        self._finish()
        self.exit_status = returncode
        if returncode != 0 and self._config.raise_on_error and not self.killed:
            raise CommandError(self)
        return self

    async def wait_async(self) -> "Process":
        """Wait in a worker thread without blocking the event loop."""
        return await asyncio.to_thread(self.wait)

    def kill(self):
        """
        Kill the process with SIGKILL and reap it.

        A killed process never raises CommandError, even if another thread
        is waiting on it.

        Raises:
            KillError: If the signal could not be sent, or the process
                       ended without being killed by it.
        """
        self.killed = True
        if self._popen.returncode is not None:
            raise KillError(f"process {self.pid} already exited with status {self._popen.returncode}")

        logger.debug("killing process %s", self.pid)
        try:
            if self._own_group:
                os.killpg(self._popen.pid, signal.SIGKILL)
            else:
                self._popen.kill()
        except OSError as e:
            raise KillError(f"kill failed: {e}") from e

        self.wait()
        if self.exit_status >= 0:
            raise KillError(f"process {self.pid} exited with status {self.exit_status} instead of being killed")

    def error(self) -> CommandError:
        """Return a CommandError describing this process's exit status and stderr."""
        return CommandError(self)

    def _error_message(self) -> str:
        lines = [
            line for line in self.stderr.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
        if not lines:
            return f"[{self.exit_status}]"
        return f"[{self.exit_status}] {lines[-1]}"

    def _feed(self, data: bytes):
        self._spawn(_feed_stdin, self._popen.stdin, data)

    def _spawn(self, target, *args):
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _finish(self):
        """Collect output threads and release pipes after the process exits."""
        for thread in self._threads:
            thread.join()
        for pipe in (self._popen.stdout, self._popen.stderr, self._popen.stdin):
            if pipe is None or pipe.closed:
                continue
            try:
                pipe.close()
            except BrokenPipeError:
                pass  # unflushed stdin of a process that already exited

    def __repr__(self) -> str:
        state = "running" if self.exit_status is None else f"exit_status={self.exit_status}"
        return f"Process(pid={self.pid}, {state})"


def _drain(pipe: IO[bytes], buffer: bytearray, tee: Optional[IO[bytes]]):
    """Copy pipe into buffer until EOF, duplicating each chunk to tee."""
    for chunk in iter(lambda: pipe.read1(_CHUNK_SIZE), b""):
        buffer.extend(chunk)
        if tee is None:
            continue
        try:
            with _tee_lock:
                tee.write(chunk)
                tee.flush()
        except (OSError, ValueError) as e:
            # Keep draining so the child never blocks on a full pipe
            logger.warning("tee write failed, no longer teeing this stream: %s", e)
            tee = None


def _feed_stdin(pipe: IO[bytes], data: bytes):
    try:
        pipe.write(data)
        pipe.close()
    except BrokenPipeError:
        pass  # Reader exited early, same as a shell pipeline


@contextlib.contextmanager
def exit_on_error() -> Iterator[None]:
    """
    Turn an escaping CommandError into a program exit.

    The error line goes to stderr and the program exits with the failed
    command's status. Works as a context manager or a decorator.

    Usage:
        @exit_on_error()
        def main():
            run("make", "all")
    """
    try:
        yield
    except CommandError as err:
        status = err.process.exit_status
        print(err, file=sys.stderr)
        sys.exit(128 - status if status < 0 else status)


# Convenient alias
cmd = Cmd


def run(*args, config: Optional[Config] = None) -> Process:
    """
    Convenience function to run a command directly.

    Usage:
        p = run("ls -la")
        p = run("echo", "hello")
    """
    return Cmd(*args, config=config).run()


def start(*args, config: Optional[Config] = None) -> Process:
    """Convenience function to start a command in the background."""
    return Cmd(*args, config=config).start()


async def run_async(*args, config: Optional[Config] = None) -> Process:
    """
    Convenience function to run a command without blocking the event loop.

    Usage:
        p = await run_async("ls -la")
    """
    return await Cmd(*args, config=config).run_async()
