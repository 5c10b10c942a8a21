# external_runner.py - PATH lookup, fork/exec launcher and two-stage pipelines
from __future__ import annotations

import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Mapping, Optional, Tuple

from tokenizer import NO_REDIRECTIONS, Redirect, Redirections

log = logging.getLogger(__name__)

NOT_FOUND = 127
NOT_EXEC = 126

FILE_MODE = 0o666


def is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


@dataclass(frozen=True)
class SearchPath:
    """Directories searched, in order, for external commands."""
    directories: Tuple[str, ...] = ()

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] = os.environ) -> "SearchPath":
        value = environ.get("PATH")
        if value is None:
            print("Warning: PATH not set", file=sys.stderr)
            return cls()
        return cls(tuple(d for d in value.split(":") if d))

    def resolve(self, name: str) -> Optional[str]:
        """Return the full path of an executable, or None.

        Names containing '/' are taken as paths and never searched.
        """
        if "/" in name:
            return name if is_executable(name) else None
        for directory in self.directories:
            candidate = os.path.join(directory, name)
            if is_executable(candidate):
                return candidate
        return None

    def executables(self, prefix: str = "") -> Iterable[str]:
        """Yield names of executables starting with prefix, in search order."""
        for directory in self.directories:
            try:
                entries = os.listdir(directory)
            except OSError:
                continue
            for entry in entries:
                if entry.startswith(prefix) and is_executable(os.path.join(directory, entry)):
                    yield entry


@dataclass
class Stage:
    """One command of a pipeline: either an executable path or a builtin."""
    argv: List[str]
    redirections: Redirections = NO_REDIRECTIONS
    path: Optional[str] = None
    builtin: Optional[Callable[[List[str]], int]] = field(default=None, repr=False)


def flush_std_streams():
    # Python-level buffers would otherwise be written twice after fork.
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (AttributeError, ValueError):
            pass


def redirect_fd(redirect: Redirect, target_fd: int):
    flags = os.O_WRONLY | os.O_CREAT | (os.O_APPEND if redirect.append else os.O_TRUNC)
    fd = os.open(redirect.path, flags, FILE_MODE)
    try:
        os.dup2(fd, target_fd)
    finally:
        os.close(fd)


def apply_redirections(redirections: Redirections):
    if redirections.stdout is not None:
        redirect_fd(redirections.stdout, 1)
    if redirections.stderr is not None:
        redirect_fd(redirections.stderr, 2)


def _child_error(name: str, exc: OSError):
    msg = f"{name}: {exc.strerror or exc}\n"
    try:
        os.write(2, msg.encode("utf-8", "replace"))
    except OSError:
        pass


def _exit_code_for(exc: OSError) -> int:
    if isinstance(exc, PermissionError):
        return NOT_EXEC
    if isinstance(exc, FileNotFoundError):
        return NOT_FOUND
    return 1


def _wait(pid: int) -> int:
    _, status = os.waitpid(pid, 0)
    code = os.waitstatus_to_exitcode(status)
    log.debug("pid %d exited with %d", pid, code)
    return code


class ProcessLauncher:
    """Runs external programs in forked children.

    Redirections and pipe wiring happen only in the child; the parent
    forks and waits.
    """

    def launch(self, path: str, argv: List[str],
               redirections: Redirections = NO_REDIRECTIONS) -> int:
        return self.launch_stage(Stage(argv, redirections, path=path))

    def launch_stage(self, stage: Stage) -> int:
        flush_std_streams()
        try:
            pid = os.fork()
        except OSError as e:
            print(f"fork: {e.strerror}", file=sys.stderr)
            return 1
        if pid == 0:
            self._run_child(stage)
        log.debug("forked %d for %s", pid, stage.argv)
        return _wait(pid)

    def run_pipeline(self, first: Stage, second: Stage) -> int:
        """Run first | second and return the status of second."""
        flush_std_streams()
        try:
            read_fd, write_fd = os.pipe()
        except OSError as e:
            print(f"pipe: {e.strerror}", file=sys.stderr)
            return 1
        log.debug("pipe r=%d w=%d for %s | %s", read_fd, write_fd, first.argv, second.argv)

        try:
            first_pid = os.fork()
        except OSError as e:
            os.close(read_fd)
            os.close(write_fd)
            print(f"fork: {e.strerror}", file=sys.stderr)
            return 1
        if first_pid == 0:
            self._run_child(first, stdout_fd=write_fd, close_fds=(read_fd,))

        try:
            second_pid = os.fork()
        except OSError as e:
            os.close(read_fd)
            os.close(write_fd)
            print(f"fork: {e.strerror}", file=sys.stderr)
            _wait(first_pid)
            return 1
        if second_pid == 0:
            self._run_child(second, stdin_fd=read_fd, close_fds=(write_fd,))

        # the reader only sees end-of-stream once every write end is closed
        os.close(read_fd)
        os.close(write_fd)
        log.debug("pipeline children %d, %d", first_pid, second_pid)
        _wait(first_pid)
        return _wait(second_pid)

    def _run_child(self, stage: Stage, stdin_fd: Optional[int] = None,
                   stdout_fd: Optional[int] = None, close_fds: Tuple[int, ...] = ()):
        """Set up descriptors and exec. Never returns."""
        code = 1
        try:
            try:
                # the interpreter ignores SIGPIPE; programs expect the default
                signal.signal(signal.SIGPIPE, signal.SIG_DFL)
                for fd in close_fds:
                    os.close(fd)
                if stdout_fd is not None:
                    os.dup2(stdout_fd, 1)
                    os.close(stdout_fd)
                if stdin_fd is not None:
                    os.dup2(stdin_fd, 0)
                    os.close(stdin_fd)
                apply_redirections(stage.redirections)
                if stage.builtin is not None:
                    # rebind to the wired descriptors, not whatever object the parent had
                    sys.stdout = open(1, "w", encoding="utf-8", closefd=False)
                    sys.stderr = open(2, "w", encoding="utf-8", closefd=False)
                    code = stage.builtin(stage.argv) or 0
                    flush_std_streams()
                else:
                    os.execv(stage.path, stage.argv)
            except OSError as e:
                if e.filename in (None, stage.path):
                    _child_error(stage.argv[0], e)
                    code = _exit_code_for(e)
                else:
                    # a redirect target could not be opened
                    _child_error(e.filename, e)
                    code = 1
            except SystemExit as e:
                flush_std_streams()
                code = e.code if isinstance(e.code, int) else 0
        finally:
            os._exit(code)
