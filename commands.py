#!/usr/bin/env python3
# commands.py - builtins for minish

import contextlib
import os
import sys
from typing import Callable, List, NamedTuple, Optional, Tuple

from tokenizer import Redirections


class Builtin(NamedTuple):
    name: str
    func: Callable[..., int]


# -----------------------
# Builtin commands
# Each handler takes the running shell and the full argv (argv[0] is the
# command name) and returns an exit status.
# -----------------------
def exit_shell(shell, argv):
    # atexit handlers (terminal restore) still run on SystemExit
    sys.exit(0)


def echo(shell, argv):
    print(" ".join(argv[1:]))
    return 0


def help_builtin(shell, argv):
    print("minish. Built-ins available:")
    for builtin in shell.builtins:
        print(f"  {builtin.name}")
    return 0


def type_builtin(shell, argv):
    if len(argv) < 2:
        print("type: expected argument")
        return 1
    status = 0
    for name in argv[1:]:
        if find_builtin(name, shell.builtins) is not None:
            print(f"{name} is a shell builtin")
            continue
        full_path = shell.search_path.resolve(name)
        if full_path is not None:
            print(f"{name} is {full_path}")
        else:
            print(f"{name}: not found")
            status = 1
    return status


def print_working_directory(shell, argv):
    try:
        print(os.getcwd())
    except OSError as e:
        print(f"pwd: {e.strerror}", file=sys.stderr)
        return 1
    return 0


def expand_home(arg: str, environ=os.environ) -> Optional[str]:
    """Expand ``~`` and ``~/rest``; None when HOME is needed but unset."""
    if not arg.startswith("~"):
        return arg
    if arg != "~" and not arg.startswith("~/"):
        return arg
    home = environ.get("HOME")
    if home is None:
        return None
    return home + arg[1:]


def change_directory(shell, argv):
    if len(argv) < 2:
        print("cd: missing argument", file=sys.stderr)
        return 1
    arg = argv[1]
    target = expand_home(arg)
    if target is None:
        print("cd: HOME not set", file=sys.stderr)
        return 1
    try:
        os.chdir(target)
    except FileNotFoundError:
        print(f"cd: {arg}: No such file or directory", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"cd: {arg}: {e.strerror}", file=sys.stderr)
        return 1
    return 0


# registration order matters: first match wins
BUILTINS: Tuple[Builtin, ...] = (
    Builtin("exit", exit_shell),
    Builtin("echo", echo),
    Builtin("help", help_builtin),
    Builtin("type", type_builtin),
    Builtin("pwd", print_working_directory),
    Builtin("cd", change_directory),
)


def find_builtin(name: str, table: Tuple[Builtin, ...] = BUILTINS) -> Optional[Builtin]:
    for builtin in table:
        if builtin.name == name:
            return builtin
    return None


def builtin_names(table: Tuple[Builtin, ...] = BUILTINS) -> List[str]:
    return [b.name for b in table]


@contextlib.contextmanager
def redirected_streams(redirections: Redirections):
    """Point sys.stdout/sys.stderr at the redirect targets for one builtin.

    The real streams come back when the block exits, however it exits.
    """
    with contextlib.ExitStack() as stack:
        for stream, redirect in (("stdout", redirections.stdout),
                                 ("stderr", redirections.stderr)):
            if redirect is None:
                continue
            fh = stack.enter_context(open(redirect.path, "a" if redirect.append else "w"))
            if stream == "stdout":
                stack.enter_context(contextlib.redirect_stdout(fh))
            else:
                stack.enter_context(contextlib.redirect_stderr(fh))
        yield
