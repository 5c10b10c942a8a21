# tokenizer.py - line splitting, redirection extraction and pipeline split for minish
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

MAX_ARGS = 100
MAX_TOKEN_LENGTH = 1023

PIPE = "|"

# operator -> (stream, append)
REDIRECT_OPERATORS = {
    ">": ("stdout", False),
    "1>": ("stdout", False),
    ">>": ("stdout", True),
    "1>>": ("stdout", True),
    "2>": ("stderr", False),
    "2>>": ("stderr", True),
}


class ShellSyntaxError(Exception):
    """A line that can't be turned into a command."""


class ArgumentLimitError(ShellSyntaxError):
    pass


class RedirectionError(ShellSyntaxError):
    pass


class PipelineError(ShellSyntaxError):
    pass


@dataclass(frozen=True)
class Redirect:
    path: str
    append: bool = False


@dataclass(frozen=True)
class Redirections:
    stdout: Optional[Redirect] = None
    stderr: Optional[Redirect] = None

    def __bool__(self):
        return self.stdout is not None or self.stderr is not None


NO_REDIRECTIONS = Redirections()


class _TokenBuilder:
    def __init__(self, max_args: int, max_token_length: int):
        self.args: List[str] = []
        self.chars: List[str] = []
        self.max_args = max_args
        self.max_token_length = max_token_length

    def add(self, ch: str):
        if len(self.chars) >= self.max_token_length:
            raise ArgumentLimitError(
                f"argument too long (limit {self.max_token_length} characters)")
        self.chars.append(ch)

    def finish(self):
        if not self.chars:
            return
        if len(self.args) >= self.max_args:
            raise ArgumentLimitError(f"too many arguments (limit {self.max_args})")
        self.args.append("".join(self.chars))
        self.chars = []


def parse_line(line: str, max_args: int = MAX_ARGS,
               max_token_length: int = MAX_TOKEN_LENGTH) -> List[str]:
    """Split a command line into arguments.

    Whitespace outside quotes separates arguments. Single quotes keep
    everything literally. Double quotes keep whitespace; inside them a
    backslash only escapes ``"`` and ``\\``. Outside quotes a backslash
    escapes any following character. An unterminated quote simply runs to
    the end of the line.
    """
    out = _TokenBuilder(max_args, max_token_length)
    in_single = False
    in_double = False
    i = 0
    n = len(line)
    while i < n:
        c = line[i]
        i += 1

        if c == "'" and not in_double:
            in_single = not in_single
            continue
        if c == '"' and not in_single:
            in_double = not in_double
            continue

        if not in_single and not in_double and c.isspace():
            out.finish()
            continue

        if c == "\\" and not in_single:
            if i >= n:
                # nothing left to escape
                break
            nxt = line[i]
            i += 1
            if in_double and nxt not in ('"', "\\"):
                out.add("\\")
            out.add(nxt)
            continue

        out.add(c)

    out.finish()
    return out.args


def extract_redirections(argv: List[str]) -> Tuple[List[str], Redirections]:
    """Remove redirection operators and their targets from argv.

    Returns the remaining arguments and the stdout/stderr targets. The
    input list is left untouched.
    """
    argv = list(argv)
    found = {}
    i = 0
    while i < len(argv):
        tok = argv[i]
        if tok not in REDIRECT_OPERATORS:
            i += 1
            continue
        if i + 1 >= len(argv):
            raise RedirectionError("syntax error near unexpected token `newline'")
        stream, append = REDIRECT_OPERATORS[tok]
        if stream in found:
            raise RedirectionError(f"ambiguous redirect: {stream} redirected more than once")
        found[stream] = Redirect(argv[i + 1], append)
        del argv[i:i + 2]
    return argv, Redirections(**found)


def split_pipeline(argv: List[str]) -> List[List[str]]:
    """Split argv on ``|`` into one or two stages."""
    if PIPE not in argv:
        return [argv]
    idx = argv.index(PIPE)
    first, second = argv[:idx], argv[idx + 1:]
    if PIPE in second:
        raise PipelineError("only two-stage pipelines are supported")
    if not first or not second:
        raise PipelineError("syntax error near unexpected token `|'")
    return [first, second]
