#!/usr/bin/env python3
# Repl.py - minish read/eval loop: prompt, parse, redirect, dispatch or launch
import functools
import logging
import os
import sys

import argparser
import commands
from completion import ShellCompleter
from external_runner import NOT_FOUND, ProcessLauncher, SearchPath, Stage
from line_editor import make_reader
from tokenizer import ShellSyntaxError, extract_redirections, parse_line, split_pipeline

log = logging.getLogger(__name__)

PROMPT = "$ "
SYNTAX_ERROR = 2


class Shell:
    """Per-process shell state: read-only tables plus the last exit status."""

    def __init__(self, search_path, launcher=None, builtins=commands.BUILTINS):
        self.search_path = search_path
        self.launcher = launcher or ProcessLauncher()
        self.builtins = builtins
        self.last_status = 0

    def completer(self):
        return ShellCompleter(commands.builtin_names(self.builtins), self.search_path)

    def execute(self, line: str) -> int:
        """Run one input line and return its status."""
        try:
            status = self._execute(line)
        except ShellSyntaxError as e:
            print(f"minish: {e}", file=sys.stderr)
            status = SYNTAX_ERROR
        self.last_status = status
        return status

    def _execute(self, line):
        argv = parse_line(line)
        if not argv:
            return self.last_status
        stages = split_pipeline(argv)
        if len(stages) == 2:
            return self.run_pipeline(*stages)
        argv, redirections = extract_redirections(argv)
        if not argv:
            return self.touch_targets(redirections)
        return self.run_command(argv, redirections)

    def run_command(self, argv, redirections):
        builtin = commands.find_builtin(argv[0], self.builtins)
        if builtin is not None:
            return self.run_builtin(builtin, argv, redirections)
        path = self.search_path.resolve(argv[0])
        if path is None:
            print(f"{argv[0]}: command not found")
            return NOT_FOUND
        log.debug("launching %s as %s", argv[0], path)
        return self.launcher.launch(path, argv, redirections)

    def run_builtin(self, builtin, argv, redirections):
        try:
            with commands.redirected_streams(redirections):
                return builtin.func(self, argv)
        except OSError as e:
            print(f"minish: {e.filename}: {e.strerror}", file=sys.stderr)
            return 1

    def touch_targets(self, redirections):
        """A bare redirection only creates or truncates its files."""
        try:
            with commands.redirected_streams(redirections):
                pass
        except OSError as e:
            print(f"minish: {e.filename}: {e.strerror}", file=sys.stderr)
            return 1
        return 0

    def _stage(self, argv):
        argv, redirections = extract_redirections(argv)
        if not argv:
            raise ShellSyntaxError("syntax error near unexpected token `|'")
        builtin = commands.find_builtin(argv[0], self.builtins)
        if builtin is not None:
            return Stage(argv, redirections, builtin=functools.partial(builtin.func, self))
        path = self.search_path.resolve(argv[0])
        if path is None:
            print(f"{argv[0]}: command not found")
            return None
        return Stage(argv, redirections, path=path)

    def run_pipeline(self, first_argv, second_argv):
        # resolve both sides before anything is forked
        first = self._stage(first_argv)
        second = self._stage(second_argv)
        if first is None or second is None:
            return NOT_FOUND
        return self.launcher.run_pipeline(first, second)

    def repl(self, reader) -> int:
        while True:
            try:
                line = reader.read_line(PROMPT)
                if line is None:
                    break
                self.execute(line)
            except KeyboardInterrupt:
                print()
        return 0


def run_script(shell, path):
    if not os.path.exists(path):
        print(f"Script not found: {path}", file=sys.stderr)
        return 1
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\n")
            if not line.strip() or line.strip().startswith("#"):
                continue
            shell.execute(line)
    return 0


def main(argv=None):
    args = argparser.build_parser().parse_args(argv)
    if args.debug:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr,
                            format="%(name)s: %(message)s")

    shell = Shell(SearchPath.from_environ(os.environ))
    if args.script:
        return run_script(shell, args.script)

    reader = make_reader(shell.completer(), line_editor=args.line_editor)
    terminal = getattr(reader, "terminal", None)
    try:
        return shell.repl(reader)
    finally:
        if terminal is not None:
            terminal.restore()


if __name__ == "__main__":
    sys.exit(main())
