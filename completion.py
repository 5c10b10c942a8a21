# completion.py - command-name completion for the line editor
from __future__ import annotations

import logging
import os
from typing import Iterable, List, NamedTuple

from prompt_toolkit.completion import CompleteEvent, Completer, Completion
from prompt_toolkit.document import Document

from external_runner import SearchPath

log = logging.getLogger(__name__)


def longest_common_prefix(names: Iterable[str]) -> str:
    return os.path.commonprefix(list(names))


class CompletionPlan(NamedTuple):
    """What a tab press should do.

    ``insert`` is text to append to the buffer; when it is empty and
    ``candidates`` is non-empty the word is ambiguous.
    """
    insert: str
    candidates: List[str]


def plan_completion(word: str, candidates: List[str]) -> CompletionPlan:
    if not candidates:
        return CompletionPlan("", [])
    if len(candidates) == 1:
        return CompletionPlan(candidates[0][len(word):] + " ", [])
    common = longest_common_prefix(candidates)
    if len(common) > len(word):
        return CompletionPlan(common[len(word):], [])
    return CompletionPlan("", candidates)


class ShellCompleter(Completer):
    def __init__(self, builtins: Iterable[str], search_path: SearchPath):
        self.builtins = tuple(builtins)
        self.search_path = search_path

    def matches(self, prefix: str) -> List[str]:
        """Builtin and executable names starting with prefix, sorted, no duplicates."""
        names = {name for name in self.builtins if name.startswith(prefix)}
        names.update(self.search_path.executables(prefix))
        return sorted(names)

    def get_completions(self, document, complete_event):
        # The word the user is currently typing
        word_before_cursor = document.get_word_before_cursor(WORD=True)
        for name in self.matches(word_before_cursor):
            yield Completion(name, -len(word_before_cursor))

    def plan(self, text: str) -> CompletionPlan:
        """Decide what a tab press at the end of text does."""
        document = Document(text)
        word = document.get_word_before_cursor(WORD=True)
        event = CompleteEvent(completion_requested=True)
        candidates = [c.text for c in self.get_completions(document, event)]
        result = plan_completion(word, candidates)
        log.debug("complete %r -> %d candidates, insert %r", word, len(candidates), result.insert)
        return result
