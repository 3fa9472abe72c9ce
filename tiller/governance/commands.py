# ==============================
# Shell Command Classifier
# ==============================
"""
Decides whether a raw shell command is read-only.

Used by the Plan-mode gate: a command passes only when
- it starts with an allow-listed prefix on a word boundary ("ls" matches "ls -la",
  not "lsof"), and
- the raw string contains no output redirection, pipe, or command chaining, and
- allow-listed programs are not given arguments that make them write or spawn.

The check is textual on purpose: `ls -la > out.txt` is rejected for containing `>`
even though `ls` alone is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

# Redirection, pipes, chaining, substitution, backgrounding
FORBIDDEN_FRAGMENTS: Sequence[str] = (">", "|", ";", "&", "`", "$(", "\n", "\r")

_FIND_MUTATING_ARGS = frozenset({"-delete", "-exec", "-execdir", "-ok", "-okdir", "-fprint", "-fprint0", "-fprintf", "-fls"})


def _find_is_safe(args: List[str]) -> bool:
    return not any(a in _FIND_MUTATING_ARGS for a in args)


def _env_is_safe(args: List[str]) -> bool:
    # `env CMD` runs CMD
    return not args


def _git_branch_is_safe(args: List[str]) -> bool:
    return not any(a in {"-d", "-D", "-m", "-M", "-c", "-C", "--delete", "--move", "--copy"} for a in args)


def _git_remote_is_safe(args: List[str]) -> bool:
    return not args or args[0] in {"-v", "--verbose", "show", "get-url"}


ARG_GUARDS: Dict[str, Callable[[List[str]], bool]] = {
    "find": _find_is_safe,
    "env": _env_is_safe,
    "git branch": _git_branch_is_safe,
    "git remote": _git_remote_is_safe,
}


@dataclass(frozen=True)
class CommandVerdict:
    allowed: bool
    reason: str
    matched: Optional[str] = None


def classify_command(command: str, allow_list: Iterable[str]) -> CommandVerdict:
    raw = command.strip()
    if not raw:
        return CommandVerdict(False, "empty_command")

    for frag in FORBIDDEN_FRAGMENTS:
        if frag in raw:
            return CommandVerdict(False, "redirection_or_chaining", None)

    tokens = raw.split()
    best: Optional[List[str]] = None
    for entry in allow_list:
        entry_tokens = entry.split()
        if not entry_tokens or len(entry_tokens) > len(tokens):
            continue
        if tokens[: len(entry_tokens)] == entry_tokens:
            if best is None or len(entry_tokens) > len(best):
                best = entry_tokens

    if best is None:
        return CommandVerdict(False, "not_in_allowlist")

    matched = " ".join(best)
    guard = ARG_GUARDS.get(matched)
    if guard is not None and not guard(tokens[len(best) :]):
        return CommandVerdict(False, "unsafe_arguments", matched)
    return CommandVerdict(True, "ok", matched)


def is_read_only_command(command: str, allow_list: Iterable[str]) -> bool:
    return classify_command(command, allow_list).allowed
