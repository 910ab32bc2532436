"""Placeholder substitution for job command and path templates.

Recognized tokens: %NUM%, %START%, %END%, %CHECKPOINT%, %LOG%, %WORKSPACE%.
Bindings are passed explicitly; nothing is read from the environment.
"""

import re
from collections.abc import Mapping

_TOKEN_RE = re.compile(r"%([A-Z]+)%")


def substitute(template: str, bindings: Mapping[str, str]) -> str:
    """Replace every bound ``%TOKEN%`` in one pass.

    Single-pass matching keeps the result independent of token order: a
    value that itself contains ``%NUM%`` is never expanded again. Tokens
    without a binding are left as-is.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in bindings:
            return bindings[name]
        return match.group(0)

    return _TOKEN_RE.sub(_replace, template)


def checkpoint_file_name(prefix: str, num: int) -> str:
    return f"{prefix}{num}.txt"


def job_bindings(
    num: int,
    start: int | str,
    end: int | str,
    *,
    checkpoint: str,
    log: str,
    workspace: str,
) -> dict[str, str]:
    """Build the full binding map for one slot."""
    return {
        "NUM": str(num),
        "START": str(start),
        "END": str(end),
        "CHECKPOINT": checkpoint,
        "LOG": log,
        "WORKSPACE": workspace,
    }
