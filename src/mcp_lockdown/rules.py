"""
Built-in policy rules.

Each rule is an independent, stateless predicate over a tool's name or
description.  Rule names are stable identifiers: they appear verbatim
in rejection messages (``policy veto: <tool> (<rule>)``) and in the
``policies`` CLI listing.

Configurable parameters (network allow-list, maximum description
length) are passed to the rule constructors.  ``builtin_policies`` reads
them from a ``PolicyConfig``, which by default is built from the
environment once, at call time, not at evaluation time.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from .config import PolicyConfig
from .models import Tool
from .policy import PolicyEngine


class RegexDenyRule:
    """Vetoes a tool when *pattern* matches its description.

    A match means something forbidden is present.  The pattern is
    case-sensitive unless compiled otherwise.
    """

    def __init__(self, name: str, pattern: str | re.Pattern) -> None:
        self.name = name
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern

    def evaluate(self, tool: Tool) -> bool:
        return self.pattern.search(tool.description or "") is None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.pattern.pattern!r})"


class HasDescription:
    name = "hasDescription"

    def evaluate(self, tool: Tool) -> bool:
        return bool(tool.description)


class NoFilesystem(RegexDenyRule):
    """Description must not name filesystem read/write APIs."""

    def __init__(self) -> None:
        super().__init__("noFilesystem", r"fs\.|readFileSync|writeFileSync")


class NoExec(RegexDenyRule):
    """Description must not name process-spawning primitives."""

    def __init__(self) -> None:
        super().__init__("noExec", r"\bexec\(|spawn\(|child_process\b")


class NoEval(RegexDenyRule):
    """Description must not reference dynamic code evaluation."""

    def __init__(self) -> None:
        super().__init__("noEval", r"\beval\(")


class NoHiddenInstructions(RegexDenyRule):
    """Front-matter fences, code fences and ``[[``/``{{`` templating."""

    def __init__(self) -> None:
        super().__init__("noHiddenInstructions", r"---\s*\n|```|\[\[|\{\{")


class NoZeroWidth(RegexDenyRule):
    """Zero-width space/non-joiner/joiner and the byte-order mark."""

    def __init__(self) -> None:
        super().__init__("noZeroWidth", "[\u200b-\u200d\ufeff]")


_URL_HOST = re.compile(r"https?://([\w.-]+)", re.ASCII)


class NetworkAllowlist:
    """Every ``http(s)://<host>`` in the description must be allow-listed."""

    name = "networkAllowlist"

    def __init__(self, allowlist: Iterable[str]) -> None:
        self.allowlist = frozenset(allowlist)

    def evaluate(self, tool: Tool) -> bool:
        for match in _URL_HOST.finditer(tool.description or ""):
            if match.group(1) not in self.allowlist:
                return False
        return True


class MaxDescriptionLength:
    """Description length must not exceed ``max_length`` characters.

    An empty description passes; ``hasDescription`` covers that case.
    """

    name = "maxDescriptionLength"

    def __init__(self, max_length: int) -> None:
        self.max_length = max_length

    def evaluate(self, tool: Tool) -> bool:
        return not tool.description or len(tool.description) <= self.max_length


_NAME_PATTERN = re.compile(r"[a-z0-9-]+")


class NameConventions:
    """Tool names are lowercase alphanumerics and hyphens."""

    name = "nameConventions"

    def evaluate(self, tool: Tool) -> bool:
        return _NAME_PATTERN.fullmatch(tool.name) is not None


def builtin_policies(config: Optional[PolicyConfig] = None) -> list:
    """The default rule chain, in evaluation order."""
    if config is None:
        config = PolicyConfig.from_env()
    return [
        HasDescription(),
        NoFilesystem(),
        NoExec(),
        NoEval(),
        NetworkAllowlist(config.network_allowlist),
        MaxDescriptionLength(config.max_description_length),
        NoHiddenInstructions(),
        NameConventions(),
        NoZeroWidth(),
    ]


def default_engine(config: Optional[PolicyConfig] = None) -> PolicyEngine:
    """A ``PolicyEngine`` with the built-in rules registered and no shields."""
    engine = PolicyEngine()
    engine.register_policies(builtin_policies(config))
    return engine
