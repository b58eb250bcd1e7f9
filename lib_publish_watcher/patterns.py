"""Ignore rules for paths that must never trigger a rebuild."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DEFAULT_IGNORE_PATTERNS", "IgnoreRules"]

WILDCARD = "*"

DEFAULT_IGNORE_PATTERNS: Tuple[str, ...] = (
    # Version control
    ".git",
    # Build output
    "dist",
    ".angular",
    ".nx",
    # Dependency caches
    "node_modules",
    ".cache",
    # Temporary files
    "tmp",
    # Tests
    "*.spec.ts",
    "*.test.ts",
)


def _compile_glob(pattern: str) -> Pattern[str]:
    """Translate a single-wildcard glob into a regex searched against a path.

    Literal parts are escaped and ``*`` becomes ``.*``. The match may start
    anywhere in the path but must run to its end.

    Example:
        >>> bool(_compile_glob("*.spec.ts").search("libs/foo/a.spec.ts"))
        True
    """
    body = ".*".join(re.escape(part) for part in pattern.split(WILDCARD))
    return re.compile(body + "$")


class IgnoreRules:
    """A static set of literal and wildcard ignore rules.

    Attributes:
        patterns (Tuple[str, ...]): The raw rules, in configuration order.
    """

    __slots__ = ("patterns", "_literals", "_globs")

    def __init__(self, patterns: Optional[Iterable[str]] = None) -> None:
        if patterns is None:
            patterns = DEFAULT_IGNORE_PATTERNS

        self.patterns: Tuple[str, ...] = tuple(p.strip() for p in patterns if p and p.strip())
        self._literals: List[str] = []
        self._globs: List[Pattern[str]] = []

        for pattern in self.patterns:
            if WILDCARD in pattern:
                if pattern.count(WILDCARD) > 1:
                    logger.warning(
                        f"Ignore rule '{pattern}' has more than one wildcard; "
                        "each '*' still matches any run of characters."
                    )
                self._globs.append(_compile_glob(pattern))
            else:
                self._literals.append(pattern)

    def should_ignore(self, path: str) -> bool:
        """Return True if any rule matches the path.

        Args:
            path (str): A filesystem path or a bare file name. Backslashes are
                treated as separators.

        Returns:
            bool: True if the path contains a literal rule or matches a
            wildcard rule.
        """
        normalized = str(path).replace("\\", "/")
        for literal in self._literals:
            if literal in normalized:
                return True
        for regex in self._globs:
            if regex.search(normalized):
                return True
        return False

    def __call__(self, path: str) -> bool:
        return self.should_ignore(path)

    def __repr__(self) -> str:
        return f"<IgnoreRules patterns={list(self.patterns)}>"
