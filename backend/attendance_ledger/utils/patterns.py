"""
Wildcard patterns for student identifiers.

Only ``*`` is special: it matches any run of characters. Every other
character, regex metacharacters included, matches itself.
"""

import re
from typing import Optional, Pattern

WILDCARD = "*"

_REGEX_METACHARACTERS = set(".+?^${}()|[]\\")


def glob_to_regex(pattern: str) -> str:
    """Translate a wildcard pattern into an anchored regular expression."""
    parts = []
    for char in pattern:
        if char == WILDCARD:
            parts.append(".*")
        elif char in _REGEX_METACHARACTERS:
            parts.append("\\" + char)
        else:
            parts.append(char)
    return "^" + "".join(parts) + "$"


def compile_pattern(pattern: str) -> Pattern:
    return re.compile(glob_to_regex(pattern), re.IGNORECASE)


def matches_everything(pattern: str) -> bool:
    return pattern.strip() == WILDCARD


def matches(pattern: str, value: Optional[str]) -> bool:
    if matches_everything(pattern):
        return True
    if value is None:
        return False
    return compile_pattern(pattern).match(value) is not None
