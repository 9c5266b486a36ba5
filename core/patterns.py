import re
from enum import Enum, IntEnum
from functools import lru_cache
from typing import Optional, Pattern, Tuple


# characters that turn a non-wildcard pattern into a regex ('.' alone does not)
REGEX_METACHARS = set('^$+?()[]{}|\\')


class PatternKind(Enum):
    EXACT = 'exact'
    WILDCARD = 'wildcard'
    REGEX = 'regex'


class RecordType(IntEnum):
    """Query type codes used by the resolution callback (not DNS rdtypes)."""
    A = 4
    AAAA = 6


def is_ipv6(address: str) -> bool:
    return ':' in address


def classify_pattern(pattern: str) -> PatternKind:
    """Classify a hosts pattern as exact, wildcard or regex.

    A '*' always means wildcard, even if the rest of the pattern is valid regex.
    Plain domains compile as regex too ('.' is a metachar) but stay exact unless
    they carry one of REGEX_METACHARS.
    """
    if '*' in pattern:
        return PatternKind.WILDCARD
    try:
        re.compile(pattern)
    except re.error:
        return PatternKind.EXACT
    if any(c in REGEX_METACHARS for c in pattern):
        return PatternKind.REGEX
    return PatternKind.EXACT


def compile_pattern(pattern: str) -> Pattern:
    """Compile a regex-kind pattern. Raises re.error when malformed."""
    return re.compile(pattern, re.IGNORECASE)


def query_forms(domain: str) -> Tuple[str, str]:
    """Return the lower-cased query domain as given and with any trailing dot removed."""
    d = domain.strip().lower()
    return d, d[:-1] if d.endswith('.') else d


@lru_cache(maxsize=4096)
def _wildcard_regex(pattern: str) -> Pattern:
    # *.example.com -> ^.*\.example\.com$
    return re.compile(re.escape(pattern.lower()).replace('\\*', '.*'))


def match_exact(domain: str, pattern: str) -> bool:
    p = pattern.strip().lower()
    return any(form == p for form in query_forms(domain))


def match_wildcard(domain: str, pattern: str) -> bool:
    rx = _wildcard_regex(pattern)
    return any(rx.fullmatch(form) is not None for form in query_forms(domain))


def match_regex(domain: str, compiled: Optional[Pattern]) -> bool:
    if compiled is None:
        return False
    return any(compiled.search(form) is not None for form in query_forms(domain))
