"""
Bundle version comparison.

Versions are compared on their numeric ``major.minor.patch`` triple only.
Anything after a ``-`` (pre-release) or ``+`` (build metadata) is dropped,
so ``2.0.0-beta`` and ``2.0.0`` compare equal. Missing or non-numeric
segments count as 0 and nothing here ever raises on bad input.
"""

import re

_LEADING_DIGITS = re.compile(r'\d+')


def parse_version(value):
    """Return the ``(major, minor, patch)`` triple for ``value``."""
    if not isinstance(value, str):
        return (0, 0, 0)

    text = value.strip()
    if text[:1] in ('v', 'V'):
        text = text[1:]
    text = re.split(r'[-+]', text, maxsplit=1)[0]

    parts = []
    for segment in text.split('.')[:3]:
        match = _LEADING_DIGITS.match(segment.strip())
        parts.append(int(match.group()) if match else 0)
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def compare(a, b):
    """-1 if a < b, 0 if equal, 1 if a > b."""
    left, right = parse_version(a), parse_version(b)
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def gt(a, b):
    return compare(a, b) > 0


def gte(a, b):
    return compare(a, b) >= 0


def lt(a, b):
    return compare(a, b) < 0


def lte(a, b):
    return compare(a, b) <= 0


def in_range(version, minimum=None, maximum=None):
    """Inclusive range check; a blank bound is open."""
    if minimum and lt(version, minimum):
        return False
    if maximum and gt(version, maximum):
        return False
    return True


def version_sort_key(version):
    return parse_version(version)
