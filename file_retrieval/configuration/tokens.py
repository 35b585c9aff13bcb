"""Date tokens in path patterns and wildcard filename matching."""

import fnmatch
import re
from datetime import datetime
from typing import List


DATE_TOKEN_PATTERN = re.compile(r'\{(yyyy|yy|mm|dd)\}', re.IGNORECASE)
ANY_TOKEN_PATTERN = re.compile(r'\{[^}]+\}')
VALID_TOKENS = ('{yyyy}', '{yy}', '{mm}', '{dd}')


def replace_tokens(pattern: str, date: datetime) -> str:
    """Substitute date tokens in a path or filename pattern.

    Tokens are matched case-insensitively: ``{yyyy}`` four-digit year,
    ``{yy}`` two-digit year, ``{mm}`` month, ``{dd}`` day.
    """
    if not pattern or not pattern.strip():
        return pattern

    values = {
        'yyyy': f"{date.year:04d}",
        'yy': f"{date.year % 100:02d}",
        'mm': f"{date.month:02d}",
        'dd': f"{date.day:02d}",
    }
    return DATE_TOKEN_PATTERN.sub(lambda m: values[m.group(1).lower()], pattern)


def contains_tokens(pattern: str) -> bool:
    if not pattern:
        return False
    return DATE_TOKEN_PATTERN.search(pattern) is not None


def find_invalid_tokens(pattern: str) -> List[str]:
    """Return brace-delimited tokens that are not supported date tokens."""
    if not pattern:
        return []
    invalid = []
    for token in ANY_TOKEN_PATTERN.findall(pattern):
        if token.lower() not in VALID_TOKENS and token not in invalid:
            invalid.append(token)
    return invalid


def validate_patterns(host: str, file_path_pattern: str, filename_pattern: str) -> List[str]:
    """Validate token usage across a configuration's location fields.

    Returns:
        List of error messages, empty when valid
    """
    errors = []
    if host and contains_tokens(host):
        errors.append("Server name/host cannot contain date tokens like {yyyy}, {mm}, {dd}")

    invalid = find_invalid_tokens(file_path_pattern)
    if invalid:
        errors.append(f"File path pattern contains invalid tokens: {', '.join(invalid)}")

    invalid = find_invalid_tokens(filename_pattern)
    if invalid:
        errors.append(f"Filename pattern contains invalid tokens: {', '.join(invalid)}")

    return errors


def matches_filename(filename: str, pattern: str) -> bool:
    """Case-insensitive wildcard match supporting ``*`` and ``?``.

    An empty pattern or ``*`` matches every name.
    """
    if not pattern or pattern == '*':
        return True
    # Bracket classes are not part of the pattern language
    escaped = pattern.replace('[', '[[]')
    return fnmatch.fnmatchcase(filename.lower(), escaped.lower())


def normalize_extension(extension: str) -> str:
    return extension.strip().lstrip('.').lower() if extension else ''


def matches_extension(filename: str, extension_filter: str) -> bool:
    """Case-insensitive extension check; leading dots on the filter are ignored."""
    wanted = normalize_extension(extension_filter)
    if not wanted:
        return True
    return filename.lower().endswith(f".{wanted}")
