"""
Rewrite-template helpers.

Rule targets use ``$N`` placeholders. Plain regex rewrites expand them with
JavaScript replacement-string rules (``$1``..``$99``, ``$&``, ``$```, ``$'``,
``$$``) because that is the dialect rule feeds are authored in; processed
rewrites substitute already-transformed group text literally.
"""

import re
from typing import Match, Sequence

_TEMPLATE_TOKEN = re.compile(r"\$(\$|&|`|'|\d{1,2})")


def expand_template(match: Match, template: str) -> str:
    """Expand a replacement template against a regex match."""
    group_count = match.re.groups
    source = match.string

    def _token(m: Match) -> str:
        token = m.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return match.group(0)
        if token == "`":
            return source[:match.start()]
        if token == "'":
            return source[match.end():]

        # Two digits win when that group exists, otherwise fall back to one
        if len(token) == 2:
            number = int(token)
            if 1 <= number <= group_count:
                return match.group(number) or ""
            token, rest = token[0], token[1]
        else:
            rest = ""
        number = int(token)
        if 1 <= number <= group_count:
            return (match.group(number) or "") + rest
        return m.group(0)

    return _TEMPLATE_TOKEN.sub(_token, template)


def substitute_first(pattern, url: str, template: str) -> str:
    """Replace the first match of ``pattern`` in ``url`` with the expanded template."""
    match = pattern.search(url)
    if match is None:
        return url
    return url[:match.start()] + expand_template(match, template) + url[match.end():]


def substitute_groups(template: str, groups: Sequence[str]) -> str:
    """Literal ``$N`` substitution of already-processed group text, N ascending."""
    result = template
    for index, value in enumerate(groups, start=1):
        result = result.replace(f"${index}", value)
    return result
