"""
Narrow {token} substitution for chat responses.

Only flat ``{name}`` tokens are recognised. A token with no value renders
as an empty string; anything that is not a token is left untouched.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

TOKEN_PATTERN = re.compile(r"\{([a-zA-Z0-9_]+)\}")


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(template: str | None, values: Mapping[str, Any]) -> str:
    """
    Substitute ``{token}`` placeholders.

    Args:
        template: Template text (None renders as "")
        values: Flat mapping of token name to value

    Returns:
        str: Rendered text
    """
    if not template:
        return ""
    return TOKEN_PATTERN.sub(lambda m: _stringify(values.get(m.group(1))), str(template))
