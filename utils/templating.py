"""Variable substitution for message text, URLs and request bodies."""
from __future__ import annotations

import re

_TOKEN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render_template(text: str, variables: dict[str, str]) -> str:
    """
    Replace {{name}} tokens with values from `variables`.

    Tokens with no matching variable are left verbatim.
    """
    if not text:
        return text

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return _TOKEN.sub(replace, text)
