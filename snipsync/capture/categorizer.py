from __future__ import annotations

from typing import Literal

Category = Literal["json", "url", "sql", "code", "general"]

SQL_KEYWORDS = ("SELECT", "INSERT", "UPDATE")
CODE_TOKENS = ("{", "}", "function", "const ")


def categorize(content: str) -> Category:
    """Advisory category for a clipboard capture. First matching rule wins."""
    if content.startswith("{") and content.endswith("}"):
        return "json"
    if content.startswith("http://") or content.startswith("https://"):
        return "url"
    if any(k in content for k in SQL_KEYWORDS):
        return "sql"
    if any(t in content for t in CODE_TOKENS):
        return "code"
    if "<" in content and ">" in content:
        return "code"
    return "general"
