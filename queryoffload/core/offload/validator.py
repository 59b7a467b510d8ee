import re

from queryoffload.core.exceptions import (
    ForbiddenKeywordError,
    MultiStatementError,
    NotASelectError,
)

# -----------------------------------------------------------------------------
# VALIDATOR
# Purpose: conservative lexical gate in front of admission. Not a SQL parser:
# it can reject legitimate SELECTs that mention these words in literals or
# identifiers, and it does not catch injection hidden in functions/subqueries.
# -----------------------------------------------------------------------------

FORBIDDEN_KEYWORDS = ("DROP", "UPDATE", "DELETE", "INSERT", "ALTER")

_FORBIDDEN_RE = re.compile(
    r"\b(" + "|".join(FORBIDDEN_KEYWORDS) + r")\b", re.IGNORECASE
)


def validate_select_query(query: str) -> None:
    """
    Reject anything that is not a single read-only SELECT.

    Rules are applied in order:
        1. must start with ``SELECT `` after trimming (case-insensitive)
        2. no semicolons anywhere
        3. none of DROP/UPDATE/DELETE/INSERT/ALTER as a whole word

    Raises:
        NotASelectError, MultiStatementError, ForbiddenKeywordError
    """
    normalized = query.strip().upper()

    if not normalized.startswith("SELECT "):
        raise NotASelectError()

    if ";" in normalized:
        raise MultiStatementError()

    match = _FORBIDDEN_RE.search(query)
    if match:
        raise ForbiddenKeywordError(match.group(1).upper())
