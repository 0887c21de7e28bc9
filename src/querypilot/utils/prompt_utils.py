"""
Helpers for building model prompts.

Character limits are hard counts rather than token estimates; result rows
are rendered as JSON with long text cells shortened.
"""

import json
from typing import Any, List, Optional, Sequence


def check_input_size(prompt: str, system_prompt: Optional[str] = None, max_chars: int = 0) -> None:
    """
    Raise ValueError when prompt plus system prompt exceed `max_chars`.

    Example:
        >>> check_input_size("Hello", system_prompt="Hi", max_chars=1000)  # OK
    """
    total_chars = len(prompt) + (len(system_prompt) if system_prompt else 0)
    if total_chars > max_chars:
        raise ValueError(
            f"Total input too large: {total_chars} characters, "
            f"maximum allowed: {max_chars}"
        )


def shorten_cell(value: Any, max_length: int = 200) -> Any:
    """
    Shorten a string cell to `max_length`, keeping its last three characters.

    Non-string values pass through untouched.
    """
    if not isinstance(value, str) or len(value) <= max_length:
        return value
    if max_length <= 10:
        return value[:max_length - 3] + "..."
    return value[:max_length - 6] + "..." + value[-3:]


def rows_to_json(rows: Sequence[Sequence[Any]], limit: int, max_cell_length: int = 200) -> str:
    """Render up to `limit` rows as indented JSON; dates and decimals become strings."""
    shortened: List[List[Any]] = [
        [shorten_cell(cell, max_cell_length) for cell in row] for row in rows[:limit]
    ]
    return json.dumps(shortened, indent=2, ensure_ascii=False, default=str)
