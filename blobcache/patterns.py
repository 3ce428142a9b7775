from __future__ import annotations

import re
from typing import Optional


class KeyMatcher:
    """Key pattern matcher for selective flushing."""

    def __init__(self, pattern: Optional[str] = None):
        """
        Initialize key matcher.

        Patterns are regular expressions searched anywhere in the key, so
        ``"two"`` matches ``"keytwo"`` and ``"^key"`` anchors at the start.

        Args:
            pattern: Regular expression. None or empty matches every key.
        """
        self.pattern = pattern or None
        self.regex = re.compile(self.pattern) if self.pattern else None

    def matches(self, key: str) -> bool:
        if self.regex is None:
            return True
        return self.regex.search(key) is not None

    def scan_glob(self) -> str:
        """
        Glob to push down to a server-side SCAN MATCH filter.

        Only plain literals can be translated safely, anything with regex
        syntax falls back to ``*`` and is filtered client-side.

        Returns:
            Glob-style pattern accepted by SCAN
        """
        if self.pattern is None or re.escape(self.pattern) != self.pattern:
            return "*"
        # A literal cannot contain glob specials either once re.escape left it intact
        return f"*{self.pattern}*"
