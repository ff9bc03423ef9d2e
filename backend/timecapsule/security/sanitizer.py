"""
Input sanitization for capsule text fields and object-store keys.

Rejects:
- Null bytes and control characters (newlines/tabs allowed in bodies)
- Path traversal (../ sequences) in keys and names
- Basic script/XSS payloads in single-line fields
"""
import re
from typing import Optional


class InputSanitizer:
    """Validates and sanitizes user input."""

    NULL_BYTE_PATTERN = re.compile(r'\x00')
    CONTROL_CHAR_PATTERN = re.compile(r'[\x00-\x08\x0b-\x0c\x0e-\x1f\x7f]')  # Except \t, \n, \r
    NEWLINE_PATTERN = re.compile(r'[\r\n]')
    PATH_TRAVERSAL_PATTERN = re.compile(r'\.\.[/\\]|[/\\]\.\.$|^\.\.$')
    SCRIPT_PATTERN = re.compile(r'<script|javascript:|onerror|onclick|<iframe|<embed', re.IGNORECASE)
    OBJECT_KEY_PATTERN = re.compile(r'^[A-Za-z0-9._\-/]+$')
    FILE_NAME_UNSAFE_PATTERN = re.compile(r'[^a-z0-9.\-_/]+')

    @staticmethod
    def sanitize_string(value: str, max_length: Optional[int] = None, allow_newlines: bool = False) -> str:
        """
        Sanitize string input.

        Args:
            value: Input string
            max_length: Optional max length after sanitization
            allow_newlines: Allow \\n and \\r characters (for message bodies)

        Returns:
            Sanitized string

        Raises:
            ValueError: If input contains dangerous patterns
        """
        if not isinstance(value, str):
            raise ValueError("Input must be string")

        if InputSanitizer.NULL_BYTE_PATTERN.search(value):
            raise ValueError("Null bytes not allowed")

        if InputSanitizer.CONTROL_CHAR_PATTERN.search(value):
            raise ValueError("Control characters not allowed")

        if not allow_newlines:
            if InputSanitizer.NEWLINE_PATTERN.search(value):
                raise ValueError("Line breaks not allowed")
            if InputSanitizer.SCRIPT_PATTERN.search(value):
                raise ValueError("Script/XSS patterns not allowed")

        if max_length and len(value) > max_length:
            raise ValueError(f"Input exceeds max length of {max_length}")

        return value

    @staticmethod
    def sanitize_body(value: str) -> str:
        """Sanitize capsule message (newlines allowed, trailing spaces trimmed per line)."""
        sanitized = InputSanitizer.sanitize_string(value, allow_newlines=True)
        lines = [line.rstrip() for line in sanitized.split('\n')]
        return '\n'.join(lines)

    @staticmethod
    def sanitize_object_key(value: str) -> str:
        """Validate an object-store key handed back by a client."""
        sanitized = InputSanitizer.sanitize_string(value.strip(), max_length=512)
        if sanitized.startswith('/') or '//' in sanitized:
            raise ValueError("Invalid object key")
        if InputSanitizer.PATH_TRAVERSAL_PATTERN.search(sanitized) or '..' in sanitized.split('/'):
            raise ValueError("Path traversal not allowed")
        if not InputSanitizer.OBJECT_KEY_PATTERN.match(sanitized):
            raise ValueError("Object key contains unsupported characters")
        return sanitized

    @staticmethod
    def slugify_file_name(original: Optional[str], max_length: int = 80) -> Optional[str]:
        """
        Reduce an uploaded file name to a key-safe slug.

        Drops any directory part, lowercases, collapses unsafe runs to ``-``.
        Returns None when nothing usable remains.
        """
        if not original:
            return None
        name = original.replace('\\', '/').split('/')[-1].lower()
        name = InputSanitizer.FILE_NAME_UNSAFE_PATTERN.sub('-', name)
        name = name.replace('/', '-')
        name = re.sub(r'-{2,}', '-', name)
        name = re.sub(r'[.]{2,}', '.', name)
        name = name.strip('-.')[:max_length]
        return name or None
