"""Text encoding of a raft's variable table.

One variable per line, sorted by name:

    environment=production
    motd=line one\\nline two

Backslash, newline and carriage return in values are escaped as \\\\, \\n
and \\r. The whole table is rewritten on every change.
"""
import re

from ..errors import MalformedStoredDataError

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-.]+$")
_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r"}


def is_valid_variable_name(name: str) -> bool:
    return bool(name) and bool(_NAME_PATTERN.match(name))


def validate_variable_name(name: str) -> str:
    """Raises ValueError for names that cannot be stored."""
    if not is_valid_variable_name(name):
        raise ValueError(f"Invalid variable name: {name!r}")
    return name


def escape_value(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def unescape_value(text: str, line_number: int = 0) -> str:
    out = []
    chars = iter(text)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt is None or nxt not in _UNESCAPES:
            raise MalformedStoredDataError(
                f"Invalid escape sequence in variable value: \\{nxt or ''}",
                line_number=line_number,
            )
        out.append(_UNESCAPES[nxt])
    return "".join(out)


def parse_variables(text: str) -> dict[str, str]:
    """Parse a variable table.

    Raises:
        MalformedStoredDataError: On a line without '=', an invalid or
            duplicate name, or a bad escape sequence
    """
    variables: dict[str, str] = {}
    # Only \n separates lines; other Unicode line breaks are value content
    for line_number, raw_line in enumerate(text.split("\n"), start=1):
        if raw_line.endswith("\r"):
            raw_line = raw_line[:-1]
        if not raw_line.strip():
            continue

        name, sep, value = raw_line.partition("=")
        if not sep:
            raise MalformedStoredDataError("Expected name=value", line_number=line_number)
        if not is_valid_variable_name(name):
            raise MalformedStoredDataError(f"Invalid variable name: {name!r}", line_number=line_number)
        if name in variables:
            raise MalformedStoredDataError(f"Duplicate variable: {name}", line_number=line_number)

        variables[name] = unescape_value(value, line_number)
    return variables


def serialize_variables(variables: dict[str, str]) -> str:
    """Serialize a variable table, names sorted."""
    lines = []
    for name in sorted(variables):
        validate_variable_name(name)
        lines.append(f"{name}={escape_value(str(variables[name]))}")
    return "".join(line + "\n" for line in lines)
