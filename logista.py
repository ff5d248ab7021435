#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2024 The logista authors
"""
logista: format streams of JSON log records with templates

Each input line is decoded as a JSON object and rendered through a format
template like "{timestamp | date} {level | pad 7 | colorByLevel .level} {message}"
"""

# Standard library imports for functionality
import argparse
import collections.abc
import contextlib
import dataclasses
import datetime as dt
import decimal
import errno
import gzip
import inspect
import io
import json
import os
import re
import signal
import sys
import textwrap
import unittest
import zipfile

from decimal import Decimal

# Standard library typing imports
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    TextIO,
    Tuple,
)

import yaml

__version__ = "0.5.0"

DEFAULT_FORMAT = "{{.timestamp | date}} {{.level}} {{.message}}"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_TABLE_PADDING = 19
DEFAULT_TRUNC_LENGTH = 20
DEFAULT_WRAP_WIDTH = 80

# Sentinels that show up in the output instead of errors
NO_VALUE = "<no value>"
NIL = "<nil>"
EMPTY = "<empty>"
NAN = "NaN"
NON_JSON_MARKER = ">>>"

# Upper bound for the resolve-and-rescan loop over color tags
MAX_TAG_ITERATIONS = 10000

# Names of keys that structured loggers commonly emit. Use lowercase keys here.
TS_KEYS = "timestamp ts time t at".split()
MSG_KEYS = "msg message".split()
LEVEL_KEYS = "log_level level lvl loglevel severity".split()
STANDARD_FIELDS = TS_KEYS + MSG_KEYS + LEVEL_KEYS + ["logger", "caller"]

CONFIG_FILENAME = ".logista.yaml"
ENV_PREFIX = "LOGISTA_"

# Regular expressions
# String literals first, so an @ inside quotes is never rewritten
RE_AT_SYMBOL = re.compile(
    r'(?P<literal>"(?:[^"\\]|\\.)*"|`[^`]*`)'
    r"|(?<!\{)\{@(?P<braced>[a-zA-Z0-9._-]+)(?P<rest>[^{}]*)\}(?!\})"
    r"|\B@(?P<name>[a-zA-Z0-9._-]+)"
)
RE_LEADING_AT = re.compile(r"@([a-zA-Z0-9._-]+)")
RE_COLOR_TAG = re.compile(r"<([^>]+)>([^<]*)(</[^>]*>|</>)")
RE_FRACTION = re.compile(r"(\.\d{6})\d+")
RE_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
RE_PRINTF_VERB = re.compile(r"%[-+ #0]*(?:\d+)?(?:\.\d+)?([a-zA-Z%])")
RE_ACTION = re.compile(
    r'\{\{(?P<body>(?:"(?:[^"\\]|\\.)*"|`[^`]*`|[^"`}]|\}(?!\}))*)\}\}', re.S
)
RE_TOKEN = re.compile(
    r"""
    (?P<space>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<raw>`[^`]*`)
  | (?P<declare>:=)
  | (?P<assign>=)
  | (?P<pipe>\|)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
  | (?P<field>(?:\.[A-Za-z_]\w*)+)
  | (?P<number>[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?)
  | (?P<variable>\$\w*(?:\.[A-Za-z_]\w*)*)
  | (?P<dot>\.)
  | (?P<ident>[A-Za-z_]\w*)
    """,
    re.X,
)

# ANSI SGR parameters by style name
ANSI_RESET = "\x1b[0m"
STYLE_CODES = {
    # Foreground colors
    "black": "30",
    "red": "31",
    "green": "32",
    "yellow": "33",
    "blue": "34",
    "magenta": "35",
    "cyan": "36",
    "white": "37",
    "gray": "90",
    # Bright foreground colors
    "brightred": "91",
    "brightgreen": "92",
    "brightyellow": "93",
    "brightblue": "94",
    "brightmagenta": "95",
    "brightcyan": "96",
    "brightwhite": "97",
    # Background colors
    "bg-black": "40",
    "bg-red": "41",
    "bg-green": "42",
    "bg-yellow": "43",
    "bg-blue": "44",
    "bg-magenta": "45",
    "bg-cyan": "46",
    "bg-white": "47",
    "bg-gray": "100",
    # Bright background colors
    "bg-brightred": "101",
    "bg-brightgreen": "102",
    "bg-brightyellow": "103",
    "bg-brightblue": "104",
    "bg-brightmagenta": "105",
    "bg-brightcyan": "106",
    "bg-brightwhite": "107",
    # Text attributes
    "bold": "1",
    "dim": "2",
    "italic": "3",
    "underline": "4",
}

LEVEL_COLORS = {
    "trace": "blue",
    "debug": "cyan",
    "info": "green",
    "notice": "green",
    "warn": "yellow",
    "warning": "yellow",
    "error": "red",
    "err": "red",
    "fatal": "red",
    "panic": "red",
    "alert": "red",
    "crit": "red",
    "critical": "red",
    "emerg": "red",
    "emergency": "red",
}

NANOS_PER_UNIT = {
    "ns": 1,
    "us": 1000,
    "µs": 1000,  # U+00B5 micro sign
    "μs": 1000,  # U+03BC greek mu
    "ms": 1000**2,
    "s": 1000**3,
    "m": 60 * 1000**3,
    "h": 3600 * 1000**3,
}


class LogistaError(Exception):
    pass


class TemplateSyntaxError(LogistaError):
    pass


class TemplateRenderError(LogistaError):
    pass


class ConfigError(LogistaError):
    pass


class RecordDecodeError(LogistaError):
    def __init__(self, message: str, line: str, lineno: int):
        super().__init__(message)
        self.line = line
        self.lineno = lineno


def print_err(*args, **kwargs):
    print(*args, file=sys.stderr, **kwargs)


#
# Color tags
#


def apply_color_code(styles: str, content: str) -> str:
    """Wrap content in the escape sequence for a whitespace-separated style list.

    Unknown style names are ignored. If no style is known, the content is
    returned unchanged.
    """
    codes = [
        STYLE_CODES[style.lower()]
        for style in styles.split()
        if style.lower() in STYLE_CODES
    ]
    if not codes:
        return content
    return f"\x1b[{';'.join(codes)}m{content}{ANSI_RESET}"


def apply_colors(text: str, disabled: bool = False) -> str:
    """
    Replace color tags like <red>text</red>, <bold cyan>text</> with ANSI codes.

    Tags are resolved innermost first: the tag pattern cannot match content
    that contains another "<", so each match is a tag without nested tags.
    After a replacement the text is scanned again until no tag is left.

    Args:
        text: Text with color tags
        disabled: Strip the tags instead of emitting escape sequences

    Returns:
        str: Text with tags replaced by escape sequences (or removed)

    Example:
        >>> apply_colors("<red>a <bold>b</bold></red>")
        '\\x1b[31ma \\x1b[1mb\\x1b[0m\\x1b[0m'
    """
    if disabled:
        return strip_tags(text)
    for _ in range(MAX_TAG_ITERATIONS):
        match = RE_COLOR_TAG.search(text)
        if match is None:
            break
        colored = apply_color_code(match.group(1), match.group(2))
        text = text[: match.start()] + colored + text[match.end() :]
    return text


def strip_tags(text: str) -> str:
    """Remove color tags, keeping their content."""
    for _ in range(MAX_TAG_ITERATIONS):
        stripped = RE_COLOR_TAG.sub(r"\2", text)
        if stripped == text:
            break
        text = stripped
    return text


def apply_color_to_string(content: str, style: str) -> str:
    code = STYLE_CODES.get(style.lower())
    if code is None:
        return content
    return f"\x1b[{code}m{content}{ANSI_RESET}"


def color_by_level_name(level: str) -> str:
    """Map a log level like "ERROR" or "warn" to a color name."""
    return LEVEL_COLORS.get(level.strip().lower(), "white")


#
# Value conversion helpers
#


class Numeral(Decimal):
    """A decoded JSON number that prints exactly as it was written.

    Arithmetic on it yields plain Decimals.
    """

    def __new__(cls, text: str):
        number = super().__new__(cls, text)
        number.text = text
        return number

    def __str__(self) -> str:
        return self.text


def display(value: Any) -> str:
    """
    Return the plain text form of a record value.

    Strings are returned as they are, numbers keep the digits they were
    decoded with, booleans become "true"/"false" as in JSON and None becomes
    "<nil>". Nested objects and arrays are shown as compact JSON.
    """
    if value is None:
        return NIL
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, dt.timedelta):
        return go_duration_string(to_nanoseconds(value))
    if isinstance(value, (collections.abc.Mapping, list, tuple)):
        return json_text(value)
    return str(value)


def json_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, (bool, int, float, Decimal)):
        return display(value)
    if isinstance(value, collections.abc.Mapping):
        items = (
            f"{json.dumps(str(key), ensure_ascii=False)}: {json_text(val)}"
            for key, val in value.items()
        )
        return "{" + ", ".join(items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(json_text(item) for item in value) + "]"
    return json.dumps(display(value), ensure_ascii=False)


def to_number(value: Any) -> Optional[Decimal]:
    """
    Convert a value to a finite Decimal, or return None if it is not numeric.

    Integers, floats, Decimals and numeric strings are accepted. Booleans,
    None, NaN and infinities are not numbers here.

    Examples:
        >>> to_number("2.5")
        Decimal('2.5')
        >>> to_number("abc") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, float):
        number = Decimal(repr(value))
    else:
        try:
            number = Decimal(display(value))
        except decimal.InvalidOperation:
            return None
    return number if number.is_finite() else None


def to_int(value: Any, name: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    number = to_number(value)
    if number is None:
        raise TypeError(f"{name} must be a number, got {display(value)!r}")
    return int(number)


def int_or_default(value: Any, default: int) -> int:
    number = to_number(value)
    return default if number is None else int(number)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def is_true(value: Any) -> bool:
    """Truth of a template value: false, 0, None and empty values are false."""
    return bool(value)


#
# Dates and durations
#


def trim_fraction(text: str) -> str:
    """Cut fractional seconds to microseconds, the precision of datetime."""
    return RE_FRACTION.sub(r"\1", text, count=1)


# Tried in this order. Layouts with a zone keep the clock fields of that zone.
datetime_converters = [
    # RFC 3339 (military timezone Z or numeric offset)
    lambda s: dt.datetime.strptime(s, "%Y-%m-%dT%H:%M:%S%z"),
    # RFC 3339 with fractional seconds, down to nanoseconds
    lambda s: dt.datetime.strptime(trim_fraction(s), "%Y-%m-%dT%H:%M:%S.%f%z"),
    # ISO 8601 without timezone
    lambda s: dt.datetime.strptime(trim_fraction(s), "%Y-%m-%dT%H:%M:%S.%f"),
    lambda s: dt.datetime.strptime(s, "%Y-%m-%dT%H:%M:%S"),
    lambda s: dt.datetime.strptime(s, "%Y-%m-%d %H:%M:%S"),
    # only date
    lambda s: dt.datetime.strptime(s, "%Y-%m-%d"),
    # ANSI C asctime (Mon Jan 2 15:04:05 2006)
    lambda s: dt.datetime.strptime(s, "%a %b %d %H:%M:%S %Y"),
    # Unix date (Mon Jan 2 15:04:05 UTC 2006)
    lambda s: dt.datetime.strptime(s, "%a %b %d %H:%M:%S %Z %Y"),
    # Syslog, assume current year if not given
    lambda s: dt.datetime.strptime(
        f"{dt.datetime.now().year} {s}", "%Y %b %d %H:%M:%S"
    ),
    lambda s: dt.datetime.strptime(s, "%b %d %H:%M:%S %Y"),
    # NCSA Common Log Format
    lambda s: dt.datetime.strptime(s, "%d/%b/%Y:%H:%M:%S %z"),
]


def guess_datetime(timestamp: str) -> Optional[dt.datetime]:
    """
    Parse a timestamp string with the first matching layout.

    Args:
        timestamp: Timestamp text, e.g. "2024-03-16T14:30:00Z"

    Returns:
        Optional[datetime.datetime]: The parsed datetime, or None if no layout fits

    Examples:
        >>> guess_datetime("2024-03-16T14:30:00Z")
        datetime.datetime(2024, 3, 16, 14, 30, tzinfo=datetime.timezone.utc)
        >>> guess_datetime("invalid") is None
        True
    """
    for converter in datetime_converters:
        try:
            return converter(timestamp)
        except (ValueError, TypeError, OverflowError):
            continue
    return None


def datetime_from_epoch(seconds: Decimal) -> dt.datetime:
    """Local time for Unix seconds, keeping the fraction as microseconds."""
    whole = int(seconds)
    micros = int((seconds - whole) * 1000000)
    return dt.datetime.fromtimestamp(whole) + dt.timedelta(microseconds=micros)


def parse_go_duration(text: str) -> int:
    """
    Parse a duration literal like "1h30m", "500ms" or "-1.5s" into nanoseconds.

    Valid units are "ns", "us" (or "µs"), "ms", "s", "m" and "h". A bare "0"
    is accepted without unit.

    Raises:
        ValueError: If the text is not a duration literal
    """
    rest = text
    sign = 1
    if rest[:1] in ("-", "+"):
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return 0
    if not rest:
        raise ValueError(f"invalid duration {text!r}")
    total = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = RE_DURATION_PART.match(rest, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += Decimal(match.group(1)) * NANOS_PER_UNIT[match.group(2)]
        pos = match.end()
    return sign * int(total)


def to_nanoseconds(value: Any) -> int:
    """
    Interpret a value as a time span in nanoseconds.

    Accepts timedelta objects, duration literals ("1h30m", "250ms") and
    numbers, which are taken as milliseconds.

    Raises:
        ValueError: If the value cannot be read as a duration
    """
    if isinstance(value, dt.timedelta):
        whole_seconds = value.days * 86400 + value.seconds
        return whole_seconds * 1000**3 + value.microseconds * 1000
    if isinstance(value, str):
        return parse_go_duration(value)
    number = to_number(value) if is_number(value) else None
    if number is None:
        raise ValueError(f"cannot parse {display(value)!r} as duration")
    return int(number * 1000000)


def _decimal_units(value: int, unit: int) -> str:
    whole, fraction = divmod(value, unit)
    if not fraction:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}.{fraction:0{digits}d}".rstrip("0")


def go_duration_string(nanos: int) -> str:
    """Compound form of a duration: "1h2m3.5s", "1m30s", "250ms", "0s"."""
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)
    if nanos < NANOS_PER_UNIT["s"]:
        for unit in ("ms", "µs", "ns"):
            if nanos >= NANOS_PER_UNIT[unit]:
                return sign + _decimal_units(nanos, NANOS_PER_UNIT[unit]) + unit
    hours, rest = divmod(nanos, NANOS_PER_UNIT["h"])
    minutes, rest = divmod(rest, NANOS_PER_UNIT["m"])
    seconds = _decimal_units(rest, NANOS_PER_UNIT["s"]) + "s"
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{sign}{minutes}m{seconds}"
    return sign + seconds


def format_duration(nanos: int) -> str:
    """
    Format a duration for display, choosing the unit by magnitude.

    Examples:
        >>> format_duration(500)
        '500ns'
        >>> format_duration(1500000)
        '1.50ms'
        >>> format_duration(90 * 1000**3)
        '1m30s'
    """
    if nanos < NANOS_PER_UNIT["us"]:
        return f"{nanos}ns"
    if nanos < NANOS_PER_UNIT["ms"]:
        return f"{nanos / NANOS_PER_UNIT['us']:.2f}µs"
    if nanos < NANOS_PER_UNIT["s"]:
        return f"{nanos / NANOS_PER_UNIT['ms']:.2f}ms"
    if nanos < 10 * NANOS_PER_UNIT["s"]:
        return f"{nanos / NANOS_PER_UNIT['s']:.2f}s"
    return go_duration_string(nanos)


#
# Stateless template functions
#


def pad(length: Any, value: Any) -> str:
    """Right-pad the value with spaces to the given length. Usage: {{.level | pad 7}}"""
    width = to_int(length, "pad length")
    if value is None:
        return " " * width
    text = display(value)
    return text + " " * (width - len(text))


def trunc(max_len: Any, value: Any) -> str:
    """Shorten the value to max_len characters, ending in "...". Usage: {{.msg | trunc 20}}"""
    if value is None:
        return NO_VALUE
    text = display(value)
    if not text:
        return text
    limit = int_or_default(max_len, DEFAULT_TRUNC_LENGTH)
    if limit <= 0:
        limit = DEFAULT_TRUNC_LENGTH
    if len(text) <= limit:
        return text
    # No room for an ellipsis
    if limit < 4:
        return text[:limit]
    return text[: limit - 3] + "..."


def wrap(width: Any, indent: Any, value: Any) -> str:
    """
    Word-wrap the value. Usage: {{.description | wrap 80 2}}

    Lines after the first are indented by `indent` spaces, which count
    against the width. Words are never split, a word that does not fit
    starts a new line.
    """
    if value is None:
        return NO_VALUE
    text = display(value)
    if not text:
        return text
    width = int_or_default(width, DEFAULT_WRAP_WIDTH)
    if width <= 0:
        width = DEFAULT_WRAP_WIDTH
    indent = max(int_or_default(indent, 0), 0)
    return textwrap.fill(
        " ".join(text.split()),
        width=width,
        subsequent_indent=" " * indent,
        break_long_words=False,
        break_on_hyphens=False,
    )


def field_matches(pattern: str, key: str) -> bool:
    if pattern.endswith("*"):
        return key.startswith(pattern[:-1])
    return key == pattern


def filter_fields(record: Any, *patterns: Any) -> Dict[str, Any]:
    """
    Return a copy of the record without the fields matching any pattern.

    A pattern ending in "*" matches by prefix, other patterns match the exact
    field name. Usage: {{filter . "timestamp" "grpc.*" | table}}

    Example:
        >>> filter_fields({"grpc.method": "Get", "level": "info"}, "grpc.*")
        {'level': 'info'}
    """
    if not isinstance(record, collections.abc.Mapping):
        raise TypeError(f"filter expects a record, got {type(record).__name__}")
    names = [display(pattern) for pattern in patterns]
    return {
        key: value
        for key, value in record.items()
        if not any(field_matches(name, str(key)) for name in names)
    }


def has_prefix(text: Any, prefix: Any) -> bool:
    return display(text).startswith(display(prefix))


def get_field(name: Any, record: Any) -> Any:
    """Field by literal name, for names with dots or dashes. Usage: {{get "grpc.service" .}}"""
    if not isinstance(record, collections.abc.Mapping):
        return None
    return record.get(display(name))


def mult(arg: Any, value: Any) -> str:
    """Multiply two numbers. Usage: {{.seconds | mult 1000}}"""
    factor, number = to_number(arg), to_number(value)
    if factor is None or number is None:
        return NAN
    result = factor * number
    if result == result.to_integral_value():
        return str(int(result))
    return f"{result:.2f}"


def _printf_arg(verb: str, value: Any) -> Any:
    if verb in "dioxXc":
        number = to_number(value)
        return value if number is None else int(number)
    if verb in "eEfFgG":
        number = to_number(value)
        return value if number is None else float(number)
    return display(value)


def printf(fmt: Any, *values: Any) -> str:
    """
    printf-style formatting. Usage: {{.latency | printf "%.2f"}}

    "%v" shows a value like it would be shown in the output. Numeric verbs
    accept numeric strings. If the format does not fit the values, the
    values are shown unformatted.
    """
    if fmt is None or any(value is None for value in values):
        return " ".join(display(value) for value in values)
    fmt = display(fmt)
    verbs = [m.group(1) for m in RE_PRINTF_VERB.finditer(fmt) if m.group(1) != "%"]
    args = [_printf_arg(verb, value) for verb, value in zip(verbs, values)]
    fmt = RE_PRINTF_VERB.sub(
        lambda m: m.group(0)[:-1] + "s" if m.group(1) == "v" else m.group(0), fmt
    )
    try:
        return fmt % tuple(args + list(values[len(verbs) :]))
    except (TypeError, ValueError):
        return " ".join(display(value) for value in values)


def _compare(a: Any, b: Any) -> int:
    x, y = to_number(a), to_number(b)
    if x is None or y is None:
        x, y = display(a), display(b)
    return (x > y) - (x < y)


def eq(a: Any, b: Any) -> bool:
    """Equality, numeric if both sides are numbers. Usage: {{if eq .status 200}}"""
    if a is None or b is None:
        return a is None and b is None
    return _compare(a, b) == 0


def ne(a: Any, b: Any) -> bool:
    return not eq(a, b)


def gt(a: Any, b: Any) -> bool:
    return _compare(a, b) > 0


def lt(a: Any, b: Any) -> bool:
    return _compare(a, b) < 0


def ge(a: Any, b: Any) -> bool:
    return _compare(a, b) >= 0


def le(a: Any, b: Any) -> bool:
    return _compare(a, b) <= 0


#
# Template engine builtins
#


def builtin_and(first: Any, *rest: Any) -> Any:
    """First false argument, or the last argument"""
    value = first
    for value in (first,) + rest:
        if not is_true(value):
            return value
    return value


def builtin_or(first: Any, *rest: Any) -> Any:
    """First true argument, or the last argument"""
    value = first
    for value in (first,) + rest:
        if is_true(value):
            return value
    return value


def builtin_not(value: Any) -> bool:
    return not is_true(value)


def builtin_index(item: Any, *keys: Any) -> Any:
    """Look up map keys or list positions. Usage: {{index . "grpc.service"}}"""
    for key in keys:
        if item is None:
            return None
        if isinstance(item, collections.abc.Mapping):
            item = item.get(key if isinstance(key, str) else display(key))
        elif isinstance(item, (list, tuple, str)):
            position = to_number(key)
            if position is None:
                raise TypeError(f"cannot index with {display(key)!r}")
            if not 0 <= int(position) < len(item):
                raise IndexError(f"index out of range: {int(position)}")
            item = item[int(position)]
        else:
            raise TypeError(f"can't index item of type {type(item).__name__}")
    return item


def builtin_len(item: Any) -> int:
    return len(item)


def builtin_print(*values: Any) -> str:
    """Concatenate values, with spaces between operands when neither is a string"""
    parts = []
    for i, value in enumerate(values):
        if i and not isinstance(value, str) and not isinstance(values[i - 1], str):
            parts.append(" ")
        parts.append(display(value))
    return "".join(parts)


def builtin_println(*values: Any) -> str:
    return " ".join(display(value) for value in values) + "\n"


BUILTINS = {
    "and": builtin_and,
    "or": builtin_or,
    "not": builtin_not,
    "index": builtin_index,
    "len": builtin_len,
    "print": builtin_print,
    "println": builtin_println,
}


#
# Template engine
#


@dataclasses.dataclass
class Dot:
    pass


@dataclasses.dataclass
class Field:
    names: Tuple[str, ...]


@dataclasses.dataclass
class Variable:
    name: str
    names: Tuple[str, ...]


@dataclasses.dataclass
class Literal:
    value: Any


@dataclasses.dataclass
class Identifier:
    name: str


@dataclasses.dataclass
class Chain:
    pipeline: "Pipeline"
    names: Tuple[str, ...]


@dataclasses.dataclass
class Command:
    args: List[Any]


@dataclasses.dataclass
class Pipeline:
    decl: List[str]
    assign: bool
    commands: List[Command]


@dataclasses.dataclass
class Text:
    text: str


@dataclasses.dataclass
class Action:
    pipeline: Pipeline


@dataclasses.dataclass
class Control:
    keyword: str  # if, range or with
    pipeline: Pipeline
    body: List[Any]
    else_body: List[Any]


# Marks "no value piped in" for the first command of a pipeline
_NO_ARG = object()


class ActionParser:
    """Recursive descent parser for the tokens of a single {{ }} action."""

    def __init__(self, tokens: List[Tuple[str, str, bool]], funcs: Dict[str, Any]):
        self.tokens = tokens
        self.funcs = funcs
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str, bool]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def next(self) -> Optional[Tuple[str, str, bool]]:
        token = self.peek()
        self.pos += 1
        return token

    def parse(self, max_decl: int = 1) -> Pipeline:
        pipeline = self.pipeline(max_decl)
        token = self.peek()
        if token is not None:
            raise TemplateSyntaxError(f"unexpected {token[1]!r} in action")
        return pipeline

    def declarations(self, max_decl: int) -> Tuple[List[str], bool]:
        names = []
        i = self.pos
        while i < len(self.tokens):
            kind, text, _ = self.tokens[i]
            if kind != "variable" or "." in text:
                break
            names.append(text)
            i += 1
            if i < len(self.tokens) and self.tokens[i][0] == "comma":
                i += 1
                continue
            break
        if names and i < len(self.tokens) and self.tokens[i][0] in ("declare", "assign"):
            if len(names) > max_decl:
                raise TemplateSyntaxError("too many declarations in action")
            assign = self.tokens[i][0] == "assign"
            self.pos = i + 1
            return names, assign
        return [], False

    def pipeline(self, max_decl: int = 1) -> Pipeline:
        decl, assign = self.declarations(max_decl)
        commands = []
        while True:
            token = self.peek()
            if token is None or token[0] == "rparen":
                break
            commands.append(self.command())
            token = self.peek()
            if token is None or token[0] != "pipe":
                break
            self.next()
            token = self.peek()
            if token is None or token[0] in ("pipe", "rparen"):
                raise TemplateSyntaxError("missing command after |")
        if not commands:
            raise TemplateSyntaxError("missing value for command")
        return Pipeline(decl, assign, commands)

    def command(self) -> Command:
        args = []
        while True:
            token = self.peek()
            if token is None or token[0] in ("pipe", "rparen"):
                break
            args.append(self.operand())
        if not args:
            raise TemplateSyntaxError("missing value for command")
        return Command(args)

    def operand(self) -> Any:
        kind, text, _ = self.next()
        if kind == "dot":
            return Dot()
        if kind == "field":
            return Field(tuple(text[1:].split(".")))
        if kind == "variable":
            name, *names = text.split(".")
            return Variable(name, tuple(names))
        if kind == "string":
            try:
                # Resolved color tags leave raw escape characters in literals
                return Literal(json.loads(text, strict=False))
            except ValueError as exc:
                raise TemplateSyntaxError(f"bad string literal {text}: {exc}")
        if kind == "raw":
            return Literal(text[1:-1])
        if kind == "number":
            try:
                return Literal(int(text))
            except ValueError:
                return Literal(float(text))
        if kind == "ident":
            if text in ("true", "false"):
                return Literal(text == "true")
            if text == "nil":
                return Literal(None)
            if text not in self.funcs:
                raise TemplateSyntaxError(f'function "{text}" not defined')
            return Identifier(text)
        if kind == "lparen":
            inner = self.pipeline()
            token = self.next()
            if token is None or token[0] != "rparen":
                raise TemplateSyntaxError("unclosed left paren")
            names = ()
            token = self.peek()
            if token is not None and token[0] == "field" and not token[2]:
                self.next()
                names = tuple(token[1][1:].split("."))
            return Chain(inner, names)
        raise TemplateSyntaxError(f"unexpected {text!r} in operand")


def tokenize(body: str) -> List[Tuple[str, str, bool]]:
    """Split the body of an action into (kind, text, preceded_by_space) tuples."""
    tokens = []
    pos = 0
    spaced = True
    while pos < len(body):
        match = RE_TOKEN.match(body, pos)
        if match is None:
            raise TemplateSyntaxError(f"unexpected {body[pos]!r} in action {body!r}")
        if match.lastgroup == "space":
            spaced = True
        else:
            tokens.append((match.lastgroup, match.group(), spaced))
            spaced = False
        pos = match.end()
    return tokens


class Template:
    """
    A compiled format template.

    The action language follows the {{ }} syntax of Go's text/template:
    field paths (.a.b), pipes (.msg | pad 10), function calls with
    arguments, variables ($x := ..., $), parenthesized pipelines and the
    control structures if/else if/else, range (with else) and with. The
    piped value becomes the last argument of the next function.

    Args:
        source: Template text
        funcs: Functions callable from the template, by name. These take
            precedence over the builtins (and, or, not, index, len, print,
            println).

    Raises:
        TemplateSyntaxError: If the template cannot be parsed or calls an
            unknown function
    """

    def __init__(self, source: str, funcs: Optional[Dict[str, Callable]] = None):
        self.source = source
        self.funcs = dict(BUILTINS)
        self.funcs.update(funcs or {})
        self.signatures = {}
        for name, func in self.funcs.items():
            try:
                self.signatures[name] = inspect.signature(func)
            except (TypeError, ValueError):
                self.signatures[name] = None
        self.nodes, _, _ = self.parse_list(self.lex(source), 0, inside=False)

    def lex(self, source: str) -> List[Tuple[str, Any]]:
        items = []
        pos = 0
        trim_next = False
        for match in RE_ACTION.finditer(source):
            text = source[pos : match.start()]
            body = match.group("body")
            trim_left = re.match(r"-\s", body) is not None
            trim_right = re.search(r"\s-$", body) is not None
            if trim_left:
                body = body[2:]
            if trim_right:
                body = body[:-2]
            items.extend(self.text_item(text, trim_next, trim_left))
            trim_next = trim_right
            pos = match.end()
            body = body.strip()
            if body.startswith("/*"):
                if not body.endswith("*/"):
                    raise TemplateSyntaxError("unclosed comment")
                continue
            tokens = tokenize(body)
            if not tokens:
                raise TemplateSyntaxError("missing value for command")
            items.append(("action", tokens))
        items.extend(self.text_item(source[pos:], trim_next, False))
        return items

    @staticmethod
    def text_item(text: str, trim_left: bool, trim_right: bool) -> List[Tuple[str, Any]]:
        if trim_left:
            text = text.lstrip()
        if trim_right:
            text = text.rstrip()
        if "{{" in text:
            raise TemplateSyntaxError(f"unclosed action near {text[text.index('{{'):][:20]!r}")
        return [("text", text)] if text else []

    def parse_list(self, items, pos, inside):
        nodes = []
        while pos < len(items):
            kind, value = items[pos]
            pos += 1
            if kind == "text":
                nodes.append(Text(value))
                continue
            keyword = value[0][1] if value[0][0] == "ident" else None
            if keyword in ("end", "else"):
                if not inside:
                    raise TemplateSyntaxError(f"unexpected {{{{{keyword}}}}}")
                return nodes, pos, value
            if keyword in ("if", "range", "with"):
                node, pos = self.parse_control(keyword, value[1:], items, pos)
                nodes.append(node)
            elif keyword in ("define", "template", "block", "break", "continue"):
                raise TemplateSyntaxError(f"{{{{{keyword}}}}} is not supported")
            else:
                nodes.append(Action(ActionParser(value, self.funcs).parse()))
        if inside:
            raise TemplateSyntaxError("unexpected EOF, missing {{end}}")
        return nodes, pos, None

    def parse_control(self, keyword, tokens, items, pos):
        if not tokens:
            raise TemplateSyntaxError(f"missing value for {keyword}")
        max_decl = 2 if keyword == "range" else 1
        pipeline = ActionParser(tokens, self.funcs).parse(max_decl)
        body, pos, terminator = self.parse_list(items, pos, inside=True)
        else_body = []
        if terminator[0][1] == "else":
            rest = terminator[1:]
            if rest:
                # {{else if ...}} and {{else with ...}} share the closing {{end}}
                if rest[0][1] != keyword or keyword == "range":
                    raise TemplateSyntaxError(f"unexpected {rest[0][1]!r} after else")
                node, pos = self.parse_control(keyword, rest[1:], items, pos)
                return Control(keyword, pipeline, body, [node]), pos
            else_body, pos, terminator = self.parse_list(items, pos, inside=True)
            if terminator[0][1] != "end":
                raise TemplateSyntaxError(f"expected {{{{end}}}} after {{{{else}}}} in {keyword}")
        if len(terminator) > 1:
            raise TemplateSyntaxError("unexpected tokens after end")
        return Control(keyword, pipeline, body, else_body), pos

    def render(self, data: Any) -> str:
        """
        Render the template for one record.

        Raises:
            TemplateRenderError: If a function is called with the wrong
                arguments or a field is looked up on a non-object value
        """
        out = []
        self.walk(self.nodes, data, [("$", data)], out)
        return "".join(out)

    def walk(self, nodes, dot, variables, out):
        for node in nodes:
            if isinstance(node, Text):
                out.append(node.text)
            elif isinstance(node, Action):
                value = self.eval_pipeline(node.pipeline, dot, variables)
                if not node.pipeline.decl:
                    out.append(NO_VALUE if value is None else display(value))
            else:
                mark = len(variables)
                if node.keyword == "range":
                    self.walk_range(node, dot, variables, out)
                else:
                    value = self.eval_pipeline(node.pipeline, dot, variables)
                    if is_true(value):
                        self.walk(node.body, value if node.keyword == "with" else dot, variables, out)
                    else:
                        self.walk(node.else_body, dot, variables, out)
                del variables[mark:]

    def walk_range(self, node, dot, variables, out):
        value = self.eval_pipeline(node.pipeline, dot, variables, declare=False)
        if value is None:
            pairs = []
        elif isinstance(value, collections.abc.Mapping):
            pairs = [(key, value[key]) for key in sorted(value, key=str)]
        elif isinstance(value, (list, tuple)):
            pairs = list(enumerate(value))
        elif isinstance(value, int) and not isinstance(value, bool):
            pairs = [(i, i) for i in range(value)]
        else:
            raise TemplateRenderError(f"range can't iterate over {display(value)}")
        if not pairs:
            self.walk(node.else_body, dot, variables, out)
            return
        decl = node.pipeline.decl
        for key, item in pairs:
            mark = len(variables)
            if len(decl) == 1:
                variables.append((decl[0], item))
            elif len(decl) == 2:
                variables.extend([(decl[0], key), (decl[1], item)])
            self.walk(node.body, item, variables, out)
            del variables[mark:]

    def eval_pipeline(self, pipeline, dot, variables, declare=True):
        value = _NO_ARG
        for command in pipeline.commands:
            value = self.eval_command(command, dot, variables, value)
        if declare and pipeline.decl:
            name = pipeline.decl[0]
            if pipeline.assign:
                for i in range(len(variables) - 1, -1, -1):
                    if variables[i][0] == name:
                        variables[i] = (name, value)
                        break
                else:
                    raise TemplateRenderError(f"undefined variable {name}")
            else:
                variables.append((name, value))
        return value

    def eval_command(self, command, dot, variables, final):
        first = command.args[0]
        if isinstance(first, Identifier):
            args = [self.eval_arg(arg, dot, variables) for arg in command.args[1:]]
            if final is not _NO_ARG:
                args.append(final)
            return self.call(first.name, args)
        if len(command.args) > 1 or final is not _NO_ARG:
            raise TemplateRenderError(f"can't give argument to non-function {first}")
        return self.eval_arg(first, dot, variables)

    def eval_arg(self, node, dot, variables):
        if isinstance(node, Dot):
            return dot
        if isinstance(node, Field):
            return self.lookup(dot, node.names)
        if isinstance(node, Variable):
            for name, value in reversed(variables):
                if name == node.name:
                    return self.lookup(value, node.names)
            raise TemplateRenderError(f"undefined variable {node.name}")
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Chain):
            return self.lookup(self.eval_pipeline(node.pipeline, dot, variables), node.names)
        if isinstance(node, Identifier):
            return self.call(node.name, [])
        raise TemplateRenderError(f"can't evaluate {node}")

    @staticmethod
    def lookup(receiver, names):
        for name in names:
            if receiver is None:
                return None
            if not isinstance(receiver, collections.abc.Mapping):
                raise TemplateRenderError(
                    f"can't evaluate field {name} in type {type(receiver).__name__}"
                )
            receiver = receiver.get(name)
        return receiver

    def call(self, name, args):
        signature = self.signatures[name]
        if signature is not None:
            try:
                signature.bind(*args)
            except TypeError as exc:
                raise TemplateRenderError(f"wrong number of args for {name}: {exc}") from exc
        try:
            return self.funcs[name](*args)
        except TemplateRenderError:
            raise
        except (TypeError, ValueError, ArithmeticError, LookupError) as exc:
            raise TemplateRenderError(f"error calling {name}: {exc}") from exc


#
# Template preprocessing
#


@dataclasses.dataclass
class PreprocessOptions:
    # {field} -> {{.field}}
    enable_simple_syntax: bool = True
    # @field -> (index . "field")
    enable_at_syntax: bool = True


def simple_field(content: str, options: PreprocessOptions) -> str:
    content = content.strip()
    if options.enable_at_syntax:
        match = RE_LEADING_AT.match(content)
        if match:
            return f'{{{{index . "{match.group(1)}"{content[match.end():]}}}}}'
    return f"{{{{.{content}}}}}"


def transform_simple_syntax(template: str, options: PreprocessOptions) -> str:
    """
    Rewrite {field} and {field | func args} to {{.field}} and {{.field | func args}}.

    Native {{ }} actions are copied as they are. Braces inside a simple
    reference are counted, so the reference ends at its matching "}". An
    opening brace without a match is kept verbatim.
    """
    # Already native syntax
    if "{{" in template and "{" not in template.replace("{{", ""):
        return template
    out = []
    i = 0
    n = len(template)
    while i < n:
        if template.startswith("{{", i):
            end = template.find("}}", i + 2)
            if end < 0:
                out.append(template[i:])
                break
            out.append(template[i : end + 2])
            i = end + 2
        elif template[i] == "{":
            depth = 1
            j = i + 1
            while j < n:
                if template[j] == "{":
                    depth += 1
                elif template[j] == "}":
                    depth -= 1
                    if depth == 0:
                        break
                j += 1
            if j >= n:
                out.append(template[i:])
                break
            out.append(simple_field(template[i + 1 : j], options))
            i = j + 1
        else:
            out.append(template[i])
            i += 1
    return "".join(out)


def transform_at_symbol(template: str) -> str:
    """
    Rewrite @name to (index . "name").

    Dotted paths like .grpc.service cannot address a field whose name
    contains dots, so @grpc.service fetches the field by its literal name.
    An @ preceded by a word character (user@example.com) or inside a
    quoted string is left alone. A single-brace reference {@name | fn}
    becomes a complete action, {{index . "name" | fn}}.
    """

    def replace(match):
        if match.group("literal"):
            return match.group("literal")
        if match.group("braced"):
            return f'{{{{index . "{match.group("braced")}"{match.group("rest")}}}}}'
        return f'(index . "{match.group("name")}")'

    return RE_AT_SYMBOL.sub(replace, template)


def preprocess_template(template: str, options: Optional[PreprocessOptions] = None) -> str:
    """
    Turn the simplified template syntax into native {{ }} actions.

    Args:
        template: Format template, e.g. "{level} {@grpc.service | pad 20} {{.msg}}"
        options: Which syntax extensions to rewrite. Default: all

    Returns:
        str: Template in native syntax. Templates that only use native
            syntax come back unchanged.

    Example:
        >>> preprocess_template("{level | pad 7} {@grpc.method}")
        '{{.level | pad 7}} {{index . "grpc.method"}}'
    """
    if options is None:
        options = PreprocessOptions()
    if not template:
        return template
    if options.enable_simple_syntax:
        template = transform_simple_syntax(template, options)
    if options.enable_at_syntax:
        template = transform_at_symbol(template)
    return template


#
# Formatter
#


@dataclasses.dataclass
class SkipPattern:
    field: str
    value: str

    @classmethod
    def parse(cls, spec: str) -> "SkipPattern":
        """Parse "key=value". Raises ValueError if there is no "="."""
        field, sep, value = spec.partition("=")
        if not sep or not field:
            raise ValueError(f"invalid skip pattern format (expected key=value): {spec}")
        return cls(field, value)

    def matches(self, record: Dict[str, Any]) -> bool:
        if self.field not in record:
            return False
        # Substring match includes the exact match
        return self.value in display(record[self.field])


def should_skip(record: Dict[str, Any], skip_patterns: Iterable[SkipPattern]) -> bool:
    return any(pattern.matches(record) for pattern in skip_patterns)


def reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def decode_record(line: str) -> Dict[str, Any]:
    """
    Decode one line as a JSON object.

    Fractional numbers are decoded as Numeral, so "1741636045.070078" keeps
    all of its digits and "1e5" still prints as "1e5". Integers are Python
    ints of any size.

    Raises:
        ValueError: If the line is not a JSON object
    """
    try:
        record = json.loads(
            line, parse_float=Numeral, parse_constant=reject_constant
        )
    except RecursionError as exc:
        raise ValueError("JSON nested too deeply") from exc
    if not isinstance(record, dict):
        raise ValueError(f"expected a JSON object, got {type(record).__name__}")
    return record


def chomp(line: str) -> str:
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


class TemplateFormatter:
    """
    Render log records with a format template.

    The template is preprocessed, its color tags are resolved and it is
    compiled once. Rendering does not change the formatter, so one instance
    can format any number of records.

    Args:
        fmt: Format template
        date_format: strftime layout used by the date function
        no_colors: Do not emit ANSI escape sequences
        preprocess_options: Syntax extensions to rewrite before compiling
        standard_fields: Field names reported by isStandardField

    Raises:
        TemplateSyntaxError: If the template is invalid
    """

    def __init__(
        self,
        fmt: str = DEFAULT_FORMAT,
        date_format: str = DEFAULT_DATE_FORMAT,
        no_colors: bool = False,
        preprocess_options: Optional[PreprocessOptions] = None,
        standard_fields: Optional[Sequence[str]] = None,
    ):
        self.date_format = date_format
        self.no_colors = no_colors
        self.standard_fields = list(
            STANDARD_FIELDS if standard_fields is None else standard_fields
        )
        source = preprocess_template(fmt, preprocess_options)
        source = apply_colors(source, disabled=no_colors)
        self.template = Template(source, self.functions())

    def functions(self) -> Dict[str, Callable]:
        return {
            # Value formatting
            "date": self.date,
            "duration": self.duration,
            "pretty": self.pretty,
            "table": self.table,
            "pad": pad,
            "trunc": trunc,
            "wrap": wrap,
            "mult": mult,
            "printf": printf,
            # Comparison
            "eq": eq,
            "ne": ne,
            "gt": gt,
            "lt": lt,
            "ge": ge,
            "le": le,
            # Colors
            "color": self.color,
            "colorByLevel": self.color_by_level,
            "bold": self.bold,
            "italic": self.italic,
            "underline": self.underline,
            "dim": self.dim,
            # Field access and filtering
            "get": get_field,
            "filter": filter_fields,
            "hasPrefix": has_prefix,
            "isStandardField": self.is_standard_field,
        }

    def format(self, record: Dict[str, Any]) -> str:
        return self.template.render(record)

    def date(self, value: Any) -> str:
        """
        Normalize a timestamp to the configured date format. Usage: {{.ts | date}}

        Strings are parsed with the known layouts, numbers are Unix seconds
        shown in local time. Anything that cannot be parsed is returned as
        it is.
        """
        if value is None:
            return ""
        if isinstance(value, str):
            parsed = guess_datetime(value)
            return value if parsed is None else parsed.strftime(self.date_format)
        number = to_number(value) if is_number(value) else None
        if number is None:
            return display(value)
        try:
            return datetime_from_epoch(number).strftime(self.date_format)
        except (OverflowError, OSError, ValueError):
            return display(value)

    def duration(self, value: Any) -> str:
        """Format a duration ("1h30m", timedelta, or milliseconds). Usage: {{.elapsed | duration}}"""
        try:
            nanos = to_nanoseconds(value)
        except (ValueError, decimal.InvalidOperation):
            return self.pretty(value)
        return format_duration(nanos)

    def pretty(self, value: Any) -> str:
        """
        Pretty-print any value. Usage: {{.request | pretty}}

        None is "<nil>", the empty string "<empty>". Lists become [a, b] and
        objects {key=value, ...} with sorted keys, recursively. Separators
        and keys are dimmed when colors are enabled.
        """
        if value is None:
            return NIL
        if isinstance(value, str):
            return value or EMPTY
        if isinstance(value, dt.timedelta):
            return format_duration(to_nanoseconds(value))
        if isinstance(value, collections.abc.Mapping):
            return self.pretty_map(value)
        if isinstance(value, (collections.abc.Sequence, collections.abc.Set)) and not isinstance(
            value, (bytes, bytearray)
        ):
            return self.pretty_list(list(value))
        return display(value)

    def pretty_list(self, items: List[Any]) -> str:
        if not items:
            return "[]"
        return "[" + self.dimmed(", ").join(self.pretty(item) for item in items) + "]"

    def pretty_map(self, mapping: collections.abc.Mapping) -> str:
        if not mapping:
            return "{}"
        parts = [
            self.dimmed(f"{key}=") + self.pretty(mapping[key])
            for key in sorted(mapping, key=str)
        ]
        return "{" + self.dimmed(", ").join(parts) + "}"

    def table(self, *args: Any) -> str:
        """
        One "key: value" line per field. Usage: {{filter . "msg" | table 25}}

        The optional first argument is the width of the key column (default
        19). Fields without a value are left out, keys are sorted.
        """
        if not args:
            return ""
        padding = args[0] if len(args) > 1 else None
        value = args[-1]
        if value is None:
            return ""
        if not isinstance(value, collections.abc.Mapping):
            return self.pretty(value)
        key_padding = DEFAULT_TABLE_PADDING
        number = to_number(padding)
        if number is not None and number >= 0:
            key_padding = int(number)
        lines = []
        for key in sorted(value, key=str):
            item = value[key]
            if item is None or (isinstance(item, str) and not item):
                continue
            lines.append("  " + self.dimmed(pad(key_padding, f"{key}: ")) + self.pretty(item))
        return "\n".join(lines)

    def dimmed(self, text: str) -> str:
        return text if self.no_colors else apply_color_to_string(text, "dim")

    def styled(self, style: str, value: Any) -> str:
        if self.no_colors or value is None:
            return display(value)
        return apply_color_to_string(display(value), style)

    def color(self, name: Any, value: Any) -> str:
        """Apply a named color or style. Usage: {{.msg | color "red"}}"""
        return self.styled(display(name), value)

    def color_by_level(self, level: Any, value: Any) -> str:
        """Color a value by log level. Usage: {{.msg | colorByLevel .level}}"""
        if level is None:
            return display(value)
        return self.styled(color_by_level_name(display(level)), value)

    def bold(self, value: Any) -> str:
        return self.styled("bold", value)

    def italic(self, value: Any) -> str:
        return self.styled("italic", value)

    def underline(self, value: Any) -> str:
        return self.styled("underline", value)

    def dim(self, value: Any) -> str:
        return self.styled("dim", value)

    def is_standard_field(self, name: Any) -> bool:
        return display(name) in self.standard_fields

    def non_json_prefix(self) -> str:
        if self.no_colors:
            return NON_JSON_MARKER
        return apply_color_to_string(NON_JSON_MARKER, "red")

    def process_stream(
        self,
        infile: Iterable[str],
        outfile: TextIO,
        skip_patterns: Iterable[SkipPattern] = (),
        handle_non_json: bool = False,
    ) -> None:
        """
        Format each JSON line of infile and write it to outfile.

        Empty lines are ignored. Records matching a skip pattern are dropped.
        Lines that are not JSON objects either stop the stream or, with
        handle_non_json, are copied with a ">>>" marker. Each run of such
        lines is set off by blank lines.

        Args:
            infile: Input lines
            outfile: Output stream
            skip_patterns: Records to leave out
            handle_non_json: Pass through lines that are not JSON objects

        Raises:
            RecordDecodeError: On a non-JSON line if handle_non_json is False
            TemplateRenderError: If a record cannot be rendered
        """
        skip_patterns = list(skip_patterns)
        in_non_json = False
        for lineno, line in enumerate(infile, start=1):
            line = chomp(line)
            if not line:
                continue
            try:
                record = decode_record(line)
            except ValueError as exc:
                if not handle_non_json:
                    raise RecordDecodeError(
                        f"line {lineno}: invalid JSON: {line}", line, lineno
                    ) from exc
                if not in_non_json:
                    in_non_json = True
                    outfile.write("\n")
                outfile.write(f"{self.non_json_prefix()} {line}\n")
                continue

            if in_non_json:
                in_non_json = False
                outfile.write("\n")
            if should_skip(record, skip_patterns):
                continue
            outfile.write(self.format(record) + "\n")
            outfile.flush()


#
# Input files
#


@contextlib.contextmanager
def file_opener(filename: str, encoding: str = "utf-8") -> Iterator[TextIO]:
    """
    Context manager for opening input files.

    Handles regular files, gzipped files and zip archives with a single
    member. "-" is stdin. Undecodable bytes are replaced rather than
    aborting the stream.

    Raises:
        ValueError: If a ZIP archive contains more than one file
        OSError: For file access issues
    """
    if filename in ["-", None]:
        if isinstance(sys.stdin, io.TextIOWrapper):
            sys.stdin.reconfigure(encoding=encoding, errors="replace")
        yield sys.stdin
    elif filename.lower().endswith(".gz"):
        with gzip.open(filename, "rt", encoding=encoding, errors="replace") as f:
            yield f
    elif filename.lower().endswith(".zip"):
        with zipfile.ZipFile(filename, "r") as z:
            namelist = z.namelist()
            if len(namelist) != 1:
                raise ValueError("ZIP archives with multiple files are not supported")
            with z.open(namelist[0]) as f:
                yield io.TextIOWrapper(f, encoding=encoding, errors="replace")
    else:
        with open(filename, "r", encoding=encoding, errors="replace") as f:
            yield f


def lines_from_files(filenames: List[str], encoding: str = "utf-8") -> Iterator[str]:
    for filename in filenames or ["-"]:
        with file_opener(filename, encoding=encoding) as f:
            yield from f


#
# Configuration
#


@dataclasses.dataclass
class Config:
    format: str = DEFAULT_FORMAT
    date_format: str = DEFAULT_DATE_FORMAT
    no_colors: bool = False
    enable_simple_syntax: bool = True
    skip: List[SkipPattern] = dataclasses.field(default_factory=list)
    handle_non_json: bool = False


CONFIG_KEYS = [field.name for field in dataclasses.fields(Config)]
BOOL_KEYS = ["no_colors", "enable_simple_syntax", "handle_non_json"]


def find_config_file(explicit: Optional[str] = None) -> Optional[str]:
    """
    Return the config file to use: the explicit one, else ~/.logista.yaml,
    else ./.logista.yaml, else None.
    """
    if explicit:
        if not os.path.isfile(explicit):
            raise ConfigError(f"config file not found: {explicit}")
        return explicit
    for directory in (os.path.expanduser("~"), os.curdir):
        candidate = os.path.join(directory, CONFIG_FILENAME)
        if os.path.isfile(candidate):
            return candidate
    return None


def load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid config file {path}: {exc}")
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    for key in data:
        if key not in CONFIG_KEYS:
            print_err(f"Warning: unknown key in config file {path}: {key}")
    return {key: value for key, value in data.items() if key in CONFIG_KEYS}


def config_from_env(environ: Dict[str, str]) -> Dict[str, Any]:
    values = {}
    for key in CONFIG_KEYS:
        name = ENV_PREFIX + key.upper()
        if name in environ:
            values[key] = environ[name]
    return values


def to_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"invalid boolean for {key}: {value!r}")


def parse_skip_patterns(specs: Any) -> List[SkipPattern]:
    """Parse skip specs ("key=value", a list of them, or a comma-separated string)."""
    if specs is None:
        return []
    if isinstance(specs, str):
        specs = [spec for spec in specs.split(",") if spec.strip()]
    patterns = []
    for spec in specs:
        try:
            patterns.append(SkipPattern.parse(str(spec).strip()))
        except ValueError as exc:
            print_err(f"Warning: {exc}")
    return patterns


def resolve_config(args: argparse.Namespace, environ: Dict[str, str]) -> Config:
    """
    Merge settings from defaults, config file, environment and command line.

    Later sources win: a flag given on the command line overrides LOGISTA_*
    environment variables, which override the config file.
    """
    values = {}
    path = find_config_file(args.config)
    if path:
        print_err("Using config file:", path)
        values.update(load_config_file(path))
    values.update(config_from_env(environ))
    for key in CONFIG_KEYS:
        flag = getattr(args, key, None)
        if flag is not None and flag != []:
            values[key] = flag

    config = Config()
    for key, value in values.items():
        if key in BOOL_KEYS:
            value = to_bool(value, key)
        elif key == "skip":
            value = parse_skip_patterns(value)
        elif not isinstance(value, str):
            raise ConfigError(f"{key} must be a string, got {value!r}")
        setattr(config, key, value)
    return config


#
# Command line
#


def print_functions_help(name_width: int = 20) -> None:
    """Print the functions available in templates."""
    funcs = dict(BUILTINS)
    funcs.update(TemplateFormatter("").functions())
    for name, func in sorted(funcs.items()):
        doc = inspect.getdoc(func) or ""
        first_line = doc.splitlines()[0].strip() if doc else ""
        sig_text = f"{name}{inspect.signature(func)}"
        if len(sig_text) > name_width:
            print(f" {sig_text}  {first_line}")
        else:
            print(f" {sig_text:<{name_width}}  {first_line}")


def print_time_format_help():
    help_text = """
Date format reference (for --date-format):
%Y - Year with century as a decimal number (e.g., 2024)
%y - Year without century as a zero-padded decimal number (00-99)
%m - Month as a zero-padded decimal number (01-12)
%b - Month as locale's abbreviated name (e.g., Jan, Feb, ..., Dec)
%d - Day of the month as a zero-padded decimal number (01-31)
%H - Hour (24-hour clock) as a zero-padded decimal number (00-23)
%I - Hour (12-hour clock) as a zero-padded decimal number (01-12)
%p - Locale's equivalent of either AM or PM
%M - Minute as a zero-padded decimal number (00-59)
%S - Second as a zero-padded decimal number (00-59)
%f - Microsecond as a decimal number, zero-padded on the left (000000-999999)
%z - UTC offset in the form +HHMM or -HHMM
%Z - Time zone name
%a - Weekday as locale's abbreviated name (e.g., Mon)
%% - A literal '%' character

Default: %Y-%m-%d %H:%M:%S
"""
    print(help_text)


EPILOG = """
template syntax:
  {field}                      field value, same as {{.field}}
  {field | pad 7}              pipe the value through functions
  {@grpc.service}              field whose name contains dots or dashes
  {{if eq .level "error"}}...{{end}}
                               conditionals, also range and with
  <red>text</red>, <bold cyan>text</>
                               color tags, may be nested

config file: ~/.logista.yaml or ./.logista.yaml (keys as the long options)
environment: LOGISTA_FORMAT, LOGISTA_DATE_FORMAT, LOGISTA_NO_COLORS, ...
"""


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="logista",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument(
        "files",
        metavar="FILE",
        nargs="*",
        help="files to read (.gz and .zip are unpacked), if empty, stdin is used",
    )

    output = parser.add_argument_group("output options")
    output.add_argument(
        "--format",
        "-F",
        dest="format",
        help=f"format template. Default: {DEFAULT_FORMAT.replace('%', '%%')}",
    )
    output.add_argument(
        "--date-format",
        "-D",
        dest="date_format",
        help="strftime format for the date function. Default: %%Y-%%m-%%d %%H:%%M:%%S. See --help-time",
    )
    output.add_argument(
        "--no-colors",
        action="store_const",
        const=True,
        dest="no_colors",
        help="no ANSI colors. Alternatively, set the NO_COLOR environment variable",
    )
    output.add_argument(
        "--force-colors",
        action="store_true",
        help="use colors even if the output is not a terminal",
    )
    output.add_argument(
        "--simple-syntax",
        action="store_const",
        const=True,
        dest="enable_simple_syntax",
        help="enable the simple {field} syntax in templates (default)",
    )
    output.add_argument(
        "--no-simple-syntax",
        action="store_const",
        const=False,
        dest="enable_simple_syntax",
        help="only accept native {{.field}} syntax",
    )

    input_opts = parser.add_argument_group("input options")
    input_opts.add_argument(
        "--skip",
        "-s",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="skip records whose KEY contains VALUE (e.g. --skip logger=Uploader.download). Can be given multiple times",
    )
    input_opts.add_argument(
        "--handle-non-json",
        action="store_const",
        const=True,
        dest="handle_non_json",
        help="pass through lines that are not JSON instead of stopping",
    )
    input_opts.add_argument(
        "--input-encoding",
        default="utf-8",
        help="text encoding of the input data. Default: utf-8",
    )

    other = parser.add_argument_group("other options")
    other.add_argument(
        "--config", "-c", metavar="FILE", help="config file (default: ~/.logista.yaml)"
    )
    other.add_argument(
        "--selftest",
        action="store_true",
        help="run tests that depend on the local system",
    )
    other.add_argument(
        "--help-functions",
        action="store_true",
        help="show functions available in templates",
    )
    other.add_argument(
        "--help-time", action="store_true", help="print date format reference"
    )
    other.add_argument(
        "--version",
        action="version",
        version="%(prog)s v" + __version__,
        help="show version number",
    )

    args = parser.parse_args(argv)

    if args.help_functions:
        print_functions_help()
        sys.exit(0)

    if args.help_time:
        print_time_format_help()
        sys.exit(0)

    return args


def colors_disabled(config: Config, args: argparse.Namespace, environ: Dict[str, str]) -> bool:
    if config.no_colors or "NO_COLOR" in environ:
        return True
    return not (args.force_colors or sys.stdout.isatty())


class SelfTests(unittest.TestCase):
    # Tests that depend on the local system (e.g. local timezone)
    # and thus should be run on the live system
    def test_date_from_epoch_seconds(self):
        formatter = TemplateFormatter("{ts | date}", no_colors=True)
        expected = dt.datetime.fromtimestamp(1710083045).strftime(DEFAULT_DATE_FORMAT)
        self.assertEqual(formatter.format({"ts": 1710083045}), expected)

    def test_date_from_fractional_epoch(self):
        formatter = TemplateFormatter(
            "{ts | date}", date_format="%H:%M:%S.%f", no_colors=True
        )
        expected = dt.datetime.fromtimestamp(1710083045).strftime("%H:%M:%S")
        self.assertEqual(
            formatter.format({"ts": Decimal("1710083045.25")}), expected + ".250000"
        )

    def test_date_keeps_zone_clock(self):
        formatter = TemplateFormatter("{ts | date}", no_colors=True)
        self.assertEqual(
            formatter.format({"ts": "2024-03-10T15:04:05+09:00"}), "2024-03-10 15:04:05"
        )


def do_tests():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromTestCase(SelfTests)
    runner = unittest.TextTestRunner()
    result = runner.run(suite)
    return result


def main(argv: Optional[List[str]] = None) -> None:
    # Prevent Python from throwing BrokenPipeError at shutdown
    if hasattr(signal, "SIGPIPE"):
        signal.signal(signal.SIGPIPE, signal.SIG_DFL)

    try:
        args = parse_args(argv)
        if args.selftest:
            if do_tests().wasSuccessful():
                sys.exit(0)
            else:
                sys.exit(1)
        config = resolve_config(args, os.environ)
        try:
            formatter = TemplateFormatter(
                config.format,
                date_format=config.date_format,
                no_colors=colors_disabled(config, args, os.environ),
                preprocess_options=PreprocessOptions(
                    enable_simple_syntax=config.enable_simple_syntax
                ),
            )
        except TemplateSyntaxError as exc:
            raise TemplateSyntaxError(f"invalid format template: {exc}") from exc
        formatter.process_stream(
            lines_from_files(args.files, encoding=args.input_encoding),
            sys.stdout,
            skip_patterns=config.skip,
            handle_non_json=config.handle_non_json,
        )
    except LogistaError as exc:
        print_err(f"logista: {exc}")
        sys.exit(1)
    except BrokenPipeError:
        # Ignore broken pipe errors (e.g. caused by piping our output to head)
        sys.stderr.close()  # Suppress further error messages
    except (OSError, ValueError) as exc:
        if getattr(exc, "errno", None) == errno.EPIPE:
            pass
        else:
            print_err(f"logista: {exc}")
            sys.exit(1)
    except KeyboardInterrupt:
        sys.stdout.flush()


if __name__ == "__main__":
    main()
