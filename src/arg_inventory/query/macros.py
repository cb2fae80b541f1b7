"""
KQL macro interpolation.

Macros are expanded in a single regular-expression pass over the query text,
so an expansion is never rescanned. Anything that looks like a macro but is
not in the rule table, or has an argument list the rule rejects, is left as
it was; the remote service reports invalid syntax.
"""
from __future__ import annotations

import re
from typing import Callable, Dict, List, Mapping, Optional

from ..util.time import TimeRange, format_rfc3339

DEFAULT_TIME_COLUMN = "TimeGenerated"

# $__name(args) | ${name} | $name
_TOKEN_RE = re.compile(
    r"\$__(?P<macro>[A-Za-z][A-Za-z0-9_]*)\((?P<args>[^()]*)\)"
    r"|\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}"
    r"|\$(?P<var>[A-Za-z_][A-Za-z0-9_]*)"
)

# ${name} | $name inside a macro argument list
_VAR_RE = re.compile(r"\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|\$(?P<var>[A-Za-z_][A-Za-z0-9_]*)")

MacroFn = Callable[[List[str], TimeRange], Optional[str]]


def split_args(raw: str) -> List[str]:
    """
    Split a macro argument list on top-level commas, keeping quoted strings
    intact. Each argument is stripped of surrounding whitespace.
    """
    if not raw.strip():
        return []
    args: List[str] = []
    buf: List[str] = []
    quote: Optional[str] = None
    for ch in raw:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
            buf.append(ch)
        elif ch == ",":
            args.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
    args.append("".join(buf).strip())
    return args


def _contains(args: List[str], time_range: TimeRange) -> Optional[str]:
    if len(args) < 2 or any(not a for a in args):
        return None
    field, values = args[0], args[1:]
    if len(values) == 1 and values[0] == "all":
        return "1 == 1"
    # values are inserted verbatim; callers quote string literals themselves
    return f"['{field}'] in ({','.join(values)})"


def _time_filter(args: List[str], time_range: TimeRange) -> Optional[str]:
    if len(args) > 1:
        return None
    column = args[0] if args and args[0] else DEFAULT_TIME_COLUMN
    return (
        f"['{column}'] >= datetime('{format_rfc3339(time_range.start)}')"
        f" and ['{column}'] <= datetime('{format_rfc3339(time_range.end)}')"
    )


def _time_from(args: List[str], time_range: TimeRange) -> Optional[str]:
    if args:
        return None
    return f"datetime('{format_rfc3339(time_range.start)}')"


def _time_to(args: List[str], time_range: TimeRange) -> Optional[str]:
    if args:
        return None
    return f"datetime('{format_rfc3339(time_range.end)}')"


def _escape_multi(args: List[str], time_range: TimeRange) -> Optional[str]:
    if not args or any(not a for a in args):
        return None
    return ",".join(f"@{a}" for a in args)


MACROS: Mapping[str, MacroFn] = {
    "contains": _contains,
    "timeFilter": _time_filter,
    "timeFrom": _time_from,
    "timeTo": _time_to,
    "escapeMulti": _escape_multi,
}


def interval_params(interval_ms: int) -> Dict[str, str]:
    """
    Named parameters for $__interval / $__interval_ms from a millisecond interval.
    """
    if interval_ms <= 0:
        return {}
    if interval_ms % 86_400_000 == 0:
        interval = f"{interval_ms // 86_400_000}d"
    elif interval_ms % 3_600_000 == 0:
        interval = f"{interval_ms // 3_600_000}h"
    elif interval_ms % 60_000 == 0:
        interval = f"{interval_ms // 60_000}m"
    elif interval_ms % 1000 == 0:
        interval = f"{interval_ms // 1000}s"
    else:
        interval = f"{interval_ms}ms"
    return {"__interval": interval, "__interval_ms": str(interval_ms)}


def interpolate(text: str, time_range: TimeRange, params: Optional[Mapping[str, str]] = None) -> str:
    """
    Expand macros and named parameters in query text.
    Pure: the result depends only on the arguments.
    """
    variables = params or {}

    def _variable(m: re.Match[str]) -> str:
        name = m.group("braced") or m.group("var")
        if name in variables:
            return str(variables[name])
        return m.group(0)

    def _replace(m: re.Match[str]) -> str:
        macro = m.group("macro")
        if macro is None:
            return _variable(m)
        fn = MACROS.get(macro)
        if fn is None:
            return m.group(0)
        # variables are resolved per argument so a multi-value selection stays one argument
        args = [_VAR_RE.sub(_variable, a).strip() for a in split_args(m.group("args"))]
        expanded = fn(args, time_range)
        return m.group(0) if expanded is None else expanded

    return _TOKEN_RE.sub(_replace, text)
