"""ANSI color tables and helpers."""

import re

RESET = "\x1b[0m"

ANSI_CODES: dict[str, str] = {
    "red": "\x1b[31m",
    "green": "\x1b[32m",
    "yellow": "\x1b[33m",
    "blue": "\x1b[34m",
    "magenta": "\x1b[35m",
    "cyan": "\x1b[36m",
    "white": "\x1b[37m",
    "black": "\x1b[30m",
    "gray": "\x1b[90m",
    "grey": "\x1b[90m",
    "brightRed": "\x1b[91m",
    "brightGreen": "\x1b[92m",
    "brightYellow": "\x1b[93m",
    "brightBlue": "\x1b[94m",
    "brightMagenta": "\x1b[95m",
    "brightCyan": "\x1b[96m",
}

AUTO_PALETTE: tuple[str, ...] = ("cyan", "yellow", "green", "magenta", "blue", "white", "gray", "red")

AUTO = "auto"

_HEX_RE = re.compile(r"^#([0-9a-fA-F]{6})$")
_RGB_RE = re.compile(r"^rgb\((\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\)$", re.IGNORECASE)


def truecolor(r: int, g: int, b: int) -> str:
    """24-bit foreground escape, channels clamped to 0..255."""
    r, g, b = (max(0, min(255, int(c))) for c in (r, g, b))
    return f"\x1b[38;2;{r};{g};{b}m"


def is_truecolor_form(color: str) -> bool:
    """True for strings written as ``#...`` or ``rgb(...)``, valid or not."""
    color = color.strip()
    return color.startswith("#") or color.lower().startswith("rgb(")


def is_valid_color(color: str) -> bool:
    """Named color, ``auto``, ``#RRGGBB`` or ``rgb(r,g,b)``."""
    return color == AUTO or ansi_code_for(color) is not None


def ansi_code_for(color: str) -> str | None:
    """Escape sequence for ``color``, or None when it is not recognized."""
    color = color.strip()
    if color in ANSI_CODES:
        return ANSI_CODES[color]
    if match := _HEX_RE.match(color):
        h = match.group(1)
        return truecolor(int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16))
    if match := _RGB_RE.match(color):
        return truecolor(*(int(part) for part in match.groups()))
    return None


def colorize(text: str, color: str | None) -> str:
    """Wrap ``text`` in ``color``; unknown or malformed colors leave it as is."""
    if not color:
        return text
    code = ansi_code_for(color)
    if code is None:
        return text
    return f"{code}{text}{RESET}"
