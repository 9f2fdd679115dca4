"""
Response formatting: model output (markdown-ish) -> chat-safe HTML subset.

The target subset is what the chat platform accepts in HTML parse mode:
<b>, <i>, <s>, <code>, <pre>. Everything else is escaped.

Usage:
    html = format_response(raw_result)
    for chunk in chunk_text(html, limit=4000):
        send(chunk)
"""

import html
import math
import re
import unicodedata

EMPTY_RESPONSE = "(Empty response)"

# Mathematical Alphanumeric Symbols block (bold/italic/script letterforms)
_MATH_ALNUM_START = 0x1D400
_MATH_ALNUM_END = 0x1D7FF

_TABLE_SEPARATOR = re.compile(r"^\|?\s*:?-{2,}:?\s*(\|\s*:?-{2,}:?\s*)*\|?\s*$")
_FENCED_BLOCK = re.compile(r"```[\w+-]*\n?(.*?)```", re.DOTALL)
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_BOLD_STARS = re.compile(r"\*\*(?=\S)([^*\n]+?)(?<=\S)\*\*")
_BOLD_UNDERSCORES = re.compile(r"(?<![A-Za-z0-9])__(?=\S)([^_\n]+?)(?<=\S)__(?![A-Za-z0-9])")
_ITALIC_STAR = re.compile(r"(?<![A-Za-z0-9*])\*(?=\S)([^*\n]+?)(?<=\S)\*(?![A-Za-z0-9*])")
_ITALIC_UNDERSCORE = re.compile(r"(?<![A-Za-z0-9_])_(?=\S)([^_\n]+?)(?<=\S)_(?![A-Za-z0-9_])")
_STRIKE = re.compile(r"~~(?=\S)([^~\n]+?)(?<=\S)~~")
_HEADING = re.compile(r"^#{1,6}[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$", re.MULTILINE)
_BULLET = re.compile(r"^[ \t]*[-*+][ \t]+", re.MULTILINE)
_NUMBERED = re.compile(r"^[ \t]*(\d+)\.[ \t]+", re.MULTILINE)
_BLANK_RUNS = re.compile(r"\n{3,}")
_TRAILING_SPACE = re.compile(r"[ \t]+\n")
_TAG = re.compile(r"<[^>]+>")
_PLACEHOLDER = "\x00{}\x00"


def normalize_letterforms(text: str) -> str:
    """Replace stylized Unicode letters and digits (e.g. bold math A) with ASCII."""
    out = []
    for ch in text:
        if _MATH_ALNUM_START <= ord(ch) <= _MATH_ALNUM_END:
            plain = unicodedata.normalize("NFKC", ch)
            out.append(plain if plain.isascii() else ch)
        else:
            out.append(ch)
    return "".join(out)


def _split_row(line: str) -> list[str]:
    cells = line.strip()
    if cells.startswith("|"):
        cells = cells[1:]
    if cells.endswith("|"):
        cells = cells[:-1]
    return [c.strip() for c in cells.split("|")]


def _render_table(header: list[str], rows: list[list[str]]) -> list[str]:
    width = max([len(header)] + [len(r) for r in rows])
    grid = [header + [""] * (width - len(header))]
    grid += [r + [""] * (width - len(r)) for r in rows]
    col_widths = [max(len(row[i]) for row in grid) for i in range(width)]

    def fmt(row: list[str]) -> str:
        return " | ".join(cell.ljust(col_widths[i]) for i, cell in enumerate(row)).rstrip()

    lines = ["```", fmt(grid[0])]
    lines.append("-+-".join("-" * w for w in col_widths))
    lines.extend(fmt(row) for row in grid[1:])
    lines.append("```")
    return lines


def flatten_tables(text: str) -> str:
    """Turn markdown tables into aligned monospace blocks.

    A table is a `|`-delimited header line followed by a separator line
    (`|---|:--:|`). Orphan separator lines are dropped.
    """
    lines = text.split("\n")
    out: list[str] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        is_header = line.strip().startswith("|") and i + 1 < len(lines)
        if is_header and _TABLE_SEPARATOR.match(lines[i + 1].strip()):
            header = _split_row(line)
            rows = []
            i += 2
            while i < len(lines) and lines[i].strip().startswith("|"):
                if not _TABLE_SEPARATOR.match(lines[i].strip()):
                    rows.append(_split_row(lines[i]))
                i += 1
            out.extend(_render_table(header, rows))
            continue
        if line.strip().startswith("|") and _TABLE_SEPARATOR.match(line.strip()):
            i += 1
            continue
        out.append(line)
        i += 1
    return "\n".join(out)


def escape_html(text: str) -> str:
    """Escape the three characters the HTML parse mode reserves."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def format_response(text: str) -> str:
    """Convert raw model output into chat-safe HTML.

    Plain text without markdown syntax comes back unchanged apart from
    whitespace normalization (trailing spaces, 3+ blank lines, outer strip).
    """
    if not text or not text.strip():
        return EMPTY_RESPONSE

    text = text.replace("\r\n", "\n")
    text = normalize_letterforms(text)
    text = flatten_tables(text)
    text = escape_html(text)

    # Code is lifted out first so emphasis/list rules never touch it
    protected: list[str] = []

    def protect(fragment: str) -> str:
        protected.append(fragment)
        return _PLACEHOLDER.format(len(protected) - 1)

    text = _FENCED_BLOCK.sub(lambda m: protect(f"<pre>{m.group(1).strip(chr(10))}</pre>"), text)
    text = _INLINE_CODE.sub(lambda m: protect(f"<code>{m.group(1)}</code>"), text)

    text = _HEADING.sub(r"<b>\1</b>", text)
    text = _BOLD_STARS.sub(r"<b>\1</b>", text)
    text = _BOLD_UNDERSCORES.sub(r"<b>\1</b>", text)
    text = _BULLET.sub("• ", text)
    text = _ITALIC_STAR.sub(r"<i>\1</i>", text)
    text = _ITALIC_UNDERSCORE.sub(r"<i>\1</i>", text)
    text = _STRIKE.sub(r"<s>\1</s>", text)
    text = _NUMBERED.sub(r"\1. ", text)

    for index, fragment in enumerate(protected):
        text = text.replace(_PLACEHOLDER.format(index), fragment)

    text = _TRAILING_SPACE.sub("\n", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()


def strip_markup(text: str) -> str:
    """Drop tags and unescape entities: the plain-text fallback for a failed send."""
    return html.unescape(_TAG.sub("", text))


def _safe_cut(text: str, start: int, limit: int) -> int:
    """End index for a chunk starting at `start` that does not split a tag or entity."""
    end = start + limit
    if end >= len(text):
        return len(text)
    window = text[start:end]

    open_tag = window.rfind("<")
    if open_tag > window.rfind(">") and open_tag > 0:
        return start + open_tag

    amp = window.rfind("&")
    if amp > 0 and ";" not in window[amp:] and len(window) - amp <= 8:
        return start + amp

    return end


def _split(text: str, limit: int) -> list[str]:
    chunks = []
    pos = 0
    while pos < len(text):
        end = _safe_cut(text, pos, limit)
        chunks.append(text[pos:end])
        pos = end
    return chunks


def part_marker(index: int, total: int) -> str:
    return f"[{index}/{total}]\n"


def chunk_text(text: str, limit: int = 4000) -> list[str]:
    """Split text into messages of at most `limit` characters.

    When more than one chunk is needed each one is prefixed with an
    "[i/n]" line, and the marker counts against the limit.
    """
    if len(text) <= limit:
        return [text]

    total = max(2, math.ceil(len(text) / limit))
    while True:
        body_limit = limit - len(part_marker(total, total))
        bodies = _split(text, body_limit)
        if len(bodies) == total:
            break
        total = len(bodies)

    return [part_marker(i, total) + body for i, body in enumerate(bodies, 1)]
