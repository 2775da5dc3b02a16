from __future__ import annotations


ZERO_WIDTH_SPACE = "\u200b"
QUOTE_PREFIX = "> "
REPLY_SUMMARY_LIMIT = 64
ELLIPSIS = "..."


def sanitize_mentions(text: str) -> str:
    """Break every "@" with a zero-width space so the far side never pings."""
    return text.replace("@", f"@{ZERO_WIDTH_SPACE}")


def _is_quote_line(line: str) -> bool:
    return line.startswith(QUOTE_PREFIX) or line == ">"


def strip_quote_block(text: str) -> str:
    """Drop a leading "> " quote header (reply fallback) and return the rest.

    Blank lines anywhere in that leading run are dropped with it, quote or not.
    Every surviving line is re-emitted with a trailing newline.
    """
    lines = text.splitlines()
    index = 0
    while index < len(lines) and (_is_quote_line(lines[index]) or not lines[index].strip()):
        index += 1
    return "".join(f"{line}\n" for line in lines[index:])


def first_line(text: str) -> str:
    stripped = strip_quote_block(text)
    if not stripped:
        return ""
    return stripped.split("\n", 1)[0]


def truncate_summary(line: str, limit: int = REPLY_SUMMARY_LIMIT) -> str:
    if len(line) <= limit:
        return line
    return f"{line[:limit]}{ELLIPSIS}"


def build_reply_header(ping: str, first_line: str, link: str | None = None) -> str:
    summary = truncate_summary(first_line)
    if link and summary:
        summary = f"[{summary}]({link})"
    parts = [part for part in (ping.strip(), summary) if part]
    return f"> {' '.join(parts)}"


def format_with_reply(body: str, header: str) -> str:
    return f"{header}\n{strip_quote_block(body)}"


def clamp_length(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= len(ELLIPSIS):
        return text[:limit]
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


def display_label(display_name: str, tag: str) -> str:
    display = (display_name or "").strip() or "unknown"
    tag = (tag or "").strip()
    if not tag or tag == display:
        return display
    return f"{display} ({tag})"
