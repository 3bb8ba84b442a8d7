"""
Response formatting for Discord delivery.

``chunk_response`` splits long agent output into fragments that each fit
under the message ceiling, and keeps fenced code blocks well-formed in every
fragment: a block that spans a seam is closed at the end of one fragment and
re-opened (same language tag) at the start of the next.

The cost/usage helpers render the small ``-#`` footer appended to the last
fragment of every answer.
"""

from __future__ import annotations

import re

# Discord's hard limit is 2000; leave headroom for footers.
MAX_MESSAGE_LENGTH = 1900

FENCE = "```"
_CLOSE_SUFFIX = "\n" + FENCE
_LANG_RE = re.compile(r"\w*")
# Longer words after a fence are not treated as a language tag
_MAX_LANG_LENGTH = 20
_MIN_CHUNK_LENGTH = 32


def _scan_fences(text: str, in_block: bool, lang: str) -> tuple[bool, str]:
    """Replay every fence marker in ``text`` starting from the given state."""
    pos = 0
    while True:
        idx = text.find(FENCE, pos)
        if idx == -1:
            return in_block, lang
        if in_block:
            in_block, lang = False, ""
        else:
            match = _LANG_RE.match(text, idx + len(FENCE))
            tag = match.group(0) if match else ""
            in_block, lang = True, tag if len(tag) <= _MAX_LANG_LENGTH else ""
        pos = idx + len(FENCE)


def _find_closing_fence(text: str, limit: int, in_block: bool) -> int:
    """End offset of the last closing fence inside ``limit``, or -1.

    Only closing markers past the midpoint count; an early split would
    produce a uselessly short fragment.
    """
    last_close = -1
    pos = 0
    while True:
        idx = text.find(FENCE, pos)
        if idx == -1 or idx + len(FENCE) > limit:
            break
        if in_block:
            last_close = idx + len(FENCE)
        in_block = not in_block
        pos = idx + len(FENCE)

    if last_close > limit * 0.5:
        return last_close
    return -1


def _safe_cut(text: str, cut: int) -> int:
    """Step a hard cut back so it does not land inside a run of backticks."""
    pos = cut
    while 0 < pos < len(text) and text[pos - 1] == "`" and text[pos] == "`":
        pos -= 1
    return pos if pos > 0 else cut


def chunk_response(text: str, max_len: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split ``text`` into ordered fragments of at most ``max_len`` characters.

    Split points, in order of preference: just after a closing code fence
    beyond the midpoint, the last newline before the limit, a hard cut.
    Whitespace at the start of each following fragment is trimmed. Room for
    the synthetic re-open/close fences is reserved inside ``max_len``.
    """
    if max_len < _MIN_CHUNK_LENGTH:
        raise ValueError(f"max_len must be at least {_MIN_CHUNK_LENGTH}, got {max_len}")
    if not text:
        return [text]

    chunks: list[str] = []
    remaining = text
    in_block = False
    lang = ""

    while remaining:
        prefix = f"{FENCE}{lang}\n" if in_block else ""

        if len(prefix) + len(remaining) <= max_len:
            ends_open, _ = _scan_fences(remaining, in_block, lang)
            suffix = _CLOSE_SUFFIX if ends_open else ""
            if len(prefix) + len(remaining) + len(suffix) <= max_len:
                chunks.append(prefix + remaining + suffix)
                break

        # Positive because the tag is bounded and max_len >= _MIN_CHUNK_LENGTH
        budget = max_len - len(prefix) - len(_CLOSE_SUFFIX)

        split = _find_closing_fence(remaining, budget, in_block)
        if split == -1:
            split = remaining.rfind("\n", 0, budget + 1)
        if split <= 0:
            split = _safe_cut(remaining, budget)

        piece = remaining[:split]
        ends_open, end_lang = _scan_fences(piece, in_block, lang)
        chunks.append(prefix + piece + (_CLOSE_SUFFIX if ends_open else ""))

        in_block, lang = ends_open, end_lang
        remaining = remaining[split:].lstrip()

    return chunks


def is_balanced(fragment: str) -> bool:
    """True when ``fragment`` leaves no code fence open."""
    in_block, _ = _scan_fences(fragment, False, "")
    return not in_block


def format_tokens(tokens: int) -> str:
    """Abbreviate token counts: 1234 -> '1k', 200000 -> '200k'."""
    if tokens >= 1000:
        return f"{int(tokens / 1000 + 0.5)}k"
    return str(tokens)


def format_cost(cost: float) -> str:
    """Dollar cost, with a fixed marker for anything under a cent."""
    if cost < 0.01:
        return "<$0.01"
    return f"${cost:.3f}"


def format_duration(duration_ms: float) -> str:
    return f"{duration_ms / 1000:.1f}s"


def format_turns(num_turns: int) -> str:
    return f"{num_turns} turn{'' if num_turns == 1 else 's'}"


def format_usage_footer(
    cost: float,
    duration_ms: float,
    num_turns: int,
    context_used: int = 0,
    context_window: int = 0,
) -> str:
    """Footer shown under the last fragment of an answer."""
    parts = [format_cost(cost), format_duration(duration_ms), format_turns(num_turns)]
    if context_used and context_window:
        parts.append(f"{format_tokens(context_used)}/{format_tokens(context_window)} context")
    return "-# " + " · ".join(parts)
