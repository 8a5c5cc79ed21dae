"""Code-block-aware buffer segmentation.

Decides when accumulated stream text is ready to go out as a message.
Prose is flushed at line breaks (and optionally at sentence ends) so the
reader sees it promptly; fenced code blocks are held back until the
closing fence arrives so a block is never split across two messages.

The engine is pure: ``evaluate_buffer`` takes the buffer and the
code-block flag and returns a ``FlushDecision``. The caller applies the
decision and calls again until nothing more is ready.
"""

import re
from dataclasses import dataclass

from .config import CODE_FENCE, BufferConfig
from .types import BreakType

# Candidate sentence ends: '.', '?' or '!' followed by whitespace or end of
# text, or a CJK full stop anywhere.
_SENTENCE_END_RE = re.compile(r"[.?!](?=\s|$)|。")

# Abbreviations whose trailing period does not end a sentence
_ABBREVIATION_RE = re.compile(
    r"\b(?:vs|mr|mrs|dr|prof|inc|ltd|co|etc|e\.g|i\.e)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class FlushDecision:
    """Result of one segmentation pass."""

    segment: str | None
    remaining: str
    inside_code_block: bool
    break_type: BreakType | None = None

    @property
    def should_flush(self) -> bool:
        return self.segment is not None


def find_sentence_end(text: str) -> int:
    """
    Find the end of the first complete sentence.

    Returns:
        Index just past the terminating punctuation, or -1 if none.
        Periods after a digit ("3.5") or a common abbreviation ("Dr.")
        are not treated as sentence ends.
    """
    for match in _SENTENCE_END_RE.finditer(text):
        start = match.start()
        preceding = text[:start]
        if preceding and preceding[-1].isdigit():
            continue
        if _ABBREVIATION_RE.search(preceding):
            continue
        return match.end()
    return -1


def evaluate_buffer(
    buffer: str,
    inside_code_block: bool,
    config: BufferConfig,
) -> FlushDecision:
    """
    Run one segmentation pass over the buffer.

    The size valves open once the buffer reaches its threshold: a buffer
    of exactly ``regular_flush_size`` (or ``code_block_flush_size`` inside
    an open fence) characters is flushed.

    Args:
        buffer: Accumulated, not yet delivered text
        inside_code_block: Whether the buffer starts with an unterminated fence
        config: Flush thresholds and sentence flushing toggle

    Returns:
        A decision carrying the segment to deliver (if any), the text left
        in the buffer, and the new code-block state.
    """
    if inside_code_block:
        return _evaluate_inside_code_block(buffer, config)
    return _evaluate_outside(buffer, config)


def _evaluate_inside_code_block(buffer: str, config: BufferConfig) -> FlushDecision:
    closing = buffer.find(CODE_FENCE, len(CODE_FENCE))
    if closing != -1:
        end = closing + len(CODE_FENCE)
        return FlushDecision(
            segment=buffer[:end],
            remaining=buffer[end:],
            inside_code_block=False,
            break_type=BreakType.CODE_CLOSE,
        )

    if len(buffer) >= config.code_block_flush_size:
        # Unterminated block grew past the safety limit: let it go as-is
        return FlushDecision(
            segment=buffer,
            remaining="",
            inside_code_block=False,
            break_type=BreakType.OVERFLOW,
        )

    return FlushDecision(segment=None, remaining=buffer, inside_code_block=True)


def _evaluate_outside(buffer: str, config: BufferConfig) -> FlushDecision:
    fence_index = buffer.find(CODE_FENCE)
    newline_index = buffer.find("\n")
    sentence_end = find_sentence_end(buffer) if config.sentence_flush else -1

    # Earliest break point wins; ties go to the fence, then the newline.
    candidates = [
        (index, break_type)
        for index, break_type in (
            (fence_index, BreakType.CODE_OPEN),
            (newline_index, BreakType.NEWLINE),
            (sentence_end, BreakType.PERIOD),
        )
        if index != -1
    ]

    if candidates:
        index, break_type = min(candidates, key=lambda c: c[0])

        if break_type == BreakType.CODE_OPEN:
            if index > 0:
                # Prose before the fence goes out on its own
                return FlushDecision(
                    segment=buffer[:index],
                    remaining=buffer[index:],
                    inside_code_block=False,
                    break_type=BreakType.CODE_OPEN,
                )

            closing = buffer.find(CODE_FENCE, len(CODE_FENCE))
            if closing != -1:
                end = closing + len(CODE_FENCE)
                return FlushDecision(
                    segment=buffer[:end],
                    remaining=buffer[end:],
                    inside_code_block=False,
                    break_type=BreakType.CODE_CLOSE,
                )
            # Opening fence without a close yet: start accumulating the block
            return _evaluate_inside_code_block(buffer, config)

        if break_type == BreakType.NEWLINE:
            return FlushDecision(
                segment=buffer[: index + 1],
                remaining=buffer[index + 1 :],
                inside_code_block=False,
                break_type=BreakType.NEWLINE,
            )

        return FlushDecision(
            segment=buffer[:index],
            remaining=buffer[index:],
            inside_code_block=False,
            break_type=BreakType.PERIOD,
        )

    if len(buffer) >= config.regular_flush_size:
        return FlushDecision(
            segment=buffer,
            remaining="",
            inside_code_block=False,
            break_type=BreakType.OVERFLOW,
        )

    return FlushDecision(segment=None, remaining=buffer, inside_code_block=False)
