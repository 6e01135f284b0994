"""
Best-effort repair of quasi-JSON model output.

Models wrap answers in reasoning tags and Markdown fences, emit integers
with absurd digit counts, leak float noise like 2.9170000000000003, and
occasionally repeat a key with conflicting values. This module undoes
those specific malformations with text rewrites. It is not a JSON parser:
anything outside these patterns passes through untouched and the caller's
json.loads() is the final arbiter.

Example:
    >>> sanitize('```json\\n{"priority": 12345678901234, "score": 2.9170000000000003}\\n```')
    '{"priority": 1, "score": 2.92}'
"""
import logging
import re

logger = logging.getLogger(__name__)

THINKING_OPEN = "<thinking>"
THINKING_CLOSE = "</thinking>"

_PRIORITY_PATTERN = re.compile(r'"priority"\s*:\s*\d{10,}')
_HUGE_NUMBER_PATTERN = re.compile(r':\s*\d{20,}')
_NOISY_FLOAT_PATTERN = re.compile(r':\s*(\d+\.\d{10,})')

# "key": value, ...other flat members..., "key": value -> keep the first one.
# Values stop at , { } so a duplicate inside a nested object never pairs with
# a key of its parent.
_DUPLICATE_KEY_PATTERN = re.compile(
    r'("(\w+)"\s*:\s*[^,{}]+)'
    r'((?:\s*,\s*"\w+"\s*:\s*[^,{}]+)*?)'
    r'\s*,\s*"\2"\s*:\s*[^,{}]+'
)

# Each pass removes one member, so this only guards against pathological input
_MAX_DUPLICATE_PASSES = 1000


def extract_json(response: str) -> str:
    """
    Strip reasoning tags and Markdown code fences around a JSON answer.

    Everything up to the last </thinking> after an opening <thinking> is
    dropped, so consecutive reasoning sections go in one pass. For fenced
    output the body between the opening fence line and the next closing
    fence is kept; a missing closing fence keeps the rest.
    """
    if not response:
        return ""

    cleaned = response

    thinking_start = response.find(THINKING_OPEN)
    if thinking_start != -1:
        thinking_end = response.rfind(THINKING_CLOSE)
        if thinking_end >= thinking_start + len(THINKING_OPEN):
            cleaned = response[thinking_end + len(THINKING_CLOSE):]

    if "```json" in cleaned:
        cleaned = _unwrap_fence(cleaned, "```json\n")
    elif "```" in cleaned:
        cleaned = _unwrap_fence(cleaned, "```\n")

    return cleaned.strip()


def _unwrap_fence(text: str, opening: str) -> str:
    start_index = text.find(opening)
    start = start_index + len(opening) if start_index != -1 else 0
    end = text.find("\n```", start)
    if end == -1:
        end = len(text)
    return text[start:end]


def _round_noisy_float(match: re.Match) -> str:
    return f": {float(match.group(1)):.2f}"


def remove_duplicate_keys(json_text: str) -> str:
    """Remove repeated keys inside one object, keeping the first occurrence."""
    result = json_text
    for _ in range(_MAX_DUPLICATE_PASSES):
        repaired = _DUPLICATE_KEY_PATTERN.sub(r"\1\3", result, count=1)
        if repaired == result:
            break
        logger.debug(
            "Removed duplicate JSON key",
            extra={"event_type": "json_duplicate_key_removed"}
        )
        result = repaired
    return result


def sanitize_json(text: str) -> str:
    """
    Apply the numeric and duplicate-key repairs to already-extracted JSON.

    Rewrites, in order:
    - "priority" with 10+ digits -> 1
    - any numeric value with 20+ digits -> 1
    - floats with 10+ fractional digits -> 2 decimal places
    - duplicate keys -> first occurrence wins
    """
    if not text:
        return ""

    cleaned = _PRIORITY_PATTERN.sub('"priority": 1', text)
    cleaned = _HUGE_NUMBER_PATTERN.sub(": 1", cleaned)
    cleaned = _NOISY_FLOAT_PATTERN.sub(_round_noisy_float, cleaned)
    return remove_duplicate_keys(cleaned)


def sanitize(response: str) -> str:
    """
    Full repair pipeline for raw model output.

    Never raises; in the worst case the trimmed input is returned.

    Args:
        response: Raw text returned by a provider

    Returns:
        Cleaned text ready for json.loads()
    """
    cleaned = sanitize_json(extract_json(response))
    if cleaned != (response or "").strip():
        logger.debug(
            "Sanitized model output",
            extra={
                "event_type": "json_sanitized",
                "original_length": len(response or ""),
                "sanitized_length": len(cleaned),
            }
        )
    return cleaned
