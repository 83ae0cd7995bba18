"""Sanitizing for reason text persisted into story records."""

import re
import unicodedata

from .constants import MAX_REASON_LENGTH

# CSI sequences (colors, cursor movement) and OSC sequences (titles, hyperlinks)
ANSI_CSI = re.compile(r'\x1b\[[0-?]*[ -/]*[@-~]')
ANSI_OSC = re.compile(r'\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)')
CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f-\x9f]')
# Characters that break markdown tables and quote blocks when reasons are rendered
MARKUP_CHARS = re.compile(r'[`|>]')
WHITESPACE_RUN = re.compile(r'\s+')


def strip_ansi(text: str) -> str:
    text = ANSI_OSC.sub("", text)
    return ANSI_CSI.sub("", text)


def sanitize_reason_text(text: str, max_length: int = MAX_REASON_LENGTH) -> str:
    """Make free-form reason text safe to persist and display.

    Escape sequences and control characters are removed, newlines and tabs
    become spaces, and the result is NFC-normalized and truncated with "..."
    so it never exceeds max_length.
    """
    if not text:
        return ""

    text = strip_ansi(text)
    text = text.replace("\r\n", " ").replace("\n", " ").replace("\r", " ").replace("\t", " ")
    text = CONTROL_CHARS.sub("", text)
    text = MARKUP_CHARS.sub("", text)
    text = unicodedata.normalize("NFC", text)
    text = WHITESPACE_RUN.sub(" ", text).strip()

    if len(text) > max_length:
        text = text[:max_length - 3] + "..."
    return text
