"""
modules/ingestion/chunker.py

Sentence-aware greedy chunking on a character budget.

Sentences are packed into a chunk (joined by a single space) until adding
the next one would exceed max_chars. A sentence is never split across
chunks unless it alone is longer than max_chars; such a sentence is
hard-wrapped, preferring the last whitespace before the limit.
"""

import re
from typing import List

from config.settings import CHUNK_MAX_CHARS


# ── Sentence boundary detection ────────────────────────────────────────────
def split_into_sentences(text: str) -> List[str]:
    """
    Split text into sentences using regex.
    Handles common abbreviations to avoid false splits.
    Returns list of sentence strings (each ends with its punctuation).
    """
    # Python re requires fixed-width lookbehind, so abbreviations are grouped by length
    exclude_3 = r"(?<!(?:Mr|Ms|Dr|Sr|Jr|vs|pp|no)\.)"
    exclude_4 = r"(?<!(?:Mrs|etc|Fig|vol|e\.g|i\.e)\.)"
    exclude_5 = r"(?<!Prof\.)"

    sentence_end = rf"{exclude_3}{exclude_4}{exclude_5}(?<=[.!?])\s+(?=[A-ZÀ-Ü0-9])"
    paragraph_break = r"\n\s*\n"

    parts = re.split(f"{sentence_end}|{paragraph_break}", text.strip())
    return [re.sub(r"\s+", " ", p).strip() for p in parts if p and p.strip()]


# ── Text cleaning ──────────────────────────────────────────────────────────
def clean_text(text: str) -> str:
    """
    Remove common extraction artifacts, normalize whitespace.
    Does NOT remove content, only formatting noise.
    """
    text = text.replace("\r\n", "\n").replace("\f", "\n")
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    # Remove hyphenation at line breaks
    text = re.sub(r"(\w)-\n(\w)", r"\1\2", text)
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(lines).strip()


def _hard_wrap(sentence: str, max_chars: int) -> List[str]:
    pieces = []
    rest = sentence
    while len(rest) > max_chars:
        cut = rest.rfind(" ", 0, max_chars + 1)
        if cut <= 0:
            cut = max_chars
        pieces.append(rest[:cut].strip())
        rest = rest[cut:].strip()
    if rest:
        pieces.append(rest)
    return pieces


# ── Chunker ────────────────────────────────────────────────────────────────
def chunk_text(text: str, max_chars: int = CHUNK_MAX_CHARS) -> List[str]:
    """
    Greedy sentence packing up to max_chars per chunk.

    Args:
        text:      cleaned plain text
        max_chars: character budget per chunk

    Returns:
        Chunk strings in document order. Empty/blank text returns [].
    """
    if max_chars <= 0:
        raise ValueError(f"max_chars must be positive, got {max_chars}")

    sentences = split_into_sentences(clean_text(text or ""))
    chunks: List[str] = []
    current = ""

    for sentence in sentences:
        if len(sentence) > max_chars:
            # Forced overflow: flush, then wrap the oversize sentence on its own
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(_hard_wrap(sentence, max_chars))
            continue

        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = sentence

    if current:
        chunks.append(current)
    return chunks
