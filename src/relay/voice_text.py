"""
Voice text normalization.

Turns model output into text that reads well aloud:
- strips markdown (headings, emphasis, code, links)
- spells out symbols that TTS voices mangle (&, @, #)
- splits text into speakable chunks, preferring sentence boundaries

Also provides the word/sentence buffer used while tokens stream in.
"""

from __future__ import annotations

import re
from typing import List, Optional

DEFAULT_MAX_CHUNK_CHARS = 200
DEFAULT_WORD_BUFFER = 5

_CODE_FENCE_RE = re.compile(r"```[^\n`]*\n?([\s\S]*?)```")
_INLINE_CODE_RE = re.compile(r"`([^`\n]*)`")
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_DANGLING_LINK_TARGET_RE = re.compile(r"\]\([^)\s]*\)")
_HEADING_RE = re.compile(r"^[ \t]*#{1,6}[ \t]+", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"\*\*|__|~~|\*")
_STRAY_MARKUP_RE = re.compile(r"[`<>\[\]]")
_WHITESPACE_RE = re.compile(r"\s+")

_SYMBOL_WORDS = (
    ("&", " and "),
    ("@", " at "),
    ("#", " number "),
)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*$")
_COMPLETE_WORD_RE = re.compile(r"\s*(\S+)\s+")


def _clean_once(text: str) -> str:
    text = _CODE_FENCE_RE.sub(r" \1 ", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _IMAGE_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _DANGLING_LINK_TARGET_RE.sub(" ", text)
    text = _HEADING_RE.sub("", text)
    text = _EMPHASIS_RE.sub("", text)
    text = _STRAY_MARKUP_RE.sub(" ", text)
    for symbol, words in _SYMBOL_WORDS:
        text = text.replace(symbol, words)
    return _WHITESPACE_RE.sub(" ", text).strip()


def clean_for_voice(text: str) -> str:
    """
    Strip markup and unspeakable symbols, collapse whitespace.

    Applying it to its own output returns the same string.
    """
    cleaned = text or ""
    # Stripping one layer of markup can expose another (nested links); run to a fixpoint.
    for _ in range(8):
        next_pass = _clean_once(cleaned)
        if next_pass == cleaned:
            break
        cleaned = next_pass
    return cleaned


def _split_long_sentence(sentence: str, max_length: int) -> List[str]:
    pieces: List[str] = []
    current = ""
    for word in sentence.split(" "):
        while len(word) > max_length:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:max_length])
            word = word[max_length:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_length:
            current = candidate
        else:
            pieces.append(current)
            current = word
    if current:
        pieces.append(current)
    return pieces


def split_into_speakable_chunks(text: str, max_length: int = DEFAULT_MAX_CHUNK_CHARS) -> List[str]:
    """
    Clean text and split it into chunks of at most `max_length` characters.

    Sentences are packed together while they fit. A sentence longer than the
    limit is broken at word boundaries; a single word longer than the limit is
    split mid-word rather than dropped.
    """
    if max_length < 1:
        raise ValueError("max_length must be positive")

    cleaned = clean_for_voice(text)
    if not cleaned:
        return []

    chunks: List[str] = []
    current = ""
    for sentence in _SENTENCE_SPLIT_RE.split(cleaned):
        if not sentence:
            continue
        if len(sentence) > max_length:
            if current:
                chunks.append(current)
                current = ""
            *head, tail = _split_long_sentence(sentence, max_length)
            chunks.extend(head)
            current = tail
            continue

        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_length:
            current = candidate
        else:
            chunks.append(current)
            current = sentence

    if current:
        chunks.append(current)
    return chunks


def buffer_tokens_for_speech(text: str, buffer_size: int = DEFAULT_WORD_BUFFER) -> List[str]:
    """Group words into phrases, cutting at sentence ends or every `buffer_size` words."""
    buffer = SpeechBuffer(word_limit=buffer_size)
    phrases = buffer.add(text)
    tail = buffer.flush()
    if tail:
        phrases.append(tail)
    return phrases


class SpeechBuffer:
    """
    Accumulates streamed token fragments into speakable phrases.

    A phrase is released once a complete word ends a sentence or `word_limit`
    complete words have been collected. A word only counts as complete once
    whitespace follows it, so a fragment boundary never splits a word.
    """

    def __init__(self, word_limit: int = DEFAULT_WORD_BUFFER):
        if word_limit < 1:
            raise ValueError("word_limit must be at least 1")
        self.word_limit = word_limit
        self._pending = ""
        self._words: List[str] = []

    def add(self, fragment: str) -> List[str]:
        """Add a fragment and return any phrases that are ready."""
        self._pending += fragment or ""
        phrases: List[str] = []

        while True:
            match = _COMPLETE_WORD_RE.match(self._pending)
            if not match:
                break
            self._pending = self._pending[match.end():]
            word = match.group(1)
            self._words.append(word)
            if _SENTENCE_END_RE.search(word) or len(self._words) >= self.word_limit:
                phrases.append(" ".join(self._words))
                self._words = []

        return phrases

    def flush(self) -> Optional[str]:
        """Return whatever is buffered and reset. None when empty."""
        words = list(self._words)
        tail = self._pending.strip()
        if tail:
            words.extend(tail.split())
        self._words = []
        self._pending = ""
        if not words:
            return None
        return " ".join(words)

    def reset(self) -> None:
        self._words = []
        self._pending = ""
