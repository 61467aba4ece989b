"""
Text chunking for TTS requests.

TTS engines cap the size of a single request, and every request carries a
fixed overhead, so text is packed into as few byte-bounded chunks as
possible while keeping sentences and words intact wherever the budget
allows.
"""

import re
from typing import List, Tuple


_SENTENCE = re.compile(r"[^.!?]*[.!?]+[\"'”’)\]]*")


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def split_sentences(text: str) -> List[str]:
    """
    Split text into sentences on terminal punctuation.

    A sentence ends at ``.``, ``!`` or ``?`` plus any closing quotes or
    brackets. Text after the last terminator forms its own sentence.
    Whitespace inside each sentence is collapsed to single spaces.

    Args:
        text: The text to segment

    Returns:
        Ordered list of non-empty sentences
    """
    sentences = []
    end = 0
    for match in _SENTENCE.finditer(text):
        sentences.append(match.group())
        end = match.end()
    sentences.append(text[end:])

    return [" ".join(s.split()) for s in sentences if s.strip()]


def _split_word(word: str, max_bytes: int) -> Tuple[str, str]:
    """Cut a word at the last UTF-8 character boundary within max_bytes."""
    encoded = word.encode("utf-8")
    cut = max_bytes
    while cut > 0 and (encoded[cut] & 0xC0) == 0x80:
        cut -= 1
    if cut == 0:
        # Budget smaller than one character; emit the character anyway
        cut = _byte_len(word[0])
    return encoded[:cut].decode("utf-8"), encoded[cut:].decode("utf-8")


def _fill_with_words(current: str, sentence: str, max_bytes: int) -> Tuple[str, str]:
    """
    Append whole words of sentence to current until max_bytes is reached.

    Returns:
        The filled chunk and the unconsumed remainder of the sentence
    """
    words = sentence.split()
    filled = current
    taken = 0
    for word in words:
        candidate = f"{filled} {word}" if filled else word
        if _byte_len(candidate) > max_bytes:
            break
        filled = candidate
        taken += 1

    if not filled:
        head, tail = _split_word(words[0], max_bytes)
        return head, " ".join([tail] + words[1:]).strip()

    return filled, " ".join(words[taken:])


def split_text_into_chunks(
    text: str,
    max_bytes: int,
    fill_ratio: float = 0.75
) -> List[str]:
    """
    Split text into chunks whose UTF-8 size does not exceed max_bytes.

    Sentences are accumulated greedily. When the next sentence would
    overflow, a chunk that is already at least ``fill_ratio`` full is flushed
    as-is; otherwise whole words from the overflowing sentence top it up and
    the rest of the sentence carries over to the next chunk. A single word
    longer than max_bytes is cut at a character boundary.

    The result is deterministic for a given text and budget, which is what
    lets a resumed job address chunks by index.

    Args:
        text: Text to split
        max_bytes: Maximum UTF-8 byte length of a chunk
        fill_ratio: Fill level above which an overflowing chunk is flushed as-is

    Returns:
        Ordered list of non-empty chunks

    Raises:
        ValueError: If max_bytes is less than 1

    Example:
        >>> split_text_into_chunks("One. Two. Three.", max_bytes=9)
        ['One. Two.', 'Three.']
    """
    if max_bytes < 1:
        raise ValueError(f"max_bytes must be >= 1, got {max_bytes}")

    flush_threshold = fill_ratio * max_bytes
    chunks: List[str] = []
    current = ""

    for sentence in split_sentences(text):
        pending = sentence
        while pending:
            candidate = f"{current} {pending}" if current else pending
            if _byte_len(candidate) <= max_bytes:
                current = candidate
                break

            if current and _byte_len(current) >= flush_threshold:
                chunks.append(current)
                current = ""
                continue

            filled, pending = _fill_with_words(current, pending, max_bytes)
            chunks.append(filled)
            current = ""

    if current:
        chunks.append(current)

    return chunks
