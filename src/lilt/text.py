"""Text processing: unicode vocabulary indexing and sentence-aware chunking."""

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence, Union

import numpy as np

from lilt.errors import InvalidRequestError, ResourceError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_LEN = 300

_PARAGRAPH_RE = re.compile(r"\n\s*\n+")

# Whitespace after . ! or ? ends a sentence, unless the dot closes a title
# or a single-letter initial.
_SENTENCE_RE = re.compile(
    r"(?<!Mr\.)(?<!Mrs\.)(?<!Ms\.)(?<!Dr\.)(?<!Prof\.)(?<!\b[A-Z]\.)(?<=[.!?])\s+"
)


class TokenBatch(NamedTuple):
    """Vocabulary ids and validity mask for a batch of texts.

    Attributes:
        text_ids: int64 ids [batch, max_len], zero-padded on the right
        text_mask: float32 mask [batch, 1, max_len]
    """

    text_ids: np.ndarray
    text_mask: np.ndarray


def length_to_mask(lengths: Sequence[int], max_len: Optional[int] = None) -> np.ndarray:
    """
    Build a binary validity mask from per-item lengths.

    Args:
        lengths: Valid length of each batch item
        max_len: Mask width (default: max of lengths)

    Returns:
        float32 mask [batch, 1, max_len] with 1.0 at positions < length
    """
    lengths = np.asarray(lengths, dtype=np.int64)
    if max_len is None:
        max_len = int(lengths.max()) if lengths.size else 0
    positions = np.arange(max_len, dtype=np.int64)
    mask = (positions[None, :] < lengths[:, None]).astype(np.float32)
    return mask[:, None, :]


def _parse_indexer(data: object, source: str) -> Dict[int, int]:
    def is_int(value: object) -> bool:
        return isinstance(value, int) and not isinstance(value, bool)

    if isinstance(data, list):
        indexer = {}
        skipped = 0
        for codepoint, value in enumerate(data):
            if not is_int(value):
                raise ResourceError(
                    f"Vocabulary {source}: entry {codepoint} is {value!r}, expected an integer"
                )
            if value < 0:
                skipped += 1
                continue
            indexer[codepoint] = value
        if skipped:
            logger.debug(f"Vocabulary {source}: skipped {skipped} unmapped slots")
        return indexer

    if isinstance(data, dict):
        indexer = {}
        for key, value in data.items():
            if not isinstance(key, str) or not (key.isascii() and key.isdigit()):
                raise ResourceError(f"Vocabulary {source}: key {key!r} is not a codepoint")
            codepoint = int(key)
            if not is_int(value):
                raise ResourceError(
                    f"Vocabulary {source}: value for {key!r} is {value!r}, expected an integer"
                )
            indexer[codepoint] = value
        return indexer

    raise ResourceError(
        f"Vocabulary {source} must be a JSON array or object of integers, got {type(data).__name__}"
    )


class UnicodeProcessor:
    """
    Maps text to vocabulary ids one unicode codepoint at a time.

    Codepoints missing from the vocabulary map to id 0, so any text is
    accepted as-is.
    """

    def __init__(self, indexer: Dict[int, int]):
        """
        Initialize the processor.

        Args:
            indexer: Mapping from unicode codepoint to vocabulary id
        """
        self.indexer = dict(indexer)

    @classmethod
    def from_json(cls, data: object, source: str = "<memory>") -> "UnicodeProcessor":
        return cls(_parse_indexer(data, source))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "UnicodeProcessor":
        """
        Load a vocabulary from JSON.

        The file is either an array indexed by codepoint or an object keyed
        by the decimal codepoint string.

        Args:
            path: Path to the vocabulary JSON

        Returns:
            UnicodeProcessor instance
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ResourceError(f"Cannot read vocabulary {path}: {e}") from e

        processor = cls.from_json(data, source=str(path))
        logger.info(f"Vocabulary loaded with {len(processor.indexer)} entries")
        return processor

    def __len__(self) -> int:
        return len(self.indexer)

    def text_to_ids(self, text: str) -> List[int]:
        """Convert a single string to vocabulary ids, unknown codepoints -> 0."""
        return [self.indexer.get(ord(ch), 0) for ch in text]

    def __call__(self, text_list: Sequence[str]) -> TokenBatch:
        """
        Index a batch of texts.

        Args:
            text_list: Texts to index, one batch row each

        Returns:
            TokenBatch with right zero-padded ids and the matching mask
        """
        if not text_list:
            raise InvalidRequestError("Cannot index an empty batch of texts")

        lengths = [len(text) for text in text_list]
        max_len = max(lengths)

        text_ids = np.zeros((len(text_list), max_len), dtype=np.int64)
        for i, text in enumerate(text_list):
            text_ids[i, : lengths[i]] = self.text_to_ids(text)

        return TokenBatch(text_ids=text_ids, text_mask=length_to_mask(lengths, max_len))


def split_sentences(paragraph: str) -> List[str]:
    """Split a paragraph into sentence candidates (best-effort heuristic)."""
    return [s for s in _SENTENCE_RE.split(paragraph) if s]


def chunk_text(text: str, max_len: int = DEFAULT_MAX_CHUNK_LEN) -> List[str]:
    """
    Split text into chunks by paragraphs and sentences.

    Sentences are packed greedily; a sentence longer than ``max_len`` is
    kept whole as its own chunk.

    Args:
        text: Input text to chunk
        max_len: Maximum length of each chunk (default: 300)

    Returns:
        List of non-empty text chunks in document order
    """
    if max_len < 1:
        raise InvalidRequestError(f"max_len must be >= 1, got {max_len}")

    paragraphs = [p.strip() for p in _PARAGRAPH_RE.split(text.strip()) if p.strip()]

    chunks = []
    for paragraph in paragraphs:
        current_chunk = ""
        for sentence in split_sentences(paragraph):
            if len(current_chunk) + len(sentence) + 1 <= max_len:
                current_chunk += (" " if current_chunk else "") + sentence
            else:
                if current_chunk:
                    chunks.append(current_chunk.strip())
                current_chunk = sentence
        if current_chunk.strip():
            chunks.append(current_chunk.strip())

    return chunks


def create_text_processor(vocab_path: Union[str, Path]) -> UnicodeProcessor:
    """
    Create a text processor from a vocabulary file.

    Args:
        vocab_path: Path to ``unicode_indexer.json``

    Returns:
        UnicodeProcessor instance
    """
    return UnicodeProcessor.load(vocab_path)
