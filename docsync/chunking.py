"""
Text extraction and chunking for document files.

A document file is a JSON array of editor blocks:

    [{"id": "...", "type": "paragraph",
      "content": [{"type": "text", "text": "Hello "},
                  {"type": "link", "content": [{"type": "text", "text": "world"}]}],
      "children": [...]}]

Only the inline text is indexed; block styling and props are ignored.
"""

import json
import logging
import re

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_SIZE = 800
DEFAULT_OVERLAP = 100

# Runs of CJK or ASCII sentence terminators end a sentence
_SENTENCE_END = re.compile(r"[。？！.?!]+")


def _inline_text(content: list) -> str:
    parts = []
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text" and isinstance(item.get("text"), str):
            parts.append(item["text"])
        elif item.get("type") == "link" and isinstance(item.get("content"), list):
            parts.append(_inline_text(item["content"]))
    return "".join(parts).strip()


def _block_texts(blocks: list, out: list[str]) -> None:
    for block in blocks:
        if not isinstance(block, dict):
            continue
        content = block.get("content")
        if isinstance(content, list):
            text = _inline_text(content)
            if text:
                out.append(text)
        children = block.get("children")
        if isinstance(children, list) and children:
            _block_texts(children, out)


def extract_text(raw: str | bytes) -> str:
    """
    Plain text of a document file, one line per block.

    Invalid JSON or a root that is not a list yields "".
    """
    try:
        blocks = json.loads(raw)
    except (ValueError, TypeError) as e:
        logger.debug("Cannot parse document content: %s", e)
        return ""
    if not isinstance(blocks, list):
        return ""
    texts: list[str] = []
    _block_texts(blocks, texts)
    return "\n".join(texts)


def split_sentences(text: str) -> list[str]:
    """Split after each run of sentence terminators, keeping the terminators."""
    sentences = []
    start = 0
    for match in _SENTENCE_END.finditer(text):
        sentences.append(text[start:match.end()])
        start = match.end()
    if start < len(text):
        sentences.append(text[start:])
    return [s for s in sentences if s]


def chunk_text(
    text: str,
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> list[str]:
    """
    Split text into chunks for embedding.

    Sentences are packed greedily up to ``max_chunk_size`` characters. Each
    new chunk starts with the last ``overlap`` characters of the previous
    one. A single sentence longer than the limit is kept whole.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if overlap < 0 or overlap >= max_chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than max_chunk_size")

    text = text.strip()
    if not text:
        return []
    if len(text) <= max_chunk_size:
        return [text]

    chunks = []
    current = ""
    # False while current holds only the overlap carried from the last chunk
    fresh = False
    for sentence in split_sentences(text):
        if fresh and len(current) + len(sentence) > max_chunk_size:
            chunks.append(current.strip())
            current = current[-overlap:] if overlap else ""
            fresh = False
        current += sentence
        fresh = True
    if fresh:
        chunks.append(current.strip())

    return [c for c in chunks if c]
