"""Token counting on top of tiktoken, with a cheap heuristic fallback."""

from __future__ import annotations

import math
import threading
from typing import ClassVar

import tiktoken

from context_watch.logging import logger

FALLBACK_ENCODING = "cl100k_base"
CHARS_PER_TOKEN = 4


def heuristic_count(text: str) -> int:
    """Estimate tokens as one per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenEstimator:
    """Map text to a token count with a model specific encoding.

    Construction never fails: when the model has no known encoding the
    generic ``cl100k_base`` encoding is used, and when that cannot be loaded
    either (no network, broken cache) counting silently degrades to the
    character heuristic.
    """

    _cache: ClassVar[dict[str, tiktoken.Encoding]] = {}
    _cache_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, model: str, encoding: tiktoken.Encoding | None) -> None:
        self.model = model
        self.encoding = encoding

    @property
    def is_heuristic(self) -> bool:
        return self.encoding is None

    @classmethod
    def for_model(cls, model: str) -> TokenEstimator:
        """Build an estimator for `model`, reusing process wide cached encodings."""
        with cls._cache_lock:
            cached = cls._cache.get(model)
        if cached is not None:
            return cls(model, cached)

        encoding: tiktoken.Encoding | None
        try:
            encoding = tiktoken.encoding_for_model(model)
        except Exception as e:  # noqa: BLE001
            logger.info("tokenizer_model_unknown", model=model, error=str(e))
            try:
                encoding = tiktoken.get_encoding(FALLBACK_ENCODING)
            except Exception as e2:  # noqa: BLE001
                logger.warning("tokenizer_unavailable_using_heuristic", model=model, error=str(e2))
                return cls.heuristic(model)
            return cls(model, encoding)

        with cls._cache_lock:
            cls._cache[model] = encoding
        return cls(model, encoding)

    @classmethod
    def heuristic(cls, model: str = "") -> TokenEstimator:
        """Estimator that only uses the character heuristic."""
        return cls(model, None)

    @classmethod
    def clear_cache(cls) -> None:
        with cls._cache_lock:
            cls._cache.clear()

    def count(self, text: str) -> int:
        """Count tokens in `text`.

        Args:
            text (str): the text to measure

        Returns:
            int: number of tokens, heuristic when no encoding is usable
        """
        if self.encoding is None:
            return heuristic_count(text)
        try:
            return len(self.encoding.encode(text, disallowed_special=()))
        except Exception as e:  # noqa: BLE001
            logger.warning("tokenizer_encode_failed", model=self.model, error=str(e))
            return heuristic_count(text)
