"""Stylistic voice fingerprint. Word length, punctuation and casing ratios."""

from __future__ import annotations

import hashlib
import re

import numpy as np

FEATURES = (
    "avg_word_length",
    "question_ratio",
    "exclamation_ratio",
    "comma_ratio",
    "sentence_count",
    "word_count",
    "unique_ratio",
    "caps_ratio",
)


def voice_features(text: str) -> np.ndarray:
    """Feature vector (float32, len(FEATURES)) describing how something is written."""
    words = text.lower().split()
    n_words = max(len(words), 1)
    vec = np.zeros(len(FEATURES), dtype=np.float32)
    if not words:
        return vec
    vec[0] = sum(len(w) for w in words) / n_words
    vec[1] = text.count("?") / n_words
    vec[2] = text.count("!") / n_words
    vec[3] = text.count(",") / n_words
    vec[4] = len(re.findall(r"[.!?]+", text))
    vec[5] = len(words)
    vec[6] = len(set(words)) / n_words
    vec[7] = sum(1 for c in text if c.isupper()) / max(len(text), 1)
    return vec


def voice_hash(text: str, precision: int = 2) -> str | None:
    """Hash of the quantized feature vector. None for empty text."""
    if not text.strip():
        return None
    vec = np.round(voice_features(text), precision).astype(np.float32)
    return hashlib.sha256(vec.tobytes()).hexdigest()[:16]


def voice_similarity(a: str, b: str) -> float:
    """Cosine similarity between the voice vectors of two texts."""
    va = voice_features(a)
    vb = voice_features(b)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)
