"""
Keyword-based headline sentiment for providers that do not score their news.
"""

import re
from typing import Iterable, Optional, Tuple

from shared_models.market_data import Sentiment

POSITIVE_WORDS = frozenset({
    'bullish', 'positive', 'gain', 'gains', 'up', 'rise', 'rises', 'growth', 'profit',
    'strong', 'buy', 'upgrade', 'beat', 'beats', 'exceed', 'exceeds', 'good',
    'excellent', 'successful', 'surge', 'rally', 'record',
})

NEGATIVE_WORDS = frozenset({
    'bearish', 'negative', 'loss', 'losses', 'down', 'fall', 'falls', 'decline',
    'weak', 'sell', 'downgrade', 'miss', 'misses', 'poor', 'bad', 'failure',
    'concern', 'risk', 'plunge', 'slump', 'lawsuit',
})

# Fixed magnitude for keyword classification
KEYWORD_SCORE = 0.7

# Dead band around zero for numeric scores
NEUTRAL_BAND = 0.1

_WORD_RE = re.compile(r"[a-z']+")


def analyze_sentiment(*texts: Optional[str]) -> Tuple[Sentiment, float]:
    """
    Classify free text by counting positive and negative keywords.

    Args:
        *texts: Title, summary or any other text; None values are skipped

    Returns:
        Tuple of (sentiment, score) where score is +0.7, -0.7 or 0
    """
    words = _tokenize(t for t in texts if t)
    positive = sum(1 for w in words if w in POSITIVE_WORDS)
    negative = sum(1 for w in words if w in NEGATIVE_WORDS)

    if positive > negative:
        return Sentiment.POSITIVE, KEYWORD_SCORE
    if negative > positive:
        return Sentiment.NEGATIVE, -KEYWORD_SCORE
    return Sentiment.NEUTRAL, 0.0


def classify_score(score: float) -> Sentiment:
    """Map a numeric score in [-1, 1] to a sentiment label."""
    if score > NEUTRAL_BAND:
        return Sentiment.POSITIVE
    if score < -NEUTRAL_BAND:
        return Sentiment.NEGATIVE
    return Sentiment.NEUTRAL


def clamp_score(score: float) -> float:
    return max(-1.0, min(1.0, score))


def _tokenize(texts: Iterable[str]) -> list:
    words = []
    for text in texts:
        words.extend(_WORD_RE.findall(text.lower()))
    return words
