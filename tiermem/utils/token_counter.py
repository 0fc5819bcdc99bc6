"""
Token estimation helpers used when callers do not supply token counts.
"""

import math
import re

_PUNCTUATION = re.compile(r'[.,!?;:"\'()-]')


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a text.

    Roughly 0.75 tokens per whitespace-separated word plus one token per
    punctuation mark.

    Args:
        text: Text to estimate

    Returns:
        Estimated token count
    """
    if not text:
        return 0
    words = text.split()
    punctuation = len(_PUNCTUATION.findall(text))
    return math.ceil(len(words) * 0.75 + punctuation)


def estimate_cost(tokens: int, price_per_token: float) -> float:
    return tokens * price_per_token
