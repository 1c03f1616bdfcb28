"""Lexicon-based sentiment scoring for end-user messages."""

import re
from dataclasses import dataclass, field

POSITIVE_WORDS = frozenset(
    {
        "good", "great", "excellent", "amazing", "wonderful", "fantastic", "awesome",
        "perfect", "love", "like", "happy", "pleased", "satisfied", "helpful", "thank",
        "thanks", "appreciate", "brilliant", "superb", "nice", "best", "beautiful",
        "delighted", "thrilled", "excited", "grateful", "impressive", "outstanding",
        "remarkable", "terrific", "pleasant", "enjoy", "enjoyed", "glad", "fabulous",
    }
)

NEGATIVE_WORDS = frozenset(
    {
        "bad", "terrible", "awful", "horrible", "poor", "worst", "hate", "angry",
        "frustrated", "annoyed", "disappointed", "upset", "unhappy", "dissatisfied",
        "problem", "issue", "broken", "error", "fail", "failed", "failure", "wrong",
        "useless", "stupid", "ridiculous", "absurd", "incompetent", "pathetic",
        "unacceptable", "disgusting", "disgusted", "furious", "outraged", "appalled",
        "dreadful", "atrocious", "abysmal", "defective", "faulty", "inadequate",
        "hopeless", "miserable", "deplorable", "waste", "wasted",
    }
)

INTENSIFIERS = frozenset(
    {
        "very", "really", "extremely", "incredibly", "absolutely", "totally",
        "completely", "utterly", "highly", "deeply", "so", "such", "particularly",
        "especially", "exceptionally",
    }
)

NEGATIONS = frozenset(
    {
        "not", "no", "never", "neither", "nobody", "nothing", "none", "hardly",
        "barely", "doesn't", "don't", "didn't", "isn't", "aren't", "wasn't",
        "weren't", "won't", "wouldn't", "couldn't", "shouldn't", "can't", "cannot",
    }
)

POSITIVE_EMOTICONS = (":)", ":-)", ":D", ":-D", ";)", ";-)", "❤", "👍", "😊", "😀", "🎉")
NEGATIVE_EMOTICONS = (":(", ":-(", ":/", ":-/", "😢", "😞", "😠", "👎", "😡", "😤", "🙁")

INTENSIFIER_WEIGHT = 1.5
EMOTICON_WEIGHT = 0.5

_TOKEN_RE = re.compile(r"[a-z']+")


@dataclass
class SentimentResult:
    score: float  # -1 (very negative) .. 1 (very positive)
    magnitude: float  # 0 .. 1
    label: str
    positive_words: list[str] = field(default_factory=list)
    negative_words: list[str] = field(default_factory=list)


def label_for(score: float) -> str:
    if score <= -0.6:
        return "very_negative"
    if score <= -0.2:
        return "negative"
    if score < 0.2:
        return "neutral"
    if score < 0.6:
        return "positive"
    return "very_positive"


def analyze(text: str) -> SentimentResult:
    """Score a single message.

    A negation flips the polarity of the next sentiment word and an
    intensifier scales it; both reset once a sentiment word is consumed.
    """
    positive = 0.0
    negative = 0.0
    positive_words: list[str] = []
    negative_words: list[str] = []
    weight = 1.0
    negated = False

    for token in _TOKEN_RE.findall((text or "").lower()):
        if token in NEGATIONS:
            negated = True
            continue
        if token in INTENSIFIERS:
            weight = INTENSIFIER_WEIGHT
            continue

        if token in POSITIVE_WORDS:
            polarity = 1
            positive_words.append(token)
        elif token in NEGATIVE_WORDS:
            polarity = -1
            negative_words.append(token)
        else:
            continue

        if negated:
            polarity = -polarity
        if polarity > 0:
            positive += weight
        else:
            negative += weight
        weight = 1.0
        negated = False

    for emoticon in POSITIVE_EMOTICONS:
        if emoticon in (text or ""):
            positive += EMOTICON_WEIGHT
    for emoticon in NEGATIVE_EMOTICONS:
        if emoticon in (text or ""):
            negative += EMOTICON_WEIGHT

    total = positive + negative
    score = (positive - negative) / total if total > 0 else 0.0
    return SentimentResult(
        score=score,
        magnitude=min(1.0, total / 5),
        label=label_for(score),
        positive_words=positive_words,
        negative_words=negative_words,
    )


def rolling_sentiment(previous: float, score: float, smoothing: float) -> float:
    """Fold a new message score into the conversation's running sentiment."""
    smoothing = min(max(smoothing, 0.0), 1.0)
    value = (1 - smoothing) * (previous or 0.0) + smoothing * score
    return max(-1.0, min(1.0, value))
