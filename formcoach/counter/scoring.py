from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional

from formcoach.common.errors import ConfigurationError
from formcoach.common.messages import render

FeedbackLevel = Literal["good", "warning", "error"]
Correction = Literal["up", "down", "forward", "backward", "inward", "outward", "none"]

ERROR_WEIGHT = 1.5  # error-level checkpoints count this much more in the overall score


@dataclass(frozen=True)
class Range:
    min: float
    max: float

    def __post_init__(self):
        if self.min > self.max:
            raise ConfigurationError(f"range min {self.min} > max {self.max}")

    def contains(self, v: float) -> bool:
        return self.min <= v <= self.max


@dataclass(frozen=True)
class Threshold:
    ideal: Range
    acceptable: Range

    def __post_init__(self):
        if self.ideal.min < self.acceptable.min or self.ideal.max > self.acceptable.max:
            raise ConfigurationError("ideal range must sit inside the acceptable range")


def threshold(ideal_min: float, ideal_max: float, acc_min: float, acc_max: float) -> Threshold:
    return Threshold(Range(ideal_min, ideal_max), Range(acc_min, acc_max))


@dataclass(frozen=True)
class FeedbackItem:
    level: FeedbackLevel
    value: float
    message_key: str
    ideal: Range
    acceptable: Range
    correction: Correction = "none"
    params: Mapping[str, Any] = field(default_factory=dict)

    def message(self, locale: str = "en") -> str:
        return render(self.message_key, self.params, locale)

    def to_dict(self, locale: str = "en") -> dict:
        return {
            "level": self.level,
            "value": self.value,
            "message_key": self.message_key,
            "message": self.message(locale),
            "correction": self.correction,
            "params": dict(self.params),
            "ideal": [self.ideal.min, self.ideal.max],
            "acceptable": [self.acceptable.min, self.acceptable.max],
        }


def classify(value: float, th: Threshold) -> FeedbackLevel:
    if th.ideal.contains(value):
        return "good"
    if th.acceptable.contains(value):
        return "warning"
    return "error"


def evaluate(
    value: float,
    th: Threshold,
    key: str,
    low: Correction = "none",
    high: Correction = "none",
    **params: Any,
) -> FeedbackItem:
    """
    Score one checkpoint. The message key gets a suffix from where the value
    sits: `.good`, `.low` (below ideal) or `.high` (above ideal).
    """
    level = classify(value, th)
    if level == "good":
        suffix, corr = "good", "none"
    elif value < th.ideal.min:
        suffix, corr = "low", low
    else:
        suffix, corr = "high", high
    return FeedbackItem(
        level=level,
        value=round(float(value), 1),
        message_key=f"{key}.{suffix}",
        ideal=th.ideal,
        acceptable=th.acceptable,
        correction=corr,
        params=params,
    )


def item_score(item: FeedbackItem) -> int:
    v, ideal, acc = item.value, item.ideal, item.acceptable
    if ideal.contains(v):
        return 100
    if acc.contains(v):
        if v < ideal.min:
            span = ideal.min - acc.min
            ratio = (ideal.min - v) / span if span > 0 else 0.0
        else:
            span = acc.max - ideal.max
            ratio = (v - ideal.max) / span if span > 0 else 0.0
        return int(round(90 - ratio * 30))
    dist = (acc.min - v) if v < acc.min else (v - acc.max)
    return int(round(max(0.0, 60 - dist * 2)))


def overall_score(items: Mapping[str, FeedbackItem], weights: Mapping[str, float]) -> int:
    """Weighted mean of item scores over the checkpoints present this frame."""
    total = 0.0
    wsum = 0.0
    for name, item in items.items():
        w = weights.get(name, 0.0)
        if w <= 0:
            continue
        if item.level == "error":
            w *= ERROR_WEIGHT
        total += item_score(item) * w
        wsum += w
    if wsum <= 0:
        return 100
    return int(round(min(100.0, max(0.0, total / wsum))))


def worst_level(items: Mapping[str, FeedbackItem]) -> Optional[FeedbackLevel]:
    order = {"good": 0, "warning": 1, "error": 2}
    worst = None
    for it in items.values():
        if worst is None or order[it.level] > order[worst]:
            worst = it.level
    return worst
