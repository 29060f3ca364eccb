from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence, Set


@dataclass(frozen=True)
class TopicRule:
    """A topic tag matched when any pattern hits and every required pattern hits."""

    tag: str
    any_of: Sequence[str]
    all_of: Sequence[str] = ()
    _any: List[re.Pattern] = field(default_factory=list, init=False, repr=False, compare=False)
    _all: List[re.Pattern] = field(default_factory=list, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._any.extend(_word(p) for p in self.any_of)
        self._all.extend(_word(p) for p in self.all_of)

    def matches(self, text: str) -> bool:
        if not any(p.search(text) for p in self._any):
            return False
        return all(p.search(text) for p in self._all)


def _word(phrase: str) -> re.Pattern:
    # Whole words only, so "eth" never fires on "whether".
    return re.compile(rf"\b{re.escape(phrase)}\b", re.IGNORECASE)


DEFAULT_RULES: List[TopicRule] = [
    # crypto assets
    TopicRule("bitcoin", ["bitcoin", "btc"]),
    TopicRule("ethereum", ["ethereum", "eth", "ether"]),
    TopicRule("solana", ["solana", "sol"]),
    TopicRule("crypto", ["crypto", "cryptocurrency", "cryptocurrencies"]),
    # companies
    TopicRule("lighter", ["lighter"]),
    TopicRule("nvidia", ["nvidia"]),
    TopicRule("tesla", ["tesla"]),
    TopicRule("apple", ["apple"]),
    TopicRule("google", ["google", "alphabet"]),
    TopicRule("microsoft", ["microsoft"]),
    TopicRule("amazon", ["amazon"]),
    # geopolitics
    TopicRule("russia-ukraine", ["russia", "russian", "ukraine", "ukrainian"]),
    TopicRule("venezuela", ["venezuela", "venezuelan"]),
    TopicRule("china", ["china", "chinese", "taiwan"]),
    TopicRule("iran", ["iran", "iranian"]),
    # sports
    TopicRule("superbowl", ["super bowl", "superbowl"]),
    # commodities
    TopicRule("gold", ["gold"]),
    TopicRule("oil", ["oil", "crude"]),
    TopicRule("silver", ["silver"]),
    # elections
    TopicRule("portugal-election", ["portugal", "portuguese"], all_of=["election"]),
    # monetary policy
    TopicRule("fed", ["fed", "federal reserve", "fomc", "interest rate", "interest rates"]),
]


class TopicClassifier:
    """Maps a market question to the set of topic tags it mentions."""

    def __init__(self, rules: Iterable[TopicRule] = DEFAULT_RULES) -> None:
        self.rules = list(rules)

    def classify(self, question: str) -> Set[str]:
        if not question:
            return set()
        return {rule.tag for rule in self.rules if rule.matches(question)}

    def tags_in_order(self, question: str) -> List[str]:
        """Tags in rule order, for stable error messages."""
        found = self.classify(question)
        return [rule.tag for rule in self.rules if rule.tag in found]

    def extend(self, *rules: TopicRule) -> "TopicClassifier":
        return TopicClassifier([*self.rules, *rules])


DEFAULT_CLASSIFIER = TopicClassifier()
