"""
Emergency triage over free-text issue notes.

Three tiers: life-threatening (immediate dispatch), urgent (search today with
the short lead time) and routine. A rule is one or more patterns that must all
appear; a multi-pattern rule like "no heat" + "freezing" is reported as a
single match and its parts are not counted again on their own.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple


class TriageLevel(Enum):
    LIFE_THREATENING = "life_threatening"
    URGENT = "urgent"
    ROUTINE = "routine"


@dataclass(frozen=True)
class TriageRule:
    label: str
    patterns: Tuple[str, ...]

    def matches(self, text: str) -> bool:
        return all(re.search(p, text) for p in self.patterns)


def _rule(label: str, *patterns: str) -> TriageRule:
    return TriageRule(label, patterns or (r"\b" + re.escape(label) + r"\b",))


LIFE_THREATENING_RULES = [
    _rule("gas leak", r"\bgas\s*leak"),
    _rule("gas smell", r"\b(smell(s|ing)?\s+(of\s+)?gas|gas\s+smell)\b"),
    _rule("carbon monoxide", r"\b(carbon\s+monoxide|co\s+(alarm|detector))\b"),
    _rule("electrical fire", r"\b(electrical|electric)\s+fire\b"),
    _rule("burst main", r"\b(burst|broken)\s+(water\s+)?main\b|\bwater\s+main\s+(break|burst)\b"),
    _rule("active flooding", r"\b(active(ly)?\s+flooding|house\s+is\s+flooding|basement\s+is\s+flooding)\b"),
    _rule("sparking + smoke", r"\bspark(s|ing)?\b", r"\bsmok(e|ing)\b"),
]

TRADE_RULES = {
    "plumbing": [
        _rule("burst pipe", r"\b(burst|broken|busted)\s+pipe"),
        _rule("flooding"),
        _rule("water everywhere"),
        _rule("sewage backup", r"\bsewage\s+(back\s*up|backing\s+up)"),
        _rule("no water"),
        _rule("actively leaking"),
        _rule("gushing water", r"\bgushing\b"),
        _rule("overflowing"),
    ],
    "hvac": [
        _rule("no heat + freezing", r"\bno\s+heat\b", r"\bfreez(e|ing)\b"),
        _rule("no heat"),
        _rule("furnace down", r"\bfurnace\s+(is\s+)?(down|not\s+working|broke|out)\b"),
        _rule("heat not working", r"\bheat(er)?\s+(is\s+)?not\s+working\b"),
        _rule("no ac + heat wave", r"\bno\s+(ac|a/c|air\s+conditioning)\b", r"\bheat\s*wave\b"),
        _rule("burning smell", r"\bburning\s+(smell|odor)\b"),
    ],
    "electrical": [
        _rule("sparking", r"\bspark(s|ing)?\b"),
        _rule("smoke", r"\bsmok(e|ing)\b"),
        _rule("burning smell", r"\bburning\s+(smell|odor)\b"),
        _rule("electric shock", r"\b(electric(al)?\s+)?shock(ed)?\b"),
        _rule("no power", r"\bno\s+power\b"),
        _rule("exposed wires", r"\bexposed\s+wir(es|ing)\b"),
        _rule("hot outlet", r"\bhot\s+(outlet|panel|switch)\b"),
        _rule("arcing"),
    ],
}

GENERAL_RULES = [
    _rule("emergency"),
    _rule("urgent"),
    _rule("asap", r"\b(asap|right\s+away|immediately)\b"),
]


@dataclass
class TriageResult:
    level: TriageLevel
    matched: List[str] = field(default_factory=list)
    trade: str = "general"

    @property
    def is_emergency(self) -> bool:
        return self.level != TriageLevel.ROUTINE

    @property
    def immediate_dispatch(self) -> bool:
        return self.level == TriageLevel.LIFE_THREATENING

    def as_dict(self) -> dict:
        return {"level": self.level.value, "matched": list(self.matched), "trade": self.trade}


def rules_for_trade(trade: Optional[str]) -> List[TriageRule]:
    trade = (trade or "general").lower()
    if trade in TRADE_RULES:
        return TRADE_RULES[trade] + GENERAL_RULES
    rules: List[TriageRule] = []
    seen = set()
    for trade_rules in TRADE_RULES.values():
        for rule in trade_rules:
            if rule.label not in seen:
                seen.add(rule.label)
                rules.append(rule)
    return rules + GENERAL_RULES


def _match(rules: Sequence[TriageRule], text: str, consumed: set) -> List[str]:
    matched = []
    for rule in rules:
        if rule.label in consumed or not rule.matches(text):
            continue
        matched.append(rule.label)
        # Parts of a combined rule are not matched again on their own.
        for part in rule.label.split(" + "):
            consumed.add(part)
        consumed.add(rule.label)
    return matched


def triage(
    notes: Optional[str],
    trade: Optional[str] = "general",
    extra_keywords: Iterable[str] = (),
) -> TriageResult:
    trade = (trade or "general").lower()
    text = (notes or "").lower()
    if not text.strip():
        return TriageResult(TriageLevel.ROUTINE, [], trade)

    consumed: set = set()
    critical = _match(LIFE_THREATENING_RULES, text, consumed)
    urgent = _match(rules_for_trade(trade), text, consumed)
    urgent += _match([_rule(k.lower()) for k in extra_keywords if k], text, consumed)

    if critical:
        return TriageResult(TriageLevel.LIFE_THREATENING, critical + urgent, trade)
    if urgent:
        return TriageResult(TriageLevel.URGENT, urgent, trade)
    return TriageResult(TriageLevel.ROUTINE, [], trade)
