"""
Post-call confidence scoring.

Runs over a finished call transcript and decides whether a human should follow
up, independently of whether a booking was made. Confusion markers, repeated
clarification requests and panic language each pull the score down.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union


class ConfidenceLevel(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"


@dataclass
class ConfidenceResult:
    score: float
    level: ConfidenceLevel
    needs_escalation: bool
    reasons: List[str] = field(default_factory=list)
    signals: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "score": round(self.score, 3),
            "level": self.level.value,
            "needs_escalation": self.needs_escalation,
            "reasons": list(self.reasons),
            "signals": dict(self.signals),
        }


Turn = Dict[str, str]
Transcript = Union[str, Sequence[Turn]]


class ConfidenceEngine:
    """Scores how well a call went from the caller's side of the transcript."""

    def __init__(self, threshold: float = 0.5):
        self.threshold = threshold
        self.thresholds = {
            "high": 0.85,
            "medium": 0.65,
            "low": 0.45,
        }

        self.confusion_indicators = [
            "what do you mean", "i don't understand", "i dont understand",
            "can you repeat", "say that again", "confused", "sorry what",
            "pardon", "come again", "that doesn't make sense",
        ]

        # Agent-side phrases that mean it had to ask again.
        self.clarification_indicators = [
            "could you repeat", "can you repeat", "i didn't catch", "i didn't quite catch",
            "could you say that again", "could you please confirm", "just to clarify",
            "sorry, could you", "one more time",
        ]

        self.panic_indicators = [
            "help me", "oh my god", "please hurry", "panicking", "scared",
            "terrified", "can't breathe", "cant breathe", "someone is hurt", "dying",
        ]

        self.frustration_indicators = [
            "talk to a human", "real person", "speak to someone", "representative",
            "this isn't working", "this is ridiculous", "frustrated", "useless",
        ]

        self.weights = {
            "confusion": 0.1,
            "clarification": 0.15,
            "panic": 0.2,
            "frustration": 0.15,
        }
        self.caps = {
            "confusion": 0.4,
            "clarification": 0.45,
            "panic": 0.6,
            "frustration": 0.3,
        }

    def score_call(self, transcript: Transcript, threshold: Optional[float] = None) -> ConfidenceResult:
        """Score a finished call. `transcript` is raw text or a list of {role, text} turns."""
        threshold = self.threshold if threshold is None else threshold
        caller_lines, agent_lines = self._split_turns(transcript)
        caller_text = " \n".join(caller_lines).lower()
        agent_text = " \n".join(agent_lines).lower()

        signals = {
            "confusion": self._count(caller_text, self.confusion_indicators),
            "clarification": self._count(agent_text, self.clarification_indicators)
            + self._repeated_utterances(caller_lines),
            "panic": self._count(caller_text, self.panic_indicators),
            "frustration": self._count(caller_text, self.frustration_indicators),
        }

        score = 1.0
        reasons = []
        for name, count in signals.items():
            # One clarification is normal conversation.
            effective = count - 1 if name == "clarification" else count
            if effective <= 0:
                continue
            penalty = min(self.caps[name], effective * self.weights[name])
            score -= penalty
            reasons.append(f"{name} x{count} (-{penalty:.2f})")

        score = max(0.0, min(1.0, score))
        return ConfidenceResult(
            score=score,
            level=self._get_level(score),
            needs_escalation=score < threshold,
            reasons=reasons,
            signals=signals,
        )

    def _split_turns(self, transcript: Transcript) -> Tuple[List[str], List[str]]:
        if transcript is None:
            return [], []
        if isinstance(transcript, str):
            caller, agent = [], []
            for line in transcript.splitlines():
                match = re.match(r"\s*(user|caller|customer|assistant|agent|ai|bot)\s*:\s*(.*)", line, re.IGNORECASE)
                if not match:
                    if line.strip():
                        caller.append(line.strip())
                    continue
                role, text = match.group(1).lower(), match.group(2)
                (caller if role in ("user", "caller", "customer") else agent).append(text)
            return caller, agent

        caller, agent = [], []
        for turn in transcript:
            role = (turn.get("role") or "user").lower()
            text = turn.get("text") or turn.get("content") or ""
            (caller if role in ("user", "caller", "customer") else agent).append(text)
        return caller, agent

    def _count(self, text: str, indicators: Sequence[str]) -> int:
        return sum(len(re.findall(r"\b" + re.escape(ind) + r"\b", text)) for ind in indicators)

    def _repeated_utterances(self, lines: Sequence[str]) -> int:
        """Caller saying the same thing again is an implicit clarification round."""
        seen = set()
        repeats = 0
        for line in lines:
            normalized = re.sub(r"[^a-z0-9 ]", "", line.lower()).strip()
            if len(normalized.split()) < 3:
                continue
            if normalized in seen:
                repeats += 1
            seen.add(normalized)
        return repeats

    def _get_level(self, score: float) -> ConfidenceLevel:
        """Convert numeric score to confidence level."""
        if score >= self.thresholds["high"]:
            return ConfidenceLevel.HIGH
        elif score >= self.thresholds["medium"]:
            return ConfidenceLevel.MEDIUM
        elif score >= self.thresholds["low"]:
            return ConfidenceLevel.LOW
        else:
            return ConfidenceLevel.VERY_LOW


confidence_engine = ConfidenceEngine()
