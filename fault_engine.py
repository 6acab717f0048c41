# fault_engine.py
import logging
import math
import os
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from incidents import FaultRule, heuristic_fault, match_rule

logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================
TOP_K = 5
TERM_WEIGHT = 3
KEY_BONUS = 10
PHRASE_BONUS = 8
MIN_TERM_LENGTH = 3

CONFIDENCE_LOW = "Low"
CONFIDENCE_MEDIUM = "Medium"
CONFIDENCE_HIGH = "High"
CONFIDENCE_VERY_HIGH = "Very High"
CONFIDENCE_OVERRIDE = "Human Override"

# Ordered ladder used for rule escalation.
CONFIDENCE_LADDER = (
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    CONFIDENCE_HIGH,
    CONFIDENCE_VERY_HIGH,
)


class FaultMode(str, Enum):
    OVERRIDE = "override"
    PRECEDENT = "precedent"
    RULES = "rules"


@dataclass(frozen=True)
class EngineConfig:
    fault_min: int = 5
    fault_max: int = 98
    default_fault: int = 60       # no valid precedent fault values
    neutral_fault: int = 50       # missing rule / heuristic signal
    baseline_fault: int = 50      # blended against the precedent average
    dataset_weight: float = 0.7
    csv_weight: float = 0.4
    rule_weight: float = 0.4
    heuristic_weight: float = 0.2
    top_k: int = TOP_K

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            fault_min=int(os.getenv("FAULT_MIN", "5")),
            fault_max=int(os.getenv("FAULT_MAX", "98")),
            default_fault=int(os.getenv("FAULT_DEFAULT", "60")),
            baseline_fault=int(os.getenv("FAULT_BASELINE", "50")),
            dataset_weight=float(os.getenv("FAULT_DATASET_WEIGHT", "0.7")),
            top_k=int(os.getenv("PRECEDENT_TOP_K", str(TOP_K))),
        )


# ============================================================
# DATA MODEL
# ============================================================
@dataclass(frozen=True)
class IncidentRecord:
    title: str = ""
    reason: str = ""
    ruling: str = ""
    fault_pct_driver_a: Optional[float] = None
    thread: Optional[str] = None
    search_text: str = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        text = f"{self.title} {self.reason} {self.ruling}".lower()
        object.__setattr__(self, "search_text", text)

    @property
    def usable(self) -> bool:
        return bool(self.title.strip() or self.reason.strip())


@dataclass(frozen=True)
class IncidentQuery:
    free_text: str = ""
    incident_key: Optional[str] = None
    incident_label: Optional[str] = None
    manual_override_fault: Optional[float] = None

    @property
    def rule_text(self) -> str:
        # category labels feed the heuristic prior, not the rule table
        return (self.free_text or "").lower()


@dataclass(frozen=True)
class MatchResult:
    record: IncidentRecord
    score: int

    def as_dict(self) -> Dict[str, Any]:
        fault = self.record.fault_pct_driver_a
        return {
            "title": self.record.title,
            "reason": self.record.reason,
            "ruling": self.record.ruling,
            "faultA": None if fault is None else round_half_up(fault),
            "thread": self.record.thread,
            "score": self.score,
        }


@dataclass(frozen=True)
class FaultEstimate:
    fault_a: int
    confidence: str
    mode: FaultMode
    rule: Optional[FaultRule] = None
    heuristic_fault: Optional[int] = None

    @property
    def fault_b(self) -> int:
        return 100 - self.fault_a

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fault_a": self.fault_a,
            "fault_b": self.fault_b,
            "confidence": self.confidence,
            "mode": self.mode.value,
            "rule": self.rule.name if self.rule else None,
            "rule_citation": self.rule.citation if self.rule else None,
            "heuristic_fault": self.heuristic_fault,
        }


@dataclass(frozen=True)
class FaultAnalysis:
    estimate: FaultEstimate
    matches: Tuple[MatchResult, ...] = ()


# ============================================================
# HELPERS
# ============================================================
def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def clamp(x: int, low: int, high: int) -> int:
    return max(low, min(high, x))


def parse_fault(raw: Any) -> Optional[float]:
    """
    Normalize a fault percentage cell. Missing, non-numeric, NaN or
    out-of-range values become None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(str(raw).strip().rstrip("%"))
    except ValueError:
        return None
    if math.isnan(value) or value < 0 or value > 100:
        return None
    return value


def tokenize(text: Optional[str]) -> List[str]:
    terms: List[str] = []
    for raw in (text or "").lower().split():
        term = raw.strip(string.punctuation)
        if len(term) < MIN_TERM_LENGTH or term in terms:
            continue
        terms.append(term)
    return terms


# ============================================================
# LEXICAL SCORER
# ============================================================
def score_record(
    query_terms: Sequence[str],
    candidate_text: str,
    incident_key: Optional[str] = None,
    incident_label: Optional[str] = None,
    phrase: Optional[str] = None,
) -> int:
    """
    Substring overlap score. No length normalization: long rulings are
    not penalized.
    """
    text = candidate_text or ""
    score = 0

    for term in query_terms:
        if term and term in text:
            score += TERM_WEIGHT

    aliases = [a.strip().lower() for a in (incident_key, incident_label) if a and a.strip()]
    if any(a in text for a in aliases):
        score += KEY_BONUS

    full = (phrase or "").strip().lower()
    if len(full) >= MIN_TERM_LENGTH and full in text:
        score += PHRASE_BONUS

    return score


# ============================================================
# PRECEDENT MATCHER
# ============================================================
def match_precedents(
    query: IncidentQuery,
    corpus: Sequence[IncidentRecord],
    k: int = TOP_K,
) -> Tuple[MatchResult, ...]:
    if corpus is None:
        raise TypeError("corpus must be a sequence of IncidentRecord, not None")
    if k < 0:
        raise ValueError(f"k must be >= 0, got {k}")

    terms = tokenize(query.free_text)
    if not terms and not query.incident_key and not query.incident_label:
        return ()

    scored: List[MatchResult] = []
    for record in corpus:
        if not record.usable:
            continue
        score = score_record(
            terms,
            record.search_text,
            incident_key=query.incident_key,
            incident_label=query.incident_label,
            phrase=query.free_text,
        )
        if score > 0:
            scored.append(MatchResult(record=record, score=score))

    # sorted() is stable: equal scores keep corpus order
    scored = sorted(scored, key=lambda m: m.score, reverse=True)
    return tuple(scored[:k])


# ============================================================
# FAULT ESTIMATOR
# ============================================================
def precedent_average(matches: Sequence[MatchResult]) -> Optional[float]:
    faults = [m.record.fault_pct_driver_a for m in matches if m.record.fault_pct_driver_a is not None]
    if not faults:
        return None
    return sum(faults) / len(faults)


def confidence_for(match_count: int, rule_matched: bool = False) -> str:
    """
    0 -> Low, 1-2 -> Medium, 3 -> High, 4+ -> Very High.
    A rule match lifts one tier, but only up to High.
    """
    if match_count >= 4:
        tier = 3
    elif match_count == 3:
        tier = 2
    elif match_count >= 1:
        tier = 1
    else:
        tier = 0

    if rule_matched and tier < 2:
        tier += 1

    return CONFIDENCE_LADDER[tier]


def _precedent_fault(matches: Sequence[MatchResult], config: EngineConfig) -> int:
    avg = precedent_average(matches)
    if avg is None:
        return config.default_fault
    blended = avg * config.dataset_weight + config.baseline_fault * (1 - config.dataset_weight)
    return round_half_up(blended)


def _rules_fault(
    query: IncidentQuery,
    matches: Sequence[MatchResult],
    config: EngineConfig,
) -> Tuple[int, Optional[FaultRule], Optional[int]]:
    avg = precedent_average(matches)
    csv_signal = config.default_fault if avg is None else avg

    rule = match_rule(query.rule_text)
    rule_signal = rule.fault if rule else config.neutral_fault

    prior = heuristic_fault(query.incident_key)
    heuristic_signal = config.neutral_fault if prior is None else prior

    if avg is None and rule is None:
        # no precedent fault and no rule: configured default
        return config.default_fault, None, prior

    blended = (
        csv_signal * config.csv_weight
        + rule_signal * config.rule_weight
        + heuristic_signal * config.heuristic_weight
    )
    return round_half_up(blended), rule, prior


def estimate_fault(
    query: IncidentQuery,
    corpus: Sequence[IncidentRecord],
    mode: FaultMode = FaultMode.RULES,
    config: Optional[EngineConfig] = None,
) -> FaultAnalysis:
    """
    Single entry point for the fault split.

    A manual override always wins and skips matching. Otherwise the corpus
    is ranked and the precedent (or rules) blend is clamped to the
    configured band.
    """
    config = config or EngineConfig()
    mode = FaultMode(mode)

    if query.manual_override_fault is not None:
        fault_a = round_half_up(float(query.manual_override_fault))
        logger.info("FAULT_OVERRIDE fault_a=%s", fault_a)
        return FaultAnalysis(
            estimate=FaultEstimate(
                fault_a=fault_a,
                confidence=CONFIDENCE_OVERRIDE,
                mode=FaultMode.OVERRIDE,
            ),
        )

    if mode is FaultMode.OVERRIDE:
        logger.warning("FAULT_OVERRIDE_MISSING falling back to precedent mode")
        mode = FaultMode.PRECEDENT

    matches = match_precedents(query, corpus, k=config.top_k)

    rule: Optional[FaultRule] = None
    prior: Optional[int] = None
    if mode is FaultMode.RULES:
        fault_a, rule, prior = _rules_fault(query, matches, config)
    else:
        fault_a = _precedent_fault(matches, config)

    fault_a = clamp(fault_a, config.fault_min, config.fault_max)
    confidence = confidence_for(len(matches), rule_matched=rule is not None)

    logger.debug(
        "FAULT_ESTIMATE mode=%s matches=%d fault_a=%d confidence=%s",
        mode.value, len(matches), fault_a, confidence,
    )

    return FaultAnalysis(
        estimate=FaultEstimate(
            fault_a=fault_a,
            confidence=confidence,
            mode=mode,
            rule=rule,
            heuristic_fault=prior,
        ),
        matches=matches,
    )
