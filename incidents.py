# incidents.py
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


# ============================================================
# INCIDENT TYPES (FORM LABEL -> CANONICAL KEY)
# ============================================================
GENERAL_CONTACT = "general contact"

INCIDENT_TYPES: Dict[str, str] = {
    "Divebomb / Late lunge": "divebomb",
    "Weave / Block / Defending move": "weave block",
    "Unsafe rejoin": "unsafe rejoin",
    "Vortex exit / Draft lift-off": "vortex exit",
    "Vortex of Danger": "vortex exit",
    "Netcode / Lag / Teleport": "netcode",
    "Used as a barrier / Squeeze": "used as barrier",
    "Pit-lane incident": "pit-lane incident",
    "Start-line chaos / T1 pile-up": "t1 chaos",
    "Intentional wreck / Revenge": "intentional wreck",
    "Racing incident (no fault)": "racing incident",
    "Crowd-strike / Accordion effect": "accordion",
    "Blocking while being lapped": "blue flag",
    "Blue-flag violation / Ignoring blue flags": "blue flag",
    "Brake test": "brake test",
    "Brake check": "brake test",
    "Cutting the track / Track limits abuse": "track limits",
    "Move under braking": "weave block",
    "Over-aggressive defense (2+ moves)": "weave block",
    "Punt / Rear-end under braking": "punt",
    "Re-entry after off-track (gaining advantage)": "unsafe rejoin",
    "Side-by-side contact mid-corner": "side-by-side contact",
    "Track rejoin blocking racing line": "unsafe rejoin",
    "Pit Lane Speeding / Unsafe Release": "pit-lane incident",
    "Wall Ride / Rebound into Traffic": "wall ride",
    "Bump and Run / Rubbin' is Racin'": "punt",
    "Pack Racing Chaos / Big One": "t1 chaos",
}

# Title / notes keywords, checked in order. First hit wins.
KEYWORD_KEYS: List[Tuple[str, Tuple[str, ...]]] = [
    ("intentional wreck", ("intentional", "revenge", "on purpose", "wrecked me")),
    ("netcode", ("netcode", "lagged", "lagging", "lag spike", "teleport", "desync")),
    ("unsafe rejoin", ("unsafe rejoin", "rejoin", "rejoined")),
    ("divebomb", ("divebomb", "dive bomb", "dive-bomb", "lunge", "sent it")),
    ("brake test", ("brake test", "brake check", "brake-test", "brake-check")),
    ("weave block", ("weave", "weaving", "blocking", "block", "move under braking")),
    ("used as barrier", ("barrier", "squeeze", "squeezed")),
    ("punt", ("punt", "punting", "rear-end", "rear end", "bump and run")),
    ("t1 chaos", ("t1", "turn 1", "turn one", "first lap", "pile-up", "pileup", "big one")),
    ("pit-lane incident", ("pit lane", "pit-lane", "pit exit", "unsafe release")),
    ("vortex exit", ("vortex", "lift-off", "draft")),
    ("track limits", ("track limits", "cutting", "cut the track")),
    ("blue flag", ("blue flag", "lapped", "backmarker")),
    ("racing incident", ("racing incident", "50/50", "no fault")),
]


def resolve_incident_key(label: Optional[str], text: Optional[str] = None) -> str:
    """
    Map a form label (or a raw key) to its canonical incident key.
    Falls back to keyword classification of `text`, then to general contact.
    """
    raw = (label or "").strip()
    if raw in INCIDENT_TYPES:
        return INCIDENT_TYPES[raw]

    lowered = raw.lower()
    for known_label, key in INCIDENT_TYPES.items():
        if lowered == known_label.lower() or lowered == key:
            return key

    derived = derive_incident_key(text)
    if derived:
        return derived

    return GENERAL_CONTACT


def derive_incident_key(text: Optional[str]) -> Optional[str]:
    lower = (text or "").lower()
    if not lower.strip():
        return None
    for key, keywords in KEYWORD_KEYS:
        if any(k in lower for k in keywords):
            return key
    return None


def label_for_key(key: str) -> Optional[str]:
    for label, k in INCIDENT_TYPES.items():
        if k == key:
            return label
    return None


# ============================================================
# RULE TABLE (PRIORITY ORDER, FIRST MATCH WINS)
# ============================================================
@dataclass(frozen=True)
class FaultRule:
    name: str
    keywords: Tuple[str, ...]
    fault: int  # Car A share
    citation: str

    def matches(self, text: str) -> bool:
        return any(k in text for k in self.keywords)


FAULT_RULES: Tuple[FaultRule, ...] = (
    FaultRule(
        name="Intentional contact",
        keywords=("intentional", "revenge", "on purpose", "retaliat"),
        fault=95,
        citation="Deliberate contact is never a racing incident.",
    ),
    FaultRule(
        name="Unsafe rejoin",
        keywords=("unsafe rejoin", "rejoin", "re-entry", "rejoined"),
        fault=90,
        citation="A car rejoining the track must yield to traffic already on the racing line.",
    ),
    FaultRule(
        name="Late lunge",
        keywords=("divebomb", "dive bomb", "dive-bomb", "lunge", "late move"),
        fault=85,
        citation="The overtaking car must establish overlap before the turn-in point.",
    ),
    FaultRule(
        name="Brake test",
        keywords=("brake test", "brake check", "brake-test", "brake-check"),
        fault=85,
        citation="Braking abnormally early to unsettle a following car is unsportsmanlike.",
    ),
    FaultRule(
        name="Rear-end contact",
        keywords=("punt", "rear-end", "rear end", "rear-ended", "bump and run"),
        fault=80,
        citation="The following car is responsible for avoiding the car ahead under braking.",
    ),
    FaultRule(
        name="Used as a barrier",
        keywords=("barrier", "squeeze", "squeezed"),
        fault=80,
        citation="A car may not use another car to slow down or hold its line.",
    ),
    FaultRule(
        name="Blocking",
        keywords=("weave", "weaving", "blocking", "block", "move under braking", "two moves", "2+ moves"),
        fault=75,
        citation="One defensive move is allowed; moving under braking is not.",
    ),
    FaultRule(
        name="Blue flags",
        keywords=("blue flag", "lapped", "backmarker"),
        fault=70,
        citation="A lapped car must let faster traffic through predictably.",
    ),
    FaultRule(
        name="Track limits",
        keywords=("track limits", "cutting", "cut the track"),
        fault=70,
        citation="An advantage gained off track must be given back.",
    ),
    FaultRule(
        name="Connection issues",
        keywords=("netcode", "lagged", "lagging", "lag spike", "teleport", "desync"),
        fault=50,
        citation="Contact caused by netcode is treated as a racing incident.",
    ),
    FaultRule(
        name="Racing incident",
        keywords=("racing incident", "50/50", "no fault"),
        fault=50,
        citation="Neither driver is predominantly to blame.",
    ),
)


def match_rule(text: Optional[str]) -> Optional[FaultRule]:
    lower = (text or "").lower()
    if not lower.strip():
        return None
    for rule in FAULT_RULES:
        if rule.matches(lower):
            return rule
    return None


# ============================================================
# HEURISTIC PRIORS (INCIDENT KEY -> CAR A FAULT)
# ============================================================
HEURISTIC_FAULTS: Dict[str, int] = {
    "divebomb": 80,
    "weave block": 70,
    "unsafe rejoin": 85,
    "vortex exit": 65,
    "netcode": 50,
    "used as barrier": 75,
    "pit-lane incident": 70,
    "t1 chaos": 55,
    "intentional wreck": 95,
    "racing incident": 50,
    "accordion": 55,
    "blue flag": 65,
    "brake test": 85,
    "track limits": 70,
    "punt": 80,
    "side-by-side contact": 55,
    "wall ride": 70,
}


def heuristic_fault(key: Optional[str]) -> Optional[int]:
    if not key:
        return None
    return HEURISTIC_FAULTS.get(key)


# ============================================================
# CAR ROLES
# ============================================================
CAR_ROLES: Dict[str, Tuple[str, str]] = {
    "weave block": ("the defending car", "the overtaking car"),
    "unsafe rejoin": ("the rejoining car", "the on-track car"),
    "netcode": ("the teleporting car", "the affected car"),
    "used as barrier": ("the car using another as a barrier", "the car used as a barrier"),
    "intentional wreck": ("the aggressor", "the victim"),
    "brake test": ("the braking car", "the following car"),
    "punt": ("the following car", "the car ahead"),
    "racing incident": ("Car A", "Car B"),
}

DEFAULT_ROLES = ("the overtaking car", "the defending car")


def car_roles(key: Optional[str]) -> Tuple[str, str]:
    return CAR_ROLES.get(key or "", DEFAULT_ROLES)


def car_identification(key: Optional[str], car_a: str = "", car_b: str = "") -> str:
    role_a, role_b = car_roles(key)
    ident_a = f" ({car_a.strip()})" if car_a and car_a.strip() else ""
    ident_b = f" ({car_b.strip()})" if car_b and car_b.strip() else ""
    return f"Car A{ident_a} is {role_a}. Car B{ident_b} is {role_b}."
