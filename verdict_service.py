# verdict_service.py
import asyncio
import json
import logging
import os
import random
from typing import Any, Dict, List, Optional

import httpx
from openai import OpenAI

from fault_engine import FaultAnalysis
from incidents import car_identification

logger = logging.getLogger(__name__)


# ============================================================
# ENV / CONFIG
# ============================================================
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLM_MAX_ATTEMPTS = int(os.getenv("LLM_MAX_ATTEMPTS", "3"))
LLM_BACKOFF_SECONDS = float(os.getenv("LLM_BACKOFF_SECONDS", "1.0"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.8"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "700"))

TIPS_PATH = os.getenv("TIPS_PATH", os.path.join("public", "tips.txt"))
DEFAULT_TIP = "Both drivers can improve situational awareness."
DEFAULT_RULE = "iRacing Sporting Code / ACC Regulations"

# Retries are ours; the SDK's own retry loop is disabled.
client = (
    OpenAI(
        api_key=OPENAI_API_KEY,
        base_url=LLM_BASE_URL or None,
        timeout=httpx.Timeout(LLM_TIMEOUT_SECONDS, connect=5.0),
        max_retries=0,
    )
    if OPENAI_API_KEY
    else None
)


# ============================================================
# TIPS
# ============================================================
def load_tips(path: Optional[str] = None) -> List[str]:
    """
    Lines look like `tip text | tag, tag`. Comments and lines without a
    `|` are ignored.
    """
    try:
        with open(path or TIPS_PATH, encoding="utf-8") as fh:
            lines = [line.strip() for line in fh]
    except OSError as e:
        logger.warning("TIPS_UNAVAILABLE %s", e)
        return []
    return [line for line in lines if line and not line.startswith("#") and "|" in line]


def pick_tip(
    tips: List[str],
    incident_key: Optional[str],
    description: str = "",
    rng: Optional[random.Random] = None,
) -> str:
    rng = rng or random.Random()
    if not tips:
        return DEFAULT_TIP

    key = (incident_key or "").lower()
    words = (description or "").lower().split()
    first_word = words[0] if words and len(words[0]) > 2 else ""

    candidates = [
        line for line in tips
        if (key and key in line.lower()) or (first_word and first_word in line.lower())
    ]
    pool = candidates or tips
    return rng.choice(pool).split("|")[0].strip() or DEFAULT_TIP


# ============================================================
# PROMPT
# ============================================================
def _precedent_lines(analysis: FaultAnalysis, limit: int = 3) -> str:
    lines = []
    for m in analysis.matches[:limit]:
        fault = m.record.fault_pct_driver_a
        fault_txt = f"{fault:.0f}%" if fault is not None else "n/a"
        lines.append(
            f'- "{m.record.title}" | ruling: {m.record.ruling or "n/a"} | Car A fault: {fault_txt}'
        )
    return "\n".join(lines) if lines else "- none found"


def build_prompt(context: Dict[str, Any], analysis: FaultAnalysis) -> str:
    est = analysis.estimate
    label = context.get("incident_type") or "incident"
    car_a = context.get("car_a") or ""
    car_b = context.get("car_b") or ""
    ident_a = f" ({car_a})" if car_a else ""
    ident_b = f" ({car_b})" if car_b else ""
    identification = car_identification(context.get("incident_key"), car_a, car_b)

    description = context.get("description") or ""
    user_context = f'Human description: "{description}"\n' if description else ""
    series = context.get("series") or ""
    series_line = f"Series / game: {series}\n" if series else ""
    rule_line = f"Relevant rule: {est.rule.name} — {est.rule.citation}\n" if est.rule else ""

    return f"""You are a senior, neutral sim-racing steward.

Video URL: {context.get("url") or "n/a"}
Incident type: {label}
{series_line}{user_context}{rule_line}
Car roles: {identification}
Suggested fault: Car A {est.fault_a}%, Car B {est.fault_b}%
Confidence: {est.confidence}

Precedents:
{_precedent_lines(analysis)}

Write a unique, calm, educational verdict in 3–5 sentences.
Start with: "In this {label.lower()}..."
Use Car A{ident_a} and Car B{ident_b} throughout.
Include one actionable lesson.

Return ONLY valid JSON:
{{
  "rule": "relevant rule",
  "explanation": "3–5 unique sentences",
  "overtake_tip": "specific tip for Car A{ident_a}",
  "defend_tip": "specific tip for Car B{ident_b}",
  "spotter_advice": {{ "overtaker": "tip", "defender": "tip" }}
}}"""


# ============================================================
# FALLBACK + PARSING
# ============================================================
def fallback_verdict(context: Dict[str, Any], analysis: FaultAnalysis) -> Dict[str, Any]:
    est = analysis.estimate
    label = (context.get("incident_type") or "incident").lower()
    car_a = context.get("car_a") or ""
    car_b = context.get("car_b") or ""
    ident_a = f" ({car_a})" if car_a else ""
    ident_b = f" ({car_b})" if car_b else ""

    return {
        "rule": f"{est.rule.name}: {est.rule.citation}" if est.rule else DEFAULT_RULE,
        "fault": {"Car A": f"{est.fault_a}%", "Car B": f"{est.fault_b}%"},
        "car_identification": car_identification(context.get("incident_key"), car_a, car_b),
        "explanation": f"In this {label}, contact occurred between Car A{ident_a} and Car B{ident_b}.",
        "overtake_tip": "Establish overlap before committing.",
        "defend_tip": "Hold your line predictably.",
        "spotter_advice": {"overtaker": "Wait for clear overlap.", "defender": "Don't overreact."},
        "confidence": est.confidence,
    }


def error_verdict() -> Dict[str, Any]:
    return {
        "rule": "Error",
        "fault": {"Car A": "—", "Car B": "—"},
        "car_identification": "Unable to process",
        "explanation": "Something went wrong — please try again.",
        "overtake_tip": "",
        "defend_tip": "",
        "spotter_advice": {"overtaker": "", "defender": ""},
        "confidence": "N/A",
    }


def parse_model_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    text = (raw or "").strip()
    if text.startswith("```"):
        parts = text.split("```")
        text = parts[1] if len(parts) > 1 else ""
        if text.lstrip().lower().startswith("json"):
            text = text.lstrip()[4:]
        text = text.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def merge_verdict(base: Dict[str, Any], parsed: Dict[str, Any]) -> Dict[str, Any]:
    """
    Overlay model output on the canned verdict. Only known keys with the
    same type are taken; fault and confidence always stay the engine's.
    """
    merged = dict(base)
    for key, value in parsed.items():
        if key in ("fault", "confidence", "car_identification"):
            continue
        if key in base and isinstance(value, type(base[key])):
            if isinstance(value, str) and not value.strip():
                continue
            merged[key] = value
    return merged


# ============================================================
# MODEL CALL (TIMEOUT + LINEAR BACKOFF)
# ============================================================
def _complete(prompt: str) -> str:
    resp = client.chat.completions.create(
        model=LLM_MODEL,
        messages=[{"role": "user", "content": prompt}],
        max_tokens=LLM_MAX_TOKENS,
        temperature=LLM_TEMPERATURE,
    )
    return (resp.choices[0].message.content or "").strip()


async def request_completion(prompt: str) -> Optional[str]:
    """
    Ask the model up to LLM_MAX_ATTEMPTS times within one overall deadline.
    Returns None when the model is disabled or every attempt failed.
    """
    if not client:
        logger.info("AI_DISABLED")
        return None

    loop = asyncio.get_running_loop()
    deadline = loop.time() + LLM_TIMEOUT_SECONDS

    for attempt in range(LLM_MAX_ATTEMPTS):
        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning("AI_DEADLINE_EXCEEDED after %d attempt(s)", attempt)
            break
        try:
            raw = await asyncio.wait_for(asyncio.to_thread(_complete, prompt), timeout=remaining)
            logger.info("AI_OK attempt=%d", attempt + 1)
            return raw
        except Exception as e:
            logger.warning("AI_ATTEMPT_FAILED attempt=%d error=%r", attempt + 1, e)
            if attempt < LLM_MAX_ATTEMPTS - 1:
                await asyncio.sleep(LLM_BACKOFF_SECONDS * (attempt + 1))

    return None


async def generate_verdict(
    context: Dict[str, Any],
    analysis: FaultAnalysis,
    rng: Optional[random.Random] = None,
    tips: Optional[List[str]] = None,
) -> Dict[str, Any]:
    tips = load_tips() if tips is None else tips
    pro_tip = pick_tip(tips, context.get("incident_key"), context.get("description") or "", rng)

    verdict = fallback_verdict(context, analysis)
    source = "fallback"

    raw = await request_completion(build_prompt(context, analysis))
    parsed = parse_model_json(raw) if raw else None
    if parsed:
        verdict = merge_verdict(verdict, parsed)
        source = "model"
    else:
        logger.info("AI_FALLBACK")

    verdict["explanation"] = f"{verdict['explanation']}\n\n{pro_tip}"
    verdict["pro_tip"] = pro_tip
    verdict["video_url"] = context.get("url") or ""
    verdict["source"] = source
    return verdict
