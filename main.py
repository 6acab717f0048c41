import logging
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from corpus import get_corpus
from fault_engine import EngineConfig, FaultMode, IncidentQuery, estimate_fault
from incidents import INCIDENT_TYPES, label_for_key, resolve_incident_key
from verdict_service import error_verdict, generate_verdict

# ============================================================
# ENV / CONFIG
# ============================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ENGINE_CONFIG = EngineConfig.from_env()

YOUTUBE_HOSTS = ("youtube.com", "youtu.be")

app = FastAPI(title="Sim Racing Stewards")


# ============================================================
# REQUEST SCHEMA
# ============================================================
class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    incident_type: str = Field("", alias="incidentType")
    series: str = ""
    car_a: str = Field("", alias="carA")
    car_b: str = Field("", alias="carB")
    steward_notes: str = Field("", alias="stewardNotes")
    description: str = ""
    manual_fault: Optional[float] = Field(None, alias="manualFault", ge=0, le=100)
    mode: FaultMode = FaultMode.RULES


def is_youtube_url(url: str) -> bool:
    lowered = url.strip().lower()
    return any(host in lowered for host in YOUTUBE_HOSTS)


def build_context(body: AnalyzeRequest) -> Dict[str, Any]:
    free_text = " ".join(t.strip() for t in (body.steward_notes, body.description) if t and t.strip())
    incident_key = resolve_incident_key(body.incident_type, free_text)
    label = body.incident_type.strip() or label_for_key(incident_key) or incident_key
    return {
        "url": (body.url or "").strip(),
        "incident_type": label,
        "incident_key": incident_key,
        "description": free_text,
        "series": body.series.strip(),
        "car_a": body.car_a.strip(),
        "car_b": body.car_b.strip(),
    }


# ============================================================
# ROUTES
# ============================================================
@app.get("/api/health")
def health():
    return {"status": "ok", "corpus_size": len(get_corpus())}


@app.get("/api/incident-types")
def incident_types():
    return [{"label": label, "key": key} for label, key in INCIDENT_TYPES.items()]


@app.post("/api/analyze")
@app.post("/api/analyze-intranet")
async def analyze(body: AnalyzeRequest):
    if body.url and not is_youtube_url(body.url):
        return JSONResponse({"error": "Invalid YouTube URL"}, status_code=400)

    try:
        context = build_context(body)

        query = IncidentQuery(
            free_text=context["description"],
            incident_key=context["incident_key"],
            incident_label=body.incident_type.strip() or None,
            manual_override_fault=body.manual_fault,
        )

        # === FAULT ENGINE (AUTHORITATIVE) ===
        analysis = estimate_fault(query, get_corpus(), mode=body.mode, config=ENGINE_CONFIG)

        verdict = await generate_verdict(context, analysis)

        return {
            "verdict": verdict,
            "estimate": analysis.estimate.as_dict(),
            "precedents": [m.as_dict() for m in analysis.matches],
            "matches": len(analysis.matches),
        }

    except Exception:
        logger.exception("ANALYZE_FAILED")
        return JSONResponse(
            {"verdict": error_verdict(), "estimate": None, "precedents": [], "matches": 0},
            status_code=500,
        )
