from pathlib import Path

import httpx
import pytest

import corpus
import verdict_service
from fault_engine import IncidentRecord

ROOT = Path(__file__).resolve().parent.parent
PUBLIC_CORPUS = ROOT / "public" / "precedents.csv"
PUBLIC_TIPS = ROOT / "public" / "tips.txt"


@pytest.fixture(autouse=True)
def _no_llm(monkeypatch):
    monkeypatch.setattr(verdict_service, "client", None)
    monkeypatch.setattr(verdict_service, "LLM_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(verdict_service, "TIPS_PATH", str(PUBLIC_TIPS))
    yield


@pytest.fixture(autouse=True)
def _fresh_corpus(monkeypatch):
    monkeypatch.setattr(corpus, "CORPUS_PATH", str(PUBLIC_CORPUS))
    corpus.clear_corpus_cache()
    yield
    corpus.clear_corpus_cache()


@pytest.fixture(autouse=True)
def _no_network(monkeypatch):
    orig_httpx = httpx.Client.request

    def block_httpx(self, method, url, *args, **kwargs):
        u = str(url)
        if u.startswith("/") or u.startswith("http://testserver"):
            return orig_httpx(self, method, url, *args, **kwargs)
        raise RuntimeError("External HTTP blocked")

    monkeypatch.setattr(httpx.Client, "request", block_httpx)
    yield


@pytest.fixture
def records():
    return (
        IncidentRecord(
            title="Divebomb at turn 1",
            reason="Car A lunged from way back",
            ruling="Car A at fault",
            fault_pct_driver_a=90,
        ),
        IncidentRecord(
            title="Unsafe rejoin after spin",
            reason="Car A rejoined across the racing line",
            ruling="Car A at fault",
            fault_pct_driver_a=95,
        ),
        IncidentRecord(
            title="Late divebomb into the hairpin",
            reason="No overlap at turn-in",
            ruling="Car A mostly at fault",
            fault_pct_driver_a=80,
        ),
        IncidentRecord(
            title="Netcode teleport",
            reason="Lag spike put Car A into Car B",
            ruling="Racing incident",
            fault_pct_driver_a=50,
        ),
        IncidentRecord(
            title="Divebomb with unknown outcome",
            reason="Thread was locked",
            ruling="",
            fault_pct_driver_a=None,
        ),
        IncidentRecord(
            title="",
            reason="",
            ruling="divebomb ruling with no title or reason",
            fault_pct_driver_a=10,
        ),
    )


@pytest.fixture
def write_csv(tmp_path):
    def _write(text: str, name: str = "corpus.csv") -> str:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _write
