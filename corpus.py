# corpus.py
import csv
import logging
import os
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from fault_engine import IncidentRecord, parse_fault

logger = logging.getLogger(__name__)


# ============================================================
# ENV / CONFIG
# ============================================================
CORPUS_PATH = os.getenv("CORPUS_PATH", os.path.join("public", "precedents.csv"))

REQUIRED_COLUMNS = ("title", "reason")


class CorpusError(Exception):
    pass


# Loaded corpora, keyed by path. Tuples are never mutated after load.
_CACHE: Dict[str, Tuple[IncidentRecord, ...]] = {}
_CACHE_LOCK = threading.Lock()


# ============================================================
# PARSING
# ============================================================
def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def parse_rows(rows: Iterable[Dict[str, Optional[str]]]) -> Tuple[IncidentRecord, ...]:
    """
    Turn CSV dict rows into records. Rows with neither a title nor a
    reason are dropped; bad fault cells become None.
    """
    records: List[IncidentRecord] = []
    dropped = 0
    for row in rows:
        norm = {(k or "").strip().lower(): v for k, v in row.items()}
        title = _clean(norm.get("title"))
        reason = _clean(norm.get("reason"))
        if not title and not reason:
            dropped += 1
            continue
        records.append(
            IncidentRecord(
                title=title,
                reason=reason,
                ruling=_clean(norm.get("ruling")),
                fault_pct_driver_a=parse_fault(norm.get("fault_pct_driver_a")),
                thread=_clean(norm.get("thread")) or None,
            )
        )

    if dropped:
        logger.info("CORPUS_ROWS_DROPPED count=%d", dropped)
    return tuple(records)


def _read_csv(path: str) -> Tuple[IncidentRecord, ...]:
    try:
        with open(path, newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh)
            header = [(h or "").strip().lower() for h in (reader.fieldnames or [])]
            missing = [c for c in REQUIRED_COLUMNS if c not in header]
            if missing:
                raise CorpusError(f"{path} missing columns: {', '.join(missing)}")
            return parse_rows(reader)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise CorpusError(f"Could not read corpus {path}: {e}") from e


# ============================================================
# PUBLIC API
# ============================================================
def load_corpus(path: str) -> Tuple[IncidentRecord, ...]:
    """Read a corpus file. Any failure yields an empty corpus."""
    try:
        records = _read_csv(path)
    except CorpusError as e:
        logger.warning("CORPUS_LOAD_FAILED %s", e)
        return ()

    logger.info("CORPUS_LOADED path=%s records=%d", path, len(records))
    return records


def get_corpus(path: Optional[str] = None) -> Tuple[IncidentRecord, ...]:
    """
    Process-wide cached corpus. Empty results are not cached so a file
    that appears later is picked up on the next request.
    """
    key = path or CORPUS_PATH
    cached = _CACHE.get(key)
    if cached is not None:
        return cached

    with _CACHE_LOCK:
        cached = _CACHE.get(key)
        if cached is not None:
            return cached
        records = load_corpus(key)
        if records:
            _CACHE[key] = records
        return records


def clear_corpus_cache() -> None:
    with _CACHE_LOCK:
        _CACHE.clear()
