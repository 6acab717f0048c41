import logging
from pathlib import Path

import corpus
from corpus import clear_corpus_cache, get_corpus, load_corpus, parse_rows

PUBLIC_CORPUS = Path(__file__).resolve().parent.parent / "public" / "precedents.csv"

HEADER = "title,reason,ruling,fault_pct_driver_a,thread\n"


def test_load_corpus_reads_rows(write_csv):
    path = write_csv(
        HEADER
        + "Divebomb at T1,Late lunge,Car A at fault,90,https://example.test/1\n"
        + "Netcode,Lag spike,Racing incident,50,\n"
    )
    records = load_corpus(path)

    assert len(records) == 2
    first = records[0]
    assert first.title == "Divebomb at T1"
    assert first.fault_pct_driver_a == 90.0
    assert first.thread == "https://example.test/1"
    assert records[1].thread is None


def test_load_corpus_drops_rows_without_title_and_reason(write_csv):
    path = write_csv(
        HEADER
        + ",,orphan ruling,70,\n"
        + ",Only a reason,ruling,70,\n"
        + "Only a title,,,70,\n"
    )
    records = load_corpus(path)
    assert [r.title for r in records] == ["", "Only a title"]
    assert records[0].reason == "Only a reason"


def test_load_corpus_keeps_rows_with_bad_fault_values(write_csv):
    path = write_csv(
        HEADER
        + "A,r,x,abc,\n"
        + "B,r,x,150,\n"
        + "C,r,x,,\n"
        + "D,r,x,85%,\n"
    )
    faults = [r.fault_pct_driver_a for r in load_corpus(path)]
    assert faults == [None, None, None, 85.0]


def test_load_corpus_matches_columns_case_insensitively(write_csv):
    path = write_csv(" Title ,REASON,Ruling,Fault_Pct_Driver_A\nDivebomb,lunge,fault,80\n")
    records = load_corpus(path)
    assert records[0].title == "Divebomb"
    assert records[0].fault_pct_driver_a == 80.0


def test_load_corpus_missing_file_is_empty(tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        assert load_corpus(str(tmp_path / "nope.csv")) == ()
    assert "CORPUS_LOAD_FAILED" in caplog.text


def test_load_corpus_missing_columns_is_empty(write_csv):
    assert load_corpus(write_csv("name,outcome\nfoo,bar\n")) == ()
    assert load_corpus(write_csv("")) == ()


def test_load_corpus_undecodable_file_is_empty(tmp_path):
    path = tmp_path / "binary.csv"
    path.write_bytes(b"title,reason\n\xff\xfe\xfa,\x80\n")
    assert load_corpus(str(path)) == ()


def test_parse_rows_accepts_plain_dicts():
    records = parse_rows([{"title": "Punt", "reason": "rear-ended", "fault_pct_driver_a": "80"}])
    assert records[0].ruling == ""
    assert records[0].fault_pct_driver_a == 80.0


def test_shipped_corpus_loads():
    records = load_corpus(str(PUBLIC_CORPUS))
    assert len(records) == 19
    assert all(r.usable for r in records)


def test_get_corpus_caches_by_path(write_csv):
    path = write_csv(HEADER + "Divebomb,lunge,fault,90,\n")
    first = get_corpus(path)
    second = get_corpus(path)
    assert first is second


def test_get_corpus_uses_configured_default():
    assert len(get_corpus()) == 19


def test_get_corpus_does_not_cache_failures(tmp_path):
    path = tmp_path / "late.csv"
    assert get_corpus(str(path)) == ()

    path.write_text(HEADER + "Divebomb,lunge,fault,90,\n", encoding="utf-8")
    assert len(get_corpus(str(path))) == 1


def test_clear_corpus_cache_forces_reload(write_csv):
    path = write_csv(HEADER + "Divebomb,lunge,fault,90,\n")
    first = get_corpus(path)
    clear_corpus_cache()
    assert get_corpus(path) is not first
    assert corpus._CACHE[path] == first
