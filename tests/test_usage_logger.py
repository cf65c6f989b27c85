"""
Usage ledger tests
"""
import csv
import io
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest

from core.exceptions import PersistenceError
from core.usage_logger import (
    CSV_HEADERS,
    DiffInfo,
    UsageLedger,
    UsageLog,
    calculate_cost,
    round_half_up,
)

MONDAY = datetime(2026, 1, 5, 14, 30, 0)


def record(ledger, **overrides):
    fields = dict(
        mr_title="feat: add login",
        mr_url="https://gitlab.example.com/g/p/-/merge_requests/1",
        project_id="42",
        mr_iid=1,
        model="gpt-4o",
        provider="openai",
        prompt_tokens=1000,
        completion_tokens=1000,
        status="success",
    )
    fields.update(overrides)
    return ledger.record(**fields)


def clock_from(*moments):
    it = iter(moments)
    return lambda: next(it)


class TestCalculateCost:
    def test_ollama_is_free(self):
        assert calculate_cost(123456, 654321, "llama3", "ollama") == (0.0, 0)
        assert calculate_cost(1000, 1000, "gpt-4o", "ollama") == (0.0, 0)

    def test_known_model(self):
        assert calculate_cost(1000, 1000, "gpt-4o", "openai") == (0.02, 29)

    def test_model_lookup_ignores_case(self):
        assert calculate_cost(1000, 1000, "GPT-4o", "openai") == (0.02, 29)

    def test_unknown_openai_model_uses_gpt4o_rate(self):
        assert calculate_cost(1000, 1000, "my-finetune", "openai") == (0.02, 29)

    def test_unknown_codex_model_uses_codex_rate(self):
        assert calculate_cost(1000, 1000, "gpt-5-codex", "codex") == (0.04, 58)

    def test_unknown_provider_and_model(self):
        assert calculate_cost(1000, 1000, "mystery", "other") == (0.0, 0)

    def test_halves_round_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(0.5) == 1
        assert round_half_up(28.49) == 28

    def test_usd_rounded_to_four_decimals(self):
        usd, krw = calculate_cost(1234, 0, "gpt-4o-mini", "openai")
        assert usd == 0.0002
        assert krw == 0


class TestRecord:
    def test_entry_fields(self, tmp_path):
        ledger = UsageLedger(tmp_path, clock=lambda: MONDAY)
        entry = record(ledger, diff_info=DiffInfo(2, 2048, 40))

        assert entry.date == "2026-01-05"
        assert entry.day_of_week == "Mon"
        assert entry.time == "14:30:00"
        assert entry.total_tokens == 2000
        assert entry.estimated_cost_usd == 0.02
        assert entry.estimated_cost_krw == 29
        assert entry.diff_info.file_count == 2

    def test_writes_all_three_logs(self, tmp_path):
        ledger = UsageLedger(tmp_path, clock=lambda: MONDAY)
        entry = record(ledger)

        for path in (
            tmp_path / "all-entries.json",
            tmp_path / "daily" / "2026-01-05.json",
            tmp_path / "monthly" / "2026-01.json",
        ):
            data = json.loads(path.read_text(encoding="utf-8"))
            assert [e["id"] for e in data["entries"]] == [entry.id]

    def test_totals_match_entries_after_every_record(self, tmp_path):
        ledger = UsageLedger(tmp_path, clock=lambda: MONDAY)
        for i, tokens in enumerate([100, 2500, 40000], start=1):
            record(ledger, mr_iid=i, prompt_tokens=tokens, completion_tokens=tokens // 2)

            for log in (ledger.load_usage_log(), ledger.load_daily_log("2026-01-05"),
                        ledger.load_monthly_log("2026-01")):
                assert log.total_entries == len(log.entries) == i
                assert log.total_tokens == sum(e.total_tokens for e in log.entries)
                assert log.total_cost_usd == pytest.approx(sum(e.estimated_cost_usd for e in log.entries))
                assert log.total_cost_krw == sum(e.estimated_cost_krw for e in log.entries)

    def test_entries_split_by_day_and_month(self, tmp_path):
        ledger = UsageLedger(tmp_path, clock=clock_from(
            datetime(2026, 1, 31, 23, 59, 0), datetime(2026, 2, 1, 0, 1, 0)
        ))
        record(ledger, mr_iid=1)
        record(ledger, mr_iid=2)

        assert len(ledger.load_usage_log().entries) == 2
        assert [e.mr_iid for e in ledger.load_monthly_log("2026-01").entries] == [1]
        assert [e.mr_iid for e in ledger.load_monthly_log("2026-02").entries] == [2]
        assert [e.mr_iid for e in ledger.load_daily_log("2026-02-01").entries] == [2]

    def test_concurrent_records_are_not_lost(self, tmp_path):
        ledger = UsageLedger(tmp_path, clock=lambda: MONDAY)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: record(ledger, mr_iid=i), range(20)))

        assert ledger.load_usage_log().total_entries == 20
        assert ledger.load_daily_log("2026-01-05").total_entries == 20
        assert ledger.load_monthly_log("2026-01").total_entries == 20

    def test_corrupt_file_raises_with_entry_and_keeps_other_logs(self, tmp_path):
        ledger = UsageLedger(tmp_path, clock=lambda: MONDAY)
        tmp_path.mkdir(parents=True, exist_ok=True)
        (tmp_path / "all-entries.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(PersistenceError) as exc_info:
            record(ledger)

        assert exc_info.value.entry is not None
        assert ledger.load_daily_log("2026-01-05").total_entries == 1
        assert ledger.load_monthly_log("2026-01").total_entries == 1
        # The unreadable file is left untouched
        assert (tmp_path / "all-entries.json").read_text(encoding="utf-8") == "{not json"

    def test_unencodable_title_raises_persistence_error(self, tmp_path):
        ledger = UsageLedger(tmp_path, clock=lambda: MONDAY)

        with pytest.raises(PersistenceError) as exc_info:
            record(ledger, mr_title="bad \ud800 title")

        assert exc_info.value.entry.mr_title == "bad \ud800 title"
        assert list(tmp_path.rglob("*.tmp")) == []
        # The next entry is written normally
        record(ledger, mr_iid=2)
        assert [e.mr_iid for e in ledger.load_usage_log().entries] == [2]


def test_missing_log_is_empty(tmp_path):
    log = UsageLedger(tmp_path).load_usage_log()
    assert log.entries == []
    assert log.total_entries == 0


def test_round_trip_preserves_entries(tmp_path):
    ledger = UsageLedger(tmp_path, clock=lambda: MONDAY)
    record(ledger, mr_iid=1, diff_info=DiffInfo(1, 10, 3))
    record(ledger, mr_iid=2, status="failed", error_message="timeout", completion_tokens=0)

    log = ledger.load_usage_log()
    parsed = UsageLog.from_dict(json.loads(json.dumps(log.to_dict())))

    assert parsed.entries == log.entries
    parsed.recompute()
    assert parsed.total_entries == 2
    assert parsed.total_tokens == log.total_tokens


class TestQueries:
    @pytest.fixture
    def ledger(self, tmp_path):
        ledger = UsageLedger(tmp_path, clock=clock_from(
            datetime(2026, 1, 5, 9, 0, 0),
            datetime(2026, 1, 6, 9, 0, 0),
            datetime(2026, 2, 2, 9, 0, 0),
        ))
        record(ledger, mr_iid=1, prompt_tokens=100, completion_tokens=50)
        record(ledger, mr_iid=2, prompt_tokens=300, completion_tokens=0, status="failed",
               error_message="Ollama response timed out")
        record(ledger, mr_iid=3, prompt_tokens=1000, completion_tokens=1000,
               model="llama3", provider="ollama")
        return ledger

    def test_recent_entries_newest_first(self, ledger):
        assert [e.mr_iid for e in ledger.get_recent_entries(2)] == [3, 2]
        assert [e.mr_iid for e in ledger.get_recent_entries(10)] == [3, 2, 1]
        assert ledger.get_recent_entries(0) == []

    def test_entries_between(self, ledger):
        entries = ledger.get_entries_between("2026-01-06", "2026-02-28")
        assert [e.mr_iid for e in entries] == [2, 3]

    def test_usage_statistics(self, ledger):
        stats = ledger.get_usage_statistics()
        assert stats.total_requests == 3
        assert stats.successful_requests == 2
        assert stats.failed_requests == 1
        assert stats.total_tokens == 150 + 300 + 2000
        assert stats.avg_tokens_per_request == round(2450 / 3)
        assert set(stats.daily_stats) == {"2026-01-05", "2026-01-06", "2026-02-02"}
        assert stats.model_stats["openai/gpt-4o"].requests == 2
        assert stats.model_stats["ollama/llama3"].cost_krw == 0

    def test_usage_statistics_for_range(self, ledger):
        stats = ledger.get_usage_statistics("2026-01-01", "2026-01-31")
        assert stats.total_requests == 2
        assert list(stats.model_stats) == ["openai/gpt-4o"]

    def test_monthly_statistics_newest_first(self, ledger):
        months = ledger.get_monthly_statistics()
        assert [m.month for m in months] == ["2026-02", "2026-01"]

        january = months[1]
        assert january.requests == 2
        assert january.success_count == 1
        assert january.failed_count == 1
        assert sorted(january.daily_breakdown) == ["2026-01-05", "2026-01-06"]

    def test_export_csv(self, ledger):
        rows = list(csv.reader(io.StringIO(ledger.export_csv())))
        assert rows[0] == CSV_HEADERS
        assert len(rows) == 4
        assert rows[1][1] == "2026-01-05"
        assert rows[1][2] == "Mon"
        assert rows[2][-1] == "failed"
