"""
Usage ledger
Append-only record of every review run with daily, monthly and all-time rollups

data/log/
├── all-entries.json      # every entry
├── monthly/YYYY-MM.json  # entries of one calendar month
└── daily/YYYY-MM-DD.json # entries of one calendar day
"""
import csv
import io
import json
import logging
import os
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from config.settings import LLM_PROVIDERS, MODEL_PRICES, USD_TO_KRW_RATE
from core.exceptions import PersistenceError

logger = logging.getLogger(__name__)

DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

CSV_HEADERS = [
    "ID", "Date", "Weekday", "Time", "MR Title", "MR URL", "Project ID", "MR IID",
    "Model", "Provider", "Prompt Tokens", "Completion Tokens", "Total Tokens",
    "Cost (USD)", "Cost (KRW)", "Status",
]


def calculate_cost(prompt_tokens: int, completion_tokens: int,
                   model: str, provider: str) -> Tuple[float, int]:
    """
    Estimate the cost of one call

    Returns:
        (USD rounded to 4 decimals, KRW rounded to whole won)
    """
    # Local models are free
    if provider == LLM_PROVIDERS["OLLAMA"]:
        return 0.0, 0

    price = MODEL_PRICES.get(model.lower())

    # Unknown model: fall back to the provider's default rate
    if price is None:
        if provider == LLM_PROVIDERS["CODEX"]:
            price = MODEL_PRICES["codex"]
        elif provider == LLM_PROVIDERS["OPENAI"]:
            price = MODEL_PRICES["gpt-4o"]
        else:
            price = {"input": 0, "output": 0}

    total_usd = (prompt_tokens / 1000) * price["input"] + (completion_tokens / 1000) * price["output"]
    return round_half_up(total_usd * 10000) / 10000, round_half_up(total_usd * USD_TO_KRW_RATE)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero"""
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class DiffInfo:
    """Size of the diff that was reviewed"""
    file_count: int
    total_size_bytes: int
    total_lines: int


@dataclass(frozen=True)
class UsageLogEntry:
    """One review run, never modified after creation"""
    id: str
    date: str
    day_of_week: str
    time: str
    mr_title: str
    mr_url: str
    project_id: str
    mr_iid: int
    model: str
    provider: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost_usd: float
    estimated_cost_krw: int
    status: str
    error_message: Optional[str] = None
    diff_info: Optional[DiffInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageLogEntry":
        data = dict(data)
        if data.get("diff_info") is not None:
            data["diff_info"] = DiffInfo(**data["diff_info"])
        return cls(**data)


@dataclass
class UsageLog:
    """A set of entries plus aggregates derived from them"""
    created_at: str
    last_updated_at: str
    total_entries: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    total_cost_krw: int = 0
    entries: List[UsageLogEntry] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "UsageLog":
        now = datetime.now().isoformat()
        return cls(created_at=now, last_updated_at=now)

    def recompute(self) -> None:
        """Rebuild every aggregate from the entries"""
        self.last_updated_at = datetime.now().isoformat()
        self.total_entries = len(self.entries)
        self.total_tokens = sum(e.total_tokens for e in self.entries)
        self.total_cost_usd = sum(e.estimated_cost_usd for e in self.entries)
        self.total_cost_krw = sum(e.estimated_cost_krw for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created_at": self.created_at,
            "last_updated_at": self.last_updated_at,
            "total_entries": self.total_entries,
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
            "total_cost_krw": self.total_cost_krw,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageLog":
        return cls(
            created_at=data["created_at"],
            last_updated_at=data["last_updated_at"],
            total_entries=data.get("total_entries", 0),
            total_tokens=data.get("total_tokens", 0),
            total_cost_usd=data.get("total_cost_usd", 0.0),
            total_cost_krw=data.get("total_cost_krw", 0),
            entries=[UsageLogEntry.from_dict(e) for e in data.get("entries", [])],
        )


@dataclass
class UsageBucket:
    """Aggregate of a group of entries"""
    requests: int = 0
    tokens: int = 0
    cost_usd: float = 0.0
    cost_krw: int = 0

    def add(self, entry: UsageLogEntry) -> None:
        self.requests += 1
        self.tokens += entry.total_tokens
        self.cost_usd += entry.estimated_cost_usd
        self.cost_krw += entry.estimated_cost_krw


@dataclass
class UsageStatistics:
    """Statistics over a date range"""
    total_requests: int
    successful_requests: int
    failed_requests: int
    total_tokens: int
    avg_tokens_per_request: int
    total_cost_usd: float
    total_cost_krw: int
    daily_stats: Dict[str, UsageBucket]
    model_stats: Dict[str, UsageBucket]


@dataclass
class MonthlyStatistics:
    """Statistics of one calendar month"""
    month: str
    requests: int
    success_count: int
    failed_count: int
    total_tokens: int
    avg_tokens_per_request: int
    cost_usd: float
    cost_krw: int
    daily_breakdown: Dict[str, UsageBucket]


class UsageLedger:
    """
    File backed usage ledger

    Every write is read → append → recompute → write of a whole file. Writes
    are serialized by a lock so concurrent pipelines in this process cannot
    drop each other's entries.
    """

    ALL_ENTRIES_FILE = "all-entries.json"

    def __init__(self, base_dir: Union[str, Path] = "data/log",
                 clock: Optional[Callable[[], datetime]] = None):
        self.base_dir = Path(base_dir)
        self.monthly_dir = self.base_dir / "monthly"
        self.daily_dir = self.base_dir / "daily"
        self.all_entries_path = self.base_dir / self.ALL_ENTRIES_FILE
        self._clock = clock or datetime.now
        self._lock = threading.Lock()

    def daily_log_path(self, date: str) -> Path:
        return self.daily_dir / f"{date}.json"

    def monthly_log_path(self, year_month: str) -> Path:
        return self.monthly_dir / f"{year_month}.json"

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load_log(self, path: Path) -> UsageLog:
        """
        Read a log file, an absent file is an empty log

        Raises:
            PersistenceError: the file exists but cannot be read or parsed
        """
        if not path.exists():
            return UsageLog.empty()

        try:
            with open(path, "r", encoding="utf-8") as f:
                return UsageLog.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Failed to read usage log {path}: {e}") from e

    def load_usage_log(self) -> UsageLog:
        return self.load_log(self.all_entries_path)

    def load_daily_log(self, date: str) -> UsageLog:
        return self.load_log(self.daily_log_path(date))

    def load_monthly_log(self, year_month: str) -> UsageLog:
        return self.load_log(self.monthly_log_path(year_month))

    def save_log(self, log: UsageLog, path: Path) -> None:
        """Recompute aggregates and write the whole file"""
        log.recompute()
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(log.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        except (OSError, ValueError, TypeError) as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write usage log {path}: {e}") from e

    def _append(self, path: Path, entry: UsageLogEntry) -> None:
        log = self.load_log(path)
        log.entries.append(entry)
        self.save_log(log, path)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, *, mr_title: str, mr_url: str, project_id: str, mr_iid: int,
               model: str, provider: str, prompt_tokens: int, completion_tokens: int,
               status: str, error_message: Optional[str] = None,
               diff_info: Optional[DiffInfo] = None) -> UsageLogEntry:
        """
        Append a new entry to the all-time, daily and monthly logs (in that order)

        Raises:
            PersistenceError: one of the files could not be written; the
                entry is attached to the error and counts as recorded
        """
        now = self._clock()
        cost_usd, cost_krw = calculate_cost(prompt_tokens, completion_tokens, model, provider)

        entry = UsageLogEntry(
            id=str(uuid.uuid4()),
            date=now.strftime("%Y-%m-%d"),
            day_of_week=DAY_NAMES[now.weekday()],
            time=now.strftime("%H:%M:%S"),
            mr_title=mr_title,
            mr_url=mr_url,
            project_id=str(project_id),
            mr_iid=mr_iid,
            model=model,
            provider=provider,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated_cost_usd=cost_usd,
            estimated_cost_krw=cost_krw,
            status=status,
            error_message=error_message,
            diff_info=diff_info,
        )

        targets = [
            self.all_entries_path,
            self.daily_log_path(entry.date),
            self.monthly_log_path(entry.date[:7]),
        ]

        failures = []
        with self._lock:
            for path in targets:
                try:
                    self._append(path, entry)
                except PersistenceError as e:
                    logger.error(f"Usage log write failed: {e}")
                    failures.append(str(path))

        if failures:
            raise PersistenceError(f"Usage entry {entry.id} not saved to: {', '.join(failures)}", entry=entry)

        logger.info(
            f"📒 Usage recorded: MR !{mr_iid} {status}, {entry.total_tokens:,} tokens,"
            f" ${cost_usd:.4f} (₩{cost_krw:,})"
        )
        return entry

    # ------------------------------------------------------------------
    # Queries (read-only projections of the all-time log)
    # ------------------------------------------------------------------

    def get_recent_entries(self, count: int = 10) -> List[UsageLogEntry]:
        """Last ``count`` entries, newest first"""
        if count <= 0:
            return []
        entries = self.load_usage_log().entries
        return list(reversed(entries[-count:]))

    def get_entries_between(self, start_date: Optional[str] = None,
                            end_date: Optional[str] = None) -> List[UsageLogEntry]:
        """Entries whose date lies within [start_date, end_date] (YYYY-MM-DD, inclusive)"""
        entries = self.load_usage_log().entries
        if start_date:
            entries = [e for e in entries if e.date >= start_date]
        if end_date:
            entries = [e for e in entries if e.date <= end_date]
        return entries

    def get_usage_statistics(self, start_date: Optional[str] = None,
                             end_date: Optional[str] = None) -> UsageStatistics:
        entries = self.get_entries_between(start_date, end_date)

        daily_stats: Dict[str, UsageBucket] = {}
        model_stats: Dict[str, UsageBucket] = {}
        for entry in entries:
            daily_stats.setdefault(entry.date, UsageBucket()).add(entry)
            model_stats.setdefault(f"{entry.provider}/{entry.model}", UsageBucket()).add(entry)

        total_tokens = sum(e.total_tokens for e in entries)
        return UsageStatistics(
            total_requests=len(entries),
            successful_requests=sum(1 for e in entries if e.status == STATUS_SUCCESS),
            failed_requests=sum(1 for e in entries if e.status == STATUS_FAILED),
            total_tokens=total_tokens,
            avg_tokens_per_request=round_half_up(total_tokens / len(entries)) if entries else 0,
            total_cost_usd=sum(e.estimated_cost_usd for e in entries),
            total_cost_krw=sum(e.estimated_cost_krw for e in entries),
            daily_stats=daily_stats,
            model_stats=model_stats,
        )

    def get_monthly_statistics(self) -> List[MonthlyStatistics]:
        """Per-month statistics, newest month first"""
        by_month: Dict[str, List[UsageLogEntry]] = {}
        for entry in self.load_usage_log().entries:
            by_month.setdefault(entry.date[:7], []).append(entry)

        result = []
        for month, entries in by_month.items():
            daily: Dict[str, UsageBucket] = {}
            for entry in entries:
                daily.setdefault(entry.date, UsageBucket()).add(entry)

            total_tokens = sum(e.total_tokens for e in entries)
            result.append(MonthlyStatistics(
                month=month,
                requests=len(entries),
                success_count=sum(1 for e in entries if e.status == STATUS_SUCCESS),
                failed_count=sum(1 for e in entries if e.status == STATUS_FAILED),
                total_tokens=total_tokens,
                avg_tokens_per_request=round_half_up(total_tokens / len(entries)),
                cost_usd=round_half_up(sum(e.estimated_cost_usd for e in entries) * 10000) / 10000,
                cost_krw=sum(e.estimated_cost_krw for e in entries),
                daily_breakdown=daily,
            ))

        return sorted(result, key=lambda s: s.month, reverse=True)

    def export_csv(self) -> str:
        """All entries as CSV, one row per entry"""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for e in self.load_usage_log().entries:
            writer.writerow([
                e.id, e.date, e.day_of_week, e.time, e.mr_title, e.mr_url,
                e.project_id, e.mr_iid, e.model, e.provider,
                e.prompt_tokens, e.completion_tokens, e.total_tokens,
                e.estimated_cost_usd, e.estimated_cost_krw, e.status,
            ])
        return buffer.getvalue()
