import re
import hashlib
import datetime
from dataclasses import dataclass, field
from typing import Optional

DEBUG = True  # set from run_config.debug; False prints plain text


def _c(color, s):
    if not DEBUG:
        return s
    colors = {
        "cyan": "\033[36m",
        "green": "\033[32m",
        "yellow": "\033[33m",
        "red": "\033[31m",
        "reset": "\033[0m"
    }
    return f"{colors.get(color,'')}{s}{colors['reset']}"


# --- Text Normalizer ---
_NON_WORD = re.compile(r"\W+")


def normalize(text) -> str:
    """Lowercase, turn every non-word character into a space, collapse whitespace."""
    if not text:
        return ""
    return " ".join(_NON_WORD.sub(" ", str(text).lower()).split())


_REF_PARSE = re.compile(
    r"^\s*([1-3]?\s*[A-Za-z][A-Za-z&' .]*?)\s+(\d+)(?:\s*:\s*(\d+)(?:\s*-\s*(\d+))?)?\s*$"
)

BOOK_ALIASES = {
    "psalms": "psalm",
    "ps": "psalm",
    "psa": "psalm",
    "song of songs": "song of solomon",
    "songs": "song of solomon",
    "canticles": "song of solomon",
    "revelations": "revelation",
    "rev": "revelation",
    "gen": "genesis",
    "prov": "proverbs",
    "isa": "isaiah",
    "matt": "matthew",
    "mt": "matthew",
    "rom": "romans",
    "heb": "hebrews",
    "phil": "philippians",
}


def _normalize_book_name(book: str) -> str:
    b = normalize(book)
    b = re.sub(r"^(\d)\s+", r"\1 ", b)
    if b in BOOK_ALIASES:
        return BOOK_ALIASES[b]
    m = re.match(r"^(\d) (.+)$", b)
    if m and m.group(2) in BOOK_ALIASES:
        return f"{m.group(1)} {BOOK_ALIASES[m.group(2)]}"
    return b


def normalize_reference(ref) -> str:
    """Canonical form of a scripture citation, e.g. 'Psalms 19:1' -> 'psalm 19 1'."""
    if not ref:
        return ""
    cleaned = str(ref).replace("—", "-").replace("–", "-").strip()
    cleaned = re.sub(r"\s*\([^)]*\)\s*$", "", cleaned)
    m = _REF_PARSE.match(cleaned)
    if not m:
        return normalize(cleaned)
    parts = [_normalize_book_name(m.group(1)), m.group(2)]
    if m.group(3):
        parts.append(m.group(3))
    if m.group(4) and m.group(4) != m.group(3):
        parts.append(m.group(4))
    return " ".join(parts)


# --- Fingerprint Engine ---
def content_hash(text) -> str:
    """Stable digest of the normalized text, used for exact-duplicate detection."""
    return hashlib.sha256(normalize(text).encode("utf-8")).hexdigest()


def token_set(text, min_length: int = 3) -> frozenset:
    """Tokens of the normalized text longer than min_length characters."""
    return frozenset(t for t in normalize(text).split(" ") if len(t) > min_length)


def jaccard(a, b) -> float:
    union = len(a | b)
    return len(a & b) / max(union, 1)


def similarity(a, b, min_length: int = 3) -> float:
    """Jaccard index of the two texts' token sets, in [0, 1]."""
    if a and a == b:
        return 1.0
    na, nb = normalize(a), normalize(b)
    if na and na == nb:
        return 1.0
    return jaccard(token_set(na, min_length), token_set(nb, min_length))


# --- Rejection Reasons ---
@dataclass(frozen=True)
class ExactDuplicate:
    field: str
    matched_date: datetime.date
    matched_text: str = ""
    kind = "exact_duplicate"

    def describe(self):
        return f"exact duplicate {self.field} of {self.matched_date.isoformat()}"

    def hint(self):
        if self.field == "title":
            return (f'Your title repeated an earlier devotional ("{self.matched_text}"). '
                    "Produce a distinctly different title.")
        return ("Your devotional repeated an earlier one word for word. "
                "Write something entirely new with a different angle and imagery.")

    def to_record(self):
        return {"kind": self.kind, "field": self.field,
                "matched_date": self.matched_date.isoformat()}


@dataclass(frozen=True)
class SimilarTitle:
    score: float
    matched_date: datetime.date
    matched_text: str = ""
    kind = "similar_title"

    def describe(self):
        return (f"title {round(self.score * 100)}% similar to "
                f'"{self.matched_text}" ({self.matched_date.isoformat()})')

    def hint(self):
        return (f'Your title was too similar to a previous one ("{self.matched_text}"). '
                "Produce a distinctly different title.")

    def to_record(self):
        return {"kind": self.kind, "score": round(self.score, 3),
                "matched_date": self.matched_date.isoformat(), "matched": self.matched_text}


@dataclass(frozen=True)
class SimilarContent:
    score: float
    matched_date: datetime.date
    kind = "similar_content"

    def describe(self):
        return f"content {round(self.score * 100)}% similar to {self.matched_date.isoformat()}"

    def hint(self):
        return ("Your content overlapped too closely with prior days. Use different imagery, "
                "a new angle, and avoid repeating stock phrasing.")

    def to_record(self):
        return {"kind": self.kind, "score": round(self.score, 3),
                "matched_date": self.matched_date.isoformat()}


@dataclass(frozen=True)
class RecentScriptureReuse:
    days_ago: int
    reference: str
    matched_date: datetime.date
    kind = "recent_scripture_reuse"

    def describe(self):
        return f"scripture {self.reference} already used {self.days_ago} day(s) ago"

    def hint(self):
        return (f"{self.reference} was used {self.days_ago} day(s) ago. "
                "Choose a different scripture passage.")

    def to_record(self):
        return {"kind": self.kind, "days_ago": self.days_ago, "reference": self.reference,
                "matched_date": self.matched_date.isoformat()}


@dataclass(frozen=True)
class NoveltyCheck:
    novel: bool
    reason: Optional[object] = None

    @property
    def matched_date(self):
        return self.reason.matched_date if self.reason else None


@dataclass(frozen=True)
class ScriptureCheck:
    fresh: bool
    last_used: Optional[datetime.date] = None
    reason: Optional[RecentScriptureReuse] = None


# --- History Ledger ---
def _as_date(value):
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


@dataclass(frozen=True)
class LedgerEntry:
    date: datetime.date
    title: str
    content: str
    tokens: frozenset
    content_hash: str
    scripture: str = ""
    theme: str = ""
    title_text: str = ""
    scripture_text: str = ""

    @classmethod
    def from_record(cls, record, min_token_length=3):
        """Project a persisted artifact record onto the fields novelty checks need."""
        if not isinstance(record, dict):
            raise ValueError("record is not an object")
        title = str(record.get("title") or "").strip()
        content = str(record.get("content") or "").strip()
        if not record.get("date") or not title or not content:
            raise ValueError("record is missing date, title or content")
        scripture = str(record.get("scripture_reference") or "").strip()
        return cls(
            date=_as_date(record["date"]),
            title=normalize(title),
            content=normalize(content),
            tokens=token_set(content, min_token_length),
            content_hash=content_hash(content),
            scripture=normalize_reference(scripture),
            theme=normalize(record.get("theme")),
            title_text=title,
            scripture_text=scripture,
        )


class ContentLedger:
    """Bounded, date-ordered history of accepted devotionals."""

    def __init__(self, entries=None, capacity=90, min_token_length=3, debug=True):
        self.capacity = capacity
        self.min_token_length = min_token_length
        self.debug = debug
        self.entries = sorted(entries or [], key=lambda e: e.date)[-capacity:]

    @classmethod
    def load(cls, records, capacity=90, min_token_length=3, debug=True):
        """Builds a ledger from artifact records, skipping any that cannot be projected."""
        entries = []
        for record in records:
            try:
                entries.append(LedgerEntry.from_record(record, min_token_length))
            except (ValueError, TypeError) as e:
                label = record.get("date", "?") if isinstance(record, dict) else "?"
                print(_c("yellow", f"[LEDGER] skipping unreadable record {label}: {e}"))
        ledger = cls(entries, capacity=capacity, min_token_length=min_token_length, debug=debug)
        if debug:
            print(_c("cyan", f"[LEDGER] loaded {len(ledger)} recent devotionals for comparison"))
        return ledger

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def append(self, entry: LedgerEntry):
        self.entries = [e for e in self.entries if e.date != entry.date]
        self.entries.append(entry)
        self.entries.sort(key=lambda e: e.date)
        if len(self.entries) > self.capacity:
            self.entries = self.entries[-self.capacity:]

    def discard(self, date):
        """Drops the entry for a date so a forced regeneration never competes with itself."""
        self.entries = [e for e in self.entries if e.date != _as_date(date)]

    def recent_titles(self, n=10):
        return [e.title_text or e.title for e in self.entries[-n:]] if n > 0 else []

    def recent_scriptures(self, count=None, days=None, today=None):
        entries = self.entries
        if days is not None:
            today = _as_date(today or datetime.date.today())
            entries = [e for e in entries if abs((today - e.date).days) <= days]
        if count is not None:
            entries = entries[-count:] if count > 0 else []
        return [e.scripture_text or e.scripture for e in entries if e.scripture]

    def is_title_novel(self, title, threshold=0.7) -> NoveltyCheck:
        norm = normalize(title)
        for entry in self.entries:
            if norm and norm == entry.title:
                return NoveltyCheck(False, ExactDuplicate("title", entry.date, entry.title_text))
        best = None
        for entry in self.entries:
            score = similarity(norm, entry.title, self.min_token_length)
            if score > threshold and (best is None or score > best[0]):
                best = (score, entry)
        if best:
            return NoveltyCheck(False, SimilarTitle(best[0], best[1].date, best[1].title_text))
        return NoveltyCheck(True)

    def is_content_duplicate(self, content) -> NoveltyCheck:
        digest = content_hash(content)
        for entry in self.entries:
            if entry.content_hash == digest:
                return NoveltyCheck(False, ExactDuplicate("content", entry.date, entry.title_text))
        return NoveltyCheck(True)

    def is_content_novel(self, content, overlap_threshold=0.5, recent=20) -> NoveltyCheck:
        """Exact hash match against the whole window, token overlap against the newest entries."""
        exact = self.is_content_duplicate(content)
        if not exact.novel:
            return exact
        return self.is_overlap_novel(content, overlap_threshold, recent)

    def is_overlap_novel(self, content, overlap_threshold=0.5, recent=20) -> NoveltyCheck:
        tokens = token_set(content, self.min_token_length)
        for entry in reversed(self.entries[-recent:] if recent > 0 else []):
            score = jaccard(tokens, entry.tokens)
            if score > overlap_threshold:
                return NoveltyCheck(False, SimilarContent(score, entry.date))
        return NoveltyCheck(True)

    def is_scripture_fresh(self, reference, lookback_days=21, today=None) -> ScriptureCheck:
        norm = normalize_reference(reference)
        if not norm:
            return ScriptureCheck(True)
        today = _as_date(today or datetime.date.today())
        for entry in reversed(self.entries):
            if entry.scripture != norm:
                continue
            days_ago = abs((today - entry.date).days)
            if days_ago <= lookback_days:
                reason = RecentScriptureReuse(days_ago, str(reference).strip(), entry.date)
                return ScriptureCheck(False, entry.date, reason)
        return ScriptureCheck(True)


# --- Novelty Gate ---
@dataclass(frozen=True)
class GateResult:
    accepted: bool
    reason: Optional[object] = None
    warnings: list = field(default_factory=list)


class NoveltyGate:
    """Accept/reject decision for a candidate devotional against the ledger."""

    def __init__(self, title_threshold=0.7, content_threshold=0.5, content_recent=20,
                 scripture_lookback_days=21, scripture_policy="reject", debug=True):
        if scripture_policy not in ("reject", "warn"):
            raise ValueError(f"unknown scripture_policy: {scripture_policy}")
        self.title_threshold = title_threshold
        self.content_threshold = content_threshold
        self.content_recent = content_recent
        self.scripture_lookback_days = scripture_lookback_days
        self.scripture_policy = scripture_policy
        self.debug = debug

    @classmethod
    def from_config(cls, novelty_config, debug=True):
        return cls(
            title_threshold=novelty_config.title_threshold,
            content_threshold=novelty_config.content_threshold,
            content_recent=novelty_config.content_recent,
            scripture_lookback_days=novelty_config.scripture_lookback_days,
            scripture_policy=novelty_config.scripture_policy,
            debug=debug,
        )

    def validate(self, candidate, ledger: ContentLedger, today=None) -> GateResult:
        """Runs the checks cheapest-first and returns the first rejection."""
        today = today or getattr(candidate, "date", None)
        checks = (
            lambda: ledger.is_content_duplicate(candidate.content),
            lambda: ledger.is_title_novel(candidate.title, self.title_threshold),
            lambda: ledger.is_overlap_novel(candidate.content, self.content_threshold,
                                            self.content_recent),
        )
        for check in checks:
            result = check()
            if not result.novel:
                return self._reject(result.reason)

        warnings = []
        scripture = ledger.is_scripture_fresh(candidate.scripture_reference,
                                              self.scripture_lookback_days, today)
        if not scripture.fresh:
            if self.scripture_policy == "reject":
                return self._reject(scripture.reason)
            warnings.append(scripture.reason)
            print(_c("yellow", f"[GATE] allowing {scripture.reason.describe()}"))

        if self.debug:
            print(_c("green", f"[GATE] unique against {len(ledger)} recent devotionals"))
        return GateResult(True, None, warnings)

    def _reject(self, reason):
        print(_c("red", f"[GATE] rejected: {reason.describe()}"))
        return GateResult(False, reason)
