import os
import re
import sys
import json
import hashlib
import datetime
import argparse
import tempfile
import traceback
import yaml
import backoff
from contextlib import suppress
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from openai import OpenAI, APIConnectionError, APIError, APIStatusError, APITimeoutError

import content_tracker
from content_tracker import (
    ContentLedger,
    LedgerEntry,
    NoveltyGate,
    normalize,
    _c,
)

ARTIFACT_VERSION = "2.1"
DATE_FILE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.json$")


# --- Configuration ---
@dataclass(frozen=True)
class ProviderSpec:
    name: str
    base_url: str
    model: str
    api_key_env: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


DEFAULT_PROVIDERS = (
    ProviderSpec("groq", "https://api.groq.com/openai/v1", "llama-3.3-70b-versatile", "GROQ_API_KEY"),
    ProviderSpec("openai", "https://api.openai.com/v1", "gpt-4o-mini", "OPENAI_API_KEY"),
    ProviderSpec("deepseek", "https://api.deepseek.com/v1", "deepseek-chat", "DEEPSEEK_API_KEY"),
)


@dataclass(frozen=True)
class RunConfig:
    base_path: str = "."
    output_dir: str = "devotionals"
    max_attempts: int = 3
    debug: bool = True
    tee_log: bool = False
    app_name: str = "Our Night Sky"
    hemisphere: str = "Northern"
    voice_file: Optional[str] = None


@dataclass(frozen=True)
class LLMConfig:
    providers: tuple = DEFAULT_PROVIDERS
    temperature: float = 0.9
    temperature_step: float = 0.05
    max_temperature: float = 1.3
    max_tokens: int = 900
    timeout_seconds: float = 25.0
    max_tries: int = 3
    backoff_factor: float = 1.0
    max_backoff: float = 20.0


@dataclass(frozen=True)
class NoveltyConfig:
    ledger_window: int = 90
    title_threshold: float = 0.7
    content_threshold: float = 0.5
    content_recent: int = 20
    scripture_lookback_days: int = 21
    min_token_length: int = 3
    scripture_policy: str = "reject"
    hint_titles: int = 10
    hint_scriptures: int = 30
    hint_rejections: int = 5


@dataclass(frozen=True)
class Config:
    run: RunConfig = field(default_factory=RunConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    novelty: NoveltyConfig = field(default_factory=NoveltyConfig)


def _section(raw, name, cls):
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"CRITICAL: {name} must be a mapping in config.yaml")
    unknown = set(data) - {f.name for f in fields(cls)}
    if unknown:
        raise ValueError(f"CRITICAL: unknown keys in {name}: {sorted(unknown)}")
    return dict(data)


def _provider_specs(items):
    if not isinstance(items, list):
        raise ValueError("CRITICAL: llm_config.providers must be a list")
    specs = []
    allowed = {f.name for f in fields(ProviderSpec)}
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"CRITICAL: llm_config.providers[{i}] must be a mapping")
        for k in ("name", "base_url", "model", "api_key_env"):
            if not item.get(k):
                raise ValueError(f"CRITICAL: llm_config.providers[{i}].{k} missing in config.yaml")
        unknown = set(item) - allowed
        if unknown:
            raise ValueError(f"CRITICAL: unknown keys in llm_config.providers[{i}]: {sorted(unknown)}")
        specs.append(ProviderSpec(**item))
    return tuple(specs)


def build_config(raw=None) -> Config:
    """Builds the immutable run configuration from a parsed config.yaml mapping."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValueError("CRITICAL: config.yaml must contain a mapping")

    run = RunConfig(**_section(raw, "run_config", RunConfig))
    llm_data = _section(raw, "llm_config", LLMConfig)
    if "providers" in llm_data:
        llm_data["providers"] = _provider_specs(llm_data["providers"] or [])
    llm = LLMConfig(**llm_data)
    novelty = NoveltyConfig(**_section(raw, "novelty_config", NoveltyConfig))

    # Preflight checks
    if run.max_attempts < 1:
        raise ValueError("CRITICAL: run_config.max_attempts must be at least 1")
    if llm.max_tries < 1:
        raise ValueError("CRITICAL: llm_config.max_tries must be at least 1")
    if llm.timeout_seconds <= 0:
        raise ValueError("CRITICAL: llm_config.timeout_seconds must be positive")
    for k in ("title_threshold", "content_threshold"):
        v = getattr(novelty, k)
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"CRITICAL: novelty_config.{k} must be between 0 and 1 (got {v})")
    for k in ("ledger_window", "content_recent", "scripture_lookback_days"):
        if getattr(novelty, k) < 1:
            raise ValueError(f"CRITICAL: novelty_config.{k} must be at least 1")
    if novelty.scripture_policy not in ("reject", "warn"):
        raise ValueError("CRITICAL: novelty_config.scripture_policy must be 'reject' or 'warn'")
    names = [p.name for p in llm.providers]
    if len(names) != len(set(names)):
        raise ValueError(f"CRITICAL: duplicate provider names in llm_config.providers: {names}")
    return Config(run=run, llm=llm, novelty=novelty)


def load_config(path="config.yaml") -> Config:
    """Loads the YAML configuration file."""
    path = Path(path)
    if not path.exists():
        print(_c("yellow", f"(config) {path} not found, using built-in defaults."))
        return build_config({})
    with open(path, 'r', encoding='utf-8') as f:
        return build_config(yaml.safe_load(f))


# --- Errors ---
class ProviderError(Exception):
    """A single provider failed to produce usable text."""
    transient = False

    def __init__(self, provider, message=""):
        super().__init__(f"{provider}: {message}" if message else provider)
        self.provider = provider


class ProviderUnavailable(ProviderError):
    pass


class ProviderTimeout(ProviderError):
    transient = True


class ProviderHttpError(ProviderError):
    def __init__(self, provider, status, message=""):
        super().__init__(provider, f"HTTP {status} {message}".strip())
        self.status = status

    @property
    def transient(self):
        return self.status == 429 or self.status >= 500


class ProviderEmptyResponse(ProviderError):
    pass


class UnusableResponse(ProviderError):
    """The provider answered, but nothing usable could be parsed out of it."""


class AllProvidersFailed(Exception):
    def __init__(self, failures):
        self.failures = list(failures)
        detail = "; ".join(str(f) for f in self.failures) or "no providers configured"
        super().__init__(f"all providers failed ({detail})")


class StorageError(Exception):
    """Persisted devotionals cannot be read or written."""


class DevotionalParseError(ValueError):
    pass


# --- Data model ---
@dataclass
class Artifact:
    date: datetime.date
    title: str
    content: str
    scripture_reference: str = ""
    theme: str = ""
    questions: list = field(default_factory=list)
    prayer: str = ""
    provenance: str = "fallback"
    is_fallback: bool = False
    attempts: int = 0
    defaults_used: list = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc).isoformat())
    version: str = ARTIFACT_VERSION

    @property
    def word_count(self):
        return len(self.content.split())

    def to_dict(self):
        return {
            "date": self.date.isoformat(),
            "title": self.title,
            "scripture_reference": self.scripture_reference,
            "theme": self.theme,
            "content": self.content,
            "questions": list(self.questions),
            "prayer": self.prayer,
            "words": self.word_count,
            "provenance": self.provenance,
            "is_fallback": self.is_fallback,
            "attempts": self.attempts,
            "defaults_used": list(self.defaults_used),
            "created_at": self.created_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ValueError("devotional record is not an object")
        title = str(data.get("title") or "").strip()
        content = str(data.get("content") or "").strip()
        if not data.get("date") or not title or not content:
            raise ValueError("devotional record is missing date, title or content")
        return cls(
            date=datetime.date.fromisoformat(data["date"]),
            title=title,
            content=content,
            scripture_reference=data.get("scripture_reference") or "",
            theme=data.get("theme") or "",
            questions=list(data.get("questions") or []),
            prayer=data.get("prayer") or "",
            provenance=data.get("provenance") or "unknown",
            is_fallback=bool(data.get("is_fallback")),
            attempts=int(data.get("attempts") or 0),
            defaults_used=list(data.get("defaults_used") or []),
            created_at=data.get("created_at") or "",
            version=data.get("version") or ARTIFACT_VERSION,
        )


@dataclass
class Candidate:
    """A generated devotional that has not been through the novelty gate yet."""
    date: datetime.date
    title: str
    content: str
    scripture_reference: str = ""
    theme: str = ""
    questions: list = field(default_factory=list)
    prayer: str = ""
    defaults_used: list = field(default_factory=list)
    fixes: list = field(default_factory=list)
    source: str = "json"

    def to_artifact(self, provenance, attempts):
        return Artifact(
            date=self.date,
            title=self.title,
            content=self.content,
            scripture_reference=self.scripture_reference,
            theme=self.theme,
            questions=list(self.questions),
            prayer=self.prayer,
            provenance=provenance,
            is_fallback=False,
            attempts=attempts,
            defaults_used=list(self.defaults_used),
        )


# --- Response parsing ---
@dataclass
class ParsedDevotional:
    title: str = ""
    scripture_reference: str = ""
    content: str = ""
    theme: str = ""
    questions: list = field(default_factory=list)
    prayer: str = ""


@dataclass(frozen=True)
class ParseFailure:
    reason: str


DEFAULT_TITLE = "Daily Devotional"

_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```\s*$", re.S)
_INLINE_REF = re.compile(
    r"\b((?:[1-3]\s?)?[A-Z][a-z]+(?:\s(?:of\s)?[A-Z][a-z]+)*)\s(\d{1,3}):(\d{1,3})(?:\s?[-–]\s?(\d{1,3}))?"
)


def _strip_code_fence(raw):
    text = (raw or "").strip()
    m = _FENCE.match(text)
    return m.group(1).strip() if m else text


def _clean_line(s):
    return s.strip().strip("*_\"'“”").strip()


def parse_strict(raw):
    """Parses the JSON shape the prompt asks for. Returns ParsedDevotional or ParseFailure."""
    text = _strip_code_fence(raw)
    m = re.search(r"\{.*\}", text, re.S)
    if not m:
        return ParseFailure("no JSON object found")
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        return ParseFailure(f"invalid JSON: {e.msg}")
    if not isinstance(data, dict):
        return ParseFailure("JSON value is not an object")

    def pick(*keys):
        for k in keys:
            v = data.get(k)
            if isinstance(v, str) and v.strip():
                return v.strip()
        return ""

    content = pick("content", "reflection", "body", "devotional")
    if not content:
        return ParseFailure("JSON object has no content")
    questions = data.get("questions")
    if isinstance(questions, str):
        questions = [questions]
    elif not isinstance(questions, list):
        questions = []
    return ParsedDevotional(
        title=pick("title"),
        scripture_reference=pick("scriptureReference", "scripture_reference", "scripture", "verse"),
        content=content,
        theme=pick("theme"),
        questions=[str(q).strip() for q in questions if str(q).strip()],
        prayer=pick("prayer"),
    )


def _split_sections(text):
    """Splits Markdown into a preamble and {lowercased heading: body} for ## / ### headings."""
    parts = re.split(r"^#{2,3}\s+(.+?)\s*#*\s*$", text, flags=re.M)
    preamble = parts[0]
    sections = {}
    for i in range(1, len(parts) - 1, 2):
        sections[_clean_line(parts[i]).lower().rstrip(":")] = parts[i + 1].strip()
    return preamble, sections


def _reference_in(text):
    m = _INLINE_REF.search(text or "")
    return m.group(0).replace("–", "-").strip() if m else ""


def extract_fields(raw):
    """Best-effort field extraction from Markdown or labelled plain text."""
    text = _strip_code_fence(raw)
    parsed = ParsedDevotional()

    m = re.search(r"^#\s+(.+)$", text, re.M) or re.search(r"(?im)^\W*title\W*:\s*(.+)$", text)
    if m:
        parsed.title = _clean_line(m.group(1))

    preamble, sections = _split_sections(text)

    scripture_block = sections.get("scripture") or sections.get("scripture reading") or ""
    if not scripture_block:
        m = re.search(r"(?im)^\W*scripture(?: reference)?\W*:[ \t]*(.+)$", text)
        scripture_block = m.group(1) if m else ""
    lines = [_clean_line(line.strip().lstrip(">")) for line in scripture_block.splitlines()]
    first = next((line for line in lines if line), "")
    parsed.scripture_reference = _reference_in(scripture_block) or first[:80] or _reference_in(text)

    m = re.search(r"(?im)^\W*theme\W*:\s*(.+)$", text)
    if m:
        parsed.theme = _clean_line(m.group(1))

    prayer = sections.get("prayer", "")
    if not prayer:
        m = re.search(r"(?im)^\W*prayer\W*:\s*(.+)$", text)
        prayer = m.group(1) if m else ""
    parsed.prayer = _clean_line(prayer)

    reflect = sections.get("reflect") or sections.get("reflection questions") or sections.get("questions") or ""
    m = re.search(r"(?is)\*\*reflect:?\*\*:?\s*\n(.+?)(?:\n\s*\n|\Z)", text)
    if m and not reflect:
        reflect = m.group(1)
    parsed.questions = [q.strip() for q in re.findall(r"(?m)^\s*(?:\d+[.)]|[-*])\s+(.+)$", reflect)]

    content = sections.get("reflection") or sections.get("devotional") or sections.get("content") or ""
    if not content:
        # Everything that is not a recognised label or section
        body = re.sub(r"^#\s+.+$", "", preamble, count=1, flags=re.M)
        body = re.sub(r"(?im)^\W*(title|scripture(?: reference)?|theme|prayer)\W*:.*$", "", body)
        body = re.sub(r"(?is)\*\*reflect:?\*\*.*", "", body)
        known = {"scripture", "scripture reading", "prayer", "reflect", "reflection questions", "questions"}
        extra = [v for k, v in sections.items() if k not in known]
        content = "\n\n".join([body.strip()] + extra)
    parsed.content = content.strip()
    return parsed


def _ensure_trailing_amen(text):
    """Ensure prayer ends with Amen."""
    if not re.search(r'(?i)\bamen\b\.?\s*$', text.strip()):
        return text.rstrip() + " Amen.", True
    return text, False


def parse_candidate(raw, target_date, debug=True) -> Candidate:
    """Strict JSON parse, then field extraction, then recorded placeholder defaults."""
    parsed = parse_strict(raw)
    source = "json"
    if isinstance(parsed, ParseFailure):
        if debug:
            print(_c("yellow", f"[PARSE] strict parse failed ({parsed.reason}); extracting fields"))
        try:
            parsed = extract_fields(raw)
        except Exception as e:
            raise DevotionalParseError(f"could not extract fields: {e}") from e
        source = "extracted"

    if not parsed.content:
        raise DevotionalParseError("response has no usable devotional content")

    defaults_used = []
    fixes = []
    title = parsed.title
    if not title:
        title = DEFAULT_TITLE
        defaults_used.append("title")
    for name in ("scripture_reference", "theme", "prayer", "questions"):
        if not getattr(parsed, name):
            defaults_used.append(name)
    prayer = parsed.prayer
    if prayer:
        prayer, fixed = _ensure_trailing_amen(prayer)
        if fixed:
            fixes.append("appended terminal Amen.")
    if defaults_used and debug:
        print(_c("yellow", f"[PARSE] using defaults for: {', '.join(defaults_used)}"))

    return Candidate(
        date=target_date,
        title=title,
        content=parsed.content,
        scripture_reference=parsed.scripture_reference,
        theme=parsed.theme,
        questions=parsed.questions,
        prayer=prayer,
        defaults_used=defaults_used,
        fixes=fixes,
        source=source,
    )


# --- Providers ---
@dataclass(frozen=True)
class Prompt:
    system: str
    user: str


class ProviderAdapter:
    """One OpenAI-compatible chat-completions endpoint, retried on transient failures."""

    def __init__(self, spec: ProviderSpec, llm_config: LLMConfig, client=None, debug=True):
        self.spec = spec
        self.llm = llm_config
        self.debug = debug
        self._client = client

    @property
    def name(self):
        return self.spec.name

    @property
    def client(self):
        if self._client is None:
            api_key = os.getenv(self.spec.api_key_env)
            if not api_key:
                raise ProviderUnavailable(self.name, f"{self.spec.api_key_env} not configured, skipping")
            self._client = OpenAI(
                api_key=api_key,
                base_url=self.spec.base_url,
                timeout=self.llm.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def _on_backoff(self, details):
        print(_c("yellow", f"[LLM] {self.name} {details.get('exception')}; "
                           f"retry {details['tries']} in {details['wait']:.1f}s"))

    def generate(self, prompt: Prompt, temperature=None) -> str:
        """Returns the completion text or raises a ProviderError."""
        call = backoff.on_exception(
            backoff.expo,
            ProviderError,
            max_tries=self.llm.max_tries,
            giveup=lambda e: not e.transient,
            jitter=backoff.full_jitter,
            on_backoff=self._on_backoff,
            factor=self.llm.backoff_factor,
            max_value=self.llm.max_backoff,
        )(self._request)
        return call(prompt, temperature)

    def _request(self, prompt, temperature):
        client = self.client
        if self.spec.temperature is not None:
            temperature = self.spec.temperature
        elif temperature is None:
            temperature = self.llm.temperature
        if self.debug:
            approx_tokens = max(1, (len(prompt.system) + len(prompt.user)) // 4)
            print(_c("cyan", f"[LLM] provider={self.name} model={self.spec.model} "
                             f"temperature={temperature:.2f} ~prompt_tokens≈{approx_tokens}"))
        try:
            response = client.chat.completions.create(
                model=self.spec.model,
                messages=[
                    {"role": "system", "content": prompt.system},
                    {"role": "user", "content": prompt.user},
                ],
                temperature=temperature,
                max_tokens=self.spec.max_tokens or self.llm.max_tokens,
            )
        except APITimeoutError as e:
            raise ProviderTimeout(self.name, "request timed out") from e
        except APIStatusError as e:
            raise ProviderHttpError(self.name, e.status_code, e.message) from e
        except APIConnectionError as e:
            raise ProviderUnavailable(self.name, str(e)) from e
        except APIError as e:
            raise UnusableResponse(self.name, str(e)) from e

        try:
            text = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            text = None
        if not text or not text.strip():
            raise ProviderEmptyResponse(self.name, "returned empty content")
        return text.strip()


class ProviderChain:
    """Providers tried in priority order; the first usable answer wins."""

    def __init__(self, adapters, debug=True):
        self.adapters = list(adapters)
        self.debug = debug

    @classmethod
    def from_config(cls, llm_config: LLMConfig, debug=True):
        return cls([ProviderAdapter(spec, llm_config, debug=debug) for spec in llm_config.providers], debug=debug)

    def generate(self, prompt, temperature=None, parse=None):
        """Returns (provider name, parsed result); raises AllProvidersFailed."""
        failures = []
        for adapter in self.adapters:
            if self.debug:
                print(_c("cyan", f"[LLM] trying {adapter.name}..."))
            try:
                raw = adapter.generate(prompt, temperature)
                result = parse(raw) if parse else raw
            except DevotionalParseError as e:
                failure = UnusableResponse(adapter.name, str(e))
            except ProviderError as e:
                failure = e
            else:
                print(_c("green", f"[LLM] {adapter.name} succeeded"))
                return adapter.name, result
            print(_c("red", f"[LLM] {failure}"))
            failures.append(failure)
        raise AllProvidersFailed(failures)


# --- Sky and season flavour ---
SYNODIC_MONTH = 29.530588853
KNOWN_NEW_MOON = datetime.date(2000, 1, 6)
MOON_PHASES = [
    "New Moon", "Waxing Crescent", "First Quarter", "Waxing Gibbous",
    "Full Moon", "Waning Gibbous", "Last Quarter", "Waning Crescent",
]

THEME_IDEAS = [
    "Phases of the moon and seasons of faith",
    "Constellations and God's promises (Abraham's descendants)",
    "Planets and God's sovereignty over all creation",
    "Meteor showers and God's sudden grace",
    "The Milky Way and our place in God's vast plan",
    "Northern lights and the glory of God",
    "Eclipse events and times of spiritual testing",
    "Morning and evening star and Jesus the light",
    "Deep space and God's infinite nature",
    "Comets and life's brief journey with eternal purpose",
]


def day_of_year(d):
    return d.timetuple().tm_yday


def moon_phase(d):
    """Approximate phase name; good enough for prompt colour, not for navigation."""
    age = (d - KNOWN_NEW_MOON).days % SYNODIC_MONTH
    return MOON_PHASES[int(age / SYNODIC_MONTH * 8 + 0.5) % 8]


def season_for(d, hemisphere="Northern"):
    seasons = ["Winter", "Spring", "Summer", "Fall"]
    idx = {12: 0, 1: 0, 2: 0, 3: 1, 4: 1, 5: 1, 6: 2, 7: 2, 8: 2}.get(d.month, 3)
    if str(hemisphere).lower().startswith("s"):
        idx = (idx + 2) % 4
    return seasons[idx]


# --- Prompt building ---
DEFAULT_VOICE = (
    "You write short, original Christian devotionals that connect faith with the night sky. "
    "Your writing is warm, concrete and theologically sound. You never recycle earlier titles, "
    "phrasing or imagery, and you follow the requested output format exactly."
)


class DevotionalGenerator:
    """Builds the prompts that ask a provider for one devotional."""

    def __init__(self, config: Config, automation=None):
        self.config = config
        self.automation = automation
        self.base_path = Path(config.run.base_path)
        self.identity = self._load_voice()

    def _load_voice(self, max_chars=4000):
        """Loads the optional voice file used as the system prompt."""
        voice_file = self.config.run.voice_file
        if not voice_file:
            return DEFAULT_VOICE
        path = self.base_path / voice_file
        try:
            return path.read_text(encoding="utf-8")[:max_chars]
        except FileNotFoundError:
            print(f"(voice) Missing optional file: {path}")
            return DEFAULT_VOICE

    def _recent_rejections_block(self, last_n=5, max_chars=200):
        """Format recent rejections as short bullet lines for prompt context."""
        if self.automation is None or last_n <= 0:
            return ""
        items = []
        for r in self.automation.recent_rejections(last_n):
            summary = str(r.get("summary", "")).strip().replace("\n", " ")
            if len(summary) > max_chars:
                summary = summary[:max_chars] + "…"
            if summary:
                items.append(f"- {r.get('date')}: {summary}")
        return "\n".join(items)

    def temperature_for(self, attempt):
        llm = self.config.llm
        return min(llm.max_temperature, llm.temperature + attempt * llm.temperature_step)

    def build_prompt(self, target_date, ledger, attempt=1, reason=None, rejected=()):
        novelty = self.config.novelty
        run = self.config.run
        doy = day_of_year(target_date)

        titles = ledger.recent_titles(novelty.hint_titles)
        scriptures = ledger.recent_scriptures(count=novelty.hint_scriptures)
        for c in rejected:
            titles.append(c.title)
            if c.scripture_reference:
                scriptures.append(c.scripture_reference)
        titles = list(dict.fromkeys(titles))[-(novelty.hint_titles + 5):]
        scriptures = list(dict.fromkeys(scriptures))[-(novelty.hint_scriptures + 15):]

        blocks = [
            f'You are writing devotional #{doy} for {target_date.isoformat()} '
            f'({season_for(target_date, run.hemisphere)} season, {run.hemisphere} hemisphere, '
            f'{moon_phase(target_date)}) for "{run.app_name}" - a Christian devotional app that '
            f'connects faith with celestial observations.',
            "CRITICAL REQUIREMENTS FOR UNIQUENESS:\n"
            "1. Create a completely fresh and original devotional - avoid repeating themes from recent devotionals\n"
            f"2. Choose a scripture passage not used in the last {novelty.scripture_lookback_days} days\n"
            "3. Use a unique title that hasn't been used before\n"
            "4. Concrete imagery and specific details; avoid cliches",
        ]
        if titles:
            blocks.append("Recent titles to AVOID repeating:\n" + "\n".join(f'- "{t}"' for t in titles))
        if scriptures:
            blocks.append("Recent scriptures used (choose something DIFFERENT):\n"
                          + "; ".join(scriptures))
        pitfalls = self._recent_rejections_block(novelty.hint_rejections)
        if pitfalls:
            blocks.append("Recent drafts were rejected for:\n" + pitfalls)

        start = doy % len(THEME_IDEAS)
        ideas = [THEME_IDEAS[(start + i) % len(THEME_IDEAS)] for i in range(5)]
        blocks.append("THEME IDEAS FOR VARIETY (pick one that feels fresh):\n"
                      + "\n".join(f"- {t}" for t in ideas))

        if attempt > 1:
            hint = reason.hint() if reason is not None else (
                "The previous attempt failed. Please create something MORE UNIQUE.")
            blocks.append(f"ATTEMPT #{attempt}: Additional constraint due to previous attempt: {hint}")

        blocks.append(
            "Return ONLY a JSON object with keys: title, scriptureReference, content "
            "(a 200-300 word reflection), questions (array of 2-3 reflection questions), "
            "prayer (one line ending in Amen.), theme (two or three words)."
        )
        return Prompt(system=self.identity, user="\n\n".join(blocks))


# --- Fallback library ---
FALLBACK_DEVOTIONALS = [
    {
        "title": "The Patient Light of Distant Stars",
        "scripture_reference": "Psalm 19:1",
        "theme": "Creation's witness",
        "content": (
            "Some of the starlight reaching your eyes tonight left its source long before you were born. "
            "It travelled in silence across unimaginable distance, never hurrying, never failing, until it "
            "arrived exactly where you stand. The heavens declare the glory of God not with words but with "
            "faithfulness. Day after day and night after night they keep speaking. Our own faith often feels "
            "slow and far away, as if the light of God's promises is still on its journey. Yet what He has "
            "spoken is already on its way, and it will arrive. Step outside, find one steady star, and let it "
            "remind you that God's timing is patient, precise and full of glory."
        ),
        "questions": [
            "Which promise of God feels like light still on its way to you?",
            "How can you practise patient trust this week?",
        ],
        "prayer": "Faithful God, teach me to trust the light You have already sent. Amen.",
    },
    {
        "title": "Named Among the Numberless",
        "scripture_reference": "Isaiah 40:26",
        "theme": "Known by God",
        "content": (
            "Isaiah invites us to lift our eyes and ask who created the stars. The answer comes with a "
            "surprising detail: the One who brings out the starry host calls each of them by name. Not one "
            "is missing. Astronomers now count galaxies in the hundreds of billions, each crowded with suns, "
            "and still the prophet's word stands. If God keeps track of every burning star, He has not lost "
            "track of you. When you feel unseen at work, overlooked by friends, or forgotten in your waiting, "
            "remember that the Maker of the constellations knows your name and your need. His strength does "
            "not fade, and His attention does not wander."
        ),
        "questions": [
            "Where do you feel overlooked right now?",
            "What changes if you believe God calls you by name?",
        ],
        "prayer": "Lord of the starry host, thank You for knowing me by name. Amen.",
    },
    {
        "title": "A Lamp for the Darkest Hour",
        "scripture_reference": "John 1:5",
        "theme": "Light in darkness",
        "content": (
            "The darkest part of the night usually comes just before dawn. Anyone who has kept watch with a "
            "sick child or sat awake with worry knows how long those hours can feel. John writes that the "
            "light shines in the darkness, and the darkness has not overcome it. Notice the tense: the light "
            "shines, right now, in the middle of the dark. Christ does not wait for our circumstances to "
            "brighten before He comes near. He steps into the night with us. Tonight, if the sky is clouded "
            "and your heart is heavy, remember that the darkness has never once extinguished Him, and it "
            "will not begin with you."
        ),
        "questions": [
            "What darkness are you sitting in today?",
            "How has Christ shone into a past night of your life?",
        ],
        "prayer": "Jesus, Light of the world, shine into my darkest hour. Amen.",
    },
    {
        "title": "The Moon Borrows Its Glow",
        "scripture_reference": "Matthew 5:14-16",
        "theme": "Reflected light",
        "content": (
            "The moon has no light of its own. Every silver beam that falls across a field at night is "
            "sunlight, caught and turned back toward the earth. Even a thin crescent is enough to throw "
            "shadows. Jesus tells His followers that they are the light of the world, but the light we carry "
            "is borrowed too. We shine best when we stay turned toward the Son. On nights when you feel "
            "small or dim, remember that the moon does not strain to glow; it simply faces the sun. Face Him "
            "today in prayer and in quiet obedience, and let your ordinary kindness become a reflection that "
            "helps someone else find their way home."
        ),
        "questions": [
            "What turns your attention away from Christ most often?",
            "Who might need to see His light reflected through you today?",
        ],
        "prayer": "Son of God, keep my face turned toward You so I can reflect Your light. Amen.",
    },
    {
        "title": "Counting What Cannot Be Counted",
        "scripture_reference": "Genesis 15:5",
        "theme": "Promise and hope",
        "content": (
            "God took Abraham outside, away from the tent and its small lamp, and told him to count the stars "
            "if he could. It was not a math lesson. It was an invitation to let the size of the sky stretch "
            "the size of his hope. Abraham was old, his future looked closed, and still he believed. Many of "
            "us live inside our tents, measuring our lives by what we can see and control. The Lord still "
            "calls us outside. Look up tonight and try to count. When you lose track, let that be your "
            "answer: His promises are larger than your arithmetic, and His faithfulness reaches further than "
            "your sight."
        ),
        "questions": [
            "What tent of small expectations do you need to step out of?",
            "Which promise are you trying to measure by your own resources?",
        ],
        "prayer": "God of Abraham, enlarge my hope to match Your promises. Amen.",
    },
    {
        "title": "When the Heavens Fall Silent",
        "scripture_reference": "Psalm 46:10",
        "theme": "Stillness",
        "content": (
            "Far from city lights the night sky grows quiet in a way that almost feels loud. No traffic, no "
            "screens, only the slow wheel of the stars overhead. In that hush the psalmist's words land "
            "differently: be still, and know that I am God. Stillness is not emptiness. It is the posture of "
            "someone who has stopped trying to hold the universe together. The stars keep their courses "
            "without our help, and so do the purposes of God. Set aside five minutes today to be still before "
            "Him. Let the noise settle, breathe slowly, and rest in the One who is exalted over every nation "
            "and every galaxy."
        ),
        "questions": [
            "What noise most often crowds out God's voice?",
            "Where could you make room for stillness today?",
        ],
        "prayer": "Lord, quiet my heart so that I may know You are God. Amen.",
    },
    {
        "title": "Fixed Points for Wandering Travellers",
        "scripture_reference": "Hebrews 6:19",
        "theme": "Steadfast hope",
        "content": (
            "For centuries sailors crossed dark oceans by fixing their eyes on the northern star. Waves rose "
            "and winds shifted, but that one point in the sky held still, and they could find their way. "
            "Hebrews calls our hope in Christ an anchor for the soul, firm and secure. Feelings drift and "
            "circumstances change direction without warning, yet Jesus remains the fixed point. When you are "
            "unsure which way to turn, do not begin with the waves; begin with Him. Return to what you know "
            "is true about His character, and let that steady you until the morning comes."
        ),
        "questions": [
            "What has been pulling you off course lately?",
            "What truth about Jesus can you hold onto as a fixed point?",
        ],
        "prayer": "Jesus, anchor my soul in You when everything else is moving. Amen.",
    },
]


def select_fallback(target_date, ledger=None, attempts=0) -> Artifact:
    """Picks a canned devotional seeded by the date; same day, same fallback."""
    digest = hashlib.sha256(target_date.isoformat().encode("utf-8")).hexdigest()
    entry = FALLBACK_DEVOTIONALS[int(digest, 16) % len(FALLBACK_DEVOTIONALS)]
    title = entry["title"]
    if ledger is not None and normalize(title) in {e.title for e in ledger}:
        title = f"{title} ({target_date.isoformat()})"
    return Artifact(
        date=target_date,
        title=title,
        content=entry["content"],
        scripture_reference=entry["scripture_reference"],
        theme=entry["theme"],
        questions=list(entry["questions"]),
        prayer=entry["prayer"],
        provenance="fallback",
        is_fallback=True,
        attempts=attempts,
    )


# --- Persistence ---
def format_markdown(artifact: Artifact) -> str:
    lines = [f"# {artifact.title}", ""]
    if artifact.scripture_reference:
        lines += [f"**Scripture:** {artifact.scripture_reference}", ""]
    lines += [artifact.content.strip(), ""]
    if artifact.questions:
        lines.append("**Reflect:**")
        lines += [f"{i}. {q}" for i, q in enumerate(artifact.questions, 1)]
        lines.append("")
    if artifact.prayer:
        lines += [f"**Prayer:** {artifact.prayer}", ""]
    return "\n".join(lines)


def upgrade_record(record):
    """Projects an older {date, content_markdown, ...} record onto the current artifact keys."""
    if not isinstance(record, dict) or not isinstance(record.get("content_markdown"), str):
        return record
    if record.get("title") and record.get("content"):
        return record
    parsed = extract_fields(record["content_markdown"])
    upgraded = dict(record)
    for key in ("title", "content", "scripture_reference", "theme", "questions", "prayer"):
        if not upgraded.get(key):
            upgraded[key] = getattr(parsed, key)
    upgraded.setdefault("provenance", record.get("provider") or "legacy")
    upgraded.setdefault("created_at", record.get("generated_at") or "")
    return upgraded


class DevotionalAutomation:
    """Manages all file I/O for devotionals and their bookkeeping files."""

    def __init__(self, base_path, output_dir="devotionals", debug=True):
        self.base_path = Path(base_path)
        self.debug = debug
        self.paths = {
            "devotionals": self.base_path / output_dir,
            "index": self.base_path / "content_tracker.json",
            "log": self.base_path / "supervisor_log.txt",
            "rejections": self.base_path / "rejections.jsonl",
        }
        try:
            self.paths["devotionals"].mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"cannot create {self.paths['devotionals']}: {e}") from e

    def get_artifact_path(self, date):
        return self.paths["devotionals"] / f"{date.isoformat()}.json"

    def get_markdown_path(self, date):
        return self.paths["devotionals"] / f"{date.isoformat()}.md"

    def list_dates(self):
        try:
            names = os.listdir(self.paths["devotionals"])
        except OSError as e:
            raise StorageError(f"cannot list {self.paths['devotionals']}: {e}") from e
        dates = []
        for name in names:
            m = DATE_FILE.match(name)
            if not m:
                continue
            try:
                dates.append(datetime.date.fromisoformat(m.group(1)))
            except ValueError:
                continue
        return sorted(dates)

    def exists(self, date):
        return self.get_artifact_path(date).exists()

    def read_artifact(self, date):
        with open(self.get_artifact_path(date), 'r', encoding='utf-8') as f:
            return json.load(f)

    def recent_records(self, window):
        """Raw records for the newest `window` dates; unreadable files are skipped."""
        dates = self.list_dates()[-window:]
        records = []
        for d in dates:
            try:
                records.append(upgrade_record(self.read_artifact(d)))
            except (OSError, ValueError) as e:
                print(_c("yellow", f"Could not read {self.get_artifact_path(d).name}: {e}"))
        return records

    def _stage(self, path, text):
        """Writes text to a synced temp file beside path and returns the temp name."""
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
        except BaseException:
            with suppress(OSError):
                os.unlink(tmp)
            raise
        return tmp

    def _atomic_write(self, path, text):
        tmp = self._stage(path, text)
        try:
            os.replace(tmp, path)
        except BaseException:
            with suppress(OSError):
                os.unlink(tmp)
            raise

    def save_artifact(self, artifact: Artifact, overwrite=False):
        """Stages Markdown and JSON, then swaps both in. None if another run won."""
        json_path = self.get_artifact_path(artifact.date)
        md_path = self.get_markdown_path(artifact.date)
        if not overwrite and json_path.exists():
            print(_c("yellow", f"[SAVE] {json_path.name} appeared during this run; leaving it untouched."))
            return None
        staged = []
        try:
            staged.append(self._stage(md_path, format_markdown(artifact)))
            staged.append(self._stage(json_path, json.dumps(artifact.to_dict(), indent=2, ensure_ascii=False) + "\n"))
            previous_md = md_path.read_text(encoding="utf-8") if md_path.exists() else None
            os.replace(staged[0], md_path)
            try:
                os.replace(staged[1], json_path)
            except OSError:
                # The Markdown must never be newer than the JSON beside it
                if previous_md is None:
                    with suppress(OSError):
                        md_path.unlink()
                else:
                    with suppress(OSError):
                        self._atomic_write(md_path, previous_md)
                raise
        except OSError as e:
            for tmp in staged:
                with suppress(OSError):
                    os.unlink(tmp)
            raise StorageError(f"could not write devotional for {artifact.date.isoformat()}: {e}") from e
        return json_path

    def update_index(self):
        """Rewrites content_tracker.json: latest entry, count, and a light per-file index."""
        records = []
        for d in self.list_dates():
            name = self.get_artifact_path(d).name
            try:
                artifact = Artifact.from_dict(upgrade_record(self.read_artifact(d)))
            except (OSError, ValueError, TypeError) as e:
                print(_c("yellow", f"[INDEX] skipping {name}: {e}"))
                continue
            records.append({
                "file": name,
                "date": artifact.date.isoformat(),
                "title": artifact.title,
                "scripture_reference": artifact.scripture_reference,
                "theme": artifact.theme,
                "provenance": artifact.provenance,
                "is_fallback": artifact.is_fallback,
                "created_at": artifact.created_at,
                "version": artifact.version,
            })
        out = {"latest": records[-1] if records else None, "count": len(records), "files": records}
        try:
            self._atomic_write(self.paths["index"], json.dumps(out, indent=2, ensure_ascii=False) + "\n")
        except OSError as e:
            print(_c("red", f"[INDEX] could not update {self.paths['index'].name}: {e}"))
            return None
        if self.debug:
            print(_c("cyan", f"[INDEX] Updated {self.paths['index'].name}: {len(records)} items"))
        return out

    def log_to_supervisor(self, artifact: Artifact):
        checksum = hashlib.sha256(artifact.content.encode('utf-8')).hexdigest()
        log_entry = (
            f"\n--- Devotional {artifact.date.isoformat()} Logged ---\n"
            f"Timestamp: {datetime.datetime.now().isoformat()}\n"
            f"Provenance: {artifact.provenance}{' (fallback)' if artifact.is_fallback else ''}\n"
            f"Attempts: {artifact.attempts}\n"
            f"Content Checksum: {checksum}\n"
        )
        try:
            with open(self.paths["log"], 'a', encoding='utf-8') as f:
                f.write(log_entry)
        except OSError as e:
            print(_c("red", f"[LOG] could not append to {self.paths['log'].name}: {e}"))

    def record_rejection(self, date, attempt, provider, summary, details=None):
        record = {
            "date": date.isoformat(),
            "attempt": attempt,
            "provider": provider,
            "timestamp": datetime.datetime.now().isoformat(),
            "summary": summary,
        }
        record.update(details or {})
        try:
            with open(self.paths["rejections"], "a", encoding="utf-8") as jf:
                jf.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as e:
            print(_c("red", f"[LOG] could not append to {self.paths['rejections'].name}: {e}"))

    def recent_rejections(self, last_n=5):
        """Read last N novelty rejection records."""
        ledger = self.paths["rejections"]
        if not ledger.exists():
            return []
        try:
            lines = ledger.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []
        recent = []
        for line in reversed(lines):
            try:
                record = json.loads(line)
            except ValueError:
                continue
            if record.get("kind") == "all_providers_failed":
                continue
            recent.append(record)
            if len(recent) >= last_n:
                break
        return list(reversed(recent))


# --- Orchestration ---
@dataclass(frozen=True)
class RunResult:
    date: datetime.date
    status: str
    artifact: Optional[Artifact] = None
    path: Optional[Path] = None
    attempts: int = 0


class DevotionalOrchestrator:
    """Top-level class that takes one date from ledger load to a persisted devotional."""

    def __init__(self, config: Config, chain=None, automation=None, gate=None):
        self.config = config
        self.debug = config.run.debug
        content_tracker.DEBUG = self.debug
        self.automation = automation or DevotionalAutomation(
            config.run.base_path, config.run.output_dir, debug=self.debug)
        self.chain = chain if chain is not None else ProviderChain.from_config(config.llm, debug=self.debug)
        self.gate = gate or NoveltyGate.from_config(config.novelty, debug=self.debug)
        self.generator = DevotionalGenerator(config, self.automation)

    def load_ledger(self, target_date, force=False):
        novelty = self.config.novelty
        records = self.automation.recent_records(novelty.ledger_window)
        ledger = ContentLedger.load(records, capacity=novelty.ledger_window,
                                    min_token_length=novelty.min_token_length, debug=self.debug)
        if force:
            ledger.discard(target_date)
        return ledger

    def run(self, target_date=None, force=False) -> RunResult:
        target_date = target_date or datetime.date.today()
        print(f"\n--- Starting Devotional {target_date.isoformat()} ---")

        if self.automation.exists(target_date) and not force:
            print(f"Devotional for {target_date.isoformat()} already exists. Use --force to replace.")
            return RunResult(target_date, "skipped", path=self.automation.get_artifact_path(target_date))

        ledger = self.load_ledger(target_date, force)
        artifact = self.generate(target_date, ledger)

        path = self.automation.save_artifact(artifact, overwrite=force)
        if path is None:
            return RunResult(target_date, "skipped", path=self.automation.get_artifact_path(target_date),
                             attempts=artifact.attempts)

        ledger.append(LedgerEntry.from_record(artifact.to_dict(), self.config.novelty.min_token_length))
        try:
            self.automation.log_to_supervisor(artifact)
            self.automation.update_index()
        except Exception as e:
            print(_c("red", f"[INDEX] bookkeeping failed after save: {e}"))

        print(_c("green", f"[SAVE] Wrote devotional to {path}"))
        if self.debug:
            print(_c("cyan", f" Title: {artifact.title}"))
            print(_c("cyan", f" Provenance: {artifact.provenance} after {artifact.attempts} attempt(s)"))
            print(_c("cyan", f" Words: {artifact.word_count}, checked against {len(ledger) - 1} recent devotionals"))
        return RunResult(target_date, "written", artifact, path, artifact.attempts)

    def generate(self, target_date, ledger) -> Artifact:
        """Generate, validate, retry with tightened hints; deterministic fallback when out of budget."""
        max_attempts = self.config.run.max_attempts
        reason = None
        rejected = []

        def parse(raw):
            return parse_candidate(raw, target_date, debug=self.debug)

        for attempt in range(1, max_attempts + 1):
            print(_c("cyan", f"\n[ATTEMPT] Generation attempt {attempt}/{max_attempts}"))
            prompt = self.generator.build_prompt(target_date, ledger, attempt, reason, rejected)
            try:
                provider, candidate = self.chain.generate(
                    prompt, self.generator.temperature_for(attempt), parse=parse)
            except AllProvidersFailed as e:
                print(_c("red", f"[ATTEMPT] {e}"))
                self.automation.record_rejection(
                    target_date, attempt, None, str(e), {"kind": "all_providers_failed"})
                continue

            for fix in candidate.fixes:
                print(_c("yellow", f"[FIX] {fix}"))
            result = self.gate.validate(candidate, ledger, target_date)
            if result.accepted:
                return candidate.to_artifact(provenance=provider, attempts=attempt)

            reason = result.reason
            rejected.append(candidate)
            self.automation.record_rejection(
                target_date, attempt, provider, reason.describe(), reason.to_record())

        print(_c("yellow", f"[FALLBACK] Could not produce a unique devotional after {max_attempts} "
                           f"attempt(s). Using the local fallback."))
        return select_fallback(target_date, ledger, attempts=max_attempts)


# --- CLI ---
class _Tee:
    def __init__(self, path):
        path.parent.mkdir(parents=True, exist_ok=True)
        self.file = open(path, "w", encoding="utf-8")
        self.stream = sys.stdout

    def write(self, s):
        self.stream.write(s)
        self.file.write(s)

    def flush(self):
        self.stream.flush()
        self.file.flush()

    def close(self):
        sys.stdout = self.stream
        self.file.close()


def main(argv=None):
    load_dotenv()
    parser = argparse.ArgumentParser(description="Generate a daily devotional with anti-repetition safeguards.")
    parser.add_argument("--config", default=os.getenv("DEVOTIONAL_CONFIG", "config.yaml"))
    parser.add_argument("--date", default=os.getenv("TARGET_DATE"), help="target date, YYYY-MM-DD")
    parser.add_argument("--force", action="store_true",
                        default=os.getenv("FORCE_OVERWRITE", "false").lower() == "true",
                        help="replace an existing devotional for the date")
    args = parser.parse_args(argv)

    target_date = None
    if args.date:
        try:
            target_date = datetime.date.fromisoformat(args.date)
        except ValueError:
            parser.error(f"invalid --date {args.date!r}, expected YYYY-MM-DD")

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(_c("red", f"CRITICAL: could not load configuration: {e}"))
        return 1

    tee = None
    if config.run.tee_log:
        stamp = datetime.datetime.now().strftime('%Y%m%d_%H%M%S')
        try:
            tee = _Tee(Path(config.run.base_path) / "logs" / f"run_{stamp}.log")
            sys.stdout = tee
        except OSError as e:
            print(_c("yellow", f"(log) could not open run log: {e}"))

    label = (target_date or datetime.date.today()).isoformat()
    try:
        DevotionalOrchestrator(config).run(target_date, force=args.force)
        return 0
    except StorageError as e:
        print(_c("red", f"\n!!! RUN FAILED for {label}: {e} !!!"))
        return 1
    except Exception as e:
        print(f"\n!!! AUTOMATION HALTED on {label} !!!")
        print(f"Error: {e}")
        traceback.print_exc()
        return 1
    finally:
        if tee is not None:
            tee.close()


if __name__ == "__main__":
    sys.exit(main())
