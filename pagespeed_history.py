# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
# ]
# ///
"""PageSpeed History CLI Tool.

Runs Google PageSpeed Insights performance audits for individual URLs,
classifies the lab metrics against fixed quality thresholds, and keeps an
ordered, persisted history of runs that can be re-run in place.
"""

from __future__ import annotations

import argparse
import html
import json
import locale
import math
import os
import re
import sys
import tomllib
import webbrowser
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import pandas as pd
import requests

__version__ = "0.3.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
REQUEST_TIMEOUT = 120

VALID_STRATEGIES = ("mobile", "desktop")
VALID_EXPORT_FORMATS = ("csv", "json")

DEFAULT_STRATEGY = "mobile"
DEFAULT_EXPORT_FORMAT = "csv"
DEFAULT_OUTPUT_DIR = "./reports"

STORAGE_KEY = "pageSpeedResults"
API_KEY_ENV_VARS = ("PAGESPEED_API_KEY", "GOOGLE_PAGE_SPEED_API_KEY")

CONFIG_FILENAMES = ["pagespeed-history.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "pagespeed-history",
]
DEFAULT_HISTORY_FILE = Path.home() / ".config" / "pagespeed-history" / "history.json"

# Audits read from the lighthouse result: (audit_id, metric_field)
REQUIRED_AUDITS = [
    ("first-contentful-paint", "fcp"),
    ("largest-contentful-paint", "lcp"),
    ("interactive", "tti"),
    ("total-blocking-time", "tbt"),
    ("cumulative-layout-shift", "cls"),
]

METRIC_FIELDS = tuple(field for _, field in REQUIRED_AUDITS)

QUALITY_GOOD = "good"
QUALITY_NEEDS_IMPROVEMENT = "needs-improvement"
QUALITY_POOR = "poor"

# Cutoffs per metric kind: (good, needs_improvement).
# The score is on a 0-100 scale where higher is better; every other metric
# is better when lower.
QUALITY_THRESHOLDS = {
    "score": (90, 50),
    "fcp": (2, 3),
    "lcp": (2.5, 4),
    "tti": (3.8, 7.3),
    "tbt": (300, 600),
    "cls": (0.1, 0.25),
}

# (column label, unit)
METRIC_DISPLAY = {
    "score": ("Score", ""),
    "fcp": ("FCP", "s"),
    "lcp": ("LCP", "s"),
    "tti": ("TTI", "s"),
    "tbt": ("TBT", "ms"),
    "cls": ("CLS", ""),
}

QUALITY_COLORS = {
    QUALITY_GOOD: "#4CAF50",
    QUALITY_NEEDS_IMPROVEMENT: "#FFC107",
    QUALITY_POOR: "#F44336",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PageSpeedError(Exception):
    """Base class for all errors raised by this tool."""


class MissingCredentialError(PageSpeedError):
    """Raised when no PageSpeed API key is configured."""


class ProviderRequestError(PageSpeedError):
    """Raised when the PageSpeed API request fails or returns an error."""


class MalformedResponseError(PageSpeedError):
    """Raised when a successful API response lacks an expected field."""


class MalformedMetricError(MalformedResponseError):
    """Raised when an audit display value cannot be parsed to a number."""


class HistoryIndexError(PageSpeedError, IndexError):
    """Raised when a history position does not exist."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Metrics:
    fcp: float  # seconds
    lcp: float  # seconds
    tti: float  # seconds
    tbt: float  # milliseconds
    cls: float


@dataclass(frozen=True)
class PerformanceResult:
    """One completed analysis run. Never mutated; a re-run builds a new one."""

    url: str
    strategy: str
    date: str
    score: int
    metrics: Metrics

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> PerformanceResult:
        """Rebuild a record from its persisted form.

        Raises KeyError, TypeError or ValueError when the entry is malformed.
        """
        strategy = data["strategy"]
        if strategy not in VALID_STRATEGIES:
            raise ValueError(f"unknown strategy {strategy!r}")
        raw_metrics = data["metrics"]
        metrics = Metrics(**{field: _finite_number(raw_metrics[field]) for field in METRIC_FIELDS})
        return cls(
            url=str(data["url"]),
            strategy=strategy,
            date=str(data["date"]),
            score=round(_finite_number(data["score"])),
            metrics=metrics,
        )


def _finite_number(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected a number, got {value!r}")
    if not math.isfinite(value):
        raise ValueError(f"expected a finite number, got {value!r}")
    return float(value)


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def load_thresholds(config: dict) -> dict[str, tuple[float, float]]:
    """Merge the config's [thresholds] table over the built-in cutoffs.

    Each override is a two-element array, e.g. ``lcp = [2.0, 3.5]``.
    """
    thresholds = dict(QUALITY_THRESHOLDS)
    for kind, cutoffs in config.get("thresholds", {}).items():
        if kind not in QUALITY_THRESHOLDS:
            valid = ", ".join(QUALITY_THRESHOLDS)
            print(f"Error: unknown threshold '{kind}' in config. Valid: {valid}", file=sys.stderr)
            sys.exit(1)
        if (
            not isinstance(cutoffs, list)
            or len(cutoffs) != 2
            or not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in cutoffs)
        ):
            print(f"Error: threshold '{kind}' must be a pair of numbers, got {cutoffs!r}", file=sys.stderr)
            sys.exit(1)
        good, needs_improvement = cutoffs
        in_order = good >= needs_improvement if kind == "score" else good <= needs_improvement
        if not in_order:
            print(f"Error: threshold '{kind}' cutoffs are out of order: {cutoffs!r}", file=sys.stderr)
            sys.exit(1)
        thresholds[kind] = (good, needs_improvement)
    return thresholds


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    config_key_map = {
        "api_key": "api_key",
        "strategy": "strategy",
        "history_file": "history_file",
        "output_dir": "output_dir",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        for env_var in API_KEY_ENV_VARS:
            env_key = os.environ.get(env_var)
            if env_key:
                args.api_key = env_key
                break

    return args


def require_api_key(api_key: str | None) -> str:
    """Return the API key, or raise MissingCredentialError when it is unset."""
    if not api_key or not str(api_key).strip():
        names = " or ".join(API_KEY_ENV_VARS)
        raise MissingCredentialError(
            f"missing API configuration: pass --api-key, set api_key in the config file, or set {names}"
        )
    return str(api_key).strip()


def resolve_history_path(history_file: str | Path | None) -> Path:
    if not history_file:
        return DEFAULT_HISTORY_FILE
    return Path(history_file).expanduser()


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="pagespeed-history",
        description="Analyze page performance with PageSpeed Insights and keep a history of results",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="Google API key (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")
    parser.add_argument("--history-file", dest="history_file", action=TrackingAction, default=None, help=f"History file (default: {DEFAULT_HISTORY_FILE})")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- analyze ---
    analyze_parser = subparsers.add_parser("analyze", help="Analyze a URL and add the result to the history")
    analyze_parser.add_argument("url", help="URL to analyze")
    analyze_parser.add_argument("-s", "--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=VALID_STRATEGIES, help="Strategy: mobile or desktop")

    # --- rerun ---
    rerun_parser = subparsers.add_parser("rerun", help="Re-run the history entry at INDEX in place")
    rerun_parser.add_argument("index", type=int, help="Position in the history table (0 = first row)")

    # --- history ---
    subparsers.add_parser("history", help="Show the stored history")

    # --- export ---
    export_parser = subparsers.add_parser("export", help="Export the history as CSV or JSON")
    export_parser.add_argument("--format", dest="export_format", default=DEFAULT_EXPORT_FORMAT, choices=VALID_EXPORT_FORMATS, help="Output format: csv or json")
    export_parser.add_argument("-o", "--output", dest="output", default=None, help="Output file path (default: stdout)")

    # --- report ---
    report_parser = subparsers.add_parser("report", help="Generate an HTML report of the history")
    report_parser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Output HTML file path")
    report_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for auto-named output files")
    report_parser.add_argument("--open", dest="open_browser", action=TrackingStoreTrueAction, default=False, help="Auto-open report in browser")

    # --- clear ---
    subparsers.add_parser("clear", help="Delete every stored result")

    return parser


# ---------------------------------------------------------------------------
# Metric Extraction
# ---------------------------------------------------------------------------

_NON_NUMERIC = re.compile(r"[^0-9.]")
_LEADING_FLOAT = re.compile(r"[0-9]+(?:\.[0-9]*)?|\.[0-9]+")
_CLS_VALUE = re.compile(r"\s*(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)\s*")


def extract_numeric(display_value: str) -> float:
    """Convert an audit display value such as "1.2 s" or "320 ms" to a number.

    Every character that is not a digit or a decimal point is stripped and the
    leading float of the remainder is parsed. Thousands separators therefore
    disappear ("1,230 ms" -> 1230.0).

    Raises MalformedMetricError when no number can be recovered.
    """
    if not isinstance(display_value, str):
        raise MalformedMetricError(f"expected a display string, got {display_value!r}")
    match = _LEADING_FLOAT.match(_NON_NUMERIC.sub("", display_value))
    if not match:
        raise MalformedMetricError(f"no numeric value in {display_value!r}")
    return float(match.group())


def parse_cls(display_value: str) -> float:
    """Parse a cumulative layout shift display value, which carries no unit."""
    if not isinstance(display_value, str) or not _CLS_VALUE.fullmatch(display_value):
        raise MalformedMetricError(f"cannot parse layout shift value {display_value!r}")
    value = float(display_value)
    if not math.isfinite(value):
        raise MalformedMetricError(f"cannot parse layout shift value {display_value!r}")
    return value


# ---------------------------------------------------------------------------
# Threshold Classification
# ---------------------------------------------------------------------------


def classify(value: float, good_cutoff: float, needs_improvement_cutoff: float) -> str:
    """Classify a lower-is-better metric. Both cutoffs are inclusive."""
    if value <= good_cutoff:
        return QUALITY_GOOD
    if value <= needs_improvement_cutoff:
        return QUALITY_NEEDS_IMPROVEMENT
    return QUALITY_POOR


def classify_score(score: float, good_cutoff: float = 90, needs_improvement_cutoff: float = 50) -> str:
    """Classify a 0-100 performance score, where higher is better."""
    if score >= good_cutoff:
        return QUALITY_GOOD
    if score >= needs_improvement_cutoff:
        return QUALITY_NEEDS_IMPROVEMENT
    return QUALITY_POOR


def classify_metric(kind: str, value: float, thresholds: dict | None = None) -> str:
    """Classify ``value`` for a metric kind ("score", "fcp", "lcp", ...)."""
    good_cutoff, needs_improvement_cutoff = (thresholds or QUALITY_THRESHOLDS)[kind]
    if kind == "score":
        return classify_score(value, good_cutoff, needs_improvement_cutoff)
    return classify(value, good_cutoff, needs_improvement_cutoff)


def classify_result(result: PerformanceResult, thresholds: dict | None = None) -> dict[str, str]:
    """Return the quality verdict for the score and each metric of a result."""
    verdicts = {"score": classify_metric("score", result.score, thresholds)}
    for field in METRIC_FIELDS:
        verdicts[field] = classify_metric(field, getattr(result.metrics, field), thresholds)
    return verdicts


# ---------------------------------------------------------------------------
# Result Building
# ---------------------------------------------------------------------------


def _lookup(data, *path):
    """Walk nested dicts, returning None as soon as a step is missing."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def format_capture_date(timestamp: datetime) -> str:
    """Format a capture time using the current LC_TIME locale's date and time.

    main() adopts the user's environment locale, so "%x %X" follows it.
    """
    return timestamp.strftime("%x %X")


def build_result(
    url: str,
    strategy: str,
    api_response: dict,
    timestamp: datetime | None = None,
) -> PerformanceResult:
    """Turn a raw PageSpeed API response into a PerformanceResult.

    The performance score is stored on a 0-100 scale. Raises
    MalformedResponseError when the score or any required audit display
    value is missing, and MalformedMetricError when one cannot be parsed.
    """
    if strategy not in VALID_STRATEGIES:
        raise ValueError(f"invalid strategy {strategy!r}; expected one of {', '.join(VALID_STRATEGIES)}")

    lighthouse = _lookup(api_response, "lighthouseResult")
    if not isinstance(lighthouse, dict):
        raise MalformedResponseError(f"no lighthouseResult in response for {url} ({strategy})")

    score = _lookup(lighthouse, "categories", "performance", "score")
    if isinstance(score, bool) or not isinstance(score, (int, float)) or not math.isfinite(score):
        raise MalformedResponseError(f"missing performance score for {url} ({strategy})")

    values: dict[str, float] = {}
    for audit_id, field in REQUIRED_AUDITS:
        display_value = _lookup(lighthouse, "audits", audit_id, "displayValue")
        if display_value is None:
            raise MalformedResponseError(f"missing audit '{audit_id}' for {url} ({strategy})")
        parser = parse_cls if field == "cls" else extract_numeric
        try:
            values[field] = parser(display_value)
        except MalformedMetricError as exc:
            raise MalformedMetricError(f"audit '{audit_id}' for {url} ({strategy}): {exc}") from exc

    captured_at = timestamp or datetime.now()
    return PerformanceResult(
        url=url,
        strategy=strategy,
        date=format_capture_date(captured_at),
        score=round(score * 100),
        metrics=Metrics(**values),
    )


# ---------------------------------------------------------------------------
# History Storage
# ---------------------------------------------------------------------------


class JsonFileTransport:
    """Key-value persistence backed by a single JSON object on disk.

    Each key holds one serialized string. Writes go to a temporary file that
    is then renamed over the original, so a failed write leaves the previous
    contents in place.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read_all(self) -> dict:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            print(f"Warning: cannot read history file {self.path}: {exc}", file=sys.stderr)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> str | None:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + f".tmp.{os.getpid()}")
        try:
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise


class HistoryStore:
    """Ordered history of PerformanceResult records, newest first.

    The store is the only owner of the list. Every mutation writes the full
    new list to the transport before it replaces the in-memory copy, so both
    stay identical after a successful call and untouched after a failed one.
    A re-run keeps its slot, so a freshly dated record can sit below older
    ones. The persisted list is read on first access if load() was never
    called.
    """

    def __init__(self, transport, key: str = STORAGE_KEY) -> None:
        self.transport = transport
        self.key = key
        self._results: list[PerformanceResult] = []
        self._loaded = False

    def __len__(self) -> int:
        self._ensure_loaded()
        return len(self._results)

    @property
    def results(self) -> list[PerformanceResult]:
        self._ensure_loaded()
        return list(self._results)

    def load(self) -> list[PerformanceResult]:
        """Read the persisted history. Absent or unreadable data loads as empty."""
        self._results = self._read()
        self._loaded = True
        return self.results

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _read(self) -> list[PerformanceResult]:
        try:
            blob = self.transport.get(self.key)
        except OSError as exc:
            print(f"Warning: cannot read history: {exc}", file=sys.stderr)
            return []
        if blob is None:
            return []
        try:
            raw = json.loads(blob)
            if not isinstance(raw, list):
                raise ValueError("stored history is not a list")
            return [PerformanceResult.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError) as exc:
            print(f"Warning: discarding unreadable history: {exc}", file=sys.stderr)
            return []

    def prepend(self, result: PerformanceResult) -> list[PerformanceResult]:
        self._ensure_loaded()
        return self._commit([result, *self._results])

    def replace_at(self, index: int, result: PerformanceResult) -> list[PerformanceResult]:
        self._ensure_loaded()
        if not 0 <= index < len(self._results):
            raise HistoryIndexError(f"history index {index} out of range (size {len(self._results)})")
        updated = list(self._results)
        updated[index] = result
        return self._commit(updated)

    def clear(self) -> list[PerformanceResult]:
        return self._commit([])

    def _commit(self, results: list[PerformanceResult]) -> list[PerformanceResult]:
        blob = json.dumps([result.to_dict() for result in results])
        self.transport.set(self.key, blob)
        self._results = results
        self._loaded = True
        return self.results


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def _error_detail(response) -> str:
    try:
        return response.json().get("error", {}).get("message", response.text[:200])
    except (ValueError, AttributeError):
        return response.text[:200]


def fetch_pagespeed_result(
    url: str,
    strategy: str,
    api_key: str,
    session: requests.Session | None = None,
    timeout: float = REQUEST_TIMEOUT,
) -> dict:
    """Fetch a PageSpeed Insights performance audit for one URL + strategy.

    A single request is made; any failure raises ProviderRequestError.
    """
    params = {
        "url": url,
        "strategy": strategy,
        "key": api_key,
        "category": "performance",
    }
    http = session or requests
    try:
        response = http.get(PAGESPEED_API_URL, params=params, timeout=timeout)
    except requests.RequestException as exc:
        raise ProviderRequestError(f"request failed for {url} ({strategy}): {exc}") from exc

    if response.status_code != 200:
        raise ProviderRequestError(
            f"HTTP {response.status_code} for {url} ({strategy}): {_error_detail(response)}"
        )

    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderRequestError(f"invalid JSON in response for {url} ({strategy})") from exc

    if isinstance(data, dict) and data.get("error"):
        message = _lookup(data, "error", "message") or data["error"]
        raise ProviderRequestError(f"API error for {url} ({strategy}): {message}")

    return data


# ---------------------------------------------------------------------------
# Analysis Session
# ---------------------------------------------------------------------------


class AnalysisSession:
    """Runs analyses against a HistoryStore, one at a time.

    ``analyze`` adds a new result at the front of the history; ``rerun``
    refreshes an existing entry in place. Provider and response failures are
    caught here and reported through ``error``; the history is left as it
    was. ``loading`` is set while a request is outstanding.
    """

    def __init__(
        self,
        store: HistoryStore,
        api_key: str,
        fetcher: Callable[[str, str, str], dict] | None = None,
        verbose: bool = False,
    ) -> None:
        self.store = store
        self.api_key = api_key
        self.fetcher = fetcher or fetch_pagespeed_result
        self.verbose = verbose
        self.loading = False
        self.error = ""

    def analyze(self, url: str, strategy: str = DEFAULT_STRATEGY) -> list[PerformanceResult]:
        if not url:
            return self.store.results
        return self._run(url, strategy, self.store.prepend, f"Error analyzing {url}")

    def rerun(self, index: int) -> list[PerformanceResult]:
        results = self.store.results
        if not 0 <= index < len(results):
            raise HistoryIndexError(f"history index {index} out of range (size {len(results)})")
        original = results[index]
        return self._run(
            original.url,
            original.strategy,
            lambda result: self.store.replace_at(index, result),
            f"Error re-running test for {original.url}",
        )

    def _run(
        self,
        url: str,
        strategy: str,
        commit: Callable[[PerformanceResult], list[PerformanceResult]],
        error_prefix: str,
    ) -> list[PerformanceResult]:
        if strategy not in VALID_STRATEGIES:
            raise ValueError(f"invalid strategy {strategy!r}; expected one of {', '.join(VALID_STRATEGIES)}")
        if self.loading:
            raise RuntimeError("an analysis is already in progress")

        self.loading = True
        self.error = ""
        try:
            if self.verbose:
                print(f"  Fetching {url} ({strategy})...", file=sys.stderr)
            api_response = self.fetcher(url, strategy, self.api_key)
            result = build_result(url, strategy, api_response)
            return commit(result)
        except (ProviderRequestError, MalformedResponseError) as exc:
            self.error = f"{error_prefix}: {exc}"
            return self.store.results
        except OSError as exc:
            self.error = f"{error_prefix}: cannot save history: {exc}"
            return self.store.results
        finally:
            self.loading = False


# ---------------------------------------------------------------------------
# Output Formats
# ---------------------------------------------------------------------------


def format_metric_value(kind: str, value: float) -> str:
    """Format a score or metric with its unit for display."""
    if kind == "score":
        return f"{value:.0f}"
    unit = METRIC_DISPLAY[kind][1]
    return f"{value:g} {unit}" if unit else f"{value:g}"


def _column_header(kind: str, thresholds: dict) -> str:
    label, unit = METRIC_DISPLAY[kind]
    good_cutoff = thresholds[kind][0]
    if kind == "score":
        return f"{label} >= {good_cutoff:g}"
    unit_suffix = f"({unit})" if unit else ""
    return f"{label} < {good_cutoff:g}{unit_suffix}"


def format_history_table(results: list[PerformanceResult], thresholds: dict | None = None) -> str:
    """Format the history as an aligned terminal table with a verdict per cell."""
    thresholds = thresholds or QUALITY_THRESHOLDS
    if not results:
        return "No results yet. Run `pagespeed-history analyze <url>` to add one."

    kinds = ("score", *METRIC_FIELDS)
    header = ["#", "Date", "URL", "Device", *(_column_header(kind, thresholds) for kind in kinds)]
    rows = []
    for index, result in enumerate(results):
        verdicts = classify_result(result, thresholds)
        values = {"score": result.score, **asdict(result.metrics)}
        rows.append([
            str(index),
            result.date,
            result.url,
            result.strategy.capitalize(),
            *(f"{format_metric_value(kind, values[kind])} ({verdicts[kind]})" for kind in kinds),
        ])

    widths = [max(len(row[col]) for row in [header, *rows]) for col in range(len(header))]
    lines = ["  ".join(cell.ljust(width) for cell, width in zip(header, widths)).rstrip()]
    lines.append("  ".join("-" * width for width in widths))
    for row in rows:
        lines.append("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())
    return "\n".join(lines)


def history_to_dataframe(results: list[PerformanceResult], thresholds: dict | None = None) -> pd.DataFrame:
    """Flatten the history into one row per result with a quality column per metric."""
    columns = ["date", "url", "strategy", "score", "score_quality"]
    for field in METRIC_FIELDS:
        columns.extend([field, f"{field}_quality"])

    rows = []
    for result in results:
        verdicts = classify_result(result, thresholds)
        row = {
            "date": result.date,
            "url": result.url,
            "strategy": result.strategy,
            "score": result.score,
            "score_quality": verdicts["score"],
        }
        for field in METRIC_FIELDS:
            row[field] = getattr(result.metrics, field)
            row[f"{field}_quality"] = verdicts[field]
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)


def output_csv(dataframe: pd.DataFrame, output_path: Path) -> str:
    """Write DataFrame to CSV. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, index=False)
    return str(output_path)


def format_history_json(dataframe: pd.DataFrame) -> str:
    """Serialize the history DataFrame as JSON with a metadata envelope."""
    output_data = {
        "metadata": {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_results": len(dataframe),
            "total_urls": len(dataframe["url"].unique()) if len(dataframe) > 0 else 0,
            "tool_version": __version__,
        },
        "results": json.loads(dataframe.to_json(orient="records")),
    }
    return json.dumps(output_data, indent=2, default=str)


def output_json(dataframe: pd.DataFrame, output_path: Path) -> str:
    """Write DataFrame to structured JSON with metadata. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(format_history_json(dataframe), encoding="utf-8")
    return str(output_path)


def generate_html_report(results: list[PerformanceResult], thresholds: dict | None = None) -> str:
    """Generate a self-contained HTML page showing the history table."""
    thresholds = thresholds or QUALITY_THRESHOLDS
    generated_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    dataframe = history_to_dataframe(results, thresholds)

    total_runs = len(dataframe)
    total_urls = len(dataframe["url"].unique()) if total_runs > 0 else 0
    avg_score = dataframe["score"].mean() if total_runs > 0 else 0
    avg_class = classify_metric("score", avg_score, thresholds) if total_runs > 0 else "na"

    kinds = ("score", *METRIC_FIELDS)
    header_cells = "".join(f"<th>{html.escape(_column_header(kind, thresholds))}</th>" for kind in kinds)

    table_rows = []
    for index, row in dataframe.iterrows():
        cells = ""
        for kind in kinds:
            quality = row[f"{kind}_quality"]
            weight = " font-weight: bold;" if kind == "score" else ""
            cells += (
                f'<td class="metric {quality}" style="background-color: {QUALITY_COLORS[quality]}; color: white;{weight}">'
                f"{html.escape(format_metric_value(kind, row[kind]))}</td>"
            )
        url = html.escape(row["url"])
        table_rows.append(f"""
            <tr>
                <td>{index}</td>
                <td>{html.escape(row["date"])}</td>
                <td class="url-cell" title="{url}">{url}</td>
                <td class="device">{html.escape(row["strategy"])}</td>
                {cells}
            </tr>""")
    table_rows_html = "\n".join(table_rows) or '<tr><td colspan="10" class="empty">No results yet.</td></tr>'

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Website Performance Analyzer - {generated_at}</title>
<style>
    * {{ margin: 0; padding: 0; box-sizing: border-box; }}
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f5f5; color: #333; padding: 2rem; max-width: 1200px; margin: 0 auto; }}
    h1 {{ font-size: 1.5rem; margin-bottom: 5px; text-align: center; }}
    .meta {{ color: #888; font-size: 0.85rem; margin-bottom: 25px; text-align: center; }}
    .cards {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(180px, 1fr)); gap: 15px; margin-bottom: 30px; }}
    .card {{ background: #fff; border-radius: 8px; padding: 20px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); text-align: center; }}
    .card .value {{ font-size: 2rem; font-weight: 700; }}
    .card .label {{ font-size: 0.8rem; color: #888; margin-top: 5px; }}
    .card .value.good {{ color: {QUALITY_COLORS[QUALITY_GOOD]}; }}
    .card .value.needs-improvement {{ color: {QUALITY_COLORS[QUALITY_NEEDS_IMPROVEMENT]}; }}
    .card .value.poor {{ color: {QUALITY_COLORS[QUALITY_POOR]}; }}
    .data-table {{ width: 100%; border-collapse: collapse; background: #fff; border-radius: 8px; overflow: hidden; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }}
    .data-table th {{ background: #f8f9fa; padding: 10px 12px; text-align: left; font-size: 0.8rem; color: #666; white-space: nowrap; }}
    .data-table td {{ padding: 10px 12px; border-top: 1px solid #eee; font-size: 0.9rem; }}
    .url-cell {{ max-width: 350px; overflow: hidden; text-overflow: ellipsis; white-space: nowrap; }}
    .device {{ text-transform: capitalize; }}
    .empty {{ text-align: center; color: #999; }}
    footer {{ margin-top: 40px; padding-top: 15px; border-top: 1px solid #ddd; color: #999; font-size: 0.75rem; text-align: center; }}
</style>
</head>
<body>
<h1>Website Performance Analyzer</h1>
<p class="meta">Generated: {generated_at} | Tool v{__version__}</p>

<div class="cards">
    <div class="card"><div class="value">{total_runs}</div><div class="label">Runs</div></div>
    <div class="card"><div class="value">{total_urls}</div><div class="label">URLs Analyzed</div></div>
    <div class="card"><div class="value {avg_class}">{avg_score:.0f}</div><div class="label">Average Score</div></div>
</div>

<table class="data-table" id="history-table">
    <thead>
        <tr>
            <th>#</th>
            <th>Date</th>
            <th>URL</th>
            <th>Device</th>
            {header_cells}
        </tr>
    </thead>
    <tbody>
        {table_rows_html}
    </tbody>
</table>

<footer>
    Generated by PageSpeed History v{__version__}
</footer>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def open_history(args: argparse.Namespace) -> HistoryStore:
    """Build the history store for the configured file and load it."""
    history_path = resolve_history_path(getattr(args, "history_file", None))
    if getattr(args, "verbose", False):
        print(f"  History file: {history_path}", file=sys.stderr)
    store = HistoryStore(JsonFileTransport(history_path))
    store.load()
    return store


def cmd_analyze(args: argparse.Namespace) -> None:
    """Analyze a URL and prepend the result to the history."""
    url = args.url.strip()
    if not url:
        print("Error: URL must not be empty.", file=sys.stderr)
        sys.exit(1)
    if args.strategy not in VALID_STRATEGIES:
        print(f"Error: invalid strategy '{args.strategy}'. Use: {', '.join(VALID_STRATEGIES)}", file=sys.stderr)
        sys.exit(1)

    store = open_history(args)
    session = AnalysisSession(store, args.api_key, verbose=args.verbose)
    print(f"Analyzing {url} ({args.strategy})...", file=sys.stderr)
    results = session.analyze(url, args.strategy)
    if session.error:
        print(f"Error: {session.error}", file=sys.stderr)
        sys.exit(1)
    print(format_history_table(results, args.thresholds))


def cmd_rerun(args: argparse.Namespace) -> None:
    """Re-run the history entry at the given index, keeping its position."""
    store = open_history(args)
    if not 0 <= args.index < len(store):
        print(f"Error: no history entry at index {args.index} ({len(store)} stored).", file=sys.stderr)
        sys.exit(1)

    session = AnalysisSession(store, args.api_key, verbose=args.verbose)
    target = store.results[args.index]
    print(f"Re-running {target.url} ({target.strategy})...", file=sys.stderr)
    results = session.rerun(args.index)
    if session.error:
        print(f"Error: {session.error}", file=sys.stderr)
        sys.exit(1)
    print(format_history_table(results, args.thresholds))


def cmd_history(args: argparse.Namespace) -> None:
    """Print the stored history."""
    store = open_history(args)
    print(format_history_table(store.results, args.thresholds))


def cmd_export(args: argparse.Namespace) -> None:
    """Export the history as CSV or JSON, to a file or stdout."""
    store = open_history(args)
    dataframe = history_to_dataframe(store.results, args.thresholds)

    if args.output:
        output_path = Path(args.output)
        if args.export_format == "csv":
            written = output_csv(dataframe, output_path)
        else:
            written = output_json(dataframe, output_path)
        print(f"History written to: {written}", file=sys.stderr)
    elif args.export_format == "csv":
        print(dataframe.to_csv(index=False), end="")
    else:
        print(format_history_json(dataframe))


def cmd_report(args: argparse.Namespace) -> None:
    """Generate a visual HTML report of the history."""
    store = open_history(args)

    explicit_output = getattr(args, "output", None)
    output_dir = getattr(args, "output_dir", DEFAULT_OUTPUT_DIR)

    if explicit_output:
        html_path = Path(explicit_output)
    else:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        html_path = Path(output_dir) / f"{timestamp}-history.html"

    html_content = generate_html_report(store.results, args.thresholds)
    html_path.parent.mkdir(parents=True, exist_ok=True)
    html_path.write_text(html_content, encoding="utf-8")
    print(f"HTML report written to: {html_path}", file=sys.stderr)

    if getattr(args, "open_browser", False):
        webbrowser.open(html_path.resolve().as_uri())


def cmd_clear(args: argparse.Namespace) -> None:
    """Delete every stored result."""
    store = open_history(args)
    removed = len(store)
    store.clear()
    print(f"Cleared {removed} result(s) from history.", file=sys.stderr)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    try:
        locale.setlocale(locale.LC_TIME, "")
    except locale.Error:
        # Unsupported locale in the environment; dates stay in the "C" format.
        pass

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)
    args.thresholds = load_thresholds(config)

    try:
        args.api_key = require_api_key(args.api_key)
    except MissingCredentialError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    commands = {
        "analyze": cmd_analyze,
        "rerun": cmd_rerun,
        "history": cmd_history,
        "export": cmd_export,
        "report": cmd_report,
        "clear": cmd_clear,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
