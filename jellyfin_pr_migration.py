#!/usr/bin/env python3
"""Jellyfin Playback Reporting migration tool.

Moves PlaybackActivity history exported from one Jellyfin instance to another.

Architecture:
- Fetch the user directory of both instances (concurrently) and map old user
  ids to new user ids by matching display names.
- Stream the exported header-less TSV one line at a time, rewriting the UserId
  column. Malformed lines are counted and skipped.
- Write the rewritten records to a TSV file and/or insert them into the new
  instance's Playback Reporting SQLite table. All inserts share one
  transaction; rows that already exist are skipped, so re-running the tool
  never duplicates history.
"""

from __future__ import annotations

import argparse
import asyncio
import codecs
import copy
import enum
import json
import logging
import random
import re
import sqlite3
import threading
import tomllib
from dataclasses import dataclass, field, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import requests
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table


LOGGER = logging.getLogger("jellyfin-pr-migration")


DEFAULT_CONFIG_FILE = "config.json"
FALLBACK_CONFIG_FILE = "config.example.json"
DEFAULT_TABLE_NAME = "PlaybackActivity"

DEFAULT_CONFIG: Dict[str, Any] = {
    "input_tsv_file_path": "",
    "output_tsv_file_path": None,
    "output_tsv_mode": "overwrite",
    "sqlite_db_path": None,
    "sqlite_table_name": DEFAULT_TABLE_NAME,
    "instance_old": {
        "base_url": "",
        "api_token": "",
    },
    "instance_new": {
        "base_url": "",
        "api_token": "",
    },
    "http": {
        "timeout_seconds": 30,
        "max_retries": 1,
    },
    "runtime": {
        "log_level": "INFO",
        "log_file_path": "logs/jellyfin_pr_migration.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "console_mode": "progress",
    },
}

# Column order of the Playback Reporting PlaybackActivity table.
RECORD_FIELDS: Tuple[str, ...] = (
    "DateCreated",
    "UserId",
    "ItemId",
    "ItemType",
    "ItemName",
    "PlaybackMethod",
    "ClientName",
    "DeviceName",
    "PlayDuration",
)

# Largest value SQLite can store in an INTEGER column.
MAX_PLAY_DURATION = 2**63 - 1

SUPPORTED_OUTPUT_TSV_MODES = {"overwrite", "append"}
SUPPORTED_CONSOLE_MODES = {"progress", "raw"}

PLACEHOLDER_MARKERS: Tuple[str, ...] = (
    "YOUR_",
    "YOUR-",
    "CHANGEME",
    "REPLACE_ME",
)

SQL_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

OUTCOME_INSERTED = "inserted"
OUTCOME_DUPLICATE = "duplicate"


class MigrationError(Exception):
    """Base class for errors raised while migrating playback history."""


class ConfigurationError(MigrationError, ValueError):
    pass


class DirectoryFetchError(MigrationError):
    def __init__(self, instance: str, message: str):
        super().__init__(f"[{instance}] {message}")
        self.instance = instance


class RecordParseError(MigrationError):
    """A single input line could not be decoded. Recoverable: the line is skipped."""

    def __init__(self, reason: str, raw_line: str):
        super().__init__(f"{reason}: {raw_line!r}")
        self.reason = reason
        self.raw_line = raw_line


class PersistenceError(MigrationError):
    def __init__(self, channel: str, message: str):
        super().__init__(f"[{channel}] {message}")
        self.channel = channel


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def normalize_base_url(raw_url: str) -> str:
    url = raw_url.strip()
    if "://" not in url:
        url = f"http://{url}"
    return url.rstrip("/")


def quote_identifier(name: str) -> str:
    if not SQL_IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstanceConfig:
    label: str
    base_url: str
    api_token: str


@dataclass(frozen=True)
class HTTPSettings:
    timeout_seconds: int
    max_retries: int


@dataclass(frozen=True)
class RuntimeSettings:
    log_level: int
    log_file_path: Path
    log_file_max_bytes: int
    log_file_backup_count: int
    console_mode: str


@dataclass(frozen=True)
class MigrationConfig:
    input_tsv_file_path: Path
    output_tsv_file_path: Optional[Path]
    output_tsv_mode: str
    sqlite_db_path: Optional[Path]
    sqlite_table_name: str
    instance_old: InstanceConfig
    instance_new: InstanceConfig
    http: HTTPSettings
    runtime: RuntimeSettings

    def describe(self) -> Dict[str, Any]:
        """Loggable view of the configuration with API tokens redacted."""

        def _instance(instance: InstanceConfig) -> Dict[str, str]:
            return {"base_url": instance.base_url, "api_token": "***"}

        return {
            "input_tsv_file_path": str(self.input_tsv_file_path),
            "output_tsv_file_path": (
                str(self.output_tsv_file_path) if self.output_tsv_file_path else None
            ),
            "output_tsv_mode": self.output_tsv_mode,
            "sqlite_db_path": str(self.sqlite_db_path) if self.sqlite_db_path else None,
            "sqlite_table_name": self.sqlite_table_name,
            "instance_old": _instance(self.instance_old),
            "instance_new": _instance(self.instance_new),
            "http": {
                "timeout_seconds": self.http.timeout_seconds,
                "max_retries": self.http.max_retries,
            },
        }


def resolve_config_path(raw_path: str) -> Path:
    config_path = Path(raw_path).expanduser().resolve()
    if config_path.exists():
        return config_path

    # Only the default file name falls back to the shipped example.
    if raw_path == DEFAULT_CONFIG_FILE:
        fallback = config_path.with_name(FALLBACK_CONFIG_FILE)
        if fallback.exists():
            print(
                f"[WARN] Config file not found at {config_path}. "
                f"Falling back to {fallback}."
            )
            return fallback

    raise ConfigurationError(
        f"Config file not found at {config_path}. "
        f"Create one (for example from {FALLBACK_CONFIG_FILE})."
    )


def read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as handle:
            if path.suffix.lower() == ".toml":
                loaded = tomllib.load(handle)
            else:
                loaded = json.load(handle)
    except OSError as exc:
        raise ConfigurationError(f"Could not read config file {path}: {exc}") from exc
    except (json.JSONDecodeError, tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Config file {path} is not valid: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {path} must contain an object at the top level")
    return loaded


def _optional_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return Path(text).expanduser()


def _int_setting(name: str, value: Any, minimum: int) -> int:
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _is_placeholder(value: str) -> bool:
    return any(marker in value.upper() for marker in PLACEHOLDER_MARKERS)


def load_config(path: Path) -> MigrationConfig:
    config = merge_dict(DEFAULT_CONFIG, read_config_file(path))

    missing_keys: List[str] = []

    input_path = _optional_path(config.get("input_tsv_file_path"))
    if input_path is None:
        missing_keys.append("input_tsv_file_path")

    instances: Dict[str, Tuple[str, str]] = {}
    for section in ("instance_old", "instance_new"):
        raw_section = config.get(section)
        if not isinstance(raw_section, dict):
            raise ConfigurationError(f"{section} must be an object")
        base_url = str(raw_section.get("base_url") or "").strip()
        api_token = str(raw_section.get("api_token") or "").strip()
        if not base_url:
            missing_keys.append(f"{section}.base_url")
        if not api_token or _is_placeholder(api_token):
            missing_keys.append(f"{section}.api_token")
        instances[section] = (base_url, api_token)

    if missing_keys:
        raise ConfigurationError(
            "Missing required settings in config: " + ", ".join(missing_keys)
        )

    assert input_path is not None
    if not input_path.is_file():
        raise ConfigurationError(f"input_tsv_file_path does not exist: {input_path}")

    output_tsv_mode = str(config.get("output_tsv_mode") or "overwrite").strip().lower()
    if output_tsv_mode not in SUPPORTED_OUTPUT_TSV_MODES:
        raise ConfigurationError(
            "Invalid output_tsv_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_OUTPUT_TSV_MODES))
        )

    output_path = _optional_path(config.get("output_tsv_file_path"))
    if output_path is not None and output_path.resolve() == input_path.resolve():
        raise ConfigurationError(
            "output_tsv_file_path must not be the same file as input_tsv_file_path: "
            f"{output_path}"
        )

    sqlite_db_path = _optional_path(config.get("sqlite_db_path"))
    if sqlite_db_path is not None and not sqlite_db_path.is_file():
        raise ConfigurationError(f"sqlite_db_path does not exist: {sqlite_db_path}")

    table_name = str(config.get("sqlite_table_name") or DEFAULT_TABLE_NAME).strip()
    if not SQL_IDENTIFIER_RE.match(table_name):
        raise ConfigurationError(
            f"sqlite_table_name={table_name!r} is not a plain SQL identifier"
        )

    for section in ("http", "runtime"):
        if not isinstance(config.get(section), dict):
            raise ConfigurationError(f"{section} must be an object")
    http_cfg = config["http"]
    runtime_cfg = config["runtime"]

    level_name = str(runtime_cfg.get("log_level", "INFO")).strip().upper()
    log_level = getattr(logging, level_name, None)
    if not isinstance(log_level, int):
        raise ConfigurationError(f"Invalid runtime.log_level: {level_name}")

    console_mode = str(runtime_cfg.get("console_mode", "progress")).strip().lower()
    if console_mode not in SUPPORTED_CONSOLE_MODES:
        raise ConfigurationError(
            "Invalid runtime.console_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_CONSOLE_MODES))
        )

    log_file_path = _optional_path(runtime_cfg.get("log_file_path")) or Path(
        DEFAULT_CONFIG["runtime"]["log_file_path"]
    )

    return MigrationConfig(
        input_tsv_file_path=input_path,
        output_tsv_file_path=output_path,
        output_tsv_mode=output_tsv_mode,
        sqlite_db_path=sqlite_db_path,
        sqlite_table_name=table_name,
        instance_old=InstanceConfig(
            label="old",
            base_url=normalize_base_url(instances["instance_old"][0]),
            api_token=instances["instance_old"][1],
        ),
        instance_new=InstanceConfig(
            label="new",
            base_url=normalize_base_url(instances["instance_new"][0]),
            api_token=instances["instance_new"][1],
        ),
        http=HTTPSettings(
            timeout_seconds=_int_setting(
                "http.timeout_seconds", http_cfg.get("timeout_seconds"), 1
            ),
            max_retries=_int_setting("http.max_retries", http_cfg.get("max_retries"), 1),
        ),
        runtime=RuntimeSettings(
            log_level=log_level,
            log_file_path=log_file_path,
            log_file_max_bytes=_int_setting(
                "runtime.log_file_max_bytes", runtime_cfg.get("log_file_max_bytes"), 1024
            ),
            log_file_backup_count=_int_setting(
                "runtime.log_file_backup_count",
                runtime_cfg.get("log_file_backup_count"),
                0,
            ),
            console_mode=console_mode,
        ),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class LiveLogState:
    def __init__(self):
        self._live_active = False
        self._lock = threading.Lock()

    def set_live_active(self, active: bool) -> None:
        with self._lock:
            self._live_active = bool(active)

    def is_live_active(self) -> bool:
        with self._lock:
            return self._live_active


class LiveAwareConsoleHandler(logging.StreamHandler):
    def __init__(self, *, live_state: LiveLogState, allow_while_live: bool):
        super().__init__()
        self.live_state = live_state
        self.allow_while_live = bool(allow_while_live)

    def emit(self, record: logging.LogRecord) -> None:
        if self.live_state.is_live_active() and not self.allow_while_live:
            return
        clean_record = logging.makeLogRecord(record.__dict__.copy())
        # Tracebacks go to the file log only.
        clean_record.exc_info = None
        clean_record.exc_text = None
        clean_record.stack_info = None
        super().emit(clean_record)


@dataclass
class LoggingRuntime:
    live_state: LiveLogState
    log_file_path: Path


def configure_logging(settings: RuntimeSettings) -> LoggingRuntime:
    raw_log_path = settings.log_file_path.expanduser()
    if not raw_log_path.is_absolute():
        raw_log_path = (Path.cwd() / raw_log_path).resolve()
    raw_log_path.parent.mkdir(parents=True, exist_ok=True)

    live_state = LiveLogState()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(settings.log_level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        raw_log_path,
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(settings.log_level)
    file_handler.setFormatter(formatter)

    console_handler = LiveAwareConsoleHandler(
        live_state=live_state,
        allow_while_live=settings.console_mode == "raw",
    )
    console_handler.setLevel(settings.log_level)
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.captureWarnings(True)

    # Keep third-party debug noise out of terminal output.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return LoggingRuntime(live_state=live_state, log_file_path=raw_log_path)


# ---------------------------------------------------------------------------
# User directories
# ---------------------------------------------------------------------------


@dataclass
class APIResponse:
    status: int
    headers: Dict[str, str]
    data: Any
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass(frozen=True)
class UserEntry:
    display_name: str
    id: str


class HTTPClient:
    """JSON over requests, run in a worker thread.

    max_retries=1 means a single attempt per request (fail fast).
    """

    RETRYABLE_STATUSES = (429, 500, 502, 503, 504)

    def __init__(self, timeout_seconds: int, max_retries: int = 1):
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, int(max_retries))

    async def request_json(
        self,
        *,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> APIResponse:
        last_response: Optional[APIResponse] = None

        for attempt in range(self.max_retries):
            sleep_for = min(60, (2**attempt) + random.random())
            try:
                raw_resp = await asyncio.to_thread(
                    requests.request,
                    method,
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                LOGGER.warning(
                    "%s calling %s %s (attempt %s/%s): %s",
                    type(exc).__name__,
                    method,
                    url,
                    attempt + 1,
                    self.max_retries,
                    exc,
                )
                if attempt == self.max_retries - 1:
                    return APIResponse(
                        status=0,
                        headers={},
                        data={"error": str(exc)},
                        text=str(exc),
                    )
                await asyncio.sleep(sleep_for)
                continue

            normalized_headers = {
                str(k).lower(): str(v) for k, v in raw_resp.headers.items()
            }
            data: Any = None
            text = raw_resp.text or ""
            if text:
                try:
                    data = raw_resp.json()
                except ValueError:
                    data = None

            response = APIResponse(
                status=raw_resp.status_code,
                headers=normalized_headers,
                data=data,
                text=text,
            )
            last_response = response

            if response.status in self.RETRYABLE_STATUSES and attempt < self.max_retries - 1:
                LOGGER.warning(
                    "%s from %s %s. Retrying in %.1fs (attempt %s/%s)",
                    response.status,
                    method,
                    url,
                    sleep_for,
                    attempt + 1,
                    self.max_retries,
                )
                await asyncio.sleep(sleep_for)
                continue

            return response

        if last_response is not None:
            return last_response

        return APIResponse(status=0, headers={}, data=None, text="unknown error")


class MediaServerClient:
    def __init__(self, *, instance: InstanceConfig, http: HTTPClient):
        self.label = instance.label
        self.base_url = instance.base_url.rstrip("/")
        self.api_token = instance.api_token
        self.http = http

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f'MediaBrowser Token="{self.api_token}"',
            "X-Emby-Token": self.api_token,
            "Accept": "application/json",
        }

    async def fetch_users(self) -> List[UserEntry]:
        url = f"{self.base_url}/Users"
        LOGGER.info("[%s] Fetching users from %s", self.label, url)
        response = await self.http.request_json(method="GET", url=url, headers=self._headers())

        if not response.ok:
            compact = " ".join(response.text.split())[:180]
            suffix = f": {compact}" if compact else ""
            status = response.status or "no response"
            raise DirectoryFetchError(
                self.label, f"GET {url} failed ({status}){suffix}"
            )
        if not isinstance(response.data, list):
            raise DirectoryFetchError(
                self.label, f"GET {url} did not return a JSON list of users"
            )

        users: List[UserEntry] = []
        for idx, entry in enumerate(response.data):
            if not isinstance(entry, dict):
                raise DirectoryFetchError(self.label, f"user entry {idx} is not an object")
            name = entry.get("Name")
            user_id = entry.get("Id")
            if not isinstance(name, str) or not isinstance(user_id, str) or not user_id:
                raise DirectoryFetchError(
                    self.label, f"user entry {idx} is missing Name or Id"
                )
            users.append(UserEntry(display_name=name, id=user_id))

        LOGGER.info("[%s] Fetched %s users", self.label, len(users))
        for user in users[:3]:
            LOGGER.debug("[%s]   User: Name='%s', ID='%s'", self.label, user.display_name, user.id)
        return users


async def fetch_user_directories(
    old_client: MediaServerClient,
    new_client: MediaServerClient,
) -> Tuple[List[UserEntry], List[UserEntry]]:
    old_users, new_users = await asyncio.gather(
        old_client.fetch_users(),
        new_client.fetch_users(),
    )
    return old_users, new_users


def build_identity_mapping(
    source_users: Sequence[UserEntry],
    destination_users: Sequence[UserEntry],
) -> Dict[str, str]:
    """Map source user ids to destination user ids by exact display name.

    On display-name collisions in either list the first entry wins. Source
    users with no namesake on the destination are left out of the mapping.
    """
    destination_by_name: Dict[str, str] = {}
    for user in destination_users:
        destination_by_name.setdefault(user.display_name, user.id)

    mapping: Dict[str, str] = {}
    seen_source_names = set()
    for user in source_users:
        if user.display_name in seen_source_names:
            LOGGER.debug(
                "Ignoring duplicate old user name '%s' (ID: '%s')",
                user.display_name,
                user.id,
            )
            continue
        seen_source_names.add(user.display_name)

        new_id = destination_by_name.get(user.display_name)
        if new_id is None:
            LOGGER.info(
                "User '%s' (ID: '%s') not found by name on the new instance. No mapping created.",
                user.display_name,
                user.id,
            )
            continue
        if user.id in mapping:
            continue
        mapping[user.id] = new_id
        LOGGER.info(
            "Mapping user '%s': old ID '%s' -> new ID '%s'",
            user.display_name,
            user.id,
            new_id,
        )

    if not mapping:
        LOGGER.warning(
            "No users were found with matching names across instances. "
            "Records will be written without UserId replacement."
        )
    return mapping


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlaybackRecord:
    date_created: str
    user_id: str
    item_id: str
    item_type: str
    item_name: str
    playback_method: str
    client_name: str
    device_name: str
    play_duration: int

    def __post_init__(self) -> None:
        for name, value in zip(RECORD_FIELDS, self.as_row()[:-1]):
            if not isinstance(value, str):
                raise TypeError(f"{name} must be a string, got {type(value).__name__}")
            if "\t" in value or "\n" in value or "\r" in value:
                raise ValueError(f"{name} must not contain tabs or line breaks")
        duration = self.play_duration
        if isinstance(duration, bool) or not isinstance(duration, int) or duration < 0:
            raise ValueError("PlayDuration must be a non-negative integer")
        if duration > MAX_PLAY_DURATION:
            raise ValueError(f"PlayDuration {duration} exceeds {MAX_PLAY_DURATION}")

    def as_row(self) -> Tuple[Any, ...]:
        return (
            self.date_created,
            self.user_id,
            self.item_id,
            self.item_type,
            self.item_name,
            self.playback_method,
            self.client_name,
            self.device_name,
            self.play_duration,
        )

    def describe(self) -> str:
        return (
            f"DateCreated={self.date_created!r} UserId={self.user_id!r} "
            f"ItemId={self.item_id!r} ItemName={self.item_name!r}"
        )


@dataclass(frozen=True)
class TransformedRecord:
    record: PlaybackRecord
    changed: bool
    original_user_id: str


def decode_line(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise RecordParseError(
            f"line is not valid UTF-8 ({exc.reason})",
            raw.decode("utf-8", errors="replace"),
        ) from None


def parse_record(line: str) -> PlaybackRecord:
    text = line
    if text.endswith("\r\n"):
        text = text[:-2]
    elif text.endswith("\n"):
        text = text[:-1]

    fields = text.split("\t")
    if len(fields) != len(RECORD_FIELDS):
        raise RecordParseError(
            f"expected {len(RECORD_FIELDS)} tab-separated fields, found {len(fields)}",
            line,
        )

    duration_text = fields[-1]
    if not (duration_text.isascii() and duration_text.isdigit()):
        raise RecordParseError(
            f"PlayDuration {duration_text!r} is not a non-negative integer", line
        )

    try:
        duration = int(duration_text)
        if duration > MAX_PLAY_DURATION:
            raise RecordParseError(
                f"PlayDuration {duration_text} is too large to store", line
            )
        return PlaybackRecord(*fields[:-1], play_duration=duration)
    except ValueError as exc:
        raise RecordParseError(str(exc), line) from None


def serialize_record(record: PlaybackRecord) -> str:
    return "\t".join(str(value) for value in record.as_row())


def transform_record(record: PlaybackRecord, mapping: Dict[str, str]) -> TransformedRecord:
    new_user_id = mapping.get(record.user_id)
    if new_user_id is None:
        return TransformedRecord(record=record, changed=False, original_user_id=record.user_id)
    return TransformedRecord(
        record=replace(record, user_id=new_user_id),
        changed=True,
        original_user_id=record.user_id,
    )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class DuplicateGuard:
    """Full-row existence check against the destination table."""

    def __init__(self, conn: sqlite3.Connection, table_name: str):
        self.conn = conn
        where = " AND ".join(f"{column} = ?" for column in RECORD_FIELDS)
        self._query = (
            f"SELECT EXISTS(SELECT 1 FROM {quote_identifier(table_name)} "
            f"WHERE {where} LIMIT 1)"
        )

    def exists(self, record: PlaybackRecord) -> bool:
        row = self.conn.execute(self._query, record.as_row()).fetchone()
        return bool(row[0])


class TsvSink:
    channel = "tsv"

    def __init__(self, path: Path, mode: str = "overwrite"):
        self.path = path
        self.mode = mode
        self.error: Optional[PersistenceError] = None
        self._handle = None

    @property
    def active(self) -> bool:
        return self._handle is not None and self.error is None

    def open(self) -> None:
        append = self.mode == "append"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            needs_separator = False
            if append and self.path.exists() and self.path.stat().st_size > 0:
                with self.path.open("rb") as existing:
                    existing.seek(-1, 2)
                    needs_separator = existing.read(1) != b"\n"
            self._handle = self.path.open(
                "a" if append else "w", encoding="utf-8", newline=""
            )
            if needs_separator:
                self._handle.write("\n")
        except OSError as exc:
            raise PersistenceError(
                self.channel, f"could not open {self.path}: {exc}"
            ) from exc

    def write(self, record: PlaybackRecord) -> None:
        if self._handle is None:
            raise PersistenceError(self.channel, f"{self.path} is not open")
        try:
            self._handle.write(serialize_record(record) + "\n")
        except OSError as exc:
            raise PersistenceError(
                self.channel, f"could not write to {self.path}: {exc}"
            ) from exc

    def fail(self, error: PersistenceError) -> None:
        """Disable the channel after a write error; other channels keep running."""
        self.error = error
        self.abort()

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except OSError as exc:
            raise PersistenceError(
                self.channel, f"could not flush {self.path}: {exc}"
            ) from exc

    def abort(self) -> None:
        try:
            self.close()
        except PersistenceError as exc:
            LOGGER.error("%s", exc)


class SqliteSink:
    """Inserts records into an existing Playback Reporting table in one transaction."""

    channel = "sqlite"

    def __init__(self, db_path: Path, table_name: str = DEFAULT_TABLE_NAME):
        self.db_path = db_path
        self.table_name = table_name
        self.conn: Optional[sqlite3.Connection] = None
        self.guard: Optional[DuplicateGuard] = None
        columns = ", ".join(RECORD_FIELDS)
        placeholders = ", ".join("?" for _ in RECORD_FIELDS)
        self._insert_sql = (
            f"INSERT INTO {quote_identifier(table_name)} ({columns}) "
            f"VALUES ({placeholders})"
        )

    def open(self) -> None:
        uri = f"{self.db_path.expanduser().resolve().as_uri()}?mode=rw"
        try:
            # isolation_level=None: transactions are managed explicitly below.
            self.conn = sqlite3.connect(uri, uri=True, isolation_level=None)
        except sqlite3.Error as exc:
            raise PersistenceError(
                self.channel, f"could not open {self.db_path}: {exc}"
            ) from exc
        self.conn.row_factory = sqlite3.Row

        try:
            self._verify_table()
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            self.close()
            raise PersistenceError(
                self.channel, f"could not start a transaction on {self.db_path}: {exc}"
            ) from exc
        except PersistenceError:
            self.close()
            raise

        self.guard = DuplicateGuard(self.conn, self.table_name)
        LOGGER.info("SQLite transaction started on %s", self.db_path)

    def _verify_table(self) -> None:
        assert self.conn is not None
        rows = self.conn.execute(
            f"PRAGMA table_info({quote_identifier(self.table_name)})"
        ).fetchall()
        if not rows:
            raise PersistenceError(
                self.channel,
                f"table {self.table_name} does not exist in {self.db_path}",
            )
        columns = {row["name"] for row in rows}
        missing = [column for column in RECORD_FIELDS if column not in columns]
        if missing:
            raise PersistenceError(
                self.channel,
                f"table {self.table_name} is missing columns: {', '.join(missing)}",
            )

    def write(self, record: PlaybackRecord) -> str:
        if self.conn is None or self.guard is None:
            raise PersistenceError(self.channel, "database is not open")
        try:
            if self.guard.exists(record):
                return OUTCOME_DUPLICATE
            self.conn.execute(self._insert_sql, record.as_row())
        except (sqlite3.Error, OverflowError) as exc:
            self.rollback()
            raise PersistenceError(
                self.channel,
                f"insert failed for record {record.describe()}: {exc}. "
                "Transaction rolled back.",
            ) from exc
        return OUTCOME_INSERTED

    def commit(self) -> None:
        if self.conn is None:
            raise PersistenceError(self.channel, "database is not open")
        try:
            self.conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self.rollback()
            raise PersistenceError(
                self.channel, f"commit failed: {exc}. Transaction rolled back."
            ) from exc
        LOGGER.info("SQLite transaction committed.")

    def rollback(self) -> None:
        if self.conn is None or not self.conn.in_transaction:
            return
        try:
            self.conn.execute("ROLLBACK")
            LOGGER.warning("SQLite transaction rolled back.")
        except sqlite3.Error as exc:
            LOGGER.error("Failed to roll back SQLite transaction: %s", exc)

    def close(self) -> None:
        if self.conn is None:
            return
        self.rollback()
        self.conn.close()
        self.conn = None
        self.guard = None

    def __enter__(self) -> "SqliteSink":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class MigrationSummary:
    users_mapped: int = 0
    records_read: int = 0
    records_parsed: int = 0
    records_changed: int = 0
    records_written: int = 0
    tsv_records_written: int = 0
    records_skipped_duplicate: int = 0
    records_skipped_malformed: int = 0
    # old user id -> [new user id, records changed]
    user_changes: Dict[str, List[Any]] = field(default_factory=dict)

    def observe_transform(self, transformed: TransformedRecord) -> None:
        if not transformed.changed:
            return
        self.records_changed += 1
        entry = self.user_changes.setdefault(
            transformed.original_user_id, [transformed.record.user_id, 0]
        )
        entry[1] += 1

    def counters(
        self, *, sqlite_enabled: bool = True, tsv_enabled: bool = True
    ) -> List[Tuple[str, int]]:
        rows = [
            ("Users mapped", self.users_mapped),
            ("Records read", self.records_read),
            ("Records parsed", self.records_parsed),
            ("Malformed lines skipped", self.records_skipped_malformed),
            ("Records with UserId changed", self.records_changed),
        ]
        if tsv_enabled:
            rows.append(("Records written to TSV", self.tsv_records_written))
        if sqlite_enabled:
            rows.append(("Records inserted into SQLite", self.records_written))
            rows.append(("Duplicate records skipped", self.records_skipped_duplicate))
        return rows

    def log_report(self, *, sqlite_enabled: bool, tsv_enabled: bool) -> None:
        LOGGER.info("Processing summary:")
        for label, value in self.counters(sqlite_enabled=sqlite_enabled, tsv_enabled=tsv_enabled):
            LOGGER.info("  %s: %s", label, value)
        if self.user_changes:
            LOGGER.info("  Changes per user ID (old -> new: records):")
            for old_id, (new_id, count) in self.user_changes.items():
                LOGGER.info("    '%s' -> '%s': %s", old_id, new_id, count)
        else:
            LOGGER.info("  No user IDs were mapped and changed.")

    def to_table(self, *, sqlite_enabled: bool, tsv_enabled: bool) -> Table:
        table = Table(title="Migration summary", show_header=False)
        table.add_column("Counter")
        table.add_column("Value", justify="right")
        for label, value in self.counters(sqlite_enabled=sqlite_enabled, tsv_enabled=tsv_enabled):
            table.add_row(label, str(value))
        for old_id, (new_id, count) in self.user_changes.items():
            table.add_row(f"{old_id} -> {new_id}", str(count))
        return table


def iter_input_lines(path: Path) -> Iterator[bytes]:
    with path.open("rb") as handle:
        first = True
        for raw in handle:
            if first:
                raw = raw.removeprefix(codecs.BOM_UTF8)
                first = False
            yield raw


def count_input_lines(path: Path) -> int:
    with path.open("rb") as handle:
        return sum(1 for _ in handle)


def process_records(
    lines: Iterable[bytes],
    mapping: Dict[str, str],
    *,
    summary: MigrationSummary,
    tsv_sink: Optional[TsvSink] = None,
    sqlite_sink: Optional[SqliteSink] = None,
    on_line: Optional[Callable[[], None]] = None,
) -> MigrationSummary:
    """Stream input lines through parse, transform and the enabled sinks.

    Malformed lines are skipped and counted. A TSV write failure disables that
    channel only. A SQLite failure rolls back and propagates.
    """
    for line_number, raw in enumerate(lines, start=1):
        summary.records_read += 1
        if on_line is not None:
            on_line()

        try:
            record = parse_record(decode_line(raw))
        except RecordParseError as exc:
            summary.records_skipped_malformed += 1
            LOGGER.warning("Skipping malformed line %s: %s", line_number, exc.reason)
            continue
        summary.records_parsed += 1

        transformed = transform_record(record, mapping)
        summary.observe_transform(transformed)

        if tsv_sink is not None and tsv_sink.active:
            try:
                tsv_sink.write(transformed.record)
                summary.tsv_records_written += 1
            except PersistenceError as exc:
                LOGGER.error("%s. TSV output disabled for the rest of the run.", exc)
                tsv_sink.fail(exc)

        if sqlite_sink is not None:
            outcome = sqlite_sink.write(transformed.record)
            if outcome == OUTCOME_INSERTED:
                summary.records_written += 1
            else:
                summary.records_skipped_duplicate += 1

    return summary


class RecordProgress:
    """Rich progress bar advanced once per input line."""

    def __init__(
        self,
        *,
        total: int,
        enabled: bool,
        live_state: Optional[LiveLogState] = None,
        console: Optional[Console] = None,
    ):
        self.total = max(0, int(total))
        self.enabled = enabled
        self.live_state = live_state
        self.console = console
        self._progress: Optional[Progress] = None
        self._task_id = None

    def __enter__(self) -> "RecordProgress":
        if not self.enabled:
            return self
        self._progress = Progress(
            SpinnerColumn(style="green"),
            TimeElapsedColumn(),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            TaskProgressColumn(),
            TextColumn("{task.description}"),
            console=self.console,
        )
        self._task_id = self._progress.add_task("Processing records...", total=self.total)
        if self.live_state is not None:
            self.live_state.set_live_active(True)
        self._progress.start()
        return self

    def advance(self) -> None:
        if self._progress is not None:
            self._progress.advance(self._task_id)

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._progress is not None:
            if exc_type is None:
                self._progress.update(self._task_id, description="Record processing finished.")
            self._progress.stop()
            self._progress = None
        if self.live_state is not None:
            self.live_state.set_live_active(False)


class RunPhase(enum.Enum):
    INIT = "init"
    FETCHING = "fetching"
    MAPPING = "mapping"
    STREAMING = "streaming"
    SUMMARIZING = "summarizing"
    DONE = "done"


class MigrationRunner:
    def __init__(
        self,
        *,
        config: MigrationConfig,
        old_client: MediaServerClient,
        new_client: MediaServerClient,
        live_state: Optional[LiveLogState] = None,
        console: Optional[Console] = None,
    ):
        self.config = config
        self.old_client = old_client
        self.new_client = new_client
        self.live_state = live_state
        self.console = console or Console()
        self.show_progress = config.runtime.console_mode == "progress"
        self.phase = RunPhase.INIT
        self.summary = MigrationSummary()

    def _advance(self, phase: RunPhase) -> None:
        LOGGER.info("Phase: %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    async def run(self) -> MigrationSummary:
        self._advance(RunPhase.FETCHING)
        old_users, new_users = await fetch_user_directories(self.old_client, self.new_client)

        self._advance(RunPhase.MAPPING)
        mapping = build_identity_mapping(old_users, new_users)
        self.summary.users_mapped = len(mapping)

        self._advance(RunPhase.STREAMING)
        self._stream(mapping)

        self._advance(RunPhase.SUMMARIZING)
        tsv_enabled = self.config.output_tsv_file_path is not None
        sqlite_enabled = self.config.sqlite_db_path is not None
        self.summary.log_report(sqlite_enabled=sqlite_enabled, tsv_enabled=tsv_enabled)
        if self.show_progress:
            self.console.print(
                self.summary.to_table(sqlite_enabled=sqlite_enabled, tsv_enabled=tsv_enabled)
            )

        self._advance(RunPhase.DONE)
        return self.summary

    def _stream(self, mapping: Dict[str, str]) -> None:
        config = self.config
        input_path = config.input_tsv_file_path
        LOGGER.info("Input TSV file: %s", input_path)

        if config.output_tsv_file_path is None and config.sqlite_db_path is None:
            LOGGER.warning(
                "No output (TSV or SQLite) is configured. Records will be processed but not saved."
            )

        tsv_sink: Optional[TsvSink] = None
        sqlite_sink: Optional[SqliteSink] = None
        try:
            if config.sqlite_db_path is not None:
                sqlite_sink = SqliteSink(config.sqlite_db_path, config.sqlite_table_name)
                sqlite_sink.open()
                LOGGER.info(
                    "SQLite output will be written to: %s (table %s)",
                    config.sqlite_db_path,
                    config.sqlite_table_name,
                )
            if config.output_tsv_file_path is not None:
                tsv_sink = TsvSink(config.output_tsv_file_path, config.output_tsv_mode)
                tsv_sink.open()
                LOGGER.info(
                    "TSV output will be written to: %s (%s)",
                    config.output_tsv_file_path,
                    config.output_tsv_mode,
                )

            total = count_input_lines(input_path) if self.show_progress else 0
            with RecordProgress(
                total=total,
                enabled=self.show_progress,
                live_state=self.live_state,
                console=self.console,
            ) as progress:
                process_records(
                    iter_input_lines(input_path),
                    mapping,
                    summary=self.summary,
                    tsv_sink=tsv_sink,
                    sqlite_sink=sqlite_sink,
                    on_line=progress.advance,
                )

            if sqlite_sink is not None:
                sqlite_sink.commit()
            if tsv_sink is not None and tsv_sink.error is None:
                tsv_sink.close()
        finally:
            if sqlite_sink is not None:
                sqlite_sink.close()
            if tsv_sink is not None:
                tsv_sink.abort()

        if tsv_sink is not None and tsv_sink.error is not None:
            raise tsv_sink.error


async def run_app(
    config: MigrationConfig,
    logging_runtime: Optional[LoggingRuntime] = None,
) -> MigrationSummary:
    http = HTTPClient(
        timeout_seconds=config.http.timeout_seconds,
        max_retries=config.http.max_retries,
    )
    runner = MigrationRunner(
        config=config,
        old_client=MediaServerClient(instance=config.instance_old, http=http),
        new_client=MediaServerClient(instance=config.instance_new, http=http),
        live_state=logging_runtime.live_state if logging_runtime else None,
    )
    return await runner.run()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Migrate Jellyfin Playback Reporting history between instances",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG_FILE,
        help=f"Path to config file, JSON or TOML (default: {DEFAULT_CONFIG_FILE})",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config_path = resolve_config_path(args.config)
        config = load_config(config_path)
    except ConfigurationError as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    logging_runtime = configure_logging(config.runtime)
    LOGGER.info("Starting Jellyfin Playback Reporting migration.")
    LOGGER.info("Config file: %s", config_path)
    LOGGER.info("Configuration (URLs normalized): %s", json.dumps(config.describe()))

    try:
        asyncio.run(run_app(config, logging_runtime))
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted by user")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 130
    except MigrationError as exc:
        LOGGER.error("Migration failed: %s", exc)
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 1
    except Exception:
        LOGGER.exception("Fatal runtime error")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 1

    LOGGER.info("Migration finished successfully.")
    LOGGER.info("Log file: %s", logging_runtime.log_file_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
