#!/usr/bin/env python3
"""
===============================================================================
                              WINGET UPGRADER
===============================================================================
Version: 1.0.0

Keeps a short-lived cache of the packages `winget upgrade` reports as
upgradable and upgrades them on request.

Features:
• Tolerant parsing of winget's column-aligned console output
• Time-bounded cache with a single in-flight refresh
• Case-insensitive exclusion list applied to every cache generation
• Optimistic removal on upgrade, reconciled by a follow-up refresh
• Rich-based command line interface
"""

import argparse
import copy
import json
import logging
import os
import re
import signal
import subprocess
import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

__version__ = "1.0.0"

console = Console()
logger = logging.getLogger(__name__)

CACHE_EXPIRATION_MINUTES = 15
COMMAND_TIMEOUT_SECONDS = 10
UPGRADE_TIMEOUT_SECONDS = 1800
KILL_GRACE_SECONDS = 5
# Rows wider than this are skipped instead of matched.
MAX_ROW_LENGTH = 1024

LIST_COMMAND = "winget upgrade --accept-source-agreements"
UPGRADE_COMMAND = (
    "winget upgrade --id {package_id} --interactive --accept-source-agreements"
)

NO_UPDATES_TITLE = "No updates available"
NO_UPDATES_SUBTITLE = "All applications are up-to-date."
UPGRADE_ALL_TITLE = "Upgrade All Applications"
UPGRADE_ALL_SUBTITLE = "Upgrade all apps listed below."


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════════


class UpgraderError(Exception):
    """Base exception for winget upgrader failures."""

    pass


class LaunchFailure(UpgraderError):
    """Raised when the external command cannot be started at all."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")


class CommandTimeout(UpgraderError):
    """Raised when the external command exceeds its time bound."""

    def __init__(self, command: str, timeout: Optional[float]):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command '{command}' timed out after {timeout}s")


class CommandError(UpgraderError):
    """Raised when the external command reports an error."""

    def __init__(self, command: str, detail: str, return_code: Optional[int] = None):
        self.command = command
        self.detail = detail
        self.return_code = return_code
        super().__init__(
            detail.strip() or f"Command '{command}' exited with code {return_code}"
        )


class UpgradeFailure(UpgraderError):
    """Raised when a package could not be upgraded."""

    def __init__(self, package_id: str, reason: str):
        self.package_id = package_id
        self.reason = reason
        super().__init__(f"{package_id}: {reason}")


# ═══════════════════════════════════════════════════════════════════════════════
# CORE DATA MODELS
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PackageRecord:
    """A package winget reports as upgradable."""

    name: str
    package_id: str
    installed_version: str
    available_version: str
    source: str

    @property
    def display_title(self) -> str:
        return f"Upgrade {self.name}"

    @property
    def display_subtitle(self) -> str:
        return f"From {self.installed_version} to {self.available_version}"


@dataclass(frozen=True)
class CacheSnapshot:
    """One generation of the upgradable package cache.

    ``parsed`` holds the records of the parse this generation came from,
    ``packages`` the subset left after exclusion filtering. A ``refreshed_at``
    of None marks a generation that was invalidated and must be refreshed.
    """

    generation: int
    refreshed_at: Optional[datetime]
    packages: Tuple[PackageRecord, ...] = ()
    parsed: Tuple[PackageRecord, ...] = ()

    def get(self, package_id: str) -> Optional[PackageRecord]:
        return next((p for p in self.packages if p.package_id == package_id), None)

    def __len__(self) -> int:
        return len(self.packages)


@dataclass
class QueryResult:
    """A single entry handed to the query layer."""

    title: str
    subtitle: str
    action: Optional[Callable[[], Future]] = None
    package: Optional[PackageRecord] = None


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION SYSTEM
# ═══════════════════════════════════════════════════════════════════════════════


DEFAULT_SETTINGS: Dict = {
    "cache": {
        "expiration_minutes": CACHE_EXPIRATION_MINUTES,
    },
    "commands": {
        "list": LIST_COMMAND,
        "upgrade": UPGRADE_COMMAND,
        "list_timeout_seconds": COMMAND_TIMEOUT_SECONDS,
        "upgrade_timeout_seconds": UPGRADE_TIMEOUT_SECONDS,
    },
    "performance": {
        "max_workers": 4,
    },
    "upgrade_all": {
        "enabled": False,
    },
    "exclusions": [],
}


class ExclusionList:
    """Ordered, case-insensitive list of exclusion terms with change listeners."""

    def __init__(self, terms: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._terms: List[str] = []
        self._listeners: List[Callable[[Tuple[str, ...]], None]] = []
        for term in terms:
            self._insert(term)

    def _insert(self, term: str) -> bool:
        term = term.strip()
        if not term or self._index(term) != -1:
            return False
        self._terms.append(term)
        return True

    def _index(self, term: str) -> int:
        lowered = term.strip().lower()
        return next(
            (i for i, existing in enumerate(self._terms) if existing.lower() == lowered),
            -1,
        )

    def subscribe(self, listener: Callable[[Tuple[str, ...]], None]) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[Tuple[str, ...]], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._terms)

    def add(self, term: str) -> bool:
        """Append a term; returns False for blanks and duplicates."""
        with self._lock:
            added = self._insert(term)
        if added:
            self._notify()
        return added

    def remove(self, term: str) -> bool:
        with self._lock:
            index = self._index(term)
            if index == -1:
                return False
            del self._terms[index]
        self._notify()
        return True

    def replace(self, terms: Iterable[str]) -> None:
        with self._lock:
            self._terms = []
            for term in terms:
                self._insert(term)
        self._notify()

    def clear(self) -> None:
        self.replace(())

    def _notify(self) -> None:
        terms = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(terms)
            except Exception as e:
                logger.error(f"Exclusion listener failed: {e}")

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self.snapshot())

    def __contains__(self, term: object) -> bool:
        if not isinstance(term, str):
            return False
        with self._lock:
            return self._index(term) != -1


class UpgraderConfig:
    """JSON-backed configuration, including the user's exclusions."""

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(
                os.environ.get("WINGET_UPGRADER_HOME", Path.home() / ".winget_upgrader")
            )
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.json"
        self.log_file = self.config_dir / "winget_upgrader.log"

        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.settings = copy.deepcopy(DEFAULT_SETTINGS)
        self.load()

        self.exclusions = ExclusionList(self.settings["exclusions"])
        self.exclusions.subscribe(self._on_exclusions_changed)

    def load(self):
        """Load configuration from file with error handling."""
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    loaded_settings = json.load(f)
                    self._merge_settings(self.settings, loaded_settings)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load config: {e}")

    def _merge_settings(self, base: dict, loaded: dict):
        """Recursively merge settings."""
        for key, value in loaded.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge_settings(base[key], value)
            else:
                base[key] = value

    def save(self):
        """Save current configuration to file."""
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self.settings, f, indent=2, default=str)
        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    def _on_exclusions_changed(self, terms: Tuple[str, ...]):
        self.settings["exclusions"] = list(terms)
        self.save()

    @property
    def cache_expiration(self) -> timedelta:
        return timedelta(minutes=float(self.settings["cache"]["expiration_minutes"]))

    @property
    def list_command(self) -> str:
        return self.settings["commands"]["list"]

    @property
    def upgrade_command(self) -> str:
        return self.settings["commands"]["upgrade"]

    @property
    def list_timeout(self) -> Optional[float]:
        return self.settings["commands"]["list_timeout_seconds"]

    @property
    def upgrade_timeout(self) -> Optional[float]:
        return self.settings["commands"]["upgrade_timeout_seconds"]

    @property
    def max_workers(self) -> int:
        return max(1, int(self.settings["performance"]["max_workers"]))

    @property
    def enable_upgrade_all(self) -> bool:
        return bool(self.settings["upgrade_all"]["enabled"])

    @enable_upgrade_all.setter
    def enable_upgrade_all(self, value: bool):
        if self.enable_upgrade_all == bool(value):
            return
        self.settings["upgrade_all"]["enabled"] = bool(value)
        self.save()



def setup_logging(config: UpgraderConfig, verbose: bool = False) -> None:
    """Log to the config directory, and to the console when verbose."""
    file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[file_handler],
        force=True,
    )
    if verbose:
        rich_handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
        rich_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(rich_handler)


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND RUNNER
# ═══════════════════════════════════════════════════════════════════════════════


def _process_options() -> Dict:
    """Popen options that hide the console window and isolate the process tree."""
    if os.name == "nt":
        return {
            "creationflags": subprocess.CREATE_NO_WINDOW
            | subprocess.CREATE_NEW_PROCESS_GROUP
        }
    return {"start_new_session": True}


def _kill_process_tree(process: subprocess.Popen) -> None:
    if os.name == "nt":
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(process.pid)],
            capture_output=True,
            check=False,
            creationflags=subprocess.CREATE_NO_WINDOW,
        )
        process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _tail(text: str, count: int = 3) -> str:
    lines = [line.strip() for line in re.split(r"[\r\n]+", text) if line.strip()]
    return "\n".join(lines[-count:])


def run_command(
    command_line: str,
    timeout: Optional[float] = COMMAND_TIMEOUT_SECONDS,
    check: bool = False,
) -> str:
    """Run a command line through the shell and return its standard output.

    Any output on the error stream is a failure, even when standard output
    looks complete. A process that outlives ``timeout`` is killed together with
    its children. With ``check`` a non-zero exit status is a failure as well.

    Raises:
        LaunchFailure: the process could not be started.
        CommandTimeout: the process did not finish within ``timeout`` seconds.
        CommandError: the process wrote to stderr, or failed the exit check.
    """
    logger.debug(f"Running command (timeout={timeout}): {command_line}")
    try:
        process = subprocess.Popen(
            command_line,
            shell=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="ignore",
            **_process_options(),
        )
    except OSError as e:
        raise LaunchFailure(command_line, str(e)) from e

    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {command_line}")
        _kill_process_tree(process)
        try:
            process.communicate(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Output pipes still open after kill: {command_line}")
        raise CommandTimeout(command_line, timeout) from None

    if stderr:
        logger.debug(f"Command wrote to stderr: {command_line}")
        raise CommandError(command_line, stderr, process.returncode)
    if process.returncode != 0:
        if check:
            raise CommandError(command_line, _tail(stdout), process.returncode)
        logger.debug(f"Command exited {process.returncode}: {command_line}")
    return stdout


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT PARSER
# ═══════════════════════════════════════════════════════════════════════════════


DIVIDER_PATTERN = re.compile(r"^-+$")
LINE_SPLIT_PATTERN = re.compile(r"[\r\n]+")


def find_divider(lines: Sequence[str]) -> int:
    """Index of the first dash-only line, or -1."""
    return next(
        (i for i, line in enumerate(lines) if DIVIDER_PATTERN.match(line.rstrip())),
        -1,
    )


def match_row(line: str) -> Optional[PackageRecord]:
    """Match a five-column table row.

    The last four columns are single tokens, everything before them is the
    name. Splitting from the right keeps the work linear in the line length;
    lines over MAX_ROW_LENGTH are not attempted.
    """
    line = line.strip()
    if not line or len(line) > MAX_ROW_LENGTH:
        return None
    parts = line.rsplit(None, 4)
    if len(parts) != 5:
        return None
    name, package_id, installed_version, available_version, source = parts
    return PackageRecord(
        name=name.strip(),
        package_id=package_id,
        installed_version=installed_version,
        available_version=available_version,
        source=source,
    )


def looks_like_package_id(package_id: str) -> bool:
    # Heuristic: winget ids are dotted (Publisher.App) or dashed; a bare word
    # is usually the tail of a name that wrapped onto its own row.
    return "." in package_id or "-" in package_id


def parse_upgrade_output(raw_text: str) -> List[PackageRecord]:
    """Parse the table printed by ``winget upgrade`` into package records.

    Everything up to the dash-only divider is banner and progress noise, the
    last line is winget's "N upgrades available" summary. Rows that do not
    have five columns, or whose id column does not look like a package id,
    are skipped.
    """
    lines = [line for line in LINE_SPLIT_PATTERN.split(raw_text or "") if line.strip()]
    divider = find_divider(lines)
    if divider == -1:
        logger.debug("No table divider in winget output")
        return []

    packages = []
    for line in lines[divider + 1 : -1]:
        record = match_row(line)
        if record is None:
            logger.debug(f"Skipping unparsable line: {line!r}")
            continue
        if not looks_like_package_id(record.package_id):
            logger.debug(f"Skipping row with implausible id: {line!r}")
            continue
        packages.append(record)
    return packages


# ═══════════════════════════════════════════════════════════════════════════════
# EXCLUSION FILTER
# ═══════════════════════════════════════════════════════════════════════════════


def is_excluded(package: PackageRecord, exclusions: Iterable[str]) -> bool:
    name = package.name.lower()
    package_id = package.package_id.lower()
    for term in exclusions:
        term = term.strip().lower()
        if term and (term in name or term in package_id):
            return True
    return False


def apply_exclusions(
    packages: Iterable[PackageRecord], exclusions: Iterable[str]
) -> List[PackageRecord]:
    """Drop packages whose name or id contains any exclusion term."""
    exclusions = list(exclusions)
    return [p for p in packages if not is_excluded(p, exclusions)]


# ═══════════════════════════════════════════════════════════════════════════════
# CACHE MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════════


class UpgradableCache:
    """Current generation of upgradable packages.

    Readers get the immutable snapshot reference without locking. Writers
    prepare their data first and swap the reference under a short lock, so a
    reader sees either the previous generation or the new one, never a mix.
    """

    def __init__(
        self,
        expiration: timedelta = timedelta(minutes=CACHE_EXPIRATION_MINUTES),
        exclusions: Optional[Callable[[], Sequence[str]]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.expiration = expiration
        self._exclusions = exclusions or tuple
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[CacheSnapshot] = None

    @property
    def snapshot(self) -> Optional[CacheSnapshot]:
        return self._snapshot

    def packages(self) -> Tuple[PackageRecord, ...]:
        snapshot = self._snapshot
        return snapshot.packages if snapshot else ()

    def get(self, package_id: str) -> Optional[PackageRecord]:
        snapshot = self._snapshot
        return snapshot.get(package_id) if snapshot else None

    def is_stale(self) -> bool:
        """True when never populated, invalidated, or older than the expiration."""
        snapshot = self._snapshot
        if snapshot is None or snapshot.refreshed_at is None:
            return True
        return self._clock() - snapshot.refreshed_at > self.expiration

    def publish(self, records: Iterable[PackageRecord]) -> CacheSnapshot:
        """Replace the cache with a freshly parsed set of records."""
        unique: Dict[str, PackageRecord] = {}
        for record in records:
            unique.setdefault(record.package_id, record)
        parsed = tuple(unique.values())

        with self._lock:
            previous = self._snapshot
            snapshot = CacheSnapshot(
                generation=previous.generation + 1 if previous else 1,
                refreshed_at=self._clock(),
                packages=tuple(apply_exclusions(parsed, self._exclusions())),
                parsed=parsed,
            )
            self._snapshot = snapshot
        return snapshot

    def refilter(self) -> Optional[CacheSnapshot]:
        """Re-apply the current exclusions to the current generation."""
        with self._lock:
            current = self._snapshot
            if current is None:
                return None
            self._snapshot = replace(
                current,
                packages=tuple(apply_exclusions(current.parsed, self._exclusions())),
            )
            return self._snapshot

    def remove(self, package_id: str, invalidate: bool = False) -> bool:
        """Drop one package from the current generation.

        With ``invalidate`` the generation is also marked stale so the next
        refresh replaces it regardless of its age.
        """
        with self._lock:
            current = self._snapshot
            if current is None:
                return False
            found = current.get(package_id) is not None
            self._snapshot = replace(
                current,
                packages=tuple(p for p in current.packages if p.package_id != package_id),
                parsed=tuple(p for p in current.parsed if p.package_id != package_id),
                refreshed_at=None if invalidate else current.refreshed_at,
            )
            return found

    def invalidate(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._snapshot = replace(self._snapshot, refreshed_at=None)


Runner = Callable[..., str]


class RefreshCoordinator:
    """Refreshes the cache from winget, one refresh at a time."""

    def __init__(
        self,
        cache: UpgradableCache,
        command: str = LIST_COMMAND,
        timeout: Optional[float] = COMMAND_TIMEOUT_SECONDS,
        runner: Runner = run_command,
    ):
        self.cache = cache
        self.command = command
        self.timeout = timeout
        self.runner = runner
        self._lock = threading.Lock()

    def refresh(self, force: bool = False) -> bool:
        """Refresh the cache if it is stale (or unconditionally with ``force``).

        Callers that queue up behind a running refresh re-check staleness once
        they get the lock and return without running the command when the
        refresh they waited on already satisfied it. Failures are logged and
        leave the previous generation in place, still stale.

        Returns True when a new generation was published.
        """
        if not force and not self.cache.is_stale():
            return False

        with self._lock:
            if not force and not self.cache.is_stale():
                logger.debug("Cache was refreshed while waiting, skipping")
                return False

            try:
                output = self.runner(self.command, timeout=self.timeout)
                records = parse_upgrade_output(output)
            except UpgraderError as e:
                logger.warning(f"Refreshing upgradable packages failed: {e}")
                return False
            except Exception:
                logger.exception("Unexpected error while refreshing upgradable packages")
                return False

            snapshot = self.cache.publish(records)
            logger.info(
                f"Cache generation {snapshot.generation}: {len(snapshot.parsed)} upgradable, "
                f"{len(snapshot.parsed) - len(snapshot.packages)} excluded"
            )
            return True


# ═══════════════════════════════════════════════════════════════════════════════
# UPGRADE ORCHESTRATOR
# ═══════════════════════════════════════════════════════════════════════════════


def _log_notification(message: str) -> None:
    logger.info(message)


class UpgradeOrchestrator:
    """Runs winget upgrades and keeps the cache in step with them."""

    def __init__(
        self,
        cache: UpgradableCache,
        coordinator: RefreshCoordinator,
        command_template: str = UPGRADE_COMMAND,
        timeout: Optional[float] = UPGRADE_TIMEOUT_SECONDS,
        runner: Runner = run_command,
        notify: Callable[[str], None] = _log_notification,
    ):
        self.cache = cache
        self.coordinator = coordinator
        self.command_template = command_template
        self.timeout = timeout
        self.runner = runner
        self.notify = notify

    def upgrade(self, package: PackageRecord) -> None:
        """Upgrade one package.

        On success the package disappears from the cache right away and the
        cache is refreshed from winget, whose answer is final. On failure the
        cache is left alone and UpgradeFailure is raised.
        """
        self.notify(f"Preparing to update {package.name}... This may take a moment.")
        command = self.command_template.format(package_id=package.package_id)
        try:
            self.runner(command, timeout=self.timeout, check=True)
        except UpgraderError as e:
            logger.error(f"Upgrade of {package.package_id} failed: {e}")
            raise UpgradeFailure(package.package_id, str(e)) from e

        logger.info(f"Upgraded {package.package_id} to {package.available_version}")
        self.cache.remove(package.package_id, invalidate=True)
        # A refresh already in flight may have listed the package before the
        # upgrade; forcing guarantees a listing taken after it.
        self.coordinator.refresh(force=True)

    def upgrade_one(self, package_id: str) -> PackageRecord:
        package = self.cache.get(package_id)
        if package is None:
            raise UpgradeFailure(package_id, "not in the list of upgradable packages")
        self.upgrade(package)
        return package

    def upgrade_all(
        self, packages: Optional[Sequence[PackageRecord]] = None
    ) -> List[UpgradeFailure]:
        """Upgrade the given packages (default: every listed one) in turn.

        Returns the failures; a failure does not stop the remaining upgrades.
        """
        if packages is None:
            packages = self.cache.packages()
        failures = []
        for package in packages:
            try:
                self.upgrade(package)
            except UpgradeFailure as e:
                failures.append(e)
        return failures


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN APPLICATION
# ═══════════════════════════════════════════════════════════════════════════════


class AppUpgrader:
    """Entry point for the query layer: listing, upgrading, background refresh."""

    def __init__(
        self,
        config: UpgraderConfig,
        runner: Optional[Runner] = None,
        notify: Callable[[str], None] = _log_notification,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        runner = runner or run_command
        self.notify = notify
        self.cache = UpgradableCache(
            config.cache_expiration, exclusions=config.exclusions.snapshot, clock=clock
        )
        self.coordinator = RefreshCoordinator(
            self.cache, config.list_command, config.list_timeout, runner
        )
        self.orchestrator = UpgradeOrchestrator(
            self.cache,
            self.coordinator,
            config.upgrade_command,
            config.upgrade_timeout,
            runner,
            notify,
        )
        self.executor = ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="winget-upgrader"
        )
        config.exclusions.subscribe(self._on_exclusions_changed)

    def start(self) -> Future:
        """Warm the cache in the background."""
        return self.executor.submit(self.coordinator.refresh)

    def list_upgradable(self, filter_text: str = "") -> List[QueryResult]:
        if self.cache.is_stale():
            self.coordinator.refresh()

        packages = self.cache.packages()
        if not packages:
            return [QueryResult(NO_UPDATES_TITLE, NO_UPDATES_SUBTITLE)]

        term = (filter_text or "").strip().lower()
        results = []
        if self.config.enable_upgrade_all:
            results.append(
                QueryResult(
                    UPGRADE_ALL_TITLE,
                    UPGRADE_ALL_SUBTITLE,
                    action=lambda: self.executor.submit(self._run_upgrade_all),
                )
            )
        for package in packages:
            if term and term not in package.name.lower():
                continue
            results.append(
                QueryResult(
                    package.display_title,
                    package.display_subtitle,
                    action=self._upgrade_action(package),
                    package=package,
                )
            )
        return results

    def upgrade_one(self, package_id: str) -> PackageRecord:
        if self.cache.is_stale():
            self.coordinator.refresh()
        return self.orchestrator.upgrade_one(package_id)

    def upgrade_all(
        self, packages: Optional[Sequence[PackageRecord]] = None
    ) -> List[UpgradeFailure]:
        if packages is None and self.cache.is_stale():
            self.coordinator.refresh()
        return self.orchestrator.upgrade_all(packages)

    def _upgrade_action(self, package: PackageRecord) -> Callable[[], Future]:
        def action() -> Future:
            return self.executor.submit(self._run_upgrade, package)

        return action

    def _run_upgrade(self, package: PackageRecord) -> None:
        try:
            self.orchestrator.upgrade(package)
        except UpgradeFailure as e:
            self.notify(f"Upgrade failed: {e}")

    def _run_upgrade_all(self) -> None:
        for failure in self.orchestrator.upgrade_all():
            self.notify(f"Upgrade failed: {failure}")

    def _on_exclusions_changed(self, terms: Tuple[str, ...]) -> None:
        snapshot = self.cache.refilter()
        if snapshot is not None:
            logger.info(f"Exclusions changed, {len(snapshot)} packages listed")

    def close(self) -> None:
        self.config.exclusions.unsubscribe(self._on_exclusions_changed)
        self.executor.shutdown(wait=True)

    def __enter__(self) -> "AppUpgrader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND LINE INTERFACE
# ═══════════════════════════════════════════════════════════════════════════════


def _console_notification(message: str) -> None:
    logger.info(message)
    style = "red" if message.startswith("Upgrade failed") else "cyan"
    console.print(f"[{style}]{escape(message)}[/{style}]")


def create_packages_table(packages: Sequence[PackageRecord]) -> Table:
    table = Table(
        title="[bold cyan]⬆️  Upgradable Packages[/bold cyan]",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold blue",
    )
    table.add_column("📦 Package", style="cyan", no_wrap=True)
    table.add_column("🔗 Id", style="magenta")
    table.add_column("📋 Installed", style="dim")
    table.add_column("🎯 Available", style="green")
    table.add_column("🌐 Source")

    for package in packages:
        table.add_row(
            escape(package.name[:40]),
            package.package_id,
            package.installed_version,
            package.available_version,
            package.source,
        )
    return table


def create_exclusions_table(exclusions: Iterable[str]) -> Table:
    table = Table(title="[bold cyan]🚫 Exclusions[/bold cyan]", box=box.ROUNDED)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Term", style="yellow")
    for i, term in enumerate(exclusions, 1):
        table.add_row(str(i), escape(term))
    return table


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="winget-upgrader",
        description=f"Winget Upgrader v{__version__} - list and upgrade winget packages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  winget-upgrader                       # Show upgradable packages
  winget-upgrader edge                  # Only packages whose name contains "edge"
  winget-upgrader --upgrade Git.Git     # Upgrade one package
  winget-upgrader --upgrade-all --yes   # Upgrade everything without asking
  winget-upgrader --exclude slack       # Never list packages matching "slack"
        """,
    )
    parser.add_argument("filter", nargs="?", default="", help="Filter by package name")

    actions = parser.add_argument_group("Upgrade Options")
    actions.add_argument("--upgrade", metavar="ID", help="Upgrade the package with this id")
    actions.add_argument(
        "--upgrade-all", action="store_true", help="Upgrade all listed packages"
    )
    actions.add_argument(
        "--dry-run", action="store_true", help="Show what would be upgraded"
    )
    actions.add_argument(
        "-y", "--yes", action="store_true", help="Do not ask for confirmation"
    )

    settings = parser.add_argument_group("Settings")
    settings.add_argument(
        "--exclude", action="append", default=[], metavar="TERM",
        help="Add an exclusion term (repeatable)",
    )
    settings.add_argument(
        "--include", action="append", default=[], metavar="TERM",
        help="Remove an exclusion term (repeatable)",
    )
    settings.add_argument(
        "--list-exclusions", action="store_true", help="Show exclusion terms and exit"
    )
    toggle = settings.add_mutually_exclusive_group()
    toggle.add_argument(
        "--enable-upgrade-all", dest="enable_upgrade_all", action="store_true",
        help="Offer an 'upgrade all' entry in listings",
    )
    toggle.add_argument(
        "--disable-upgrade-all", dest="enable_upgrade_all", action="store_false",
        help="Hide the 'upgrade all' entry",
    )
    parser.set_defaults(enable_upgrade_all=None)

    runtime = parser.add_argument_group("Runtime Options")
    runtime.add_argument(
        "--timeout", type=float, metavar="SECONDS",
        help=f"Timeout for listing upgrades (default: {COMMAND_TIMEOUT_SECONDS})",
    )
    runtime.add_argument("--config-dir", type=Path, help="Configuration directory")
    runtime.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug output to the console"
    )
    runtime.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser.parse_args(argv)


def _apply_setting_arguments(config: UpgraderConfig, args: argparse.Namespace) -> None:
    for term in args.exclude:
        if config.exclusions.add(term):
            console.print(f"[green]✅ Excluding '{escape(term)}'[/green]")
    for term in args.include:
        if config.exclusions.remove(term):
            console.print(f"[green]✅ No longer excluding '{escape(term)}'[/green]")
        else:
            console.print(f"[yellow]⚠️  '{escape(term)}' was not excluded[/yellow]")
    if args.enable_upgrade_all is not None:
        config.enable_upgrade_all = args.enable_upgrade_all
    if args.timeout is not None:
        config.settings["commands"]["list_timeout_seconds"] = args.timeout


def _upgrade_all(
    upgrader: AppUpgrader, packages: Sequence[PackageRecord], args: argparse.Namespace
) -> int:
    if not packages:
        return 0
    if args.dry_run:
        for package in packages:
            console.print(
                f"[yellow]🔍 DRY RUN[/yellow]: {escape(package.name)} → {package.available_version}"
            )
        return 0
    if not args.yes and not Confirm.ask(f"🚀 Upgrade {len(packages)} packages?"):
        return 0

    failures = upgrader.upgrade_all(packages)
    console.print(
        f"\n[bold green]🎉 Completed: {len(packages) - len(failures)}/{len(packages)} "
        f"upgrades successful![/bold green]"
    )
    return 1 if failures else 0


def _upgrade_one(upgrader: AppUpgrader, args: argparse.Namespace) -> int:
    if args.dry_run:
        upgrader.coordinator.refresh()
        package = upgrader.cache.get(args.upgrade)
        if package is None:
            console.print(f"[red]❌ Package '{escape(args.upgrade)}' not found[/red]")
            return 1
        console.print(
            f"[yellow]🔍 DRY RUN[/yellow]: {escape(package.name)} → {package.available_version}"
        )
        return 0
    try:
        package = upgrader.upgrade_one(args.upgrade)
    except UpgradeFailure as e:
        console.print(f"[red]❌ Upgrade failed: {escape(str(e))}[/red]")
        return 1
    console.print(f"[green]✅[/green] {escape(package.name)} upgraded to {package.available_version}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Application entry point."""
    args = parse_arguments(argv)
    config = UpgraderConfig(args.config_dir)
    setup_logging(config, args.verbose)

    _apply_setting_arguments(config, args)
    if args.list_exclusions:
        console.print(create_exclusions_table(config.exclusions))
        return 0

    with AppUpgrader(config, notify=_console_notification) as upgrader:
        if args.upgrade:
            return _upgrade_one(upgrader, args)

        with console.status("[bold cyan]Checking for upgrades..."):
            results = upgrader.list_upgradable(args.filter)

        packages = [r.package for r in results if r.package is not None]
        if not packages:
            if upgrader.cache.packages():
                console.print(f"[yellow]No upgradable package matches '{escape(args.filter)}'[/yellow]")
            else:
                console.print(f"[green]✨ {NO_UPDATES_TITLE}. {NO_UPDATES_SUBTITLE}[/green]")
            return 0

        console.print(create_packages_table(packages))
        if args.upgrade_all:
            return _upgrade_all(upgrader, packages, args)
        if config.enable_upgrade_all:
            console.print("[dim]💡 Run with --upgrade-all to upgrade everything listed[/dim]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
