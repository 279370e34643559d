#!/usr/bin/env python3

import sys
import argparse
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
import shutil
import shlex
import os
import re
import subprocess
from datetime import datetime


# ========== Text ==========
def printable(text) -> str:
    """Render undecodable filename bytes as \\xNN escapes so any stream can write them."""
    text = str(text)
    try:
        raw = text.encode("utf-8", "surrogateescape")
    except UnicodeEncodeError:
        return text.encode("utf-8", "backslashreplace").decode("utf-8")
    return raw.decode("utf-8", "backslashreplace")


# ========== Exceptions ==========
class FatalError(Exception):
    pass


class ValidationError(FatalError):
    pass


class InvalidSelectionError(ValidationError):
    pass


class UnknownCommandError(ValidationError):
    pass


class ParentNotFoundError(FatalError):
    pass


class NoSnapshotIndexError(FatalError):
    pass


class NoCandidatesError(FatalError):
    def __init__(self, target, examined: int):
        super().__init__(f"No copies of {target} found in {examined} snapshot(s)")
        self.examined = examined


class AllIdenticalError(FatalError):
    pass


class RestoreError(FatalError):
    pass


class BackupExistsError(RestoreError):
    pass


# ========== CONFIG ==========
class CONFIG:
    SCRIPT_ID = "zfs-snapshot-restore"
    VERSION = "1.0"
    EXIT_SUCCESS = 0
    EXIT_MAX_FAILURES = 255
    DEFAULT_SNAPSHOT_DIR = ".zfs/snapshot"
    BACKUP_SUFFIX = ".orig"
    TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

    # Configurable system paths with fallbacks
    @staticmethod
    def get_log_dir():
        return os.environ.get("ZFS_RESTORE_LOG_DIR", "/var/log")

    @staticmethod
    def get_snapshot_dir():
        return os.environ.get("ZFS_RESTORE_SNAPSHOT_DIR", CONFIG.DEFAULT_SNAPSHOT_DIR)

    @staticmethod
    def get_diff_command() -> list:
        return shlex.split(os.environ.get("ZFS_RESTORE_DIFF", "")) or ["diff"]


# ========== Logger ==========
class Logger:
    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.log_file_path = f"{CONFIG.get_log_dir()}/{CONFIG.SCRIPT_ID}.log"
        try:
            self.log_file = open(self.log_file_path, "a", encoding="utf-8", errors="backslashreplace")
        except OSError:
            self.log_file = None
        try:
            from systemd import journal

            self.journal = journal
            self.journal_available = True
        except ImportError:
            self.journal = None
            self.journal_available = False

    def _write_logfile(self, level: str, msg: str) -> None:
        if self.log_file:
            now = datetime.now().strftime(CONFIG.TIME_FORMAT)
            self.log_file.write(f"{now} [{level}] {msg}\n")
            self.log_file.flush()

    def _journal(self, msg: str, priority: str) -> None:
        if self.journal_available:
            self.journal.send(msg, SYSLOG_IDENTIFIER=CONFIG.SCRIPT_ID, PRIORITY=getattr(self.journal, priority))

    def info(self, msg: str) -> None:
        msg = printable(msg)
        if self.verbose:
            print(f"[INFO]  {msg}", file=sys.stderr)
        self._write_logfile("INFO", msg)
        self._journal(msg, "LOG_INFO")

    def always(self, msg: str) -> None:
        msg = printable(msg)
        print(f"[INFO]  {msg}", file=sys.stderr)
        self._write_logfile("INFO", msg)
        self._journal(msg, "LOG_INFO")

    def error(self, msg: str) -> None:
        msg = printable(msg)
        print(f"[ERROR] {msg}", file=sys.stderr)
        self._write_logfile("ERROR", msg)
        self._journal(msg, "LOG_ERR")

    def close(self) -> None:
        if self.log_file:
            self.log_file.close()
            self.log_file = None


# ========== Cmd Class ==========
class Cmd:
    @staticmethod
    def _which(name: str) -> str | None:
        """Find executable in PATH or common sbin locations.

        This helps when cron provides a limited PATH that doesn't include /sbin or /usr/sbin.
        """
        p = shutil.which(name)
        if p:
            return p
        for prefix in ("/sbin", "/usr/sbin", "/usr/local/sbin"):
            candidate = os.path.join(prefix, name)
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        return None

    @staticmethod
    def diff(left, right, base: list | None = None):
        base = list(base or CONFIG.get_diff_command())
        base[0] = Cmd._which(base[0]) or base[0]
        return base + [str(left), str(right)]


# ========== Dataclass for Args ==========
@dataclass
class Args:
    files: list = field(default_factory=list)
    auto: bool = False
    verbose: bool = False
    list_only: bool = False
    dry_run: bool = False
    no_color: bool = False


# ========== File metadata ==========
@dataclass(frozen=True)
class FileInfo:
    """Size and mtime of a path; either may be None if the path could not be stat'ed."""

    size: int | None = None
    mtime: float | None = None

    @property
    def known(self) -> bool:
        return self.size is not None and self.mtime is not None

    def matches(self, other: "FileInfo") -> bool:
        return self.known and other.known and self.size == other.size and self.mtime == other.mtime

    @classmethod
    def of(cls, path) -> "FileInfo":
        try:
            st = os.stat(path)
        except OSError:
            return cls()
        return cls(size=st.st_size, mtime=st.st_mtime)


@dataclass(frozen=True)
class TargetFile:
    path: Path
    exists: bool
    info: FileInfo

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + CONFIG.BACKUP_SUFFIX)


@dataclass(frozen=True)
class Snapshot:
    name: str
    path: Path


@dataclass(frozen=True)
class Candidate:
    snapshot: str
    path: Path
    info: FileInfo


class Command(Enum):
    RESTORE = ""
    BACKUP_RESTORE = "k"
    DIFF = "d"


@dataclass(frozen=True)
class Selection:
    index: int
    command: Command


# ========== Dataset Resolver ==========
def resolve_target(path: str) -> TargetFile:
    if not path or not str(path).strip():
        raise ValidationError("Path cannot be empty")
    expanded = os.path.expanduser(str(path)).rstrip(os.sep) or os.sep
    name = os.path.basename(expanded)
    if name in (os.curdir, os.pardir):
        # "." and ".." name a directory; resolve it and restore it by its real name
        expanded = os.path.realpath(expanded)
        name = os.path.basename(expanded)
    if not name:
        raise ValidationError(f"Cannot restore {path}: it has no file name")
    # The parent is resolved as written; ".." after a symlink is physical
    parent = os.path.dirname(expanded) or os.curdir
    if not os.path.isdir(parent):
        raise ParentNotFoundError(f"Parent directory does not exist: {parent}")
    real = Path(os.path.realpath(parent)) / name
    exists = os.path.lexists(real)
    return TargetFile(path=real, exists=exists, info=FileInfo.of(real))


def find_dataset_root(path, is_mount=None) -> Path:
    """Return the mount point of the dataset containing ``path``.

    Only the parent directory has to exist. The walk is strictly upward and
    stops at the filesystem root, which is always a mount point.
    """
    is_mount = is_mount or os.path.ismount
    parent = os.path.dirname(os.path.expanduser(str(path))) or os.curdir
    if not os.path.isdir(parent):
        raise ParentNotFoundError(f"Parent directory does not exist: {parent}")
    current = os.path.realpath(parent)
    while not is_mount(current):
        up = os.path.dirname(current)
        if up == current:
            break
        current = up
    return Path(current)


# ========== SnapshotFinder ==========
class SnapshotFinder:
    def __init__(self, root: Path, logger: Logger, snapshot_dir: str | None = None):
        self.root = Path(root)
        self.logger = logger
        self.index_dir = self.root / (snapshot_dir or CONFIG.get_snapshot_dir())

    def snapshots(self) -> list:
        try:
            if not self.index_dir.is_dir():
                raise NoSnapshotIndexError(f"No snapshot directory at {self.index_dir}")
            entries = sorted(self.index_dir.iterdir(), key=lambda d: d.name)
        except OSError as e:
            raise NoSnapshotIndexError(f"Cannot read {self.index_dir}: {e}")
        return [Snapshot(name=d.name, path=d) for d in entries]

    def relative_path(self, target: TargetFile) -> Path:
        try:
            return target.path.relative_to(self.root)
        except ValueError:
            raise ValidationError(f"{target.path} is not inside dataset root {self.root}")

    def candidates(self, target: TargetFile) -> list:
        rel = self.relative_path(target)
        snapshots = self.snapshots()
        found = []
        for snap in snapshots:
            path = snap.path / rel
            self.logger.info(f"Probing {path}")
            if not os.path.lexists(path):
                continue
            found.append(Candidate(snapshot=snap.name, path=path, info=FileInfo.of(path)))
        if not found:
            raise NoCandidatesError(target.path, len(snapshots))
        self.logger.info(f"Found {len(found)} of {len(snapshots)} snapshot(s) containing {rel}")
        return found


# ========== Presenter ==========
class Match(Enum):
    IDENTICAL = "identical"
    SAME_SIZE = "same-size"
    DIFFERENT = "different"


@dataclass(frozen=True)
class Palette:
    identical: str
    same_size: str
    different: str
    reset: str


COLOR_PALETTE = Palette(identical="\033[2;9m", same_size="", different="\033[1m", reset="\033[0m")

PLAIN_PALETTE = Palette(identical="", same_size="", different="", reset="")


def pick_palette(no_color: bool = False, stream=None) -> Palette:
    stream = stream or sys.stdout
    if no_color or os.environ.get("NO_COLOR"):
        return PLAIN_PALETTE
    try:
        return COLOR_PALETTE if os.isatty(stream.fileno()) else PLAIN_PALETTE
    except (AttributeError, ValueError, OSError):
        return PLAIN_PALETTE


def sort_candidates(candidates: list) -> list:
    # sorted() is stable under reverse=True, so ties keep discovery order
    return sorted(
        candidates,
        key=lambda c: c.info.mtime if c.info.mtime is not None else float("-inf"),
        reverse=True,
    )


def classify(candidate: Candidate, target: TargetFile) -> Match:
    if target.exists and candidate.info.matches(target.info):
        return Match.IDENTICAL
    if candidate.info.size is not None and candidate.info.size == target.info.size:
        return Match.SAME_SIZE
    return Match.DIFFERENT


def all_identical(candidates: list, target: TargetFile) -> bool:
    return bool(candidates) and all(classify(c, target) is Match.IDENTICAL for c in candidates)


class Presenter:
    def __init__(self, palette: Palette = PLAIN_PALETTE):
        self.palette = palette

    @staticmethod
    def format_mtime(info: FileInfo) -> str:
        if info.mtime is None:
            return "unknown"
        return datetime.fromtimestamp(info.mtime).strftime(CONFIG.TIME_FORMAT)

    @staticmethod
    def format_size(info: FileInfo) -> str:
        return "unknown" if info.size is None else str(info.size)

    def style(self, match: Match) -> str:
        return {
            Match.IDENTICAL: self.palette.identical,
            Match.SAME_SIZE: self.palette.same_size,
            Match.DIFFERENT: self.palette.different,
        }[match]

    def render_line(self, index: int, candidate: Candidate, target: TargetFile) -> str:
        text = f"{index:>3}  {printable(candidate.snapshot):<24} {self.format_mtime(candidate.info):<19} {self.format_size(candidate.info):>12}"
        style = self.style(classify(candidate, target))
        if not style:
            return text
        return f"{style}{text}{self.palette.reset}"

    def render(self, candidates: list, target: TargetFile) -> list:
        header = f"{'#':>3}  {'snapshot':<24} {'modified':<19} {'size':>12}"
        current = f"     {'(current)':<24} {self.format_mtime(target.info):<19} {self.format_size(target.info):>12}"
        lines = [f"{printable(target.path)}:", header, current if target.exists else "     (current file does not exist)"]
        lines.extend(self.render_line(i, c, target) for i, c in enumerate(candidates))
        return lines


# ========== Selector ==========
SELECTION_RE = re.compile(r"^(\d+)([A-Za-z]?)$")


def parse_selection(token: str, count: int) -> Selection | None:
    """Parse ``<digits><optional letter>``; an empty token means skip this file."""
    token = (token or "").strip()
    if not token:
        return None
    m = SELECTION_RE.match(token)
    if not m:
        raise InvalidSelectionError(f"Invalid selection: {token!r}")
    index = int(m.group(1))
    if index >= count:
        raise InvalidSelectionError(f"Selection {index} out of range (0-{count - 1})")
    letter = m.group(2)
    try:
        command = Command(letter)
    except ValueError:
        raise UnknownCommandError(f"Unknown command {letter!r} (use k to keep a backup, d to diff)")
    return Selection(index=index, command=command)


class Selector:
    PROMPT = "Restore which? [N, Nk keep backup, Nd diff, Enter skips]: "

    def __init__(self, logger: Logger, presenter: Presenter, auto: bool = False, input_func=None, output=None):
        self.logger = logger
        self.presenter = presenter
        self.auto = auto
        self.input = input_func or input
        self.output = output or print

    def listing(self, target: TargetFile, candidates: list) -> list:
        ordered = sort_candidates(candidates)
        for line in self.presenter.render(ordered, target):
            self.output(line)
        return ordered

    def choose(self, target: TargetFile, candidates: list):
        ordered = sort_candidates(candidates)
        if all_identical(ordered, target):
            raise AllIdenticalError(f"All {len(ordered)} snapshot copies are identical to {target.path}")
        if self.auto:
            chosen = ordered[0]
            self.logger.info(f"Auto-selected {chosen.snapshot} for {target.path}")
            return chosen, Selection(index=0, command=Command.RESTORE)

        for line in self.presenter.render(ordered, target):
            self.output(line)
        # EOFError and KeyboardInterrupt end the whole run; Main handles them
        selection = parse_selection(self.input(self.PROMPT), len(ordered))
        if selection is None:
            return None
        return ordered[selection.index], selection


# ========== Restorer ==========
class Restorer:
    def __init__(self, logger: Logger, dry_run: bool = False, diff_cmd: list | None = None):
        self.logger = logger
        self.dry_run = dry_run
        self.diff_cmd = diff_cmd

    def execute(self, candidate: Candidate, command: Command, target: TargetFile) -> None:
        if command is Command.DIFF:
            self.show_diff(candidate, target)
        elif command is Command.BACKUP_RESTORE:
            self.backup_existing(target)
            self.restore_in_place(candidate, target)
        else:
            self.restore_in_place(candidate, target)

    def remove_existing(self, path: Path) -> None:
        if not os.path.lexists(path):
            return
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()

    def restore_in_place(self, candidate: Candidate, target: TargetFile) -> None:
        if self.dry_run:
            self.logger.always(f"Dry-run: Would restore {candidate.path} to {target.path}")
            return
        self.logger.info(f"Restoring {candidate.path} to {target.path}")
        try:
            # Removal comes first; a failed copy leaves the target absent
            self.remove_existing(target.path)
            if candidate.path.is_dir() and not candidate.path.is_symlink():
                shutil.copytree(candidate.path, target.path, symlinks=True)
            else:
                shutil.copy2(candidate.path, target.path, follow_symlinks=False)
        except OSError as e:
            raise RestoreError(f"Restore of {target.path} from {candidate.snapshot} failed: {e}")
        self.logger.always(f"Restored {target.path} from {candidate.snapshot}")

    def backup_existing(self, target: TargetFile) -> None:
        backup = target.backup_path
        if os.path.lexists(backup):
            raise BackupExistsError(f"Backup file already exists: {backup}")
        if not os.path.lexists(target.path):
            self.logger.info(f"Nothing to back up at {target.path}")
            return
        if self.dry_run:
            self.logger.always(f"Dry-run: Would move {target.path} to {backup}")
            return
        try:
            target.path.rename(backup)
        except OSError as e:
            raise RestoreError(f"Could not back up {target.path} to {backup}: {e}")
        self.logger.always(f"Moved {target.path} to {backup}")

    def show_diff(self, candidate: Candidate, target: TargetFile) -> None:
        cmd = Cmd.diff(candidate.path, target.path, self.diff_cmd)
        self.logger.info(f"Running: {' '.join(cmd)}")
        try:
            # diff exits 1 when files differ; that is not a failure here
            subprocess.run(cmd, check=False)
        except OSError as e:
            raise RestoreError(f"Could not run {cmd[0]}: {e}")


# ========== Main ==========
class Main:
    def __init__(self):
        self.logger: Logger = None
        self.args: Args = None
        self.processed = 0
        self.skipped = 0
        self.failed = 0

    def parse_args(self, argv=None) -> None:
        description = f"""
    {CONFIG.SCRIPT_ID} - restore files from ZFS snapshot directories.

    Looks up every copy of each FILE under the .zfs/snapshot directory of the
    dataset it lives on, lists them newest first and restores the one you pick.
    """
        epilog = f"""
SELECTION:
  N     restore copy N over the current file
  Nk    keep the current file as FILE{CONFIG.BACKUP_SUFFIX}, then restore copy N
  Nd    diff copy N against the current file
  Enter skip this file
  Ctrl-C / Ctrl-D stop processing all remaining files

  Copies identical to the current file (same size and mtime) are struck through;
  copies with a different size are highlighted.

EXAMPLES:
  {CONFIG.SCRIPT_ID} ~/notes.txt
  {CONFIG.SCRIPT_ID} --auto /tank/www/index.html /tank/www/site.css
  {CONFIG.SCRIPT_ID} --list /etc/hosts

Exit status is the number of files that could not be restored.
"""
        parser = argparse.ArgumentParser(
            prog=CONFIG.SCRIPT_ID,
            description=description,
            epilog=epilog,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument("files", nargs="+", metavar="FILE", help="File(s) to restore")
        parser.add_argument("-a", "--auto", action="store_true", help="Restore the most recent copy without prompting")
        parser.add_argument("-l", "--list", dest="list_only", action="store_true", help="Only list the copies found")
        parser.add_argument("-n", "--dry-run", action="store_true", help="Show actions but do not run them")
        parser.add_argument("--no-color", action="store_true", help="Do not decorate the listing")
        parser.add_argument("-v", "--verbose", action="store_true", help="Trace every snapshot path probed")
        parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {CONFIG.VERSION}")
        ns = parser.parse_args(argv)
        self.args = Args(**vars(ns))
        self.logger = Logger(verbose=self.args.verbose)

    def process_file(self, path: str, selector: Selector, restorer: Restorer) -> bool:
        """Returns True if something was done, False if the file was skipped."""
        target = resolve_target(path)
        root = find_dataset_root(target.path)
        self.logger.info(f"{target.path} is on dataset mounted at {root}")
        candidates = SnapshotFinder(root, self.logger).candidates(target)
        if self.args.list_only:
            selector.listing(target, candidates)
            return True
        choice = selector.choose(target, candidates)
        if choice is None:
            self.logger.info(f"Skipped {target.path}")
            return False
        candidate, selection = choice
        restorer.execute(candidate, selection.command, target)
        return True

    def summary(self) -> str:
        return f"{self.processed} processed, {self.skipped} skipped, {self.failed} failed"

    def run(self, argv=None) -> None:
        self.parse_args(argv)
        presenter = Presenter(pick_palette(self.args.no_color))
        selector = Selector(self.logger, presenter, auto=self.args.auto)
        restorer = Restorer(self.logger, dry_run=self.args.dry_run)
        try:
            for path in self.args.files:
                try:
                    if self.process_file(path, selector, restorer):
                        self.processed += 1
                    else:
                        self.skipped += 1
                except FatalError as e:
                    self.logger.error(f"{path}: {e}")
                    self.failed += 1
        except (KeyboardInterrupt, EOFError):
            print()
            self.logger.info(f"Interrupted, stopping. {self.summary()}")
            self.logger.close()
            sys.exit(CONFIG.EXIT_SUCCESS)

        summary = f"{CONFIG.SCRIPT_ID} completed. {self.summary()}"
        if self.failed:
            self.logger.error(summary)
        else:
            self.logger.info(summary)
        self.logger.close()
        sys.exit(min(self.failed, CONFIG.EXIT_MAX_FAILURES))


def main():
    Main().run()


if __name__ == "__main__":
    main()
