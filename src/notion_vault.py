"""Notion workspace exporter producing an Obsidian-ready Markdown vault.

Pipeline:
- export: drive Notion's export task API and download the archive
- unpack: extract the archive, join Part-N.zip fragments, flatten Export-* wrappers
- rename: strip page IDs from every name, disambiguating duplicates per folder
- rewrite: update every reference to a renamed file inside the text files

Surfaces: the `notion-vault` CLI and an MCP server (`notion-vault serve`).
Credentials: NOTION_TOKEN / NOTION_SPACE_ID / NOTION_USER_ID, or --token-file.
"""

import asyncio
import logging
import os
import random
import re
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Mapping, Optional
from urllib.parse import quote

import httpx
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notion-vault")


# =============================================================================
# Errors
# =============================================================================


class ConfigError(Exception):
    """Required configuration is missing or malformed."""


class ExportError(Exception):
    """The remote export could not be completed."""


class ExportTaskError(ExportError):
    """Notion reported an explicit failure for the export task."""

    def __init__(self, task_id: str, reason: str):
        super().__init__(f"Export task [{task_id}] failed with reason: {reason}")
        self.task_id = task_id
        self.reason = reason


class ExportProtocolError(ExportError):
    """A response from the export API did not have the expected shape."""


class ExportTimeoutError(ExportError):
    """The export task did not reach a terminal state in time."""


class ArchiveError(Exception):
    """The export archive could not be unpacked or flattened."""


class RenameError(Exception):
    """Renaming an entry failed. Renames applied before it are kept."""

    def __init__(self, old_path: Path, new_path: Path, cause: BaseException):
        super().__init__(f"Failed to rename {old_path} -> {new_path}: {cause}")
        self.old_path = old_path
        self.new_path = new_path
        self.cause = cause


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_MARKER_FORMAT = "_({n})_"

# VaultConfig field -> environment variable
ENV_VARS = {
    "token": "NOTION_TOKEN",
    "space_id": "NOTION_SPACE_ID",
    "user_id": "NOTION_USER_ID",
    "export_format": "NOTION_EXPORT_FORMAT",
    "time_zone": "NOTION_TIMEZONE",
    "locale": "NOTION_LOCALE",
    "skip_dir": "NOTION_SKIP_DIR",
    "poll_interval": "NOTION_POLL_INTERVAL",
    "export_timeout": "NOTION_EXPORT_TIMEOUT",
    "workdir": "NOTION_WORKDIR",
}

_FLOAT_FIELDS = {"poll_interval", "export_timeout"}


@dataclass
class VaultConfig:
    """Settings shared by every stage of the pipeline.

    Only the export stage needs credentials; renaming and rewriting an
    existing archive work with the defaults.
    """

    token: Optional[str] = None
    space_id: Optional[str] = None
    user_id: Optional[str] = None
    export_format: str = "markdown"
    time_zone: str = "Europe/Berlin"
    locale: str = "en"
    skip_dir: Optional[str] = None
    separator: str = " "
    marker_format: str = DEFAULT_MARKER_FORMAT
    poll_interval: float = 2.0
    export_timeout: Optional[float] = None
    workdir: Path = field(default_factory=Path.cwd)
    concurrency: int = 4

    def __post_init__(self):
        self.workdir = Path(self.workdir).expanduser()
        if "{n}" not in self.marker_format:
            raise ConfigError(
                f"Marker format must contain '{{n}}': {self.marker_format!r}"
            )
        try:
            self.marker_format.format(n=2)
        except (IndexError, KeyError, ValueError) as e:
            raise ConfigError(f"Invalid marker format {self.marker_format!r}: {e}") from e
        if self.concurrency < 1:
            raise ConfigError(f"Concurrency must be at least 1, got {self.concurrency}")

    def require_credentials(self) -> None:
        """Refuse to talk to Notion without a token, space and user."""
        missing = [
            ENV_VARS[name]
            for name in ("token", "space_id", "user_id")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(
                f"Missing {', '.join(missing)}. Set them in the environment "
                f"(or a .env file); the token may also come from --token-file."
            )


def _read_token_file(token_file: str | Path) -> str:
    token_path = Path(token_file).expanduser()
    if not token_path.exists():
        raise ConfigError(f"Token file not found: {token_path}")
    token = token_path.read_text().strip()
    if not token:
        raise ConfigError(f"Token file is empty: {token_path}")
    return token


def load_config(
    env: Optional[Mapping[str, str]] = None,
    token_file: str | Path | None = None,
    **overrides,
) -> VaultConfig:
    """Build a VaultConfig from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ).
        token_file: Optional file holding the token_v2 cookie; wins over NOTION_TOKEN.
        **overrides: Explicit field values (None values are ignored).

    Raises:
        ConfigError: If a value cannot be parsed or the token file is unusable.
    """
    env = os.environ if env is None else env
    values: dict = {}

    for name, var in ENV_VARS.items():
        raw = env.get(var)
        if not raw:
            continue
        if name in _FLOAT_FIELDS:
            try:
                values[name] = float(raw)
            except ValueError as e:
                raise ConfigError(f"{var} must be a number, got {raw!r}") from e
        else:
            values[name] = raw

    if token_file:
        values["token"] = _read_token_file(token_file)

    values.update({k: v for k, v in overrides.items() if v is not None})
    return VaultConfig(**values)


# =============================================================================
# Page ID Stripping
# =============================================================================

# 32 hex chars not glued to other letters/digits, plus the whitespace before it.
# Titles that happen to contain such a token are stripped too.
PAGE_ID_PATTERN = re.compile(r'\s*(?<![0-9A-Za-z])([0-9a-fA-F]{32})(?![0-9A-Za-z])')


def find_page_id(name: str) -> Optional[str]:
    """Return the first page ID embedded in an export name, lowercased."""
    match = PAGE_ID_PATTERN.search(name)
    if match:
        return match.group(1).lower()
    return None


def strip_page_id(name: str) -> str:
    """Remove embedded page IDs from a file or folder name.

    "Meeting Notes a1b2c3d4e5f6a1b2c3d4e5f6a1b2c3d4.md" -> "Meeting Notes.md"

    Names without an ID come back unchanged, so the function is idempotent.
    A name that would be left empty (or bare extension) is kept as is.
    """
    stripped = PAGE_ID_PATTERN.sub("", name)
    if not stripped.strip():
        return name
    if stripped.startswith(".") and not name.startswith("."):
        return name
    return stripped


# =============================================================================
# Collision Resolution
# =============================================================================


class NameCount:
    """How many entries of one directory have claimed each canonical name."""

    def __init__(self):
        self._counts: dict[str, int] = {}

    def increment(self, name: str) -> int:
        """Claim `name` once more and return the occurrence number (1-based)."""
        count = self._counts.get(name, 0) + 1
        self._counts[name] = count
        return count

    def __getitem__(self, name: str) -> int:
        return self._counts.get(name, 0)

    def __len__(self) -> int:
        return len(self._counts)


def split_name(name: str, is_directory: bool = False) -> tuple[str, str]:
    """Split a name into (stem, extension). Folders have no extension."""
    if is_directory:
        return name, ""
    return os.path.splitext(name)


def format_marker(occurrence: int, marker_format: str = DEFAULT_MARKER_FORMAT) -> str:
    return marker_format.format(n=occurrence)


def resolve_collision(
    canonical: str,
    counts: NameCount,
    is_directory: bool = False,
    separator: str = " ",
    marker_format: str = DEFAULT_MARKER_FORMAT,
) -> str:
    """Pick the on-disk name for the next entry that stripped to `canonical`.

    The first occurrence keeps the canonical name. Later ones get a marker
    before the extension: "Meeting Notes.md", "Meeting Notes _(2)_.md", ...

    Args:
        canonical: Name with the page ID already stripped.
        counts: Counter for the directory being processed (updated in place).
        is_directory: Folders never split off an extension.
        separator: Text between the stem and the marker.
        marker_format: Marker template, `{n}` is the occurrence number.

    Returns:
        The collision-free name.
    """
    occurrence = counts.increment(canonical)
    if occurrence == 1:
        return canonical
    stem, ext = split_name(canonical, is_directory)
    return f"{stem}{separator}{format_marker(occurrence, marker_format)}{ext}"


# =============================================================================
# Tree Renaming
# =============================================================================


@dataclass(frozen=True)
class Entry:
    """A file or folder found while listing a directory."""

    name: str
    is_directory: bool
    parent_path: Path

    @property
    def path(self) -> Path:
        return self.parent_path / self.name


@dataclass(frozen=True)
class RenameMapping:
    """One rename: both paths are absolute and share the same parent."""

    old_path: Path
    new_path: Path

    @property
    def old_name(self) -> str:
        return self.old_path.name

    @property
    def new_name(self) -> str:
        return self.new_path.name


class BasenameLookup:
    """Old basename -> new basename.

    Keys are unique basenames. When the same old basename was renamed at
    several depths, the mapping recorded last wins.
    """

    def __init__(self):
        self._table: dict[str, str] = {}

    def add(self, old_name: str, new_name: str) -> None:
        previous = self._table.get(old_name)
        if previous is not None and previous != new_name:
            logger.debug(f"'{old_name}' renamed more than once, using '{new_name}' over '{previous}'")
        self._table[old_name] = new_name

    def get(self, old_name: str) -> Optional[str]:
        return self._table.get(old_name)

    def items(self):
        return self._table.items()

    def __contains__(self, old_name: str) -> bool:
        return old_name in self._table

    def __len__(self) -> int:
        return len(self._table)


class MappingSet:
    """Every rename of one tree walk, in the order the renames happened.

    Parents come before their children; siblings follow name order.
    """

    def __init__(self, mappings: Optional[list[RenameMapping]] = None):
        self._mappings: list[RenameMapping] = list(mappings or [])

    def append(self, mapping: RenameMapping) -> None:
        self._mappings.append(mapping)

    def extend(self, other: "MappingSet") -> None:
        self._mappings.extend(other)

    def basename_lookup(self) -> BasenameLookup:
        lookup = BasenameLookup()
        for mapping in self._mappings:
            lookup.add(mapping.old_name, mapping.new_name)
        return lookup

    def __iter__(self) -> Iterator[RenameMapping]:
        return iter(self._mappings)

    def __len__(self) -> int:
        return len(self._mappings)

    def __getitem__(self, index: int) -> RenameMapping:
        return self._mappings[index]


def list_entries(directory: Path) -> list[Entry]:
    """List a directory, sorted by name so the walk is reproducible.

    Symlinks are reported as files and never followed.
    """
    directory = Path(directory)
    with os.scandir(directory) as it:
        entries = [
            Entry(e.name, e.is_dir(follow_symlinks=False), directory)
            for e in it
        ]
    return sorted(entries, key=lambda e: e.name)


def _rename_entry(old_path: Path, new_path: Path) -> None:
    # Path.rename silently replaces files on POSIX, so refuse instead
    if os.path.lexists(new_path):
        raise RenameError(old_path, new_path, FileExistsError(f"{new_path} already exists"))
    try:
        old_path.rename(new_path)
    except OSError as e:
        raise RenameError(old_path, new_path, e) from e


def plan_names(entries: list[Entry], config: VaultConfig) -> list[tuple[Entry, Optional[str]]]:
    """Pick the final name of every entry in one directory.

    Entries whose name has no page ID keep it and claim it before anything
    else, so a raw sibling never targets a name already in use. This also
    lets a walk interrupted halfway be resumed. The skipped folder gets None.
    """
    counts = NameCount()
    taken: set[str] = set()
    for entry in entries:
        if strip_page_id(entry.name) == entry.name:
            counts.increment(entry.name)
            taken.add(entry.name)

    plan: list[tuple[Entry, Optional[str]]] = []
    for entry in entries:
        canonical = strip_page_id(entry.name)

        if entry.is_directory and config.skip_dir and canonical == config.skip_dir:
            plan.append((entry, None))
            continue
        if canonical == entry.name:
            plan.append((entry, entry.name))
            continue

        while True:
            final = resolve_collision(
                canonical,
                counts,
                is_directory=entry.is_directory,
                separator=config.separator,
                marker_format=config.marker_format,
            )
            if final not in taken:
                break
        taken.add(final)
        plan.append((entry, final))

    return plan


def _rename_directory(directory: Path, config: VaultConfig) -> MappingSet:
    mappings = MappingSet()

    for entry, final in plan_names(list_entries(directory), config):
        if final is None:
            logger.info(f"Skipping {entry.path}")
            continue

        path = entry.path
        if final != entry.name:
            new_path = directory / final
            _rename_entry(path, new_path)
            logger.debug(f"Renamed {entry.name!r} -> {final!r} in {directory}")
            mappings.append(RenameMapping(path, new_path))
            path = new_path

        # Descend through the new path before touching the next sibling
        if entry.is_directory:
            mappings.extend(_rename_directory(path, config))

    return mappings


def rename_tree(root: str | Path, config: Optional[VaultConfig] = None) -> MappingSet:
    """Strip page IDs from every name under `root`, depth-first.

    Renames are applied immediately. A failing rename raises RenameError
    and aborts the walk without undoing earlier renames; running again
    picks up where it stopped.

    Args:
        root: Folder holding the unpacked export. Its own name is left alone.
        config: Separator, marker format and skipped folder name.

    Returns:
        MappingSet with one record per renamed entry.
    """
    config = config or VaultConfig()
    root = Path(root).resolve()
    mappings = _rename_directory(root, config)
    logger.info(f"Renamed {len(mappings)} entries under {root}")
    return mappings


# =============================================================================
# Link Rewriting
# =============================================================================

# Never opened for rewriting
BINARY_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".bmp",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".exe", ".dll", ".bin",
    ".zip", ".rar", ".iso", ".tar", ".gz",
    ".mp3", ".wav", ".mp4", ".mov", ".avi",
})

# Characters left alone by encodeURI (links in Notion's Markdown) and
# by encodeURIComponent respectively.
URI_SAFE = ";,/?:@&=+$-_.!~*'()#"
URI_COMPONENT_SAFE = "-_.!~*'()"


def is_binary_file(path: str | Path) -> bool:
    return Path(path).suffix.lower() in BINARY_EXTENSIONS


def build_replacement_table(lookup: BasenameLookup) -> dict[str, str]:
    """Expand a basename lookup with the percent-encoded spellings.

    Each encoded form of an old name maps to the same encoding of the new one.
    """
    table: dict[str, str] = {}
    for old_name, new_name in lookup.items():
        table[old_name] = new_name
    for old_name, new_name in lookup.items():
        for safe in (URI_SAFE, URI_COMPONENT_SAFE):
            encoded = quote(old_name, safe=safe)
            if encoded != old_name and encoded not in lookup:
                table[encoded] = quote(new_name, safe=safe)
    return table


def compile_replacements(table: Mapping[str, str]) -> Optional[re.Pattern]:
    """One alternation over all keys, longest first.

    Longest-first makes "Notes <id>.md" win over the folder "Notes <id>".
    """
    if not table:
        return None
    keys = sorted(table, key=len, reverse=True)
    return re.compile("|".join(re.escape(k) for k in keys))


def rewrite_text(
    text: str,
    table: Mapping[str, str],
    pattern: Optional[re.Pattern] = None,
) -> str:
    """Replace every occurrence of every old name in a single pass.

    Not link-aware: a filename mentioned in prose is rewritten as well.
    Replaced text is never matched again.
    """
    if not table:
        return text
    if pattern is None:
        pattern = compile_replacements(table)
    return pattern.sub(lambda m: table[m.group(0)], text)


@dataclass
class RewriteFailure:
    path: Path
    error: str


@dataclass
class RewriteReport:
    """Outcome of one link-rewriting pass."""

    scanned: int = 0
    skipped_binary: int = 0
    changed: list[Path] = field(default_factory=list)
    failures: list[RewriteFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _rewrite_file(path: Path, table: Mapping[str, str], pattern: re.Pattern) -> bool:
    # surrogateescape keeps bytes that are not UTF-8 identical on write-back
    raw = path.read_bytes()
    text = raw.decode("utf-8", errors="surrogateescape")
    updated = rewrite_text(text, table, pattern)
    if updated == text:
        return False
    path.write_bytes(updated.encode("utf-8", errors="surrogateescape"))
    return True


def iter_files(root: Path, skip_dir: Optional[str] = None) -> Iterator[Path]:
    """Yield regular files under root in sorted order, pruning `skip_dir`."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not (skip_dir and strip_page_id(d) == skip_dir)
        )
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if not path.is_symlink():
                yield path


def rewrite_links(
    root: str | Path,
    mappings: MappingSet,
    config: Optional[VaultConfig] = None,
) -> RewriteReport:
    """Point every reference inside the tree at the renamed files.

    Must run after rename_tree has finished. Only file contents change.
    A file that cannot be read or written is logged, recorded in the
    report and skipped; the remaining files are still processed.
    """
    config = config or VaultConfig()
    root = Path(root)
    report = RewriteReport()

    table = build_replacement_table(mappings.basename_lookup())
    pattern = compile_replacements(table)
    if pattern is None:
        logger.info("No renamed entries, skipping link rewrite")
        return report

    for path in iter_files(root, config.skip_dir):
        if is_binary_file(path):
            report.skipped_binary += 1
            continue
        report.scanned += 1
        try:
            if _rewrite_file(path, table, pattern):
                report.changed.append(path)
        except OSError as e:
            logger.warning(f"Failed to rewrite links in {path}: {e}")
            report.failures.append(RewriteFailure(path, str(e)))

    logger.info(
        f"Rewrote links in {len(report.changed)}/{report.scanned} files "
        f"({report.skipped_binary} binary skipped, {len(report.failures)} failed)"
    )
    return report


# =============================================================================
# Archive Normalization
# =============================================================================

PART_ARCHIVE_PATTERN = re.compile(r'Part-\d+\.zip$')
EXPORT_WRAPPER_PREFIX = "Export-"
STAGING_DIR_NAME = ".notion-vault-parts"


@dataclass
class NormalizeReport:
    parts: list[str] = field(default_factory=list)
    wrappers: list[str] = field(default_factory=list)


def extract_archive(zip_path: str | Path, destination: str | Path) -> list[str]:
    """Extract a zip archive and return the names of its entries."""
    try:
        with zipfile.ZipFile(zip_path) as zf:
            zf.extractall(destination)
            return zf.namelist()
    except zipfile.BadZipFile as e:
        raise ArchiveError(f"Not a valid zip archive: {zip_path}") from e


def find_part_archives(root: Path) -> list[Path]:
    """Split-archive fragments (Part-<n>.zip) anywhere under root."""
    return sorted(
        p for p in Path(root).rglob("*.zip")
        if PART_ARCHIVE_PATTERN.search(p.name) and p.is_file()
    )


def find_export_wrappers(root: Path) -> list[Path]:
    """Top-level Export-* folders that wrap the real content."""
    return sorted(
        p for p in Path(root).iterdir()
        if p.name.startswith(EXPORT_WRAPPER_PREFIX) and p.is_dir() and not p.is_symlink()
    )


def merge_into(source: Path, target: Path, overwrite: bool = False) -> None:
    """Move everything inside `source` into `target`, then remove `source`.

    Folders that exist on both sides are merged recursively. Any other
    clash raises ArchiveError, or replaces the destination when `overwrite`.
    """
    for item in sorted(source.iterdir()):
        destination = target / item.name
        if not os.path.lexists(destination):
            shutil.move(str(item), str(destination))
        elif item.is_dir() and not item.is_symlink() and destination.is_dir():
            merge_into(item, destination, overwrite)
        elif overwrite:
            logger.debug(f"Replacing {destination} with {item}")
            if destination.is_dir() and not destination.is_symlink():
                shutil.rmtree(destination)
            else:
                destination.unlink()
            shutil.move(str(item), str(destination))
        else:
            raise ArchiveError(f"Cannot move {item} to {destination}: destination exists")
    source.rmdir()


async def gather_bounded(coros, limit: int) -> list:
    """Await coroutines concurrently, at most `limit` at a time, in input order."""
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(coro):
        async with semaphore:
            return await coro

    return await asyncio.gather(*(run(c) for c in coros))


async def normalize_archive(root: str | Path, concurrency: int = 4) -> NormalizeReport:
    """Join split fragments into `root` and flatten Export-* wrappers.

    Fragments are extracted concurrently, each into its own staging folder,
    then merged into root one by one and deleted. A file shipped by several
    fragments ends up with the copy from the last one. Wrapper folders must
    not clash.
    """
    root = Path(root)
    report = NormalizeReport()

    parts = find_part_archives(root)
    if parts:
        staging_root = root / STAGING_DIR_NAME
        staging_root.mkdir(exist_ok=True)
        stages = [staging_root / str(i) for i in range(len(parts))]
        logger.info(f"Extracting {len(parts)} split archive part(s)")
        await gather_bounded(
            [asyncio.to_thread(extract_archive, part, stage) for part, stage in zip(parts, stages)],
            concurrency,
        )
        for part, stage in zip(parts, stages):
            merge_into(stage, root, overwrite=True)
            part.unlink()
            report.parts.append(part.name)
        staging_root.rmdir()

    for wrapper in find_export_wrappers(root):
        logger.info(f"Flattening {wrapper.name}")
        merge_into(wrapper, root)
        report.wrappers.append(wrapper.name)

    return report


async def unpack_export(
    zip_path: str | Path,
    workspace_dir: str | Path,
    config: Optional[VaultConfig] = None,
) -> NormalizeReport:
    """Extract the downloaded archive into workspace_dir and normalize it."""
    config = config or VaultConfig()
    names = await asyncio.to_thread(extract_archive, zip_path, workspace_dir)
    logger.info(f"Extracted {len(names)} entries from {Path(zip_path).name}")
    return await normalize_archive(workspace_dir, config.concurrency)


# =============================================================================
# Notion Export API Client
# =============================================================================

NOTION_API_BASE = "https://www.notion.so/api/v3"

TASK_IN_PROGRESS = "in_progress"
TASK_SUCCESS = "success"
TASK_FAILURE = "failure"

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # seconds

FILE_TOKEN_PATTERN = re.compile(r'file_token=([^;]+)')

_request_semaphore: Optional[asyncio.Semaphore] = None
_async_client: Optional[httpx.AsyncClient] = None


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Exponential backoff with jitter, never shorter than Retry-After."""
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _get_semaphore() -> asyncio.Semaphore:
    global _request_semaphore
    if _request_semaphore is None:
        _request_semaphore = asyncio.Semaphore(3)
    return _request_semaphore


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the shared async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=60.0, follow_redirects=True)
    return _async_client


def _auth_headers(config: VaultConfig) -> dict:
    return {
        "Cookie": f"token_v2={config.token};",
        "x-notion-active-user-header": config.user_id or "",
    }


async def _notion_request_async(
    config: VaultConfig,
    endpoint: str,
    json_body: Optional[dict] = None,
) -> httpx.Response:
    """POST to the v3 API, retrying 429 responses with backoff."""
    config.require_credentials()
    client = await _get_async_client()
    url = f"{NOTION_API_BASE}/{endpoint}"

    async with _get_semaphore():
        for attempt in range(MAX_RETRIES):
            response = await client.post(url, headers=_auth_headers(config), json=json_body or {})
            if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                retry_after = response.headers.get("Retry-After")
                delay = _compute_retry_delay(attempt, float(retry_after) if retry_after else None)
                logger.warning(f"Rate limited on {endpoint}, waiting {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
                continue
            response.raise_for_status()
            return response

    raise ExportError(f"Max retries ({MAX_RETRIES}) exceeded for {endpoint}")


@dataclass
class ExportTask:
    """State of an export task as reported by getTasks."""

    id: str
    state: str
    pages_exported: int = 0
    export_url: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_json(cls, data: dict) -> "ExportTask":
        status = data.get("status") or {}
        return cls(
            id=data.get("id", ""),
            state=data.get("state", ""),
            pages_exported=status.get("pagesExported") or 0,
            export_url=status.get("exportURL"),
            error=data.get("error"),
        )


@dataclass
class ExportResult:
    task_id: str
    export_url: str
    file_token: str
    pages_exported: int = 0


def build_export_request(config: VaultConfig) -> dict:
    """The enqueueTask payload for a whole-space export."""
    return {
        "eventName": "exportSpace",
        "request": {
            "spaceId": config.space_id,
            "shouldExportComments": False,
            "exportOptions": {
                "exportType": config.export_format,
                "collectionViewExportType": "currentView",
                "timeZone": config.time_zone,
                "locale": config.locale,
                "preferredViewMap": {},
            },
        },
    }


def _find_file_token(response: httpx.Response) -> Optional[str]:
    for cookie in response.headers.get_list("set-cookie"):
        match = FILE_TOKEN_PATTERN.search(cookie)
        if match:
            return match.group(1)
    return None


async def enqueue_export(config: VaultConfig) -> str:
    """Start a space export and return its task ID."""
    response = await _notion_request_async(
        config, "enqueueTask", {"task": build_export_request(config)}
    )
    task_id = response.json().get("taskId")
    if not task_id:
        raise ExportProtocolError("enqueueTask response did not include a taskId")
    logger.info(f"Started export as task [{task_id}].")
    return task_id


async def get_export_task(config: VaultConfig, task_id: str) -> tuple[ExportTask, Optional[str]]:
    """Fetch the task state and the file_token cookie sent alongside it."""
    response = await _notion_request_async(config, "getTasks", {"taskIds": [task_id]})
    results = response.json().get("results") or []
    data = next((t for t in results if t.get("id") == task_id), None)
    if data is None:
        raise ExportProtocolError(f"Task [{task_id}] not found.")
    return ExportTask.from_json(data), _find_file_token(response)


async def _poll_export(config: VaultConfig, task_id: str) -> ExportResult:
    while True:
        await asyncio.sleep(config.poll_interval)
        task, file_token = await get_export_task(config, task_id)

        if task.error:
            raise ExportTaskError(task_id, task.error)

        logger.info(f"Exported {task.pages_exported} pages.")

        if task.state == TASK_FAILURE:
            raise ExportTaskError(task_id, "no reason given")
        if task.state == TASK_SUCCESS:
            if not task.export_url:
                raise ExportProtocolError(f"Task [{task_id}] finished without an export URL.")
            if not file_token:
                raise ExportProtocolError(f"Task [{task_id}] finished but file_token cookie not found.")
            logger.info("Export finished.")
            return ExportResult(task_id, task.export_url, file_token, task.pages_exported)

        if task.state != TASK_IN_PROGRESS:
            logger.debug(f"Task [{task_id}] in state {task.state!r}, still waiting")


async def wait_for_export(config: VaultConfig, task_id: str) -> ExportResult:
    """Poll until the task succeeds or fails.

    Bounded by config.export_timeout (None waits forever). Cancelling the
    awaiting task stops the polling as well.

    Raises:
        ExportTaskError: Notion reported a failure.
        ExportProtocolError: Task vanished or the success response was incomplete.
        ExportTimeoutError: export_timeout elapsed.
    """
    try:
        return await asyncio.wait_for(_poll_export(config, task_id), timeout=config.export_timeout)
    except asyncio.TimeoutError as e:
        raise ExportTimeoutError(
            f"Export task [{task_id}] did not finish within {config.export_timeout}s"
        ) from e


async def download_export(
    config: VaultConfig,
    result: ExportResult,
    destination: str | Path,
) -> int:
    """Stream the finished archive to `destination`. Returns bytes written."""
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    client = await _get_async_client()
    written = 0

    async with client.stream(
        "GET", result.export_url, headers={"Cookie": f"file_token={result.file_token}"}
    ) as response:
        response.raise_for_status()
        size = response.headers.get("content-length")
        if size:
            logger.info(f"Downloading {round(int(size) / 1000 / 1000, 2)}mb...")
        with destination.open("wb") as f:
            async for chunk in response.aiter_bytes():
                f.write(chunk)
                written += len(chunk)

    logger.info(f"Saved {written} bytes to {destination}")
    return written


# =============================================================================
# Pipeline
# =============================================================================

WORKSPACE_DIR_NAME = "workspace"
WORKSPACE_ZIP_NAME = "workspace.zip"


@dataclass
class VaultReport:
    root: Path
    mappings: MappingSet
    rewrite: RewriteReport
    normalize: Optional[NormalizeReport] = None

    def summary(self) -> str:
        lines = [f"vault: {self.root}"]
        if self.normalize is not None:
            lines.append(
                f"unpacked: {len(self.normalize.parts)} part(s), "
                f"{len(self.normalize.wrappers)} wrapper(s) flattened"
            )
        lines.append(f"renamed: {len(self.mappings)}")
        lines.append(
            f"rewritten: {len(self.rewrite.changed)}/{self.rewrite.scanned} files "
            f"({self.rewrite.skipped_binary} binary skipped)"
        )
        for failure in self.rewrite.failures:
            lines.append(f"failed: {failure.path}: {failure.error}")
        return "\n".join(lines)


def build_vault(root: str | Path, config: Optional[VaultConfig] = None) -> VaultReport:
    """Rename the tree, then rewrite references to the new names."""
    config = config or VaultConfig()
    root = Path(root).resolve()
    mappings = rename_tree(root, config)
    rewrite = rewrite_links(root, mappings, config)
    return VaultReport(root=root, mappings=mappings, rewrite=rewrite)


def _reset_directory(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)


async def process_archive(path: str | Path, config: Optional[VaultConfig] = None) -> VaultReport:
    """Turn a downloaded export into a vault.

    Args:
        path: Either the export .zip (unpacked into <workdir>/workspace, which
            is recreated) or an already-unpacked folder (normalized in place).
        config: Pipeline settings.
    """
    config = config or VaultConfig()
    path = Path(path).expanduser()

    if path.is_dir():
        root = path
        normalize = await normalize_archive(root, config.concurrency)
    elif path.is_file() and zipfile.is_zipfile(path):
        root = config.workdir / WORKSPACE_DIR_NAME
        _reset_directory(root)
        normalize = await unpack_export(path, root, config)
    else:
        raise ArchiveError(f"Not a folder or zip archive: {path}")

    report = await asyncio.to_thread(build_vault, root, config)
    report.normalize = normalize
    return report


async def run_export(config: VaultConfig) -> VaultReport:
    """Export the configured space from Notion and build the vault."""
    config.require_credentials()
    workspace_zip = config.workdir / WORKSPACE_ZIP_NAME

    task_id = await enqueue_export(config)
    result = await wait_for_export(config, task_id)
    await download_export(config, result, workspace_zip)

    report = await process_archive(workspace_zip, config)
    workspace_zip.unlink()
    logger.info("Export downloaded, unzipped and converted.")
    return report


# =============================================================================
# MCP Tools
# =============================================================================

mcp = FastMCP("notion-vault", host="127.0.0.1", port=2053)

_config: Optional[VaultConfig] = None


def _get_config() -> VaultConfig:
    """Configuration loaded by `notion-vault serve`, or defaults."""
    if _config is None:
        return VaultConfig()
    return _config


def _error(code: str, message: str, hint: str | None = None) -> str:
    """Format an error for tool output, with an optional hint."""
    parts = [f"error: {code} - {message}"]
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "missing_config": "Set NOTION_TOKEN, NOTION_SPACE_ID and NOTION_USER_ID before starting the server.",
    "rename_failed": "Renames before the failure were kept. Remove the conflicting entry and run again.",
    "bad_archive": "Pass the export .zip or the folder it was unpacked into.",
    "invalid_token": "The token_v2 cookie is invalid or expired. Copy a fresh one from the browser.",
}


@mcp.tool()
def vault_strip_names(names: list[str], folders: Optional[list[str]] = None) -> str:
    """Show the names the vault would use for raw export names.

    Args:
        names: Raw file names from one folder, e.g. "Notes 0123...cdef.md".
        folders: Raw subfolder names from the same folder. Folders never
            split off an extension, so "v1.2 Notes" becomes "v1.2 Notes _(2)_".

    Returns:
        One "raw -> final" line per entry, resolved the way rename_tree does.
        Folders end in "/".
    """
    config = _get_config()
    here = Path(".")
    entries = [Entry(n, False, here) for n in names] + [Entry(n, True, here) for n in folders or []]
    lines = []
    for entry, final in plan_names(sorted(entries, key=lambda e: e.name), config):
        slash = "/" if entry.is_directory else ""
        if final is None:
            lines.append(f"{entry.name}{slash} -> (skipped)")
        else:
            lines.append(f"{entry.name}{slash} -> {final}{slash}")
    return "\n".join(lines)


@mcp.tool()
async def vault_process(path: str) -> str:
    """Convert a downloaded Notion export into an Obsidian vault.

    Args:
        path: The export .zip or an already-unpacked export folder.

    Returns:
        Summary of renamed entries and rewritten files.
    """
    try:
        report = await process_archive(path, _get_config())
    except ArchiveError as e:
        return _error("BAD_ARCHIVE", str(e), hint=HINTS["bad_archive"])
    except RenameError as e:
        return _error("RENAME_FAILED", str(e), hint=HINTS["rename_failed"])
    except OSError as e:
        return _error("IO_ERROR", f"{type(e).__name__}: {e}")
    return report.summary()


@mcp.tool()
async def vault_export() -> str:
    """Export the configured Notion space and convert it into a vault.

    Returns:
        Summary of the export, or an error line.
    """
    config = _get_config()
    try:
        report = await run_export(config)
    except ConfigError as e:
        return _error("NO_CONFIG", str(e), hint=HINTS["missing_config"])
    except ExportError as e:
        return _error("EXPORT_FAILED", str(e))
    except httpx.HTTPStatusError as e:
        if e.response.status_code in (401, 403):
            return _error("INVALID_TOKEN", f"HTTP {e.response.status_code}", hint=HINTS["invalid_token"])
        return _error("HTTP_ERROR", f"HTTP {e.response.status_code}: {e.response.text[:200]}")
    except httpx.HTTPError as e:
        return _error("HTTP_ERROR", f"{type(e).__name__}: {e}")
    except ArchiveError as e:
        return _error("BAD_ARCHIVE", str(e))
    except RenameError as e:
        return _error("RENAME_FAILED", str(e), hint=HINTS["rename_failed"])
    return report.summary()


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check for the HTTP transport."""
    config = _get_config()
    return JSONResponse({
        "status": "ok",
        "credentials_loaded": bool(config.token and config.space_id and config.user_id),
        "workdir": str(config.workdir),
    })


# =============================================================================
# Main Entry Point
# =============================================================================

FATAL_ERRORS = (ConfigError, ExportError, ArchiveError, RenameError, httpx.HTTPError, OSError)


def _build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="notion-vault",
        description="Export a Notion workspace into an Obsidian-ready Markdown vault.",
    )
    parser.add_argument("--token-file", help="File containing the Notion token_v2 cookie")
    parser.add_argument("--env-file", default=".env", help="dotenv file to load (default: .env)")
    parser.add_argument("--workdir", help="Where workspace/ and workspace.zip are created")
    parser.add_argument("--skip-dir", help="Folder name left untouched (e.g. Private)")
    parser.add_argument("--separator", help="Text between a name and its duplicate marker")
    parser.add_argument("--marker-format", help="Duplicate marker, {n} is the occurrence (default: _({n})_)")
    parser.add_argument("--timeout", type=float, help="Give up waiting for the export after N seconds")
    parser.add_argument("--concurrency", type=int, help="Archive fragments extracted in parallel")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("export", help="Export from Notion, download, unpack and convert")
    process = sub.add_parser("process", help="Convert an export .zip or unpacked folder")
    process.add_argument("path")
    strip = sub.add_parser("strip", help="Print the names raw export names would get")
    strip.add_argument("names", nargs="*", help="Raw file names")
    strip.add_argument("--folder", action="append", dest="folders", help="Raw folder name (repeatable)")
    serve = sub.add_parser("serve", help="Run as an MCP server")
    serve.add_argument("--http", action="store_true", help="Serve over HTTP on localhost:2053 instead of stdio")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Run the notion-vault CLI.

    Usage:
        notion-vault export
        notion-vault process ~/Downloads/Export-1234.zip
        notion-vault serve --http
    """
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    if args.env_file and Path(args.env_file).exists():
        load_dotenv(args.env_file)

    global _config
    try:
        _config = load_config(
            token_file=args.token_file,
            workdir=args.workdir,
            skip_dir=args.skip_dir,
            separator=args.separator,
            marker_format=args.marker_format,
            export_timeout=args.timeout,
            concurrency=args.concurrency,
        )
        if args.command == "export":
            report = asyncio.run(run_export(_config))
            print(report.summary())
        elif args.command == "process":
            report = asyncio.run(process_archive(args.path, _config))
            print(report.summary())
        elif args.command == "strip":
            print(vault_strip_names(args.names, args.folders))
        elif args.command == "serve":
            _serve(http=args.http)
    except FATAL_ERRORS as e:
        logger.error(str(e))
        raise SystemExit(1)

    return 0


def _serve(http: bool = False) -> None:
    if http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info("Starting notion-vault MCP server on http://127.0.0.1:2053")
        uvicorn.run(app, host="127.0.0.1", port=2053, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
