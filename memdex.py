#!/usr/bin/env python3
"""memdex - hybrid retrieval over a privacy-tiered personal memory store v1.0.0.

Answers natural-language questions over short markdown "memories" by combining
a persistent embedding index with a BM25 keyword index, fusing both rankings
with Reciprocal Rank Fusion and refining the top candidates with a small
coverage bonus.

Typical use:
    service = HybridSearchService.from_config("./memories", "./memories/embeddings")
    service.initialize()                         # provider check + index load
    results = service.search("deepest human voice", max_privacy="personal")
    payload = [result.to_payload() for result in results]

Key Features:
• Hybrid Search: vector similarity + field-weighted BM25, fused with RRF
• Incremental Index: per-record fingerprints, atomic write-then-rename saves
• Provider Tracking: a change of embedding provider/model forces a full rebuild
• Query Expansion: configurable synonym table appended to keyword queries
• Privacy Tiers: public < team < personal < private < sensitive
• Config Support: optional memdex_config.yaml plus MEMDEX_* environment overrides
"""

# Standard library imports
import copy
import hashlib
import json
import math
import os
import re
import tempfile
import threading
import time
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
)

# Third-party imports
import numpy as np
import requests
import yaml
from nltk.stem.porter import PorterStemmer

# Version information
__version__ = "1.0.0"

# Constants
INDEX_FILENAME = "embeddings.json"
PROVIDER_STATE_FILENAME = ".provider-state.json"
INDEX_SCHEMA_VERSION = 1
CONFIG_FILENAME = "memdex_config.yaml"
DEFAULT_RRF_K = 60
ABSENT_RANK = 1e9  # rank given to a document missing from one retrieval leg
DEFAULT_VECTOR_TOP_K = 15
DEFAULT_BM25_TOP_K = 50
DEFAULT_FUSED_TOP_K = 20
DEFAULT_CANDIDATE_MULTIPLIER = 3
DEFAULT_VECTOR_THRESHOLD = 0.1
DEFAULT_SIMILARITY_THRESHOLD = 0.5
DEFAULT_RESULTS = 5
DEFAULT_MIN_COVERAGE = 0.3
DEFAULT_COVERAGE_WEIGHT = 0.1
DEFAULT_SYNONYM_WEIGHT = 0.5
DEFAULT_MIN_TERM_LENGTH = 3
DEFAULT_BM25_K1 = 1.2
DEFAULT_BM25_B = 0.75
DEFAULT_FIELD_WEIGHTS = {"title": 4.0, "content": 1.0}
DEFAULT_PREVIEW_CHARS = 200
DEFAULT_EMBEDDING_TIMEOUT = 30.0  # seconds; embeddings are much faster than chat
DEFAULT_CHAT_TIMEOUT = 60.0
DEFAULT_TEMPORAL_HALF_LIFE_DAYS = 90
FINGERPRINT_LENGTH = 16

# Privacy tiers, least to most restricted
PRIVACY_LEVELS = ("public", "team", "personal", "private", "sensitive")
DEFAULT_MAX_PRIVACY = "personal"
DEFAULT_CATEGORY = "unknown"

# Provider presets
DEFAULT_PROVIDER = "sentence-transformers"
DEFAULT_MODEL = "all-MiniLM-L6-v2"
OLLAMA_PROVIDER = "ollama"
OLLAMA_DEFAULT_MODEL = "mxbai-embed-large"
OLLAMA_DEFAULT_HOST = "http://127.0.0.1:11434"
DEFAULT_CHAT_MODEL = "llama3.1:8b"

# Pre-compiled regex patterns for performance
WORD_PATTERN = re.compile(r"\b\w+\b")
ELISION_PATTERN = re.compile(r"(\w)['’](?:d|m|s|t|ll|re|ve)\b", re.IGNORECASE)
PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")
WHITESPACE_PATTERN = re.compile(r"\s+")
FRONTMATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
HEADING_PATTERN = re.compile(r"^#{1,6}\s+(.+?)\s*$", re.MULTILINE)
SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
WINDOWS_PATH_PATTERN = re.compile(r'[A-Za-z]:[\\\/][^\\\/\s]*[\\\/]')
UNIX_PATH_PATTERN = re.compile(r'\/[^\/\s]*\/')
FILE_URL_PATTERN = re.compile(r'\bfile:\/\/[^\s]*')

# Query expansion for BM25 recall on paraphrased questions (term -> appended terms)
DEFAULT_EXPANSIONS: Dict[str, List[str]] = {
    "deepest": ["lowest", "deep", "bass", "sub", "below", "minimal", "record"],
    "highest": ["tallest", "top", "maximum", "peak"],
    "human": ["person", "people", "body"],
    "voice": ["vocal", "sound", "pitch", "frequency"],
    "body": ["human", "anatomy", "physical"],
    "contains": ["has", "includes", "consists"],
    "water": ["liquid", "h2o", "aqua"],
    "antarctica": ["antarctic", "south", "pole"],
    "space": ["universe", "cosmos", "outer"],
    "visible": ["see", "seen", "sight"],
    "lightning": ["electric", "electrical", "strike", "thunder"],
    "ferrets": ["ferret", "animal", "mammal"],
    "business": ["group", "collection"],
    "cloud": ["clouds", "weather", "atmospheric"],
    "weight": ["weigh", "mass", "heavy"],
    "brain": ["mind", "neural", "cognitive"],
    "heart": ["cardiac", "cardiovascular"],
    "stomach": ["gastric", "digestive"],
    "wall": ["barrier", "structure"],
    "china": ["chinese"],
    "eagles": ["eagle", "bird", "raptor"],
    "whales": ["whale", "cetacean", "marine"],
}

# Multi-term rules: when every listed term is present, append the phrase
DEFAULT_PHRASE_EXPANSIONS: List[Dict[str, Any]] = [
    {"terms": ["range", "hearing"], "add": "below the range of human hearing sub-audible infrasound"},
    {"terms": ["group", "called"], "add": "collective noun name"},
]

# Synonyms credited at half weight by the coverage re-rank
DEFAULT_SYNONYMS: Dict[str, List[str]] = {
    "deepest": ["lowest", "minimal", "bass", "sub", "below"],
    "human": ["person", "people", "body", "vocal"],
    "voice": ["sound", "pitch", "frequency", "hearing", "audible"],
    "contains": ["has", "includes", "consists", "made", "enough"],
    "antarctica": ["antarctic", "south", "pole", "ice"],
    "lightning": ["electric", "strike", "thunder", "strikes"],
    "ferrets": ["ferret", "animal", "mammal"],
    "business": ["group", "collection"],
    "wall": ["barrier", "structure", "visible"],
    "china": ["chinese"],
    "eagles": ["eagle", "bird", "raptor", "convocation"],
    "whales": ["whale", "cetacean", "marine", "pod"],
}


class MemdexError(Exception):
    """Base class for retrieval engine errors."""


class EmbeddingError(MemdexError):
    """The embedding capability failed for one piece of text."""


class EmbeddingUnavailableError(EmbeddingError):
    """The embedding capability could not be reached or timed out."""


class SearchUnavailableError(MemdexError):
    """Search cannot run; distinct from a search that found nothing."""


def sanitize_error_message(error_msg: str) -> str:
    """Sanitize error messages to prevent information leakage."""
    sanitized = WINDOWS_PATH_PATTERN.sub('', error_msg)
    sanitized = UNIX_PATH_PATTERN.sub('/', sanitized)
    sanitized = FILE_URL_PATTERN.sub('[FILE_PATH]', sanitized)
    return sanitized


def log_error(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized error logging with consistent formatting."""
    if quiet:
        return

    if error:
        sanitized_error = sanitize_error_message(str(error))
        print(f"ERROR: {message}: {sanitized_error}")
    else:
        print(f"ERROR: {message}")


def log_warning(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized warning logging with consistent formatting."""
    if quiet:
        return

    if error:
        sanitized_error = sanitize_error_message(str(error))
        print(f"Warning: {message}: {sanitized_error}")
    else:
        print(f"Warning: {message}")


def log_info(message: str, *, quiet: bool = False) -> None:
    """Progress output for long-running operations."""
    if not quiet:
        print(message)


def handle_file_error(file_path: Path, operation: str, error: Exception, *, quiet: bool = False) -> None:
    """Standardized file operation error handling."""
    if isinstance(error, (FileNotFoundError, PermissionError)):
        log_error(f"Cannot {operation} {file_path.name} - {type(error).__name__}", quiet=quiet)
    elif isinstance(error, UnicodeDecodeError):
        log_error(f"Cannot {operation} {file_path.name} - encoding issue", quiet=quiet)
    else:
        log_error(f"Cannot {operation} {file_path.name}", error, quiet=quiet)


def utc_now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _atomic_write_json(path: Path, payload: Dict[str, Any], *, indent: Optional[int] = None) -> None:
    """Write JSON next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=indent, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except Exception:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _default_config() -> Dict[str, Any]:
    """Return a fresh copy of the built-in configuration."""
    return {
        "search": {
            "rrf_k": DEFAULT_RRF_K,
            "vector_top_k": DEFAULT_VECTOR_TOP_K,
            "bm25_top_k": DEFAULT_BM25_TOP_K,
            "fused_top_k": DEFAULT_FUSED_TOP_K,
            # None keeps limit * candidate_multiplier results ahead of the privacy filter
            "final_results": None,
            "candidate_multiplier": DEFAULT_CANDIDATE_MULTIPLIER,
            "vector_threshold": DEFAULT_VECTOR_THRESHOLD,
            "coverage": {
                "min_coverage": DEFAULT_MIN_COVERAGE,
                "weight": DEFAULT_COVERAGE_WEIGHT,
                "synonym_weight": DEFAULT_SYNONYM_WEIGHT,
                "min_term_length": DEFAULT_MIN_TERM_LENGTH,
            },
            "expansions": copy.deepcopy(DEFAULT_EXPANSIONS),
            "phrase_expansions": copy.deepcopy(DEFAULT_PHRASE_EXPANSIONS),
            "synonyms": copy.deepcopy(DEFAULT_SYNONYMS),
            "temporal_weighting": False,
            "temporal_half_life_days": DEFAULT_TEMPORAL_HALF_LIFE_DAYS,
        },
        "bm25": {
            "k1": DEFAULT_BM25_K1,
            "b": DEFAULT_BM25_B,
            "field_weights": dict(DEFAULT_FIELD_WEIGHTS),
        },
        "embeddings": {
            "provider": DEFAULT_PROVIDER,
            "model": DEFAULT_MODEL,
            "ollama_host": OLLAMA_DEFAULT_HOST,
            "timeout_seconds": DEFAULT_EMBEDDING_TIMEOUT,
            "preview_chars": DEFAULT_PREVIEW_CHARS,
        },
        "ai": {
            "chat_model": DEFAULT_CHAT_MODEL,
            "chat_timeout_seconds": DEFAULT_CHAT_TIMEOUT,
        },
        "privacy": {
            "default_max": DEFAULT_MAX_PRIVACY,
        },
    }


def _merge_configs(default: Dict[str, Any], user: Dict[str, Any]) -> None:
    """Recursively merge user config into default config."""
    for key, value in user.items():
        if (
            key in default
            and isinstance(default[key], dict)
            and isinstance(value, dict)
        ):
            _merge_configs(default[key], value)
        else:
            default[key] = value


def resolve_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fill a possibly partial config dict in with defaults."""
    resolved = _default_config()
    if config:
        _merge_configs(resolved, copy.deepcopy(config))
    return resolved


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Apply MEMDEX_* environment overrides in place."""
    embeddings = config["embeddings"]
    provider = os.environ.get("MEMDEX_PROVIDER")
    if provider:
        embeddings["provider"] = provider
    model = os.environ.get("MEMDEX_EMBEDDING_MODEL")
    if model:
        embeddings["model"] = model
    host = os.environ.get("MEMDEX_OLLAMA_HOST")
    if host:
        embeddings["ollama_host"] = host
    timeout = os.environ.get("MEMDEX_EMBEDDING_TIMEOUT")
    if timeout:
        try:
            embeddings["timeout_seconds"] = float(timeout)
        except ValueError:
            log_warning(f"Ignoring invalid MEMDEX_EMBEDDING_TIMEOUT={timeout!r}")
    chat_model = os.environ.get("MEMDEX_CHAT_MODEL")
    if chat_model:
        config["ai"]["chat_model"] = chat_model


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load optional configuration file."""
    config = _default_config()

    config_file = Path(config_path or CONFIG_FILENAME)
    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f) or {}
            if isinstance(user_config, dict):
                _merge_configs(config, user_config)
            else:
                log_warning(f"Ignoring {config_file.name}: top level must be a mapping")
        except yaml.YAMLError as yaml_error:
            log_warning(f"Invalid YAML format in {config_file}", yaml_error)
        except (FileNotFoundError, PermissionError) as e:
            log_warning(f"Could not access config file {config_file}", e)

    _apply_env_overrides(config)
    return config


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemoryRecord:
    """A memory as read from the store. The engine never mutates these."""

    id: str
    title: str
    content: str
    category: str = DEFAULT_CATEGORY
    privacy_level: str = DEFAULT_MAX_PRIVACY
    file_path: str = ""
    created_at: Optional[str] = None
    tags: Tuple[str, ...] = ()
    mtime: Optional[float] = None

    @property
    def filename(self) -> str:
        return Path(self.file_path or self.id).name


@dataclass(frozen=True)
class EmbeddingVector:
    record_id: str
    vector: List[float]
    model_id: str
    content_fingerprint: str
    content_preview: str
    title: str = ""
    category: str = DEFAULT_CATEGORY
    privacy_level: str = DEFAULT_MAX_PRIVACY
    file_path: str = ""
    tags: Tuple[str, ...] = ()
    created_at: Optional[str] = None
    embedded_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tags"] = list(self.tags)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddingVector":
        return cls(
            record_id=str(data["record_id"]),
            vector=[float(value) for value in data["vector"]],
            model_id=str(data["model_id"]),
            content_fingerprint=str(data["content_fingerprint"]),
            content_preview=str(data.get("content_preview") or ""),
            title=str(data.get("title") or ""),
            category=str(data.get("category") or DEFAULT_CATEGORY),
            privacy_level=str(data.get("privacy_level") or DEFAULT_MAX_PRIVACY),
            file_path=str(data.get("file_path") or ""),
            tags=tuple(data.get("tags") or ()),
            created_at=data.get("created_at"),
            embedded_at=data.get("embedded_at"),
        )


@dataclass(frozen=True)
class IndexManifest:
    provider: Optional[str] = None
    embedding_model: Optional[str] = None
    built_at: Optional[str] = None
    created_at: Optional[str] = None
    fingerprints: Dict[str, str] = field(default_factory=dict)
    schema_version: int = INDEX_SCHEMA_VERSION


@dataclass(frozen=True)
class IndexSnapshot:
    """Manifest plus vectors as last loaded or persisted.

    Published snapshots are never modified; builds assemble a new one.
    """

    manifest: IndexManifest = field(default_factory=IndexManifest)
    vectors: Dict[str, EmbeddingVector] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": INDEX_SCHEMA_VERSION,
            "manifest": asdict(self.manifest),
            "vectors": [self.vectors[key].to_dict() for key in sorted(self.vectors)],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexSnapshot":
        manifest_data = data.get("manifest") or {}
        manifest = IndexManifest(
            provider=manifest_data.get("provider"),
            embedding_model=manifest_data.get("embedding_model"),
            built_at=manifest_data.get("built_at"),
            created_at=manifest_data.get("created_at"),
            fingerprints=dict(manifest_data.get("fingerprints") or {}),
            schema_version=int(manifest_data.get("schema_version", INDEX_SCHEMA_VERSION)),
        )
        vectors = {}
        for entry in data.get("vectors") or []:
            vector = EmbeddingVector.from_dict(entry)
            vectors[vector.record_id] = vector
        return cls(manifest=manifest, vectors=vectors)


@dataclass(frozen=True)
class ProviderState:
    provider: str
    chat_model: str
    embedding_model: str
    last_check: str


@dataclass(frozen=True)
class ProviderCheck:
    changed: bool
    index_rebuild_required: bool
    current_provider: str
    previous_provider: Optional[str] = None


@dataclass
class BuildStats:
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    removed: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RankedHit:
    """One entry of a single retrieval leg's ranking (vector or keyword)."""

    record_id: str
    score: float
    title: str = ""
    content: str = ""
    category: str = DEFAULT_CATEGORY
    privacy_level: str = DEFAULT_MAX_PRIVACY
    file_path: str = ""
    tags: Tuple[str, ...] = ()
    created_at: Optional[str] = None


@dataclass(frozen=True)
class SearchResult:
    record_id: str
    score: float
    title: str = ""
    content: str = ""
    category: str = DEFAULT_CATEGORY
    privacy_level: str = DEFAULT_MAX_PRIVACY
    file_path: str = ""
    tags: Tuple[str, ...] = ()
    created_at: Optional[str] = None
    vector_score: Optional[float] = None
    bm25_score: Optional[float] = None
    coverage_bonus: Optional[float] = None

    @property
    def filename(self) -> str:
        return Path(self.file_path or self.record_id).name or "unknown"

    @property
    def relevance_score(self) -> int:
        """Fused score on the 0-100 scale used by downstream formatting."""
        return int(round(self.score * 100))

    def to_payload(self) -> Dict[str, Any]:
        """Field names consumed by the synthesis/transport layer."""
        return {
            "filename": self.filename,
            "content": self.content or "No content available",
            "category": self.category,
            "tags": ", ".join(self.tags) if self.tags else "none",
            "relevanceScore": self.relevance_score,
            "privacy": self.privacy_level,
        }


def compute_fingerprint(content: str, mtime: Optional[float] = None) -> str:
    """Hash of content plus modification time for change detection."""
    digest = hashlib.sha256()
    digest.update(content.encode("utf-8"))
    digest.update(b"\0")
    digest.update(repr(mtime).encode("ascii") if mtime is not None else b"")
    return digest.hexdigest()[:FINGERPRINT_LENGTH]


# ---------------------------------------------------------------------------
# Privacy
# ---------------------------------------------------------------------------


def privacy_rank(level: str, levels: Sequence[str] = PRIVACY_LEVELS) -> int:
    """Ordinal of a privacy tier; raises ValueError for unknown tiers."""
    try:
        return levels.index(level)
    except ValueError:
        raise ValueError(
            f"Unknown privacy level {level!r}; expected one of {', '.join(levels)}"
        ) from None


class PrivacyFilter:
    """Drops results whose tier exceeds the caller's maximum."""

    def __init__(self, levels: Sequence[str] = PRIVACY_LEVELS) -> None:
        self.levels = tuple(levels)

    def allowed_levels(self, max_privacy: str) -> Tuple[str, ...]:
        return self.levels[: privacy_rank(max_privacy, self.levels) + 1]

    def is_allowed(self, privacy_level: str, max_privacy: str) -> bool:
        return privacy_level in self.allowed_levels(max_privacy)

    def apply(self, results: Iterable[Any], max_privacy: str) -> List[Any]:
        """Keep results (anything with ``privacy_level``) visible at ``max_privacy``."""
        allowed = set(self.allowed_levels(max_privacy))
        return [result for result in results if result.privacy_level in allowed]


# ---------------------------------------------------------------------------
# Memory store collaborator
# ---------------------------------------------------------------------------


def parse_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    """Split YAML frontmatter from a markdown body.

    Malformed frontmatter yields an empty mapping; the body is kept either way.
    """
    match = FRONTMATTER_PATTERN.match(text)
    if not match:
        return {}, text

    body = text[match.end():]
    try:
        meta = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return {}, body
    if not isinstance(meta, dict):
        return {}, body
    return meta, body


def _coerce_tags(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return tuple(tag.strip() for tag in value.split(",") if tag.strip())
    if isinstance(value, (list, tuple)):
        return tuple(str(tag).strip() for tag in value if str(tag).strip())
    return ()


def _coerce_timestamp(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None:
        return None
    return str(value)


class MemoryStore:
    """Markdown memories laid out as ``<root>/<privacy tier>/<name>.md``."""

    def __init__(self, root: Path, quiet: bool = False) -> None:
        self.root = Path(root)
        self.quiet = quiet

    def find_files(self) -> List[Path]:
        files: List[Path] = []
        for level in PRIVACY_LEVELS:
            level_dir = self.root / level
            if level_dir.is_dir():
                files.extend(sorted(level_dir.glob("*.md")))
        return files

    def iter_records(self) -> Iterator[MemoryRecord]:
        for path in self.find_files():
            record = self.load_record(path)
            if record is not None:
                yield record

    def get(self, record_id: str) -> Optional[MemoryRecord]:
        path = (self.root / record_id).resolve()
        if path.parent.parent != self.root.resolve() or path.parent.name not in PRIVACY_LEVELS:
            return None
        if not path.is_file():
            return None
        return self.load_record(self.root / path.parent.name / path.name)

    def read_content(self, record_id: str) -> Optional[str]:
        """Current body of a record, or None if it can no longer be read."""
        record = self.get(record_id)
        return record.content if record is not None else None

    def count_by_privacy(self) -> Dict[str, int]:
        counts = {level: 0 for level in PRIVACY_LEVELS}
        for path in self.find_files():
            counts[path.parent.name] += 1
        counts["total"] = sum(counts.values())
        return counts

    def load_record(self, path: Path) -> Optional[MemoryRecord]:
        """Read one memory file, applying defaults for missing metadata."""
        try:
            text = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except (OSError, UnicodeDecodeError) as error:
            handle_file_error(path, "read", error, quiet=self.quiet)
            return None

        meta, body = parse_frontmatter(text)
        body = body.strip()
        record_id = path.relative_to(self.root).as_posix()

        directory_level = path.parent.name
        privacy_level = directory_level
        declared = meta.get("privacy")
        if declared in PRIVACY_LEVELS and declared != directory_level:
            # The stricter of directory and frontmatter wins
            if privacy_rank(declared) > privacy_rank(directory_level):
                privacy_level = declared
            log_warning(
                f"{record_id} declares privacy {declared!r} but lives in {directory_level!r}; "
                f"using {privacy_level!r}",
                quiet=self.quiet,
            )

        title = meta.get("title")
        if not title:
            heading = HEADING_PATTERN.search(body)
            title = heading.group(1) if heading else path.stem

        return MemoryRecord(
            id=record_id,
            title=str(title),
            content=body,
            category=str(meta.get("category") or DEFAULT_CATEGORY),
            privacy_level=privacy_level,
            file_path=record_id,
            created_at=_coerce_timestamp(meta.get("created"))
            or datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat(),
            tags=_coerce_tags(meta.get("tags")),
            mtime=mtime,
        )

    def save(
        self,
        content: str,
        title: Optional[str] = None,
        category: Optional[str] = None,
        privacy_level: str = DEFAULT_MAX_PRIVACY,
        tags: Optional[Sequence[str]] = None,
    ) -> MemoryRecord:
        """Write a new memory file and return it as a record."""
        privacy_rank(privacy_level)
        if not title:
            lines = content.strip().splitlines()
            title = lines[0][:50].strip() if lines else "Untitled"
        slug = SLUG_PATTERN.sub("-", title.lower()).strip("-")[:60] or "memory"
        level_dir = self.root / privacy_level
        level_dir.mkdir(parents=True, exist_ok=True)

        path = level_dir / f"{slug}-{int(time.time() * 1000)}.md"
        suffix = 1
        while path.exists():
            path = level_dir / f"{slug}-{int(time.time() * 1000)}-{suffix}.md"
            suffix += 1

        frontmatter = yaml.safe_dump(
            {
                "title": title,
                "category": category or "general",
                "privacy": privacy_level,
                "tags": list(tags or []),
                "created": utc_now_iso(),
            },
            sort_keys=False,
            allow_unicode=True,
        )
        path.write_text(f"---\n{frontmatter}---\n\n# {title}\n\n{content.strip()}\n", encoding="utf-8")

        record = self.load_record(path)
        if record is None:
            raise MemdexError(f"Saved memory {path.name} could not be read back")
        return record


# ---------------------------------------------------------------------------
# Keyword search: normalization, expansion and BM25
# ---------------------------------------------------------------------------


_STEMMER = PorterStemmer()


@lru_cache(maxsize=50000)
def _stem(token: str) -> str:
    return _STEMMER.stem(token)


class TextNormalizer:
    """lowercase -> strip elisions -> strip punctuation -> collapse spaces -> stem."""

    def __init__(self, stem: bool = True) -> None:
        self.stem = stem

    def prepare(self, text: str) -> str:
        text = text.lower()
        text = ELISION_PATTERN.sub(r"\1", text)
        text = PUNCTUATION_PATTERN.sub(" ", text)
        return WHITESPACE_PATTERN.sub(" ", text).strip()

    def tokenize(self, text: str) -> List[str]:
        if not text:
            return []
        tokens = self.prepare(text).split(" ")
        tokens = [token for token in tokens if token]
        if self.stem:
            return [_stem(token) for token in tokens]
        return tokens


class QueryExpander:
    """Appends related terms to a query; never removes or reweights originals."""

    def __init__(
        self,
        expansions: Optional[Dict[str, List[str]]] = None,
        phrase_expansions: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.expansions = DEFAULT_EXPANSIONS if expansions is None else expansions
        self.phrase_expansions = (
            DEFAULT_PHRASE_EXPANSIONS if phrase_expansions is None else phrase_expansions
        )

    def expand(self, query: str) -> str:
        expanded = query.lower()
        words = set(WORD_PATTERN.findall(expanded))

        additions: List[str] = []
        for term, related in self.expansions.items():
            if term.lower() in words:
                additions.extend(related)

        for rule in self.phrase_expansions:
            terms = [str(term).lower() for term in rule.get("terms", [])]
            if terms and all(term in words for term in terms):
                additions.append(str(rule.get("add", "")))

        additions = [addition for addition in additions if addition]
        if additions:
            expanded = f"{expanded} {' '.join(additions)}"
        return expanded


class BM25Scorer:
    """Incremental field-weighted BM25.

    Documents can be appended at any time but never deleted; superseded or
    removed documents keep contributing to the collection statistics until a
    fresh scorer is built.
    """

    def __init__(
        self,
        k1: float = DEFAULT_BM25_K1,
        b: float = DEFAULT_BM25_B,
        field_weights: Optional[Dict[str, float]] = None,
    ) -> None:
        self.k1 = k1
        self.b = b
        self.field_weights = dict(field_weights or DEFAULT_FIELD_WEIGHTS)
        self.doc_ids: List[str] = []
        self.doc_lengths: List[float] = []
        self.term_frequencies: List[Dict[str, float]] = []
        self.doc_freqs: Dict[str, int] = defaultdict(int)
        self.total_length = 0.0
        self._latest: Dict[str, int] = {}

    @property
    def doc_count(self) -> int:
        return len(self.doc_ids)

    @property
    def live_doc_ids(self) -> List[str]:
        """Ids whose latest posting is searchable."""
        return list(self._latest)

    @property
    def avg_doc_length(self) -> float:
        return self.total_length / self.doc_count if self.doc_count else 0.0

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._latest

    def add(self, doc_id: str, fields: Dict[str, List[str]]) -> None:
        """Append a document given its already-normalized field tokens."""
        term_freq: Dict[str, float] = Counter()
        for field_name, tokens in fields.items():
            weight = float(self.field_weights.get(field_name, 1.0))
            for token in tokens:
                term_freq[token] += weight

        self._latest[doc_id] = len(self.doc_ids)
        self.doc_ids.append(doc_id)
        self.term_frequencies.append(dict(term_freq))
        length = float(sum(term_freq.values()))
        self.doc_lengths.append(length)
        self.total_length += length
        for term in term_freq:
            self.doc_freqs[term] += 1

    def idf(self, term: str) -> float:
        doc_freq = self.doc_freqs.get(term, 0)
        if not doc_freq:
            return 0.0
        return math.log(1.0 + (self.doc_count - doc_freq + 0.5) / (doc_freq + 0.5))

    def score(self, query_terms: Sequence[str], doc_index: int) -> float:
        """Calculate BM25 score for normalized query terms against a document."""
        if doc_index < 0 or doc_index >= len(self.term_frequencies):
            return 0.0

        term_freq = self.term_frequencies[doc_index]
        avg_length = self.avg_doc_length or 1.0
        length_normalization = 1 - self.b + self.b * (self.doc_lengths[doc_index] / avg_length)

        score = 0.0
        for term in query_terms:
            tf = term_freq.get(term)
            if not tf:
                continue
            numerator = tf * (self.k1 + 1)
            denominator = tf + self.k1 * length_normalization
            score += self.idf(term) * (numerator / denominator)
        return max(0.0, score)

    def search(self, query_terms: Sequence[str], limit: int) -> List[Tuple[str, float]]:
        """Top ``limit`` (doc_id, score) pairs with a positive score."""
        terms = list(dict.fromkeys(query_terms))
        if not terms or not self.doc_ids:
            return []

        scored = []
        for doc_index, doc_id in enumerate(self.doc_ids):
            if self._latest.get(doc_id) != doc_index:
                continue  # superseded by a later add of the same id
            score = self.score(terms, doc_index)
            if score > 0:
                scored.append((score, doc_index, doc_id))

        scored.sort(key=lambda item: (-item[0], item[1]))
        return [(doc_id, score) for score, _, doc_id in scored[:limit]]


class KeywordIndex:
    """BM25 keyword index over memory titles and content.

    ``remove_document`` only forgets the document's metadata. The ranked
    structure keeps its postings (collection statistics and the ``limit``
    window still see it) until ``rebuild_index`` re-adds the remaining
    documents. Batch removals, then rebuild once.
    """

    engine_name = "memdex-bm25"

    def __init__(self, config: Optional[Dict[str, Any]] = None, quiet: bool = False) -> None:
        self.config = resolve_config(config)
        self.quiet = quiet
        bm25_config = self.config["bm25"]
        self.k1 = float(bm25_config["k1"])
        self.b = float(bm25_config["b"])
        self.field_weights = {
            name: float(weight) for name, weight in bm25_config["field_weights"].items()
        }
        search_config = self.config["search"]
        self.normalizer = TextNormalizer()
        self.expander = QueryExpander(
            search_config.get("expansions"), search_config.get("phrase_expansions")
        )
        self._documents: Dict[str, MemoryRecord] = {}
        self._lock = threading.RLock()
        self._scorer = self._new_scorer()

    def _new_scorer(self) -> BM25Scorer:
        return BM25Scorer(k1=self.k1, b=self.b, field_weights=self.field_weights)

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._documents

    def get(self, record_id: str) -> Optional[MemoryRecord]:
        return self._documents.get(record_id)

    @property
    def pending_removals(self) -> int:
        """Documents removed from metadata but still present in the ranked index."""
        with self._lock:
            return sum(1 for doc_id in self._scorer.live_doc_ids if doc_id not in self._documents)

    def _index_fields(self, record: MemoryRecord) -> Dict[str, List[str]]:
        return {
            "title": self.normalizer.tokenize(record.title),
            "content": self.normalizer.tokenize(f"{record.title} {record.content}"),
        }

    def add_document(self, record: MemoryRecord) -> None:
        with self._lock:
            self._documents[record.id] = record
            self._scorer.add(record.id, self._index_fields(record))

    def remove_document(self, record_id: str) -> bool:
        with self._lock:
            return self._documents.pop(record_id, None) is not None

    def rebuild_index(self) -> None:
        """Recreate the ranked structure from the documents still known."""
        with self._lock:
            scorer = self._new_scorer()
            for record in self._documents.values():
                scorer.add(record.id, self._index_fields(record))
            self._scorer = scorer

    def reset(self, records: Iterable[MemoryRecord]) -> None:
        """Replace every document with ``records`` and rebuild."""
        with self._lock:
            self._documents = {record.id: record for record in records}
            self.rebuild_index()

    def search(self, query: str, limit: int = DEFAULT_BM25_TOP_K) -> List[RankedHit]:
        expanded = self.expander.expand(query)
        terms = self.normalizer.tokenize(expanded)

        with self._lock:
            matches = self._scorer.search(terms, limit)
            documents = dict(self._documents)

        hits: List[RankedHit] = []
        for doc_id, score in matches:
            record = documents.get(doc_id)
            if record is None:
                log_warning(f"BM25 result {doc_id} has no document (removed, awaiting rebuild)", quiet=self.quiet)
                continue
            hits.append(
                RankedHit(
                    record_id=record.id,
                    score=score,
                    title=record.title,
                    content=record.content,
                    category=record.category,
                    privacy_level=record.privacy_level,
                    file_path=record.file_path,
                    tags=record.tags,
                    created_at=record.created_at,
                )
            )
        return hits

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "documents": len(self._documents),
                "ranked_documents": len(self._scorer.live_doc_ids),
                "pending_removals": self.pending_removals,
                "engine": self.engine_name,
                "k1": self.k1,
                "b": self.b,
                "field_weights": dict(self.field_weights),
            }


# ---------------------------------------------------------------------------
# Embedding capability
# ---------------------------------------------------------------------------


class EmbeddingProvider:
    """Given text, return a fixed-length vector. Raise on failure."""

    provider_name = "base"

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name

    @property
    def model_id(self) -> str:
        return f"{self.provider_name}:{self.model_name}"

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError


class SentenceTransformerProvider(EmbeddingProvider):
    """Local in-process embeddings via sentence-transformers."""

    provider_name = DEFAULT_PROVIDER

    def __init__(self, model_name: str = DEFAULT_MODEL, quiet: bool = False) -> None:
        super().__init__(model_name)
        self.quiet = quiet
        self._model = None
        self._load_lock = threading.Lock()

    @property
    def model(self):
        """Lazy-load embedding model."""
        if self._model is None:
            with self._load_lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer

                    if not self.quiet:
                        print(f"Loading embedding model ({self.model_name})...")
                    self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, text: str) -> List[float]:
        try:
            model = self.model
        except (ImportError, OSError) as error:
            raise EmbeddingUnavailableError(f"Cannot load model {self.model_name}: {error}") from error
        vectors = model.encode([text], show_progress_bar=False)
        return [float(value) for value in vectors[0]]


class OllamaProvider(EmbeddingProvider):
    """Embeddings from an Ollama server over HTTP."""

    provider_name = OLLAMA_PROVIDER

    def __init__(
        self,
        model_name: str = OLLAMA_DEFAULT_MODEL,
        host: str = OLLAMA_DEFAULT_HOST,
        timeout: float = DEFAULT_EMBEDDING_TIMEOUT,
    ) -> None:
        super().__init__(model_name)
        self.host = host.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def embed(self, text: str) -> List[float]:
        try:
            response = self._session.post(
                f"{self.host}/api/embeddings",
                json={"model": self.model_name, "prompt": text},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except (requests.ConnectionError, requests.Timeout) as error:
            raise EmbeddingUnavailableError(f"Ollama unreachable at {self.host}: {error}") from error
        except requests.HTTPError as error:
            status = error.response.status_code if error.response is not None else None
            if status is None or status == 404 or status >= 500:
                raise EmbeddingUnavailableError(
                    f"Ollama embedding request failed ({status}) for model {self.model_name}"
                ) from error
            raise EmbeddingError(f"Ollama rejected embedding request ({status})") from error

        try:
            embedding = response.json().get("embedding")
        except ValueError as error:
            raise EmbeddingError("Ollama returned a non-JSON response") from error
        if not embedding:
            raise EmbeddingError("No embedding returned from model")
        return [float(value) for value in embedding]


def create_embedding_provider(config: Optional[Dict[str, Any]] = None, quiet: bool = False) -> EmbeddingProvider:
    """Build the provider named by ``embeddings.provider``."""
    embeddings = resolve_config(config)["embeddings"]
    provider = str(embeddings["provider"]).lower()
    if provider == OLLAMA_PROVIDER:
        return OllamaProvider(
            model_name=embeddings["model"],
            host=embeddings["ollama_host"],
            timeout=float(embeddings["timeout_seconds"]),
        )
    if provider in (DEFAULT_PROVIDER, "local"):
        return SentenceTransformerProvider(embeddings["model"], quiet=quiet)
    raise ValueError(f"Unknown embedding provider: {embeddings['provider']!r}")


class EmbeddingClient:
    """Timeout-bounded front for an embedding provider.

    Every call waits at most ``timeout_seconds``; a timeout surfaces as
    EmbeddingUnavailableError, never as a partial vector.

    A timed-out provider call keeps running in its worker thread, since
    cancel() only stops calls that have not started. With two workers, two
    hung calls make later calls wait in the queue and use up their own
    timeout there.
    """

    def __init__(self, provider: EmbeddingProvider, timeout_seconds: float = DEFAULT_EMBEDDING_TIMEOUT) -> None:
        self.provider = provider
        self.timeout_seconds = float(timeout_seconds)
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="memdex-embed")

    @property
    def provider_name(self) -> str:
        return self.provider.provider_name

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    @property
    def model_id(self) -> str:
        return self.provider.model_id

    def embed(self, text: str) -> List[float]:
        future = self._executor.submit(self.provider.embed, text)
        try:
            vector = future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError:
            future.cancel()
            raise EmbeddingUnavailableError(
                f"Embedding timed out after {self.timeout_seconds:g}s ({self.model_id})"
            ) from None
        except EmbeddingError:
            raise
        except (ConnectionError, TimeoutError, OSError) as error:
            raise EmbeddingUnavailableError(f"Embedding capability unavailable: {error}") from error
        except Exception as error:
            raise EmbeddingError(f"Embedding failed: {error}") from error

        if vector is None or len(vector) == 0:
            raise EmbeddingError(f"Empty embedding returned by {self.model_id}")
        return [float(value) for value in vector]

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def create_embedding_client(config: Optional[Dict[str, Any]] = None, quiet: bool = False) -> EmbeddingClient:
    resolved = resolve_config(config)
    provider = create_embedding_provider(resolved, quiet=quiet)
    return EmbeddingClient(provider, timeout_seconds=float(resolved["embeddings"]["timeout_seconds"]))


# ---------------------------------------------------------------------------
# Embedding index
# ---------------------------------------------------------------------------


class EmbeddingIndex:
    """Persistent record -> vector index with incremental rebuilds.

    Queries read whichever snapshot was last loaded or persisted. Builds and
    single-record adds assemble a new snapshot, write it atomically and only
    then swap it in.
    """

    def __init__(
        self,
        store: MemoryStore,
        client: EmbeddingClient,
        index_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        quiet: bool = False,
    ) -> None:
        self.store = store
        self.client = client
        self.index_dir = Path(index_dir)
        self.index_path = self.index_dir / INDEX_FILENAME
        self.config = resolve_config(config)
        self.quiet = quiet
        self.preview_chars = int(self.config["embeddings"]["preview_chars"])
        self._snapshot: Optional[IndexSnapshot] = None
        self._snapshot_lock = threading.Lock()
        self._build_lock = threading.Lock()

    @property
    def snapshot(self) -> IndexSnapshot:
        """The currently published snapshot, loaded from disk on first use."""
        if self._snapshot is None:
            loaded = self.load_index()
            with self._snapshot_lock:
                if self._snapshot is None:
                    self._snapshot = loaded
        return self._snapshot

    def _publish(self, snapshot: IndexSnapshot) -> None:
        with self._snapshot_lock:
            self._snapshot = snapshot

    def reload(self) -> IndexSnapshot:
        snapshot = self.load_index()
        self._publish(snapshot)
        return snapshot

    def load_index(self) -> IndexSnapshot:
        """Read the index file; a missing or corrupt file is an empty index."""
        if not self.index_path.exists():
            return IndexSnapshot()

        try:
            with open(self.index_path, "r", encoding="utf-8") as index_file:
                data = json.load(index_file)
            if not isinstance(data, dict):
                raise ValueError("index root is not an object")
            return IndexSnapshot.from_dict(data)
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as err:
            log_warning(
                f"Could not read embedding index {self.index_path.name}; starting fresh",
                err,
                quiet=self.quiet,
            )
            return IndexSnapshot()

    def save_index(self, snapshot: IndexSnapshot) -> None:
        """Persist manifest and vectors with write-then-rename."""
        _atomic_write_json(self.index_path, snapshot.to_dict())

    def _embed_record(self, record: MemoryRecord, fingerprint: str) -> EmbeddingVector:
        vector = self.client.embed(record.content or record.title)
        return EmbeddingVector(
            record_id=record.id,
            vector=vector,
            model_id=self.client.model_id,
            content_fingerprint=fingerprint,
            content_preview=record.content[: self.preview_chars],
            title=record.title,
            category=record.category,
            privacy_level=record.privacy_level,
            file_path=record.file_path,
            tags=record.tags,
            created_at=record.created_at,
            embedded_at=utc_now_iso(),
        )

    def build_index(self, force: bool = False) -> BuildStats:
        """Embed new or changed records; ``force`` re-embeds everything."""
        with self._build_lock:
            start_time = time.time()
            current = self.snapshot
            model_id = self.client.model_id
            now = utc_now_iso()

            vectors: Dict[str, EmbeddingVector] = {} if force else dict(current.vectors)
            fingerprints: Dict[str, str] = {} if force else dict(current.manifest.fingerprints)
            stats = BuildStats()
            seen = set()
            unavailable: Optional[EmbeddingUnavailableError] = None

            records = list(self.store.iter_records())
            status = "rebuilding" if force else "checking"
            log_info(f"Embedding index: {status} {len(records)} memories", quiet=self.quiet)

            for record in records:
                seen.add(record.id)
                fingerprint = compute_fingerprint(record.content, record.mtime)
                existing = vectors.get(record.id)
                if (
                    not force
                    and existing is not None
                    and fingerprints.get(record.id) == fingerprint
                    and existing.model_id == model_id
                ):
                    stats.skipped += 1
                    continue

                # A stale vector is never kept for a record that needs re-embedding
                vectors.pop(record.id, None)
                fingerprints.pop(record.id, None)

                if unavailable is not None:
                    stats.errors += 1
                    continue

                try:
                    vectors[record.id] = self._embed_record(record, fingerprint)
                except EmbeddingUnavailableError as error:
                    if stats.processed == 0:
                        log_error("Embedding capability unavailable; index build aborted", error, quiet=self.quiet)
                        raise
                    log_error(
                        "Embedding capability became unavailable mid-build; remaining records deferred",
                        error,
                        quiet=self.quiet,
                    )
                    unavailable = error
                    stats.errors += 1
                    continue
                except EmbeddingError as error:
                    log_warning(f"Could not embed {record.id}", error, quiet=self.quiet)
                    stats.errors += 1
                    continue

                fingerprints[record.id] = fingerprint
                stats.processed += 1

            for record_id in [rid for rid in vectors if rid not in seen]:
                del vectors[record_id]
                fingerprints.pop(record_id, None)
                stats.removed += 1
            for record_id in [rid for rid in fingerprints if rid not in vectors]:
                del fingerprints[record_id]

            manifest = IndexManifest(
                provider=self.client.provider_name,
                embedding_model=self.client.model_name,
                built_at=now,
                created_at=(current.manifest.created_at if not force else None) or now,
                fingerprints=fingerprints,
            )
            snapshot = IndexSnapshot(manifest=manifest, vectors=vectors)
            self.save_index(snapshot)
            self._publish(snapshot)

            stats.elapsed_seconds = round(time.time() - start_time, 3)
            log_info(
                f"Index build complete: {stats.processed} processed, {stats.skipped} skipped, "
                f"{stats.errors} errors, {stats.removed} removed",
                quiet=self.quiet,
            )
            return stats

    def add_record(self, record: MemoryRecord) -> EmbeddingVector:
        """Embed one record now and persist it. Raises if embedding fails."""
        with self._build_lock:
            fingerprint = compute_fingerprint(record.content, record.mtime)
            vector = self._embed_record(record, fingerprint)

            current = self.snapshot
            vectors = dict(current.vectors)
            vectors[record.id] = vector
            fingerprints = dict(current.manifest.fingerprints)
            fingerprints[record.id] = fingerprint
            # The manifest names the model that produced the newest vectors
            manifest = replace(
                current.manifest,
                provider=self.client.provider_name,
                embedding_model=self.client.model_name,
                created_at=current.manifest.created_at or utc_now_iso(),
                fingerprints=fingerprints,
            )
            snapshot = IndexSnapshot(manifest=manifest, vectors=vectors)
            self.save_index(snapshot)
            self._publish(snapshot)
            return vector

    def remove_record(self, record_id: str) -> bool:
        with self._build_lock:
            current = self.snapshot
            if record_id not in current.vectors:
                return False
            vectors = {key: value for key, value in current.vectors.items() if key != record_id}
            fingerprints = {
                key: value for key, value in current.manifest.fingerprints.items() if key != record_id
            }
            snapshot = IndexSnapshot(
                manifest=replace(current.manifest, fingerprints=fingerprints), vectors=vectors
            )
            self.save_index(snapshot)
            self._publish(snapshot)
            return True

    def _rank(self, query: str, k: int, threshold: float) -> List[Tuple[EmbeddingVector, float]]:
        query_vector = np.asarray(self.client.embed(query), dtype=float)
        snapshot = self.snapshot
        model_id = self.client.model_id

        candidates = []
        skipped = 0
        for entry in snapshot.vectors.values():
            if entry.model_id != model_id or len(entry.vector) != len(query_vector):
                skipped += 1
                continue
            candidates.append(entry)
        if skipped:
            log_warning(
                f"Ignoring {skipped} vectors built by another model or dimension; rebuild the index",
                quiet=self.quiet,
            )
        if not candidates or k <= 0:
            return []

        matrix = np.asarray([entry.vector for entry in candidates], dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vector)
        dots = matrix @ query_vector
        similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        order = np.argsort(-similarities, kind="stable")
        ranked = []
        for position in order:
            similarity = float(similarities[position])
            if similarity < threshold:
                break
            ranked.append((candidates[position], similarity))
            if len(ranked) >= k:
                break
        return ranked

    def _hit(self, entry: EmbeddingVector, similarity: float, content: str) -> RankedHit:
        return RankedHit(
            record_id=entry.record_id,
            score=similarity,
            title=entry.title,
            content=content,
            category=entry.category,
            privacy_level=entry.privacy_level,
            file_path=entry.file_path,
            tags=entry.tags,
            created_at=entry.created_at,
        )

    def search_similar(
        self, query: str, k: int = DEFAULT_RESULTS, threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    ) -> List[RankedHit]:
        """Top ``k`` records by cosine similarity, with full content from the store."""
        hits = []
        for entry, similarity in self._rank(query, k, threshold):
            content = self.store.read_content(entry.record_id)
            if content is None:
                log_warning(f"{entry.record_id} is no longer readable; using cached preview", quiet=self.quiet)
                content = entry.content_preview
            hits.append(self._hit(entry, similarity, content))
        return hits

    def search_similar_fast(
        self, query: str, k: int = DEFAULT_VECTOR_TOP_K, threshold: float = DEFAULT_VECTOR_THRESHOLD
    ) -> List[RankedHit]:
        """Same ranking as search_similar, returning cached previews (no disk reads)."""
        return [
            self._hit(entry, similarity, entry.content_preview)
            for entry, similarity in self._rank(query, k, threshold)
        ]

    def get_stats(self) -> Dict[str, Any]:
        snapshot = self.snapshot
        size_kb = None
        if self.index_path.exists():
            size_kb = round(self.index_path.stat().st_size / 1024, 1)
        return {
            "exists": self.index_path.exists(),
            "entries": len(snapshot.vectors),
            "provider": snapshot.manifest.provider,
            "embedding_model": snapshot.manifest.embedding_model,
            "built_at": snapshot.manifest.built_at,
            "index_path": str(self.index_path),
            "size_kb": size_kb,
        }


# ---------------------------------------------------------------------------
# Provider change detection
# ---------------------------------------------------------------------------


class ProviderStateTracker:
    """Remembers which provider/model built the index and forces a rebuild on change.

    Vectors from different models are not comparable, so a change invalidates
    the whole index instead of being reconciled record by record.
    """

    def __init__(
        self,
        state_path: Path,
        config: Optional[Dict[str, Any]] = None,
        embedding_index: Optional[EmbeddingIndex] = None,
        quiet: bool = False,
    ) -> None:
        self.state_path = Path(state_path)
        self.config = resolve_config(config)
        self.embedding_index = embedding_index
        self.quiet = quiet

    def current_state(self) -> ProviderState:
        return ProviderState(
            provider=str(self.config["embeddings"]["provider"]),
            chat_model=str(self.config["ai"]["chat_model"]),
            embedding_model=str(self.config["embeddings"]["model"]),
            last_check=utc_now_iso(),
        )

    def load_state(self) -> Optional[ProviderState]:
        if not self.state_path.exists():
            return None
        try:
            with open(self.state_path, "r", encoding="utf-8") as state_file:
                data = json.load(state_file)
            return ProviderState(
                provider=str(data["provider"]),
                chat_model=str(data.get("chat_model", "")),
                embedding_model=str(data["embedding_model"]),
                last_check=str(data.get("last_check", "")),
            )
        except (json.JSONDecodeError, OSError, KeyError, TypeError) as error:
            log_warning("Provider state unreadable; treating as first run", error, quiet=self.quiet)
            return None

    def save_state(self, state: ProviderState) -> None:
        try:
            _atomic_write_json(self.state_path, asdict(state), indent=2)
        except OSError as error:
            log_error("Failed to save provider state", error, quiet=self.quiet)

    def check_provider_change(self) -> ProviderCheck:
        current = self.current_state()
        previous = self.load_state()

        if previous is None:
            self.save_state(current)
            log_info(f"Provider detection initialized with {current.provider} provider", quiet=self.quiet)
            return ProviderCheck(
                changed=False,
                index_rebuild_required=False,
                current_provider=current.provider,
            )

        provider_changed = previous.provider != current.provider
        model_changed = previous.embedding_model != current.embedding_model
        self.save_state(current)

        if provider_changed or model_changed:
            if not self.quiet:
                print(f"AI provider change detected: {previous.provider} -> {current.provider}")
                if model_changed:
                    print(f"Embedding model changed: {previous.embedding_model} -> {current.embedding_model}")
            return ProviderCheck(
                changed=True,
                index_rebuild_required=True,
                current_provider=current.provider,
                previous_provider=previous.provider,
            )

        return ProviderCheck(
            changed=False,
            index_rebuild_required=False,
            current_provider=current.provider,
        )

    def handle_provider_change(self) -> Dict[str, Any]:
        """Run the check and, when needed, a forced full rebuild. Safe on every startup."""
        previous = self.load_state()
        check = self.check_provider_change()
        if not check.index_rebuild_required:
            return {"success": True, "rebuilt": False}

        if self.embedding_index is None:
            if previous is not None:
                self.save_state(previous)
            return {"success": False, "rebuilt": False, "error": "No embedding index configured"}

        log_info("Starting automatic index rebuild for provider change...", quiet=self.quiet)
        try:
            stats = self.embedding_index.build_index(force=True)
        except (MemdexError, OSError) as error:
            log_error("Provider change handling failed", error, quiet=self.quiet)
            if previous is not None:
                # Retry on the next startup instead of trusting the old vectors
                self.save_state(previous)
            return {
                "success": False,
                "rebuilt": False,
                "error": sanitize_error_message(str(error)),
            }

        log_info(f"Index rebuild completed: {stats.processed} memories processed", quiet=self.quiet)
        return {"success": True, "rebuilt": True, "stats": stats.to_dict()}

    def get_provider_info(self) -> Dict[str, Any]:
        current = self.current_state()
        return {
            "provider": current.provider,
            "chat_model": current.chat_model,
            "embedding_model": current.embedding_model,
            "index_path": str(self.embedding_index.index_path) if self.embedding_index else None,
        }


# ---------------------------------------------------------------------------
# Fusion and re-ranking
# ---------------------------------------------------------------------------


def extract_query_terms(query: str, min_length: int = DEFAULT_MIN_TERM_LENGTH) -> List[str]:
    """Lowercased query words of at least ``min_length`` characters."""
    cleaned = PUNCTUATION_PATTERN.sub(" ", query.lower())
    return [term for term in cleaned.split() if len(term) >= min_length]


class FusionRanker:
    """Reciprocal Rank Fusion of the vector and keyword legs plus a coverage bonus."""

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        search_config = resolve_config(config)["search"]
        coverage = search_config["coverage"]
        self.k = int(search_config["rrf_k"])
        self.fused_top_k = int(search_config["fused_top_k"])
        self.min_coverage = float(coverage["min_coverage"])
        self.coverage_weight = float(coverage["weight"])
        self.synonym_weight = float(coverage["synonym_weight"])
        self.min_term_length = int(coverage["min_term_length"])
        self.synonyms: Dict[str, List[str]] = search_config.get("synonyms") or {}

    def fuse(
        self,
        vector_hits: Sequence[RankedHit],
        keyword_hits: Sequence[RankedHit],
        k: Optional[int] = None,
    ) -> List[SearchResult]:
        """RRF: score(d) = sum over legs of 1 / (k + rank), ranks 1-based."""
        k = self.k if k is None else k
        entries: Dict[str, Dict[str, Any]] = {}

        for rank, hit in enumerate(vector_hits, 1):
            if hit.record_id in entries:
                continue
            entries[hit.record_id] = {"hit": hit, "vector_rank": rank, "vector_score": hit.score}

        for rank, hit in enumerate(keyword_hits, 1):
            entry = entries.get(hit.record_id)
            if entry is None:
                entries[hit.record_id] = {"hit": hit, "bm25_rank": rank, "bm25_score": hit.score}
            elif "bm25_rank" not in entry:
                entry["bm25_rank"] = rank
                entry["bm25_score"] = hit.score
                # Keyword hits carry full content, vector hits only a preview
                entry["hit"] = hit

        fused = []
        for record_id, entry in entries.items():
            hit = entry["hit"]
            vector_rank = entry.get("vector_rank", ABSENT_RANK)
            bm25_rank = entry.get("bm25_rank", ABSENT_RANK)
            fused.append(
                SearchResult(
                    record_id=record_id,
                    score=1.0 / (k + vector_rank) + 1.0 / (k + bm25_rank),
                    title=hit.title,
                    content=hit.content,
                    category=hit.category,
                    privacy_level=hit.privacy_level,
                    file_path=hit.file_path,
                    tags=hit.tags,
                    created_at=hit.created_at,
                    vector_score=entry.get("vector_score"),
                    bm25_score=entry.get("bm25_score"),
                )
            )

        fused.sort(key=lambda result: result.score, reverse=True)
        return fused

    def coverage(self, text: str, query_terms: Sequence[str]) -> float:
        """Fraction in [0, 1] of query terms (and half-weight synonyms) found in text."""
        if not query_terms:
            return 0.0
        text = text.lower()
        covered = 0.0
        for term in query_terms:
            if term in text:
                covered += 1.0
            for synonym in self.synonyms.get(term, []):
                if synonym.lower() in text:
                    covered += self.synonym_weight
                    break
        max_possible = len(query_terms) * (1.0 + self.synonym_weight)
        return min(1.0, covered / max_possible)

    def coverage_bonus(self, coverage: float) -> float:
        if coverage < self.min_coverage:
            return 0.0
        return self.coverage_weight * coverage

    def apply_coverage_bonus(self, results: Sequence[SearchResult], query: str) -> List[SearchResult]:
        query_terms = extract_query_terms(query, self.min_term_length)
        reranked = []
        for result in results:
            bonus = self.coverage_bonus(self.coverage(f"{result.title} {result.content}", query_terms))
            reranked.append(replace(result, score=result.score + bonus, coverage_bonus=bonus))
        reranked.sort(key=lambda result: result.score, reverse=True)
        return reranked

    def rank(
        self,
        vector_hits: Sequence[RankedHit],
        keyword_hits: Sequence[RankedHit],
        query: str,
        final_results: int,
    ) -> List[SearchResult]:
        """Fuse, re-rank the top ``fused_top_k`` and keep ``final_results``."""
        fused = self.fuse(vector_hits, keyword_hits)
        candidates = fused[: self.fused_top_k]
        return self.apply_coverage_bonus(candidates, query)[:final_results]


def apply_temporal_weighting(
    results: Sequence[SearchResult],
    half_life_days: float = DEFAULT_TEMPORAL_HALF_LIFE_DAYS,
    now: Optional[datetime] = None,
) -> List[SearchResult]:
    """Scale scores by 0.7 + 0.3 * exp(-age_days / half_life_days)."""
    now = now or datetime.now(timezone.utc)
    weighted = []
    for result in results:
        created = _parse_timestamp(result.created_at)
        if created is None:
            weighted.append(result)
            continue
        age_days = max(0.0, (now - created).total_seconds() / 86400)
        factor = 0.7 + 0.3 * math.exp(-age_days / half_life_days)
        weighted.append(replace(result, score=result.score * factor))
    weighted.sort(key=lambda result: result.score, reverse=True)
    return weighted


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class HybridSearchService:
    """Main orchestrator: both indexes, provider tracking, fusion and privacy."""

    def __init__(
        self,
        store: MemoryStore,
        client: EmbeddingClient,
        index_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        quiet: bool = False,
    ) -> None:
        self.store = store
        self.client = client
        self.index_dir = Path(index_dir)
        self.config = resolve_config(config)
        self.quiet = quiet

        self.keyword_index = KeywordIndex(self.config, quiet=quiet)
        self.embedding_index = EmbeddingIndex(store, client, self.index_dir, self.config, quiet=quiet)
        self.provider_tracker = ProviderStateTracker(
            self.index_dir / PROVIDER_STATE_FILENAME,
            self.config,
            self.embedding_index,
            quiet=quiet,
        )
        self.ranker = FusionRanker(self.config)
        self.privacy_filter = PrivacyFilter()

    @classmethod
    def from_config(
        cls,
        memories_dir: str,
        index_dir: Optional[str] = None,
        config_path: Optional[str] = None,
        quiet: bool = False,
    ) -> "HybridSearchService":
        config = load_config(config_path)
        memories_path = Path(memories_dir).resolve()
        index_path = Path(index_dir).resolve() if index_dir else memories_path / "embeddings"
        return cls(
            MemoryStore(memories_path, quiet=quiet),
            create_embedding_client(config, quiet=quiet),
            index_path,
            config,
            quiet=quiet,
        )

    def initialize(self, check_provider: bool = True) -> Dict[str, Any]:
        """Provider check (with rebuild if needed), then load both indexes."""
        provider_result: Dict[str, Any] = {"success": True, "rebuilt": False}
        if check_provider:
            provider_result = self.provider_tracker.handle_provider_change()
        self.embedding_index.reload()
        documents = self.rebuild_keyword_index()
        return {"provider": provider_result, "keyword_documents": documents}

    def rebuild_keyword_index(self) -> int:
        """Reload every memory from the store into a fresh keyword index."""
        records = list(self.store.iter_records())
        self.keyword_index.reset(records)
        return len(records)

    def build_index(self, force: bool = False) -> BuildStats:
        stats = self.embedding_index.build_index(force=force)
        self.rebuild_keyword_index()
        return stats

    def index_record(self, record: MemoryRecord) -> bool:
        """Make a record searchable. Returns False if only the keyword leg took it."""
        self.keyword_index.add_document(record)
        try:
            self.embedding_index.add_record(record)
        except (MemdexError, OSError) as error:
            log_warning(
                f"Embedding failed for {record.id}; keyword-searchable now, "
                "vector-searchable after the next successful build",
                error,
                quiet=self.quiet,
            )
            return False
        return True

    def save_memory(
        self,
        content: str,
        title: Optional[str] = None,
        category: Optional[str] = None,
        privacy_level: str = DEFAULT_MAX_PRIVACY,
        tags: Optional[Sequence[str]] = None,
    ) -> MemoryRecord:
        record = self.store.save(content, title=title, category=category, privacy_level=privacy_level, tags=tags)
        self.index_record(record)
        return record

    def remove_record(self, record_id: str, rebuild: bool = False) -> bool:
        """Forget a record. Keyword ranking only drops it once rebuilt."""
        removed_keyword = self.keyword_index.remove_document(record_id)
        removed_vector = self.embedding_index.remove_record(record_id)
        if rebuild:
            self.keyword_index.rebuild_index()
        return removed_keyword or removed_vector

    def _keyword_hits(self, query: str, limit: int) -> List[RankedHit]:
        try:
            return self.keyword_index.search(query, limit)
        except Exception as error:
            log_error("Keyword search failed; continuing with vector results only", error, quiet=self.quiet)
            return []

    def _candidate_count(self, limit: int) -> int:
        search_config = self.config["search"]
        final_results = search_config.get("final_results")
        if final_results:
            return int(final_results)
        return limit * int(search_config["candidate_multiplier"])

    def search(
        self,
        query: str,
        max_privacy: Optional[str] = None,
        limit: int = DEFAULT_RESULTS,
    ) -> List[SearchResult]:
        """Hybrid search. Raises SearchUnavailableError when the vector leg cannot run."""
        max_privacy = max_privacy or self.config["privacy"]["default_max"]
        self.privacy_filter.allowed_levels(max_privacy)
        if not query or not query.strip() or limit <= 0:
            return []

        search_config = self.config["search"]
        try:
            vector_hits = self.embedding_index.search_similar_fast(
                query,
                int(search_config["vector_top_k"]),
                float(search_config["vector_threshold"]),
            )
        except EmbeddingError as error:
            log_error("Vector search failed - no fallback", error, quiet=self.quiet)
            raise SearchUnavailableError(
                f"Search unavailable: {sanitize_error_message(str(error))}"
            ) from error

        keyword_hits = self._keyword_hits(query, int(search_config["bm25_top_k"]))
        ranked = self.ranker.rank(vector_hits, keyword_hits, query, self._candidate_count(limit))
        if search_config.get("temporal_weighting"):
            ranked = apply_temporal_weighting(ranked, float(search_config["temporal_half_life_days"]))

        visible = self.privacy_filter.apply(ranked, max_privacy)
        return visible[:limit]

    def search_keywords(
        self,
        query: str,
        max_privacy: Optional[str] = None,
        limit: int = DEFAULT_RESULTS,
    ) -> List[SearchResult]:
        """Keyword-only ranking for callers that choose to degrade."""
        max_privacy = max_privacy or self.config["privacy"]["default_max"]
        self.privacy_filter.allowed_levels(max_privacy)
        if not query or not query.strip() or limit <= 0:
            return []

        keyword_hits = self._keyword_hits(query, int(self.config["search"]["bm25_top_k"]))
        ranked = self.ranker.rank([], keyword_hits, query, self._candidate_count(limit))
        return self.privacy_filter.apply(ranked, max_privacy)[:limit]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "memories": self.store.count_by_privacy(),
            "keyword": self.keyword_index.get_stats(),
            "embeddings": self.embedding_index.get_stats(),
            "provider": self.provider_tracker.get_provider_info(),
        }

    def close(self) -> None:
        self.client.close()
