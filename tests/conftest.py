"""Shared test fixtures for memdex testing."""

import pytest
import tempfile
import shutil
import hashlib
import re
import threading
from pathlib import Path
from typing import Dict, Any, Generator, List, Optional
import sys

# Add parent directory to path so we can import memdex
sys.path.insert(0, str(Path(__file__).parent.parent))

import memdex


class FakeEmbeddingProvider(memdex.EmbeddingProvider):
    """Deterministic hashed bag-of-words embeddings.

    Texts sharing words get positive cosine similarity, identical texts get 1.0.
    """

    provider_name = "fake"
    dimensions = 256

    def __init__(self, model_name: str = "hash-bow", fail_after: Optional[int] = None):
        super().__init__(model_name)
        self.available = True
        self.fail_after = fail_after
        self.calls = 0
        self.failing_texts: List[str] = []

    def embed(self, text: str) -> List[float]:
        if not self.available:
            raise memdex.EmbeddingUnavailableError("fake provider is down")
        if self.fail_after is not None and self.calls >= self.fail_after:
            raise memdex.EmbeddingUnavailableError("fake provider went away")
        if any(marker in text for marker in self.failing_texts):
            raise memdex.EmbeddingError("fake provider rejected text")
        self.calls += 1

        vector = [0.0] * self.dimensions
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        return vector


class BlockingEmbeddingProvider(memdex.EmbeddingProvider):
    """Provider whose calls hang until released."""

    provider_name = "blocking"

    def __init__(self):
        super().__init__("hang")
        self.release = threading.Event()

    def embed(self, text: str) -> List[float]:
        self.release.wait(5)
        return [1.0, 0.0]


class GatedEmbeddingProvider(FakeEmbeddingProvider):
    """Fake provider that holds any text containing ``gate_text`` until released."""

    def __init__(self, gate_text: str):
        super().__init__()
        self.gate_text = gate_text
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, text: str) -> List[float]:
        if self.gate_text in text:
            self.entered.set()
            self.release.wait(5)
        return super().embed(text)


SAMPLE_MEMORIES = {
    "public/deepest-voice.md": """---
title: Deepest human voice
category: trivia
tags: [voice, records]
created: 2024-01-15T10:00:00Z
---

# Deepest human voice

Tim Storms holds the record for the deepest human voice. His lowest vocal
note sits eight octaves below the lowest G on a piano, far below the range
of human hearing. No other human voice has gone that low.
""",
    "public/lightning.md": """---
title: Lightning strikes
category: science
tags: weather, electricity
---

Lightning strikes the earth about one hundred times every second. Each
electric discharge heats the air and produces thunder.
""",
    "team/standup.md": """---
title: Team standup schedule
category: work
tags: [meetings]
---

The team standup moved to ten in the morning on Tuesdays. Deploys are frozen
during release week.
""",
    "personal/ferrets.md": """---
title: Ferret facts
category: animals
tags: [ferrets, mammals]
---

A group of ferrets is called a business. Ferrets are small carnivorous
mammals related to weasels and sleep up to eighteen hours a day.
""",
    "private/bank.md": """---
title: Bank recovery codes
category: finance
tags: [bank]
---

Bank account recovery codes are stored in the fireproof safe at home.
""",
    "sensitive/cardiology.md": """---
title: Cardiology results
category: health
tags: [heart]
---

Cardiology appointment confirmed the heart rhythm results are normal.
""",
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def memories_dir(temp_dir: Path) -> Path:
    """Create a memory store with one or more records in every privacy tier."""
    root = temp_dir / "memories"
    for relative_path, content in SAMPLE_MEMORIES.items():
        path = root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def index_dir(temp_dir: Path) -> Path:
    """Directory holding the embedding index and provider state."""
    return temp_dir / "index"


@pytest.fixture
def store(memories_dir: Path) -> memdex.MemoryStore:
    return memdex.MemoryStore(memories_dir, quiet=True)


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def provider_factory():
    """Build fake providers with a chosen model name or failure point."""
    return FakeEmbeddingProvider


@pytest.fixture
def blocking_provider() -> Generator[BlockingEmbeddingProvider, None, None]:
    provider = BlockingEmbeddingProvider()
    yield provider
    provider.release.set()


@pytest.fixture
def gated_provider() -> Generator[GatedEmbeddingProvider, None, None]:
    """Fake provider that stalls on texts mentioning otters."""
    provider = GatedEmbeddingProvider("otters")
    yield provider
    provider.release.set()


@pytest.fixture
def fake_client(fake_provider: FakeEmbeddingProvider) -> Generator[memdex.EmbeddingClient, None, None]:
    client = memdex.EmbeddingClient(fake_provider, timeout_seconds=5)
    yield client
    client.close()


@pytest.fixture
def sample_config() -> Dict[str, Any]:
    """Sample configuration for testing."""
    return {
        "search": {
            "vector_threshold": 0.1,
            "temporal_weighting": False,
        },
        "embeddings": {
            "provider": "fake",
            "model": "hash-bow",
            "timeout_seconds": 5,
            "preview_chars": 40,
        },
        "ai": {
            "chat_model": "test-chat",
        },
    }


@pytest.fixture
def embedding_index(store, fake_client, index_dir, sample_config) -> memdex.EmbeddingIndex:
    return memdex.EmbeddingIndex(store, fake_client, index_dir, sample_config, quiet=True)


@pytest.fixture
def service(store, fake_client, index_dir, sample_config) -> memdex.HybridSearchService:
    """Service over the sample store, initialized and fully indexed."""
    service = memdex.HybridSearchService(store, fake_client, index_dir, sample_config, quiet=True)
    service.initialize()
    service.build_index()
    return service


def make_record(record_id: str, title: str, content: str, privacy_level: str = "public", **kwargs) -> memdex.MemoryRecord:
    """Build an in-memory record for keyword index tests."""
    return memdex.MemoryRecord(
        id=record_id,
        title=title,
        content=content,
        privacy_level=privacy_level,
        file_path=record_id,
        **kwargs,
    )


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def hit_factory():
    """Build RankedHit lists from record ids."""
    def build(record_ids: List[str], privacy_level: str = "public") -> List[memdex.RankedHit]:
        return [
            memdex.RankedHit(
                record_id=record_id,
                score=1.0 / position,
                title=f"Title {record_id}",
                content=f"content of {record_id}",
                privacy_level=privacy_level,
                file_path=f"{privacy_level}/{record_id}.md",
            )
            for position, record_id in enumerate(record_ids, 1)
        ]
    return build
