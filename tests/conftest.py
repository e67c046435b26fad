import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Union

import cv2
import numpy as np
import pytest

from bookscan.common.errors import ExtractionError
from bookscan.ocr.types import RecognizedText
from bookscan.orchestrator.core.config import Settings


class FakeRecognizer:
    """Recognizer returning canned results keyed by file name."""

    def __init__(
        self,
        results: Optional[Dict[str, Union[RecognizedText, Exception]]] = None,
        default: Optional[RecognizedText] = None,
    ):
        self.results = results or {}
        self.default = default or RecognizedText(text="", confidence=0.0)
        self.calls: List[Dict] = []

    def recognize(self, image_path, language, timeout=None):
        self.calls.append({"image_path": str(image_path), "language": language, "timeout": timeout})
        outcome = self.results.get(Path(image_path).name, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeRedis:
    """In-process stand-in for the subset of redis.asyncio used by RedisJobStore."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.lists: Dict[str, List[str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.closed = False

    async def set(self, key, value):
        self.values[key] = value
        return True

    async def get(self, key):
        return self.values.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for table in (self.values, self.lists, self.zsets):
                if key in table:
                    del table[key]
                    removed += 1
        return removed

    async def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def lrem(self, key, count, value):
        items = self.lists.get(key, [])
        if value in items:
            items.remove(value)
            return 1
        return 0

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        end = len(items) if end == -1 else end + 1
        return items[start:end]

    async def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        self.lists[key] = items[start:end + 1]
        return True

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def blmove(self, source, destination, timeout, src="LEFT", dest="RIGHT"):
        items = self.lists.get(source, [])
        if not items:
            return None
        value = items.pop(0) if src == "LEFT" else items.pop()
        target = self.lists.setdefault(destination, [])
        if dest == "RIGHT":
            target.append(value)
        else:
            target.insert(0, value)
        return value

    async def zadd(self, key, mapping, nx=False, xx=False):
        scores = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            exists = member in scores
            if (nx and exists) or (xx and not exists):
                continue
            scores[member] = score
            added += 0 if exists else 1
        return added

    async def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    async def zrangebyscore(self, key, minimum, maximum):
        scores = self.zsets.get(key, {})
        return [member for member, score in sorted(scores.items(), key=lambda item: item[1]) if score <= maximum]

    async def zrem(self, key, member):
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def aclose(self):
        self.closed = True


def write_checkerboard(path: Path, size: int = 128, square: int = 8, low: int = 30, high: int = 220) -> Path:
    """Sharp, high contrast test frame."""
    tiles = (np.indices((size, size)) // square).sum(axis=0) % 2
    image = np.where(tiles == 0, low, high).astype(np.uint8)
    cv2.imwrite(str(path), image)
    return path


def write_flat(path: Path, size: int = 128, value: int = 128) -> Path:
    """Featureless frame; scores zero."""
    cv2.imwrite(str(path), np.full((size, size), value, dtype=np.uint8))
    return path


def write_blurred_checkerboard(path: Path, size: int = 128, square: int = 8, kernel: int = 9) -> Path:
    """Checkerboard softened by a Gaussian blur."""
    tiles = (np.indices((size, size)) // square).sum(axis=0) % 2
    image = np.where(tiles == 0, 30, 220).astype(np.uint8)
    cv2.imwrite(str(path), cv2.GaussianBlur(image, (kernel, kernel), 0))
    return path


@pytest.fixture
def temp_directory() -> Generator[Path, None, None]:
    """Create temporary directory for test files."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def settings() -> Settings:
    """Settings with short timings for worker tests."""
    return Settings(
        _env_file=None,
        store_backend="memory",
        backoff_base_seconds=0.01,
        poll_interval_seconds=0.01,
        job_timeout_seconds=5.0,
        shutdown_grace_seconds=2.0,
        log_format="console",
    )


@pytest.fixture
def fake_recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def page_images(temp_directory) -> List[Path]:
    """Three readable page images."""
    return [write_checkerboard(temp_directory / f"page_{index}.png") for index in range(1, 4)]


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
