import fakeredis
import pytest

from agentbus.backends import FileBackend, MemoryBackend, RedisBackend
from agentbus.namespace import CoordinationStore

REPO = "https://github.com/test/repo"


@pytest.fixture
def fake_redis():
    """Provide a fake Redis client."""
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def memory_store():
    return CoordinationStore(MemoryBackend())


@pytest.fixture
def file_store(tmp_path):
    return CoordinationStore(FileBackend(str(tmp_path), lock_timeout=5))


@pytest.fixture
def redis_store(fake_redis):
    return CoordinationStore(RedisBackend(fake_redis))


@pytest.fixture(params=["memory", "file", "redis"])
def store(request):
    """The same store contract on every backend."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def repo():
    return REPO
