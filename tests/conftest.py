"""Pytest configuration and fixtures."""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from models import (
    ImageRepository,
    ImageRepositorySpec,
    ImageRepositoryStatus,
    NamespacedName,
    Secret,
)
from registry import TagLister
from stores import RecordStore, SecretStore, TagStore

NOW = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


class FakeRecordStore(RecordStore):
    """In-memory record store; tracks every status write."""

    def __init__(self):
        self.records: Dict[NamespacedName, ImageRepository] = {}
        self.status_writes: List[ImageRepositoryStatus] = []
        self.fail_writes: Optional[Exception] = None

    def add(self, repo: ImageRepository) -> ImageRepository:
        self.records[repo.key] = repo
        return repo

    async def get_image_repository(self, key):
        repo = self.records.get(key)
        return repo.copy() if repo else None

    async def update_image_repository_status(self, key, status):
        if self.fail_writes is not None:
            raise self.fail_writes
        self.status_writes.append(status)
        if key in self.records:
            self.records[key].status = status

    async def list_image_repository_keys(self):
        return sorted(self.records, key=str)


class FakeSecretStore(SecretStore):
    def __init__(self):
        self.secrets: Dict[NamespacedName, Secret] = {}

    def add(self, secret: Secret) -> Secret:
        self.secrets[secret.key] = secret
        return secret

    async def get_secret(self, namespace, name):
        return self.secrets.get(NamespacedName(namespace, name))


class FakeTagStore(TagStore):
    def __init__(self):
        self.tags: Dict[str, List[str]] = {}
        self.fail_writes: Optional[Exception] = None
        self.fail_reads: Optional[Exception] = None

    async def set_tags(self, canonical_name, tags):
        if self.fail_writes is not None:
            raise self.fail_writes
        self.tags[canonical_name] = list(tags)

    async def get_tags(self, canonical_name):
        if self.fail_reads is not None:
            raise self.fail_reads
        return list(self.tags.get(canonical_name, []))


class FakeTagLister(TagLister):
    """Returns canned tags and remembers what it was asked for."""

    def __init__(self, tags: Optional[List[str]] = None):
        self.tags = tags if tags is not None else []
        self.calls = []
        self.error: Optional[BaseException] = None

    async def list_tags(self, ref, authenticator=None):
        self.calls.append((ref, authenticator))
        if self.error is not None:
            raise self.error
        return list(self.tags)


@pytest.fixture
def records():
    return FakeRecordStore()


@pytest.fixture
def secrets():
    return FakeSecretStore()


@pytest.fixture
def tag_store():
    return FakeTagStore()


@pytest.fixture
def tag_lister():
    return FakeTagLister(["v1.0.0", "v1.1.0", "latest"])


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def pool_with(mock_pool, mock_connection):
    """A mock pool whose acquire() yields mock_connection."""

    @asynccontextmanager
    async def acquire():
        yield mock_connection

    mock_pool.acquire = acquire
    return mock_pool


@pytest.fixture
def sample_repository():
    """Sample ImageRepository record for testing."""
    return ImageRepository(
        namespace="default",
        name="podinfo",
        spec=ImageRepositorySpec(image="ghcr.io/stefanprodan/podinfo"),
    )


@pytest.fixture
def docker_config():
    """Docker config document with a login for Docker Hub."""
    return {
        "auths": {
            "https://index.docker.io/v1/": {
                "username": "fooser",
                "password": "foopass",
                "auth": "Zm9vc2VyOmZvb3Bhc3M=",
            }
        }
    }


@pytest.fixture
def docker_config_secret(docker_config):
    def build(namespace="default", name="regcred", config=None):
        payload = json.dumps(config if config is not None else docker_config)
        return Secret(
            namespace=namespace,
            name=name,
            type="kubernetes.io/dockerconfigjson",
            data={".dockerconfigjson": payload.encode()},
        )

    return build
