"""Pytest fixtures for the Calaveritas backend tests."""

import asyncio

import pytest

from access_policy import AccessPolicy
from db_store import Database
from generation_service import GenerationCoordinator


class FakeGenerator:
    """Content generator double: numbered poems, optional delay or failure."""

    def __init__(self, delay: float = 0.0, error: Exception = None, content: str = None):
        self.delay = delay
        self.error = error
        self.content = content
        self.prompts = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.content is not None:
            return self.content
        return f"Calavera número {len(self.prompts)}"


@pytest.fixture
def db(tmp_path):
    """SQLite database in a temporary directory, schema initialized.

    Args:
        tmp_path: pytest's built-in temporary directory fixture

    Returns:
        Database instance
    """
    database = Database(
        database_url="",
        sqlite_path=str(tmp_path / "calaveritas.db"),
        pool_max=4,
        pool_timeout=5,
        transaction_timeout=10,
    )
    database.init_db()
    yield database
    database.close()


@pytest.fixture
def policy():
    return AccessPolicy(["x.com", "tolkogroup.com", "proxper.com.mx"])


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def coordinator(db, generator, policy):
    return GenerationCoordinator(
        db=db,
        generator=generator,
        policy=policy,
        max_generations=2,
        generation_timeout=5,
    )


@pytest.fixture
def details():
    return {
        "nombre": "Ana",
        "gustos": "el pan de muerto",
        "profesion": "contadora",
        "tono": "divertido",
        "puesto": "Gerente de Finanzas",
    }
