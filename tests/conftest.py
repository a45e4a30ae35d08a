"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from loopback import LoopbackEngine, make_config

from mutabledht.assembler import RecordAssembler
from mutabledht.config import Config
from mutabledht.get import GetCoordinator
from mutabledht.keys import KeyPair
from mutabledht.put import PutCoordinator
from mutabledht.session import SessionManager


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory for tests."""
    data_dir = tmp_path / ".mutabledht"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def config(tmp_data_dir: Path) -> Config:
    return make_config(tmp_data_dir)


@pytest.fixture
def engine() -> Generator[LoopbackEngine, None, None]:
    eng = LoopbackEngine()
    yield eng
    eng.abort()


@pytest.fixture
def session(
    config: Config, engine: LoopbackEngine
) -> Generator[SessionManager, None, None]:
    mgr = SessionManager(config, lambda _cfg: engine)
    mgr.start()
    assert mgr.wait_until_running(timeout=5.0)
    yield mgr
    mgr.stop()


@pytest.fixture
def put_coordinator(session: SessionManager, config: Config) -> PutCoordinator:
    return PutCoordinator(session, config)


@pytest.fixture
def get_coordinator(session: SessionManager, config: Config) -> GetCoordinator:
    return GetCoordinator(session, config)


@pytest.fixture
def assembler(
    get_coordinator: GetCoordinator,
    put_coordinator: PutCoordinator,
    config: Config,
) -> RecordAssembler:
    return RecordAssembler(get_coordinator, put_coordinator, config)


@pytest.fixture
def keypair() -> KeyPair:
    return KeyPair.generate()
