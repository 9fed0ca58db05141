"""
Pytest configuration.

Why this exists:

The project uses a ``src/`` layout (package code lives in ``src/common``,
``src/classifier`` and ``src/jobs``). Normally, developers run tests after
installing the package (e.g. ``pip install -e .``).

On some macOS/Python 3.13 setups, editable installs in dot-prefixed virtualenv
folders (like ``.venv``) can result in the generated ``.pth`` file being marked
as hidden, and Python's ``site`` module will skip hidden ``.pth`` files. When
that happens, ``import common`` fails even though the source tree is present.

This file makes tests robust in that scenario by adding ``src/`` to ``sys.path``
only when the package cannot be imported normally.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def _ensure_src_on_path() -> None:
    try:
        import common  # noqa: F401
        return
    except ModuleNotFoundError:
        pass

    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    sys.path.insert(0, str(src_dir))


_ensure_src_on_path()


BASE_ENV = {
    "SUPABASE_URL": "http://supabase.test",
    "SUPABASE_SERVICE_KEY": "service-key",
    "OPENAI_API_KEY": "test_api_key",
}


@pytest.fixture
def make_settings(mocker):
    """Build a Settings object from a clean environment plus *env* overrides."""
    from common.config import Settings

    def _make(**env):
        values = dict(BASE_ENV)
        values.update({key: str(value) for key, value in env.items()})
        mocker.patch.dict(os.environ, values, clear=True)
        return Settings()

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings(CORPORA="gaucho,nordestino", WORD_WORKERS=1, CHUNK_SIZE=10)


@pytest.fixture
def make_stack(make_settings, mocker):
    """
    Wire a complete orchestrator over in-memory stores.

    The AI provider is a MagicMock answering ``AB.01`` for every word unless a
    test changes ``provider.classify_word``.
    """
    from types import SimpleNamespace

    from classifier.rate_limiter import RateLimiter
    from fakes import FakeFlagStore, FakeSupabase, ai_answer
    from jobs.orchestrator import create_orchestrator

    def _make(limiter=None, **env):
        env.setdefault("CORPORA", "gaucho,nordestino")
        env.setdefault("WORD_WORKERS", 1)
        env.setdefault("CHUNK_SIZE", 10)
        settings = make_settings(**env)
        client = FakeSupabase()
        flags = FakeFlagStore()
        provider = mocker.MagicMock()
        provider.classify_word.return_value = ai_answer("AB.01")
        limiter = limiter or RateLimiter(max_requests=10000, window_ms=60000)
        orchestrator = create_orchestrator(
            settings, client=client, flag_store=flags, provider=provider, limiter=limiter
        )
        return SimpleNamespace(
            settings=settings,
            client=client,
            flags=flags,
            provider=provider,
            limiter=limiter,
            orchestrator=orchestrator,
            executor=orchestrator.executor,
            service=orchestrator.service,
            repository=orchestrator.repository,
            classifier=orchestrator.classifier,
            kill_switch=orchestrator.kill_switch,
        )

    return _make
