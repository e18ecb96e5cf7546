"""Unit tests for ModelRegistry behavior."""

from __future__ import annotations

import asyncio
from pathlib import Path

from conftest import FakeBackend, MemoryProbe, model_paths
import pytest

from llm_boot.core.memory import MemoryUsage
from llm_boot.core.model_registry import ModelRegistry, model_id_for
from llm_boot.models.errors import InsufficientMemoryError, ModelNotFoundError


def test_model_id_is_relative_posix_path(model_dir: Path) -> None:
    assert model_id_for(model_dir / "nested" / "beta.gguf", model_dir) == "nested/beta.gguf"


def test_sync_tracks_added_and_removed_files(make_registry, model_dir: Path) -> None:
    async def _test() -> None:
        registry: ModelRegistry = await make_registry()
        assert [h.model_id for h in registry.list_models()] == ["alpha.gguf", "nested/beta.gguf"]
        assert len(registry) == 2

        beta = registry.get("nested/beta.gguf")
        assert beta.name == "Beta"
        assert beta.size == 200

        (model_dir / "nested" / "beta.gguf").unlink()
        await registry.sync(model_dir, model_paths(model_dir))
        assert [h.model_id for h in registry.list_models()] == ["alpha.gguf"]
        assert beta.metadata is None
        with pytest.raises(ModelNotFoundError):
            registry.get("nested/beta.gguf")

    asyncio.run(_test())


def test_sync_keeps_handles_with_unreadable_metadata(
    make_registry, backend: FakeBackend, model_dir: Path
) -> None:
    backend.broken_metadata.add(str(model_dir / "alpha.gguf"))

    async def _test() -> None:
        registry: ModelRegistry = await make_registry()
        alpha = registry.get("alpha.gguf")
        assert alpha.metadata is None
        assert alpha.name is None

    asyncio.run(_test())


def test_get_unknown_model_raises(make_registry) -> None:
    async def _test() -> None:
        registry: ModelRegistry = await make_registry()
        with pytest.raises(ModelNotFoundError, match="model missing.gguf not found"):
            registry.get("missing.gguf")

    asyncio.run(_test())


def test_load_when_model_fits_keeps_others_resident(
    make_registry, backend: FakeBackend, memory_probe: MemoryProbe
) -> None:
    async def _test() -> None:
        registry: ModelRegistry = await make_registry()
        alpha = registry.get("alpha.gguf")
        beta = registry.get("nested/beta.gguf")

        await registry.load(alpha)
        memory_probe.usage = MemoryUsage(total=10_000, free=9_000)
        await registry.load(beta)
        assert alpha.is_loaded and beta.is_loaded

        # Already resident: no probe, no second load
        calls = memory_probe.calls
        await registry.load(beta)
        assert memory_probe.calls == calls
        assert backend.weight_loads.count(beta.path) == 1

    asyncio.run(_test())


def test_load_without_free_memory_unloads_every_other_model(
    make_registry, memory_probe: MemoryProbe
) -> None:
    async def _test() -> None:
        registry: ModelRegistry = await make_registry()
        alpha = registry.get("alpha.gguf")
        beta = registry.get("nested/beta.gguf")
        await registry.load(alpha)

        memory_probe.usage = MemoryUsage(total=10_000, free=150)
        await registry.load(beta)
        assert not alpha.is_loaded
        assert beta.is_loaded
        # Metadata survives unloading
        assert alpha.metadata is not None

    asyncio.run(_test())


def test_model_larger_than_device_is_rejected_without_eviction(
    make_registry, memory_probe: MemoryProbe
) -> None:
    async def _test() -> None:
        registry: ModelRegistry = await make_registry()
        alpha = registry.get("alpha.gguf")
        beta = registry.get("nested/beta.gguf")
        await registry.load(alpha)

        memory_probe.usage = MemoryUsage(total=150, free=50)
        with pytest.raises(InsufficientMemoryError) as exc_info:
            await registry.load(beta)
        assert exc_info.value.required == 200
        assert exc_info.value.total == 150
        assert alpha.is_loaded
        assert not beta.is_loaded

    asyncio.run(_test())


def test_unknown_memory_unloads_every_other_model(
    make_registry, memory_probe: MemoryProbe
) -> None:
    async def _test() -> None:
        registry: ModelRegistry = await make_registry()
        alpha = registry.get("alpha.gguf")
        beta = registry.get("nested/beta.gguf")
        await registry.load(alpha)

        memory_probe.usage = None
        await registry.prepare_load(beta)
        assert not alpha.is_loaded
        assert not beta.is_loaded

    asyncio.run(_test())


def test_failing_probe_is_treated_as_unknown(make_registry) -> None:
    def _broken_probe() -> MemoryUsage | None:
        raise RuntimeError("driver gone")

    async def _test() -> None:
        registry: ModelRegistry = await make_registry(memory_probe=_broken_probe)
        alpha = registry.get("alpha.gguf")
        beta = registry.get("nested/beta.gguf")
        await registry.load(alpha)
        await registry.load(beta)
        assert not alpha.is_loaded
        assert beta.is_loaded

    asyncio.run(_test())


def test_free_all_skips_models_in_use(make_registry, memory_probe: MemoryProbe) -> None:
    async def _test() -> None:
        registry: ModelRegistry = await make_registry()
        alpha = registry.get("alpha.gguf")
        beta = registry.get("nested/beta.gguf")
        await registry.load(alpha)

        async with await alpha.sequence_lock.acquire():
            memory_probe.usage = MemoryUsage(total=10_000, free=0)
            await registry.load(beta)
            assert alpha.is_loaded

        await registry.free_all()
        assert not alpha.is_loaded and not beta.is_loaded

    asyncio.run(_test())


def test_start_and_close_with_watchers(
    backend: FakeBackend, memory_probe: MemoryProbe, model_dir: Path
) -> None:
    async def _test() -> None:
        registry = ModelRegistry([model_dir], backend=backend, memory_probe=memory_probe)
        await registry.start()
        assert len(registry) == 2
        alpha = registry.get("alpha.gguf")
        await registry.load(alpha)

        await registry.aclose()
        assert len(registry) == 0
        assert ("weights", alpha.path) in backend.closed

    asyncio.run(_test())


def test_start_fails_for_missing_root(
    backend: FakeBackend, memory_probe: MemoryProbe, model_dir: Path, tmp_path: Path
) -> None:
    async def _test() -> None:
        registry = ModelRegistry(
            [model_dir, tmp_path / "missing"], backend=backend, memory_probe=memory_probe
        )
        with pytest.raises(FileNotFoundError):
            await registry.start()
        await registry.aclose()

    asyncio.run(_test())
