"""Shared pytest fixtures for compilerhub tests."""

import shutil
import sys
from collections.abc import AsyncGenerator, Iterator
from pathlib import Path

import pytest

from compilerhub.adapters import AdapterRegistry
from compilerhub.config import PipelineConfig
from compilerhub.pipeline import Pipeline
from compilerhub.platform_utils import HostOS, detect_host_os
from compilerhub.settings import Settings
from compilerhub.system_probes import _probe_cache
from tests.fakes import TOY_ADAPTER, ScriptedSandbox

# ============================================================================
# Shared Skip Markers
# ============================================================================

# Sandbox limits rely on psutil process-tree accounting and RLIMIT_* semantics
skip_unless_linux = pytest.mark.skipif(
    detect_host_os() != HostOS.LINUX,
    reason="This test requires Linux (process-tree limits, network namespaces)",
)


def skip_unless_binary(*names: str) -> pytest.MarkDecorator:
    """Skip when any of the toolchain binaries is not on PATH."""
    missing = [name for name in names if shutil.which(name) is None]
    return pytest.mark.skipif(bool(missing), reason=f"Requires toolchain binaries: {', '.join(missing)}")


skip_unless_go = skip_unless_binary("go", "gofmt")
skip_unless_clang = skip_unless_binary("clang", "clang++")

# ============================================================================
# Probe Cache
# ============================================================================


@pytest.fixture(autouse=True)
def reset_probe_cache() -> Iterator[None]:
    """Probe locks bind to an event loop; every test gets its own loop."""
    _probe_cache.clear()
    yield
    _probe_cache.clear()


# ============================================================================
# Config Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings pinned to the interpreter running the tests."""
    return Settings(python_bin=sys.executable)


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    """Small limits, private scratch root."""
    return PipelineConfig(
        cpu_seconds=10,
        wall_seconds=20,
        stage_timeout_seconds=30,
        scratch_root=tmp_path / "scratch",
        cache_max_entries=16,
    )


# ============================================================================
# Pipelines
# ============================================================================


@pytest.fixture
def scripted_sandbox() -> ScriptedSandbox:
    return ScriptedSandbox()


@pytest.fixture
def toy_registry() -> AdapterRegistry:
    return AdapterRegistry([TOY_ADAPTER])


@pytest.fixture
async def toy_pipeline(
    pipeline_config: PipelineConfig,
    settings: Settings,
    toy_registry: AdapterRegistry,
    scripted_sandbox: ScriptedSandbox,
) -> AsyncGenerator[Pipeline, None]:
    """Pipeline over the toy adapter whose stages are answered by scripted_sandbox.

    Usage:
        async def test_something(toy_pipeline, scripted_sandbox) -> None:
            scripted_sandbox.results["parse"] = fail("boom")
            result = await toy_pipeline.run("toy", "source")
    """
    async with Pipeline(
        pipeline_config, settings=settings, registry=toy_registry, sandbox=scripted_sandbox
    ) as pipeline:
        yield pipeline


@pytest.fixture
async def pipeline(pipeline_config: PipelineConfig, settings: Settings) -> AsyncGenerator[Pipeline, None]:
    """Pipeline with the built-in adapters and the real sandbox."""
    async with Pipeline(pipeline_config, settings=settings) as pipe:
        yield pipe
