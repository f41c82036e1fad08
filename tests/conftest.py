"""
Shared pytest fixtures for BreathLens tests.
"""
import numpy as np
import pytest

from core import kernels
from core.pipeline import EngineConfig
from runtime.device import BufferUsage, ResourceManager


@pytest.fixture
def rm():
    """Resource manager with the engine kernels registered; shut down after the test."""
    manager = ResourceManager(memory_budget_bytes=64 * 1024 * 1024, max_workers=4)
    manager.register_kernels(kernels.KERNELS)
    yield manager
    manager.shutdown()


@pytest.fixture
def upload(rm):
    """Allocate a buffer, upload `data` into it and wait for the transfer."""
    def _upload(data, usage=BufferUsage.STORAGE | BufferUsage.COPY_SRC | BufferUsage.COPY_DST,
                dtype=np.float32):
        data = np.asarray(data)
        handle = rm.allocate(data.shape, usage, dtype, owner="test")
        rm.upload(handle, data).result()
        return handle
    return _upload


@pytest.fixture
def unclamped_config():
    """Engine config exposing pre-clamp reconstruction."""
    config = EngineConfig()
    config.clamp_output = False
    return config
