import pytest
import torch

from helpers import LEGACY_CONFIG, SERIAL_CONFIG, random_sequence, write_model_dir


@pytest.fixture(autouse=True)
def _seed():
    torch.manual_seed(42)


@pytest.fixture
def legacy_model_dir(tmp_path):
    return write_model_dir(tmp_path / "legacy", LEGACY_CONFIG)


@pytest.fixture
def serial_model_dir(tmp_path):
    return write_model_dir(tmp_path / "serial", SERIAL_CONFIG)


@pytest.fixture(scope="module")
def reference_seq():
    """10kb random reference, no long repeats."""
    return random_sequence(10_000, seed=1)


@pytest.fixture
def calling_model_dir(tmp_path):
    """Legacy model that emits a base at every timestep."""
    return write_model_dir(tmp_path / "calling", LEGACY_CONFIG, move_bias=3.0)
