"""Pytest configuration and shared fixtures."""

import pytest
from hypothesis import Verbosity, settings

from k3d_pipeline.models import PipelineConfig, ProvisioningConfig, SshSettings
from tests.fakes import FakeHost, FakeRunner

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


@pytest.fixture
def provisioning_data():
    """Valid provisioning settings as they appear in a config file."""
    return {
        "region": "us-east-1",
        "instance_type": "t3.large",
        "volume_size": 50,
        "key_name": "k3d-key",
        "allowed_cidrs": ["203.0.113.0/24"],
        "environment": "dev",
        "enable_monitoring": True,
    }


@pytest.fixture
def provisioning_config(provisioning_data):
    return ProvisioningConfig(**provisioning_data)


@pytest.fixture
def terraform_dir(tmp_path):
    path = tmp_path / "terraform"
    path.mkdir()
    return path


@pytest.fixture
def fake_runner():
    """Local runner with every tool installed."""
    return FakeRunner()


@pytest.fixture
def fake_host():
    """A freshly provisioned host with no tools installed."""
    return FakeHost()


@pytest.fixture
def pipeline_config(tmp_path, provisioning_config, terraform_dir):
    return PipelineConfig(
        provisioning=provisioning_config,
        ssh=SshSettings(private_key_path=tmp_path / "id_ed25519", backoff_seconds=0),
        terraform_dir=terraform_dir,
        kubeconfig=tmp_path / "kube" / "config",
    )
