"""Basic tests to verify project setup."""

from typer.testing import CliRunner

from k3d_pipeline.cli import app

runner = CliRunner()


def test_import():
    """Test that the package can be imported."""
    import k3d_pipeline

    assert k3d_pipeline.__version__ == "0.1.0"


def test_models_import():
    """Test that models can be imported."""
    from k3d_pipeline.models import (
        ClusterTopology,
        ManifestSet,
        PipelineConfig,
        ProvisioningConfig,
    )

    assert ProvisioningConfig is not None
    assert PipelineConfig is not None
    assert ClusterTopology is not None
    assert ManifestSet is not None


def test_version_command():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "k3d-pipeline version 0.1.0" in result.stdout


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("probe", "validate", "provision", "bootstrap", "create-cluster", "apply", "up", "teardown"):
        assert command in result.stdout
