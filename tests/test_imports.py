"""Basic import tests to verify modules can be loaded."""

import pytest


def test_package_exports():
    """Test that the package exposes its main classes."""
    import collier
    assert hasattr(collier, 'MiningPipeline')
    assert hasattr(collier, 'RpcAccountSource')
    assert hasattr(collier, 'LinkStore')


def test_config_imports():
    """Test that config module can be imported."""
    import collier.config
    assert hasattr(collier.config, 'RPC_URL')
    assert hasattr(collier.config, 'DATABASE_URL')
    assert hasattr(collier.config, 'CONCURRENCY')


def test_metrics_imports():
    """Test that metrics module can be imported."""
    import collier.metrics
    assert hasattr(collier.metrics, 'links_written')
    assert hasattr(collier.metrics, 'records_skipped')


@pytest.mark.parametrize("module_name", [
    'collier.cli',
    'collier.codec',
    'collier.config',
    'collier.errors',
    'collier.metrics',
    'collier.models',
    'collier.pipeline',
    'collier.retry',
    'collier.source',
    'collier.store',
])
def test_module_imports_no_errors(module_name):
    """Test that all modules can be imported without errors."""
    try:
        __import__(module_name)
    except ImportError as e:
        pytest.fail(f"Failed to import {module_name}: {e}")


def test_env_example_exists():
    """Test that .env.example file exists."""
    import os
    assert os.path.exists(os.path.join(os.path.dirname(__file__), '..', '.env.example')), ".env.example file is missing"
