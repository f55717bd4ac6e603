"""Test that the project setup is working correctly."""

import futures_gap_monitor


def test_version() -> None:
    """Test that version is defined."""
    assert futures_gap_monitor.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from futures_gap_monitor import alerter
    from futures_gap_monitor import detector
    from futures_gap_monitor import ingestor
    from futures_gap_monitor import pipeline
    from futures_gap_monitor import spread
    from futures_gap_monitor import storage

    # Just verify imports work
    assert ingestor is not None
    assert spread is not None
    assert detector is not None
    assert alerter is not None
    assert storage is not None
    assert pipeline is not None
